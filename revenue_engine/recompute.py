from __future__ import annotations

import logging
from threading import Event, Lock
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Flight:
    def __init__(self) -> None:
        self.pending = False
        self.cancel_event = Event()


class SingleFlight:
    """Run at most one job per scope; requests made mid-run fold into one trailing re-run.

    The first caller for an idle scope runs the job in its own thread and keeps
    re-running it while new requests arrived during the previous pass. Callers
    that find the scope busy only flag it and return immediately. Cancelling
    stops the current pass only; a pending request still gets
    its trailing run, with a fresh cancel event. A failed pass is re-raised
    unless a request is waiting, in which case the trailing run replaces it.
    """

    def __init__(self, job: Callable[[Hashable, Event], None]) -> None:
        self._job = job
        self._lock = Lock()
        self._flights: dict[Hashable, _Flight] = {}

    def _finish_or_rearm(self, scope: Hashable, flight: _Flight) -> bool:
        # called with the lock held; True when the flight is over
        if not flight.pending:
            del self._flights[scope]
            return True
        if flight.cancel_event.is_set():
            flight.cancel_event = Event()
        return False

    def request(self, scope: Hashable) -> bool:
        with self._lock:
            flight = self._flights.get(scope)
            if flight is not None:
                flight.pending = True
                logger.debug("recompute for %s already in flight; queued a trailing run", scope)
                return False
            flight = self._flights[scope] = _Flight()
        try:
            while True:
                with self._lock:
                    flight.pending = False
                try:
                    self._job(scope, flight.cancel_event)
                except Exception:
                    with self._lock:
                        if self._finish_or_rearm(scope, flight):
                            raise
                    logger.warning(
                        "recompute for %s failed with changes pending; running again", scope, exc_info=True
                    )
                    continue
                with self._lock:
                    if self._finish_or_rearm(scope, flight):
                        return True
                logger.info("changes arrived during recompute for %s; running again", scope)
        except BaseException:
            with self._lock:
                if self._flights.get(scope) is flight:
                    del self._flights[scope]
            raise

    def in_flight(self, scope: Hashable) -> bool:
        with self._lock:
            return scope in self._flights

    def cancel(self, scope: Hashable) -> bool:
        with self._lock:
            flight = self._flights.get(scope)
            if flight is None:
                return False
            flight.cancel_event.set()
            return True


class SnapshotCache(Generic[T]):
    """Latest complete result per scope, refreshed through a ``SingleFlight``.

    A build that raises (failed or cancelled scan) leaves the previous snapshot
    in place, so partial results are never published.
    """

    def __init__(self, build: Callable[[Hashable, Event], T]) -> None:
        self._build = build
        self._lock = Lock()
        self._snapshots: dict[Hashable, T] = {}
        self._flight = SingleFlight(self._refresh)

    def _refresh(self, scope: Hashable, cancel_event: Event) -> None:
        snapshot = self._build(scope, cancel_event)
        with self._lock:
            self._snapshots[scope] = snapshot
        logger.info("published snapshot for %s", scope)

    def notify(self, scope: Hashable) -> bool:
        return self._flight.request(scope)

    def cancel(self, scope: Hashable) -> bool:
        return self._flight.cancel(scope)

    def in_flight(self, scope: Hashable) -> bool:
        return self._flight.in_flight(scope)

    def get(self, scope: Hashable) -> Optional[T]:
        with self._lock:
            return self._snapshots.get(scope)

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()
