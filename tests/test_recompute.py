from threading import Event, Thread

import pytest

from revenue_engine.errors import CollectionCancelled, SourceUnavailable
from revenue_engine.recompute import SingleFlight, SnapshotCache


def test_idle_scope_runs_once() -> None:
    runs: list = []
    flight = SingleFlight(lambda scope, cancel_event: runs.append(scope))
    assert flight.request("FR-1") is True
    assert runs == ["FR-1"]
    assert not flight.in_flight("FR-1")


def test_requests_during_a_run_fold_into_one_trailing_run() -> None:
    started = Event()
    release = Event()
    runs: list = []

    def job(scope, cancel_event) -> None:
        runs.append(scope)
        if len(runs) == 1:
            started.set()
            release.wait(timeout=5)

    flight = SingleFlight(job)
    worker = Thread(target=flight.request, args=("FR-1",))
    worker.start()
    assert started.wait(timeout=5)

    assert flight.in_flight("FR-1")
    assert flight.request("FR-1") is False
    assert flight.request("FR-1") is False
    assert flight.request("FR-1") is False

    release.set()
    worker.join(timeout=5)
    assert runs == ["FR-1", "FR-1"]
    assert not flight.in_flight("FR-1")


def test_scopes_do_not_block_each_other() -> None:
    started = Event()
    release = Event()
    runs: list = []

    def job(scope, cancel_event) -> None:
        runs.append(scope)
        if scope == "FR-1":
            started.set()
            release.wait(timeout=5)

    flight = SingleFlight(job)
    worker = Thread(target=flight.request, args=("FR-1",))
    worker.start()
    assert started.wait(timeout=5)
    assert flight.request("FR-2") is True
    release.set()
    worker.join(timeout=5)
    assert sorted(runs) == ["FR-1", "FR-2"]


def test_failed_build_keeps_previous_snapshot() -> None:
    outcomes = iter(["first", SourceUnavailable("row store down")])

    def build(scope, cancel_event) -> str:
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return f"{scope}:{outcome}"

    cache = SnapshotCache(build)
    assert cache.get("FR-1") is None
    cache.notify("FR-1")
    assert cache.get("FR-1") == "FR-1:first"

    with pytest.raises(SourceUnavailable):
        cache.notify("FR-1")
    assert cache.get("FR-1") == "FR-1:first"
    assert not cache.in_flight("FR-1")


def test_cancelled_build_publishes_nothing() -> None:
    started = Event()
    errors: list = []

    def build(scope, cancel_event: Event) -> str:
        started.set()
        if cancel_event.wait(timeout=5):
            raise CollectionCancelled("cancelled")
        return "finished"

    cache = SnapshotCache(build)

    def refresh() -> None:
        try:
            cache.notify("FR-1")
        except CollectionCancelled as exc:
            errors.append(exc)

    worker = Thread(target=refresh)
    worker.start()
    assert started.wait(timeout=5)
    assert cache.cancel("FR-1") is True
    worker.join(timeout=5)

    assert len(errors) == 1
    assert cache.get("FR-1") is None
    assert cache.cancel("FR-1") is False


def test_clear_drops_snapshots() -> None:
    cache = SnapshotCache(lambda scope, cancel_event: {"scope": scope})
    cache.notify("FR-1")
    cache.clear()
    assert cache.get("FR-1") is None


def test_request_after_cancel_still_gets_a_trailing_run() -> None:
    started = Event()
    release = Event()
    runs: list = []
    events: list = []

    def job(scope, cancel_event: Event) -> None:
        runs.append(scope)
        events.append(cancel_event)
        if len(runs) == 1:
            started.set()
            release.wait(timeout=5)
            if cancel_event.is_set():
                raise CollectionCancelled("cancelled")

    flight = SingleFlight(job)
    worker = Thread(target=flight.request, args=("FR-1",))
    worker.start()
    assert started.wait(timeout=5)

    assert flight.cancel("FR-1") is True
    assert flight.request("FR-1") is False
    release.set()
    worker.join(timeout=5)

    assert runs == ["FR-1", "FR-1"]
    assert events[0].is_set()
    assert not events[1].is_set()
    assert not flight.in_flight("FR-1")


def test_cancelled_run_that_completes_still_runs_queued_request() -> None:
    started = Event()
    release = Event()
    runs: list = []

    def job(scope, cancel_event: Event) -> None:
        runs.append(cancel_event.is_set())
        if len(runs) == 1:
            started.set()
            release.wait(timeout=5)

    flight = SingleFlight(job)
    worker = Thread(target=flight.request, args=("FR-1",))
    worker.start()
    assert started.wait(timeout=5)

    flight.cancel("FR-1")
    flight.request("FR-1")
    release.set()
    worker.join(timeout=5)

    assert runs == [False, False]


def test_failed_pass_with_queued_request_publishes_trailing_snapshot() -> None:
    started = Event()
    release = Event()
    calls: list = []

    def build(scope, cancel_event: Event) -> str:
        calls.append(scope)
        if len(calls) == 1:
            started.set()
            release.wait(timeout=5)
            raise SourceUnavailable("row store down")
        return "fresh"

    cache = SnapshotCache(build)
    results: list = []
    worker = Thread(target=lambda: results.append(cache.notify("FR-1")))
    worker.start()
    assert started.wait(timeout=5)

    assert cache.notify("FR-1") is False
    release.set()
    worker.join(timeout=5)

    assert results == [True]
    assert cache.get("FR-1") == "fresh"
    assert not cache.in_flight("FR-1")
