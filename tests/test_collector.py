from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Event

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from revenue_engine.collector import collect_all, list_bills, list_line_items, query_page_source
from revenue_engine.db import Base
from revenue_engine.errors import CollectionCancelled, SourceUnavailable
from revenue_engine.models import Bill, BillLineItem
from revenue_engine.schemas import DateRange


def _paged_source(rows: list, calls: list):
    def fetch(offset: int, limit: int) -> list:
        calls.append((offset, limit))
        return rows[offset:offset + limit]

    return fetch


def _make_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


@pytest.mark.parametrize("total", [0, 1, 4, 5, 10, 11, 23])
@pytest.mark.parametrize("page_size", [1, 5, 1000])
def test_collects_every_row_exactly_once(total: int, page_size: int) -> None:
    rows = list(range(total))
    calls: list = []
    assert collect_all(_paged_source(rows, calls), page_size) == rows
    assert all(limit == page_size for _, limit in calls)
    assert [offset for offset, _ in calls] == [page_size * n for n in range(len(calls))]


def test_full_last_page_needs_one_empty_request() -> None:
    calls: list = []
    collect_all(_paged_source(list(range(10)), calls), 5)
    assert calls == [(0, 5), (5, 5), (10, 5)]


def test_short_page_ends_collection() -> None:
    calls: list = []
    collect_all(_paged_source(list(range(7)), calls), 5)
    assert calls == [(0, 5), (5, 5)]


def test_page_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        collect_all(_paged_source([], []), 0)


def test_page_error_aborts_without_partial_result() -> None:
    def fetch(offset: int, limit: int) -> list:
        if offset >= 4:
            raise SourceUnavailable("row store went away")
        return list(range(offset, offset + limit))

    with pytest.raises(SourceUnavailable):
        collect_all(fetch, 2)


def test_cancelled_collection_raises() -> None:
    cancel = Event()
    calls: list = []

    def fetch(offset: int, limit: int) -> list:
        calls.append(offset)
        if offset == 2:
            cancel.set()
        return list(range(offset, offset + limit))

    with pytest.raises(CollectionCancelled):
        collect_all(fetch, 2, cancel)
    assert calls == [0, 2]


def test_query_page_source_translates_database_errors() -> None:
    class BrokenQuery:
        def offset(self, offset):
            return self

        def limit(self, limit):
            return self

        def all(self):
            raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    with pytest.raises(SourceUnavailable):
        query_page_source(BrokenQuery())(0, 10)


def test_list_bills_pages_through_the_row_store() -> None:
    db = _make_session()
    start = datetime(2026, 1, 10, 6, 30, tzinfo=timezone.utc)
    for n in range(7):
        db.add(
            Bill(
                franchise_id="FR-1" if n != 3 else "FR-2",
                net_total=Decimal("10.00") * (n + 1),
                created_at=start + timedelta(hours=n),
            )
        )
    db.commit()

    bills = list_bills(db, "FR-1", None, page_size=2)
    assert [bill.net_total for bill in bills] == [Decimal(v) for v in ("10.00", "20.00", "30.00", "50.00", "60.00", "70.00")]
    assert all(bill.created_at.tzinfo is not None for bill in bills)

    window = DateRange(start=start + timedelta(hours=1), end=start + timedelta(hours=3))
    assert [bill.net_total_minor for bill in list_bills(db, None, window, page_size=1)] == [2000, 3000]
    db.close()


def test_list_line_items_chunks_bill_ids() -> None:
    db = _make_session()
    created_at = datetime(2026, 1, 10, 6, 30, tzinfo=timezone.utc)
    bill_ids = []
    for n in range(5):
        bill = Bill(franchise_id="FR-1", net_total=Decimal("25.00"), created_at=created_at)
        db.add(bill)
        db.flush()
        bill_ids.append(bill.id)
        for qty in (1, 2):
            db.add(
                BillLineItem(
                    bill_id=bill.id, franchise_id="FR-1", item_name=f"Item {qty}", qty=qty, price=Decimal("5.00")
                )
            )
    db.commit()

    items = list_line_items(db, bill_ids[:4], page_size=3, chunk_size=2)
    assert len(items) == 8
    assert {item.bill_id for item in items} == set(bill_ids[:4])
    assert list_line_items(db, [], page_size=3, chunk_size=2) == []
    db.close()
