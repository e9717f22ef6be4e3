from __future__ import annotations

import logging
from threading import Event
from typing import Callable, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from revenue_engine.errors import CollectionCancelled, SourceUnavailable
from revenue_engine.models import Bill, BillLineItem
from revenue_engine.schemas import BillRecord, DateRange, LineItemRecord, as_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

PageFetcher = Callable[[int, int], Sequence[T]]


def collect_all(
    fetch_page: PageFetcher,
    page_size: int,
    cancel_event: Optional[Event] = None,
) -> list:
    """Drain a paged source into one list.

    Pages are requested one at a time at increasing offsets until a page comes
    back shorter than ``page_size`` (an empty page included). Errors from
    ``fetch_page`` propagate untouched and nothing collected so far is
    returned. Setting ``cancel_event`` stops the scan before the next request
    and raises ``CollectionCancelled``.
    """
    if page_size < 1:
        raise ValueError("page_size must be at least 1")
    rows: list = []
    offset = 0
    pages = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise CollectionCancelled(f"scan cancelled after {pages} pages ({len(rows)} rows)")
        page = list(fetch_page(offset, page_size))
        pages += 1
        rows.extend(page)
        if len(page) < page_size:
            break
        offset += len(page)
    logger.debug("collected %d rows in %d pages (page_size=%d)", len(rows), pages, page_size)
    return rows


def query_page_source(query: Query) -> PageFetcher:
    def fetch(offset: int, limit: int) -> list:
        try:
            return query.offset(offset).limit(limit).all()
        except SQLAlchemyError as exc:
            logger.warning("page request failed at offset %d: %s", offset, exc)
            raise SourceUnavailable(f"page request failed at offset {offset}") from exc

    return fetch


def bill_record(row: Bill) -> BillRecord:
    return BillRecord(
        id=row.id,
        franchise_id=row.franchise_id,
        net_total=row.net_total,
        created_at=row.created_at,
    )


def line_item_record(row: BillLineItem) -> LineItemRecord:
    return LineItemRecord(
        id=row.id,
        bill_id=row.bill_id,
        name=row.item_name,
        quantity=row.qty,
        unit_price=row.price,
        category=row.category,
    )


def list_bills(
    db: Session,
    franchise_id: Optional[str],
    date_range: Optional[DateRange],
    page_size: int,
    cancel_event: Optional[Event] = None,
) -> list[BillRecord]:
    query = db.query(Bill)
    if franchise_id is not None:
        query = query.filter(Bill.franchise_id == franchise_id)
    if date_range is not None:
        if date_range.start is not None:
            query = query.filter(Bill.created_at >= as_utc(date_range.start))
        if date_range.end is not None:
            query = query.filter(Bill.created_at < as_utc(date_range.end))
    query = query.order_by(Bill.created_at, Bill.id)
    rows = collect_all(query_page_source(query), page_size, cancel_event)
    return [bill_record(row) for row in rows]


def list_line_items(
    db: Session,
    bill_ids: Sequence[int],
    page_size: int,
    chunk_size: int,
    cancel_event: Optional[Event] = None,
) -> list[LineItemRecord]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    items: list[LineItemRecord] = []
    for start in range(0, len(bill_ids), chunk_size):
        chunk = list(bill_ids[start:start + chunk_size])
        query = (
            db.query(BillLineItem)
            .filter(BillLineItem.bill_id.in_(chunk))
            .order_by(BillLineItem.id)
        )
        rows = collect_all(query_page_source(query), page_size, cancel_event)
        items.extend(line_item_record(row) for row in rows)
    return items
