from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Event
from typing import Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from revenue_engine.aggregation import (
    AggregateSummary,
    Dimension,
    Figure,
    FranchiseShare,
    Granularity,
    ItemBucket,
    TimeBucket,
    aggregate_scope,
    daily_buckets,
    day_range,
    franchise_shares,
    hourly_buckets,
    local_day,
    peak_hours,
    popular_items,
    reference_zone,
)
from revenue_engine.allocation import AllocationResult, allocate_bill, allocate_bills
from revenue_engine.collector import bill_record, list_bills, list_line_items
from revenue_engine.config import Settings, settings
from revenue_engine.discounts import DiscountSummary, LifetimeDiscount, reconcile_discounts
from revenue_engine.errors import BaselineConflict, SourceUnavailable
from revenue_engine.forecast import ForecastReport, forecast_report
from revenue_engine.live import LiveStats, hourly_insights, live_stats
from revenue_engine.models import Bill, BillLineItem, DiscountBaseline
from revenue_engine.money import to_minor
from revenue_engine.schemas import BillLineItemInput, BillRecord, DateRange, LineItemRecord, as_utc

logger = logging.getLogger(__name__)

WEEK_DAYS = 7


def _now() -> datetime:
    return datetime.now(timezone.utc)


def load_scope(
    db: Session,
    franchise_id: Optional[str],
    date_range: Optional[DateRange],
    config: Settings,
    cancel_event: Optional[Event] = None,
) -> tuple[list[BillRecord], list[LineItemRecord]]:
    bills = list_bills(db, franchise_id, date_range, config.page_size, cancel_event)
    items = list_line_items(
        db, [bill.id for bill in bills], config.page_size, config.id_chunk_size, cancel_event
    )
    logger.debug(
        "loaded %d bills and %d line items for franchise=%s range=%s",
        len(bills),
        len(items),
        franchise_id,
        date_range,
    )
    return bills, items


def reconcile_bill(
    db: Session, bill_id: int, config: Optional[Settings] = None
) -> Optional[AllocationResult]:
    config = config or settings
    try:
        row = db.get(Bill, bill_id)
    except SQLAlchemyError as exc:
        raise SourceUnavailable(f"could not load bill {bill_id}") from exc
    if row is None:
        return None
    items = list_line_items(db, [bill_id], config.page_size, config.id_chunk_size)
    return allocate_bill(bill_record(row), items)


def discounts_for(
    db: Session,
    franchise_id: str,
    date_range: Optional[DateRange] = None,
    config: Optional[Settings] = None,
) -> DiscountSummary:
    config = config or settings
    bills, items = load_scope(db, franchise_id, date_range, config)
    return reconcile_discounts(bills, items, config, franchise_id=franchise_id)


def get_baseline(db: Session, franchise_id: str) -> Optional[DiscountBaseline]:
    return db.query(DiscountBaseline).filter(DiscountBaseline.franchise_id == franchise_id).first()


def set_baseline(
    db: Session,
    franchise_id: str,
    amount: Decimal,
    covers_until: Optional[datetime] = None,
    expected_version: Optional[int] = None,
) -> DiscountBaseline:
    """Write the operator-set lifetime discount offset.

    With ``expected_version`` the write only succeeds against that exact
    version (0 meaning "no baseline yet"); otherwise it is last-writer-wins.
    """
    baseline = get_baseline(db, franchise_id)
    current_version = baseline.version if baseline is not None else 0
    if expected_version is not None and expected_version != current_version:
        raise BaselineConflict(
            f"baseline for {franchise_id} is at version {current_version}, not {expected_version}"
        )
    if baseline is None:
        baseline = DiscountBaseline(franchise_id=franchise_id)
        db.add(baseline)
    baseline.amount = amount
    baseline.covers_until = covers_until
    baseline.updated_at = _now()
    try:
        db.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.rollback()
        raise BaselineConflict(f"baseline for {franchise_id} changed concurrently") from exc
    db.refresh(baseline)
    logger.info("discount baseline for %s set to %s (version %d)", franchise_id, amount, baseline.version)
    return baseline


def lifetime_discount(
    db: Session, franchise_id: str, config: Optional[Settings] = None
) -> LifetimeDiscount:
    config = config or settings
    baseline = get_baseline(db, franchise_id)
    live_range = None
    baseline_minor = 0
    if baseline is not None:
        baseline_minor = to_minor(baseline.amount)
        if baseline.covers_until is not None:
            live_range = DateRange(start=as_utc(baseline.covers_until))
    summary = discounts_for(db, franchise_id, live_range, config)
    return LifetimeDiscount(
        franchise_id=franchise_id,
        baseline_minor=baseline_minor,
        live_minor=summary.total_minor,
    )


def aggregate(
    db: Session,
    franchise_id: str,
    date_range: Optional[DateRange] = None,
    granularity: Granularity = "day",
    dimension: Dimension = "time",
    figure: Figure = "net",
    config: Optional[Settings] = None,
) -> AggregateSummary:
    config = config or settings
    bills, items = load_scope(db, franchise_id, date_range, config)
    allocations = allocate_bills(bills, items) if dimension == "category" else []
    return aggregate_scope(
        bills,
        allocations,
        items,
        granularity=granularity,
        dimension=dimension,
        figure=figure,
        date_range=date_range,
        franchise_id=franchise_id,
        config=config,
    )


def peak_hours_for(
    db: Session,
    franchise_id: str,
    date_range: Optional[DateRange] = None,
    config: Optional[Settings] = None,
) -> list[TimeBucket]:
    config = config or settings
    bills, items = load_scope(db, franchise_id, date_range, config)
    return peak_hours(hourly_buckets(bills, items, config), config.peak_hours_limit)


def _today_range(now: datetime, config: Settings, days_back: int = 0) -> DateRange:
    tz = reference_zone(config)
    today = local_day(now, tz)
    first = day_range(today - timedelta(days=days_back), tz)
    return DateRange(start=first.start, end=day_range(today, tz).end)


def _split_by_day(
    bills: list[BillRecord], items: list[LineItemRecord], window: DateRange
) -> tuple[list[BillRecord], list[LineItemRecord]]:
    inside = [bill for bill in bills if window.contains(bill.created_at)]
    ids = {bill.id for bill in inside}
    return inside, [item for item in items if item.bill_id in ids]


def popular_items_for(
    db: Session,
    franchise_id: str,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> list[ItemBucket]:
    config = config or settings
    now = now or _now()
    bills, items = load_scope(db, franchise_id, _today_range(now, config, days_back=1), config)
    return _popular_from(bills, items, now, config)


def _popular_from(
    bills: list[BillRecord], items: list[LineItemRecord], now: datetime, config: Settings
) -> list[ItemBucket]:
    tz = reference_zone(config)
    today = local_day(now, tz)
    today_bills, today_items = _split_by_day(bills, items, day_range(today, tz))
    prior_bills, prior_items = _split_by_day(bills, items, day_range(today - timedelta(days=1), tz))
    return popular_items(
        allocate_bills(today_bills, today_items),
        allocate_bills(prior_bills, prior_items),
        config,
    )


def live_stats_for(
    db: Session,
    franchise_id: str,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> LiveStats:
    config = config or settings
    now = now or _now()
    bills = list_bills(db, franchise_id, _today_range(now, config), config.page_size)
    return live_stats(bills, now, config)


def weekly_performance(
    db: Session,
    franchise_id: Optional[str],
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> list[TimeBucket]:
    config = config or settings
    now = now or _now()
    week = _today_range(now, config, days_back=WEEK_DAYS - 1)
    bills = list_bills(db, franchise_id, week, config.page_size)
    return daily_buckets(bills, week, config=config)


def franchise_shares_for(
    db: Session,
    date_range: Optional[DateRange] = None,
    config: Optional[Settings] = None,
) -> list[FranchiseShare]:
    config = config or settings
    return franchise_shares(list_bills(db, None, date_range, config.page_size))


def forecast_items(
    db: Session,
    franchise_id: str,
    history_days: Optional[int] = None,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> ForecastReport:
    """Fit item trends over the last ``history_days`` local days, or all history when None."""
    config = config or settings
    window = None
    if history_days is not None:
        window = _today_range(now or _now(), config, days_back=max(history_days - 1, 0))
    bills, items = load_scope(db, franchise_id, window, config)
    return forecast_report(bills, items, config, franchise_id=franchise_id)


class DashboardSnapshot(BaseModel):
    franchise_id: str
    generated_at: datetime
    live: LiveStats
    hourly: list[TimeBucket]
    peak_hours: list[TimeBucket]
    hourly_insights: list[str]
    weekly: list[TimeBucket]
    popular_items: list[ItemBucket]
    discount_today_minor: int


def build_dashboard(
    db: Session,
    franchise_id: str,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
    cancel_event: Optional[Event] = None,
) -> DashboardSnapshot:
    config = config or settings
    now = now or _now()
    tz = reference_zone(config)
    week = _today_range(now, config, days_back=WEEK_DAYS - 1)
    bills, items = load_scope(db, franchise_id, week, config, cancel_event)
    today_bills, today_items = _split_by_day(bills, items, day_range(local_day(now, tz), tz))
    hourly = hourly_buckets(today_bills, today_items, config)
    return DashboardSnapshot(
        franchise_id=franchise_id,
        generated_at=now,
        live=live_stats(today_bills, now, config),
        hourly=hourly,
        peak_hours=peak_hours(hourly, config.peak_hours_limit),
        hourly_insights=hourly_insights(hourly, now, config),
        weekly=daily_buckets(bills, week, items, config),
        popular_items=_popular_from(bills, items, now, config),
        discount_today_minor=reconcile_discounts(today_bills, today_items, config).total_minor,
    )


def dashboard_is_stale(
    snapshot: DashboardSnapshot, now: Optional[datetime] = None, config: Optional[Settings] = None
) -> bool:
    """A snapshot goes stale once it is too old or the local hour has moved on.

    Live stats and today's buckets are pinned to the hour the snapshot was
    built in, so an hour or day rollover forces a rebuild even without events.
    """
    config = config or settings
    now = now or _now()
    tz = reference_zone(config)
    built = snapshot.generated_at.astimezone(tz)
    current = now.astimezone(tz)
    if (built.date(), built.hour) != (current.date(), current.hour):
        return True
    return (now - snapshot.generated_at).total_seconds() > config.dashboard_max_age_seconds


def record_bill(
    db: Session,
    franchise_id: str,
    net_total: Decimal,
    created_at: datetime,
    line_items: Sequence[BillLineItemInput],
    mode_payment: Optional[str] = None,
) -> tuple[Bill, list[BillLineItem]]:
    bill = Bill(
        franchise_id=franchise_id,
        net_total=net_total,
        mode_payment=mode_payment,
        created_at=created_at.astimezone(timezone.utc),
    )
    db.add(bill)
    db.flush()
    rows = []
    for line in line_items:
        row = BillLineItem(
            bill_id=bill.id,
            franchise_id=franchise_id,
            item_name=line.item_name,
            qty=line.qty,
            price=line.price,
            category=line.category,
        )
        db.add(row)
        rows.append(row)
    db.commit()
    db.refresh(bill)
    for row in rows:
        db.refresh(row)
    return bill, rows


def bill_items(db: Session, bill_id: int, config: Optional[Settings] = None) -> list[LineItemRecord]:
    config = config or settings
    return list_line_items(db, [bill_id], config.page_size, config.id_chunk_size)
