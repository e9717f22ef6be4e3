from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Callable, Literal, Optional, Sequence, TypeVar, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from revenue_engine.allocation import AllocationResult, group_items_by_bill
from revenue_engine.config import Settings, settings
from revenue_engine.money import CENT, MINOR_UNITS_PER_MAJOR, from_minor
from revenue_engine.schemas import BillRecord, DateRange, LineItemRecord

Granularity = Literal["hour", "day"]
Dimension = Literal["time", "category"]
Figure = Literal["net", "raw"]

T = TypeVar("T")


def share(part: float, total: float) -> float:
    if total == 0:
        return 0.0
    return part * 100.0 / total


def top_n(rows: Sequence[T], key: Callable[[T], float], limit: int) -> list[T]:
    # sorted() is stable, so equal keys keep their input order
    return sorted(rows, key=lambda row: -key(row))[:limit]


def reference_zone(config: Settings) -> ZoneInfo:
    return ZoneInfo(config.reference_timezone)


def local_hour(moment: datetime, tz: ZoneInfo) -> int:
    return moment.astimezone(tz).hour


def local_day(moment: datetime, tz: ZoneInfo) -> date:
    return moment.astimezone(tz).date()


def day_range(day: date, tz: ZoneInfo) -> DateRange:
    return DateRange(
        start=datetime.combine(day, time.min, tzinfo=tz),
        end=datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz),
    )


def days_in_range(date_range: DateRange, tz: ZoneInfo) -> list[date]:
    if not date_range.bounded or date_range.end <= date_range.start:
        return []
    first = local_day(date_range.start, tz)
    last = local_day(date_range.end - timedelta(microseconds=1), tz)
    return [first + timedelta(days=offset) for offset in range((last - first).days + 1)]


def average_amount(total_minor: int, count: int) -> Decimal:
    if count == 0:
        return Decimal("0.00")
    return (Decimal(total_minor) / count / MINOR_UNITS_PER_MAJOR).quantize(CENT)


class TimeBucket(BaseModel):
    key: str
    hour: Optional[int] = None
    day: Optional[date] = None
    revenue_minor: int = 0
    orders: int = 0
    quantity: int = 0
    percentage: float = 0.0

    @property
    def revenue(self) -> Decimal:
        return from_minor(self.revenue_minor)

    @property
    def average_order_value(self) -> Decimal:
        return average_amount(self.revenue_minor, self.orders)


class CategoryBucket(BaseModel):
    category: str
    revenue_minor: int = 0
    quantity: int = 0
    items: int = 0
    percentage: float = 0.0

    @property
    def revenue(self) -> Decimal:
        return from_minor(self.revenue_minor)


class ItemBucket(BaseModel):
    name: str
    category: str
    quantity: int = 0
    raw_revenue_minor: int = 0
    net_revenue_minor: int = 0
    percentage: float = 0.0
    growth: float = 0.0


class FranchiseShare(BaseModel):
    franchise_id: str
    revenue_minor: int = 0
    orders: int = 0
    percentage: float = 0.0
    last_activity: Optional[datetime] = None


class AggregateSummary(BaseModel):
    franchise_id: Optional[str] = None
    granularity: Granularity
    dimension: Dimension
    figure: Figure
    buckets: list[Union[TimeBucket, CategoryBucket]]
    total_revenue_minor: int
    total_orders: int
    total_quantity: int
    # net revenue of bills whose lines carry no raw value, so no category can claim it
    unallocated_minor: int = 0


def _quantity_by_bill(items: Sequence[LineItemRecord]) -> dict[int, int]:
    return {
        bill_id: sum(item.quantity for item in lines)
        for bill_id, lines in group_items_by_bill(items).items()
    }


def _fill_percentages(buckets: Sequence[TimeBucket]) -> None:
    total = sum(bucket.revenue_minor for bucket in buckets)
    for bucket in buckets:
        bucket.percentage = share(bucket.revenue_minor, total)


def hourly_buckets(
    bills: Sequence[BillRecord],
    items: Sequence[LineItemRecord] = (),
    config: Optional[Settings] = None,
) -> list[TimeBucket]:
    config = config or settings
    tz = reference_zone(config)
    quantities = _quantity_by_bill(items)
    buckets = [TimeBucket(key=f"{hour:02d}", hour=hour) for hour in range(24)]
    for bill in bills:
        bucket = buckets[local_hour(bill.created_at, tz)]
        bucket.revenue_minor += bill.net_total_minor
        bucket.orders += 1
        bucket.quantity += quantities.get(bill.id, 0)
    _fill_percentages(buckets)
    return buckets


def daily_buckets(
    bills: Sequence[BillRecord],
    date_range: Optional[DateRange] = None,
    items: Sequence[LineItemRecord] = (),
    config: Optional[Settings] = None,
) -> list[TimeBucket]:
    config = config or settings
    tz = reference_zone(config)
    quantities = _quantity_by_bill(items)
    by_day: dict[date, TimeBucket] = {}
    if date_range is not None:
        for day in days_in_range(date_range, tz):
            by_day[day] = TimeBucket(key=day.isoformat(), day=day)
    for bill in bills:
        day = local_day(bill.created_at, tz)
        bucket = by_day.get(day)
        if bucket is None:
            bucket = by_day[day] = TimeBucket(key=day.isoformat(), day=day)
        bucket.revenue_minor += bill.net_total_minor
        bucket.orders += 1
        bucket.quantity += quantities.get(bill.id, 0)
    buckets = [by_day[day] for day in sorted(by_day)]
    _fill_percentages(buckets)
    return buckets


def category_buckets(
    allocations: Sequence[AllocationResult],
    figure: Figure = "net",
    config: Optional[Settings] = None,
) -> list[CategoryBucket]:
    config = config or settings
    by_category: dict[str, CategoryBucket] = {}
    names: dict[str, set[str]] = {}
    for allocation in allocations:
        for line in allocation.lines:
            category = line.category
            if category is None or not category.strip():
                category = config.default_category
            bucket = by_category.get(category)
            if bucket is None:
                bucket = by_category[category] = CategoryBucket(category=category)
                names[category] = set()
            bucket.revenue_minor += line.allocated_minor if figure == "net" else line.raw_minor
            bucket.quantity += line.quantity
            names[category].add(line.name)
    total = sum(bucket.revenue_minor for bucket in by_category.values())
    for category, bucket in by_category.items():
        bucket.items = len(names[category])
        bucket.percentage = share(bucket.revenue_minor, total)
    return sorted(by_category.values(), key=lambda bucket: -bucket.revenue_minor)


def item_buckets(
    allocations: Sequence[AllocationResult],
    config: Optional[Settings] = None,
) -> list[ItemBucket]:
    """Fold allocated lines into one bucket per (name, category) label.

    Lines are matched on their display label only, so two differently priced
    products sold under the same name land in the same bucket.
    """
    config = config or settings
    by_item: dict[tuple[str, str], ItemBucket] = {}
    for allocation in allocations:
        for line in allocation.lines:
            category = line.category
            if category is None or not category.strip():
                category = config.default_category
            key = (line.name, category)
            bucket = by_item.get(key)
            if bucket is None:
                bucket = by_item[key] = ItemBucket(name=line.name, category=category)
            bucket.quantity += line.quantity
            bucket.raw_revenue_minor += line.raw_minor
            bucket.net_revenue_minor += line.allocated_minor
    buckets = list(by_item.values())
    total_quantity = sum(bucket.quantity for bucket in buckets)
    for bucket in buckets:
        bucket.percentage = share(bucket.quantity, total_quantity)
    return buckets


def aggregate_scope(
    bills: Sequence[BillRecord],
    allocations: Sequence[AllocationResult],
    items: Sequence[LineItemRecord],
    granularity: Granularity = "day",
    dimension: Dimension = "time",
    figure: Figure = "net",
    date_range: Optional[DateRange] = None,
    franchise_id: Optional[str] = None,
    config: Optional[Settings] = None,
) -> AggregateSummary:
    config = config or settings
    total_quantity = sum(item.quantity for item in items)
    if dimension == "category":
        buckets = category_buckets(allocations, figure, config)
        unallocated = sum(a.net_total_minor for a in allocations if a.degenerate) if figure == "net" else 0
        total_revenue = sum(bucket.revenue_minor for bucket in buckets) + unallocated
    else:
        if granularity == "hour":
            buckets = hourly_buckets(bills, items, config)
        else:
            buckets = daily_buckets(bills, date_range, items, config)
        unallocated = 0
        total_revenue = sum(bill.net_total_minor for bill in bills)
    return AggregateSummary(
        franchise_id=franchise_id,
        granularity=granularity,
        dimension=dimension,
        figure=figure,
        buckets=buckets,
        total_revenue_minor=total_revenue,
        total_orders=len(bills),
        total_quantity=total_quantity,
        unallocated_minor=unallocated,
    )


def peak_hours(buckets: Sequence[TimeBucket], limit: int) -> list[TimeBucket]:
    return top_n(buckets, lambda bucket: bucket.revenue_minor, limit)


def popular_items(
    current: Sequence[AllocationResult],
    previous: Sequence[AllocationResult] = (),
    config: Optional[Settings] = None,
    limit: Optional[int] = None,
) -> list[ItemBucket]:
    config = config or settings
    earlier = {
        (bucket.name, bucket.category): bucket.quantity
        for bucket in item_buckets(previous, config)
    }
    buckets = item_buckets(current, config)
    for bucket in buckets:
        before = earlier.get((bucket.name, bucket.category), 0)
        bucket.growth = share(bucket.quantity - before, before) if before else 0.0
    return top_n(
        buckets,
        lambda bucket: bucket.quantity,
        config.popular_items_limit if limit is None else limit,
    )


def franchise_shares(bills: Sequence[BillRecord]) -> list[FranchiseShare]:
    by_franchise: dict[str, FranchiseShare] = {}
    for bill in bills:
        entry = by_franchise.get(bill.franchise_id)
        if entry is None:
            entry = by_franchise[bill.franchise_id] = FranchiseShare(franchise_id=bill.franchise_id)
        entry.revenue_minor += bill.net_total_minor
        entry.orders += 1
        if entry.last_activity is None or bill.created_at > entry.last_activity:
            entry.last_activity = bill.created_at
    total = sum(entry.revenue_minor for entry in by_franchise.values())
    for entry in by_franchise.values():
        entry.percentage = share(entry.revenue_minor, total)
    return top_n(list(by_franchise.values()), lambda entry: entry.revenue_minor, len(by_franchise))
