from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel

from revenue_engine.aggregation import (
    TimeBucket,
    average_amount,
    local_day,
    local_hour,
    peak_hours,
    reference_zone,
)
from revenue_engine.config import Settings, settings
from revenue_engine.money import from_minor
from revenue_engine.schemas import BillRecord

VERY_BUSY_ORDERS = 10
BUSY_ORDERS = 5
ACTIVE_ORDERS = 2
GREAT_DAY_ORDERS = 20


class LiveStats(BaseModel):
    today_revenue_minor: int
    today_orders: int
    current_hour_revenue_minor: int
    current_hour_orders: int
    average_order_value: Decimal
    last_order_at: Optional[datetime] = None
    status_message: str


def activity_message(current_hour_orders: int) -> str:
    if current_hour_orders >= VERY_BUSY_ORDERS:
        return "Store is very busy"
    if current_hour_orders >= BUSY_ORDERS:
        return "Store is busy"
    if current_hour_orders >= ACTIVE_ORDERS:
        return "Store is moderately active"
    return "Store is quiet"


def live_stats(
    bills: Sequence[BillRecord], now: datetime, config: Optional[Settings] = None
) -> LiveStats:
    """Summarize the reference-zone calendar day that contains ``now``."""
    config = config or settings
    tz = reference_zone(config)
    today = local_day(now, tz)
    hour = local_hour(now, tz)
    todays = [bill for bill in bills if local_day(bill.created_at, tz) == today]
    this_hour = [bill for bill in todays if local_hour(bill.created_at, tz) == hour]
    today_revenue = sum(bill.net_total_minor for bill in todays)
    return LiveStats(
        today_revenue_minor=today_revenue,
        today_orders=len(todays),
        current_hour_revenue_minor=sum(bill.net_total_minor for bill in this_hour),
        current_hour_orders=len(this_hour),
        average_order_value=average_amount(today_revenue, len(todays)),
        last_order_at=max((bill.created_at for bill in todays), default=None),
        status_message=activity_message(len(this_hour)),
    )


def hourly_insights(
    buckets: Sequence[TimeBucket], now: datetime, config: Optional[Settings] = None
) -> list[str]:
    config = config or settings
    insights: list[str] = []
    peaks = peak_hours(buckets, 1)
    if peaks and peaks[0].revenue_minor > 0:
        insights.append(f"Peak hour: {peaks[0].key}:00 with {from_minor(peaks[0].revenue_minor)} revenue")
    average = sum(bucket.revenue_minor for bucket in buckets) / 24
    current_hour = local_hour(now, reference_zone(config))
    current = next((bucket for bucket in buckets if bucket.hour == current_hour), None)
    if current is not None and current.revenue_minor > 0:
        if current.revenue_minor > average * 1.5:
            insights.append("Current hour is performing 50%+ above average")
        elif current.revenue_minor < average * 0.5:
            insights.append("Current hour is below average, consider a quick promo")
    total_orders = sum(bucket.orders for bucket in buckets)
    if total_orders > GREAT_DAY_ORDERS:
        insights.append(f"Great day! {total_orders} orders so far")
    return insights
