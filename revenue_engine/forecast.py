from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Literal, Optional, Sequence

from pydantic import BaseModel

from revenue_engine.aggregation import local_day, reference_zone, top_n
from revenue_engine.config import Settings, settings
from revenue_engine.money import from_minor
from revenue_engine.schemas import BillRecord, LineItemRecord

logger = logging.getLogger(__name__)


class LinearFit(BaseModel):
    slope: float
    intercept: float
    r_squared: float

    def predict(self, t: float) -> float:
        # sales never go negative, however steep the fitted decline
        return max(0.0, self.slope * t + self.intercept)


def fit_line(xs: Sequence[float], ys: Sequence[float]) -> LinearFit:
    """Ordinary least squares of ``ys`` on ``xs``.

    A zero denominator (every x equal) falls back to a flat line through the
    mean. R² is clamped at 0 and a perfectly flat series counts as a fit of 1.
    """
    n = len(xs)
    if n == 0:
        return LinearFit(slope=0.0, intercept=0.0, r_squared=0.0)
    sum_x = sum(xs)
    sum_y = sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_xx = sum(x * x for x in xs)
    mean_y = sum_y / n

    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        slope = 0.0
        intercept = mean_y
    else:
        slope = (n * sum_xy - sum_x * sum_y) / denominator
        intercept = (sum_y - slope * sum_x) / n

    ss_tot = sum((y - mean_y) ** 2 for y in ys)
    ss_res = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, ys))
    r_squared = 1.0 if ss_tot == 0 else max(0.0, 1.0 - ss_res / ss_tot)
    return LinearFit(slope=slope, intercept=intercept, r_squared=r_squared)


class TrendPoint(BaseModel):
    day_index: int
    day: date
    quantity: int
    revenue_minor: int


class ItemTrend(BaseModel):
    name: str
    points: list[TrendPoint]
    slope: float
    intercept: float
    r_squared: float
    total_quantity: int
    total_revenue_minor: int
    horizon_days: int
    predicted_tomorrow: float
    predicted_horizon_quantity: float
    predicted_horizon_revenue: Decimal


class Insight(BaseModel):
    title: str
    content: str
    kind: Literal["optimization", "growth"]


class ForecastReport(BaseModel):
    franchise_id: Optional[str] = None
    trends: list[ItemTrend]
    trending_up: list[ItemTrend]
    trending_down: list[ItemTrend]
    predicted_leaders: list[ItemTrend]
    insights: list[Insight]


def daily_series(
    bills: Sequence[BillRecord],
    items: Sequence[LineItemRecord],
    config: Optional[Settings] = None,
) -> dict[str, dict[date, tuple[int, int]]]:
    """Per item name, total (quantity, raw revenue) on each local day with sales."""
    config = config or settings
    tz = reference_zone(config)
    bill_days = {bill.id: local_day(bill.created_at, tz) for bill in bills}
    series: dict[str, dict[date, tuple[int, int]]] = {}
    for item in items:
        day = bill_days.get(item.bill_id)
        if day is None:
            continue
        days = series.setdefault(item.name, {})
        quantity, revenue = days.get(day, (0, 0))
        days[day] = (quantity + item.quantity, revenue + item.raw_minor)
    return series


def item_trend(
    name: str, days: dict[date, tuple[int, int]], config: Optional[Settings] = None
) -> Optional[ItemTrend]:
    config = config or settings
    if len(days) < config.min_history_days:
        return None
    ordered = sorted(days)
    points = [
        TrendPoint(day_index=index, day=day, quantity=days[day][0], revenue_minor=days[day][1])
        for index, day in enumerate(ordered)
    ]
    fit = fit_line([p.day_index for p in points], [p.quantity for p in points])

    total_quantity = sum(p.quantity for p in points)
    total_revenue = sum(p.revenue_minor for p in points)
    average_price_minor = total_revenue / total_quantity if total_quantity > 0 else 0.0

    n = len(points)
    horizon = config.forecast_horizon_days
    predicted_horizon = sum(fit.predict(n + step) for step in range(horizon))
    return ItemTrend(
        name=name,
        points=points,
        slope=fit.slope,
        intercept=fit.intercept,
        r_squared=fit.r_squared,
        total_quantity=total_quantity,
        total_revenue_minor=total_revenue,
        horizon_days=horizon,
        predicted_tomorrow=fit.predict(n),
        predicted_horizon_quantity=predicted_horizon,
        predicted_horizon_revenue=from_minor(round(predicted_horizon * average_price_minor)),
    )


def build_trends(
    bills: Sequence[BillRecord],
    items: Sequence[LineItemRecord],
    config: Optional[Settings] = None,
) -> list[ItemTrend]:
    config = config or settings
    trends = []
    skipped = 0
    for name, days in daily_series(bills, items, config).items():
        trend = item_trend(name, days, config)
        if trend is None:
            skipped += 1
            continue
        trends.append(trend)
    if skipped:
        logger.debug("skipped %d items with fewer than %d days of history", skipped, config.min_history_days)
    return top_n(trends, lambda trend: trend.slope, len(trends))


def menu_insights(trends: Sequence[ItemTrend], config: Optional[Settings] = None) -> list[Insight]:
    config = config or settings
    limit = config.insight_limit
    confident = [t for t in trends if t.r_squared > config.insight_r2_threshold]
    # both lists rank by slope descending, so "falling" names the mildest clear declines first
    rising = top_n([t for t in confident if t.slope > 0], lambda t: t.slope, limit)
    falling = top_n(
        [t for t in confident if t.slope < config.decline_slope_threshold], lambda t: t.slope, limit
    )
    earners = top_n(list(trends), lambda t: t.total_revenue_minor, limit)

    insights = []
    if rising:
        insights.append(
            Insight(
                title="Selling Fast",
                content=f"Sales are increasing for: {', '.join(t.name for t in rising)}. "
                "Stock up and highlight these on your menu and offers.",
                kind="optimization",
            )
        )
    if falling:
        insights.append(
            Insight(
                title="Falling Sales",
                content=f"Sales are decreasing for: {', '.join(t.name for t in falling)}. "
                "Try limited-time deals, combos, or consider replacing them.",
                kind="optimization",
            )
        )
    if earners:
        listed = ", ".join(f"{t.name} ({from_minor(t.total_revenue_minor)})" for t in earners)
        insights.append(
            Insight(
                title="Top Revenue Items",
                content=f"These bring in the most money: {listed}. Keep them easy to find and well stocked.",
                kind="growth",
            )
        )
    return insights


def forecast_report(
    bills: Sequence[BillRecord],
    items: Sequence[LineItemRecord],
    config: Optional[Settings] = None,
    franchise_id: Optional[str] = None,
) -> ForecastReport:
    config = config or settings
    trends = build_trends(bills, items, config)
    return ForecastReport(
        franchise_id=franchise_id,
        trends=trends,
        trending_up=[t for t in trends if t.slope > 0],
        trending_down=top_n([t for t in trends if t.slope < 0], lambda t: -t.slope, len(trends)),
        predicted_leaders=top_n(
            trends, lambda t: t.predicted_horizon_quantity, config.forecast_leaders_limit
        ),
        insights=menu_insights(trends, config),
    )
