from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from threading import Event
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime, BaseModel, Field, ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from revenue_engine.aggregation import CategoryBucket, FranchiseShare, ItemBucket, TimeBucket
from revenue_engine.allocation import AllocationResult
from revenue_engine.config import settings
from revenue_engine.db import SessionLocal
from revenue_engine.errors import BaselineConflict, CollectionCancelled, SourceUnavailable
from revenue_engine.forecast import ItemTrend
from revenue_engine.live import LiveStats
from revenue_engine.models import Bill
from revenue_engine.money import from_minor, to_minor
from revenue_engine.recompute import SnapshotCache
from revenue_engine.schemas import BillLineItemInput, DateRange, as_utc
from revenue_engine.service import (
    DashboardSnapshot,
    aggregate,
    bill_items,
    build_dashboard,
    dashboard_is_stale,
    discounts_for,
    forecast_items,
    franchise_shares_for,
    get_baseline,
    lifetime_discount,
    live_stats_for,
    peak_hours_for,
    popular_items_for,
    reconcile_bill,
    record_bill,
    set_baseline,
    weekly_performance,
)

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Revenue Reconciliation Engine")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dashboard_builder(session_factory, clock=_now):
    def build(franchise_id: str, cancel_event: Event) -> DashboardSnapshot:
        db = session_factory()
        try:
            return build_dashboard(db, franchise_id, now=clock(), cancel_event=cancel_event)
        finally:
            db.close()

    return build


dashboard_cache: SnapshotCache[DashboardSnapshot] = SnapshotCache(_dashboard_builder(SessionLocal))


def get_dashboard_cache() -> SnapshotCache:
    return dashboard_cache


def _paginate_by_offset(query, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    offset = cursor or 0
    rows = query.offset(offset).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = offset + limit
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _money(minor: int) -> float:
    return float(from_minor(minor))


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    for value in (start, end):
        if value is not None and value.tzinfo is None:
            raise HTTPException(status_code=422, detail="timestamps must carry a UTC offset")
    try:
        return DateRange(start=start, end=end)
    except ValidationError:
        raise HTTPException(status_code=422, detail="end must not be before start")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def _time_bucket(bucket: TimeBucket) -> dict:
    return {
        "key": bucket.key,
        "hour": bucket.hour,
        "date": bucket.day.isoformat() if bucket.day else None,
        "revenue": _money(bucket.revenue_minor),
        "orders": bucket.orders,
        "quantity": bucket.quantity,
        "average_order_value": float(bucket.average_order_value),
        "percentage": round(bucket.percentage, 2),
    }


def _category_bucket(bucket: CategoryBucket) -> dict:
    return {
        "category": bucket.category,
        "revenue": _money(bucket.revenue_minor),
        "quantity": bucket.quantity,
        "items": bucket.items,
        "percentage": round(bucket.percentage, 2),
    }


def _item_bucket(bucket: ItemBucket) -> dict:
    return {
        "item_name": bucket.name,
        "category": bucket.category,
        "total_quantity": bucket.quantity,
        "raw_revenue": _money(bucket.raw_revenue_minor),
        "net_revenue": _money(bucket.net_revenue_minor),
        "percentage": round(bucket.percentage, 2),
        "growth": round(bucket.growth, 2),
    }


def _live_stats(stats: LiveStats) -> dict:
    return {
        "today_revenue": _money(stats.today_revenue_minor),
        "today_orders": stats.today_orders,
        "current_hour_revenue": _money(stats.current_hour_revenue_minor),
        "current_hour_orders": stats.current_hour_orders,
        "average_order_value": float(stats.average_order_value),
        "last_order_at": _iso(stats.last_order_at),
        "status_message": stats.status_message,
    }


def _trend(trend: ItemTrend) -> dict:
    return {
        "item_name": trend.name,
        "slope": trend.slope,
        "intercept": trend.intercept,
        "r_squared": trend.r_squared,
        "days": len(trend.points),
        "total_sold": trend.total_quantity,
        "total_revenue": _money(trend.total_revenue_minor),
        "predicted_tomorrow": trend.predicted_tomorrow,
        "horizon_days": trend.horizon_days,
        "predicted_horizon_quantity": trend.predicted_horizon_quantity,
        "predicted_horizon_revenue": float(trend.predicted_horizon_revenue),
    }


def _franchise_share(entry: FranchiseShare) -> dict:
    return {
        "franchise_id": entry.franchise_id,
        "revenue": _money(entry.revenue_minor),
        "orders": entry.orders,
        "percentage": round(entry.percentage, 2),
        "last_activity": _iso(entry.last_activity),
    }


def _allocation(result: AllocationResult) -> dict:
    return {
        "bill_id": result.bill_id,
        "net_total": _money(result.net_total_minor),
        "raw_total": _money(result.raw_total_minor),
        "degenerate": result.degenerate,
        "lines": [
            {
                "line_item_id": line.line_item_id,
                "item_name": line.name,
                "category": line.category,
                "qty": line.quantity,
                "price": float(line.unit_price),
                "raw_amount": float(line.raw_amount),
                "allocated_amount": float(line.allocated_amount),
            }
            for line in result.lines
        ],
    }


@app.exception_handler(SourceUnavailable)
async def source_unavailable_handler(request: Request, exc: SourceUnavailable) -> JSONResponse:
    logger.warning("row store unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "data source unavailable"})


@app.exception_handler(CollectionCancelled)
async def collection_cancelled_handler(request: Request, exc: CollectionCancelled) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "collection cancelled"})


@app.exception_handler(BaselineConflict)
async def baseline_conflict_handler(request: Request, exc: BaselineConflict) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/health/db", tags=["health"])
def database_health_check(db: Session = Depends(get_db)) -> JSONResponse:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("database health check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return JSONResponse(status_code=200, content={"status": "healthy"})



class BillCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'franchise_id': 'FR-CHN-01', 'net_total': 180.0, 'created_at': '2026-01-15T12:10:00+05:30', 'mode_payment': 'cash', 'line_items': [{'item_name': 'Masala Dosa', 'qty': 2, 'price': 80.0, 'category': 'Breakfast'}, {'item_name': 'Filter Coffee', 'qty': 1, 'price': 40.0, 'category': 'Beverages'}]}}}
    franchise_id: str = Field(min_length=1)
    net_total: Decimal = Field(ge=0, decimal_places=2)
    created_at: AwareDatetime
    mode_payment: Optional[str] = None
    line_items: list[BillLineItemInput] = Field(default_factory=list)


@app.post("/api/v1/bills", tags=["Bills"])
def create_bill(
    payload: BillCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    cache: SnapshotCache = Depends(get_dashboard_cache),
) -> dict:
    bill, rows = record_bill(
        db,
        franchise_id=payload.franchise_id,
        net_total=payload.net_total,
        created_at=payload.created_at,
        line_items=payload.line_items,
        mode_payment=payload.mode_payment,
    )
    background_tasks.add_task(cache.notify, bill.franchise_id)
    return {
        "data": {
            "bill_id": bill.id,
            "franchise_id": bill.franchise_id,
            "net_total": float(bill.net_total),
            "created_at": _iso(bill.created_at),
            "line_item_ids": [row.id for row in rows],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/bills/{bill_id}", tags=["Bills"])
def get_bill(bill_id: int, db: Session = Depends(get_db)) -> dict:
    bill = db.get(Bill, bill_id)
    if not bill:
        raise HTTPException(status_code=404, detail="bill not found")
    items = bill_items(db, bill_id)
    return {
        "data": {
            "bill_id": bill.id,
            "franchise_id": bill.franchise_id,
            "net_total": float(bill.net_total),
            "mode_payment": bill.mode_payment,
            "created_at": _iso(bill.created_at),
            "line_items": [
                {
                    "line_item_id": item.id,
                    "item_name": item.name,
                    "qty": item.quantity,
                    "price": float(item.unit_price),
                    "category": item.category,
                }
                for item in items
            ],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/bills", tags=["Bills"])
def list_bills(
    franchise_id: Optional[str] = Query(default=None),
    created_from: Optional[datetime] = Query(default=None),
    created_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    cursor: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    date_range = _date_range(created_from, created_to)
    query = db.query(Bill)
    if franchise_id is not None:
        query = query.filter(Bill.franchise_id == franchise_id)
    if date_range is not None and date_range.start is not None:
        query = query.filter(Bill.created_at >= as_utc(date_range.start))
    if date_range is not None and date_range.end is not None:
        query = query.filter(Bill.created_at < as_utc(date_range.end))
    query = query.order_by(Bill.created_at, Bill.id)
    rows, next_cursor = _paginate_by_offset(query, limit, cursor)
    data = [
        {
            "bill_id": row.id,
            "franchise_id": row.franchise_id,
            "net_total": float(row.net_total),
            "mode_payment": row.mode_payment,
            "created_at": _iso(row.created_at),
        }
        for row in rows
    ]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/bills/{bill_id}/allocation", tags=["Reconciliation"])
def get_bill_allocation(bill_id: int, db: Session = Depends(get_db)) -> dict:
    result = reconcile_bill(db, bill_id)
    if result is None:
        raise HTTPException(status_code=404, detail="bill not found")
    return {"data": _allocation(result), "meta": _meta()}


@app.get("/api/v1/franchises/{franchise_id}/discounts", tags=["Discounts"])
def get_discounts(
    franchise_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    summary = discounts_for(db, franchise_id, _date_range(start, end))
    return {
        "data": {
            "franchise_id": franchise_id,
            "per_bill": [
                {
                    "bill_id": entry.bill_id,
                    "raw_total": _money(entry.raw_total_minor),
                    "net_total": _money(entry.net_total_minor),
                    "discount": float(entry.discount),
                }
                for entry in summary.per_bill
            ],
            "total": float(summary.total),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/franchises/{franchise_id}/discounts/lifetime", tags=["Discounts"])
def get_lifetime_discount(franchise_id: str, db: Session = Depends(get_db)) -> dict:
    lifetime = lifetime_discount(db, franchise_id)
    return {
        "data": {
            "franchise_id": franchise_id,
            "baseline": _money(lifetime.baseline_minor),
            "live": _money(lifetime.live_minor),
            "total": _money(lifetime.total_minor),
        },
        "meta": _meta(),
    }


class DiscountBaselineUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'amount': 12500.0, 'covers_until': '2026-01-01T00:00:00+05:30', 'expected_version': 1}}}
    amount: Decimal = Field(ge=0, decimal_places=2)
    covers_until: Optional[AwareDatetime] = None
    expected_version: Optional[int] = Field(default=None, ge=0)


def _baseline_data(franchise_id: str, baseline) -> dict:
    if baseline is None:
        return {"franchise_id": franchise_id, "amount": 0.0, "covers_until": None, "version": 0, "updated_at": None}
    return {
        "franchise_id": baseline.franchise_id,
        "amount": _money(to_minor(baseline.amount)),
        "covers_until": _iso(baseline.covers_until),
        "version": baseline.version,
        "updated_at": _iso(baseline.updated_at),
    }


@app.get("/api/v1/franchises/{franchise_id}/discount-baseline", tags=["Discounts"])
def read_discount_baseline(franchise_id: str, db: Session = Depends(get_db)) -> dict:
    return {"data": _baseline_data(franchise_id, get_baseline(db, franchise_id)), "meta": _meta()}


@app.put("/api/v1/franchises/{franchise_id}/discount-baseline", tags=["Discounts"])
def update_discount_baseline(
    franchise_id: str, payload: DiscountBaselineUpdate, db: Session = Depends(get_db)
) -> dict:
    baseline = set_baseline(
        db,
        franchise_id,
        amount=payload.amount,
        covers_until=as_utc(payload.covers_until) if payload.covers_until else None,
        expected_version=payload.expected_version,
    )
    return {"data": _baseline_data(franchise_id, baseline), "meta": _meta()}


@app.get("/api/v1/franchises/{franchise_id}/aggregate", tags=["Analytics"])
def get_aggregate(
    franchise_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    granularity: Literal["hour", "day"] = Query(default="day"),
    dimension: Literal["time", "category"] = Query(default="time"),
    figure: Literal["net", "raw"] = Query(default="net"),
    db: Session = Depends(get_db),
) -> dict:
    summary = aggregate(db, franchise_id, _date_range(start, end), granularity, dimension, figure)
    if dimension == "category":
        buckets = [_category_bucket(bucket) for bucket in summary.buckets]
    else:
        buckets = [_time_bucket(bucket) for bucket in summary.buckets]
    return {
        "data": {
            "franchise_id": franchise_id,
            "granularity": summary.granularity,
            "dimension": summary.dimension,
            "figure": summary.figure,
            "buckets": buckets,
            "total_revenue": _money(summary.total_revenue_minor),
            "total_orders": summary.total_orders,
            "total_quantity": summary.total_quantity,
            "unallocated": _money(summary.unallocated_minor),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/franchises/{franchise_id}/peak-hours", tags=["Analytics"])
def get_peak_hours(
    franchise_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    peaks = peak_hours_for(db, franchise_id, _date_range(start, end))
    return {"data": [_time_bucket(bucket) for bucket in peaks], "meta": _meta()}


@app.get("/api/v1/franchises/{franchise_id}/popular-items", tags=["Analytics"])
def get_popular_items(franchise_id: str, db: Session = Depends(get_db)) -> dict:
    items = popular_items_for(db, franchise_id, _now())
    return {"data": [_item_bucket(bucket) for bucket in items], "meta": _meta()}


@app.get("/api/v1/franchises/{franchise_id}/live-stats", tags=["Analytics"])
def get_live_stats(franchise_id: str, db: Session = Depends(get_db)) -> dict:
    return {"data": _live_stats(live_stats_for(db, franchise_id, _now())), "meta": _meta()}


@app.get("/api/v1/franchises/{franchise_id}/weekly", tags=["Analytics"])
def get_weekly_performance(franchise_id: str, db: Session = Depends(get_db)) -> dict:
    days = weekly_performance(db, franchise_id, _now())
    return {"data": [_time_bucket(bucket) for bucket in days], "meta": _meta()}


@app.get("/api/v1/franchise-shares", tags=["Analytics"])
def get_franchise_shares(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    shares = franchise_shares_for(db, _date_range(start, end))
    return {"data": [_franchise_share(entry) for entry in shares], "meta": _meta()}


@app.get("/api/v1/franchises/{franchise_id}/forecast", tags=["Forecast"])
def get_forecast(
    franchise_id: str,
    history_days: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> dict:
    report = forecast_items(db, franchise_id, history_days, _now())
    return {
        "data": {
            "franchise_id": franchise_id,
            "trends": [_trend(trend) for trend in report.trends],
            "trending_up": [trend.name for trend in report.trending_up],
            "trending_down": [trend.name for trend in report.trending_down],
            "predicted_leaders": [_trend(trend) for trend in report.predicted_leaders],
            "insights": [insight.model_dump() for insight in report.insights],
        },
        "meta": _meta(),
    }


def _dashboard_data(snapshot: DashboardSnapshot) -> dict:
    return {
        "franchise_id": snapshot.franchise_id,
        "generated_at": _iso(snapshot.generated_at),
        "live": _live_stats(snapshot.live),
        "hourly": [_time_bucket(bucket) for bucket in snapshot.hourly],
        "peak_hours": [_time_bucket(bucket) for bucket in snapshot.peak_hours],
        "hourly_insights": snapshot.hourly_insights,
        "weekly": [_time_bucket(bucket) for bucket in snapshot.weekly],
        "popular_items": [_item_bucket(bucket) for bucket in snapshot.popular_items],
        "discount_today": _money(snapshot.discount_today_minor),
    }


@app.get("/api/v1/franchises/{franchise_id}/dashboard", tags=["Dashboard"])
def get_dashboard(franchise_id: str, cache: SnapshotCache = Depends(get_dashboard_cache)) -> dict:
    warnings = []
    snapshot = cache.get(franchise_id)
    if snapshot is None:
        cache.notify(franchise_id)
    elif dashboard_is_stale(snapshot, _now()):
        try:
            cache.notify(franchise_id)
        except (SourceUnavailable, CollectionCancelled) as exc:
            logger.warning("dashboard refresh for %s failed, serving previous snapshot: %s", franchise_id, exc)
            warnings.append("dashboard snapshot is stale")
    snapshot = cache.get(franchise_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="dashboard not ready")
    return {"data": _dashboard_data(snapshot), "meta": _meta(warnings=warnings)}


@app.post("/api/v1/franchises/{franchise_id}/dashboard:cancel", tags=["Dashboard"])
def cancel_dashboard_recompute(
    franchise_id: str, cache: SnapshotCache = Depends(get_dashboard_cache)
) -> dict:
    return {"data": {"franchise_id": franchise_id, "cancelled": cache.cancel(franchise_id)}, "meta": _meta()}


class ChangeNotification(BaseModel):
    model_config = {"json_schema_extra": {"example": {'franchise_id': 'FR-CHN-01', 'table': 'bills'}}}
    franchise_id: str = Field(min_length=1)
    table: Optional[str] = None


@app.post("/api/v1/events:notify", tags=["Dashboard"])
def notify_change(
    payload: ChangeNotification,
    background_tasks: BackgroundTasks,
    cache: SnapshotCache = Depends(get_dashboard_cache),
) -> dict:
    queued = cache.in_flight(payload.franchise_id)
    background_tasks.add_task(cache.notify, payload.franchise_id)
    return {
        "data": {"franchise_id": payload.franchise_id, "accepted": True, "coalesced": queued},
        "meta": _meta(),
    }
