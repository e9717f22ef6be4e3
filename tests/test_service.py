from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from revenue_engine.config import Settings
from revenue_engine.db import Base
from revenue_engine.schemas import BillLineItemInput
from revenue_engine.service import bill_items, build_dashboard, dashboard_is_stale, record_bill

IST = timezone(timedelta(hours=5, minutes=30))
BUILT_AT = datetime(2026, 1, 15, 13, 20, tzinfo=IST)


def _make_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def test_record_bill_stores_typed_line_items() -> None:
    db = _make_session()
    bill, rows = record_bill(
        db,
        franchise_id="FR-1",
        net_total=Decimal("180.00"),
        created_at=BUILT_AT,
        line_items=[
            BillLineItemInput(item_name="Masala Dosa", qty=2, price=Decimal("80.00"), category="Breakfast"),
            BillLineItemInput(item_name="Filter Coffee", qty=1, price=Decimal("40.00")),
        ],
        mode_payment="upi",
    )
    assert bill.id > 0
    assert [row.bill_id for row in rows] == [bill.id, bill.id]

    items = bill_items(db, bill.id)
    assert [(item.name, item.quantity, item.unit_price, item.category) for item in items] == [
        ("Masala Dosa", 2, Decimal("80.00"), "Breakfast"),
        ("Filter Coffee", 1, Decimal("40.00"), None),
    ]
    db.close()


def test_dashboard_staleness_follows_local_hour_and_age() -> None:
    db = _make_session()
    snapshot = build_dashboard(db, "FR-1", now=BUILT_AT)
    db.close()

    assert snapshot.live.today_orders == 0
    assert not dashboard_is_stale(snapshot, BUILT_AT + timedelta(minutes=5))
    # 14:05 local time
    assert dashboard_is_stale(snapshot, BUILT_AT + timedelta(minutes=45))
    assert dashboard_is_stale(snapshot, BUILT_AT + timedelta(days=1))
    assert dashboard_is_stale(
        snapshot, BUILT_AT + timedelta(minutes=5), Settings(dashboard_max_age_seconds=60)
    )
