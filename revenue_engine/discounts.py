from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel

from revenue_engine.allocation import group_items_by_bill
from revenue_engine.config import Settings, settings
from revenue_engine.money import from_minor
from revenue_engine.schemas import BillRecord, LineItemRecord


def bill_discount_minor(raw_total_minor: int, net_total_minor: int, epsilon_minor: int) -> int:
    # gaps at or below epsilon are price-storage noise; net above raw (service charge) clamps to 0
    gap = raw_total_minor - net_total_minor
    if gap > epsilon_minor:
        return gap
    return 0


class BillDiscount(BaseModel):
    bill_id: int
    raw_total_minor: int
    net_total_minor: int
    discount_minor: int

    @property
    def discount(self) -> Decimal:
        return from_minor(self.discount_minor)


class DiscountSummary(BaseModel):
    franchise_id: Optional[str] = None
    per_bill: list[BillDiscount]
    total_minor: int

    @property
    def total(self) -> Decimal:
        return from_minor(self.total_minor)


class LifetimeDiscount(BaseModel):
    franchise_id: str
    baseline_minor: int
    live_minor: int

    @property
    def total_minor(self) -> int:
        return self.baseline_minor + self.live_minor


def reconcile_discounts(
    bills: Sequence[BillRecord],
    items: Sequence[LineItemRecord],
    config: Optional[Settings] = None,
    franchise_id: Optional[str] = None,
) -> DiscountSummary:
    config = config or settings
    grouped = group_items_by_bill(items)
    per_bill = []
    for bill in bills:
        raw_total = sum(item.raw_minor for item in grouped.get(bill.id, []))
        per_bill.append(
            BillDiscount(
                bill_id=bill.id,
                raw_total_minor=raw_total,
                net_total_minor=bill.net_total_minor,
                discount_minor=bill_discount_minor(
                    raw_total, bill.net_total_minor, config.discount_epsilon_minor
                ),
            )
        )
    return DiscountSummary(
        franchise_id=franchise_id,
        per_bill=per_bill,
        total_minor=sum(entry.discount_minor for entry in per_bill),
    )
