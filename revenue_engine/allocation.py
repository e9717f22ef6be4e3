from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel

from revenue_engine.errors import InconsistentTotals
from revenue_engine.money import from_minor
from revenue_engine.schemas import BillRecord, LineItemRecord

logger = logging.getLogger(__name__)


def largest_remainder(net_total_minor: int, raw_values: Sequence[int]) -> list[int]:
    """Split ``net_total_minor`` over ``raw_values`` in proportion, in whole units.

    Each share is floored, then the units still missing go one apiece to the
    shares with the largest fractional remainders (earlier entries win ties).
    The float factor only ever feeds the floor/remainder split, so the result
    always adds up to ``net_total_minor`` exactly. A zero raw sum yields zeros.
    """
    if net_total_minor < 0:
        raise ValueError("net total must be non-negative")
    if any(value < 0 for value in raw_values):
        raise ValueError("raw values must be non-negative")
    raw_sum = sum(raw_values)
    if raw_sum <= 0:
        return [0] * len(raw_values)

    factor = net_total_minor / raw_sum
    shares: list[int] = []
    remainders: list[float] = []
    for raw in raw_values:
        exact = raw * factor
        base = math.floor(exact)
        shares.append(base)
        remainders.append(exact - base)

    remaining = net_total_minor - sum(shares)
    ranked = sorted(range(len(shares)), key=lambda index: -remainders[index])
    for index in ranked[:max(remaining, 0)]:
        shares[index] += 1

    allocated = sum(shares)
    if allocated != net_total_minor:
        raise InconsistentTotals(net_total_minor, allocated)
    return shares


class AllocatedLine(BaseModel):
    line_item_id: int
    name: str
    category: Optional[str] = None
    quantity: int
    unit_price: Decimal
    raw_minor: int
    allocated_minor: int

    @property
    def raw_amount(self) -> Decimal:
        return from_minor(self.raw_minor)

    @property
    def allocated_amount(self) -> Decimal:
        return from_minor(self.allocated_minor)


class AllocationResult(BaseModel):
    bill_id: int
    net_total_minor: int
    raw_total_minor: int
    lines: list[AllocatedLine]

    @property
    def degenerate(self) -> bool:
        return self.raw_total_minor <= 0

    @property
    def allocated_total_minor(self) -> int:
        return sum(line.allocated_minor for line in self.lines)


def allocate_bill(bill: BillRecord, items: Sequence[LineItemRecord]) -> AllocationResult:
    raw_values = [item.raw_minor for item in items]
    shares = largest_remainder(bill.net_total_minor, raw_values)
    if items and sum(raw_values) <= 0:
        logger.debug("bill %s has no priced content; allocating zero to %d lines", bill.id, len(items))
    return AllocationResult(
        bill_id=bill.id,
        net_total_minor=bill.net_total_minor,
        raw_total_minor=sum(raw_values),
        lines=[
            AllocatedLine(
                line_item_id=item.id,
                name=item.name,
                category=item.category,
                quantity=item.quantity,
                unit_price=item.unit_price,
                raw_minor=raw,
                allocated_minor=share,
            )
            for item, raw, share in zip(items, raw_values, shares)
        ],
    )


def group_items_by_bill(items: Sequence[LineItemRecord]) -> dict[int, list[LineItemRecord]]:
    grouped: dict[int, list[LineItemRecord]] = {}
    for item in items:
        grouped.setdefault(item.bill_id, []).append(item)
    return grouped


def allocate_bills(
    bills: Sequence[BillRecord], items: Sequence[LineItemRecord]
) -> list[AllocationResult]:
    grouped = group_items_by_bill(items)
    return [allocate_bill(bill, grouped.get(bill.id, [])) for bill in bills]
