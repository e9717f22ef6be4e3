from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

from revenue_engine.money import raw_line_minor, to_minor


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BillRecord(BaseModel):
    model_config = {"frozen": True}

    id: int
    franchise_id: str
    net_total: Decimal = Field(ge=0)
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def net_total_minor(self) -> int:
        return to_minor(self.net_total)


class LineItemRecord(BaseModel):
    model_config = {"frozen": True}

    id: int
    bill_id: int
    name: str
    quantity: int = Field(ge=0)
    unit_price: Decimal = Field(ge=0)
    category: Optional[str] = None

    @property
    def raw_minor(self) -> int:
        return raw_line_minor(self.quantity, self.unit_price)

    def category_or(self, fallback: str) -> str:
        if self.category is None or not self.category.strip():
            return fallback
        return self.category


class DateRange(BaseModel):
    """Half-open ``[start, end)`` window; either side may be left open."""

    model_config = {"frozen": True}

    start: Optional[AwareDatetime] = None
    end: Optional[AwareDatetime] = None

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    @property
    def bounded(self) -> bool:
        return self.start is not None and self.end is not None

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


class BillLineItemInput(BaseModel):
    item_name: str = Field(min_length=1)
    qty: int = Field(ge=0)
    price: Decimal = Field(ge=0, decimal_places=2)
    category: Optional[str] = None
