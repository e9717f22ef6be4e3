from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

MINOR_UNITS_PER_MAJOR = 100
CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def _as_decimal(value: Amount) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their printed value instead of the binary expansion
    return Decimal(str(value))


def to_minor(amount: Amount) -> int:
    scaled = _as_decimal(amount) * MINOR_UNITS_PER_MAJOR
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(CENT, rounding=ROUND_HALF_UP)


def raw_line_minor(quantity: int, unit_price: Amount) -> int:
    return to_minor(Decimal(quantity) * _as_decimal(unit_price))
