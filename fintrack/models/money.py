"""
Decimal helpers for currency amounts and unit quantities.

Currency is kept at 2 decimal places and asset units at 6. Every engine
rounds right after each arithmetic step so that repeated buy/sell cycles
cannot accumulate drift.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

CENT = Decimal("0.01")
MICRO_UNIT = Decimal("0.000001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert without going through binary float representation."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def round_currency(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_units(value: Number) -> Decimal:
    return to_decimal(value).quantize(MICRO_UNIT, rounding=ROUND_HALF_UP)


def floor_currency(value: Number) -> Decimal:
    """Round towards zero; used for shares that must never exceed their source."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def round_optional_currency(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    return round_currency(value)


def round_optional_units(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    return round_units(value)
