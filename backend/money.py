from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    """Convert an incoming amount to a Decimal rounded to cents.

    Floats go through ``str`` so 0.1 stays 0.1. Rounding is half away from
    zero, which is what ``ROUND_HALF_UP`` means for Decimal. NaN and
    infinities are rejected.
    """
    if isinstance(value, bool):
        raise ValueError("Cannot convert value to Decimal")
    try:
        if isinstance(value, Decimal):
            exact = value
        elif isinstance(value, (int, float)):
            exact = Decimal(str(value))
        elif isinstance(value, str):
            exact = Decimal(value.strip())
        else:
            raise ValueError("Cannot convert value to Decimal")
        if not exact.is_finite():
            raise ValueError(f"Cannot convert {value!r} to a finite Decimal")
        return exact.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal") from None


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def has_at_most_two_places(value: Any) -> bool:
    try:
        exact = Decimal(str(value))
    except InvalidOperation:
        return False
    if not exact.is_finite():
        return False
    return exact == exact.quantize(CENT)


def as_float(value: Decimal) -> float:
    return float(round_money(value))
