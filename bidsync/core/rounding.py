"""
Tick rounding helpers. Bids are always floored so rounding never lifts a bid above its ceiling.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Optional

__all__ = ["floor_to_tick", "to_decimal", "wei_to_decimal", "decimal_to_wei"]


def floor_to_tick(value: Decimal, tick: Decimal) -> Decimal:
    """Floor value to a multiple of tick. A non-positive tick leaves value unchanged."""
    if tick <= 0:
        return value
    ticks = (value / tick).to_integral_value(rounding=ROUND_FLOOR)
    return (ticks * tick).quantize(tick)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse value into a finite Decimal, or None if it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not dec.is_finite():
        return None
    return dec


def wei_to_decimal(raw_amount: int, decimals: int) -> Decimal:
    return Decimal(raw_amount) / (Decimal(10) ** decimals)


def decimal_to_wei(amount: Decimal, decimals: int = 18) -> int:
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR))
