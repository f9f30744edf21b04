"""Decimal money helpers - all amounts are currency units with two decimal places"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Quantize any numeric input to two decimal places"""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_subunits(amount: Number) -> int:
    """Convert currency units to integer sub-units (e.g. rupees to paise)"""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_subunits(subunits: int) -> Decimal:
    return to_money(Decimal(subunits) / 100)


def format_amount(amount: Number) -> str:
    """Fixed two-decimal string used inside gateway hashes"""
    return f"{to_money(amount):.2f}"
