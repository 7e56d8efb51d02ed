"""Money helpers.

Amounts are persisted as integer cents. Anything fractional goes through
``Decimal`` and is rounded half-up so results never depend on banker's
rounding or float representation.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.1 don't carry their binary expansion
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    """Round to the currency's minor unit, half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    """Convert a major-unit amount (e.g. dollars) to integer cents."""
    return int((round_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a major-unit ``Decimal`` with two places."""
    return (Decimal(cents) / 100).quantize(CENT)


def cents_to_float(cents: int) -> float:
    """Major units as float, for API responses."""
    return float(from_cents(cents or 0))


def apply_rate(cents: int, rate: Number) -> int:
    """Multiply an amount in cents by ``rate`` and round half up to whole cents."""
    return int((Decimal(cents) * to_decimal(rate)).to_integral_value(rounding=ROUND_HALF_UP))
