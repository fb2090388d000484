"""Fixed-point amount handling.

Amounts are Decimals with 8 fractional digits (Pi-coin precision). Storage
uses integer minor units so SQLite CHECK constraints and sums stay exact.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from settlement_service.core.exceptions import ValidationError

SCALE = 8
UNITS_PER_COIN = 10**SCALE
QUANTUM = Decimal(1).scaleb(-SCALE)


def parse_amount(value: object, field: str = "amount") -> Decimal:
    """
    Coerce a caller-supplied amount to a Decimal with at most 8 decimals.

    Accepts Decimal, int and str. Floats are accepted only via their
    shortest repr so that 0.1 means 0.1, not its binary expansion.

    Raises:
        ValidationError: INVALID_AMOUNT for bools, non-numbers, NaN/inf or
            more than 8 fractional digits.
    """
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float, str)):
        raise ValidationError("INVALID_AMOUNT", f"{field} must be a number")
    try:
        amount = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
    except InvalidOperation as exc:
        raise ValidationError("INVALID_AMOUNT", f"{field} must be a number") from exc
    if not amount.is_finite():
        raise ValidationError("INVALID_AMOUNT", f"{field} must be finite")
    if amount != amount.quantize(QUANTUM, rounding=ROUND_DOWN):
        raise ValidationError(
            "INVALID_AMOUNT", f"{field} supports at most {SCALE} decimal places"
        )
    return amount


def to_units(amount: Decimal) -> int:
    """Convert a Decimal amount to integer minor units."""
    return int(amount.scaleb(SCALE).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int) -> Decimal:
    """Convert integer minor units to a quantized Decimal."""
    return Decimal(units).scaleb(-SCALE).quantize(QUANTUM)


def portion(units: int, rate: Decimal) -> int:
    """Return floor(units * rate) in whole minor units."""
    return int((Decimal(units) * rate).to_integral_value(rounding=ROUND_DOWN))


def fee_units(units: int, fee_pct: Decimal) -> int:
    """Platform fee on ``units`` at ``fee_pct`` percent, rounded down."""
    return portion(units, fee_pct / 100)
