"""Unit tests for fixed-point amount handling."""

from __future__ import annotations

from decimal import Decimal

import pytest

from settlement_service.core.exceptions import ValidationError
from settlement_service.money import fee_units, from_units, parse_amount, portion, to_units

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("10", Decimal("10")),
        (10, Decimal("10")),
        (0.1, Decimal("0.1")),
        ("0.00000001", Decimal("0.00000001")),
        (Decimal("3.5"), Decimal("3.5")),
    ],
)
def test_parse_amount_accepts_numbers(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", [True, None, "ten", "NaN", "Infinity", [], "0.000000001"])
def test_parse_amount_rejects_invalid_input(raw):
    with pytest.raises(ValidationError) as exc_info:
        parse_amount(raw)
    assert exc_info.value.error == "INVALID_AMOUNT"
    assert exc_info.value.status_code == 400


def test_units_conversion_is_exact():
    assert to_units(Decimal("1.23456789")) == 123456789
    assert from_units(123456789) == Decimal("1.23456789")
    assert str(from_units(100_000_000)) == "1.00000000"


def test_portion_rounds_down():
    assert portion(1_000_000_001, Decimal("0.5")) == 500_000_000


def test_fee_units_is_percentage_rounded_down():
    # 2% of 10 coins
    assert fee_units(1_000_000_000, Decimal("2.0")) == 20_000_000
    # 2% of one minor unit rounds to zero
    assert fee_units(1, Decimal("2.0")) == 0
    assert fee_units(1_000_000_000, Decimal("0")) == 0
