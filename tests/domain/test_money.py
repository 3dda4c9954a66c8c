"""Tests for the Decimal money helpers."""

from decimal import Decimal

import pytest

from billing_kernel.domain.money import ZERO, money, percent_to_ratio, ratio, to_decimal


class TestToDecimal:
    def test_accepts_str_int_decimal(self):
        assert to_decimal("49.99") == Decimal("49.99")
        assert to_decimal(3) == Decimal("3")
        assert to_decimal(Decimal("1.5")) == Decimal("1.5")

    def test_rejects_float(self):
        with pytest.raises(TypeError):
            to_decimal(49.99)

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_decimal("forty")


class TestRounding:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("0.005", "0.01"),
            ("0.004", "0.00"),
            ("-0.005", "-0.01"),
            ("99.985", "99.99"),
        ],
    )
    def test_money_rounds_half_up(self, value, expected):
        assert money(value) == Decimal(expected)

    def test_ratio_has_four_places(self):
        assert ratio(Decimal(1) / Decimal(3)) == Decimal("0.3333")
        assert ratio("0.00005") == Decimal("0.0001")

    def test_percent_to_ratio(self):
        assert percent_to_ratio("19") == Decimal("0.1900")
        assert percent_to_ratio(Decimal("7.5")) == Decimal("0.0750")

    def test_zero(self):
        assert ZERO == Decimal("0.00")
        assert ZERO.as_tuple().exponent == -2
