"""
Test suite for currency module

Tests rupee rounding and formatting. All monetary calculations must use
Decimal precision.
"""

import pytest
from decimal import Decimal

from tax_collection.currency import to_decimal, round_amount, format_amount, ZERO


class TestRounding:
    """Test paise rounding"""

    @pytest.mark.parametrize("value,expected", [
        ("10.005", "10.01"),
        ("10.004", "10.00"),
        ("-2.345", "-2.35"),
        (7, "7.00"),
    ])
    def test_round_half_up(self, value, expected):
        assert round_amount(value) == Decimal(expected)

    def test_float_rejected(self):
        """Test floats never enter a calculation"""
        with pytest.raises(TypeError):
            to_decimal(0.1)

    def test_decimal_passthrough(self):
        value = Decimal("12.3456")
        assert to_decimal(value) is value

    def test_zero(self):
        assert ZERO == Decimal("0")
        assert str(ZERO) == "0.00"


class TestFormatting:
    """Test display formatting"""

    def test_thousands_separator(self):
        assert format_amount(Decimal("1140")) == "₹1,140.00"

    def test_rounds_before_formatting(self):
        assert format_amount("999.995") == "₹1,000.00"
