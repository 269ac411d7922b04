"""
Tests for fixed-point money helpers
"""

import pytest
from decimal import Decimal

from ledger_engine.errors import InvalidAmount, LedgerError
from ledger_engine.money import format_amount, positive_amount, quantize, to_decimal


class TestMoneyHelpers:
    """Test amount parsing and rounding"""

    def test_quantize_rounds_half_up_to_cents(self):
        assert quantize(Decimal('10.005')) == Decimal('10.01')
        assert quantize("10.004") == Decimal('10.00')
        assert quantize(7) == Decimal('7.00')

    def test_float_goes_through_string(self):
        """0.1 must become exactly 0.10, not a binary approximation"""
        assert quantize(0.1) == Decimal('0.10')

    def test_positive_amount_rejects_zero_and_negative(self):
        for bad in (0, "0.00", -50, "-0.01"):
            with pytest.raises(InvalidAmount):
                positive_amount(bad)

    def test_positive_amount_rejects_amount_rounding_to_zero(self):
        with pytest.raises(InvalidAmount):
            positive_amount("0.004")

    def test_non_numeric_values_rejected(self):
        for bad in ("abc", "", True, "NaN", "Infinity"):
            with pytest.raises(InvalidAmount):
                to_decimal(bad)

    def test_invalid_amount_is_a_value_error(self):
        assert issubclass(InvalidAmount, LedgerError)
        assert issubclass(InvalidAmount, ValueError)

    def test_format_amount(self):
        assert format_amount(Decimal('12000')) == "12,000.00"
