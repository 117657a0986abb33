"""
Unit tests for credit arithmetic.
"""

from decimal import Decimal

import pytest

from credit_gateway.core.credits import from_units, to_credits, to_units


class TestCreditArithmetic:
    """Test rounding and unit conversion."""

    def test_rounds_up_to_two_places(self):
        assert to_credits("1.001") == Decimal("1.01")
        assert to_credits(2) == Decimal("2.00")
        assert to_credits(0.1) == Decimal("0.10")

    def test_rejects_negative_amounts(self):
        with pytest.raises(ValueError, match="must be >= 0"):
            to_credits("-1")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
    def test_rejects_non_numeric(self, value):
        with pytest.raises(ValueError, match="Invalid credit amount"):
            to_credits(value)

    def test_units_conversion(self):
        assert to_units("3") == 300
        assert to_units(Decimal("0.015")) == 2
        assert from_units(250) == Decimal("2.50")
        assert from_units(-300) == Decimal("-3.00")
