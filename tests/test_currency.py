"""
Tests for Money arithmetic and parsing
"""

import pytest
from decimal import Decimal

from cooperative_core.currency import Money, Currency, decimal_from_string


class TestMoney:

    def test_rounds_to_currency_precision(self):
        assert Money(Decimal('1.005'), Currency.NGN).amount == Decimal('1.01')
        assert Money(Decimal('1.004'), Currency.NGN).amount == Decimal('1.00')
        assert Money("250", Currency.NGN).amount == Decimal('250.00')

    def test_arithmetic(self):
        a = Money(Decimal('1000.00'), Currency.NGN)
        b = Money(Decimal('250.50'), Currency.NGN)

        assert a + b == Money(Decimal('1250.50'), Currency.NGN)
        assert a - b == Money(Decimal('749.50'), Currency.NGN)
        assert a * Decimal('0.05') == Money(Decimal('50.00'), Currency.NGN)
        assert a / 3 == Money(Decimal('333.33'), Currency.NGN)
        assert -b == Money(Decimal('-250.50'), Currency.NGN)
        assert abs(-b) == b

    def test_comparisons(self):
        small = Money(Decimal('10'), Currency.NGN)
        large = Money(Decimal('20'), Currency.NGN)

        assert small < large
        assert large >= small
        assert min(large, small) == small
        assert Money.zero(Currency.NGN).is_zero()
        assert small.is_positive() and (-small).is_negative()

    def test_mixed_currencies_rejected(self):
        naira = Money(Decimal('10'), Currency.NGN)
        dollars = Money(Decimal('10'), Currency.USD)

        with pytest.raises(ValueError, match="Cannot add NGN and USD"):
            naira + dollars
        with pytest.raises(ValueError, match="compare"):
            naira < dollars
        assert naira != dollars

    def test_to_string(self):
        assert Money(Decimal('1500000'), Currency.NGN).to_string() == "NGN 1,500,000.00"


class TestDecimalFromString:

    def test_parses_formatted_amounts(self):
        assert decimal_from_string("1,500.00") == Decimal('1500.00')
        assert decimal_from_string("₦200") == Decimal('200')
        assert decimal_from_string(" -12.5 ") == Decimal('-12.5')

    @pytest.mark.parametrize("value", ["", "abc", "1.2.3"])
    def test_rejects_garbage(self, value):
        with pytest.raises(ValueError):
            decimal_from_string(value)
