"""
Test suite for currency module

Tests Money rounding, arithmetic and the currency guard.
"""

import pytest
from decimal import Decimal

from token_ledger.currency import Money, Currency, min_money


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        money = Money(Decimal('100.50'), Currency.INR)
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.INR

        # Rounded HALF_UP to two places
        assert Money(Decimal('100.555'), Currency.INR).amount == Decimal('100.56')
        assert Money(Decimal('0.125'), Currency.INR).amount == Decimal('0.13')
        assert Money("33.3333", Currency.INR).amount == Decimal('33.33')

    def test_money_arithmetic(self):
        money1 = Money(Decimal('100.50'), Currency.INR)
        money2 = Money(Decimal('50.25'), Currency.INR)

        assert (money1 + money2).amount == Decimal('150.75')
        assert (money1 - money2).amount == Decimal('50.25')
        assert (money1 * Decimal('3')).amount == Decimal('301.50')
        assert (Money(Decimal('100'), Currency.INR) / 3).amount == Decimal('33.33')
        assert (-money1).amount == Decimal('-100.50')

    def test_money_comparison(self):
        hundred = Money(Decimal('100'), Currency.INR)
        fifty = Money(Decimal('50'), Currency.INR)

        assert hundred == Money(Decimal('100.00'), Currency.INR)
        assert hundred != fifty
        assert fifty < hundred <= hundred
        assert hundred > fifty >= fifty
        assert hundred != Money(Decimal('100'), Currency.USD)
        assert len({hundred, Money(Decimal('100.00'), Currency.INR)}) == 1

    def test_currency_mismatch(self):
        rupees = Money(Decimal('10'), Currency.INR)
        dollars = Money(Decimal('10'), Currency.USD)

        with pytest.raises(ValueError, match="Cannot add"):
            rupees + dollars
        with pytest.raises(ValueError, match="Cannot compare"):
            rupees < dollars

    def test_sign_checks(self):
        assert Money.zero(Currency.INR).is_zero()
        assert Money(Decimal('0.01'), Currency.INR).is_positive()
        assert Money(Decimal('-0.01'), Currency.INR).is_negative()

    def test_min_money(self):
        small = Money(Decimal('5'), Currency.INR)
        large = Money(Decimal('7'), Currency.INR)
        assert min_money(small, large) is small
        assert min_money(large, small) is small

    def test_to_string(self):
        assert Money(Decimal('12345.5'), Currency.INR).to_string() == "INR 12,345.50"
