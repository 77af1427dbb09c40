"""
Test suite for currency module

Tests Money rounding, arithmetic and currency safety.
"""

import pytest
from decimal import Decimal

from loan_servicing.currency import Currency, Money, round_to_currency, sum_money


class TestCurrency:
    """Test currency precision"""

    def test_minor_units(self):
        assert Currency.USD.minor_unit == Decimal('0.01')
        assert Currency.JPY.minor_unit == Decimal('1')
        assert Currency.COP.code == "COP"

    def test_round_half_up(self):
        assert round_to_currency(Decimal('0.005'), Currency.USD) == Decimal('0.01')
        assert round_to_currency(Decimal('2.675'), Currency.USD) == Decimal('2.68')
        assert round_to_currency(Decimal('-0.005'), Currency.USD) == Decimal('-0.01')
        assert round_to_currency(Decimal('12.5'), Currency.JPY) == Decimal('13')


class TestMoney:
    """Test Money value object"""

    def test_construction_rounds(self):
        assert Money(Decimal('10.005'), Currency.USD).amount == Decimal('10.01')
        assert Money("3.333", Currency.USD).amount == Decimal('3.33')

    def test_arithmetic(self):
        a = Money(Decimal('10.50'), Currency.USD)
        b = Money(Decimal('0.25'), Currency.USD)

        assert a + b == Money(Decimal('10.75'), Currency.USD)
        assert a - b == Money(Decimal('10.25'), Currency.USD)
        assert a * Decimal('2') == Money(Decimal('21.00'), Currency.USD)
        assert a / 3 == Money(Decimal('3.50'), Currency.USD)
        assert -b == Money(Decimal('-0.25'), Currency.USD)

    def test_mixed_currencies_rejected(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.USD) + Money(Decimal('1'), Currency.EUR)
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.USD) < Money(Decimal('1'), Currency.EUR)

    def test_comparisons_and_predicates(self):
        small = Money(Decimal('1'), Currency.USD)
        large = Money(Decimal('2'), Currency.USD)

        assert small < large <= large
        assert large > small >= small
        assert small.min(large) is small
        assert Money.zero(Currency.USD).is_zero()
        assert small.is_positive()
        assert (-small).is_negative()

    def test_to_string(self):
        assert Money(Decimal('1234567.891'), Currency.USD).to_string() == "USD 1,234,567.89"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"

    def test_sum_money(self):
        values = [Money(Decimal('0.10'), Currency.USD)] * 3

        assert sum_money(values, Currency.USD) == Money(Decimal('0.30'), Currency.USD)
        assert sum_money([], Currency.USD).is_zero()
