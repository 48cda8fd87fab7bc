"""
Unit tests for money and date helpers.
"""

import pytest
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from billing_ledger.utils.formatters import to_money, money_str, money_display, iso_datetime


class TestToMoney:

    def test_rounds_half_up_to_cents(self):
        assert to_money('10.005') == Decimal('10.01')
        assert to_money('10.004') == Decimal('10.00')

    def test_float_goes_through_str(self):
        assert to_money(0.1) == Decimal('0.10')

    def test_empty_values_are_zero(self):
        assert to_money(None) == Decimal('0.00')
        assert to_money('') == Decimal('0.00')

    def test_strips_whitespace(self):
        assert to_money(' 12.5 ') == Decimal('12.50')

    def test_rejects_garbage(self):
        with pytest.raises(InvalidOperation):
            to_money('abc')

    def test_rejects_non_finite(self):
        with pytest.raises(InvalidOperation):
            to_money('Infinity')


class TestMoneyStr:

    def test_two_decimals(self):
        assert money_str(1000) == '1000.00'
        assert money_str(Decimal('0.5')) == '0.50'

    def test_none(self):
        assert money_str(None) is None


class TestMoneyDisplay:

    def test_thousands_separator(self):
        assert money_display(1500) == '1,500.00'
        assert money_display('1234567.891') == '1,234,567.89'

    def test_invalid_is_dash(self):
        assert money_display(None) == '-'
        assert money_display('not a number') == '-'


class TestIsoDatetime:

    def test_datetime(self):
        assert iso_datetime(datetime(2024, 3, 1, 10, 30)) == '2024-03-01T10:30:00'

    def test_date(self):
        assert iso_datetime(date(2024, 3, 1)) == '2024-03-01'

    def test_none(self):
        assert iso_datetime(None) is None
