"""
Test suite for money rounding

Every amount the engine stores passes through round_money(), so the
rounding rule must be exact and uniform.
"""

import pytest
from decimal import Decimal

from core_obligations.currency import Currency, DEFAULT_CURRENCY, round_money, to_decimal


class TestRoundMoney:
    """Test the canonical rounding rule"""

    def test_rounds_half_up(self):
        """Test that exact halves round away from zero"""
        assert round_money(Decimal('0.005')) == Decimal('0.01')
        assert round_money(Decimal('2.345')) == Decimal('2.35')
        assert round_money(Decimal('-2.345')) == Decimal('-2.35')

    def test_rounds_down_below_half(self):
        assert round_money(Decimal('1.2349')) == Decimal('1.23')

    def test_result_has_currency_precision(self):
        """Test results are quantized to the currency's smallest unit"""
        assert str(round_money(10)) == "10.00"
        assert str(round_money("3", Currency.CLP)) == "3"
        assert str(round_money("1.23456", Currency.CLF)) == "1.2346"

    def test_zero_precision_currency(self):
        assert round_money(Decimal('1500.5'), Currency.CLP) == Decimal('1501')

    def test_float_input_does_not_drift(self):
        """Test floats go through their shortest repr, not their binary value"""
        # Decimal(1.005) is 1.00499999999999989...
        assert round_money(1.005) == Decimal('1.01')

    def test_default_currency(self):
        assert DEFAULT_CURRENCY == Currency.USD
        assert DEFAULT_CURRENCY.quantum == Decimal('0.01')


class TestToDecimal:
    """Test numeric input conversion"""

    def test_accepts_strings_and_ints(self):
        assert to_decimal("12.50") == Decimal('12.50')
        assert to_decimal(7) == Decimal('7')

    def test_decimal_passthrough(self):
        value = Decimal('9.99')
        assert to_decimal(value) is value

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_decimal("twelve")
        with pytest.raises(ValueError):
            to_decimal(None)

    def test_rejects_booleans(self):
        with pytest.raises(ValueError):
            to_decimal(True)


class TestCurrencyLookup:

    def test_from_code_is_case_insensitive(self):
        assert Currency.from_code("eur") == Currency.EUR

    def test_unknown_code(self):
        with pytest.raises(ValueError, match="Unsupported currency"):
            Currency.from_code("XXX")
