"""
Tests for currency precision helpers.
"""

from decimal import Decimal

import pytest

from dotmac.subscriptions.money import MoneyHandler, money_handler


@pytest.mark.unit
class TestMoneyHandler:
    def test_invalid_default_currency(self):
        with pytest.raises(ValueError):
            MoneyHandler(default_currency="XXXX")

    def test_quantize_uses_currency_precision(self):
        assert money_handler.quantize(Decimal("4.665"), "USD") == Decimal("4.67")
        assert money_handler.quantize(Decimal("666.5"), "jpy") == Decimal("667")

    def test_minor_units(self):
        assert money_handler.money_from_minor_units(2999, "usd").amount == Decimal("29.99")
        assert money_handler.money_from_minor_units(500, "JPY").amount == Decimal("500")

    def test_minor_units_default_currency(self):
        money = MoneyHandler(default_currency="eur").money_from_minor_units(1250)
        assert money.amount == Decimal("12.50")
        assert money.currency.code == "EUR"

    def test_minor_units_invalid_currency(self):
        with pytest.raises(ValueError):
            money_handler.money_from_minor_units(100, "XXXX")
