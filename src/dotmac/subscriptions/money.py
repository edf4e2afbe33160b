"""
Currency precision helpers using py-moneyed and Babel.

Amounts are kept as bare ``Decimal`` values next to an ISO currency code;
this module knows how many minor units each currency has.
"""

from decimal import ROUND_HALF_UP, Decimal

from babel.numbers import get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist


class MoneyHandler:
    """Currency validation, minor-unit rounding and conversion."""

    def __init__(self, default_currency: str = "USD") -> None:
        self.default_currency = self._validate_currency(default_currency)

    def _validate_currency(self, currency_code: str) -> Currency:
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def quantize(self, amount: Decimal, currency_code: str) -> Decimal:
        """Round a bare amount to the currency's minor-unit precision."""
        precision = get_currency_precision(currency_code.upper())
        return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)

    def money_from_minor_units(self, minor_units: int, currency: str | None = None) -> Money:
        """Create Money from minor units (e.g. cents), in the default currency if none given."""
        validated_currency = (
            self._validate_currency(currency) if currency else self.default_currency
        )
        precision = get_currency_precision(validated_currency.code)
        amount = Decimal(minor_units).scaleb(-precision)
        return Money(amount=amount, currency=validated_currency)


money_handler = MoneyHandler()


__all__ = ["MoneyHandler", "money_handler"]
