from enum import Enum
from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime

from .decimals import Number, ONE, round_price, to_decimal


class Currency(Enum):
    """Supported instrument and reference currencies.

    ``GBp`` (pence) and ``ZAc`` (South African cents) are minor units: the
    market quotes them in hundredths of their major currency.
    """

    CHF = "CHF"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    GBp = "GBp"
    CAD = "CAD"
    AUD = "AUD"
    JPY = "JPY"
    HKD = "HKD"
    SGD = "SGD"
    SEK = "SEK"
    NOK = "NOK"
    DKK = "DKK"
    ZAR = "ZAR"
    ZAc = "ZAc"

    @classmethod
    def parse(cls, code: "str | Currency") -> "Currency":
        """Resolve a currency code, accepting the common minor-unit aliases.

        Args:
            code: A currency code such as "USD", "GBp" or "GBX".

        Returns:
            The matching Currency.

        Raises:
            ValueError: If the code is not a supported currency.
        """
        if isinstance(code, Currency):
            return code
        if code in _CURRENCY_ALIASES:
            return _CURRENCY_ALIASES[code]
        try:
            return cls(code)
        except ValueError:
            raise ValueError(f"Unsupported currency: {code!r}")

    @property
    def minor_unit_divisor(self) -> int:
        """Number of storage units per presentation unit (100 for pence, else 1)."""
        return MINOR_UNIT_DIVISORS.get(self, 1)

    @property
    def is_minor_unit(self) -> bool:
        return self.minor_unit_divisor != 1

    @property
    def major(self) -> "Currency":
        """The major currency a minor unit belongs to (itself otherwise)."""
        return _MAJOR_CURRENCIES.get(self, self)


MINOR_UNIT_DIVISORS: dict[Currency, int] = {
    Currency.GBp: 100,
    Currency.ZAc: 100,
}

_MAJOR_CURRENCIES: dict[Currency, Currency] = {
    Currency.GBp: Currency.GBP,
    Currency.ZAc: Currency.ZAR,
}

_CURRENCY_ALIASES: dict[str, Currency] = {
    "GBX": Currency.GBp,
    "GBx": Currency.GBp,
    "ZAC": Currency.ZAc,
}


def to_storage(value: Number, currency: Currency) -> Decimal:
    """Convert a presentation-unit value (e.g. pounds) to storage units (e.g. pence)."""
    return to_decimal(value) * currency.minor_unit_divisor


def to_presentation(value: Number, currency: Currency) -> Decimal:
    """Convert a storage-unit value (e.g. pence) to presentation units (e.g. pounds)."""
    return to_decimal(value) / currency.minor_unit_divisor


def to_presentation_price(value: Number, currency: Currency) -> Decimal:
    """Convert a stored price to presentation units and round it for display."""
    return round_price(to_presentation(value, currency), currency)


class ExchangeRateManager(ABC):
    """Abstract base class for currency exchange rate providers.

    Rates are expressed per major unit: ``get_exchange_rate(GBp, CHF)`` is
    the CHF value of one pound, not of one penny.
    """

    @abstractmethod
    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None = None) -> Decimal:
        """Get the exchange rate between two currencies.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: The date for the rate lookup. If None, uses the current date.

        Returns:
            The exchange rate as a Decimal.
        """
        raise NotImplementedError("This method should be overridden by subclasses.")


class FixedExchangeRateManager(ExchangeRateManager):
    """Exchange rate manager using fixed, hardcoded rates.

    Provides static exchange rates that do not vary by date. Used as the
    fallback when live rates are unavailable, and in tests.
    """

    global_exchange_rates = {
        (Currency.USD, Currency.CHF): Decimal("0.88"),
        (Currency.EUR, Currency.CHF): Decimal("0.94"),
        (Currency.GBP, Currency.CHF): Decimal("1.10"),
        (Currency.CAD, Currency.CHF): Decimal("0.64"),
        (Currency.AUD, Currency.CHF): Decimal("0.58"),
        (Currency.JPY, Currency.CHF): Decimal("0.0059"),
        (Currency.HKD, Currency.CHF): Decimal("0.113"),
        (Currency.SGD, Currency.CHF): Decimal("0.68"),
        (Currency.SEK, Currency.CHF): Decimal("0.083"),
        (Currency.NOK, Currency.CHF): Decimal("0.080"),
        (Currency.DKK, Currency.CHF): Decimal("0.126"),
        (Currency.ZAR, Currency.CHF): Decimal("0.048"),
    }

    def __init__(self, exchange_rates:dict[tuple[Currency, Currency], Decimal] | None = None):
        """Initialize with optional custom exchange rates.

        Args:
            exchange_rates: Custom rates to use. Missing pairs are filled
                from global_exchange_rates defaults.
        """
        self.exchange_rates: dict[tuple[Currency, Currency], Decimal] = dict(exchange_rates or {})
        for pair, rate in self.global_exchange_rates.items():
            self.exchange_rates.setdefault(pair, rate)

    def set_exchange_rate(self, from_currency: Currency, to_currency: Currency, rate: Number):
        """Set or override the exchange rate for a currency pair."""
        self.exchange_rates[(from_currency.major, to_currency.major)] = to_decimal(rate)

    def _lookup(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        if (from_currency, to_currency) in self.exchange_rates:
            return self.exchange_rates[(from_currency, to_currency)]
        inverse = self.exchange_rates.get((to_currency, from_currency))
        if inverse:
            return ONE / inverse
        return None

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None=None) -> Decimal:
        """Get the fixed exchange rate between two currencies.

        Tries a direct rate, then the inverse of the opposite pair, then a
        conversion through CHF.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: Ignored; included for interface compatibility.

        Returns:
            The exchange rate as a Decimal.

        Raises:
            ValueError: If no rate is available for the currency pair.
        """
        from_currency = from_currency.major
        to_currency = to_currency.major

        if from_currency == to_currency:
            return Decimal("1.0")

        rate = self._lookup(from_currency, to_currency)
        if rate is not None:
            return rate

        if from_currency != Currency.CHF and to_currency != Currency.CHF:
            rate_to_chf = self._lookup(from_currency, Currency.CHF)
            rate_from_chf = self._lookup(Currency.CHF, to_currency)
            if rate_to_chf is not None and rate_from_chf is not None:
                return rate_to_chf * rate_from_chf

        raise ValueError(f"Exchange rate from {from_currency.value} to {to_currency.value} not available.")
