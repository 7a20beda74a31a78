"""Quote normalization for a market-data feed with ambiguous price units.

The feed does not reliably say whether "125" for a London listing means
125 pence or 125 pounds, and its previous-close field comes from a
different path than its price series. The functions here guess the unit
from magnitude thresholds plus currency and listing hints. They never
raise on odd input: the result is a best-effort value that may still be
wrong for instruments with extreme native prices.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
import sys

import pandas as pd
import yfinance as yf  # type: ignore[import-untyped]

from .config import QuoteHeuristics
from .decimals import Number, to_decimal

# When True, print each unit correction to stderr.
verbose: bool = False

HUNDRED = Decimal("100")


@lru_cache(maxsize=1)
def default_heuristics() -> QuoteHeuristics:
    """Heuristics from the environment, read once per process."""
    return QuoteHeuristics.from_env()


def _report(symbol: str, what: str, before: Decimal, after: Decimal, reason: str) -> None:
    if verbose:
        print(f"  {symbol}: {what} {before} -> {after} ({reason})", file=sys.stderr, flush=True)


class SeriesPoint:
    """One observation of a price series."""

    def __init__(self, point_datetime: datetime, value: Number):
        self.point_datetime: datetime = point_datetime
        self.value: Decimal = to_decimal(value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SeriesPoint):
            return NotImplemented
        return self.point_datetime == other.point_datetime and self.value == other.value

    def __repr__(self):
        return f"SeriesPoint(datetime={self.point_datetime}, value={self.value})"


class RawQuote:
    """A quote exactly as reported by the feed, before any unit correction."""

    def __init__(
        self,
        symbol: str,
        price: Number,
        currency: str | None,
        previous_close: Number | None = None,
        series: Sequence[SeriesPoint] | None = None,
        observed_at: datetime | None = None,
    ):
        """Initialize a RawQuote.

        Args:
            symbol: Feed symbol, including any listing suffix (e.g. "VOD.L").
            price: Latest price as reported.
            currency: Currency code as reported (e.g. "GBp", "GBX", "USD").
            previous_close: Previous session close as reported, if any.
            series: Price observations for the requested range, oldest first.
            observed_at: When the price was observed.
        """
        self.symbol: str = symbol
        self.price: Decimal = to_decimal(price)
        self.currency: str | None = currency
        self.previous_close: Decimal | None = None if previous_close is None else to_decimal(previous_close)
        self.series: list[SeriesPoint] = list(series or [])
        self.observed_at: datetime | None = observed_at

    def __repr__(self):
        return f"RawQuote(symbol={self.symbol}, price={self.price}, currency={self.currency}, previous_close={self.previous_close})"


class NormalizedQuote:
    """A quote in the instrument's presentation unit."""

    def __init__(
        self,
        symbol: str,
        price: Decimal,
        currency: str | None,
        previous_close: Decimal | None,
        series: list[SeriesPoint],
        observed_at: datetime | None = None,
    ):
        self.symbol = symbol
        self.price = price
        self.currency = currency
        self.previous_close = previous_close
        self.series = series
        self.observed_at = observed_at

    @property
    def daily_change(self) -> Decimal | None:
        if self.previous_close is None:
            return None
        return self.price - self.previous_close

    @property
    def daily_change_percent(self) -> Decimal | None:
        if not self.previous_close:
            return None
        return (self.price - self.previous_close) / self.previous_close * 100

    def __repr__(self):
        return f"NormalizedQuote(symbol={self.symbol}, price={self.price}, previous_close={self.previous_close})"


def is_minor_unit_listing(symbol: str, heuristics: QuoteHeuristics | None = None) -> bool:
    """True if the symbol's listing suffix marks an exchange that quotes in minor units."""
    heuristics = heuristics or default_heuristics()
    upper = symbol.upper()
    return any(upper.endswith(suffix.upper()) for suffix in heuristics.minor_unit_suffixes)


def normalize_price(
    raw_price: Number,
    raw_currency: str | None,
    symbol: str,
    heuristics: QuoteHeuristics | None = None,
) -> Decimal:
    """Convert a feed price to the instrument's presentation (major) unit.

    Rules, first match wins:

    1. Minor-unit listing and price below the shifted-decimal ceiling:
       the feed shifted the decimal point, multiply by 100.
    2. Minor-unit currency and price at or above the minor-currency
       floor, or minor-unit listing with price above the minor-listing
       floor in a currency not known to be major: divide by 100.
    3. Otherwise the price is returned unchanged.

    Zero prices are returned unchanged.

    Args:
        raw_price: The price as reported.
        raw_currency: The currency code as reported, or None.
        symbol: The feed symbol.
        heuristics: Thresholds to use. Defaults to the environment's.

    Returns:
        The best-effort price in major units.
    """
    heuristics = heuristics or default_heuristics()
    price = to_decimal(raw_price)
    if not price:
        return price

    minor_listing = is_minor_unit_listing(symbol, heuristics)
    minor_currency = raw_currency in heuristics.minor_unit_currencies
    known_major = raw_currency is not None and raw_currency.upper() in heuristics.major_unit_currencies

    if minor_listing and price < heuristics.shifted_decimal_ceiling:
        corrected = price * HUNDRED
        _report(symbol, "price", price, corrected, "decimal shifted on minor-unit listing")
        return corrected

    if (minor_currency and price >= heuristics.minor_currency_floor) or (
        minor_listing and price > heuristics.minor_listing_floor and not known_major
    ):
        corrected = price / HUNDRED
        _report(symbol, "price", price, corrected, "minor units")
        return corrected

    return price


def _in_window(value: Decimal, window: tuple[Decimal, Decimal]) -> bool:
    low, high = window
    return low < value < high


def reconcile_reference_close(
    normalized_series: Sequence[SeriesPoint],
    raw_previous_close: Number | None,
    currency: str | None,
    symbol: str,
    intraday: bool = True,
    heuristics: QuoteHeuristics | None = None,
) -> Decimal | None:
    """Sanity-check the feed's previous close against an already normalized price series.

    Steps:

    1. Normalize the raw previous close with ``normalize_price``.
    2. Intraday series only: if it deviates from the first observed point
       by more than the baseline tolerance, use the first point instead.
    3. Compare the last point to the previous close. A ratio inside the
       under-scaled window means the close is ~100x too small (multiply by
       100); a ratio inside the over-scaled window means it is ~100x too
       large (divide by 100).

    Args:
        normalized_series: Price observations in presentation units, oldest first.
        raw_previous_close: Previous close as reported, or None.
        currency: The currency code as reported.
        symbol: The feed symbol.
        intraday: Whether the series covers the current session only.
        heuristics: Thresholds to use. Defaults to the environment's.

    Returns:
        The corrected previous close, or None if neither the feed nor an
        intraday series provides one.
    """
    heuristics = heuristics or default_heuristics()

    previous_close: Decimal | None = None
    if raw_previous_close is not None:
        previous_close = normalize_price(raw_previous_close, currency, symbol, heuristics)

    if not normalized_series:
        return previous_close

    first = normalized_series[0].value
    last = normalized_series[-1].value

    if intraday and first:
        if previous_close is None:
            previous_close = first
        elif abs(previous_close - first) / abs(first) > heuristics.baseline_tolerance:
            _report(symbol, "previous close", previous_close, first, "deviates from first intraday point")
            previous_close = first

    if not previous_close:
        return previous_close

    ratio = last / previous_close
    if _in_window(ratio, heuristics.under_scaled_ratio):
        corrected = previous_close * HUNDRED
        _report(symbol, "previous close", previous_close, corrected, "under-scaled against series")
        return corrected
    if _in_window(ratio, heuristics.over_scaled_ratio):
        corrected = previous_close / HUNDRED
        _report(symbol, "previous close", previous_close, corrected, "over-scaled against series")
        return corrected
    return previous_close


def normalize_quote(raw: RawQuote, intraday: bool = True, heuristics: QuoteHeuristics | None = None) -> NormalizedQuote:
    """Normalize a raw quote's price, series and previous close."""
    heuristics = heuristics or default_heuristics()
    series = [
        SeriesPoint(point.point_datetime, normalize_price(point.value, raw.currency, raw.symbol, heuristics))
        for point in raw.series
    ]
    price = normalize_price(raw.price, raw.currency, raw.symbol, heuristics)
    previous_close = reconcile_reference_close(
        series, raw.previous_close, raw.currency, raw.symbol, intraday=intraday, heuristics=heuristics
    )
    return NormalizedQuote(
        symbol=raw.symbol,
        price=price,
        currency=raw.currency,
        previous_close=previous_close,
        series=series,
        observed_at=raw.observed_at,
    )


def series_from_frame(df: pd.DataFrame, column: str = "Close") -> list[SeriesPoint]:
    """Convert a price history DataFrame indexed by timestamp into series points.

    Rows with a missing value are skipped.
    """
    if df.empty or column not in df.columns:
        return []
    values = df[column].dropna()
    return [
        SeriesPoint(pd.Timestamp(ts).to_pydatetime(), Decimal(str(value)))
        for ts, value in values.items()
    ]


class QuoteProvider(ABC):
    """Abstract base class for market-data feeds."""

    @abstractmethod
    def get_raw_quote(self, symbol: str, intraday: bool = True) -> RawQuote:
        raise NotImplementedError("This method should be overridden by subclasses.")

    def get_quote(self, symbol: str, intraday: bool = True, heuristics: QuoteHeuristics | None = None) -> NormalizedQuote:
        """Fetch a quote and normalize its units."""
        return normalize_quote(self.get_raw_quote(symbol, intraday), intraday=intraday, heuristics=heuristics)


class FixedQuoteProvider(QuoteProvider):
    """Quote provider serving preset raw quotes."""

    def __init__(self, quotes: dict[str, RawQuote]):
        self.quotes = quotes

    def get_raw_quote(self, symbol: str, intraday: bool = True) -> RawQuote:
        if symbol not in self.quotes:
            raise ValueError(f"No quote available for {symbol}")
        return self.quotes[symbol]


class YFinanceQuoteProvider(QuoteProvider):
    """Quote provider backed by Yahoo Finance through yfinance."""

    def __init__(self, intraday_interval: str = "5m", daily_period: str = "1mo"):
        """Initialize the provider.

        Args:
            intraday_interval: Bar interval of the intraday series.
            daily_period: Lookback of the daily series when not intraday.
        """
        self.intraday_interval = intraday_interval
        self.daily_period = daily_period

    def get_raw_quote(self, symbol: str, intraday: bool = True) -> RawQuote:
        """Fetch the latest price, previous close and price series for a symbol.

        Raises:
            ValueError: If Yahoo Finance fails or reports no price.
        """
        try:
            ticker = yf.Ticker(symbol)
            fast_info = ticker.fast_info
            last_price = fast_info.get("lastPrice")
            currency = fast_info.get("currency")
            previous_close = fast_info.get("previousClose")
            if intraday:
                history: pd.DataFrame = ticker.history(period="1d", interval=self.intraday_interval)  # type: ignore[call-arg]
            else:
                history = ticker.history(period=self.daily_period, interval="1d")  # type: ignore[call-arg]
        except Exception as e:
            raise ValueError(f"yfinance request failed for {symbol}: {e}") from e

        series = series_from_frame(history)
        if last_price is None:
            if not series:
                raise ValueError(f"No price data available for {symbol}")
            last_price = series[-1].value

        observed_at = series[-1].point_datetime if series else datetime.now()
        return RawQuote(
            symbol=symbol,
            price=last_price,
            currency=currency,
            previous_close=previous_close,
            series=series,
            observed_at=observed_at,
        )
