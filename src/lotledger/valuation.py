from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from .config import reference_currency
from .currency import Currency, ExchangeRateManager, FixedExchangeRateManager
from .decimals import Number, ONE, ZERO, to_decimal
from .ledger import Position


class Instrument:
    """Instrument metadata and latest prices, owned by the caller."""

    def __init__(self, stock_id: str, symbol: str, currency: Currency, current_price: Number, previous_close: Number | None = None):
        """Initialize an Instrument.

        Args:
            stock_id: Identifier positions refer to.
            symbol: Feed symbol.
            currency: Native currency of the instrument.
            current_price: Latest price in presentation (major) units.
            previous_close: Previous session close in presentation units.
        """
        self.stock_id = stock_id
        self.symbol = symbol
        self.currency = currency
        self.current_price: Decimal = to_decimal(current_price)
        self.previous_close: Decimal | None = None if previous_close is None else to_decimal(previous_close)

    def __repr__(self):
        return f"Instrument(symbol={self.symbol}, currency={self.currency.value}, current_price={self.current_price})"


@dataclass(frozen=True)
class PositionValuation:
    """Market value and gain/loss of one position, natively and in the reference currency."""
    position: Position
    instrument: Instrument
    current_value: Decimal
    buy_value: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    daily_change: Decimal
    daily_change_percent: Decimal
    daily_value_change: Decimal
    reference_currency: Currency
    current_value_reference: Decimal
    buy_value_reference: Decimal
    gain_loss_reference: Decimal
    forex_impact_reference: Decimal


def effective_entry_fx_rate(position: Position) -> Decimal:
    """Entry FX rate with the legacy pence-position fix applied.

    Early pence positions stored the GBP rate inverted (e.g. 0.93 instead of
    1.07 CHF per pound). Pound sterling has traded above the franc
    throughout, so a rate below 1 on such a position is taken as inverted.
    """
    rate = position.average_entry_fx_rate
    if position.currency == Currency.GBp and ZERO < rate < ONE:
        return ONE / rate
    return rate


def value_position(
    position: Position,
    instrument: Instrument,
    exchange_rate_manager: ExchangeRateManager | None = None,
    target_currency: Currency | None = None,
) -> PositionValuation:
    """Value a position at the instrument's latest price.

    Native figures are in the instrument's presentation unit. The entry
    value in the reference currency uses the position's entry FX rate; the
    current value uses today's rate, and their difference on the current
    holding is reported as FX impact.

    Args:
        position: The position to value.
        instrument: Metadata and latest prices of the position's instrument.
        exchange_rate_manager: Source of current FX rates. Defaults to
            FixedExchangeRateManager.
        target_currency: Reference currency. Defaults to the configured one.

    Returns:
        A PositionValuation.

    Raises:
        ValueError: If the instrument does not match the position, or no FX
            rate is available.
    """
    if instrument.stock_id != position.stock_id:
        raise ValueError(f"Instrument {instrument.stock_id} does not match position {position.stock_id}")
    if instrument.currency != position.currency:
        raise ValueError(
            f"Instrument currency {instrument.currency.value} does not match position currency {position.currency.value}"
        )

    exchange_rate_manager = exchange_rate_manager or FixedExchangeRateManager()
    target_currency = target_currency or reference_currency()

    shares = position.shares
    current_value = shares * instrument.current_price
    buy_value = position.total_native_cost
    gain_loss = current_value - buy_value
    gain_loss_percent = gain_loss / buy_value * 100 if buy_value else ZERO

    previous_close = instrument.previous_close
    if previous_close is None:
        previous_close = instrument.current_price
    daily_change = instrument.current_price - previous_close
    daily_change_percent = daily_change / previous_close * 100 if previous_close else ZERO

    current_fx_rate = exchange_rate_manager.get_exchange_rate(position.currency, target_currency)
    entry_fx_rate = effective_entry_fx_rate(position)

    current_value_reference = current_value * current_fx_rate
    buy_value_reference = buy_value * entry_fx_rate

    return PositionValuation(
        position=position,
        instrument=instrument,
        current_value=current_value,
        buy_value=buy_value,
        gain_loss=gain_loss,
        gain_loss_percent=gain_loss_percent,
        daily_change=daily_change,
        daily_change_percent=daily_change_percent,
        daily_value_change=shares * daily_change,
        reference_currency=target_currency,
        current_value_reference=current_value_reference,
        buy_value_reference=buy_value_reference,
        gain_loss_reference=current_value_reference - buy_value_reference,
        forex_impact_reference=current_value_reference - current_value * entry_fx_rate,
    )


@dataclass(frozen=True)
class PortfolioSummary:
    """Totals across positions in the reference currency."""
    total_cost: Decimal
    total_value: Decimal
    total_gain_loss: Decimal
    total_gain_loss_percent: Decimal
    total_forex_impact: Decimal


def summarize_portfolio(valuations: Iterable[PositionValuation]) -> PortfolioSummary:
    """Sum position valuations into portfolio totals.

    Raises:
        ValueError: If the valuations use different reference currencies.
    """
    total_cost = ZERO
    total_value = ZERO
    total_forex_impact = ZERO
    currencies: set[Currency] = set()

    for valuation in valuations:
        currencies.add(valuation.reference_currency)
        total_cost += valuation.buy_value_reference
        total_value += valuation.current_value_reference
        total_forex_impact += valuation.forex_impact_reference

    if len(currencies) > 1:
        raise ValueError(f"Cannot sum valuations in different currencies: {sorted(c.value for c in currencies)}")

    total_gain_loss = total_value - total_cost
    return PortfolioSummary(
        total_cost=total_cost,
        total_value=total_value,
        total_gain_loss=total_gain_loss,
        total_gain_loss_percent=total_gain_loss / total_cost * 100 if total_cost else ZERO,
        total_forex_impact=total_forex_impact,
    )
