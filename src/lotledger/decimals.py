"""Fixed-precision rounding helpers for share counts, FX rates and prices."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .currency import Currency

Number = Union[Decimal, int, float, str]

SHARES_QUANTUM = Decimal("0.000001")
FX_RATE_QUANTUM = Decimal("0.000001")
PRICE_QUANTUM = Decimal("0.01")
MINOR_UNIT_PRICE_QUANTUM = Decimal("0.0001")

ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artifacts.

    Floats go through ``str`` first so ``0.1`` becomes ``Decimal("0.1")``
    rather than its exact binary expansion.

    Args:
        value: The value to convert.

    Returns:
        The value as a Decimal.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def round_shares(value: Number) -> Decimal:
    """Round a share count to 6 decimal places."""
    return to_decimal(value).quantize(SHARES_QUANTUM, rounding=ROUND_HALF_UP)


def round_fx_rate(value: Number) -> Decimal:
    """Round an FX rate to 6 decimal places, regardless of currency."""
    return to_decimal(value).quantize(FX_RATE_QUANTUM, rounding=ROUND_HALF_UP)


def price_quantum(currency: Currency) -> Decimal:
    """Return the rounding step for prices in the given currency.

    Minor-unit currencies keep 4 decimal places of the major unit so that
    sub-penny precision survives; every other currency uses 2.
    """
    if currency.is_minor_unit:
        return MINOR_UNIT_PRICE_QUANTUM
    return PRICE_QUANTUM


def round_price(value: Number, currency: Currency) -> Decimal:
    """Round a price using the decimal-place policy of its currency."""
    return to_decimal(value).quantize(price_quantum(currency), rounding=ROUND_HALF_UP)
