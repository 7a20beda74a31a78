"""Runtime configuration read from the environment (and a ``.env`` file, if present).

The quote heuristics are empirically tuned constants. They live here so a
deployment can retune them for unusual instruments without code changes:

    LOTLEDGER_SHIFTED_DECIMAL_CEILING=0.5
    LOTLEDGER_MINOR_CURRENCY_FLOOR=25
    LOTLEDGER_MINOR_LISTING_FLOOR=50
    LOTLEDGER_BASELINE_TOLERANCE=0.03
    LOTLEDGER_UNDER_SCALED_RATIO=90,120
    LOTLEDGER_OVER_SCALED_RATIO=0.008,0.012
    LOTLEDGER_MINOR_UNIT_SUFFIXES=.L
    LOTLEDGER_MINOR_UNIT_CURRENCIES=GBp,GBX,GBx,ZAc
    LOTLEDGER_MAJOR_UNIT_CURRENCIES=USD,EUR,CHF
    LOTLEDGER_REFERENCE_CURRENCY=CHF
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal

from dotenv import load_dotenv

from .currency import Currency
from .decimals import to_decimal

load_dotenv()

ENV_PREFIX = "LOTLEDGER_"


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return to_decimal(raw.strip())
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")


def _env_window(name: str, default: tuple[Decimal, Decimal]) -> tuple[Decimal, Decimal]:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    parts = [p.strip() for p in raw.split(",")]
    try:
        low, high = (to_decimal(p) for p in parts)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be two numbers 'low,high', got {raw!r}")
    if low >= high:
        raise ValueError(f"{ENV_PREFIX}{name} lower bound must be below upper bound, got {raw!r}")
    return low, high


def _env_codes(name: str, default: frozenset[str]) -> frozenset[str]:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return frozenset(code.strip() for code in raw.split(",") if code.strip())


@dataclass(frozen=True)
class QuoteHeuristics:
    """Thresholds used to guess the unit of prices reported by the market-data feed."""

    # Below this, a minor-unit listing was reported with its decimal point shifted.
    shifted_decimal_ceiling: Decimal = Decimal("0.5")
    # At or above this, a price in a minor-unit currency is taken to be in minor units.
    minor_currency_floor: Decimal = Decimal("25")
    # Above this, a minor-unit listing in an unknown currency is taken to be in minor units.
    minor_listing_floor: Decimal = Decimal("50")
    # Max relative deviation between previous close and the first intraday point.
    baseline_tolerance: Decimal = Decimal("0.03")
    # last/previous-close ratio windows (exclusive) that indicate a 100x unit mismatch.
    under_scaled_ratio: tuple[Decimal, Decimal] = (Decimal("90"), Decimal("120"))
    over_scaled_ratio: tuple[Decimal, Decimal] = (Decimal("0.008"), Decimal("0.012"))
    minor_unit_suffixes: tuple[str, ...] = (".L",)
    minor_unit_currencies: frozenset[str] = field(default_factory=lambda: frozenset({"GBp", "GBX", "GBx", "ZAc"}))
    major_unit_currencies: frozenset[str] = field(default_factory=lambda: frozenset({"USD", "EUR", "CHF"}))

    @classmethod
    def from_env(cls) -> "QuoteHeuristics":
        """Build heuristics from ``LOTLEDGER_*`` variables, falling back to the defaults.

        Raises:
            ValueError: If a variable is set but cannot be parsed.
        """
        defaults = cls()
        suffixes = _env_codes("MINOR_UNIT_SUFFIXES", frozenset(defaults.minor_unit_suffixes))
        return cls(
            shifted_decimal_ceiling=_env_decimal("SHIFTED_DECIMAL_CEILING", defaults.shifted_decimal_ceiling),
            minor_currency_floor=_env_decimal("MINOR_CURRENCY_FLOOR", defaults.minor_currency_floor),
            minor_listing_floor=_env_decimal("MINOR_LISTING_FLOOR", defaults.minor_listing_floor),
            baseline_tolerance=_env_decimal("BASELINE_TOLERANCE", defaults.baseline_tolerance),
            under_scaled_ratio=_env_window("UNDER_SCALED_RATIO", defaults.under_scaled_ratio),
            over_scaled_ratio=_env_window("OVER_SCALED_RATIO", defaults.over_scaled_ratio),
            minor_unit_suffixes=tuple(sorted(suffixes)),
            minor_unit_currencies=_env_codes("MINOR_UNIT_CURRENCIES", defaults.minor_unit_currencies),
            major_unit_currencies=_env_codes("MAJOR_UNIT_CURRENCIES", defaults.major_unit_currencies),
        )


def reference_currency() -> Currency:
    """The currency all holdings are normalized to for portfolio totals (CHF by default)."""
    raw = os.getenv(ENV_PREFIX + "REFERENCE_CURRENCY", "CHF").strip()
    try:
        currency = Currency.parse(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}REFERENCE_CURRENCY is not a supported currency: {raw!r}")
    if currency.is_minor_unit:
        raise ValueError(f"{ENV_PREFIX}REFERENCE_CURRENCY must be a major currency, got {raw!r}")
    return currency
