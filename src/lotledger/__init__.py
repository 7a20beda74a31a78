"""Cost-basis ledger and currency-unit normalization for a personal investment tracker.

Positions are ledgers of purchase lots with derived share counts, average
prices and cost-weighted entry FX rates. Quotes from the market-data feed
are normalized between major and minor currency units before use.
Persistence helpers (``lotledger.storage``) and the yfinance quote
provider are available but not re-exported here.
"""

from .currency import (
    Currency,
    ExchangeRateManager,
    FixedExchangeRateManager,
    to_presentation,
    to_presentation_price,
    to_storage,
)
from .decimals import round_fx_rate, round_price, round_shares, to_decimal
from .ledger import (
    IncomingPurchase,
    LedgerAggregate,
    LedgerInvariantError,
    Position,
    PurchaseLot,
    delete_lot,
    merge_incoming,
    migrate_legacy_position,
    recompute,
    replace_lots,
    synthesize_legacy_lot,
)
from .quotes import (
    NormalizedQuote,
    RawQuote,
    SeriesPoint,
    normalize_price,
    normalize_quote,
    reconcile_reference_close,
)
from .repository import PositionRepository
from .valuation import Instrument, PositionValuation, summarize_portfolio, value_position

__all__ = [
    "Currency",
    "ExchangeRateManager",
    "FixedExchangeRateManager",
    "to_presentation",
    "to_presentation_price",
    "to_storage",
    "round_fx_rate",
    "round_price",
    "round_shares",
    "to_decimal",
    "IncomingPurchase",
    "LedgerAggregate",
    "LedgerInvariantError",
    "Position",
    "PurchaseLot",
    "delete_lot",
    "merge_incoming",
    "migrate_legacy_position",
    "recompute",
    "replace_lots",
    "synthesize_legacy_lot",
    "NormalizedQuote",
    "RawQuote",
    "SeriesPoint",
    "normalize_price",
    "normalize_quote",
    "reconcile_reference_close",
    "PositionRepository",
    "Instrument",
    "PositionValuation",
    "summarize_portfolio",
    "value_position",
]
