"""Purchase-lot ledger, position aggregates and the merge engine.

A position's purchase lots are the single source of truth for its share
count, average price, average entry FX rate and buy date. The only
positions whose aggregates are stored rather than derived are legacy
positions created before lots were tracked; they are migrated into a
single synthetic lot before any ledger operation touches them.

Every function here is pure: positions and lots are never mutated in
place, and each operation returns a new Position or raises without
side effects.
"""

from __future__ import annotations

import uuid
import warnings
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .currency import Currency, to_presentation, to_storage
from .decimals import Number, ONE, ZERO, round_fx_rate, round_price, round_shares, to_decimal


class LedgerInvariantError(ValueError):
    """Raised when a lot or ledger would violate a cost-basis invariant."""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _to_date(value: date | str | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


class PurchaseLot:
    """A single discrete buy event contributing to a position's cost basis."""

    def __init__(
        self,
        shares: Number,
        price: Number,
        currency: Currency,
        purchase_date: date | str,
        fx_rate: Number | None = None,
        lot_id: str | None = None,
    ):
        """Initialize a PurchaseLot, rounding each field to its storage precision.

        Args:
            shares: Quantity acquired. Zero is accepted so that a lot can exist
                while being edited; zero-share lots are dropped when the
                ledger is saved into a Position.
            price: Price per share in the native currency's major unit
                (pounds for a pence-quoted instrument).
            currency: The instrument's currency; selects the price precision.
            purchase_date: Acquisition date (a date or an ISO date string).
            fx_rate: Reference-currency value of one native major unit at
                acquisition. Defaults to 1.0 when missing.
            lot_id: Identifier of the lot. Generated when omitted.

        Raises:
            LedgerInvariantError: If shares or price is negative, or the FX
                rate is not positive.
        """
        shares = to_decimal(shares)
        price = to_decimal(price)
        rate = ONE if fx_rate is None else to_decimal(fx_rate)

        if shares < 0:
            raise LedgerInvariantError(f"Lot shares must not be negative, got {shares}")
        if price < 0:
            raise LedgerInvariantError(f"Lot price must not be negative, got {price}")
        if rate <= 0:
            raise LedgerInvariantError(f"Lot FX rate must be positive, got {rate}")

        parsed_date = _to_date(purchase_date)
        if parsed_date is None:
            raise LedgerInvariantError("Lot purchase date is required")

        self.lot_id: str = lot_id or _new_id("lot")
        self.purchase_date: date = parsed_date
        self.currency: Currency = currency
        self.shares: Decimal = round_shares(shares)
        self.price: Decimal = round_price(price, currency)
        self.fx_rate: Decimal = round_fx_rate(rate)

    @property
    def native_cost(self) -> Decimal:
        return self.shares * self.price

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.lot_id,
            "date": self.purchase_date.isoformat(),
            "shares": str(self.shares),
            "price": str(self.price),
            "fx_rate": str(self.fx_rate),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], currency: Currency) -> "PurchaseLot":
        return cls(
            shares=data["shares"],
            price=data["price"],
            currency=currency,
            purchase_date=data["date"],
            fx_rate=data.get("fx_rate"),
            lot_id=data.get("id"),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PurchaseLot):
            return NotImplemented
        return (
            self.lot_id == other.lot_id
            and self.purchase_date == other.purchase_date
            and self.currency == other.currency
            and self.shares == other.shares
            and self.price == other.price
            and self.fx_rate == other.fx_rate
        )

    def __repr__(self):
        return f"PurchaseLot(id={self.lot_id}, date={self.purchase_date}, shares={self.shares}, price={self.price}, fx_rate={self.fx_rate})"


@dataclass(frozen=True)
class LedgerAggregate:
    """Unrounded aggregate figures derived from a list of lots."""
    total_shares: Decimal
    avg_price_native: Decimal
    avg_fx_rate: Decimal
    earliest_date: date | None


def recompute(lots: Iterable[PurchaseLot]) -> LedgerAggregate:
    """Derive a position's aggregate figures from its lots.

    The average FX rate is weighted by native cost (shares x price), not by
    share count. An empty ledger yields zero shares, zero price, an FX rate
    of 1.0 and no date; callers treat that as "no position".

    Args:
        lots: The purchase lots of one position, in any order.

    Returns:
        A LedgerAggregate with full Decimal precision.
    """
    total_shares = ZERO
    total_native_cost = ZERO
    total_reference_cost = ZERO
    earliest_date: date | None = None

    for lot in lots:
        cost = lot.shares * lot.price
        total_shares += lot.shares
        total_native_cost += cost
        total_reference_cost += cost * lot.fx_rate
        if earliest_date is None or lot.purchase_date < earliest_date:
            earliest_date = lot.purchase_date

    avg_price_native = total_native_cost / total_shares if total_shares > 0 else ZERO
    avg_fx_rate = total_reference_cost / total_native_cost if total_native_cost > 0 else Decimal("1.0")

    return LedgerAggregate(
        total_shares=total_shares,
        avg_price_native=avg_price_native,
        avg_fx_rate=avg_fx_rate,
        earliest_date=earliest_date,
    )


@dataclass(frozen=True)
class LegacyAggregate:
    """Aggregate fields of a position recorded before lots were tracked."""
    shares: Decimal
    buy_price_avg: Decimal  # storage units
    buy_date: date | None
    average_entry_fx_rate: Decimal | None


class Position:
    """A holding of one instrument.

    A position is either ledger-backed (``purchases`` is non-empty and every
    aggregate is derived from it) or legacy (no purchases, aggregates stored
    as recorded). The two never coexist. Use ``Position.from_ledger`` and
    ``Position.from_legacy`` rather than the constructor.
    """

    def __init__(
        self,
        stock_id: str,
        currency: Currency,
        purchases: Sequence[PurchaseLot] = (),
        position_id: str | None = None,
        legacy_aggregate: LegacyAggregate | None = None,
    ):
        retained = tuple(lot for lot in purchases if lot.shares > 0)
        if retained and legacy_aggregate is not None:
            raise LedgerInvariantError(
                "A position with purchase lots cannot also carry independently set aggregates"
            )
        seen_ids: set[str] = set()
        for lot in retained:
            if lot.currency != currency:
                raise LedgerInvariantError(
                    f"Lot {lot.lot_id} is in {lot.currency.value}, position {stock_id} is in {currency.value}"
                )
            if lot.lot_id in seen_ids:
                raise LedgerInvariantError(f"Lot id {lot.lot_id} appears more than once in position {stock_id}")
            seen_ids.add(lot.lot_id)

        self.position_id: str = position_id or _new_id("pos")
        self.stock_id: str = stock_id
        self.currency: Currency = currency
        self.purchases: tuple[PurchaseLot, ...] = retained
        self.legacy_aggregate: LegacyAggregate | None = None if retained else legacy_aggregate

        if retained:
            aggregate = recompute(retained)
            if aggregate.total_shares > 0 and aggregate.avg_price_native == 0:
                raise LedgerInvariantError(
                    f"Position {stock_id} holds {aggregate.total_shares} shares at zero total cost"
                )
            self.shares = round_shares(aggregate.total_shares)
            self.buy_price_avg = round_price(to_storage(aggregate.avg_price_native, currency), currency)
            self.average_entry_fx_rate = round_fx_rate(aggregate.avg_fx_rate)
            self.buy_date = aggregate.earliest_date
        elif self.legacy_aggregate is not None:
            self.shares = self.legacy_aggregate.shares
            self.buy_price_avg = self.legacy_aggregate.buy_price_avg
            self.average_entry_fx_rate = self.legacy_aggregate.average_entry_fx_rate or Decimal("1.0")
            self.buy_date = self.legacy_aggregate.buy_date
        else:
            self.shares = round_shares(ZERO)
            self.buy_price_avg = round_price(ZERO, currency)
            self.average_entry_fx_rate = round_fx_rate(ONE)
            self.buy_date = None

    @classmethod
    def from_ledger(
        cls,
        stock_id: str,
        currency: Currency,
        purchases: Sequence[PurchaseLot],
        position_id: str | None = None,
    ) -> "Position":
        """Build a position whose aggregates are derived from its purchase lots.

        Zero-share lots are dropped. An empty ledger yields a closed position.

        Raises:
            LedgerInvariantError: If a lot's currency differs from the
                position's, two lots share an id, or the lots hold shares
                at zero total cost.
        """
        return cls(stock_id=stock_id, currency=currency, purchases=purchases, position_id=position_id)

    @classmethod
    def from_legacy(
        cls,
        stock_id: str,
        currency: Currency,
        shares: Number,
        buy_price_avg: Number,
        buy_date: date | str | None = None,
        average_entry_fx_rate: Number | None = None,
        position_id: str | None = None,
    ) -> "Position":
        """Build a legacy position from recorded aggregates.

        Args:
            stock_id: Reference to the instrument.
            currency: The instrument's currency.
            shares: Recorded share count.
            buy_price_avg: Recorded average price in storage units (pence for
                a pence-quoted instrument).
            buy_date: Recorded first purchase date, if any.
            average_entry_fx_rate: Recorded entry FX rate, if any.
            position_id: Identifier of the position. Generated when omitted.

        Raises:
            LedgerInvariantError: If shares or price is negative, or the FX
                rate is not positive.
        """
        shares = to_decimal(shares)
        buy_price_avg = to_decimal(buy_price_avg)
        rate = None if average_entry_fx_rate is None else to_decimal(average_entry_fx_rate)
        if shares < 0:
            raise LedgerInvariantError(f"Legacy shares must not be negative, got {shares}")
        if buy_price_avg < 0:
            raise LedgerInvariantError(f"Legacy average price must not be negative, got {buy_price_avg}")
        if rate is not None and rate <= 0:
            raise LedgerInvariantError(f"Legacy FX rate must be positive, got {rate}")

        legacy = LegacyAggregate(
            shares=shares,
            buy_price_avg=buy_price_avg,
            buy_date=_to_date(buy_date),
            average_entry_fx_rate=rate,
        )
        return cls(stock_id=stock_id, currency=currency, position_id=position_id, legacy_aggregate=legacy)

    @property
    def is_legacy(self) -> bool:
        return not self.purchases and self.legacy_aggregate is not None

    @property
    def is_closed(self) -> bool:
        """True when the position holds no lots and no shares."""
        return not self.purchases and self.shares == 0

    @property
    def average_price_native(self) -> Decimal:
        """Average price per share in presentation (major) units."""
        return round_price(to_presentation(self.buy_price_avg, self.currency), self.currency)

    @property
    def total_native_cost(self) -> Decimal:
        """Total amount paid, in presentation units of the native currency."""
        if self.purchases:
            return sum((lot.native_cost for lot in self.purchases), ZERO)
        return self.shares * to_presentation(self.buy_price_avg, self.currency)

    def find_lot(self, lot_id: str) -> PurchaseLot:
        for lot in self.purchases:
            if lot.lot_id == lot_id:
                return lot
        raise KeyError(f"Lot {lot_id} not found in position {self.position_id}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the position for a persistence collaborator.

        Decimals are written as strings so values survive exactly.
        """
        return {
            "id": self.position_id,
            "stock_id": self.stock_id,
            "currency": self.currency.value,
            "shares": str(self.shares),
            "buy_price_avg": str(self.buy_price_avg),
            "buy_date": self.buy_date.isoformat() if self.buy_date else None,
            "average_entry_fx_rate": str(self.average_entry_fx_rate),
            "purchases": [lot.to_dict() for lot in self.purchases],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        """Rebuild a position from ``to_dict`` output.

        When purchases are present the stored aggregate fields are ignored
        and derived again from the lots.
        """
        currency = Currency.parse(data["currency"])
        purchases = [PurchaseLot.from_dict(item, currency) for item in data.get("purchases") or []]
        if purchases:
            return cls.from_ledger(data["stock_id"], currency, purchases, position_id=data.get("id"))
        return cls.from_legacy(
            stock_id=data["stock_id"],
            currency=currency,
            shares=data.get("shares") or 0,
            buy_price_avg=data.get("buy_price_avg") or 0,
            buy_date=data.get("buy_date"),
            average_entry_fx_rate=data.get("average_entry_fx_rate"),
            position_id=data.get("id"),
        )

    def __repr__(self):
        return (
            f"Position(id={self.position_id}, stock_id={self.stock_id}, shares={self.shares}, "
            f"buy_price_avg={self.buy_price_avg}, lots={len(self.purchases)})"
        )


def synthesize_legacy_lot(position: Position, today: date | None = None) -> PurchaseLot:
    """Create the single lot that stands in for a legacy position's history.

    The lot id is derived from the position id so repeated synthesis yields
    identical lots.

    Args:
        position: A legacy position (no purchase lots).
        today: Date to assume when the legacy buy date is missing.

    Returns:
        A PurchaseLot carrying the legacy shares, price (in major units) and
        entry FX rate.

    Raises:
        LedgerInvariantError: If the position already has purchase lots.
    """
    if position.purchases:
        raise LedgerInvariantError(f"Position {position.position_id} already has a purchase ledger")

    purchase_date = position.buy_date
    if purchase_date is None:
        purchase_date = today or date.today()
        warnings.warn(
            f"Legacy position {position.position_id} has no buy date. "
            f"Assuming {purchase_date.isoformat()} for its migrated lot.",
            UserWarning
        )

    return PurchaseLot(
        shares=position.shares,
        price=to_presentation(position.buy_price_avg, position.currency),
        currency=position.currency,
        purchase_date=purchase_date,
        fx_rate=position.average_entry_fx_rate,
        lot_id=f"{position.position_id}-legacy",
    )


def migrate_legacy_position(position: Position, today: date | None = None) -> Position:
    """Convert a legacy position into a single-lot ledger position.

    Positions that already have lots are returned unchanged, as are
    legacy positions without shares (they become closed, empty-ledger
    positions).
    """
    if position.purchases:
        return position
    if position.shares <= 0:
        return Position.from_ledger(position.stock_id, position.currency, [], position_id=position.position_id)
    lot = synthesize_legacy_lot(position, today)
    return Position.from_ledger(position.stock_id, position.currency, [lot], position_id=position.position_id)


class IncomingPurchase:
    """A purchase submitted for merging into a position, with or without its own lots."""

    def __init__(
        self,
        stock_id: str,
        shares: Number,
        price: Number,
        currency: Currency,
        fx_rate: Number | None = None,
        purchase_date: date | str | None = None,
        lots: Sequence[PurchaseLot] | None = None,
    ):
        """Initialize an IncomingPurchase.

        Args:
            stock_id: Reference to the instrument bought.
            shares: Quantity bought; must be positive.
            price: Price per share in native major units; must not be negative.
            currency: The instrument's currency.
            fx_rate: Entry FX rate. Defaults to 1.0.
            purchase_date: Date of the purchase. Defaults to the merge date.
            lots: Lot history of the purchase. When non-empty it replaces
                the single lot that would otherwise be built from the
                fields above.

        Raises:
            LedgerInvariantError: If shares is not positive (or, when lots
                are given, no lot holds shares), the price is negative or
                the FX rate is not positive.
        """
        self.stock_id = stock_id
        self.shares = to_decimal(shares)
        self.price = to_decimal(price)
        self.currency = currency
        self.fx_rate = None if fx_rate is None else to_decimal(fx_rate)
        self.purchase_date = _to_date(purchase_date)
        self.lots: list[PurchaseLot] = list(lots or [])

        if self.lots:
            if not any(lot.shares > 0 for lot in self.lots):
                raise LedgerInvariantError(f"Incoming lots for {stock_id} hold no shares")
        elif self.shares <= 0:
            raise LedgerInvariantError(f"Incoming shares must be positive, got {self.shares}")
        if self.price < 0:
            raise LedgerInvariantError(f"Incoming price must not be negative, got {self.price}")
        if self.fx_rate is not None and self.fx_rate <= 0:
            raise LedgerInvariantError(f"Incoming FX rate must be positive, got {self.fx_rate}")

    def to_lots(self, today: date | None = None) -> list[PurchaseLot]:
        if self.lots:
            return list(self.lots)
        return [
            PurchaseLot(
                shares=self.shares,
                price=self.price,
                currency=self.currency,
                purchase_date=self.purchase_date or today or date.today(),
                fx_rate=self.fx_rate,
            )
        ]

    def __repr__(self):
        return f"IncomingPurchase(stock_id={self.stock_id}, shares={self.shares}, price={self.price}, lots={len(self.lots)})"


def merge_incoming(existing: Position | None, incoming: IncomingPurchase, today: date | None = None) -> Position:
    """Merge an incoming purchase into a position's ledger.

    A legacy position is first migrated into a single lot so that its cost
    basis is kept. The incoming lots are appended after the existing ones
    and every aggregate is recomputed over the combined ledger. No lot is
    ever discarded, and ``existing`` is left untouched.

    Args:
        existing: The current position for the instrument, or None.
        incoming: The purchase to add.
        today: Date used when the incoming purchase carries no date.

    Returns:
        The merged Position, keeping the existing position id.

    Raises:
        LedgerInvariantError: If the incoming purchase is for a different
            instrument or currency, or the merged ledger is invalid.
    """
    new_lots = incoming.to_lots(today)

    if existing is None:
        return Position.from_ledger(incoming.stock_id, incoming.currency, _with_unique_ids([], new_lots))

    if existing.stock_id != incoming.stock_id:
        raise LedgerInvariantError(
            f"Cannot merge a purchase of {incoming.stock_id} into position {existing.position_id} of {existing.stock_id}"
        )
    if existing.currency != incoming.currency:
        raise LedgerInvariantError(
            f"Cannot merge a {incoming.currency.value} purchase into a {existing.currency.value} position"
        )

    if existing.purchases:
        base_lots = list(existing.purchases)
    elif existing.shares > 0:
        base_lots = [synthesize_legacy_lot(existing, today)]
    else:
        base_lots = []

    return Position.from_ledger(
        existing.stock_id,
        existing.currency,
        [*base_lots, *_with_unique_ids(base_lots, new_lots)],
        position_id=existing.position_id,
    )


def _with_unique_ids(base_lots: Sequence[PurchaseLot], new_lots: Sequence[PurchaseLot]) -> list[PurchaseLot]:
    # Re-imported lots may carry ids the ledger already holds; both lots are kept.
    taken = {lot.lot_id for lot in base_lots}
    unique: list[PurchaseLot] = []
    for lot in new_lots:
        if lot.lot_id in taken:
            renamed = PurchaseLot(
                shares=lot.shares,
                price=lot.price,
                currency=lot.currency,
                purchase_date=lot.purchase_date,
                fx_rate=lot.fx_rate,
            )
            warnings.warn(
                f"Incoming lot id {lot.lot_id} is already in use. Storing the lot as {renamed.lot_id}.",
                UserWarning
            )
            lot = renamed
        taken.add(lot.lot_id)
        unique.append(lot)
    return unique


def replace_lots(position: Position, lots: Sequence[PurchaseLot]) -> Position:
    """Save an edited lot list for a position, dropping zero-share lots."""
    return Position.from_ledger(position.stock_id, position.currency, lots, position_id=position.position_id)


def delete_lot(position: Position, lot_id: str) -> Position:
    """Remove exactly one lot from a position by explicit request.

    Raises:
        KeyError: If the position has no lot with that id.
    """
    target = position.find_lot(lot_id)
    remaining = [lot for lot in position.purchases if lot is not target]
    return replace_lots(position, remaining)
