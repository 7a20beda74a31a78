"""Tests for purchase lots, aggregation, legacy migration and merging."""

from datetime import date, datetime
from decimal import Decimal
from itertools import permutations

import pytest

from lotledger.currency import Currency
from lotledger.ledger import (
    IncomingPurchase,
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


def _lot(shares, price, fx_rate, day=1, currency=Currency.USD, lot_id=None):
    return PurchaseLot(
        shares=shares,
        price=price,
        currency=currency,
        purchase_date=date(2024, 1, day),
        fx_rate=fx_rate,
        lot_id=lot_id,
    )


def test_lot_rounds_fields_by_policy():
    """Verify lots round shares and FX to 6 places and price by currency."""
    lot = _lot("1.23456789", "10.005", "0.9876543")
    assert lot.shares == Decimal("1.234568")
    assert lot.price == Decimal("10.01")
    assert lot.fx_rate == Decimal("0.987654")

    pence_lot = _lot("1", "1.23456", "1.1", currency=Currency.GBp)
    assert pence_lot.price == Decimal("1.2346")


def test_lot_defaults_fx_rate_and_id():
    """Verify a missing FX rate defaults to 1.0 and an id is generated."""
    lot = PurchaseLot(shares=5, price=20, currency=Currency.CHF, purchase_date="2024-03-01")
    assert lot.fx_rate == Decimal("1")
    assert lot.purchase_date == date(2024, 3, 1)
    assert lot.lot_id.startswith("lot_")


@pytest.mark.parametrize(
    "shares, price, fx_rate, message",
    [
        (-1, 10, 1, "shares must not be negative"),
        (1, -10, 1, "price must not be negative"),
        (1, 10, 0, "FX rate must be positive"),
        (1, 10, -1.2, "FX rate must be positive"),
    ],
)
def test_lot_rejects_invariant_violations(shares, price, fx_rate, message):
    """Verify invalid lots are rejected at construction."""
    with pytest.raises(LedgerInvariantError, match=message):
        _lot(shares, price, fx_rate)


def test_recompute_weighted_averages():
    """Verify average price is share-weighted and FX rate is cost-weighted."""
    lots = [_lot(10, 100, "1.1", day=5), _lot(5, 130, "1.0", day=2)]
    aggregate = recompute(lots)

    assert aggregate.total_shares == Decimal("15")
    assert aggregate.avg_price_native == Decimal("110")
    assert abs(aggregate.avg_fx_rate - Decimal("1750") / Decimal("1650")) < Decimal("1e-6")
    assert abs(aggregate.avg_fx_rate - Decimal("1.060606")) < Decimal("1e-6")
    assert aggregate.earliest_date == date(2024, 1, 2)


def test_recompute_empty_ledger():
    """Verify an empty ledger yields the no-position aggregate without raising."""
    aggregate = recompute([])
    assert aggregate.total_shares == 0
    assert aggregate.avg_price_native == 0
    assert aggregate.avg_fx_rate == Decimal("1.0")
    assert aggregate.earliest_date is None


def test_recompute_zero_cost_defaults_fx_rate():
    """Verify zero native cost falls back to an FX rate of 1.0."""
    aggregate = recompute([_lot(10, 0, "1.5")])
    assert aggregate.avg_fx_rate == Decimal("1.0")


def test_position_derives_aggregates_from_ledger():
    """Verify ledger positions derive and round every aggregate."""
    position = Position.from_ledger("stock_1", Currency.USD, [_lot(10, 100, "1.1", day=5), _lot(5, 130, "1.0", day=2)])

    assert position.shares == Decimal("15")
    assert position.buy_price_avg == Decimal("110.00")
    assert position.average_entry_fx_rate == Decimal("1.060606")
    assert position.buy_date == date(2024, 1, 2)
    assert not position.is_legacy
    assert len(position.purchases) == 2


def test_position_stores_pence_average_in_storage_units():
    """Verify a pence position stores its average price in pence."""
    lots = [_lot(100, "1.2345", "1.1", currency=Currency.GBp), _lot(100, "1.3", "1.2", currency=Currency.GBp)]
    position = Position.from_ledger("vod", Currency.GBp, lots)

    assert position.buy_price_avg == Decimal("126.725")
    assert position.average_price_native == Decimal("1.2673")


def test_position_drops_zero_share_lots():
    """Verify zero-share lots left over from editing are dropped on save."""
    position = Position.from_ledger("stock_1", Currency.USD, [_lot(10, 100, 1), _lot(0, 50, 1)])
    assert len(position.purchases) == 1
    assert position.shares == Decimal("10")


def test_position_rejects_zero_cost_ledger():
    """Verify a ledger holding shares at zero total cost is rejected."""
    with pytest.raises(LedgerInvariantError, match="zero total cost"):
        Position.from_ledger("stock_1", Currency.USD, [_lot(10, 0, 1)])


def test_position_rejects_lots_in_other_currency():
    """Verify lots must share the position's currency."""
    with pytest.raises(LedgerInvariantError, match="is in EUR"):
        Position.from_ledger("stock_1", Currency.USD, [_lot(1, 10, 1, currency=Currency.EUR)])


def test_position_rejects_ledger_with_stored_aggregates():
    """Verify a ledger and independently set aggregates cannot coexist."""
    legacy = Position.from_legacy("stock_1", Currency.USD, shares=10, buy_price_avg=100)
    with pytest.raises(LedgerInvariantError, match="cannot also carry"):
        Position("stock_1", Currency.USD, purchases=[_lot(1, 10, 1)], legacy_aggregate=legacy.legacy_aggregate)


def test_empty_ledger_position_is_closed():
    """Verify a position without lots or shares reports as closed."""
    position = Position.from_ledger("stock_1", Currency.USD, [])
    assert position.is_closed
    assert position.shares == 0
    assert position.average_entry_fx_rate == Decimal("1")
    assert position.buy_date is None


def test_synthesize_legacy_lot():
    """Verify a legacy pence position becomes one lot priced in pounds."""
    legacy = Position.from_legacy(
        "vod", Currency.GBp, shares="12.3456789", buy_price_avg="123.456",
        buy_date="2021-06-01", average_entry_fx_rate="1.2345678", position_id="pos_1",
    )
    lot = synthesize_legacy_lot(legacy)

    assert lot.lot_id == "pos_1-legacy"
    assert lot.purchase_date == date(2021, 6, 1)
    assert lot.shares == Decimal("12.345679")
    assert lot.price == Decimal("1.2346")
    assert lot.fx_rate == Decimal("1.234568")


def test_legacy_migration_is_idempotent():
    """Verify migrating the same legacy position twice gives identical ledgers."""
    legacy = Position.from_legacy("stock_1", Currency.USD, shares=10, buy_price_avg=100, buy_date="2022-01-01")

    first = migrate_legacy_position(legacy)
    second = migrate_legacy_position(legacy)
    assert first.purchases == second.purchases
    assert len(first.purchases) == 1

    again = migrate_legacy_position(first)
    assert again is first


def test_legacy_migration_without_date_warns_and_uses_today():
    """Verify a missing legacy buy date is assumed to be today with a warning."""
    legacy = Position.from_legacy("stock_1", Currency.USD, shares=3, buy_price_avg=50)
    with pytest.warns(UserWarning, match="no buy date"):
        migrated = migrate_legacy_position(legacy, today=date(2025, 5, 5))
    assert migrated.buy_date == date(2025, 5, 5)
    assert migrated.average_entry_fx_rate == Decimal("1")


def test_legacy_migration_without_shares_yields_empty_ledger():
    """Verify a malformed legacy position without shares becomes an empty ledger."""
    legacy = Position.from_legacy("stock_1", Currency.USD, shares=0, buy_price_avg=0)
    migrated = migrate_legacy_position(legacy)
    assert migrated.purchases == ()
    assert migrated.is_closed


def test_merge_into_nothing_creates_position():
    """Verify merging into no position creates one from the incoming purchase."""
    incoming = IncomingPurchase("stock_1", shares=10, price=100, currency=Currency.USD, purchase_date="2024-02-01")
    position = merge_incoming(None, incoming)

    assert position.shares == Decimal("10")
    assert position.average_entry_fx_rate == Decimal("1")
    assert position.buy_date == date(2024, 2, 1)


def test_merge_uses_incoming_lots_when_given():
    """Verify incoming lots replace the single synthesized lot."""
    lots = [_lot(2, 10, 1, lot_id="a"), _lot(3, 20, 1, lot_id="b")]
    incoming = IncomingPurchase("stock_1", shares=5, price=16, currency=Currency.USD, lots=lots)
    position = merge_incoming(None, incoming)
    assert [lot.lot_id for lot in position.purchases] == ["a", "b"]
    assert position.buy_price_avg == Decimal("16.00")


def test_merge_into_legacy_position_keeps_its_cost_basis():
    """Verify a legacy position is migrated before the incoming lot is appended."""
    legacy = Position.from_legacy(
        "stock_1", Currency.USD, shares=10, buy_price_avg=100, buy_date="2020-01-01",
        average_entry_fx_rate="1.1", position_id="pos_legacy",
    )
    incoming = IncomingPurchase("stock_1", shares=5, price=130, currency=Currency.USD, fx_rate="1.0", purchase_date="2024-01-01")

    merged = merge_incoming(legacy, incoming)

    assert merged.position_id == "pos_legacy"
    assert len(merged.purchases) == 2
    assert merged.purchases[0].lot_id == "pos_legacy-legacy"
    assert merged.shares == Decimal("15")
    assert merged.buy_price_avg == Decimal("110.00")
    assert merged.average_entry_fx_rate == Decimal("1.060606")
    assert merged.buy_date == date(2020, 1, 1)
    assert legacy.is_legacy


def test_merge_preserves_insertion_order_and_never_drops_lots():
    """Verify merged lots follow the existing ones in insertion order."""
    existing = Position.from_ledger("stock_1", Currency.USD, [_lot(1, 10, 1, day=9, lot_id="a")])
    incoming = IncomingPurchase("stock_1", 1, 10, Currency.USD, lots=[_lot(1, 12, 1, day=1, lot_id="b")])
    merged = merge_incoming(existing, incoming)
    assert [lot.lot_id for lot in merged.purchases] == ["a", "b"]
    assert [lot.lot_id for lot in existing.purchases] == ["a"]


def test_merge_is_commutative_over_partitions():
    """Verify every order and partition of the same lots gives the same aggregates."""
    lots = [_lot(10, 100, "1.1", day=3), _lot(5, 130, "1.0", day=1), _lot("2.5", "99.99", "0.95", day=7)]
    results = set()

    for ordered in permutations(lots):
        for split in range(1, len(ordered)):
            first = IncomingPurchase("stock_1", 1, 1, Currency.USD, lots=list(ordered[:split]))
            second = IncomingPurchase("stock_1", 1, 1, Currency.USD, lots=list(ordered[split:]))
            position = merge_incoming(merge_incoming(None, first), second)
            results.add((position.shares, position.buy_price_avg, position.average_entry_fx_rate, position.buy_date))

    assert len(results) == 1


def test_merge_rejects_other_instrument_and_currency():
    """Verify merging a purchase of another instrument or currency fails."""
    existing = Position.from_ledger("stock_1", Currency.USD, [_lot(1, 10, 1)])
    with pytest.raises(LedgerInvariantError, match="Cannot merge a purchase of stock_2"):
        merge_incoming(existing, IncomingPurchase("stock_2", 1, 10, Currency.USD))
    with pytest.raises(LedgerInvariantError, match="Cannot merge a EUR purchase"):
        merge_incoming(existing, IncomingPurchase("stock_1", 1, 10, Currency.EUR))


def test_incoming_purchase_validation():
    """Verify incoming purchases need positive shares and a valid price and rate."""
    with pytest.raises(LedgerInvariantError, match="shares must be positive"):
        IncomingPurchase("stock_1", 0, 10, Currency.USD)
    with pytest.raises(LedgerInvariantError, match="price must not be negative"):
        IncomingPurchase("stock_1", 1, -10, Currency.USD)
    with pytest.raises(LedgerInvariantError, match="FX rate must be positive"):
        IncomingPurchase("stock_1", 1, 10, Currency.USD, fx_rate=0)


def test_replace_lots_and_delete_lot():
    """Verify lot edits recompute aggregates and deleting the last lot closes the position."""
    position = Position.from_ledger("stock_1", Currency.USD, [_lot(10, 100, 1, lot_id="a"), _lot(10, 200, 1, lot_id="b")])

    edited = replace_lots(position, [_lot(10, 100, 1, lot_id="a"), _lot(0, 200, 1, lot_id="b")])
    assert edited.shares == Decimal("10")
    assert edited.buy_price_avg == Decimal("100.00")

    after_delete = delete_lot(position, "b")
    assert [lot.lot_id for lot in after_delete.purchases] == ["a"]

    closed = delete_lot(after_delete, "a")
    assert closed.is_closed

    with pytest.raises(KeyError, match="not found"):
        delete_lot(position, "missing")


def test_position_dict_round_trip_rederives_aggregates():
    """Verify stored aggregates are ignored when a ledger is present."""
    position = Position.from_ledger("stock_1", Currency.GBp, [_lot(10, "1.5", "1.1", currency=Currency.GBp)])
    data = position.to_dict()
    data["shares"] = "999"

    restored = Position.from_dict(data)
    assert restored.position_id == position.position_id
    assert restored.shares == Decimal("10")
    assert restored.buy_price_avg == Decimal("150.0000")
    assert restored.purchases == position.purchases


def test_position_from_dict_without_purchases_is_legacy():
    """Verify a stored position without lots loads as legacy."""
    restored = Position.from_dict({
        "id": "pos_9", "stock_id": "stock_9", "currency": "USD",
        "shares": "4", "buy_price_avg": "25", "buy_date": "2019-09-09", "average_entry_fx_rate": None,
    })
    assert restored.is_legacy
    assert restored.average_entry_fx_rate == Decimal("1.0")
    assert restored.buy_date == date(2019, 9, 9)


def test_merge_into_zero_cost_legacy_position():
    """Verify a priced purchase can be merged into a legacy position recorded at price 0."""
    legacy = Position.from_legacy("stock_1", Currency.USD, shares=10, buy_price_avg=0, buy_date="2020-01-01", position_id="p1")
    incoming = IncomingPurchase("stock_1", 5, 100, Currency.USD, purchase_date="2024-01-01")

    merged = merge_incoming(legacy, incoming)

    assert [lot.lot_id for lot in merged.purchases[:1]] == ["p1-legacy"]
    assert merged.shares == Decimal("15")
    assert merged.buy_price_avg == Decimal("33.33")
    assert merged.buy_date == date(2020, 1, 1)


def test_merge_renames_colliding_lot_ids():
    """Verify an incoming lot with a taken id is kept under a new id."""
    existing = Position.from_ledger("stock_1", Currency.USD, [_lot(1, 10, 1, lot_id="lot_a")])
    incoming = IncomingPurchase("stock_1", 1, 20, Currency.USD, lots=[_lot(1, 20, 1, day=2, lot_id="lot_a")])

    with pytest.warns(UserWarning, match="lot_a is already in use"):
        merged = merge_incoming(existing, incoming)

    ids = [lot.lot_id for lot in merged.purchases]
    assert len(merged.purchases) == 2
    assert ids[0] == "lot_a"
    assert ids[1] != "lot_a"

    after_delete = delete_lot(merged, "lot_a")
    assert len(after_delete.purchases) == 1
    assert after_delete.purchases[0].price == Decimal("20.00")


def test_position_rejects_duplicate_lot_ids():
    """Verify two lots with the same id cannot share a position."""
    with pytest.raises(LedgerInvariantError, match="appears more than once"):
        Position.from_ledger("stock_1", Currency.USD, [_lot(1, 10, 1, lot_id="a"), _lot(2, 10, 1, lot_id="a")])


def test_lot_dates_drop_time_of_day():
    """Verify datetime purchase dates are stored as plain dates."""
    timed = PurchaseLot(1, 10, Currency.USD, datetime(2024, 1, 2, 9, 30))
    assert type(timed.purchase_date) is date
    assert timed.to_dict()["date"] == "2024-01-02"

    aggregate = recompute([timed, PurchaseLot(1, 10, Currency.USD, date(2024, 1, 1))])
    assert aggregate.earliest_date == date(2024, 1, 1)


def test_incoming_lots_must_hold_shares():
    """Verify incoming lots with no shares are rejected instead of creating an empty position."""
    with pytest.raises(LedgerInvariantError, match="hold no shares"):
        IncomingPurchase("stock_1", 0, 10, Currency.USD, lots=[_lot(0, 10, 1)])
    with pytest.raises(LedgerInvariantError, match="hold no shares"):
        IncomingPurchase("stock_1", 5, 10, Currency.USD, lots=[_lot(0, 10, 1), _lot(0, 12, 1)])
