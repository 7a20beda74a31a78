"""Tests for JSON persistence and Excel bulk import."""

import json
from datetime import date
from decimal import Decimal

import pytest
from openpyxl import Workbook

from lotledger.currency import Currency
from lotledger.ledger import Position, PurchaseLot
from lotledger.repository import PositionRepository
from lotledger.storage import (
    import_purchases,
    load_positions_from_json,
    load_purchases_from_excel,
    save_lots_to_excel,
    save_positions_to_json,
)

TODAY = date(2025, 1, 15)


def _write_sheet(path, headers, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(headers)
    for row in rows:
        ws.append(row)
    wb.save(path)


def test_json_keeps_ledger_and_legacy_positions(tmp_path):
    """Verify both ledger and legacy positions survive a save and load."""
    ledger = Position.from_ledger(
        "vod", Currency.GBp,
        [PurchaseLot("12.5", "1.2345", Currency.GBp, date(2024, 2, 2), fx_rate="1.123456", lot_id="l1")],
        position_id="p1",
    )
    legacy = Position.from_legacy("aapl", Currency.USD, shares=3, buy_price_avg="150.5", buy_date="2019-01-01", position_id="p2")
    file_path = tmp_path / "positions.json"

    save_positions_to_json([ledger, legacy], str(file_path))
    loaded = load_positions_from_json(str(file_path))

    assert json.loads(file_path.read_text())[0]["purchases"][0]["price"] == "1.2345"
    assert loaded[0].purchases == ledger.purchases
    assert loaded[0].buy_price_avg == ledger.buy_price_avg
    assert loaded[1].is_legacy
    assert loaded[1].buy_price_avg == Decimal("150.5")


def test_load_positions_requires_a_list(tmp_path):
    """Verify a JSON object instead of a list is rejected."""
    file_path = tmp_path / "positions.json"
    file_path.write_text("{}")
    with pytest.raises(ValueError, match="must contain a list"):
        load_positions_from_json(str(file_path))


def test_excel_export_then_bulk_import(tmp_path):
    """Verify lots exported to Excel can be imported into a fresh repository."""
    position = Position.from_ledger(
        "aapl", Currency.USD,
        [
            PurchaseLot(10, 100, Currency.USD, date(2024, 1, 5), fx_rate="0.9", lot_id="a"),
            PurchaseLot(5, 130, Currency.USD, date(2023, 3, 1), fx_rate="0.95", lot_id="b"),
        ],
    )
    file_path = tmp_path / "lots.xlsx"
    save_lots_to_excel([position], str(file_path))

    purchases = load_purchases_from_excel(str(file_path), today=TODAY)
    assert len(purchases) == 1
    assert [lot.lot_id for lot in purchases[0].lots] == ["a", "b"]

    repo = PositionRepository()
    imported = import_purchases(repo, purchases, today=TODAY)
    assert imported[0].shares == position.shares
    assert imported[0].buy_price_avg == position.buy_price_avg
    assert imported[0].average_entry_fx_rate == position.average_entry_fx_rate
    assert imported[0].buy_date == date(2023, 3, 1)


def test_bulk_import_groups_by_stock_and_defaults(tmp_path):
    """Verify rows group per instrument, empty FX means 1.0 and missing dates warn."""
    file_path = tmp_path / "import.xlsx"
    _write_sheet(
        file_path,
        ["STOCK ID", "CURRENCY", "DATE", "SHARES", "PRICE", "FX RATE"],
        [
            ["vod", "GBX", "2024-01-01", 100, 1.25, 1.1],
            ["nesn", "CHF", "2024-02-01", 4, 95.5, None],
            ["vod", "GBX", None, 50, 1.4, 1.2],
        ],
    )

    with pytest.warns(UserWarning, match="missing a purchase date"):
        purchases = load_purchases_from_excel(str(file_path), today=TODAY)

    assert [p.stock_id for p in purchases] == ["vod", "nesn"]
    vod, nesn = purchases
    assert vod.currency == Currency.GBp
    assert [lot.purchase_date for lot in vod.lots] == [date(2024, 1, 1), TODAY]
    assert nesn.lots[0].fx_rate == Decimal("1")

    repo = PositionRepository()
    import_purchases(repo, purchases)
    vod_position = repo.find_by_stock("vod")
    assert vod_position is not None
    assert vod_position.buy_price_avg == Decimal("130.0000")


def test_bulk_import_rejects_missing_columns(tmp_path):
    """Verify a sheet without required columns raises ValueError."""
    file_path = tmp_path / "bad.xlsx"
    _write_sheet(file_path, ["STOCK ID", "SHARES"], [["vod", 1]])
    with pytest.raises(ValueError, match="Missing required columns"):
        load_purchases_from_excel(str(file_path))


def test_bulk_import_rejects_mixed_currencies(tmp_path):
    """Verify one instrument listed in two currencies is rejected."""
    file_path = tmp_path / "mixed.xlsx"
    _write_sheet(
        file_path,
        ["STOCK ID", "CURRENCY", "DATE", "SHARES", "PRICE"],
        [["vod", "GBp", "2024-01-01", 1, 1.0], ["vod", "GBP", "2024-01-02", 1, 1.0]],
    )
    with pytest.raises(ValueError, match="listed in both"):
        load_purchases_from_excel(str(file_path))


def test_bulk_import_missing_file():
    """Verify a missing file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_purchases_from_excel("/nonexistent/lots.xlsx")


def test_save_lots_requires_a_worksheet(tmp_path, monkeypatch):
    """Verify a workbook without an active sheet raises ValueError."""
    class SheetlessWorkbook:
        active = None

    monkeypatch.setattr("lotledger.storage.Workbook", SheetlessWorkbook)
    with pytest.raises(ValueError, match="no active worksheet"):
        save_lots_to_excel([], str(tmp_path / "lots.xlsx"))


def test_reimporting_exported_lots_keeps_every_lot(tmp_path):
    """Verify importing a workbook into a repository that already holds its lots keeps both copies."""
    position = Position.from_ledger(
        "aapl", Currency.USD, [PurchaseLot(10, 100, Currency.USD, date(2024, 1, 5), lot_id="a")], position_id="p1",
    )
    file_path = tmp_path / "lots.xlsx"
    save_lots_to_excel([position], str(file_path))
    repo = PositionRepository([position])

    with pytest.warns(UserWarning, match="already in use"):
        import_purchases(repo, load_purchases_from_excel(str(file_path), today=TODAY))

    merged = repo.get("p1")
    assert len(merged.purchases) == 2
    assert len(repo.delete_lot("p1", "a").purchases) == 1
