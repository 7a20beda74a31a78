import json
import os
import warnings
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Any

import pandas as pd
from openpyxl import Workbook

from .currency import Currency
from .ledger import IncomingPurchase, Position, PurchaseLot, recompute
from .repository import PositionRepository

EXCEL_HEADERS = ["STOCK ID", "CURRENCY", "LOT ID", "DATE", "SHARES", "PRICE", "FX RATE"]
REQUIRED_EXCEL_COLUMNS = {"STOCK ID", "CURRENCY", "DATE", "SHARES", "PRICE"}


def save_positions_to_json(positions: Iterable[Position], file_path: str) -> None:
    """
    Save positions to a JSON file.

    Args:
        positions: Positions to save.
        file_path: Path to the JSON file to write.

    The file contains a list of ``Position.to_dict()`` objects. Numbers are
    written as strings so they load back exactly.
    """
    data = [position.to_dict() for position in positions]
    with open(file_path, "w") as f:
        json.dump(data, f, indent=2)


def load_positions_from_json(file_path: str) -> list[Position]:
    """
    Load positions from a JSON file written by ``save_positions_to_json``.

    Positions without purchases load as legacy positions; for the rest the
    stored aggregates are derived again from their lots.

    Raises:
        ValueError: If the file does not contain a list of positions.
    """
    with open(file_path, "r") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError("JSON file must contain a list of positions")

    return [Position.from_dict(item) for item in data]


def save_lots_to_excel(positions: Iterable[Position], file_path: str) -> None:
    """
    Save the purchase lots of positions to an Excel file, one row per lot.

    Legacy positions have no lots and are skipped; migrate them first.

    The Excel file will have the following columns:
        - STOCK ID: Instrument reference of the position
        - CURRENCY: Currency code (e.g., USD, GBp)
        - LOT ID: Lot identifier
        - DATE: Purchase date (ISO format)
        - SHARES: Number of shares
        - PRICE: Price per share in major units
        - FX RATE: Reference-currency value of one native unit at purchase
    """
    wb = Workbook()
    ws = wb.active
    if ws is None:
        raise ValueError(f"Workbook for {file_path} has no active worksheet")

    for col, header in enumerate(EXCEL_HEADERS, start=1):
        ws.cell(row=1, column=col, value=header)

    row = 2
    for position in positions:
        for lot in position.purchases:
            ws.cell(row=row, column=1, value=position.stock_id)
            ws.cell(row=row, column=2, value=position.currency.value)
            ws.cell(row=row, column=3, value=lot.lot_id)
            ws.cell(row=row, column=4, value=lot.purchase_date.isoformat())
            ws.cell(row=row, column=5, value=float(lot.shares))
            ws.cell(row=row, column=6, value=float(lot.price))
            ws.cell(row=row, column=7, value=float(lot.fx_rate))
            row += 1

    wb.save(file_path)


def _cell_text(value: Any) -> str | None:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text = str(value).strip()
    return text or None


def load_purchases_from_excel(file_path: str, today: date | None = None) -> list[IncomingPurchase]:
    """
    Load purchase lots from an Excel file for bulk import.

    Rows are grouped by STOCK ID, in order of first appearance, into one
    IncomingPurchase per instrument that carries all of its lots. FX RATE
    and LOT ID are optional: an empty FX rate means 1.0 and an empty lot id
    gets a generated one.

    Args:
        file_path: Path to the Excel file.
        today: Date assumed for rows without a date. Defaults to today.

    Returns:
        Incoming purchases ready for ``import_purchases``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If required columns are missing, a row is invalid, or
            one instrument appears with two currencies.
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Purchase file not found: {file_path}")

    df = pd.read_excel(file_path)
    if df.empty:
        return []

    missing_columns = REQUIRED_EXCEL_COLUMNS - set(df.columns)
    if missing_columns:
        raise ValueError(f"Missing required columns: {missing_columns}")

    lots_by_stock: dict[str, list[PurchaseLot]] = {}
    currency_by_stock: dict[str, Currency] = {}
    any_missing_date = False
    assumed_date = today or date.today()

    for row_number, (_, row) in enumerate(df.iterrows(), start=2):
        stock_id = _cell_text(row["STOCK ID"])
        currency_code = _cell_text(row["CURRENCY"])
        if stock_id is None or currency_code is None:
            raise ValueError(f"Row {row_number}: STOCK ID and CURRENCY are required")
        currency = Currency.parse(currency_code)

        if currency_by_stock.setdefault(stock_id, currency) != currency:
            raise ValueError(
                f"Row {row_number}: {stock_id} is listed in both "
                f"{currency_by_stock[stock_id].value} and {currency.value}"
            )

        raw_date = row["DATE"]
        if pd.notna(raw_date) and str(raw_date).strip():
            purchase_date = pd.to_datetime(raw_date).date()
        else:
            purchase_date = assumed_date
            any_missing_date = True

        raw_fx = row["FX RATE"] if "FX RATE" in df.columns else None
        fx_rate = Decimal(str(raw_fx)) if raw_fx is not None and pd.notna(raw_fx) else None
        lot_id = _cell_text(row["LOT ID"]) if "LOT ID" in df.columns else None

        lots_by_stock.setdefault(stock_id, []).append(
            PurchaseLot(
                shares=Decimal(str(row["SHARES"])),
                price=Decimal(str(row["PRICE"])),
                currency=currency,
                purchase_date=purchase_date,
                fx_rate=fx_rate,
                lot_id=lot_id,
            )
        )

    if any_missing_date:
        warnings.warn(
            f"Some rows in '{file_path}' were missing a purchase date. "
            f"Assuming {assumed_date.isoformat()} for these lots.",
            UserWarning
        )

    purchases: list[IncomingPurchase] = []
    for stock_id, lots in lots_by_stock.items():
        aggregate = recompute(lots)
        purchases.append(
            IncomingPurchase(
                stock_id=stock_id,
                shares=aggregate.total_shares,
                price=aggregate.avg_price_native,
                currency=currency_by_stock[stock_id],
                fx_rate=aggregate.avg_fx_rate,
                purchase_date=aggregate.earliest_date,
                lots=lots,
            )
        )
    return purchases


def import_purchases(
    repository: PositionRepository,
    purchases: Iterable[IncomingPurchase],
    today: date | None = None,
) -> list[Position]:
    """Merge each incoming purchase into the repository, in order.

    Returns:
        The resulting position for each purchase.
    """
    return [repository.add_purchase(purchase, today) for purchase in purchases]
