import threading
from collections.abc import Iterable, Sequence
from datetime import date

from .ledger import (
    IncomingPurchase,
    Position,
    PurchaseLot,
    delete_lot,
    merge_incoming,
    migrate_legacy_position,
    replace_lots,
)


class PositionRepository:
    """Owner of a set of positions, keyed by position id.

    The ledger functions are pure and do no locking. This repository is
    the single writer: every read-merge-store sequence runs under one
    lock, so two concurrent purchases of the same instrument each see the
    other's result. A failed operation leaves the stored position as it was.
    """

    def __init__(self, positions: Iterable[Position] = ()):
        self._positions: dict[str, Position] = {}
        self._lock = threading.Lock()
        for position in positions:
            if position.position_id in self._positions:
                raise ValueError(f"Duplicate position id: {position.position_id}")
            self._positions[position.position_id] = position

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: object) -> bool:
        return position_id in self._positions

    def positions(self) -> list[Position]:
        with self._lock:
            return list(self._positions.values())

    def get(self, position_id: str) -> Position:
        """Return a position by id.

        Raises:
            KeyError: If no position has that id.
        """
        with self._lock:
            return self._get(position_id)

    def _get(self, position_id: str) -> Position:
        try:
            return self._positions[position_id]
        except KeyError:
            raise KeyError(f"Position {position_id} not found")

    def _find_by_stock(self, stock_id: str) -> Position | None:
        for position in self._positions.values():
            if position.stock_id == stock_id:
                return position
        return None

    def find_by_stock(self, stock_id: str) -> Position | None:
        with self._lock:
            return self._find_by_stock(stock_id)

    def add_purchase(self, incoming: IncomingPurchase, today: date | None = None) -> Position:
        """Merge a purchase into the position for its instrument, creating one if needed."""
        with self._lock:
            existing = self._find_by_stock(incoming.stock_id)
            merged = merge_incoming(existing, incoming, today)
            self._positions[merged.position_id] = merged
            return merged

    def replace_lots(self, position_id: str, lots: Sequence[PurchaseLot]) -> Position:
        """Store an edited lot list for a position."""
        with self._lock:
            updated = replace_lots(self._get(position_id), lots)
            self._positions[position_id] = updated
            return updated

    def delete_lot(self, position_id: str, lot_id: str) -> Position:
        with self._lock:
            updated = delete_lot(self._get(position_id), lot_id)
            self._positions[position_id] = updated
            return updated

    def migrate_legacy(self, today: date | None = None) -> list[Position]:
        """Migrate every legacy position into a single-lot ledger.

        Returns:
            The positions that were migrated.
        """
        with self._lock:
            migrated = {
                position_id: migrate_legacy_position(position, today)
                for position_id, position in self._positions.items()
                if position.is_legacy
            }
            self._positions.update(migrated)
            return list(migrated.values())

    def remove_closed(self) -> list[Position]:
        """Drop positions without lots or shares and return them."""
        with self._lock:
            closed = [p for p in self._positions.values() if p.is_closed]
            for position in closed:
                del self._positions[position.position_id]
            return closed
