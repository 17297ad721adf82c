"""
Sparse pixel store.

Only purchased cells have rows. Reads outside a transaction are plain
snapshots; the only writer is apply_purchase, which refuses to run outside
the purchase transaction.
"""

import sqlite3
from typing import Dict, Optional, Tuple

from .db import Database, require_transaction
from .errors import TransientConflict
from .models import Cell
from .pricing import PriceEngine


def _row_to_cell(row) -> Cell:
    return Cell(
        index=row["cell_index"],
        color=row["color"],
        intensity=row["intensity"],
        purchase_count=row["purchase_count"],
        updated_at=row["updated_at"],
    )


class PixelStore:

    def __init__(self, database: Database):
        self.database = database

    def get(self, index: int) -> Optional[Cell]:
        with self.database.connection() as conn:
            row = conn.execute("""
                SELECT cell_index, color, intensity, purchase_count, updated_at
                FROM pixels WHERE cell_index = ?
            """, (index,)).fetchone()
        return _row_to_cell(row) if row else None

    def get_range(self, start: int, end: int) -> Dict[int, Cell]:
        """Present cells with start <= index < end, from a single SELECT."""
        with self.database.connection() as conn:
            rows = conn.execute("""
                SELECT cell_index, color, intensity, purchase_count, updated_at
                FROM pixels
                WHERE cell_index >= ? AND cell_index < ?
                ORDER BY cell_index
            """, (start, end)).fetchall()
        return {row["cell_index"]: _row_to_cell(row) for row in rows}

    def count_cells(self) -> int:
        with self.database.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM pixels").fetchone()[0]

    @staticmethod
    def read_count(conn: sqlite3.Connection, index: int) -> int:
        require_transaction(conn, "read_count")
        row = conn.execute(
            "SELECT purchase_count FROM pixels WHERE cell_index = ?", (index,)
        ).fetchone()
        return row[0] if row else 0

    @staticmethod
    def apply_purchase(conn: sqlite3.Connection, index: int, color: str,
                       intensity: int, price_engine: PriceEngine) -> Tuple[int, int]:
        """Price and write one purchase of a cell.

        Returns (price_cents_charged, purchase_count_after).
        """
        require_transaction(conn, "apply_purchase")
        count_before = PixelStore.read_count(conn, index)
        price_cents = price_engine.price(count_before)
        count_after = count_before + 1

        # The WHERE clause only lets the update through if the count is still
        # the one we priced against.
        cursor = conn.execute("""
            INSERT INTO pixels (cell_index, color, intensity, purchase_count, updated_at)
            VALUES (?, ?, ?, ?, datetime('now'))
            ON CONFLICT(cell_index) DO UPDATE SET
                color = excluded.color,
                intensity = excluded.intensity,
                purchase_count = excluded.purchase_count,
                updated_at = excluded.updated_at
            WHERE pixels.purchase_count = ?
        """, (index, color, intensity, count_after, count_before))
        if cursor.rowcount != 1:
            raise TransientConflict(f"Cell {index} changed while being purchased")

        return price_cents, count_after
