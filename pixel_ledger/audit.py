"""
Append-only purchase log.

Records are written in the purchase transaction and only ever read back for
history and statistics.
"""

import sqlite3
from datetime import datetime
from typing import Dict, List, Optional

from .db import Database, require_transaction
from .models import PurchaseRecord


class AuditLog:

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def append(conn: sqlite3.Connection, record: PurchaseRecord) -> int:
        require_transaction(conn, "append")
        cursor = conn.execute("""
            INSERT INTO purchases
            (account_id, cell_index, color, intensity, price_charged_cents,
             purchase_count_after, purchased_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            record.account_id,
            record.cell_index,
            record.color,
            record.intensity,
            record.price_charged_cents,
            record.purchase_count_after,
            record.timestamp.isoformat(),
        ))
        return cursor.lastrowid

    def recent(self, limit: int = 10, account_id: Optional[str] = None,
               cell_index: Optional[int] = None) -> List[PurchaseRecord]:
        """Most recent records first, optionally filtered."""
        query = """
            SELECT id, account_id, cell_index, color, intensity,
                   price_charged_cents, purchase_count_after, purchased_at
            FROM purchases
        """
        params = []
        conditions = []

        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if cell_index is not None:
            conditions.append("cell_index = ?")
            params.append(cell_index)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            PurchaseRecord(
                id=row["id"],
                account_id=row["account_id"],
                cell_index=row["cell_index"],
                color=row["color"],
                intensity=row["intensity"],
                price_charged_cents=row["price_charged_cents"],
                purchase_count_after=row["purchase_count_after"],
                timestamp=datetime.fromisoformat(row["purchased_at"]),
            )
            for row in rows
        ]

    def stats(self) -> Dict[str, int]:
        with self.database.connection() as conn:
            row = conn.execute("""
                SELECT COUNT(*), SUM(price_charged_cents), COUNT(DISTINCT account_id)
                FROM purchases
            """).fetchone()
        return {
            "total_purchases": row[0] or 0,
            "total_revenue_cents": row[1] or 0,
            "unique_buyers": row[2] or 0,
        }
