"""
Wallet ledger.

Balances move in two ways only: debits from inside a purchase transaction
and credits from the payment collaborator, de-duplicated on the payment
reference it supplies.
"""

import logging
import sqlite3
from typing import Optional

from .db import Database, require_transaction, write_transaction
from .errors import AccountNotFound, InsufficientFunds, InvalidInput
from .models import Account, CreditResult

logger = logging.getLogger(__name__)

# Largest value an SQLite INTEGER column holds
MAX_BALANCE_CENTS = 2 ** 63 - 1


def _require_positive_amount(amount_cents) -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidInput(f"amount must be an integer number of cents, got {amount_cents!r}")
    if amount_cents <= 0:
        raise InvalidInput("amount must be > 0")
    if amount_cents > MAX_BALANCE_CENTS:
        raise InvalidInput(f"amount must be <= {MAX_BALANCE_CENTS}")


def _require_account_id(account_id) -> None:
    if not isinstance(account_id, str) or not account_id.strip():
        raise InvalidInput("account id is required")


class WalletLedger:

    def __init__(self, database: Database):
        self.database = database

    def create_account(self, account_id: str) -> Account:
        _require_account_id(account_id)
        with self.database.connection() as conn:
            try:
                with write_transaction(conn):
                    conn.execute(
                        "INSERT INTO accounts (account_id, balance_cents) VALUES (?, 0)",
                        (account_id,),
                    )
            except sqlite3.IntegrityError:
                raise InvalidInput(f"Account {account_id} already exists")
        logger.info("Created account %s", account_id)
        return self.get_account(account_id)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.database.connection() as conn:
            row = conn.execute("""
                SELECT account_id, balance_cents, created_at
                FROM accounts WHERE account_id = ?
            """, (account_id,)).fetchone()
        if not row:
            return None
        return Account(
            account_id=row["account_id"],
            balance_cents=row["balance_cents"],
            created_at=row["created_at"],
        )

    def balance(self, account_id: str) -> int:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account.balance_cents

    @staticmethod
    def read_balance(conn: sqlite3.Connection, account_id: str) -> int:
        require_transaction(conn, "read_balance")
        row = conn.execute(
            "SELECT balance_cents FROM accounts WHERE account_id = ?", (account_id,)
        ).fetchone()
        if not row:
            raise AccountNotFound(f"Account {account_id} not found")
        return row[0]

    @staticmethod
    def debit(conn: sqlite3.Connection, account_id: str, amount_cents: int) -> int:
        """Debit inside the caller's transaction and return the new balance."""
        require_transaction(conn, "debit")
        _require_positive_amount(amount_cents)
        cursor = conn.execute("""
            UPDATE accounts
            SET balance_cents = balance_cents - ?
            WHERE account_id = ? AND balance_cents >= ?
        """, (amount_cents, account_id, amount_cents))
        if cursor.rowcount != 1:
            available = WalletLedger.read_balance(conn, account_id)
            raise InsufficientFunds(amount_cents, available)
        return WalletLedger.read_balance(conn, account_id)

    def credit(self, account_id: str, amount_cents: int, payment_ref: str) -> CreditResult:
        """Credit a completed external payment exactly once per payment_ref."""
        _require_account_id(account_id)
        _require_positive_amount(amount_cents)
        if not isinstance(payment_ref, str) or not payment_ref.strip():
            raise InvalidInput("payment reference is required")

        with self.database.connection() as conn:
            with write_transaction(conn):
                current = self.read_balance(conn, account_id)

                cursor = conn.execute("""
                    INSERT OR IGNORE INTO topups (payment_ref, account_id, amount_cents)
                    VALUES (?, ?, ?)
                """, (payment_ref, account_id, amount_cents))
                duplicate = cursor.rowcount == 0

                if not duplicate:
                    if current + amount_cents > MAX_BALANCE_CENTS:
                        raise InvalidInput(
                            f"Credit of {amount_cents} would overflow the balance of {account_id}"
                        )
                    conn.execute("""
                        UPDATE accounts SET balance_cents = balance_cents + ?
                        WHERE account_id = ?
                    """, (amount_cents, account_id))

                balance = self.read_balance(conn, account_id)

        if duplicate:
            logger.info("Ignored duplicate top-up %s for %s", payment_ref, account_id)
        else:
            logger.info("Credited %d cents to %s (ref %s)", amount_cents, account_id, payment_ref)
        return CreditResult(
            account_id=account_id,
            amount_cents=0 if duplicate else amount_cents,
            payment_ref=payment_ref,
            balance_cents=balance,
            duplicate=duplicate,
        )
