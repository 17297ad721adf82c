"""
SQLite connection handling and schema.

Connections run in autocommit mode so that every transaction boundary is an
explicit BEGIN IMMEDIATE / COMMIT issued by write_transaction().
"""

import logging
import sqlite3
from contextlib import contextmanager

from .config import BUSY_TIMEOUT_SECONDS, DB_PATH

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def connect(db_path: str = DB_PATH, busy_timeout: float = BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
    conn = sqlite3.connect(
        db_path,
        timeout=busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db(db_path: str = DB_PATH, busy_timeout: float = BUSY_TIMEOUT_SECONDS):
    conn = connect(db_path, busy_timeout)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection):
    """One atomic unit: takes the write lock up front so every read inside
    sees the latest committed state and nothing can commit in between.

    SQLite's write lock covers the whole database, so purchases on
    disjoint cells serialize here rather than commit in parallel. WAL keeps
    readers unblocked while it is held."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def require_transaction(conn: sqlite3.Connection, operation: str) -> None:
    if not conn.in_transaction:
        raise RuntimeError(f"{operation} must run inside a write transaction")


def is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def init_db(db_path: str = DB_PATH) -> None:
    with get_db(db_path) as conn:
        # WAL lets window reads run while a purchase holds the write lock
        conn.execute("PRAGMA journal_mode = WAL")

        with write_transaction(conn):
            # Wallets
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Purchased cells only; absent index means never bought
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pixels (
                    cell_index INTEGER PRIMARY KEY,
                    color TEXT NOT NULL,
                    intensity INTEGER NOT NULL DEFAULT 0,
                    purchase_count INTEGER NOT NULL CHECK (purchase_count > 0),
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Append-only purchase log
            conn.execute("""
                CREATE TABLE IF NOT EXISTS purchases (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    cell_index INTEGER NOT NULL,
                    color TEXT NOT NULL,
                    intensity INTEGER NOT NULL,
                    price_charged_cents INTEGER NOT NULL,
                    purchase_count_after INTEGER NOT NULL,
                    purchased_at TEXT NOT NULL,
                    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_purchases_cell
                ON purchases (cell_index)
            """)

            # One row per external payment, keyed by its reference
            conn.execute("""
                CREATE TABLE IF NOT EXISTS topups (
                    payment_ref TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                    credited_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
                )
            """)
    logger.info("Database ready at %s", db_path)


class Database:
    """Handle on the ledger database file.

    open() is called once at process start; connection() hands out a fresh
    connection per operation.
    """

    def __init__(self, db_path: str = DB_PATH, busy_timeout: float = BUSY_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._opened = False

    def open(self) -> "Database":
        init_db(self.db_path)
        self._opened = True
        return self

    def close(self) -> None:
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    @contextmanager
    def connection(self):
        if not self._opened:
            raise RuntimeError("Database is not open")
        with get_db(self.db_path, self.busy_timeout) as conn:
            yield conn
