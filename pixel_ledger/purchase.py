"""
Purchase transaction coordinator.

A purchase walks Received -> Validated -> PriceResolved -> BalanceChecked ->
Applied -> Committed, or exits as Rejected(reason). Price and balance are
read inside the same BEGIN IMMEDIATE unit that writes them, so a purchase
can never be charged against a count or balance another purchase has
already consumed.

Wallet debit, cell write and audit append commit together or not at all.
"""

import logging
import random
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .audit import AuditLog
from .config import MAX_INTENSITY, Settings
from .db import Database, is_transient, write_transaction
from .errors import (
    AuthRequired,
    InsufficientFunds,
    InvalidInput,
    LedgerError,
    LedgerUnavailable,
    TransientConflict,
)
from .models import COLOR_PATTERN, DEFAULT_INTENSITY, PurchaseReceipt, PurchaseRecord, canonical_color
from .pricing import PriceEngine
from .store import PixelStore
from .wallet import WalletLedger

logger = logging.getLogger(__name__)


class PurchaseState(Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PRICE_RESOLVED = "price_resolved"
    BALANCE_CHECKED = "balance_checked"
    APPLIED = "applied"
    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PurchaseRequest:
    """Validated purchase inputs."""
    account_id: str
    cell_index: int
    color: str
    intensity: int


def validate_purchase(account_id, cell_index, color, intensity,
                      grid_size: int, max_intensity: int = MAX_INTENSITY) -> PurchaseRequest:
    if account_id is None or not isinstance(account_id, str) or not account_id.strip():
        raise AuthRequired("Auth required")

    if isinstance(cell_index, bool) or not isinstance(cell_index, int):
        raise InvalidInput("Invalid pixel index")
    if not 0 <= cell_index < grid_size:
        raise InvalidInput("Invalid pixel index")

    if not isinstance(color, str) or not COLOR_PATTERN.fullmatch(color):
        raise InvalidInput("Invalid color")

    if intensity is None:
        intensity = DEFAULT_INTENSITY
    if isinstance(intensity, bool) or not isinstance(intensity, int):
        raise InvalidInput("Invalid intensity")
    if not 0 <= intensity <= max_intensity:
        raise InvalidInput("Invalid intensity")

    return PurchaseRequest(account_id, cell_index, canonical_color(color), intensity)


class PurchaseTransaction:

    def __init__(self, database: Database, store: PixelStore, wallet: WalletLedger,
                 audit: AuditLog, price_engine: PriceEngine, settings: Settings):
        self.database = database
        self.store = store
        self.wallet = wallet
        self.audit = audit
        self.price_engine = price_engine
        self.settings = settings

    def execute(self, account_id: Optional[str], cell_index, color, intensity=None) -> PurchaseReceipt:
        state = PurchaseState.RECEIVED
        try:
            request = validate_purchase(
                account_id, cell_index, color, intensity,
                grid_size=self.settings.grid_size,
                max_intensity=self.settings.max_intensity,
            )
            state = PurchaseState.VALIDATED
            receipt = self._commit_with_retry(request)
        except LedgerError as e:
            logger.info("Purchase %s (%s) after %s: %s", PurchaseState.REJECTED.value,
                        e.reason, state.value, e.message)
            raise
        return receipt

    def _commit_with_retry(self, request: PurchaseRequest) -> PurchaseReceipt:
        attempts = self.settings.max_retries
        for attempt in range(1, attempts + 1):
            try:
                return self._attempt(request)
            except TransientConflict as e:
                reason = e.message
            except sqlite3.OperationalError as e:
                if not is_transient(e):
                    raise
                reason = str(e)

            logger.warning("Transient conflict on cell %d (attempt %d/%d): %s",
                           request.cell_index, attempt, attempts, reason)
            if attempt < attempts:
                self._backoff(attempt)

        raise LedgerUnavailable("Purchase could not be completed, please retry")

    def _backoff(self, attempt: int) -> None:
        delay = self.settings.retry_backoff_seconds * (2 ** (attempt - 1))
        time.sleep(delay + random.uniform(0, delay))

    def _attempt(self, request: PurchaseRequest) -> PurchaseReceipt:
        """One full attempt. Nothing computed here survives into a retry."""
        with self.database.connection() as conn:
            with write_transaction(conn):
                count_before = self.store.read_count(conn, request.cell_index)
                price_cents = self.price_engine.price(count_before)
                state = PurchaseState.PRICE_RESOLVED
                logger.debug("%s cell=%d count=%d price=%d", state.value,
                             request.cell_index, count_before, price_cents)

                balance = self.wallet.read_balance(conn, request.account_id)
                if balance < price_cents:
                    raise InsufficientFunds(price_cents, balance)
                state = PurchaseState.BALANCE_CHECKED
                logger.debug("%s account=%s balance=%d", state.value,
                             request.account_id, balance)

                balance_after = self.wallet.debit(conn, request.account_id, price_cents)
                charged, count_after = self.store.apply_purchase(
                    conn, request.cell_index, request.color, request.intensity,
                    self.price_engine,
                )
                if charged != price_cents:
                    raise TransientConflict(f"Price of cell {request.cell_index} moved during purchase")
                self.audit.append(conn, PurchaseRecord(
                    account_id=request.account_id,
                    cell_index=request.cell_index,
                    color=request.color,
                    intensity=request.intensity,
                    price_charged_cents=charged,
                    purchase_count_after=count_after,
                    timestamp=datetime.now(timezone.utc),
                ))
                state = PurchaseState.APPLIED
                logger.debug("%s cell=%d", state.value, request.cell_index)

        state = PurchaseState.COMMITTED
        logger.info("Purchase %s: account=%s cell=%d price=%d count=%d",
                    state.value, request.account_id, request.cell_index,
                    charged, count_after)
        return PurchaseReceipt(
            price_cents_charged=charged,
            purchase_count_after=count_after,
            balance_cents_after=balance_after,
        )
