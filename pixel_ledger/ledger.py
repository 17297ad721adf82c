"""
Ledger assembly.

Wires the store, wallet, audit log and coordinators onto one database with
an explicit open/close lifecycle.
"""

import logging
from typing import Optional

from .audit import AuditLog
from .config import Settings
from .db import Database
from .pricing import PriceEngine
from .purchase import PurchaseTransaction
from .store import PixelStore
from .wallet import WalletLedger
from .window import WindowQuery

logger = logging.getLogger(__name__)


class Ledger:

    def __init__(self, settings: Settings):
        self.settings = settings
        self.database = Database(settings.db_path, settings.busy_timeout_seconds)
        self.price_engine = PriceEngine(settings.base_price_cents, settings.max_price_exponent)
        self.store = PixelStore(self.database)
        self.wallet = WalletLedger(self.database)
        self.audit = AuditLog(self.database)
        self.purchases = PurchaseTransaction(
            self.database, self.store, self.wallet, self.audit,
            self.price_engine, settings,
        )
        self.windows = WindowQuery(self.store, settings.max_window, settings.grid_size)

    @classmethod
    def open(cls, settings: Optional[Settings] = None) -> "Ledger":
        ledger = cls(settings or Settings.from_env())
        ledger.database.open()
        logger.info("Ledger opened (%dx%d grid)",
                    ledger.settings.grid_width, ledger.settings.grid_height)
        return ledger

    def close(self) -> None:
        self.database.close()
        logger.info("Ledger closed")

    def buy(self, account_id, cell_index, color, intensity=None):
        return self.purchases.execute(account_id, cell_index, color, intensity)

    def window(self, start: int, end: int):
        return self.windows.window(start, end)
