"""
Ledger records.

Rows of the three owned tables plus the values handed back to callers.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple


COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
DEFAULT_COLOR = "#000000"
DEFAULT_INTENSITY = 0


def canonical_color(color: str) -> str:
    """Lowercase #rrggbb; callers validate against COLOR_PATTERN first."""
    return color.lower()


@dataclass(frozen=True)
class Cell:
    """A purchased cell. Cells never bought have no row at all."""
    index: int
    color: str
    intensity: int
    purchase_count: int
    updated_at: Optional[str] = None

    def as_wire(self) -> Tuple[str, int, int]:
        return (self.color, self.intensity, self.purchase_count)


@dataclass(frozen=True)
class Account:
    account_id: str
    balance_cents: int
    created_at: Optional[str] = None


@dataclass(frozen=True)
class PurchaseRecord:
    """Audit entry written in the same transaction as the purchase.

    Never modified once written.
    """
    account_id: str
    cell_index: int
    color: str
    intensity: int
    price_charged_cents: int
    purchase_count_after: int
    timestamp: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class PurchaseReceipt:
    price_cents_charged: int
    purchase_count_after: int
    balance_cents_after: int


@dataclass(frozen=True)
class CreditResult:
    account_id: str
    amount_cents: int
    payment_ref: str
    balance_cents: int
    duplicate: bool = False
