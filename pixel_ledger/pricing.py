"""
Cell pricing.

A cell costs base * 2^n where n is its purchase count before the purchase.
Doubling is capped: past max_exponent the cell can no longer be bought, so
every price that is ever charged follows the formula exactly.
"""

from .config import BASE_PRICE_CENTS, MAX_PRICE_EXPONENT
from .errors import InvalidInput, PriceCapReached


def price(purchase_count: int,
          base_price_cents: int = BASE_PRICE_CENTS,
          max_exponent: int = MAX_PRICE_EXPONENT) -> int:
    if isinstance(purchase_count, bool) or not isinstance(purchase_count, int):
        raise InvalidInput(f"purchase count must be an integer, got {purchase_count!r}")
    if purchase_count < 0:
        raise InvalidInput(f"purchase count cannot be negative: {purchase_count}")
    if purchase_count > max_exponent:
        raise PriceCapReached(
            f"Cell has reached the price cap ({max_exponent + 1} purchases)"
        )
    return base_price_cents << purchase_count


class PriceEngine:
    """Price function bound to a base price and cap."""

    def __init__(self, base_price_cents: int = BASE_PRICE_CENTS,
                 max_exponent: int = MAX_PRICE_EXPONENT):
        self.base_price_cents = base_price_cents
        self.max_exponent = max_exponent

    def price(self, purchase_count: int) -> int:
        return price(purchase_count, self.base_price_cents, self.max_exponent)

    def next_price(self, purchase_count: int):
        """Price of the next purchase, or None once the cell is capped."""
        if purchase_count > self.max_exponent:
            return None
        return self.price(purchase_count)

    def max_purchases(self) -> int:
        return self.max_exponent + 1
