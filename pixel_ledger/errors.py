"""
Ledger error taxonomy.

Each error carries the HTTP status the API layer answers with.
"""


class LedgerError(Exception):
    status_code = 500
    reason = "LedgerError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(LedgerError):
    status_code = 400
    reason = "InvalidInput"


class InvalidRange(LedgerError):
    status_code = 400
    reason = "InvalidRange"


class AuthRequired(LedgerError):
    status_code = 401
    reason = "AuthRequired"


class InsufficientFunds(LedgerError):
    status_code = 402
    reason = "InsufficientFunds"

    def __init__(self, needed: int, available: int):
        super().__init__(f"Insufficient wallet balance. Need {needed}, have {available}")
        self.needed = needed
        self.available = available


class Forbidden(LedgerError):
    status_code = 403
    reason = "Forbidden"


class AccountNotFound(LedgerError):
    status_code = 404
    reason = "AccountNotFound"


class PriceCapReached(LedgerError):
    status_code = 409
    reason = "PriceCapReached"


class TransientConflict(LedgerError):
    """Storage contention. Never leaves the purchase coordinator."""
    status_code = 503
    reason = "TransientConflict"


class LedgerUnavailable(LedgerError):
    status_code = 503
    reason = "LedgerUnavailable"
