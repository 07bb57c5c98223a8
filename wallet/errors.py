from decimal import Decimal
from typing import Any, Optional


class WalletServiceError(Exception):
    code = "WALLET_ERROR"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ValidationError(WalletServiceError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        self.field = field
        super().__init__(message, context)


class DuplicateEntryError(WalletServiceError):
    code = "DUPLICATE_ENTRY"


class InsufficientBalanceError(WalletServiceError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, available: Decimal, requested: Decimal):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance. Available: ₹{available}, requested: ₹{requested}",
            {"available": str(available), "requested": str(requested)},
        )


class QuotaExceededError(WalletServiceError):
    code = "QUOTA_EXCEEDED"

    def __init__(self, window: str, limit: Decimal, used: Decimal, requested: Decimal, message: Optional[str] = None):
        self.window = window
        self.limit = limit
        self.used = used
        self.requested = requested
        if message is None:
            label = window.replace("_", " ").capitalize()
            message = f"{label} withdrawal limit exceeded: limit ₹{limit}, already used ₹{used}"
        super().__init__(
            message,
            {"window": window, "limit": str(limit), "used": str(used), "requested": str(requested)},
        )


class TierRequiredError(WalletServiceError):
    code = "TIER_REQUIRED"


class NoCapacityError(WalletServiceError):
    code = "NO_CAPACITY"


class ForbiddenError(WalletServiceError):
    code = "FORBIDDEN"


class InvalidTransitionError(WalletServiceError):
    code = "INVALID_TRANSITION"


class ConcurrentModificationError(InvalidTransitionError):
    code = "STALE_VERSION"


class NotFoundError(WalletServiceError):
    code = "NOT_FOUND"


class LedgerUnavailableError(WalletServiceError):
    code = "LEDGER_UNAVAILABLE"
    retryable = True
