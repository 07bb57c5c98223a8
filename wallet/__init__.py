"""
Membership Wallet Core

This package provides:
- Append-only ledger with derived, never-negative balances
- Withdrawal lifecycle: pending → approved → processing → completed / rejected / cancelled
- Daily, weekly and monthly withdrawal quotas plus per-tier task quotas
- Capacity-bounded assignment of accounts and withdrawals to reviewers
- Deferred settlement through a persistent job queue
"""

from .errors import WalletServiceError
from .models import (
    Account,
    EntryCategory,
    LedgerEntry,
    Reviewer,
    Tier,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .platform import Platform, create_platform

__all__ = [
    "Account",
    "EntryCategory",
    "LedgerEntry",
    "Reviewer",
    "Tier",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "WalletServiceError",
    "Platform",
    "create_platform",
]
