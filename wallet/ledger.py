import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from .errors import DuplicateEntryError, LedgerUnavailableError, NotFoundError, ValidationError
from .models import BalanceSummary, EntryCategory, LedgerEntry, LedgerHistoryResponse
from .storage import InMemoryStorage, StorageUnavailable, UniqueConstraintViolation

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStore:
    def __init__(self, storage: InMemoryStorage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def append(
        self,
        account_id: UUID,
        amount: Decimal,
        category: EntryCategory,
        description: str,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        amount = Decimal(amount)
        if amount == ZERO:
            raise ValidationError("Ledger entry amount must be non-zero", field="amount")

        entry_data = {
            "id": uuid4(),
            "account_id": account_id,
            "amount": amount,
            "category": EntryCategory(category).value,
            "description": description,
            "reference": reference,
            "created_at": self.clock(),
        }
        try:
            with self.storage.transaction():
                if self.storage.get_account(account_id) is None:
                    raise NotFoundError(f"Account {account_id} not found")
                self.storage.insert_ledger_entry(entry_data)
        except UniqueConstraintViolation:
            raise DuplicateEntryError(
                f"A {entry_data['category']} entry with reference '{reference}' already exists for account {account_id}",
                {"account_id": str(account_id), "category": entry_data["category"], "reference": reference},
            )
        except StorageUnavailable as e:
            raise LedgerUnavailableError(f"Ledger storage unavailable: {e}") from e

        logger.info(
            "Ledger entry %s booked for account %s: %s %s (ref=%s)",
            entry_data["id"], account_id, entry_data["category"], amount, reference,
        )
        return LedgerEntry(**entry_data)

    def entries(self, account_id: UUID, category: Optional[EntryCategory] = None) -> list[LedgerEntry]:
        try:
            rows = self.storage.ledger_entries_for(account_id)
        except StorageUnavailable as e:
            raise LedgerUnavailableError(f"Ledger storage unavailable: {e}") from e
        entries = [LedgerEntry(**row) for row in rows]
        if category is not None:
            entries = [e for e in entries if e.category == category]
        return entries

    def find(self, account_id: UUID, category: EntryCategory, reference: str) -> Optional[LedgerEntry]:
        try:
            row = self.storage.find_ledger_entry(account_id, EntryCategory(category).value, reference)
        except StorageUnavailable as e:
            raise LedgerUnavailableError(f"Ledger storage unavailable: {e}") from e
        return LedgerEntry(**row) if row else None


def fold_entries(entries: Iterable[LedgerEntry]) -> tuple[Decimal, Decimal, dict, dict]:
    """Sum credits and debits separately; the result depends only on the multiset of entries."""
    earned: dict[EntryCategory, Decimal] = defaultdict(lambda: ZERO)
    spent: dict[EntryCategory, Decimal] = defaultdict(lambda: ZERO)
    for entry in entries:
        if entry.amount > 0:
            earned[entry.category] += entry.amount
        elif entry.amount < 0:
            spent[entry.category] += -entry.amount
    return sum(earned.values(), ZERO), sum(spent.values(), ZERO), dict(earned), dict(spent)


class BalanceCalculator:
    def __init__(self, store: LedgerStore, currency: str = "INR"):
        self.store = store
        self.currency = currency

    def compute_balance(self, account_id: UUID) -> BalanceSummary:
        try:
            account = self.store.storage.get_account(account_id)
        except StorageUnavailable as e:
            raise LedgerUnavailableError(f"Ledger storage unavailable: {e}") from e
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")

        entries = self.store.entries(account_id)
        total_earned, total_spent, earned, spent = fold_entries(entries)

        balance = total_earned - total_spent
        clamped = False
        if balance < ZERO:
            logger.warning(
                "Account %s derived a negative balance (%s): earned=%s spent=%s; reporting 0",
                account_id, balance, total_earned, total_spent,
            )
            balance = ZERO
            clamped = True

        cached = account.get("cached_balance")
        if cached is not None and Decimal(cached) != balance:
            logger.warning(
                "Account %s cached balance %s differs from ledger-derived %s; reporting the greater",
                account_id, cached, balance,
            )
            balance = max(balance, Decimal(cached))

        last_entry = max(entries, key=lambda e: e.created_at) if entries else None
        return BalanceSummary(
            account_id=account_id,
            currency=self.currency,
            balance=balance,
            total_earned=total_earned,
            total_spent=total_spent,
            earned_by_category=earned,
            spent_by_category=spent,
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
            clamped=clamped,
        )

    def history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        summary = self.compute_balance(account_id)
        all_entries = self.store.entries(account_id)
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=summary.balance,
        )
