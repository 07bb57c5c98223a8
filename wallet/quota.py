from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from .config import Settings
from .errors import LedgerUnavailableError, QuotaExceededError
from .ledger import ZERO, LedgerStore
from .models import EntryCategory, QuotaUsage, QuotaWindowUsage, Tier, WithdrawalStatus
from .storage import InMemoryStorage, StorageUnavailable

CENT = Decimal("0.01")


@dataclass(frozen=True)
class TierPolicy:
    tier: Tier
    daily_task_limit: int
    daily_total_reward: Decimal
    price: Decimal

    @property
    def reward_per_task(self) -> Decimal:
        return (self.daily_total_reward / self.daily_task_limit).quantize(CENT, rounding=ROUND_HALF_UP)


TIER_TABLE: dict[Tier, TierPolicy] = {
    Tier.VIP1: TierPolicy(Tier.VIP1, daily_task_limit=5, daily_total_reward=Decimal("30"), price=Decimal("900")),
    Tier.VIP2: TierPolicy(Tier.VIP2, daily_task_limit=10, daily_total_reward=Decimal("100"), price=Decimal("3000")),
    Tier.VIP3: TierPolicy(Tier.VIP3, daily_task_limit=20, daily_total_reward=Decimal("370"), price=Decimal("11000")),
}

QUOTA_STATUSES = [s.value for s in WithdrawalStatus if s.counts_against_quota]


def start_of_day(as_of: datetime) -> datetime:
    return as_of.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(as_of: datetime) -> datetime:
    # Weeks start on Sunday.
    return start_of_day(as_of) - timedelta(days=(as_of.weekday() + 1) % 7)


def start_of_month(as_of: datetime) -> datetime:
    return start_of_day(as_of).replace(day=1)


class QuotaEvaluator:
    def __init__(self, storage: InMemoryStorage, ledger: LedgerStore, settings: Settings):
        self.storage = storage
        self.ledger = ledger
        self.settings = settings

    def windows(self, as_of: datetime) -> list[tuple[str, datetime, Decimal]]:
        return [
            ("daily", start_of_day(as_of), self.settings.daily_withdrawal_limit),
            ("weekly", start_of_week(as_of), self.settings.weekly_withdrawal_limit),
            ("monthly", start_of_month(as_of), self.settings.monthly_withdrawal_limit),
        ]

    def daily_task_count(self, account_id: UUID, as_of: datetime) -> int:
        day_start = start_of_day(as_of)
        day_end = day_start + timedelta(hours=24)
        return sum(
            1 for entry in self.ledger.entries(account_id, EntryCategory.TASK_REWARD)
            if day_start <= entry.created_at < day_end
        )

    def withdrawal_window_total(self, account_id: UUID, window_start: datetime) -> Decimal:
        try:
            rows = self.storage.find_withdrawals(
                account_id=account_id, statuses=QUOTA_STATUSES, submitted_since=window_start
            )
        except StorageUnavailable as e:
            raise LedgerUnavailableError(f"Withdrawal storage unavailable: {e}") from e
        return sum((Decimal(row["amount"]) for row in rows), ZERO)

    def check_withdrawal(self, account_id: UUID, amount: Decimal, as_of: datetime) -> None:
        for window, window_start, limit in self.windows(as_of):
            used = self.withdrawal_window_total(account_id, window_start)
            if used + amount > limit:
                raise QuotaExceededError(window, limit, used, amount)

    def check_task_quota(self, account_id: UUID, tier: Tier, as_of: datetime) -> int:
        policy = TIER_TABLE[tier]
        completed = self.daily_task_count(account_id, as_of)
        if completed >= policy.daily_task_limit:
            raise QuotaExceededError(
                "daily_tasks",
                Decimal(policy.daily_task_limit),
                Decimal(completed),
                Decimal(1),
                message=(
                    f"Daily task limit reached! You can only complete "
                    f"{policy.daily_task_limit} tasks per day with {tier.value}."
                ),
            )
        return completed

    def usage(self, account_id: UUID, as_of: datetime, tier: Optional[Tier] = None) -> QuotaUsage:
        windows = []
        for window, window_start, limit in self.windows(as_of):
            used = self.withdrawal_window_total(account_id, window_start)
            windows.append(QuotaWindowUsage(
                window=window,
                window_start=window_start,
                limit=limit,
                used=used,
                remaining=max(ZERO, limit - used),
            ))
        return QuotaUsage(
            account_id=account_id,
            as_of=as_of,
            windows=windows,
            tasks_completed_today=self.daily_task_count(account_id, as_of),
            daily_task_limit=TIER_TABLE[tier].daily_task_limit if tier else 0,
        )
