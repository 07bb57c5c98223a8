from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from wallet.config import Settings
from wallet.models import (
    CreateReviewerRequest,
    EntryCategory,
    RegisterAccountRequest,
    Tier,
    TierStatus,
)
from wallet.platform import create_platform


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# Wednesday, mid-month: the daily, weekly and monthly windows all start on different days.
START = datetime(2024, 6, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings(settlement_delay_seconds=5.0, settlement_max_attempts=3)


@pytest.fixture
def platform(settings, clock):
    p = create_platform(settings=settings, clock=clock)
    yield p
    p.stop_worker()


@pytest.fixture
def account_factory(platform, clock):
    """Register an account holding an active tier, optionally seeded with one credit."""

    def factory(name="member", tier=Tier.VIP1, balance=Decimal("0")):
        account = platform.accounts.register(RegisterAccountRequest(name=name))
        if tier is not None:
            platform.storage.update_account(account.id, {
                "tier": tier.value,
                "tier_status": TierStatus.ACTIVE.value,
                "subscribed_at": clock(),
                "tier_expires_at": clock() + timedelta(days=365),
            })
        if balance:
            platform.ledger.append(
                account.id, Decimal(balance), EntryCategory.TASK_REWARD, "Opening credit", f"seed-{account.id}"
            )
        return platform.accounts.get(account.id)

    return factory


@pytest.fixture
def reviewer_factory(platform):
    def factory(name="manager", max_capacity=None, **kwargs):
        return platform.balancer.add_reviewer(CreateReviewerRequest(name=name, max_capacity=max_capacity, **kwargs))

    return factory
