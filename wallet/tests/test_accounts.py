"""Tests for accounts, task rewards, subscription booking and tier expiry."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from wallet.errors import DuplicateEntryError, NotFoundError, QuotaExceededError, TierRequiredError, ValidationError
from wallet.models import (
    CompleteTaskRequest,
    EntryCategory,
    RegisterAccountRequest,
    SubscriptionPurchase,
    Tier,
    TierStatus,
)


def task(task_id):
    return CompleteTaskRequest(task_id=task_id, title=f"Survey {task_id}")


class TestRegistration:
    def test_register_and_get(self, platform):
        account = platform.accounts.register(RegisterAccountRequest(name="Asha"))

        fetched = platform.accounts.get(account.id)
        assert fetched.name == "Asha"
        assert fetched.tier is None
        assert fetched.tier_status == TierStatus.NONE

    def test_unknown_account(self, platform):
        with pytest.raises(NotFoundError):
            platform.accounts.get(uuid4())


class TestTaskCompletion:
    """Tests for task rewards."""

    def test_reward_booked(self, platform, account_factory):
        account = account_factory(tier=Tier.VIP2)

        result = platform.accounts.complete_task(account.id, task("t-1"))

        assert result.reward == Decimal("10.00")
        assert result.entry.category == EntryCategory.TASK_REWARD
        assert result.entry.reference == "t-1"
        assert result.completed_today == 1
        assert result.remaining == 9
        assert platform.calculator.compute_balance(account.id).balance == Decimal("10.00")

    def test_same_task_rewarded_once(self, platform, account_factory):
        account = account_factory()
        platform.accounts.complete_task(account.id, task("t-1"))

        with pytest.raises(DuplicateEntryError):
            platform.accounts.complete_task(account.id, task("t-1"))

        assert platform.calculator.compute_balance(account.id).balance == Decimal("6.00")

    def test_daily_limit(self, platform, account_factory):
        account = account_factory(tier=Tier.VIP1)
        for i in range(5):
            platform.accounts.complete_task(account.id, task(f"t-{i}"))

        with pytest.raises(QuotaExceededError):
            platform.accounts.complete_task(account.id, task("t-5"))

        assert platform.calculator.compute_balance(account.id).balance == Decimal("30.00")

    def test_tier_required(self, platform, account_factory):
        account = account_factory(tier=None)

        with pytest.raises(TierRequiredError):
            platform.accounts.complete_task(account.id, task("t-1"))


class TestSubscription:
    """Tests for booking verified subscription purchases."""

    def test_activation(self, platform, account_factory, clock):
        account = account_factory(tier=None, balance=Decimal("1000"))
        purchase = SubscriptionPurchase(tier=Tier.VIP1, amount_paid=Decimal("900"), external_transaction_id="pay_001")

        response = platform.accounts.activate_subscription(account.id, purchase)

        assert response.account.tier == Tier.VIP1
        assert response.account.tier_status == TierStatus.ACTIVE
        assert response.account.tier_expires_at == clock() + timedelta(days=365)
        assert response.account.tier_purchase_history[0].transaction_id == "pay_001"
        assert response.entry.amount == Decimal("-900")
        assert response.entry.category == EntryCategory.SUBSCRIPTION_PAYMENT
        assert platform.calculator.compute_balance(account.id).balance == Decimal("100")
        assert platform.notifier.for_target(account.id)[-1].title == "Subscription Activated"

    def test_replayed_payment_rejected(self, platform, account_factory):
        account = account_factory(tier=None, balance=Decimal("1000"))
        purchase = SubscriptionPurchase(tier=Tier.VIP1, amount_paid=Decimal("900"), external_transaction_id="pay_001")
        platform.accounts.activate_subscription(account.id, purchase)

        with pytest.raises(DuplicateEntryError):
            platform.accounts.activate_subscription(account.id, purchase)

        assert len(platform.accounts.get(account.id).tier_purchase_history) == 1

    def test_amount_must_match_price(self, platform, account_factory):
        account = account_factory(tier=None)
        purchase = SubscriptionPurchase(tier=Tier.VIP2, amount_paid=Decimal("900"), external_transaction_id="pay_002")

        with pytest.raises(ValidationError) as exc_info:
            platform.accounts.activate_subscription(account.id, purchase)

        assert exc_info.value.field == "amount_paid"
        assert platform.ledger.entries(account.id) == []


class TestTierExpiry:
    def test_expired_tiers_are_cleared_and_released(self, platform, account_factory, reviewer_factory, clock):
        reviewer = reviewer_factory()
        account = account_factory()
        platform.balancer.auto_assign()
        clock.advance(days=366)

        result = platform.accounts.expire_tiers()

        assert result.expired_account_ids == [account.id]
        expired = platform.accounts.get(account.id)
        assert expired.tier is None
        assert expired.tier_status == TierStatus.EXPIRED
        assert expired.assigned_reviewer_id is None
        assert platform.balancer.get_reviewer(reviewer.id).current_count == 0
        assert platform.notifier.for_target(account.id)[-1].title == "Subscription Expired"

    def test_active_tiers_untouched(self, platform, account_factory, clock):
        account_factory()
        clock.advance(days=30)

        assert platform.accounts.expire_tiers().expired_account_ids == []

    def test_lapsed_tier_reads_expired_before_sweep(self, platform, account_factory, clock):
        account = account_factory()
        assert platform.accounts.get(account.id).tier_status == TierStatus.ACTIVE

        clock.advance(days=366)

        lapsed = platform.accounts.get(account.id)
        assert lapsed.tier_status == TierStatus.EXPIRED
        # Nothing is written until the sweep runs
        assert platform.storage.get_account(account.id)["tier_status"] == TierStatus.ACTIVE.value
