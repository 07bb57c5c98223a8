import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID, uuid4

from .assignment import AssignmentBalancer
from .config import Settings
from .errors import NotFoundError, TierRequiredError, ValidationError
from .ledger import LedgerStore, utcnow
from .models import (
    Account,
    CompleteTaskRequest,
    EntryCategory,
    ExpirySweepResult,
    RegisterAccountRequest,
    SubscriptionPurchase,
    SubscriptionResponse,
    TaskCompletionResult,
    TierStatus,
)
from .notifications import NotificationCategory, NotificationEmitter
from .quota import TIER_TABLE, QuotaEvaluator
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerStore,
        quota: QuotaEvaluator,
        balancer: AssignmentBalancer,
        emitter: NotificationEmitter,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.ledger = ledger
        self.quota = quota
        self.balancer = balancer
        self.emitter = emitter
        self.settings = settings
        self.clock = clock

    def register(self, request: RegisterAccountRequest, account_id: Optional[UUID] = None) -> Account:
        data = {
            "id": account_id or uuid4(),
            "name": request.name,
            "tier": None,
            "tier_status": TierStatus.NONE.value,
            "tier_expires_at": None,
            "subscribed_at": None,
            "tier_purchase_history": [],
            "assigned_reviewer_id": None,
            "cached_balance": None,
            "created_at": self.clock(),
        }
        self.storage.insert_account(data)
        logger.info("Account %s registered", data["id"])
        return Account(**data)

    def get(self, account_id: UUID) -> Account:
        data = self.storage.get_account(account_id)
        if not data:
            raise NotFoundError(f"Account {account_id} not found")
        return Account(**data).as_of(self.clock())

    def complete_task(self, account_id: UUID, request: CompleteTaskRequest) -> TaskCompletionResult:
        with self.storage.transaction():
            account = self.get(account_id)
            now = self.clock()
            if not account.tier_is_active(now):
                raise TierRequiredError("VIP subscription required to complete tasks")

            completed = self.quota.check_task_quota(account_id, account.tier, now)
            policy = TIER_TABLE[account.tier]
            entry = self.ledger.append(
                account_id,
                policy.reward_per_task,
                EntryCategory.TASK_REWARD,
                f"Completed task: {request.title}",
                reference=request.task_id,
            )

        return TaskCompletionResult(
            entry=entry,
            reward=policy.reward_per_task,
            completed_today=completed + 1,
            daily_limit=policy.daily_task_limit,
            remaining=policy.daily_task_limit - (completed + 1),
            daily_total_reward=policy.daily_total_reward,
        )

    def activate_subscription(self, account_id: UUID, purchase: SubscriptionPurchase) -> SubscriptionResponse:
        policy = TIER_TABLE[purchase.tier]
        if purchase.amount_paid != policy.price:
            raise ValidationError(
                f"Amount paid ₹{purchase.amount_paid} does not match the {purchase.tier.value} price ₹{policy.price}",
                field="amount_paid",
            )

        with self.storage.transaction():
            account = self.get(account_id)
            now = self.clock()
            entry = self.ledger.append(
                account_id,
                -purchase.amount_paid,
                EntryCategory.SUBSCRIPTION_PAYMENT,
                f"{purchase.tier.value} Subscription Payment",
                reference=purchase.external_transaction_id,
            )
            history = [h.model_dump(mode="python") for h in account.tier_purchase_history]
            history.append({
                "level": purchase.tier.value,
                "purchase_date": now,
                "amount": purchase.amount_paid,
                "transaction_id": purchase.external_transaction_id,
            })
            updated = Account(**self.storage.update_account(account_id, {
                "tier": purchase.tier.value,
                "tier_status": TierStatus.ACTIVE.value,
                "subscribed_at": now,
                "tier_expires_at": now + timedelta(days=self.settings.tier_validity_days),
                "tier_purchase_history": history,
            }))

        logger.info("Account %s activated %s until %s", account_id, purchase.tier.value, updated.tier_expires_at)
        self.emitter.emit(
            account_id,
            NotificationCategory.TIER_STATUS_CHANGE,
            "Subscription Activated",
            f"Your {purchase.tier.value} subscription is active until {updated.tier_expires_at:%Y-%m-%d}.",
            {"vip_level": purchase.tier.value, "transaction_id": purchase.external_transaction_id},
        )
        return SubscriptionResponse(account=updated, entry=entry, message="Subscription activated successfully")

    def expire_tiers(self, as_of: Optional[datetime] = None) -> ExpirySweepResult:
        as_of = as_of or self.clock()
        expired = []
        with self.storage.transaction():
            for data in self.storage.list_accounts():
                account = Account(**data)
                if account.tier is None or account.tier_is_active(as_of):
                    continue
                self.storage.update_account(account.id, {
                    "tier": None,
                    "tier_status": TierStatus.EXPIRED.value,
                })
                self.balancer.release(account.id)
                expired.append(account)

        for account in expired:
            logger.info("Tier %s expired for account %s", account.tier.value, account.id)
            self.emitter.emit(
                account.id,
                NotificationCategory.TIER_STATUS_CHANGE,
                "Subscription Expired",
                f"Your {account.tier.value} subscription has expired. Renew to keep completing tasks and withdrawing.",
                {"vip_level": account.tier.value},
            )
        return ExpirySweepResult(expired_account_ids=[a.id for a in expired])
