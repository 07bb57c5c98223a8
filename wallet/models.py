from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field


class Tier(str, Enum):
    VIP1 = "VIP1"
    VIP2 = "VIP2"
    VIP3 = "VIP3"


class TierStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    EXPIRED = "expired"


class EntryCategory(str, Enum):
    TASK_REWARD = "task_reward"
    WITHDRAWAL = "withdrawal"
    SUBSCRIPTION_PAYMENT = "subscription_payment"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED)

    @property
    def counts_against_quota(self) -> bool:
        return self not in (WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED)


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    PROCESS = "process"


class ReviewerRole(str, Enum):
    MANAGER = "manager"
    SENIOR_MANAGER = "senior_manager"
    ADMIN = "admin"


class Capability(str, Enum):
    MANAGE_WITHDRAWALS = "manage_withdrawals"
    MANAGE_ACCOUNTS = "manage_accounts"


class JobStatus(str, Enum):
    NEW = "new"
    DONE = "done"
    FAILED = "failed"


class TierPurchase(BaseModel):
    level: Tier
    purchase_date: datetime
    amount: Decimal
    transaction_id: str


class Account(BaseModel):
    id: UUID
    name: str
    tier: Optional[Tier] = None
    tier_status: TierStatus = TierStatus.NONE
    tier_expires_at: Optional[datetime] = None
    subscribed_at: Optional[datetime] = None
    tier_purchase_history: list[TierPurchase] = Field(default_factory=list)
    assigned_reviewer_id: Optional[UUID] = None
    cached_balance: Optional[Decimal] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def tier_is_active(self, as_of: datetime) -> bool:
        if self.tier is None:
            return False
        return self.tier_expires_at is None or as_of <= self.tier_expires_at

    def as_of(self, now: datetime) -> "Account":
        """The account as it reads at ``now``: a lapsed tier reports as expired before the sweep runs."""
        if self.tier_status == TierStatus.ACTIVE and not self.tier_is_active(now):
            return self.model_copy(update={"tier_status": TierStatus.EXPIRED})
        return self


class LedgerEntry(BaseModel):
    id: UUID
    account_id: UUID
    amount: Decimal
    category: EntryCategory
    description: str
    reference: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class UpiPayment(BaseModel):
    kind: Literal["UPI"] = "UPI"
    upi_id: Optional[str] = None

    def missing_fields(self) -> list[str]:
        return [] if self.upi_id and self.upi_id.strip() else ["upi_id"]


class BankTransferPayment(BaseModel):
    kind: Literal["BANK_TRANSFER"] = "BANK_TRANSFER"
    account_holder_name: Optional[str] = None
    bank_account: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None

    def missing_fields(self) -> list[str]:
        required = ("account_holder_name", "bank_account", "ifsc_code", "bank_name")
        return [name for name in required if not (getattr(self, name) or "").strip()]


PaymentMethod = Annotated[Union[UpiPayment, BankTransferPayment], Field(discriminator="kind")]


class WithdrawalRequest(BaseModel):
    id: UUID
    account_id: UUID
    amount: Decimal
    tax: Decimal
    net_amount: Decimal
    status: WithdrawalStatus
    reviewer_id: Optional[UUID] = None
    payment_method: PaymentMethod
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reviewer_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def can_cancel(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class Reviewer(BaseModel):
    id: UUID
    name: str
    role: ReviewerRole = ReviewerRole.MANAGER
    is_active: bool = True
    permissions: list[Capability] = Field(default_factory=list)
    max_capacity: int
    assigned_account_ids: list[UUID] = Field(default_factory=list)
    assigned_withdrawal_ids: list[UUID] = Field(default_factory=list)
    total_processed_count: int = 0
    total_processed_amount: Decimal = Decimal("0")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def current_count(self) -> int:
        return len(self.assigned_account_ids)

    def has_capacity(self) -> bool:
        return self.current_count < self.max_capacity

    def can(self, capability: Capability) -> bool:
        return capability in self.permissions

    @property
    def is_admin(self) -> bool:
        return self.role == ReviewerRole.ADMIN


class Notification(BaseModel):
    id: UUID
    target_id: UUID
    category: str
    title: str
    message: str
    payload: dict = Field(default_factory=dict)
    created_at: datetime


class SettlementJob(BaseModel):
    id: UUID
    withdrawal_id: UUID
    run_after: datetime
    status: JobStatus = JobStatus.NEW
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime


# Requests

class RegisterAccountRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class CreateReviewerRequest(BaseModel):
    name: str = Field(..., min_length=1)
    role: ReviewerRole = ReviewerRole.MANAGER
    permissions: list[Capability] = Field(
        default_factory=lambda: [Capability.MANAGE_WITHDRAWALS, Capability.MANAGE_ACCOUNTS]
    )
    max_capacity: Optional[int] = Field(default=None, ge=0)


class SubmitWithdrawal(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=1)
    payment_method: PaymentMethod
    idempotency_key: Optional[str] = Field(default=None, description="Client token that makes retries safe")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 400,
            "payment_method": {"kind": "UPI", "upi_id": "member@okbank"},
            "idempotency_key": "withdraw-2024-06-01-001",
        }
    })


class ReviewWithdrawal(BaseModel):
    action: ReviewAction
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class StatusOverride(BaseModel):
    status: WithdrawalStatus
    notes: Optional[str] = None


class CompleteTaskRequest(BaseModel):
    task_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)


class SubscriptionPurchase(BaseModel):
    tier: Tier
    amount_paid: Decimal = Field(..., gt=0)
    external_transaction_id: str = Field(..., min_length=1)


class AutoAssignCommand(BaseModel):
    action: Literal["auto_assign"]


class ManualAssignCommand(BaseModel):
    action: Literal["manual_assign"]
    account_id: UUID
    reviewer_id: UUID


class RedistributeCommand(BaseModel):
    action: Literal["redistribute"]


AssignmentCommand = Annotated[
    Union[AutoAssignCommand, ManualAssignCommand, RedistributeCommand],
    Field(discriminator="action"),
]


# Responses

class BalanceSummary(BaseModel):
    account_id: UUID
    currency: str
    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal
    earned_by_category: dict[EntryCategory, Decimal] = Field(default_factory=dict)
    spent_by_category: dict[EntryCategory, Decimal] = Field(default_factory=dict)
    total_entries: int
    last_transaction_at: Optional[datetime] = None
    clamped: bool = False


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class QuotaWindowUsage(BaseModel):
    window: str
    window_start: datetime
    limit: Decimal
    used: Decimal
    remaining: Decimal


class QuotaUsage(BaseModel):
    account_id: UUID
    as_of: datetime
    windows: list[QuotaWindowUsage]
    tasks_completed_today: int
    daily_task_limit: int


class WithdrawalResponse(BaseModel):
    withdrawal: WithdrawalRequest
    message: str


class TaskCompletionResult(BaseModel):
    entry: LedgerEntry
    reward: Decimal
    completed_today: int
    daily_limit: int
    remaining: int
    daily_total_reward: Decimal


class SubscriptionResponse(BaseModel):
    account: Account
    entry: LedgerEntry
    message: str


class Assignment(BaseModel):
    account_id: UUID
    reviewer_id: UUID


class AutoAssignResult(BaseModel):
    assigned_count: int
    unassigned_count: int
    assignments: list[Assignment] = Field(default_factory=list)
    message: str


class ManualAssignResult(BaseModel):
    assignment: Assignment
    previous_reviewer_id: Optional[UUID] = None
    message: str


class RedistributeResult(BaseModel):
    total_accounts: int
    total_reviewers: int
    target_per_reviewer: int
    assigned_count: int
    unassigned_count: int
    assignments: list[Assignment] = Field(default_factory=list)
    message: str


class DeactivationResult(BaseModel):
    reviewer: Reviewer
    released_count: int
    reassigned_count: int
    unassigned_count: int
    moved_withdrawal_ids: list[UUID] = Field(default_factory=list)


class ExpirySweepResult(BaseModel):
    expired_account_ids: list[UUID] = Field(default_factory=list)


class SettlementRunResult(BaseModel):
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
