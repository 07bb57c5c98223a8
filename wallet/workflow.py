import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .assignment import AssignmentBalancer
from .config import Settings
from .errors import (
    ConcurrentModificationError,
    DuplicateEntryError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NoCapacityError,
    NotFoundError,
    TierRequiredError,
    ValidationError,
)
from .jobs import SettlementQueue
from .ledger import BalanceCalculator, LedgerStore, utcnow
from .models import (
    Account,
    Capability,
    EntryCategory,
    ReviewAction,
    Reviewer,
    ReviewWithdrawal,
    StatusOverride,
    SubmitWithdrawal,
    UpiPayment,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .notifications import NotificationCategory, NotificationEmitter
from .quota import QuotaEvaluator
from .storage import InMemoryStorage, VersionConflict

logger = logging.getLogger(__name__)

S = WithdrawalStatus

TRANSITIONS: dict[WithdrawalStatus, set[WithdrawalStatus]] = {
    S.PENDING: {S.APPROVED, S.REJECTED, S.CANCELLED},
    S.APPROVED: {S.PROCESSING},
    S.PROCESSING: {S.COMPLETED},
}

ADMIN_OVERRIDES: dict[WithdrawalStatus, set[WithdrawalStatus]] = {
    S.PENDING: {S.UNDER_REVIEW},
    S.UNDER_REVIEW: {S.PENDING, S.APPROVED, S.REJECTED},
}


def compute_tax(amount: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    # Amounts carry at most one decimal place, so 10% is exact to the paisa.
    tax = amount * rate
    return tax, amount - tax


class WithdrawalWorkflow:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerStore,
        calculator: BalanceCalculator,
        quota: QuotaEvaluator,
        balancer: AssignmentBalancer,
        emitter: NotificationEmitter,
        settlements: SettlementQueue,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.ledger = ledger
        self.calculator = calculator
        self.quota = quota
        self.balancer = balancer
        self.emitter = emitter
        self.settlements = settlements
        self.settings = settings
        self.clock = clock

    def submit(self, account_id: UUID, request: SubmitWithdrawal) -> WithdrawalResponse:
        amount = Decimal(request.amount)
        minimum = self.settings.min_withdrawal_amount
        if amount < minimum:
            raise ValidationError(f"Minimum withdrawal amount is ₹{minimum}", field="amount")

        missing = request.payment_method.missing_fields()
        if missing:
            if isinstance(request.payment_method, UpiPayment):
                message = "UPI ID is required for UPI transfers"
            else:
                message = f"All bank details are required for bank transfers (missing: {', '.join(missing)})"
            raise ValidationError(message, field="payment_method", context={"missing_fields": missing})

        # One transaction per submission: the balance, quota and capacity
        # reads and the insert see the same state.
        with self.storage.transaction():
            if request.idempotency_key:
                existing = self.storage.find_withdrawal_by_key(account_id, request.idempotency_key)
                if existing:
                    return WithdrawalResponse(
                        withdrawal=WithdrawalRequest(**existing),
                        message="Withdrawal request already exists (idempotent return)",
                    )

            account = self._get_account(account_id)
            now = self.clock()
            if account.tier is None:
                raise TierRequiredError("VIP subscription required for withdrawals")
            if not account.tier_is_active(now):
                raise TierRequiredError("VIP subscription has expired. Please renew to make withdrawals.")

            balance = self.calculator.compute_balance(account_id).balance
            if amount > balance:
                raise InsufficientBalanceError(balance, amount)

            self.quota.check_withdrawal(account_id, amount, now)

            reviewer = self.balancer.select_one(Capability.MANAGE_WITHDRAWALS)
            if reviewer is None:
                raise NoCapacityError("No reviewers available. Please try again later.")

            tax, net_amount = compute_tax(amount, self.settings.withdrawal_tax_rate)
            data = {
                "id": uuid4(),
                "account_id": account_id,
                "amount": amount,
                "tax": tax,
                "net_amount": net_amount,
                "status": S.PENDING.value,
                "reviewer_id": reviewer.id,
                "payment_method": request.payment_method.model_dump(),
                "submitted_at": now,
                "reviewed_at": None,
                "processed_at": None,
                "completed_at": None,
                "reviewer_notes": None,
                "rejection_reason": None,
                "idempotency_key": request.idempotency_key,
                "version": 0,
            }
            self.storage.insert_withdrawal(data)
            self.storage.attach_withdrawal(reviewer.id, data["id"])

        withdrawal = WithdrawalRequest(**data)
        logger.info(
            "Withdrawal %s submitted by account %s for ₹%s (tax ₹%s), assigned to reviewer %s",
            withdrawal.id, account_id, amount, tax, reviewer.id,
        )
        self.emitter.emit(
            account_id,
            NotificationCategory.WITHDRAWAL_SUBMITTED,
            "Withdrawal Request Submitted",
            f"Your withdrawal request for ₹{amount} has been submitted and is under review. "
            f"You will be notified once it's processed.",
            {"withdrawal_id": str(withdrawal.id), "amount": str(amount), "net_amount": str(net_amount)},
        )
        self.emitter.emit(
            reviewer.id,
            NotificationCategory.WITHDRAWAL_ASSIGNED,
            "New Withdrawal Request Assigned",
            f"You have been assigned a new withdrawal request for ₹{amount} from {account.name}.",
            {"withdrawal_id": str(withdrawal.id), "account_id": str(account_id), "amount": str(amount)},
        )
        return WithdrawalResponse(
            withdrawal=withdrawal,
            message="Withdrawal request submitted successfully and assigned to a reviewer",
        )

    def review(self, request_id: UUID, reviewer_id: UUID, review: ReviewWithdrawal) -> WithdrawalResponse:
        reviewer = self.balancer.get_reviewer(reviewer_id)
        withdrawal = self.get(request_id)
        self._authorize(reviewer, withdrawal)
        now = self.clock()

        if review.action == ReviewAction.APPROVE:
            updated = self._transition(withdrawal, S.PENDING, S.APPROVED, {
                "reviewed_at": now,
                "reviewer_notes": review.notes or "Approved by manager",
            })
            self.emitter.emit(
                updated.account_id,
                NotificationCategory.WITHDRAWAL_APPROVED,
                "Withdrawal Approved",
                f"Your withdrawal request for ₹{updated.amount} has been approved and will be processed within 24 hours.",
                self._payload(updated),
            )
            return WithdrawalResponse(withdrawal=updated, message="Withdrawal request approved successfully")

        if review.action == ReviewAction.REJECT:
            reason = (review.rejection_reason or "").strip()
            if not reason:
                raise ValidationError("Rejection reason is required", field="rejection_reason")
            updated = self._transition(withdrawal, S.PENDING, S.REJECTED, {
                "reviewed_at": now,
                "reviewer_notes": review.notes or "Rejected by manager",
                "rejection_reason": reason,
            })
            self.emitter.emit(
                updated.account_id,
                NotificationCategory.WITHDRAWAL_REJECTED,
                "Withdrawal Rejected",
                f"Your withdrawal request for ₹{updated.amount} was rejected. Reason: {reason}",
                {**self._payload(updated), "rejection_reason": reason},
            )
            return WithdrawalResponse(withdrawal=updated, message="Withdrawal request rejected successfully")

        with self.storage.transaction():
            updated = self._transition(withdrawal, S.APPROVED, S.PROCESSING, {"processed_at": now})
            self.settlements.enqueue(updated.id, now + timedelta(seconds=self.settings.settlement_delay_seconds))
            # Emitted while the transaction still holds the store, so a
            # settlement worker cannot complete the request ahead of it.
            self.emitter.emit(
                updated.account_id,
                NotificationCategory.WITHDRAWAL_PROCESSING,
                "Withdrawal Processing",
                f"Your withdrawal of ₹{updated.amount} is now being processed. "
                f"You will receive the payment within 24-48 hours.",
                self._payload(updated),
            )
        return WithdrawalResponse(withdrawal=updated, message="Withdrawal is now being processed")

    def cancel(self, request_id: UUID, account_id: UUID) -> WithdrawalResponse:
        withdrawal = self.get(request_id)
        if withdrawal.account_id != account_id:
            raise ForbiddenError("You can only cancel your own withdrawal requests")
        if not withdrawal.can_cancel():
            raise InvalidTransitionError(f"Cannot cancel withdrawal with status: {withdrawal.status.value}")

        updated = self._transition(withdrawal, S.PENDING, S.CANCELLED, {})
        self.emitter.emit(
            account_id,
            NotificationCategory.WITHDRAWAL_CANCELLED,
            "Withdrawal Request Cancelled",
            f"Your withdrawal request for ₹{updated.amount} has been cancelled successfully.",
            self._payload(updated),
        )
        if updated.reviewer_id:
            self.emitter.emit(
                updated.reviewer_id,
                NotificationCategory.WITHDRAWAL_CANCELLED,
                "Withdrawal Request Cancelled by User",
                f"A withdrawal request for ₹{updated.amount} has been cancelled by the user.",
                self._payload(updated),
            )
        return WithdrawalResponse(withdrawal=updated, message="Withdrawal request cancelled successfully")

    def complete(self, request_id: UUID) -> WithdrawalResponse:
        with self.storage.transaction():
            withdrawal = self.get(request_id)
            if withdrawal.status == S.COMPLETED:
                return WithdrawalResponse(withdrawal=withdrawal, message="Withdrawal already completed")
            if withdrawal.status != S.PROCESSING:
                raise InvalidTransitionError(
                    f"Only processing withdrawals can be completed (status: {withdrawal.status.value})"
                )

            try:
                self.ledger.append(
                    withdrawal.account_id,
                    -withdrawal.amount,
                    EntryCategory.WITHDRAWAL,
                    f"Withdrawal: ₹{withdrawal.amount} (Tax: ₹{withdrawal.tax}, Net: ₹{withdrawal.net_amount})",
                    reference=f"withdrawal_{withdrawal.id}",
                )
            except DuplicateEntryError:
                logger.info("Withdrawal %s was already booked; finishing the transition only", withdrawal.id)

            updated = self._transition(withdrawal, S.PROCESSING, S.COMPLETED, {"completed_at": self.clock()})

            if updated.reviewer_id:
                reviewer = self.storage.get_reviewer(updated.reviewer_id)
                if reviewer:
                    self.storage.update_reviewer(updated.reviewer_id, {
                        "total_processed_count": reviewer["total_processed_count"] + 1,
                        "total_processed_amount": Decimal(reviewer["total_processed_amount"]) + updated.amount,
                    })

        self.emitter.emit(
            updated.account_id,
            NotificationCategory.WITHDRAWAL_COMPLETED,
            "Withdrawal Completed",
            f"Your withdrawal of ₹{updated.net_amount} (after tax) has been sent to your account.",
            self._payload(updated),
        )
        return WithdrawalResponse(withdrawal=updated, message="Withdrawal completed successfully")

    def override_status(self, request_id: UUID, admin_id: UUID, override: StatusOverride) -> WithdrawalResponse:
        admin = self.balancer.get_reviewer(admin_id)
        if not (admin.is_active and admin.is_admin):
            raise ForbiddenError("Administrator override required")

        withdrawal = self.get(request_id)
        changes: dict = {}
        if override.notes:
            changes["reviewer_notes"] = override.notes
        if override.status in (S.APPROVED, S.REJECTED):
            changes["reviewed_at"] = self.clock()
        if override.status == S.REJECTED:
            changes["rejection_reason"] = override.notes or "Rejected by administrator"

        updated = self._transition(withdrawal, withdrawal.status, override.status, changes, ADMIN_OVERRIDES)
        logger.info("Administrator %s moved withdrawal %s to %s", admin_id, request_id, override.status.value)
        self.emitter.emit(
            updated.account_id,
            NotificationCategory.WITHDRAWAL_STATUS_CHANGED,
            "Withdrawal Status Updated",
            f"Your withdrawal request for ₹{updated.amount} is now {override.status.value.replace('_', ' ')}.",
            self._payload(updated),
        )
        return WithdrawalResponse(withdrawal=updated, message=f"Withdrawal moved to {override.status.value}")

    def get(self, request_id: UUID) -> WithdrawalRequest:
        data = self.storage.get_withdrawal(request_id)
        if not data:
            raise NotFoundError(f"Withdrawal request {request_id} not found")
        return WithdrawalRequest(**data)

    def list_for_account(self, account_id: UUID, status: Optional[WithdrawalStatus] = None) -> list[WithdrawalRequest]:
        statuses = [status.value] if status else None
        rows = self.storage.find_withdrawals(account_id=account_id, statuses=statuses)
        return sorted((WithdrawalRequest(**r) for r in rows), key=lambda w: w.submitted_at, reverse=True)

    def list_for_reviewer(self, reviewer_id: UUID, status: Optional[WithdrawalStatus] = None) -> list[WithdrawalRequest]:
        statuses = [status.value] if status else None
        rows = self.storage.find_withdrawals(reviewer_id=reviewer_id, statuses=statuses)
        return sorted((WithdrawalRequest(**r) for r in rows), key=lambda w: w.submitted_at, reverse=True)

    def _get_account(self, account_id: UUID) -> Account:
        data = self.storage.get_account(account_id)
        if not data:
            raise NotFoundError(f"Account {account_id} not found")
        return Account(**data)

    def _authorize(self, reviewer: Reviewer, withdrawal: WithdrawalRequest) -> None:
        if not reviewer.is_active:
            raise ForbiddenError("Reviewer access denied")
        if reviewer.is_admin:
            return
        if not reviewer.can(Capability.MANAGE_WITHDRAWALS):
            raise ForbiddenError("Insufficient permissions")
        if withdrawal.reviewer_id != reviewer.id:
            raise ForbiddenError("You are not assigned to this withdrawal request")

    def _transition(
        self,
        withdrawal: WithdrawalRequest,
        source: WithdrawalStatus,
        target: WithdrawalStatus,
        changes: dict,
        allowed: dict[WithdrawalStatus, set[WithdrawalStatus]] = TRANSITIONS,
    ) -> WithdrawalRequest:
        if withdrawal.status != source or target not in allowed.get(source, set()):
            raise InvalidTransitionError(
                f"Cannot move withdrawal from {withdrawal.status.value} to {target.value}",
                {"withdrawal_id": str(withdrawal.id), "status": withdrawal.status.value, "target": target.value},
            )
        try:
            data = self.storage.compare_and_set_withdrawal(
                withdrawal.id, withdrawal.version, {"status": target.value, **changes}
            )
        except VersionConflict as e:
            current = self.get(withdrawal.id)
            if current.status != source:
                raise InvalidTransitionError(
                    f"Cannot move withdrawal from {current.status.value} to {target.value}",
                    {"withdrawal_id": str(withdrawal.id), "status": current.status.value, "target": target.value},
                ) from e
            raise ConcurrentModificationError(
                f"Withdrawal {withdrawal.id} was modified concurrently; re-read and retry",
                {"withdrawal_id": str(withdrawal.id), "expected_version": e.expected, "actual_version": e.actual},
            ) from e

        logger.info("Withdrawal %s: %s -> %s", withdrawal.id, source.value, target.value)
        return WithdrawalRequest(**data)

    @staticmethod
    def _payload(withdrawal: WithdrawalRequest) -> dict:
        return {
            "withdrawal_id": str(withdrawal.id),
            "amount": str(withdrawal.amount),
            "net_amount": str(withdrawal.net_amount),
        }
