import logging
import math
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import Settings
from .errors import NoCapacityError, NotFoundError, TierRequiredError, ValidationError
from .ledger import utcnow
from .models import (
    Account,
    Assignment,
    AutoAssignResult,
    Capability,
    CreateReviewerRequest,
    DeactivationResult,
    ManualAssignResult,
    RedistributeResult,
    Reviewer,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .notifications import NotificationCategory, NotificationEmitter
from .storage import CapacityExceeded, InMemoryStorage

logger = logging.getLogger(__name__)

OPEN_STATUSES = [s.value for s in WithdrawalStatus if not s.is_terminal]


class AssignmentBalancer:
    def __init__(
        self,
        storage: InMemoryStorage,
        emitter: NotificationEmitter,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.emitter = emitter
        self.settings = settings
        self.clock = clock

    # Reviewer registry

    def add_reviewer(self, request: CreateReviewerRequest, reviewer_id: Optional[UUID] = None) -> Reviewer:
        capacity = request.max_capacity
        if capacity is None:
            capacity = self.settings.default_reviewer_capacity
        data = {
            "id": reviewer_id or uuid4(),
            "name": request.name,
            "role": request.role.value,
            "is_active": True,
            "permissions": [p.value for p in request.permissions],
            "max_capacity": capacity,
            "assigned_account_ids": [],
            "assigned_withdrawal_ids": [],
            "total_processed_count": 0,
            "total_processed_amount": 0,
            "created_at": self.clock(),
        }
        self.storage.insert_reviewer(data)
        logger.info("Reviewer %s (%s) created with capacity %d", data["id"], request.name, capacity)
        return Reviewer(**data)

    def get_reviewer(self, reviewer_id: UUID) -> Reviewer:
        data = self.storage.get_reviewer(reviewer_id)
        if not data:
            raise NotFoundError(f"Reviewer {reviewer_id} not found")
        return Reviewer(**data)

    def list_reviewers(self, active_only: bool = False) -> list[Reviewer]:
        reviewers = [Reviewer(**r) for r in self.storage.list_reviewers()]
        if active_only:
            reviewers = [r for r in reviewers if r.is_active]
        return reviewers

    def activate_reviewer(self, reviewer_id: UUID) -> Reviewer:
        self.get_reviewer(reviewer_id)
        return Reviewer(**self.storage.update_reviewer(reviewer_id, {"is_active": True}))

    def deactivate_reviewer(self, reviewer_id: UUID, reassign: bool = False) -> DeactivationResult:
        with self.storage.transaction():
            reviewer = self.get_reviewer(reviewer_id)
            open_withdrawals = [
                WithdrawalRequest(**w)
                for w in self.storage.find_withdrawals(reviewer_id=reviewer_id, statuses=OPEN_STATUSES)
            ]
            if (reviewer.current_count or open_withdrawals) and not reassign:
                raise ValidationError(
                    f"Reviewer {reviewer_id} still has {reviewer.current_count} assigned accounts and "
                    f"{len(open_withdrawals)} open withdrawal requests; reassign them first",
                    field="reviewer_id",
                )

            released = list(reviewer.assigned_account_ids)
            for account_id in released:
                self.storage.detach_account(account_id)
            self.storage.update_reviewer(reviewer_id, {"is_active": False})

            assignments = self._assign_unassigned()
            reassigned = [a for a in assignments if a.account_id in released]

            moved = []
            for withdrawal in open_withdrawals:
                target = self._reviewer_for_account(withdrawal.account_id)
                if target is None:
                    logger.warning("No reviewer available to take over withdrawal %s", withdrawal.id)
                    continue
                self.storage.compare_and_set_withdrawal(withdrawal.id, withdrawal.version, {"reviewer_id": target.id})
                self.storage.detach_withdrawal(reviewer_id, withdrawal.id)
                self.storage.attach_withdrawal(target.id, withdrawal.id)
                moved.append(withdrawal.id)

            updated = self.get_reviewer(reviewer_id)

        logger.info(
            "Reviewer %s deactivated: released %d accounts, reassigned %d, moved %d withdrawals",
            reviewer_id, len(released), len(reassigned), len(moved),
        )
        for assignment in assignments:
            self._notify_assignment(assignment, "Manager Assigned", "You have been assigned to manager {name}.")
        return DeactivationResult(
            reviewer=updated,
            released_count=len(released),
            reassigned_count=len(reassigned),
            unassigned_count=len(released) - len(reassigned),
            moved_withdrawal_ids=moved,
        )

    # Selection

    def select_one(self, capability: Capability = Capability.MANAGE_WITHDRAWALS) -> Optional[Reviewer]:
        candidates = [
            r for r in self.list_reviewers(active_only=True)
            if r.can(capability) and r.has_capacity()
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: r.current_count)

    def _reviewer_for_account(self, account_id: UUID) -> Optional[Reviewer]:
        account = self.storage.get_account(account_id)
        if account and account.get("assigned_reviewer_id"):
            data = self.storage.get_reviewer(account["assigned_reviewer_id"])
            if data:
                reviewer = Reviewer(**data)
                if reviewer.is_active and reviewer.can(Capability.MANAGE_WITHDRAWALS):
                    return reviewer
        return self.select_one(Capability.MANAGE_WITHDRAWALS)

    # Assignment operations

    def auto_assign(self) -> AutoAssignResult:
        with self.storage.transaction():
            pending = self._unassigned_accounts()
            assignments = self._assign_unassigned()

        for assignment in assignments:
            self._notify_assignment(
                assignment,
                "Manager Assigned",
                "You have been assigned to manager {name}. They will handle your withdrawals and support.",
            )
        unassigned = len(pending) - len(assignments)
        logger.info("Auto-assign placed %d accounts, %d left unassigned", len(assignments), unassigned)
        if not pending:
            message = "All eligible accounts are already assigned to reviewers"
        else:
            message = f"Successfully assigned {len(assignments)} accounts to reviewers"
            if unassigned:
                message += f"; {unassigned} left unassigned because no reviewer has spare capacity"
        return AutoAssignResult(
            assigned_count=len(assignments),
            unassigned_count=unassigned,
            assignments=assignments,
            message=message,
        )

    def _unassigned_accounts(self) -> list[Account]:
        now = self.clock()
        known = {r["id"] for r in self.storage.list_reviewers()}
        return [
            account for account in (Account(**a) for a in self.storage.list_accounts())
            if account.tier_is_active(now)
            and (account.assigned_reviewer_id is None or account.assigned_reviewer_id not in known)
        ]

    def _assign_unassigned(self) -> list[Assignment]:
        candidates = [
            r for r in self.list_reviewers(active_only=True)
            if r.can(Capability.MANAGE_ACCOUNTS)
        ]
        # Loads are bumped per assignment so later accounts in the batch see them.
        loads = {r.id: r.current_count for r in candidates}
        assignments = []
        for account in self._unassigned_accounts():
            available = [r for r in candidates if loads[r.id] < r.max_capacity]
            if not available:
                break
            chosen = min(available, key=lambda r: loads[r.id])
            if account.assigned_reviewer_id is not None:
                self.storage.detach_account(account.id)
            self.storage.attach_account(chosen.id, account.id)
            loads[chosen.id] += 1
            assignments.append(Assignment(account_id=account.id, reviewer_id=chosen.id))
        return assignments

    def manual_assign(self, account_id: UUID, reviewer_id: UUID) -> ManualAssignResult:
        with self.storage.transaction():
            reviewer = self.get_reviewer(reviewer_id)
            if not reviewer.is_active:
                raise ValidationError(f"Reviewer {reviewer_id} is inactive", field="reviewer_id")

            data = self.storage.get_account(account_id)
            if not data:
                raise NotFoundError(f"Account {account_id} not found")
            account = Account(**data)
            if not account.tier_is_active(self.clock()):
                raise TierRequiredError(f"Account {account_id} does not hold an active tier")

            assignment = Assignment(account_id=account_id, reviewer_id=reviewer_id)
            if account.assigned_reviewer_id == reviewer_id and account_id in reviewer.assigned_account_ids:
                return ManualAssignResult(
                    assignment=assignment,
                    previous_reviewer_id=reviewer_id,
                    message="Account is already assigned to this reviewer",
                )
            if not reviewer.has_capacity():
                raise NoCapacityError(
                    f"Reviewer {reviewer_id} is at maximum capacity ({reviewer.max_capacity})",
                    {"reviewer_id": str(reviewer_id), "max_capacity": reviewer.max_capacity},
                )

            previous = self.storage.detach_account(account_id)
            try:
                self.storage.attach_account(reviewer_id, account_id)
            except CapacityExceeded as e:
                raise NoCapacityError(str(e), {"reviewer_id": str(reviewer_id)}) from e

        logger.info("Account %s moved from reviewer %s to %s", account_id, previous, reviewer_id)
        self._notify_assignment(
            assignment,
            "Manager Changed",
            "Your manager has been changed to {name}. They will now handle your withdrawals and support.",
        )
        return ManualAssignResult(
            assignment=assignment,
            previous_reviewer_id=previous,
            message="Account assigned to reviewer successfully",
        )

    def redistribute(self) -> RedistributeResult:
        with self.storage.transaction():
            reviewers = sorted(
                (r for r in self.list_reviewers(active_only=True) if r.can(Capability.MANAGE_ACCOUNTS)),
                key=lambda r: r.id,
            )
            if not reviewers:
                raise NoCapacityError("No active reviewers available for redistribution")

            now = self.clock()
            accounts = [Account(**a) for a in self.storage.list_accounts()]
            eligible = [a for a in accounts if a.tier_is_active(now)]
            target = math.ceil(len(eligible) / len(reviewers)) if eligible else 0

            for reviewer in reviewers:
                self.storage.clear_reviewer_accounts(reviewer.id)
            for account in accounts:
                if account.tier is not None and account.assigned_reviewer_id is not None:
                    self.storage.detach_account(account.id)

            loads = {r.id: 0 for r in reviewers}
            assignments = []
            cursor = 0
            for account in eligible:
                for step in range(len(reviewers)):
                    reviewer = reviewers[(cursor + step) % len(reviewers)]
                    if loads[reviewer.id] < reviewer.max_capacity:
                        self.storage.attach_account(reviewer.id, account.id)
                        loads[reviewer.id] += 1
                        assignments.append(Assignment(account_id=account.id, reviewer_id=reviewer.id))
                        cursor = (cursor + step + 1) % len(reviewers)
                        break

        for assignment in assignments:
            self._notify_assignment(
                assignment,
                "Manager Redistributed",
                "Due to system changes, you have been assigned to manager {name}. "
                "They will handle your withdrawals and support.",
            )
        unassigned = len(eligible) - len(assignments)
        logger.info(
            "Redistributed %d accounts over %d reviewers (target %d each, %d unassigned)",
            len(assignments), len(reviewers), target, unassigned,
        )
        return RedistributeResult(
            total_accounts=len(eligible),
            total_reviewers=len(reviewers),
            target_per_reviewer=target,
            assigned_count=len(assignments),
            unassigned_count=unassigned,
            assignments=assignments,
            message="Accounts redistributed successfully" if eligible else "No eligible accounts to redistribute",
        )

    def release(self, account_id: UUID) -> Optional[UUID]:
        previous = self.storage.detach_account(account_id)
        if previous is not None:
            logger.info("Account %s released from reviewer %s", account_id, previous)
        return previous

    def _notify_assignment(self, assignment: Assignment, title: str, template: str) -> None:
        reviewer = self.storage.get_reviewer(assignment.reviewer_id)
        name = reviewer["name"] if reviewer else str(assignment.reviewer_id)
        self.emitter.emit(
            assignment.account_id,
            NotificationCategory.MANAGER_CHANGE,
            title,
            template.format(name=name),
            {"manager_id": str(assignment.reviewer_id), "manager_name": name},
        )
