"""
Unit tests for the assignment balancer

Tests cover:
1. Reviewer registry and selection
2. Auto-assign, manual assign and redistribute
3. Capacity bounds and account/reviewer consistency
4. Reviewer deactivation with reassignment
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from wallet.errors import NoCapacityError, NotFoundError, TierRequiredError, ValidationError
from wallet.models import Capability, ReviewerRole, SubmitWithdrawal, UpiPayment
from wallet.storage import CapacityExceeded


def assert_consistent(platform):
    """Every account points at a reviewer that lists it, and vice versa, within capacity."""
    reviewers = {r.id: r for r in platform.balancer.list_reviewers()}
    listed = {}
    for reviewer in reviewers.values():
        assert reviewer.current_count <= reviewer.max_capacity
        for account_id in reviewer.assigned_account_ids:
            assert account_id not in listed, "account listed under two reviewers"
            listed[account_id] = reviewer.id
    for row in platform.storage.list_accounts():
        assert listed.get(row["id"]) == row["assigned_reviewer_id"]


class TestReviewerRegistry:
    def test_default_capacity_from_settings(self, platform, reviewer_factory, settings):
        reviewer = reviewer_factory()

        assert reviewer.max_capacity == settings.default_reviewer_capacity
        assert reviewer.current_count == 0
        assert reviewer.can(Capability.MANAGE_WITHDRAWALS)

    def test_unknown_reviewer(self, platform):
        with pytest.raises(NotFoundError):
            platform.balancer.get_reviewer(uuid4())

    def test_select_one_prefers_least_loaded(self, platform, reviewer_factory, account_factory):
        first = reviewer_factory(name="first")
        second = reviewer_factory(name="second")
        platform.storage.attach_account(first.id, account_factory().id)

        assert platform.balancer.select_one().id == second.id

    def test_select_one_skips_full_and_inactive(self, platform, reviewer_factory, account_factory):
        full = reviewer_factory(name="full", max_capacity=1)
        inactive = reviewer_factory(name="inactive")
        platform.storage.attach_account(full.id, account_factory().id)
        platform.storage.update_reviewer(inactive.id, {"is_active": False})

        assert platform.balancer.select_one() is None

    def test_select_one_requires_capability(self, platform, reviewer_factory):
        reviewer_factory(permissions=[Capability.MANAGE_ACCOUNTS])

        assert platform.balancer.select_one(Capability.MANAGE_WITHDRAWALS) is None


class TestAutoAssign:
    """Tests for placing unassigned accounts."""

    def test_capacity_limits_assignment(self, platform, reviewer_factory, account_factory):
        """Two reviewers with room for one account each, three accounts waiting."""
        reviewer_factory(name="a", max_capacity=1)
        reviewer_factory(name="b", max_capacity=1)
        for i in range(3):
            account_factory(name=f"member-{i}")

        result = platform.balancer.auto_assign()

        assert result.assigned_count == 2
        assert result.unassigned_count == 1
        assert_consistent(platform)

    def test_spreads_by_load(self, platform, reviewer_factory, account_factory):
        a = reviewer_factory(name="a")
        b = reviewer_factory(name="b")
        for i in range(4):
            account_factory(name=f"member-{i}")

        platform.balancer.auto_assign()

        assert platform.balancer.get_reviewer(a.id).current_count == 2
        assert platform.balancer.get_reviewer(b.id).current_count == 2
        assert_consistent(platform)

    def test_skips_accounts_without_tier(self, platform, reviewer_factory, account_factory):
        reviewer_factory()
        account_factory(tier=None)

        result = platform.balancer.auto_assign()

        assert result.assigned_count == 0
        assert result.message == "All eligible accounts are already assigned to reviewers"

    def test_dangling_reviewer_reference_counts_as_unassigned(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory()
        account = account_factory()
        platform.storage.update_account(account.id, {"assigned_reviewer_id": uuid4()})

        result = platform.balancer.auto_assign()

        assert [a.account_id for a in result.assignments] == [account.id]
        assert platform.accounts.get(account.id).assigned_reviewer_id == reviewer.id
        assert_consistent(platform)

    def test_notifies_assigned_accounts(self, platform, reviewer_factory, account_factory):
        reviewer_factory(name="Priya")
        account = account_factory()

        platform.balancer.auto_assign()

        notifications = platform.notifier.for_target(account.id)
        assert notifications[0].title == "Manager Assigned"
        assert "Priya" in notifications[0].message

    def test_ignores_reviewers_without_account_capability(self, platform, reviewer_factory, account_factory):
        reviewer_factory(permissions=[Capability.MANAGE_WITHDRAWALS])
        account_factory()

        result = platform.balancer.auto_assign()

        assert result.assigned_count == 0
        assert result.unassigned_count == 1


class TestManualAssign:
    """Tests for moving a single account."""

    def test_moves_account_between_reviewers(self, platform, reviewer_factory, account_factory):
        old = reviewer_factory(name="old")
        new = reviewer_factory(name="new")
        account = account_factory()
        platform.storage.attach_account(old.id, account.id)

        result = platform.balancer.manual_assign(account.id, new.id)

        assert result.previous_reviewer_id == old.id
        assert platform.balancer.get_reviewer(old.id).current_count == 0
        assert platform.balancer.get_reviewer(new.id).assigned_account_ids == [account.id]
        assert platform.notifier.for_target(account.id)[-1].title == "Manager Changed"
        assert_consistent(platform)

    def test_reviewer_at_capacity(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory(max_capacity=1)
        platform.balancer.manual_assign(account_factory(name="first").id, reviewer.id)

        with pytest.raises(NoCapacityError):
            platform.balancer.manual_assign(account_factory(name="second").id, reviewer.id)

        assert_consistent(platform)

    def test_failed_move_keeps_previous_reviewer(self, platform, reviewer_factory, account_factory):
        old = reviewer_factory(name="old")
        full = reviewer_factory(name="full", max_capacity=0)
        account = account_factory()
        platform.storage.attach_account(old.id, account.id)

        with pytest.raises(NoCapacityError):
            platform.balancer.manual_assign(account.id, full.id)

        assert platform.accounts.get(account.id).assigned_reviewer_id == old.id

    def test_inactive_reviewer_rejected(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory()
        platform.storage.update_reviewer(reviewer.id, {"is_active": False})

        with pytest.raises(ValidationError):
            platform.balancer.manual_assign(account_factory().id, reviewer.id)

    def test_account_without_tier_rejected(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory()

        with pytest.raises(TierRequiredError):
            platform.balancer.manual_assign(account_factory(tier=None).id, reviewer.id)

    def test_same_reviewer_is_a_no_op(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory(max_capacity=1)
        account = account_factory()
        platform.balancer.manual_assign(account.id, reviewer.id)

        result = platform.balancer.manual_assign(account.id, reviewer.id)

        assert result.message == "Account is already assigned to this reviewer"
        assert platform.balancer.get_reviewer(reviewer.id).current_count == 1


class TestRedistribute:
    """Tests for rebalancing all accounts."""

    def test_even_spread(self, platform, reviewer_factory, account_factory):
        """Ten accounts over three reviewers end up 4/3/3."""
        reviewers = [reviewer_factory(name=f"r{i}") for i in range(3)]
        for i in range(10):
            account_factory(name=f"member-{i}")
        # Start lopsided
        platform.balancer.auto_assign()
        for row in platform.storage.list_accounts():
            platform.balancer.manual_assign(row["id"], reviewers[0].id)

        result = platform.balancer.redistribute()

        counts = sorted(platform.balancer.get_reviewer(r.id).current_count for r in reviewers)
        assert counts == [3, 3, 4]
        assert sum(counts) == 10
        assert result.target_per_reviewer == 4
        assert result.unassigned_count == 0
        assert_consistent(platform)

    def test_respects_capacity(self, platform, reviewer_factory, account_factory):
        reviewer_factory(name="a", max_capacity=2)
        reviewer_factory(name="b", max_capacity=2)
        for i in range(5):
            account_factory(name=f"member-{i}")

        result = platform.balancer.redistribute()

        assert result.assigned_count == 4
        assert result.unassigned_count == 1
        assert_consistent(platform)

    def test_releases_accounts_without_tier(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory()
        account = account_factory()
        platform.storage.attach_account(reviewer.id, account.id)
        platform.storage.update_account(account.id, {"tier": None})

        platform.balancer.redistribute()

        assert platform.accounts.get(account.id).assigned_reviewer_id is None
        assert_consistent(platform)

    def test_no_reviewers(self, platform, account_factory):
        account_factory()

        with pytest.raises(NoCapacityError):
            platform.balancer.redistribute()


class TestCapacityBound:
    def test_storage_refuses_over_capacity(self, platform, reviewer_factory, account_factory):
        reviewer = reviewer_factory(max_capacity=1)
        platform.storage.attach_account(reviewer.id, account_factory(name="first").id)

        with pytest.raises(CapacityExceeded):
            platform.storage.attach_account(reviewer.id, account_factory(name="second").id)

    def test_mixed_operations_stay_within_bounds(self, platform, reviewer_factory, account_factory):
        small = reviewer_factory(name="small", max_capacity=2)
        reviewer_factory(name="large", max_capacity=3)
        accounts = [account_factory(name=f"member-{i}") for i in range(7)]

        platform.balancer.auto_assign()
        assert_consistent(platform)
        with pytest.raises(NoCapacityError):
            platform.balancer.manual_assign(accounts[-1].id, small.id)
        platform.balancer.redistribute()
        assert_consistent(platform)
        platform.balancer.auto_assign()
        assert_consistent(platform)


class TestDeactivate:
    """Tests for taking a reviewer out of the pool."""

    @pytest.fixture
    def loaded(self, platform, reviewer_factory, account_factory):
        leaving = reviewer_factory(name="leaving")
        account = account_factory(balance=Decimal("500"))
        platform.balancer.auto_assign()
        request = SubmitWithdrawal(amount=Decimal("400"), payment_method=UpiPayment(upi_id="member@okbank"))
        withdrawal = platform.workflow.submit(account.id, request).withdrawal
        staying = reviewer_factory(name="staying")
        return leaving, staying, account, withdrawal

    def test_refuses_without_reassign(self, platform, loaded):
        leaving, _, _, _ = loaded

        with pytest.raises(ValidationError):
            platform.balancer.deactivate_reviewer(leaving.id)

        assert platform.balancer.get_reviewer(leaving.id).is_active

    def test_reassigns_accounts_and_withdrawals(self, platform, loaded):
        leaving, staying, account, withdrawal = loaded

        result = platform.balancer.deactivate_reviewer(leaving.id, reassign=True)

        assert result.reviewer.is_active is False
        assert result.released_count == 1
        assert result.reassigned_count == 1
        assert result.moved_withdrawal_ids == [withdrawal.id]
        assert platform.accounts.get(account.id).assigned_reviewer_id == staying.id
        assert platform.workflow.get(withdrawal.id).reviewer_id == staying.id
        assert platform.balancer.get_reviewer(leaving.id).assigned_withdrawal_ids == []
        assert_consistent(platform)

    def test_idle_reviewer_deactivates_directly(self, platform, reviewer_factory):
        reviewer = reviewer_factory()

        result = platform.balancer.deactivate_reviewer(reviewer.id)

        assert result.released_count == 0
        assert platform.balancer.list_reviewers(active_only=True) == []

    def test_reactivated_reviewer_is_selectable(self, platform, reviewer_factory):
        reviewer = reviewer_factory(role=ReviewerRole.SENIOR_MANAGER)
        platform.balancer.deactivate_reviewer(reviewer.id)

        platform.balancer.activate_reviewer(reviewer.id)

        assert platform.balancer.select_one().id == reviewer.id
