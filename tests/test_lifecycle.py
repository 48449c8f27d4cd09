"""
Tests for the status transition tables
"""

import pytest

from cooperative_core.errors import InvalidStateTransition
from cooperative_core.lifecycle import (
    AccountStatus, LoanStatus, MemberStatus, SavingsPlanStatus, WithdrawalStatus,
    allowed_transitions, can_transition, ensure_transition, is_terminal
)


class TestLoanLifecycle:

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.PENDING, LoanStatus.APPROVED),
        (LoanStatus.PENDING, LoanStatus.REJECTED),
        (LoanStatus.APPROVED, LoanStatus.DISBURSED),
        (LoanStatus.DISBURSED, LoanStatus.REPAYING),
        (LoanStatus.DISBURSED, LoanStatus.DEFAULTED),
        (LoanStatus.REPAYING, LoanStatus.COMPLETED),
        (LoanStatus.REPAYING, LoanStatus.DEFAULTED),
    ])
    def test_forward_transitions(self, current, target):
        assert ensure_transition(current, target) == target

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.PENDING, LoanStatus.DISBURSED),
        (LoanStatus.APPROVED, LoanStatus.PENDING),
        (LoanStatus.REPAYING, LoanStatus.DISBURSED),
        (LoanStatus.COMPLETED, LoanStatus.REPAYING),
        (LoanStatus.REJECTED, LoanStatus.APPROVED),
    ])
    def test_illegal_transitions(self, current, target):
        with pytest.raises(InvalidStateTransition, match=f"from {current.value} to {target.value}"):
            ensure_transition(current, target, "loan")

    def test_terminal_states(self):
        assert is_terminal(LoanStatus.COMPLETED)
        assert is_terminal(LoanStatus.REJECTED)
        assert not is_terminal(LoanStatus.DEFAULTED)


class TestOtherLifecycles:

    def test_withdrawal_request_resolves_once(self):
        assert allowed_transitions(WithdrawalStatus.PENDING) == {
            WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED
        }
        for resolved in (WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED):
            assert is_terminal(resolved)

    def test_account_cannot_reopen(self):
        assert can_transition(AccountStatus.FROZEN, AccountStatus.ACTIVE)
        assert not can_transition(AccountStatus.CLOSED, AccountStatus.ACTIVE)

    def test_member_and_plan_transitions(self):
        assert can_transition(MemberStatus.PENDING_APPROVAL, MemberStatus.ACTIVE)
        assert not can_transition(MemberStatus.REJECTED, MemberStatus.ACTIVE)
        assert can_transition(SavingsPlanStatus.DEFAULTED, SavingsPlanStatus.LIQUIDATED)
        assert not can_transition(SavingsPlanStatus.DEFAULTED, SavingsPlanStatus.COMPLETED)

    def test_statuses_of_different_entities_never_match(self):
        assert not can_transition(LoanStatus.PENDING, WithdrawalStatus.APPROVED)
        with pytest.raises(InvalidStateTransition):
            ensure_transition(LoanStatus.PENDING, WithdrawalStatus.APPROVED)
