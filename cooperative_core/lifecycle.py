"""
Lifecycle State Machines

Enumerated statuses for every entity with a lifecycle, plus one transition
table per entity. All status changes go through ``ensure_transition`` so an
illegal move fails the same way everywhere.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import InvalidStateTransition


class AccountStatus(Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class MemberStatus(Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class LoanStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    REPAYING = "repaying"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    REJECTED = "rejected"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class SavingsPlanStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    LIQUIDATED = "liquidated"


_TRANSITIONS: Dict[type, Dict[Enum, FrozenSet[Enum]]] = {
    AccountStatus: {
        AccountStatus.ACTIVE: frozenset({AccountStatus.FROZEN, AccountStatus.CLOSED}),
        AccountStatus.FROZEN: frozenset({AccountStatus.ACTIVE, AccountStatus.CLOSED}),
        AccountStatus.CLOSED: frozenset(),
    },
    MemberStatus: {
        MemberStatus.PENDING_APPROVAL: frozenset({MemberStatus.ACTIVE, MemberStatus.REJECTED}),
        MemberStatus.ACTIVE: frozenset({MemberStatus.SUSPENDED}),
        MemberStatus.SUSPENDED: frozenset({MemberStatus.ACTIVE}),
        MemberStatus.REJECTED: frozenset(),
    },
    LoanStatus: {
        LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
        LoanStatus.APPROVED: frozenset({LoanStatus.DISBURSED}),
        # A single repayment may clear a freshly disbursed loan
        LoanStatus.DISBURSED: frozenset({LoanStatus.REPAYING, LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
        LoanStatus.REPAYING: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
        LoanStatus.DEFAULTED: frozenset({LoanStatus.COMPLETED}),
        LoanStatus.COMPLETED: frozenset(),
        LoanStatus.REJECTED: frozenset(),
    },
    WithdrawalStatus: {
        WithdrawalStatus.PENDING: frozenset({
            WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED
        }),
        WithdrawalStatus.APPROVED: frozenset(),
        WithdrawalStatus.REJECTED: frozenset(),
        WithdrawalStatus.CANCELLED: frozenset(),
    },
    SavingsPlanStatus: {
        SavingsPlanStatus.ACTIVE: frozenset({
            SavingsPlanStatus.COMPLETED, SavingsPlanStatus.DEFAULTED, SavingsPlanStatus.LIQUIDATED
        }),
        SavingsPlanStatus.DEFAULTED: frozenset({SavingsPlanStatus.LIQUIDATED}),
        SavingsPlanStatus.COMPLETED: frozenset(),
        SavingsPlanStatus.LIQUIDATED: frozenset(),
    },
}

# States in which a loan carries an outstanding balance that can be repaid
LOAN_REPAYABLE_STATES = frozenset({LoanStatus.DISBURSED, LoanStatus.REPAYING, LoanStatus.DEFAULTED})


def allowed_transitions(state: Enum) -> FrozenSet[Enum]:
    """Statuses reachable in one step from ``state``"""
    return _TRANSITIONS[type(state)][state]


def can_transition(current: Enum, target: Enum) -> bool:
    if type(current) is not type(target):
        return False
    return target in allowed_transitions(current)


def is_terminal(state: Enum) -> bool:
    return not allowed_transitions(state)


def ensure_transition(current: Enum, target: Enum, entity: Optional[str] = None) -> Enum:
    """
    Validate a status change and return the new status.

    Raises:
        InvalidStateTransition: if the lifecycle does not allow the move
    """
    if not can_transition(current, target):
        name = entity or type(current).__name__.replace("Status", "").lower()
        raise InvalidStateTransition(name, current.value, target.value)
    return target
