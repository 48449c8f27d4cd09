"""
Ledger error taxonomy.

Every business-rule failure is a ``CooperativeError`` (a ``ValueError``), so
callers that only care about "the request was refused" can catch one type.
"""

from typing import Any, Optional


class CooperativeError(ValueError):
    """Base class for expected business-rule failures"""


class NotFoundError(CooperativeError):
    """Referenced record does not exist"""

    entity = "Record"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"{self.entity} {record_id} not found")


class AccountNotFound(NotFoundError):
    entity = "Account"


class TransactionNotFound(NotFoundError):
    entity = "Transaction"


class LoanNotFound(NotFoundError):
    entity = "Loan"


class MemberNotFound(NotFoundError):
    entity = "Member"


class WithdrawalRequestNotFound(NotFoundError):
    entity = "Withdrawal request"


class SavingsProductNotFound(NotFoundError):
    entity = "Savings product"


class SavingsPlanNotFound(NotFoundError):
    entity = "Savings plan"


class GuarantorNotFound(NotFoundError):
    entity = "Guarantor"


class InsufficientFunds(CooperativeError):
    """Debit would take an account balance below zero"""

    def __init__(self, account_id: str, balance: Any, requested: Any):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient balance in account {account_id}: "
            f"available {balance}, requested {requested}"
        )


class AccountNotActive(CooperativeError):
    """Operation attempted on a frozen or closed account"""

    def __init__(self, account_id: str, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is {status}")


class DuplicateReference(CooperativeError):
    """No unique transaction reference could be generated"""


class DuplicatePosting(CooperativeError):
    """Interest or dividend was already posted for the period"""

    def __init__(self, posting_type: str, period: str):
        self.posting_type = posting_type
        self.period = period
        super().__init__(f"{posting_type.capitalize()} for period {period} has already been posted")


class InvalidStateTransition(CooperativeError):
    """Status change not allowed by the entity's lifecycle"""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")


class TransactionAlreadyReversed(CooperativeError):
    """Transaction already has a reversal record"""


class PartialPostingFailure(CooperativeError):
    """A bulk posting run finished with per-account failures"""

    def __init__(self, posting_log: Any, failures: Optional[list] = None):
        self.posting_log = posting_log
        self.failures = failures or []
        super().__init__(
            f"Posting run {posting_log.posting_type.value} {posting_log.period} "
            f"failed for {len(self.failures)} account(s)"
        )


class TransactionIntegrityViolation(Exception):
    """Ledger invariant broken inside a unit of work.

    Not a business error: this must never reach a caller outside of a
    rolled-back unit of work.
    """
