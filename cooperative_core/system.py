"""
Cooperative system container

Builds every component on one storage backend and one lock registry so the
API, scripts and tests all share the same wiring.
"""

from typing import Optional

from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .accounts import AccountManager, AccountLocks
from .ledger import AccountLedger
from .transactions import TransactionRecorder
from .members import MemberManager
from .loans import LoanManager
from .withdrawals import WithdrawalManager
from .posting import PostingEngine
from .interest import InterestPostingEngine
from .savings import SavingsPlanManager
from .workflows import LoanAppraisal, WithdrawalQueue, RegistrationQueue
from .reporting import ReportingEngine
from .config import get_config
from .logging_config import get_logger


def create_storage(backend: Optional[str] = None, sqlite_path: Optional[str] = None) -> StorageInterface:
    """Storage backend named in configuration (``sqlite`` or ``memory``)"""
    config = get_config()
    backend = backend or config.storage_backend
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path or config.sqlite_path)
    raise ValueError(f"Unknown storage backend: {backend}")


class CooperativeSystem:
    """Cooperative ledger with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None):
        self.storage = storage or create_storage()
        self.locks = AccountLocks()

        # Ledger core
        self.audit_trail = AuditTrail(self.storage)
        self.account_manager = AccountManager(self.storage, self.audit_trail, self.locks)
        self.ledger = AccountLedger(self.storage, self.account_manager)
        self.recorder = TransactionRecorder(self.storage, self.account_manager, self.ledger, self.audit_trail)

        # Members, loans and requests
        self.member_manager = MemberManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(self.storage, self.member_manager, self.audit_trail)
        self.withdrawal_manager = WithdrawalManager(self.storage, self.account_manager, self.audit_trail)

        # Posting
        self.posting_engine = PostingEngine(
            self.storage, self.account_manager, self.recorder, self.loan_manager, self.audit_trail
        )
        self.interest_engine = InterestPostingEngine(
            self.storage, self.account_manager, self.posting_engine, self.audit_trail
        )
        self.savings_manager = SavingsPlanManager(
            self.storage, self.account_manager, self.posting_engine, self.member_manager, self.audit_trail
        )

        # Workflows
        self.loan_appraisal = LoanAppraisal(self.loan_manager, self.posting_engine, self.audit_trail)
        self.withdrawal_queue = WithdrawalQueue(self.withdrawal_manager, self.posting_engine, self.audit_trail)
        self.registration_queue = RegistrationQueue(self.member_manager, self.account_manager, self.posting_engine)

        self.reporting_engine = ReportingEngine(
            self.account_manager, self.recorder, self.loan_manager,
            self.member_manager, self.withdrawal_manager, self.audit_trail
        )

        get_logger("scms").debug("Cooperative system initialized on %s", type(self.storage).__name__)

    def close(self) -> None:
        self.storage.close()
