"""
Account Management Module

Manages member accounts (savings, share capital and savings plans), their
lifecycle states and the per-account locks that serialize every change to
an account record. Balances themselves are only changed through
``AccountLedger`` in ``ledger.py``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from contextlib import contextmanager, ExitStack
from enum import Enum
import threading
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, UniqueConstraintError
from .audit import AuditTrail, AuditEventType
from .lifecycle import AccountStatus, ensure_transition
from .errors import AccountNotFound, CooperativeError
from .config import get_config
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Member account types"""
    SAVINGS = "savings"                # Main savings account
    SHARE_CAPITAL = "share_capital"    # Member equity, earns dividends
    SAVINGS_PLAN = "savings_plan"      # Owned by exactly one savings plan


class AccountLocks:
    """
    Registry of re-entrant locks keyed by account id (or any other key such
    as ``loan:<id>``). Keys are always acquired in sorted order so two units
    of work touching the same accounts cannot deadlock.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *keys: Optional[str]):
        """Hold the locks for every non-empty key until the block exits"""
        ordered = sorted({key for key in keys if key})
        with ExitStack() as stack:
            for key in ordered:
                stack.enter_context(self._lock_for(key))
            yield


@dataclass
class Account(StorageRecord):
    """
    Member account. ``sequence`` counts the ledger mutations applied so far
    and doubles as the ordering key for the account's transactions.
    """
    account_number: str
    member_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    opening_balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    name: Optional[str] = None
    sequence: int = 0
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")
        if self.balance.is_negative():
            raise ValueError("Account balance cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def can_withdraw(self, amount: Money) -> bool:
        """Active and holding at least ``amount``"""
        return self.is_active and self.balance >= amount


class AccountManager:
    """
    Manages account lifecycle and lookups
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 locks: Optional[AccountLocks] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks or AccountLocks()
        self.accounts_table = "accounts"
        self.logger = get_logger("scms.accounts")
        self.storage.ensure_unique(self.accounts_table, "account_number")

    def open_account(
        self,
        member_id: str,
        account_type: AccountType,
        currency: Optional[Currency] = None,
        name: Optional[str] = None,
        opening_balance: Optional[Money] = None,
        performed_by: Optional[str] = None
    ) -> Account:
        """
        Open a new account for a member

        Args:
            member_id: Owner of the account
            account_type: savings, share_capital or savings_plan
            currency: Account currency (configured default when omitted)
            name: Display name
            opening_balance: Balance carried over from a legacy book, if any
            performed_by: Actor opening the account

        Returns:
            Created Account object
        """
        currency = currency or Currency[get_config().default_currency]
        opening = opening_balance or Money.zero(currency)
        if opening.currency != currency:
            raise ValueError("Opening balance currency must match account currency")
        if opening.is_negative():
            raise ValueError("Opening balance cannot be negative")

        now = datetime.now(timezone.utc)
        attempts = get_config().reference_max_attempts

        with self.storage.atomic():
            for attempt in range(attempts):
                account = Account(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    account_number=self._generate_account_number(now),
                    member_id=member_id,
                    account_type=account_type,
                    currency=currency,
                    balance=opening,
                    opening_balance=opening,
                    name=name or account_type.value.replace("_", " ").title()
                )
                try:
                    self._save_account(account)
                    break
                except UniqueConstraintError:
                    if attempt == attempts - 1:
                        raise CooperativeError("Could not allocate a unique account number")

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                user_id=performed_by,
                metadata={
                    "account_number": account.account_number,
                    "member_id": member_id,
                    "account_type": account_type.value,
                    "currency": currency.code,
                    "opening_balance": str(opening.amount)
                }
            )

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            user_id=performed_by, action="open_account", resource=f"account:{account.id}",
            extra={"member_id": member_id, "account_type": account_type.value}
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise AccountNotFound"""
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFound(account_id)
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def get_member_accounts(self, member_id: str) -> List[Account]:
        """Get all accounts owned by a member"""
        accounts_data = self.storage.find(self.accounts_table, {"member_id": member_id})
        return [self._account_from_dict(data) for data in accounts_data]

    def get_member_account(self, member_id: str, account_type: AccountType) -> Optional[Account]:
        """Get the member's open account of a given type (first opened wins)"""
        for account in self.get_member_accounts(member_id):
            if account.account_type == account_type and account.status != AccountStatus.CLOSED:
                return account
        return None

    def list_accounts(
        self,
        account_type: Optional[AccountType] = None,
        status: Optional[AccountStatus] = None
    ) -> List[Account]:
        filters = {}
        if account_type:
            filters["account_type"] = account_type.value
        if status:
            filters["status"] = status.value
        return [self._account_from_dict(data) for data in self.storage.find(self.accounts_table, filters)]

    def update_account_status(
        self,
        account_id: str,
        new_status: AccountStatus,
        reason: str,
        performed_by: Optional[str] = None
    ) -> Account:
        """Change account status under the account lock, with audit trail"""
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.require_account(account_id)
            old_status = account.status
            ensure_transition(old_status, new_status, "account")

            if new_status == AccountStatus.CLOSED and not account.balance.is_zero():
                raise CooperativeError(
                    f"Cannot close account with non-zero balance: {account.balance.to_string()}"
                )

            account.status = new_status
            account.updated_at = datetime.now(timezone.utc)
            if new_status == AccountStatus.CLOSED:
                account.closed_at = account.updated_at
            self._save_account(account)

            if new_status == AccountStatus.FROZEN:
                event_type = AuditEventType.ACCOUNT_FROZEN
            elif new_status == AccountStatus.CLOSED:
                event_type = AuditEventType.ACCOUNT_CLOSED
            else:
                event_type = AuditEventType.ACCOUNT_UNFROZEN

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account.id,
                user_id=performed_by,
                metadata={
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "reason": reason
                }
            )

        log_action(
            self.logger, "info", f"Account {account.account_number} is now {new_status.value}",
            user_id=performed_by, action="update_account_status", resource=f"account:{account.id}",
            extra={"old_status": old_status.value, "reason": reason}
        )
        return account

    def freeze_account(self, account_id: str, reason: str, performed_by: Optional[str] = None) -> Account:
        """Freeze an account"""
        return self.update_account_status(account_id, AccountStatus.FROZEN, reason, performed_by)

    def unfreeze_account(self, account_id: str, reason: str, performed_by: Optional[str] = None) -> Account:
        """Unfreeze an account"""
        return self.update_account_status(account_id, AccountStatus.ACTIVE, reason, performed_by)

    def close_account(self, account_id: str, reason: str, performed_by: Optional[str] = None) -> Account:
        """Close an account; the balance must already be zero"""
        return self.update_account_status(account_id, AccountStatus.CLOSED, reason, performed_by)

    def _generate_account_number(self, now: datetime) -> str:
        """ACC-YYYYMMDD-NNNNN, numbered per day"""
        prefix = f"ACC-{now.strftime('%Y%m%d')}-"
        last = 0
        for data in self.storage.load_all(self.accounts_table):
            number = data.get("account_number", "")
            if number.startswith(prefix):
                last = max(last, int(number[len(prefix):]))
        return f"{prefix}{last + 1:05d}"

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        result['currency'] = account.currency.code
        result['balance'] = str(account.balance.amount)
        result['opening_balance'] = str(account.opening_balance.amount)
        result['status'] = account.status.value
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            member_id=data['member_id'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            opening_balance=Money(Decimal(data['opening_balance']), currency),
            status=AccountStatus(data['status']),
            name=data.get('name'),
            sequence=data.get('sequence', 0),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None
        )
