"""
Transaction Recording Module

Append-only transaction trail. Every record is written in the same unit of
work as the ledger mutation it describes, and carries the balance snapshot
returned by the ledger. Completed records are never edited: a reversal is a
new record linked to the one it undoes.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import secrets
import time
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, UniqueConstraintError
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager
from .ledger import AccountLedger, BalanceSnapshot
from .errors import (
    CooperativeError, DuplicateReference, TransactionAlreadyReversed,
    TransactionIntegrityViolation, TransactionNotFound
)
from .config import get_config
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    INTEREST = "interest"
    DIVIDEND = "dividend"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"

    @property
    def is_debit(self) -> bool:
        """Whether this type takes money out of the account"""
        return self in _DEBIT_TYPES


_DEBIT_TYPES = frozenset({
    TransactionType.WITHDRAWAL,
    TransactionType.LOAN_REPAYMENT,
    TransactionType.TRANSFER_OUT,
})


class TransactionStatus(Enum):
    """States of a transaction record"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"  # Reversal record: applies the opposite effect of ``reversal_of``


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger transaction against one account
    """
    account_id: str
    transaction_type: TransactionType
    amount: Money
    balance_after: Money
    reference: str
    performed_by: str
    description: str
    sequence: int
    status: TransactionStatus = TransactionStatus.COMPLETED
    group_reference: Optional[str] = None   # Shared by the two legs of a transfer
    reversal_of: Optional[str] = None
    loan_id: Optional[str] = None
    posting_log_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of is not None

    @property
    def signed_amount(self) -> Money:
        """Balance effect of this record: credits positive, debits negative"""
        signed = -self.amount if self.transaction_type.is_debit else self.amount
        if self.status == TransactionStatus.REVERSED:
            signed = -signed
        return signed


class TransactionRecorder:
    """
    Writes transaction records together with the ledger mutation they describe
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: AccountLedger,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.locks = account_manager.locks
        self.table_name = "transactions"
        self.logger = get_logger("scms.transactions")

        self.storage.ensure_unique(self.table_name, "reference")
        self.storage.ensure_unique(self.table_name, "reversal_of")

    def record(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Money,
        performed_by: str,
        description: Optional[str] = None,
        group_reference: Optional[str] = None,
        loan_id: Optional[str] = None,
        posting_log_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Apply a ledger mutation and append its transaction record

        Args:
            account_id: Account the transaction belongs to
            transaction_type: Determines whether the account is credited or debited
            amount: Positive amount
            performed_by: Actor responsible for the posting
            description: Free text shown on statements
            group_reference: Links records that form one logical movement
            loan_id: Loan the record belongs to, for disbursements and repayments
            posting_log_id: Bulk posting run that produced the record
            metadata: Additional structured data

        Returns:
            The completed Transaction
        """
        with self.locks.hold(account_id), self.storage.atomic():
            if transaction_type.is_debit:
                snapshot = self.ledger.debit(account_id, amount)
            else:
                snapshot = self.ledger.credit(account_id, amount)

            transaction = self._append(
                snapshot=snapshot,
                transaction_type=transaction_type,
                amount=amount,
                performed_by=performed_by,
                description=description or transaction_type.value.replace("_", " ").capitalize(),
                status=TransactionStatus.COMPLETED,
                group_reference=group_reference,
                loan_id=loan_id,
                posting_log_id=posting_log_id,
                metadata=metadata
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_RECORDED,
                entity_type="transaction",
                entity_id=transaction.id,
                user_id=performed_by,
                metadata={
                    "account_id": account_id,
                    "transaction_type": transaction_type.value,
                    "amount": amount.to_string(),
                    "balance_after": snapshot.balance.to_string(),
                    "reference": transaction.reference
                }
            )

        log_action(
            self.logger, "info", f"Transaction recorded: {transaction_type.value}",
            user_id=performed_by, action="record_transaction",
            resource=f"transaction:{transaction.id}",
            extra={
                "account_id": account_id,
                "amount": amount.to_string(),
                "balance_after": snapshot.balance.to_string(),
                "reference": transaction.reference,
                "group_reference": group_reference
            }
        )
        return transaction

    def reverse(
        self,
        transaction_id: str,
        performed_by: str,
        reason: str,
        group_reference: Optional[str] = None
    ) -> Transaction:
        """
        Append a reversal record that undoes a completed transaction

        Raises:
            TransactionNotFound: unknown transaction
            TransactionAlreadyReversed: a reversal already exists
            CooperativeError: the record is itself a reversal or not completed
        """
        original = self.require_transaction(transaction_id)
        if original.is_reversal:
            raise CooperativeError("A reversal record cannot be reversed")
        if original.status != TransactionStatus.COMPLETED:
            raise CooperativeError(f"Transaction {original.reference} is {original.status.value}")

        with self.locks.hold(original.account_id), self.storage.atomic():
            if self.get_reversal(original.id):
                raise TransactionAlreadyReversed(f"Transaction {original.reference} has already been reversed")

            if original.transaction_type.is_debit:
                snapshot = self.ledger.credit(original.account_id, original.amount)
            else:
                snapshot = self.ledger.debit(original.account_id, original.amount)

            reversal = self._append(
                snapshot=snapshot,
                transaction_type=original.transaction_type,
                amount=original.amount,
                performed_by=performed_by,
                description=f"Reversal of {original.reference}: {reason}",
                status=TransactionStatus.REVERSED,
                group_reference=group_reference,
                reversal_of=original.id,
                loan_id=original.loan_id,
                metadata={"reason": reason}
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_REVERSED,
                entity_type="transaction",
                entity_id=original.id,
                user_id=performed_by,
                metadata={
                    "reversal_id": reversal.id,
                    "reversal_reference": reversal.reference,
                    "amount": original.amount.to_string(),
                    "reason": reason
                }
            )

        log_action(
            self.logger, "info", f"Transaction reversed: {original.reference}",
            user_id=performed_by, action="reverse_transaction",
            resource=f"transaction:{original.id}",
            extra={"reversal_reference": reversal.reference, "reason": reason}
        )
        return reversal

    def _append(
        self,
        snapshot: BalanceSnapshot,
        transaction_type: TransactionType,
        amount: Money,
        performed_by: str,
        description: str,
        status: TransactionStatus,
        group_reference: Optional[str] = None,
        reversal_of: Optional[str] = None,
        loan_id: Optional[str] = None,
        posting_log_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """Write the record, retrying with a fresh reference on collision"""
        attempts = get_config().reference_max_attempts
        for _ in range(attempts):
            now = datetime.now(timezone.utc)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=snapshot.account_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_after=snapshot.balance,
                reference=self._generate_reference(),
                performed_by=performed_by,
                description=description,
                sequence=snapshot.sequence,
                status=status,
                group_reference=group_reference,
                reversal_of=reversal_of,
                loan_id=loan_id,
                posting_log_id=posting_log_id,
                metadata=metadata or {}
            )
            try:
                self._save_transaction(transaction)
                return transaction
            except UniqueConstraintError as e:
                if e.fields == ("reversal_of",):
                    raise TransactionAlreadyReversed(f"Transaction {reversal_of} has already been reversed")
                self.logger.warning("Reference collision on %s, regenerating", transaction.reference)
        raise DuplicateReference(f"Could not generate a unique reference after {attempts} attempts")

    def _generate_reference(self) -> str:
        """TXN-<epoch ms>-<4 hex>"""
        return f"TXN-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        transaction_dict = self.storage.load(self.table_name, transaction_id)
        if transaction_dict:
            return self._transaction_from_dict(transaction_dict)
        return None

    def require_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise TransactionNotFound(transaction_id)
        return transaction

    def get_by_reference(self, reference: str) -> Optional[Transaction]:
        """Get transaction by its unique reference"""
        found = self.storage.find(self.table_name, {"reference": reference})
        return self._transaction_from_dict(found[0]) if found else None

    def get_reversal(self, transaction_id: str) -> Optional[Transaction]:
        """Reversal record of a transaction, if one exists"""
        found = self.storage.find(self.table_name, {"reversal_of": transaction_id})
        return self._transaction_from_dict(found[0]) if found else None

    def get_group(self, group_reference: str) -> List[Transaction]:
        """All records sharing a group reference (both legs of a transfer)"""
        found = self.storage.find(self.table_name, {"group_reference": group_reference})
        return [self._transaction_from_dict(data) for data in found]

    def get_account_history(self, account_id: str) -> List[Transaction]:
        """All records of an account in ledger order"""
        found = self.storage.find(self.table_name, {"account_id": account_id})
        history = [self._transaction_from_dict(data) for data in found]
        history.sort(key=lambda t: t.sequence)
        return history

    def get_account_transactions(
        self,
        account_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        transaction_types: Optional[List[TransactionType]] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Transaction]:
        """
        Get transactions for an account with optional filters, newest first
        """
        transactions = self.get_account_history(account_id)
        transactions = _filter_transactions(transactions, start_date, end_date, transaction_types)
        transactions.reverse()
        if limit is not None:
            return transactions[offset:offset + limit]
        return transactions[offset:]

    def list_transactions(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        transaction_types: Optional[List[TransactionType]] = None
    ) -> List[Transaction]:
        """All transactions in insertion order, optionally filtered"""
        transactions = [self._transaction_from_dict(data) for data in self.storage.load_all(self.table_name)]
        return _filter_transactions(transactions, start_date, end_date, transaction_types)

    def replay_account(self, account_id: str) -> List[str]:
        """
        Replay an account's transactions from its opening balance.

        Returns a list of human-readable mismatches; empty when every
        ``balance_after`` snapshot and the current balance agree.
        """
        with self.locks.hold(account_id):
            account = self.account_manager.require_account(account_id)
            history = self.get_account_history(account_id)

        problems = []
        running = account.opening_balance
        for position, transaction in enumerate(history, start=1):
            running = running + transaction.signed_amount
            if transaction.sequence != position:
                problems.append(
                    f"{transaction.reference}: sequence {transaction.sequence}, expected {position}"
                )
            if transaction.balance_after != running:
                problems.append(
                    f"{transaction.reference}: balance_after {transaction.balance_after.to_string()}, "
                    f"replayed {running.to_string()}"
                )
        if running != account.balance:
            problems.append(
                f"account balance {account.balance.to_string()}, replayed {running.to_string()}"
            )
        if account.sequence != len(history):
            problems.append(f"account sequence {account.sequence}, {len(history)} transactions recorded")
        return problems

    def verify_account_history(self, account_id: str) -> None:
        """
        Raises:
            TransactionIntegrityViolation: if replaying the history does not
                reproduce the stored snapshots and balance
        """
        problems = self.replay_account(account_id)
        if problems:
            self.logger.error("Ledger replay mismatch on %s: %s", account_id, "; ".join(problems))
            raise TransactionIntegrityViolation(f"Account {account_id} history mismatch: {'; '.join(problems)}")

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        self.storage.save(self.table_name, transaction.id, self._transaction_to_dict(transaction))

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['currency'] = transaction.amount.currency.code
        result['amount'] = str(transaction.amount.amount)
        result['balance_after'] = str(transaction.balance_after.amount)
        result['status'] = transaction.status.value
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            reference=data['reference'],
            performed_by=data['performed_by'],
            description=data['description'],
            sequence=data['sequence'],
            status=TransactionStatus(data['status']),
            group_reference=data.get('group_reference'),
            reversal_of=data.get('reversal_of'),
            loan_id=data.get('loan_id'),
            posting_log_id=data.get('posting_log_id'),
            metadata=data.get('metadata', {})
        )


def _filter_transactions(
    transactions: List[Transaction],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    transaction_types: Optional[List[TransactionType]]
) -> List[Transaction]:
    if start_date:
        transactions = [t for t in transactions if t.created_at >= start_date]
    if end_date:
        transactions = [t for t in transactions if t.created_at <= end_date]
    if transaction_types:
        transactions = [t for t in transactions if t.transaction_type in transaction_types]
    return transactions
