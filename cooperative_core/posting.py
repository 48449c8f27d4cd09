"""
Posting Engine Module

Orchestrates every money movement as one unit of work: per-key locks taken
in sorted order, then a storage transaction spanning the ledger mutations,
the transaction records and any secondary record (loan repayment
allocation, loan status). Either everything commits or nothing does.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from contextlib import contextmanager
import secrets
import time
import uuid

from .currency import Money
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, Account, AccountType
from .transactions import TransactionRecorder, Transaction, TransactionType
from .loans import LoanManager, Loan, LoanRepayment, add_months, split_repayment
from .lifecycle import LoanStatus, LOAN_REPAYABLE_STATES, ensure_transition
from .errors import (
    AccountNotActive, CooperativeError, InsufficientFunds, InvalidStateTransition,
    TransactionIntegrityViolation
)
from .logging_config import get_logger, log_action


@dataclass
class TransferResult:
    """Both legs of a transfer"""
    group_reference: str
    debit: Transaction
    credit: Transaction


@dataclass
class DisbursementResult:
    loan: Loan
    transaction: Transaction


@dataclass
class RepaymentResult:
    loan: Loan
    repayment: LoanRepayment
    transaction: Transaction


def loan_lock_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


class PostingEngine:
    """
    Deposits, withdrawals, transfers, loan disbursement and repayment,
    and reversals
    """

    _NON_REVERSIBLE = frozenset({TransactionType.LOAN_DISBURSEMENT, TransactionType.LOAN_REPAYMENT})

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        recorder: TransactionRecorder,
        loan_manager: LoanManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.recorder = recorder
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.locks = account_manager.locks
        self.logger = get_logger("scms.posting")

    @contextmanager
    def unit_of_work(self, *lock_keys: Optional[str]):
        """Hold the given locks and one storage transaction for the block"""
        with self.locks.hold(*lock_keys), self.storage.atomic():
            yield

    def deposit(self, account_id: str, amount: Money, performed_by: str,
                description: Optional[str] = None) -> Transaction:
        """Credit an account with money received from outside"""
        with self.unit_of_work(account_id):
            transaction = self.recorder.record(
                account_id, TransactionType.DEPOSIT, amount, performed_by, description or "Deposit"
            )
        return transaction

    def withdraw(self, account_id: str, amount: Money, performed_by: str,
                 description: Optional[str] = None, metadata: Optional[dict] = None) -> Transaction:
        """
        Pay money out of an account

        Raises:
            AccountNotActive: frozen or closed account
            InsufficientFunds: balance below ``amount``
        """
        with self.unit_of_work(account_id):
            account = self.account_manager.require_account(account_id)
            self._check_can_withdraw(account, amount)
            transaction = self.recorder.record(
                account_id, TransactionType.WITHDRAWAL, amount, performed_by,
                description or "Withdrawal", metadata=metadata
            )
        return transaction

    def transfer(
        self,
        source_account_id: str,
        destination_account_id: str,
        amount: Money,
        performed_by: str,
        description: Optional[str] = None
    ) -> TransferResult:
        """
        Move money between two accounts. Both legs share one group reference
        and commit together or not at all.
        """
        if source_account_id == destination_account_id:
            raise CooperativeError("Source and destination accounts must differ")
        if not amount.is_positive():
            raise ValueError("Transfer amount must be positive")

        group_reference = self._generate_group_reference()
        with self.unit_of_work(source_account_id, destination_account_id):
            source = self.account_manager.require_account(source_account_id)
            destination = self.account_manager.require_account(destination_account_id)
            if not destination.is_active:
                raise AccountNotActive(destination.id, destination.status.value)
            if source.currency != destination.currency:
                raise ValueError("Transfers between different currencies are not supported")
            self._check_can_withdraw(source, amount)

            debit = self.recorder.record(
                source.id, TransactionType.TRANSFER_OUT, amount, performed_by,
                description or f"Transfer to {destination.account_number}",
                group_reference=group_reference,
                metadata={"counterparty_account_id": destination.id}
            )
            credit = self.recorder.record(
                destination.id, TransactionType.TRANSFER_IN, amount, performed_by,
                description or f"Transfer from {source.account_number}",
                group_reference=group_reference,
                metadata={"counterparty_account_id": source.id}
            )

            if debit.balance_after != source.balance - amount or credit.balance_after != destination.balance + amount:
                raise TransactionIntegrityViolation(
                    f"Transfer {group_reference} legs do not match the pre-transfer balances"
                )

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPLETED,
                entity_type="transfer",
                entity_id=group_reference,
                user_id=performed_by,
                metadata={
                    "source_account_id": source.id,
                    "destination_account_id": destination.id,
                    "amount": amount.to_string(),
                    "debit_reference": debit.reference,
                    "credit_reference": credit.reference
                }
            )

        log_action(
            self.logger, "info", f"Transfer completed: {group_reference}",
            user_id=performed_by, action="transfer", resource=f"transfer:{group_reference}",
            extra={"from": source.account_number, "to": destination.account_number, "amount": amount.to_string()}
        )
        return TransferResult(group_reference=group_reference, debit=debit, credit=credit)

    def disburse_loan(self, loan_id: str, performed_by: str,
                      account_id: Optional[str] = None) -> DisbursementResult:
        """
        Credit an approved loan's principal to the borrower and start the
        repayment schedule

        Raises:
            InvalidStateTransition: loan is not approved
        """
        loan = self.loan_manager.require_loan(loan_id)
        account = self._borrower_account(loan, account_id)

        with self.unit_of_work(account.id, loan_lock_key(loan_id)):
            loan = self.loan_manager.require_loan(loan_id)
            ensure_transition(loan.status, LoanStatus.DISBURSED, "loan")

            transaction = self.recorder.record(
                account.id, TransactionType.LOAN_DISBURSEMENT, loan.loan_amount, performed_by,
                f"Loan disbursement for loan {loan.id}", loan_id=loan.id
            )

            now = datetime.now(timezone.utc)
            today = now.date()
            loan.status = LoanStatus.DISBURSED
            loan.disbursed_at = now
            loan.disbursement_account_id = account.id
            loan.disbursement_reference = transaction.reference
            loan.next_payment_date = add_months(today, 1)
            loan.due_date = add_months(today, loan.duration)
            loan.original_due_date = loan.due_date
            loan.updated_at = now
            self.loan_manager._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=performed_by,
                metadata={
                    "account_id": account.id,
                    "amount": loan.loan_amount.to_string(),
                    "reference": transaction.reference,
                    "due_date": loan.due_date.isoformat()
                }
            )

        log_action(
            self.logger, "info", f"Loan disbursed: {loan.id}",
            user_id=performed_by, action="disburse_loan", resource=f"loan:{loan.id}",
            extra={"amount": loan.loan_amount.to_string(), "account": account.account_number}
        )
        return DisbursementResult(loan=loan, transaction=transaction)

    def repay_loan(self, loan_id: str, amount: Money, performed_by: str,
                   account_id: Optional[str] = None) -> RepaymentResult:
        """
        Debit the paying account and allocate the payment to the loan

        The payment may not exceed the loan's settlement amount. The loan
        becomes ``completed`` when its outstanding balance reaches zero,
        otherwise ``repaying`` (a defaulted loan stays defaulted).
        """
        loan = self.loan_manager.require_loan(loan_id)
        account = self._borrower_account(loan, account_id)

        with self.unit_of_work(account.id, loan_lock_key(loan_id)):
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status not in LOAN_REPAYABLE_STATES:
                raise InvalidStateTransition("loan", loan.status.value, LoanStatus.REPAYING.value)
            if not amount.is_positive():
                raise ValueError("Repayment amount must be positive")
            if amount.currency != loan.currency:
                raise ValueError("Repayment currency must match loan currency")
            settlement = loan.settlement_amount
            if amount > settlement:
                raise CooperativeError(
                    f"Repayment {amount.to_string()} exceeds the settlement amount {settlement.to_string()}"
                )

            principal, interest = split_repayment(loan, amount)
            transaction = self.recorder.record(
                account.id, TransactionType.LOAN_REPAYMENT, amount, performed_by,
                f"Loan repayment for loan {loan.id}", loan_id=loan.id,
                metadata={"principal": str(principal.amount), "interest": str(interest.amount)}
            )

            now = datetime.now(timezone.utc)
            today = now.date()
            loan.outstanding_balance = loan.outstanding_balance - principal
            loan.principal_repaid = loan.principal_repaid + principal
            loan.amount_repaid = loan.amount_repaid + amount

            if loan.outstanding_balance.is_zero():
                new_status = LoanStatus.COMPLETED
            elif loan.status == LoanStatus.DEFAULTED:
                new_status = LoanStatus.DEFAULTED
            else:
                new_status = LoanStatus.REPAYING
            if new_status != loan.status:
                ensure_transition(loan.status, new_status, "loan")
            loan.status = new_status

            loan.failed_deduction_count = 0
            loan.last_payment_date = today
            if new_status == LoanStatus.COMPLETED:
                loan.next_payment_date = None
            else:
                loan.next_payment_date = add_months(loan.next_payment_date or today, 1)
            loan.updated_at = now

            repayment = LoanRepayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                transaction_id=transaction.id,
                amount=amount,
                principal=principal,
                interest=interest,
                outstanding_after=loan.outstanding_balance,
                paid_by=performed_by
            )
            self.loan_manager._save_repayment(repayment)
            self.loan_manager._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REPAYMENT,
                entity_type="loan",
                entity_id=loan.id,
                user_id=performed_by,
                metadata={
                    "amount": amount.to_string(),
                    "principal": principal.to_string(),
                    "interest": interest.to_string(),
                    "outstanding_balance": loan.outstanding_balance.to_string(),
                    "reference": transaction.reference
                }
            )
            if new_status == LoanStatus.COMPLETED:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=performed_by,
                    metadata={"amount_repaid": loan.amount_repaid.to_string()}
                )

        log_action(
            self.logger, "info", f"Loan repayment posted: {loan.id}",
            user_id=performed_by, action="repay_loan", resource=f"loan:{loan.id}",
            extra={
                "amount": amount.to_string(),
                "principal": principal.to_string(),
                "outstanding_balance": loan.outstanding_balance.to_string(),
                "status": loan.status.value
            }
        )
        return RepaymentResult(loan=loan, repayment=repayment, transaction=transaction)

    def reverse_transaction(self, transaction_id: str, performed_by: str, reason: str) -> List[Transaction]:
        """
        Reverse a posted transaction. Transfers are reversed as a pair.
        Loan disbursements and repayments cannot be reversed.

        Returns:
            The reversal records
        """
        if not reason:
            raise ValueError("A reversal reason is required")
        original = self.recorder.require_transaction(transaction_id)
        if original.transaction_type in self._NON_REVERSIBLE:
            raise CooperativeError("Loan transactions cannot be reversed")

        legs = [original]
        if original.group_reference and original.transaction_type in (
            TransactionType.TRANSFER_IN, TransactionType.TRANSFER_OUT
        ):
            legs = [leg for leg in self.recorder.get_group(original.group_reference) if not leg.is_reversal]
            # Take the money back from the receiving side first
            legs.sort(key=lambda leg: leg.transaction_type != TransactionType.TRANSFER_IN)

        reversal_group = self._generate_group_reference("REV") if len(legs) > 1 else None
        with self.unit_of_work(*[leg.account_id for leg in legs]):
            reversals = [
                self.recorder.reverse(leg.id, performed_by, reason, group_reference=reversal_group)
                for leg in legs
            ]
        return reversals

    def _borrower_account(self, loan: Loan, account_id: Optional[str]) -> Account:
        if account_id:
            account = self.account_manager.require_account(account_id)
            if account.member_id != loan.member_id:
                raise CooperativeError("Account does not belong to the borrower")
            return account
        account = self.account_manager.get_member_account(loan.member_id, AccountType.SAVINGS)
        if not account:
            raise CooperativeError(f"Borrower {loan.member_id} has no savings account")
        return account

    @staticmethod
    def _check_can_withdraw(account: Account, amount: Money) -> None:
        if account.can_withdraw(amount):
            return
        if not account.is_active:
            raise AccountNotActive(account.id, account.status.value)
        raise InsufficientFunds(account.id, account.balance.to_string(), amount.to_string())

    @staticmethod
    def _generate_group_reference(prefix: str = "TRF") -> str:
        return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"
