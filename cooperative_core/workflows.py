"""
Approval Workflows Module

Admin decision points in front of the posting engine:

- ``LoanAppraisal``: approve, reject, disburse, collect and default loans
- ``WithdrawalQueue``: approve or reject member withdrawal requests
- ``RegistrationQueue``: approve or reject member registrations

Workflows hold no ledger state. Every status change goes through
``lifecycle.ensure_transition`` and money only moves through ``PostingEngine``.
"""

from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import List, Optional

from .currency import Money
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, Account, AccountType
from .members import MemberManager, Member
from .loans import LoanManager, Loan, GuarantorStatus, RepaymentMode, calculate_extension_interest
from .withdrawals import WithdrawalManager, WithdrawalRequest
from .posting import PostingEngine, DisbursementResult, RepaymentResult, loan_lock_key
from .lifecycle import LoanStatus, MemberStatus, WithdrawalStatus, LOAN_REPAYABLE_STATES, ensure_transition
from .errors import AccountNotActive, CooperativeError, InsufficientFunds, InvalidStateTransition
from .config import get_config
from .logging_config import get_logger, log_action


logger = get_logger("scms.workflows")


class LoanAppraisal:
    """Loan approval, disbursement, collection and default handling"""

    def __init__(self, loan_manager: LoanManager, posting_engine: PostingEngine, audit_trail: AuditTrail):
        self.loan_manager = loan_manager
        self.posting_engine = posting_engine
        self.audit_trail = audit_trail

    def approve(self, loan_id: str, actor: str, remarks: Optional[str] = None) -> Loan:
        """
        Approve a pending loan

        Raises:
            InvalidStateTransition: loan is not pending
            CooperativeError: borrower inactive or not enough accepted guarantors
        """
        with self.posting_engine.unit_of_work(loan_lock_key(loan_id)):
            loan = self.loan_manager.require_loan(loan_id)
            ensure_transition(loan.status, LoanStatus.APPROVED, "loan")

            borrower = self.loan_manager.member_manager.require_member(loan.member_id)
            if borrower.status != MemberStatus.ACTIVE:
                raise CooperativeError("Borrower is not an active member")

            required = get_config().loan_required_guarantors
            if required > 0:
                accepted = [g for g in self.loan_manager.get_guarantors(loan_id)
                            if g.status == GuarantorStatus.ACCEPTED]
                if len(accepted) < required:
                    raise CooperativeError(
                        f"Loan needs {required} accepted guarantor(s), has {len(accepted)}"
                    )

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.APPROVED
            loan.approved_by = actor
            loan.approved_at = now
            loan.review_remarks = remarks
            loan.updated_at = now
            self.loan_manager._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata={"remarks": remarks}
            )

        log_action(logger, "info", f"Loan approved: {loan.id}",
                   user_id=actor, action="approve_loan", resource=f"loan:{loan.id}")
        return loan

    def reject(self, loan_id: str, actor: str, remarks: str) -> Loan:
        """Reject a pending loan; remarks are required"""
        if not remarks or not remarks.strip():
            raise ValueError("Rejection remarks are required")

        with self.posting_engine.unit_of_work(loan_lock_key(loan_id)):
            loan = self.loan_manager.require_loan(loan_id)
            loan.status = ensure_transition(loan.status, LoanStatus.REJECTED, "loan")
            loan.review_remarks = remarks
            loan.updated_at = datetime.now(timezone.utc)
            self.loan_manager._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata={"remarks": remarks}
            )

        log_action(logger, "info", f"Loan rejected: {loan.id}",
                   user_id=actor, action="reject_loan", resource=f"loan:{loan.id}")
        return loan

    def disburse(self, loan_id: str, actor: str, account_id: Optional[str] = None) -> DisbursementResult:
        return self.posting_engine.disburse_loan(loan_id, actor, account_id=account_id)

    def repay(self, loan_id: str, amount: Money, actor: str, account_id: Optional[str] = None) -> RepaymentResult:
        return self.posting_engine.repay_loan(loan_id, amount, actor, account_id=account_id)

    def collect_scheduled_repayment(self, loan_id: str, actor: str) -> Optional[RepaymentResult]:
        """
        Deduct the monthly amount of an automated loan from the borrower's
        savings account

        A deduction that cannot be made (short balance, frozen account)
        increments ``failed_deduction_count``; reaching
        ``max_failed_deductions`` defaults the loan. Returns None when the
        deduction failed.
        """
        loan = self.loan_manager.require_loan(loan_id)
        if loan.repayment_mode != RepaymentMode.AUTOMATED:
            raise CooperativeError("Only automated loans have scheduled deductions")
        if loan.status not in LOAN_REPAYABLE_STATES:
            raise CooperativeError(f"Loan is {loan.status.value}; nothing to collect")

        amount = min(loan.monthly_deduction_amount, loan.settlement_amount)
        try:
            return self.posting_engine.repay_loan(loan_id, amount, actor)
        except (InsufficientFunds, AccountNotActive) as e:
            self._record_failed_deduction(loan_id, actor, str(e))
            return None

    def collect_due_repayments(self, actor: str, as_of: Optional[date] = None) -> List[RepaymentResult]:
        """Run ``collect_scheduled_repayment`` for every automated loan due on or before ``as_of``"""
        today = as_of or date.today()
        collected = []
        for loan in self.loan_manager.list_loans():
            if loan.repayment_mode != RepaymentMode.AUTOMATED or loan.status not in LOAN_REPAYABLE_STATES:
                continue
            if loan.next_payment_date is None or loan.next_payment_date > today:
                continue
            result = self.collect_scheduled_repayment(loan.id, actor)
            if result:
                collected.append(result)
        return collected

    def _record_failed_deduction(self, loan_id: str, actor: str, error: str) -> None:
        with self.posting_engine.unit_of_work(loan_lock_key(loan_id)):
            loan = self.loan_manager.require_loan(loan_id)
            loan.failed_deduction_count += 1
            loan.updated_at = datetime.now(timezone.utc)
            self.loan_manager._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DEDUCTION_FAILED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata={"failed_deduction_count": loan.failed_deduction_count, "error": error}
            )

        logger.warning("Deduction failed for loan %s (%d): %s", loan_id, loan.failed_deduction_count, error)
        if (loan.failed_deduction_count >= get_config().max_failed_deductions
                and loan.status != LoanStatus.DEFAULTED):
            self.mark_defaulted(loan_id, actor, reason="Repeated failed deductions")

    def mark_defaulted(self, loan_id: str, actor: str, reason: Optional[str] = None) -> Loan:
        """
        Default a loan and extend it

        Extension interest on the outstanding balance is added to the
        balance and the due date moves out by ``loan_extension_days``.
        """
        settings = get_config()
        with self.posting_engine.unit_of_work(loan_lock_key(loan_id)):
            loan = self.loan_manager.require_loan(loan_id)
            ensure_transition(loan.status, LoanStatus.DEFAULTED, "loan")

            extension = calculate_extension_interest(
                loan.outstanding_balance, loan.interest_rate, settings.loan_extension_months
            )
            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.DEFAULTED
            loan.defaulted_at = now
            loan.outstanding_balance = loan.outstanding_balance + extension
            loan.extension_interest = (loan.extension_interest or Money.zero(loan.currency)) + extension
            loan.due_date = (loan.due_date or now.date()) + timedelta(days=settings.loan_extension_days)
            loan.failed_deduction_count = 0
            loan.updated_at = now
            self.loan_manager._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DEFAULTED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata={
                    "reason": reason,
                    "extension_interest": extension.to_string(),
                    "outstanding_balance": loan.outstanding_balance.to_string(),
                    "due_date": loan.due_date.isoformat()
                }
            )

        log_action(logger, "warning", f"Loan defaulted: {loan.id}",
                   user_id=actor, action="default_loan", resource=f"loan:{loan.id}",
                   extra={"extension_interest": extension.to_string(), "reason": reason})
        return loan

    def process_defaults(self, actor: str, as_of: Optional[date] = None) -> List[Loan]:
        """Default every disbursed or repaying loan that is past its due date"""
        today = as_of or date.today()
        defaulted = []
        for loan in self.loan_manager.list_loans():
            if loan.status not in (LoanStatus.DISBURSED, LoanStatus.REPAYING):
                continue
            if loan.is_overdue(today):
                defaulted.append(self.mark_defaulted(loan.id, actor, reason="Past due date"))
        return defaulted


class WithdrawalQueue:
    """Admin decisions on pending withdrawal requests"""

    def __init__(self, withdrawal_manager: WithdrawalManager, posting_engine: PostingEngine,
                 audit_trail: AuditTrail):
        self.withdrawal_manager = withdrawal_manager
        self.posting_engine = posting_engine
        self.audit_trail = audit_trail

    def list_pending(self) -> List[WithdrawalRequest]:
        return self.withdrawal_manager.list_pending()

    def approve(self, request_id: str, actor: str) -> WithdrawalRequest:
        """
        Approve a request and pay it out. The withdrawal and the status
        change commit together; if the account can no longer cover the
        amount the request stays pending.
        """
        request = self.withdrawal_manager.require_request(request_id)

        with self.posting_engine.unit_of_work(request.account_id, f"withdrawal:{request_id}"):
            request = self.withdrawal_manager.require_request(request_id)
            ensure_transition(request.status, WithdrawalStatus.APPROVED, "withdrawal request")

            transaction = self.posting_engine.withdraw(
                request.account_id, request.amount, actor,
                request.reason or "Approved withdrawal request",
                metadata={"withdrawal_request_id": request.id}
            )

            now = datetime.now(timezone.utc)
            request.status = WithdrawalStatus.APPROVED
            request.processed_by = actor
            request.processed_at = now
            request.updated_at = now
            request.transaction_id = transaction.id
            self.withdrawal_manager._save_request(request)
            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_APPROVED,
                entity_type="withdrawal_request",
                entity_id=request.id,
                user_id=actor,
                metadata={"transaction_reference": transaction.reference, "amount": request.amount.to_string()}
            )

        log_action(logger, "info", f"Withdrawal approved: {request.id}",
                   user_id=actor, action="approve_withdrawal", resource=f"withdrawal:{request.id}",
                   extra={"amount": request.amount.to_string()})
        return request

    def reject(self, request_id: str, actor: str, reason: str) -> WithdrawalRequest:
        """Reject a pending request; a reason is required"""
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")

        with self.posting_engine.unit_of_work(f"withdrawal:{request_id}"):
            request = self.withdrawal_manager.require_request(request_id)
            request.status = ensure_transition(request.status, WithdrawalStatus.REJECTED, "withdrawal request")
            now = datetime.now(timezone.utc)
            request.processed_by = actor
            request.processed_at = now
            request.updated_at = now
            request.rejection_reason = reason
            self.withdrawal_manager._save_request(request)
            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_REJECTED,
                entity_type="withdrawal_request",
                entity_id=request.id,
                user_id=actor,
                metadata={"reason": reason}
            )
        return request


@dataclass
class RegistrationApproval:
    member: Member
    accounts: List[Account] = field(default_factory=list)


class RegistrationQueue:
    """Admin decisions on member registrations"""

    MEMBER_ACCOUNT_TYPES = (AccountType.SAVINGS, AccountType.SHARE_CAPITAL)

    def __init__(self, member_manager: MemberManager, account_manager: AccountManager,
                 posting_engine: PostingEngine):
        self.member_manager = member_manager
        self.account_manager = account_manager
        self.posting_engine = posting_engine

    def list_pending(self) -> List[Member]:
        return self.member_manager.list_members(MemberStatus.PENDING_APPROVAL)

    def approve(self, member_id: str, actor: str) -> RegistrationApproval:
        """
        Activate a member and open their savings and share capital
        accounts. Approving an active member only opens missing accounts.
        """
        with self.posting_engine.unit_of_work(f"member:{member_id}"):
            member = self.member_manager.require_member(member_id)
            if member.status != MemberStatus.ACTIVE:
                if member.status != MemberStatus.PENDING_APPROVAL:
                    raise InvalidStateTransition("member", member.status.value, MemberStatus.ACTIVE.value)
                member = self.member_manager.change_status(
                    member_id, MemberStatus.ACTIVE, actor, AuditEventType.MEMBER_APPROVED
                )

            accounts = []
            for account_type in self.MEMBER_ACCOUNT_TYPES:
                account = self.account_manager.get_member_account(member_id, account_type)
                if account is None:
                    account = self.account_manager.open_account(member_id, account_type, performed_by=actor)
                accounts.append(account)

        log_action(logger, "info", f"Member approved: {member.member_number}",
                   user_id=actor, action="approve_member", resource=f"member:{member.id}",
                   extra={"accounts": [a.account_number for a in accounts]})
        return RegistrationApproval(member=member, accounts=accounts)

    def reject(self, member_id: str, actor: str, reason: str) -> Member:
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        with self.posting_engine.unit_of_work(f"member:{member_id}"):
            return self.member_manager.change_status(
                member_id, MemberStatus.REJECTED, actor, AuditEventType.MEMBER_REJECTED, {"reason": reason}
            )
