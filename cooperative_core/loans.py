"""
Loan Management Module

Loan applications, guarantors and repayment records, plus the loan
calculator. Money movement for loans (disbursement, repayment) happens in
the posting engine; status decisions happen in the loan appraisal workflow.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
import calendar
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .lifecycle import LoanStatus, MemberStatus
from .members import MemberManager
from .errors import CooperativeError, GuarantorNotFound, LoanNotFound
from .config import get_config
from .logging_config import get_logger, log_action


class RepaymentMode(Enum):
    """How a loan is repaid"""
    MANUAL = "manual"        # Member pays when they choose; flat monthly interest
    AUTOMATED = "automated"  # Fixed monthly deduction; reducing-balance schedule


class GuarantorStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class ScheduleEntry:
    """One month of an amortization schedule"""
    month: int
    payment: Money
    principal: Money
    interest: Money
    balance: Money


@dataclass
class LoanSchedule:
    months: int
    total_interest: Money
    total_repayable: Money
    entries: List[ScheduleEntry] = field(default_factory=list)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_minimum_payment(loan_amount: Money, annual_rate: Decimal, months: int) -> Money:
    """
    Minimum fixed monthly payment that clears the loan within ``months``,
    using P * r(1+r)^n / ((1+r)^n - 1) with r = annual_rate / 100 / 12.
    """
    if months <= 0:
        raise ValueError("Loan duration must be at least one month")
    monthly_rate = Decimal(annual_rate) / Decimal('100') / Decimal('12')
    if monthly_rate == 0:
        return loan_amount / Decimal(months)

    growth = (Decimal('1') + monthly_rate) ** months
    return Money(loan_amount.amount * monthly_rate * growth / (growth - Decimal('1')), loan_amount.currency)


def calculate_monthly_schedule(
    loan_amount: Money,
    annual_rate: Decimal,
    monthly_payment: Money,
    max_months: int = 360
) -> LoanSchedule:
    """
    Reducing-balance schedule for a fixed monthly payment

    Raises:
        ValueError: if the payment does not cover the first month's interest
            or the loan would not clear within ``max_months``
    """
    currency = loan_amount.currency
    monthly_rate = Decimal(annual_rate) / Decimal('100') / Decimal('12')
    balance = loan_amount
    total_interest = Money.zero(currency)
    entries = []

    while balance.is_positive():
        if len(entries) >= max_months:
            raise ValueError(f"Monthly payment does not clear the loan within {max_months} months")
        interest = balance * monthly_rate
        principal = min(monthly_payment - interest, balance)
        if not principal.is_positive():
            raise ValueError("Monthly payment is too small to cover interest")

        balance = balance - principal
        total_interest = total_interest + interest
        entries.append(ScheduleEntry(
            month=len(entries) + 1,
            payment=principal + interest,
            principal=principal,
            interest=interest,
            balance=balance
        ))

    return LoanSchedule(
        months=len(entries),
        total_interest=total_interest,
        total_repayable=loan_amount + total_interest,
        entries=entries
    )


def calculate_extension_interest(outstanding: Money, annual_rate: Decimal, extension_months: int = 2) -> Money:
    """Simple interest charged when a defaulted loan is extended"""
    return outstanding * (Decimal(annual_rate) / Decimal('100') * Decimal(extension_months) / Decimal('12'))


def split_repayment(loan: 'Loan', amount: Money):
    """
    Split a repayment into (principal, interest).

    Principal is the loan's principal-to-repayable share of the payment,
    capped at the outstanding balance; the rest of the payment is interest.
    """
    share = (amount.amount * loan.loan_amount.amount / loan.total_repayable.amount).quantize(
        Decimal('0.01'), rounding=ROUND_HALF_UP
    )
    principal = min(Money(share, amount.currency), loan.outstanding_balance)
    return principal, amount - principal


@dataclass
class Loan(StorageRecord):
    """
    Member loan. ``outstanding_balance`` starts at ``total_repayable`` and is
    reduced by the principal portion of each repayment.

    ``total_repayable`` is not what it costs to clear the loan: only the
    pro-rata principal share of a payment reduces the outstanding balance,
    so a new loan settles at ``total_repayable ** 2 / loan_amount``. Quote
    ``settlement_amount`` to a borrower who wants to pay off in full.
    """
    member_id: str
    loan_amount: Money
    interest_rate: Decimal
    duration: int  # Months
    repayment_mode: RepaymentMode
    monthly_payment: Money
    total_interest: Money
    total_repayable: Money
    outstanding_balance: Money
    principal_repaid: Money
    amount_repaid: Money
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    monthly_deduction_amount: Optional[Money] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    review_remarks: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    disbursement_account_id: Optional[str] = None
    disbursement_reference: Optional[str] = None
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    due_date: Optional[date] = None
    original_due_date: Optional[date] = None
    defaulted_at: Optional[datetime] = None
    failed_deduction_count: int = 0
    extension_interest: Optional[Money] = None

    @property
    def currency(self) -> Currency:
        return self.loan_amount.currency

    @property
    def principal_outstanding(self) -> Money:
        """Principal not yet repaid (never negative)"""
        remaining = self.loan_amount - self.principal_repaid
        return remaining if remaining.is_positive() else Money.zero(self.currency)

    @property
    def settlement_amount(self) -> Money:
        """Smallest payment whose principal share clears the outstanding balance"""
        raw = self.outstanding_balance.amount * self.total_repayable.amount / self.loan_amount.amount
        return Money(raw.quantize(Decimal('0.01'), rounding=ROUND_CEILING), self.currency)

    def is_overdue(self, as_of: date) -> bool:
        return self.due_date is not None and as_of > self.due_date and self.outstanding_balance.is_positive()


@dataclass
class LoanRepayment(StorageRecord):
    """Repayment allocation, backed by exactly one loan_repayment transaction"""
    loan_id: str
    transaction_id: str
    amount: Money
    principal: Money
    interest: Money
    outstanding_after: Money
    paid_by: str

    def __post_init__(self):
        if self.principal + self.interest != self.amount:
            raise ValueError("Principal and interest must sum to the repayment amount")


@dataclass
class LoanGuarantor(StorageRecord):
    loan_id: str
    guarantor_member_id: str
    status: GuarantorStatus = GuarantorStatus.PENDING
    responded_at: Optional[datetime] = None


_MONEY_FIELDS = ['loan_amount', 'monthly_payment', 'total_interest', 'total_repayable',
                 'outstanding_balance', 'principal_repaid', 'amount_repaid']
_OPTIONAL_MONEY_FIELDS = ['monthly_deduction_amount', 'extension_interest']
_DATETIME_FIELDS = ['approved_at', 'disbursed_at', 'defaulted_at']
_DATE_FIELDS = ['next_payment_date', 'last_payment_date', 'due_date', 'original_due_date']


class LoanManager:
    """
    Manages loan applications, guarantors and loan records
    """

    def __init__(
        self,
        storage: StorageInterface,
        member_manager: MemberManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.member_manager = member_manager
        self.audit_trail = audit_trail
        self.loans_table = "loans"
        self.repayments_table = "loan_repayments"
        self.guarantors_table = "loan_guarantors"
        self.logger = get_logger("scms.loans")

        self.storage.ensure_unique(self.repayments_table, "transaction_id")

    def apply_for_loan(
        self,
        member_id: str,
        loan_amount: Money,
        duration: int,
        interest_rate: Optional[Decimal] = None,
        repayment_mode: RepaymentMode = RepaymentMode.MANUAL,
        monthly_deduction_amount: Optional[Money] = None,
        purpose: Optional[str] = None
    ) -> Loan:
        """
        Submit a loan application

        Manual loans charge flat interest of ``interest_rate`` percent per
        month on the full amount. Automated loans treat ``interest_rate`` as an
        annual percentage on a reducing balance, and the monthly deduction
        must be at least the minimum payment for ``duration`` months.

        Returns:
            Loan in PENDING status
        """
        member = self.member_manager.require_member(member_id)
        if member.status != MemberStatus.ACTIVE:
            raise CooperativeError("Only active members can apply for loans")
        if not loan_amount.is_positive():
            raise ValueError("Loan amount must be positive")
        if duration <= 0:
            raise ValueError("Loan duration must be at least one month")

        rate = Decimal(interest_rate) if interest_rate is not None else Decimal(get_config().default_loan_interest_rate)
        if rate < 0:
            raise ValueError("Interest rate cannot be negative")

        if repayment_mode == RepaymentMode.AUTOMATED:
            if monthly_deduction_amount is None or not monthly_deduction_amount.is_positive():
                raise ValueError("Monthly deduction amount is required for automated repayment")
            minimum = calculate_minimum_payment(loan_amount, rate, duration)
            if monthly_deduction_amount < minimum:
                raise ValueError(
                    f"Monthly deduction amount ({monthly_deduction_amount.to_string()}) is too low. "
                    f"Minimum required: {minimum.to_string()}"
                )
            schedule = calculate_monthly_schedule(loan_amount, rate, monthly_deduction_amount)
            total_interest = schedule.total_interest
            total_repayable = schedule.total_repayable
            monthly_payment = monthly_deduction_amount
        else:
            total_interest = loan_amount * (rate / Decimal('100') * Decimal(duration))
            total_repayable = loan_amount + total_interest
            monthly_payment = total_repayable / Decimal(duration)
            monthly_deduction_amount = None

        now = datetime.now(timezone.utc)
        zero = Money.zero(loan_amount.currency)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=member_id,
            loan_amount=loan_amount,
            interest_rate=rate,
            duration=duration,
            repayment_mode=repayment_mode,
            monthly_payment=monthly_payment,
            total_interest=total_interest,
            total_repayable=total_repayable,
            outstanding_balance=total_repayable,
            principal_repaid=zero,
            amount_repaid=zero,
            purpose=purpose,
            monthly_deduction_amount=monthly_deduction_amount
        )

        with self.storage.atomic():
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=member_id,
                metadata={
                    "loan_amount": loan_amount.to_string(),
                    "interest_rate": str(rate),
                    "duration": duration,
                    "repayment_mode": repayment_mode.value,
                    "total_repayable": total_repayable.to_string()
                }
            )

        log_action(
            self.logger, "info", "Loan application received",
            user_id=member_id, action="apply_for_loan", resource=f"loan:{loan.id}",
            extra={"loan_amount": loan_amount.to_string(), "repayment_mode": repayment_mode.value}
        )
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFound(loan_id)
        return loan

    def get_member_loans(self, member_id: str) -> List[Loan]:
        """Get all loans of a member"""
        return [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, {"member_id": member_id})]

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {"status": status.value} if status else {}
        return [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]

    def get_repayments(self, loan_id: str) -> List[LoanRepayment]:
        """Repayments of a loan, oldest first"""
        repayments = [self._repayment_from_dict(data)
                      for data in self.storage.find(self.repayments_table, {"loan_id": loan_id})]
        repayments.sort(key=lambda r: r.created_at)
        return repayments

    def list_repayments(self) -> List[LoanRepayment]:
        return [self._repayment_from_dict(data) for data in self.storage.load_all(self.repayments_table)]

    def add_guarantor(self, loan_id: str, guarantor_member_id: str, performed_by: Optional[str] = None) -> LoanGuarantor:
        """Ask another active member to guarantee a pending loan"""
        loan = self.require_loan(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise CooperativeError("Guarantors can only be added while the loan is pending")
        if guarantor_member_id == loan.member_id:
            raise CooperativeError("A borrower cannot guarantee their own loan")
        guarantor_member = self.member_manager.require_member(guarantor_member_id)
        if guarantor_member.status != MemberStatus.ACTIVE:
            raise CooperativeError("Guarantor must be an active member")
        if self.storage.find(self.guarantors_table, {"loan_id": loan_id, "guarantor_member_id": guarantor_member_id}):
            raise CooperativeError("Member is already a guarantor on this loan")

        now = datetime.now(timezone.utc)
        guarantor = LoanGuarantor(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            guarantor_member_id=guarantor_member_id
        )
        with self.storage.atomic():
            self._save_guarantor(guarantor)
            self.audit_trail.log_event(
                event_type=AuditEventType.GUARANTOR_ADDED,
                entity_type="loan",
                entity_id=loan_id,
                user_id=performed_by,
                metadata={"guarantor_member_id": guarantor_member_id}
            )
        return guarantor

    def respond_to_guarantee(self, guarantor_id: str, accept: bool, performed_by: str) -> LoanGuarantor:
        """Guarantor accepts or declines; only the guarantor may respond"""
        data = self.storage.load(self.guarantors_table, guarantor_id)
        if not data:
            raise GuarantorNotFound(guarantor_id)
        guarantor = self._guarantor_from_dict(data)
        if guarantor.guarantor_member_id != performed_by:
            raise CooperativeError("Only the guarantor can respond to this request")
        if guarantor.status != GuarantorStatus.PENDING:
            raise CooperativeError(f"Guarantee already {guarantor.status.value}")

        guarantor.status = GuarantorStatus.ACCEPTED if accept else GuarantorStatus.REJECTED
        guarantor.responded_at = datetime.now(timezone.utc)
        guarantor.updated_at = guarantor.responded_at
        with self.storage.atomic():
            self._save_guarantor(guarantor)
            self.audit_trail.log_event(
                event_type=AuditEventType.GUARANTOR_RESPONDED,
                entity_type="loan",
                entity_id=guarantor.loan_id,
                user_id=performed_by,
                metadata={"guarantor_id": guarantor.id, "status": guarantor.status.value}
            )
        return guarantor

    def get_guarantors(self, loan_id: str) -> List[LoanGuarantor]:
        return [self._guarantor_from_dict(data)
                for data in self.storage.find(self.guarantors_table, {"loan_id": loan_id})]

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_repayment(self, repayment: LoanRepayment) -> None:
        self.storage.save(self.repayments_table, repayment.id, self._repayment_to_dict(repayment))

    def _save_guarantor(self, guarantor: LoanGuarantor) -> None:
        result = guarantor.to_dict()
        result['status'] = guarantor.status.value
        self.storage.save(self.guarantors_table, guarantor.id, result)

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = loan.to_dict()
        result['currency'] = loan.currency.code
        result['status'] = loan.status.value
        result['repayment_mode'] = loan.repayment_mode.value
        result['interest_rate'] = str(loan.interest_rate)
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(loan, name).amount)
        for name in _OPTIONAL_MONEY_FIELDS:
            value = getattr(loan, name)
            result[name] = str(value.amount) if value else None
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]
        kwargs = {k: v for k, v in data.items() if k != 'currency'}
        kwargs['created_at'] = datetime.fromisoformat(data['created_at'])
        kwargs['updated_at'] = datetime.fromisoformat(data['updated_at'])
        kwargs['status'] = LoanStatus(data['status'])
        kwargs['repayment_mode'] = RepaymentMode(data['repayment_mode'])
        kwargs['interest_rate'] = Decimal(data['interest_rate'])
        for name in _MONEY_FIELDS:
            kwargs[name] = Money(Decimal(data[name]), currency)
        for name in _OPTIONAL_MONEY_FIELDS:
            kwargs[name] = Money(Decimal(data[name]), currency) if data.get(name) else None
        for name in _DATETIME_FIELDS:
            kwargs[name] = datetime.fromisoformat(data[name]) if data.get(name) else None
        for name in _DATE_FIELDS:
            kwargs[name] = date.fromisoformat(data[name]) if data.get(name) else None
        return Loan(**kwargs)

    def _repayment_to_dict(self, repayment: LoanRepayment) -> Dict:
        result = repayment.to_dict()
        result['currency'] = repayment.amount.currency.code
        for name in ['amount', 'principal', 'interest', 'outstanding_after']:
            result[name] = str(getattr(repayment, name).amount)
        return result

    def _repayment_from_dict(self, data: Dict) -> LoanRepayment:
        currency = Currency[data['currency']]
        return LoanRepayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            transaction_id=data['transaction_id'],
            amount=Money(Decimal(data['amount']), currency),
            principal=Money(Decimal(data['principal']), currency),
            interest=Money(Decimal(data['interest']), currency),
            outstanding_after=Money(Decimal(data['outstanding_after']), currency),
            paid_by=data['paid_by']
        )

    def _guarantor_from_dict(self, data: Dict) -> LoanGuarantor:
        return LoanGuarantor(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            guarantor_member_id=data['guarantor_member_id'],
            status=GuarantorStatus(data['status']),
            responded_at=datetime.fromisoformat(data['responded_at']) if data.get('responded_at') else None
        )
