"""
Test suite for loan applications, guarantors and the loan calculator
"""

import pytest
from decimal import Decimal
from datetime import date

from cooperative_core.currency import Money, Currency
from cooperative_core.storage import InMemoryStorage
from cooperative_core.system import CooperativeSystem
from cooperative_core.audit import AuditEventType
from cooperative_core.lifecycle import LoanStatus
from cooperative_core.loans import (
    GuarantorStatus, RepaymentMode, add_months, calculate_extension_interest,
    calculate_minimum_payment, calculate_monthly_schedule, split_repayment
)
from cooperative_core.errors import CooperativeError, GuarantorNotFound, LoanNotFound


def naira(amount: str) -> Money:
    return Money(Decimal(amount), Currency.NGN)


class TestLoanCalculator:

    def test_minimum_payment(self):
        assert calculate_minimum_payment(naira('10000'), Decimal('12'), 12) == naira('888.49')

    def test_minimum_payment_without_interest(self):
        assert calculate_minimum_payment(naira('1000'), Decimal('0'), 4) == naira('250')

    def test_schedule_clears_loan(self):
        schedule = calculate_monthly_schedule(naira('10000'), Decimal('12'), naira('1000'))

        assert schedule.months == 11
        assert schedule.entries[0].interest == naira('100')
        assert schedule.entries[0].principal == naira('900')
        assert schedule.entries[-1].balance.is_zero()
        assert schedule.total_repayable == naira('10000') + schedule.total_interest

    def test_schedule_payment_below_interest(self):
        with pytest.raises(ValueError, match="too small"):
            calculate_monthly_schedule(naira('10000'), Decimal('24'), naira('150'))

    def test_extension_interest(self):
        # 12% a year for two months
        assert calculate_extension_interest(naira('5000'), Decimal('12'), 2) == naira('100')

    @pytest.mark.parametrize("start,months,expected", [
        (date(2024, 1, 31), 1, date(2024, 2, 29)),
        (date(2023, 1, 31), 1, date(2023, 2, 28)),
        (date(2024, 11, 15), 3, date(2025, 2, 15)),
        (date(2024, 5, 31), 12, date(2025, 5, 31)),
    ])
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected


class TestLoanApplications:

    def setup_method(self):
        self.system = CooperativeSystem(InMemoryStorage())
        self.loan_manager = self.system.loan_manager
        self.borrower = self.register("borrower@example.com")
        self.guarantor = self.register("guarantor@example.com")

    def register(self, email: str, approve: bool = True):
        member = self.system.member_manager.register_member("Ngozi", "Eze", email)
        if approve:
            member = self.system.registration_queue.approve(member.id, "admin").member
        return member

    def test_manual_loan_terms(self):
        loan = self.loan_manager.apply_for_loan(
            self.borrower.id, naira('100000'), duration=6, interest_rate=Decimal('2'), purpose="School fees"
        )

        assert loan.status == LoanStatus.PENDING
        assert loan.repayment_mode == RepaymentMode.MANUAL
        assert loan.total_interest == naira('12000')
        assert loan.total_repayable == naira('112000')
        assert loan.outstanding_balance == loan.total_repayable
        assert loan.monthly_payment == naira('18666.67')
        assert loan.monthly_deduction_amount is None

        stored = self.loan_manager.require_loan(loan.id)
        assert stored.interest_rate == Decimal('2')
        assert stored.purpose == "School fees"
        events = self.system.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_APPLIED

    def test_default_interest_rate(self):
        loan = self.loan_manager.apply_for_loan(self.borrower.id, naira('1000'), duration=1)
        assert loan.interest_rate == Decimal('2')
        assert loan.total_repayable == naira('1020')

    def test_automated_loan_terms(self):
        loan = self.loan_manager.apply_for_loan(
            self.borrower.id, naira('10000'), duration=12, interest_rate=Decimal('12'),
            repayment_mode=RepaymentMode.AUTOMATED, monthly_deduction_amount=naira('1000')
        )

        assert loan.monthly_payment == naira('1000')
        assert loan.monthly_deduction_amount == naira('1000')
        assert loan.total_repayable == naira('10000') + loan.total_interest
        assert loan.total_interest.is_positive()

    def test_automated_deduction_below_minimum(self):
        with pytest.raises(ValueError, match="too low"):
            self.loan_manager.apply_for_loan(
                self.borrower.id, naira('10000'), duration=12, interest_rate=Decimal('12'),
                repayment_mode=RepaymentMode.AUTOMATED, monthly_deduction_amount=naira('800')
            )

    def test_automated_loan_requires_deduction(self):
        with pytest.raises(ValueError, match="required"):
            self.loan_manager.apply_for_loan(
                self.borrower.id, naira('10000'), duration=12, repayment_mode=RepaymentMode.AUTOMATED
            )

    @pytest.mark.parametrize("amount,duration,rate", [
        ('0', 6, '2'),
        ('1000', 0, '2'),
        ('1000', 6, '-1'),
    ])
    def test_invalid_terms(self, amount, duration, rate):
        with pytest.raises(ValueError):
            self.loan_manager.apply_for_loan(self.borrower.id, naira(amount), duration, Decimal(rate))

    def test_pending_member_cannot_apply(self):
        pending = self.register("pending@example.com", approve=False)
        with pytest.raises(CooperativeError, match="Only active members"):
            self.loan_manager.apply_for_loan(pending.id, naira('1000'), duration=3)

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.loan_manager.require_loan("missing")

    def test_list_loans_by_status(self):
        first = self.loan_manager.apply_for_loan(self.borrower.id, naira('1000'), duration=3)
        self.loan_manager.apply_for_loan(self.borrower.id, naira('2000'), duration=3)
        self.system.loan_appraisal.approve(first.id, "credit-officer")

        assert [loan.id for loan in self.loan_manager.list_loans(LoanStatus.APPROVED)] == [first.id]
        assert len(self.loan_manager.list_loans(LoanStatus.PENDING)) == 1
        assert len(self.loan_manager.get_member_loans(self.borrower.id)) == 2

    def test_split_repayment_caps_principal(self):
        loan = self.loan_manager.apply_for_loan(
            self.borrower.id, naira('9600'), duration=10, interest_rate=Decimal('2.5')
        )
        assert split_repayment(loan, naira('1000')) == (naira('800'), naira('200'))

        loan.outstanding_balance = naira('500')
        assert split_repayment(loan, naira('1000')) == (naira('500'), naira('500'))


class TestGuarantors:

    def setup_method(self):
        self.system = CooperativeSystem(InMemoryStorage())
        self.loan_manager = self.system.loan_manager
        members = []
        for email in ("borrower@example.com", "guarantor@example.com", "other@example.com"):
            member = self.system.member_manager.register_member("Tunde", "Bello", email)
            members.append(self.system.registration_queue.approve(member.id, "admin").member)
        self.borrower, self.guarantor, self.other = members
        self.loan = self.loan_manager.apply_for_loan(self.borrower.id, naira('50000'), duration=6)

    def test_guarantor_accepts(self):
        request = self.loan_manager.add_guarantor(self.loan.id, self.guarantor.id, self.borrower.id)
        assert request.status == GuarantorStatus.PENDING

        accepted = self.loan_manager.respond_to_guarantee(request.id, True, self.guarantor.id)

        assert accepted.status == GuarantorStatus.ACCEPTED
        assert accepted.responded_at is not None
        assert self.loan_manager.get_guarantors(self.loan.id)[0].status == GuarantorStatus.ACCEPTED

    def test_only_guarantor_can_respond(self):
        request = self.loan_manager.add_guarantor(self.loan.id, self.guarantor.id, self.borrower.id)

        with pytest.raises(CooperativeError, match="Only the guarantor"):
            self.loan_manager.respond_to_guarantee(request.id, True, self.other.id)

    def test_guarantor_responds_once(self):
        request = self.loan_manager.add_guarantor(self.loan.id, self.guarantor.id, self.borrower.id)
        self.loan_manager.respond_to_guarantee(request.id, False, self.guarantor.id)

        with pytest.raises(CooperativeError, match="already rejected"):
            self.loan_manager.respond_to_guarantee(request.id, True, self.guarantor.id)

    def test_borrower_cannot_guarantee_own_loan(self):
        with pytest.raises(CooperativeError, match="own loan"):
            self.loan_manager.add_guarantor(self.loan.id, self.borrower.id, self.borrower.id)

    def test_duplicate_guarantor(self):
        self.loan_manager.add_guarantor(self.loan.id, self.guarantor.id, self.borrower.id)
        with pytest.raises(CooperativeError, match="already a guarantor"):
            self.loan_manager.add_guarantor(self.loan.id, self.guarantor.id, self.borrower.id)

    def test_guarantor_only_while_pending(self):
        self.system.loan_appraisal.approve(self.loan.id, "credit-officer")
        with pytest.raises(CooperativeError, match="pending"):
            self.loan_manager.add_guarantor(self.loan.id, self.guarantor.id, self.borrower.id)

    def test_unknown_guarantee(self):
        with pytest.raises(GuarantorNotFound):
            self.loan_manager.respond_to_guarantee("missing", True, self.guarantor.id)
