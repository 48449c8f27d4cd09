"""
Test suite for savings products and plans
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from cooperative_core.currency import Money, Currency
from cooperative_core.storage import InMemoryStorage
from cooperative_core.system import CooperativeSystem
from cooperative_core.accounts import AccountType
from cooperative_core.lifecycle import AccountStatus, SavingsPlanStatus
from cooperative_core.savings import SavingsFrequency, SavingsProductType
from cooperative_core.transactions import TransactionType
from cooperative_core.errors import CooperativeError, InvalidStateTransition


def naira(amount: str) -> Money:
    return Money(Decimal(amount), Currency.NGN)


class TestSavingsProducts:

    def setup_method(self):
        self.system = CooperativeSystem(InMemoryStorage())
        self.savings_manager = self.system.savings_manager

    def test_create_product(self):
        product = self.savings_manager.create_product(
            "Fixed 90", SavingsProductType.FIXED, Decimal('8'), min_duration=90,
            max_duration=365, penalty_percentage=Decimal('10'), performed_by="admin"
        )

        stored = self.savings_manager.require_product(product.id)
        assert stored.penalty_percentage == Decimal('10')
        assert stored.max_duration == 365
        assert [p.name for p in self.savings_manager.list_products(active_only=True)] == ["Fixed 90"]

    def test_duplicate_product_name(self):
        self.savings_manager.create_product("Fixed 90", SavingsProductType.FIXED, Decimal('8'), 90)
        with pytest.raises(CooperativeError, match="already exists"):
            self.savings_manager.create_product("Fixed 90", SavingsProductType.TARGET, Decimal('5'), 30)

    @pytest.mark.parametrize("kwargs", [
        dict(min_duration=0),
        dict(min_duration=90, max_duration=30),
        dict(min_duration=90, penalty_percentage=Decimal('101')),
        dict(min_duration=90, interest_rate=Decimal('-1')),
    ])
    def test_invalid_product(self, kwargs):
        terms = dict(name="Bad", product_type=SavingsProductType.FIXED, interest_rate=Decimal('5'))
        terms.update(kwargs)
        with pytest.raises(ValueError):
            self.savings_manager.create_product(**terms)


class TestSavingsPlans:

    def setup_method(self):
        self.system = CooperativeSystem(InMemoryStorage())
        self.savings_manager = self.system.savings_manager
        member = self.system.member_manager.register_member("Kemi", "Lawal", "kemi@example.com")
        approval = self.system.registration_queue.approve(member.id, "admin")
        self.member = approval.member
        self.savings = approval.accounts[0]
        self.system.posting_engine.deposit(self.savings.id, naira('10000'), "teller-1")
        self.product = self.savings_manager.create_product(
            "Fixed 90", SavingsProductType.FIXED, Decimal('8'), min_duration=90,
            max_duration=365, penalty_percentage=Decimal('10')
        )

    def balance(self, account_id: str) -> Money:
        return self.system.account_manager.require_account(account_id).balance

    def funded_plan(self, amount: str = '5000', product=None):
        plan = self.savings_manager.create_plan(self.member.id, (product or self.product).id, duration=90)
        self.savings_manager.fund_plan(plan.id, naira(amount), self.member.id)
        return plan

    def test_create_plan_opens_account(self):
        plan = self.savings_manager.create_plan(
            self.member.id, self.product.id, duration=120, start_date=date(2024, 1, 1)
        )

        account = self.system.account_manager.require_account(plan.account_id)
        assert account.account_type == AccountType.SAVINGS_PLAN
        assert account.name == "Fixed 90"
        assert plan.maturity_date == date(2024, 4, 30)
        assert plan.status == SavingsPlanStatus.ACTIVE
        assert [p.id for p in self.savings_manager.get_member_plans(self.member.id)] == [plan.id]

    @pytest.mark.parametrize("duration", [30, 400])
    def test_duration_outside_product_bounds(self, duration):
        with pytest.raises(ValueError, match="Duration"):
            self.savings_manager.create_plan(self.member.id, self.product.id, duration=duration)

    def test_target_plan_needs_target(self):
        target = self.savings_manager.create_product("Target", SavingsProductType.TARGET, Decimal('5'), 30)
        with pytest.raises(ValueError, match="target amount"):
            self.savings_manager.create_plan(self.member.id, target.id, duration=60)

        plan = self.savings_manager.create_plan(self.member.id, target.id, duration=60, target_amount=naira('50000'))
        assert self.savings_manager.require_plan(plan.id).target_amount == naira('50000')

    def test_fund_plan(self):
        plan = self.savings_manager.create_plan(self.member.id, self.product.id, duration=90)

        result = self.savings_manager.fund_plan(plan.id, naira('2500'), self.member.id)

        assert result.debit.account_id == self.savings.id
        assert result.credit.account_id == plan.account_id
        assert self.balance(self.savings.id) == naira('7500')
        assert self.balance(plan.account_id) == naira('2500')

    def test_early_withdrawal_charges_penalty(self):
        plan = self.funded_plan('5000')

        result = self.savings_manager.withdraw_from_plan(plan.id, self.member.id)

        assert result.penalty == naira('500')
        assert result.amount_withdrawn == naira('4500')
        assert result.penalty_transaction.transaction_type == TransactionType.WITHDRAWAL
        assert result.penalty_transaction.metadata["category"] == "penalty"
        assert result.plan.status == SavingsPlanStatus.LIQUIDATED
        assert result.plan.penalty_applied == naira('500')
        assert self.balance(self.savings.id) == naira('9500')
        assert self.system.account_manager.require_account(plan.account_id).status == AccountStatus.CLOSED

    def test_withdrawal_at_maturity_has_no_penalty(self):
        plan = self.funded_plan('5000')

        result = self.savings_manager.withdraw_from_plan(plan.id, self.member.id, as_of=plan.maturity_date)

        assert result.penalty.is_zero()
        assert result.penalty_transaction is None
        assert result.plan.status == SavingsPlanStatus.COMPLETED
        assert self.balance(self.savings.id) == naira('10000')

    def test_early_withdrawal_not_allowed(self):
        locked = self.savings_manager.create_product(
            "Locked", SavingsProductType.FIXED, Decimal('10'), 90, allow_early_withdrawal=False
        )
        plan = self.funded_plan('1000', product=locked)

        with pytest.raises(CooperativeError, match="Early withdrawal not allowed"):
            self.savings_manager.withdraw_from_plan(plan.id, self.member.id)
        assert self.balance(plan.account_id) == naira('1000')

    def test_empty_plan_cannot_be_withdrawn(self):
        plan = self.savings_manager.create_plan(self.member.id, self.product.id, duration=90)

        with pytest.raises(CooperativeError, match="No funds"):
            self.savings_manager.withdraw_from_plan(plan.id, self.member.id)
        assert self.savings_manager.require_plan(plan.id).status == SavingsPlanStatus.ACTIVE

    def test_defaulted_plan_is_liquidated(self):
        plan = self.funded_plan('2000')
        self.savings_manager.mark_defaulted(plan.id, "admin", "Missed contributions")

        with pytest.raises(CooperativeError, match="not active"):
            self.savings_manager.fund_plan(plan.id, naira('100'), self.member.id)

        result = self.savings_manager.withdraw_from_plan(plan.id, "admin")
        assert result.plan.status == SavingsPlanStatus.LIQUIDATED
        assert result.penalty == naira('200')

        with pytest.raises(InvalidStateTransition):
            self.savings_manager.mark_defaulted(plan.id, "admin", "Again")

    def test_process_matured_plans(self):
        matured = self.funded_plan('1000')
        later = self.savings_manager.create_plan(self.member.id, self.product.id, duration=180)
        self.savings_manager.fund_plan(later.id, naira('1000'), self.member.id)

        results = self.savings_manager.process_matured_plans(as_of=date.today() + timedelta(days=90))

        assert [r.plan.id for r in results] == [matured.id]
        assert self.savings_manager.require_plan(matured.id).status == SavingsPlanStatus.COMPLETED
        assert self.savings_manager.require_plan(later.id).status == SavingsPlanStatus.ACTIVE
        assert self.balance(self.savings.id) == naira('9000')

    def test_empty_plan_closes_at_maturity(self):
        empty = self.savings_manager.create_plan(self.member.id, self.product.id, duration=90)
        as_of = date.today() + timedelta(days=90)

        results = self.savings_manager.process_matured_plans(as_of=as_of)

        assert [r.plan.id for r in results] == [empty.id]
        assert results[0].amount_withdrawn.is_zero()
        assert results[0].transfer is None
        assert self.savings_manager.require_plan(empty.id).status == SavingsPlanStatus.COMPLETED
        assert self.system.account_manager.require_account(empty.account_id).status == AccountStatus.CLOSED
        assert self.savings_manager.process_matured_plans(as_of=as_of) == []

    def test_empty_defaulted_plan_is_liquidated(self):
        plan = self.savings_manager.create_plan(self.member.id, self.product.id, duration=90)
        self.savings_manager.mark_defaulted(plan.id, "admin", "Never funded")

        result = self.savings_manager.withdraw_from_plan(plan.id, "admin")

        assert result.plan.status == SavingsPlanStatus.LIQUIDATED
        assert result.penalty.is_zero()
        assert result.penalty_transaction is None
        assert self.system.account_manager.require_account(plan.account_id).status == AccountStatus.CLOSED


class TestSavingsPlanJobs:

    def setup_method(self):
        self.system = CooperativeSystem(InMemoryStorage())
        self.savings_manager = self.system.savings_manager
        member = self.system.member_manager.register_member("Tunde", "Bello", "tunde@example.com")
        approval = self.system.registration_queue.approve(member.id, "admin")
        self.member = approval.member
        self.savings = approval.accounts[0]
        self.system.posting_engine.deposit(self.savings.id, naira('10000'), "teller-1")
        self.product = self.savings_manager.create_product(
            "Fixed 90", SavingsProductType.FIXED, Decimal('8'), min_duration=90, max_duration=365
        )

    def balance(self, account_id: str) -> Money:
        return self.system.account_manager.require_account(account_id).balance

    def test_plan_interest_is_credited_once_a_month(self):
        plan = self.savings_manager.create_plan(self.member.id, self.product.id, duration=180)
        self.savings_manager.fund_plan(plan.id, naira('6000'), self.member.id)
        empty = self.savings_manager.create_plan(self.member.id, self.product.id, duration=180)

        credited = self.savings_manager.accrue_plan_interest(as_of=date(2024, 3, 15))

        # 6,000 at 8% a year for one month
        assert [t.account_id for t in credited] == [plan.account_id]
        assert credited[0].transaction_type == TransactionType.INTEREST
        assert credited[0].amount == naira('40')
        assert self.balance(plan.account_id) == naira('6040')
        assert self.savings_manager.require_plan(plan.id).last_interest_date == date(2024, 3, 15)
        assert self.savings_manager.require_plan(empty.id).last_interest_date is None

        assert self.savings_manager.accrue_plan_interest(as_of=date(2024, 3, 28)) == []

        april = self.savings_manager.accrue_plan_interest(as_of=date(2024, 4, 1))
        assert april[0].amount == naira('40.27')
        assert self.balance(plan.account_id) == naira('6080.27')
        assert self.system.reporting_engine.balance_sheet().totals['balanced'] is True

    def test_closed_plans_earn_no_interest(self):
        plan = self.savings_manager.create_plan(self.member.id, self.product.id, duration=90)
        self.savings_manager.fund_plan(plan.id, naira('1000'), self.member.id)
        self.savings_manager.withdraw_from_plan(plan.id, self.member.id)

        assert self.savings_manager.accrue_plan_interest(as_of=date(2024, 3, 15)) == []

    def test_auto_save_follows_frequency(self):
        plan = self.savings_manager.create_plan(
            self.member.id, self.product.id, duration=120, start_date=date(2024, 1, 1),
            auto_save_amount=naira('1500'), frequency=SavingsFrequency.MONTHLY
        )
        self.savings_manager.create_plan(self.member.id, self.product.id, duration=120, start_date=date(2024, 1, 1))

        first = self.savings_manager.process_auto_saves(as_of=date(2024, 1, 1))

        assert [r.credit.account_id for r in first] == [plan.account_id]
        assert self.balance(plan.account_id) == naira('1500')
        assert self.balance(self.savings.id) == naira('8500')
        assert self.savings_manager.process_auto_saves(as_of=date(2024, 1, 1)) == []
        assert self.savings_manager.process_auto_saves(as_of=date(2024, 1, 20)) == []

        assert len(self.savings_manager.process_auto_saves(as_of=date(2024, 2, 1))) == 1
        assert self.balance(plan.account_id) == naira('3000')
        assert self.savings_manager.require_plan(plan.id).last_auto_save_date == date(2024, 2, 1)

        # Matured plans take no more contributions
        assert self.savings_manager.process_auto_saves(as_of=date(2024, 5, 1)) == []

    def test_auto_save_skips_when_savings_are_short(self):
        plan = self.savings_manager.create_plan(
            self.member.id, self.product.id, duration=120, start_date=date(2024, 1, 1),
            auto_save_amount=naira('20000'), frequency=SavingsFrequency.WEEKLY
        )

        assert self.savings_manager.process_auto_saves(as_of=date(2024, 1, 1)) == []
        assert self.balance(self.savings.id) == naira('10000')
        assert self.savings_manager.require_plan(plan.id).last_auto_save_date is None
