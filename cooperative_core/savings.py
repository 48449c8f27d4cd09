"""
Savings Products and Plans Module

Savings products describe the terms (duration bounds, interest rate, early
withdrawal penalty). A member's plan owns one ``savings_plan`` account;
closing a plan pays the balance, less any early withdrawal penalty, into the
member's main savings account.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, UniqueConstraintError
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, AccountType
from .members import MemberManager
from .transactions import Transaction, TransactionType
from .posting import PostingEngine, TransferResult
from .lifecycle import MemberStatus, SavingsPlanStatus, ensure_transition
from .errors import CooperativeError, InsufficientFunds, SavingsPlanNotFound, SavingsProductNotFound
from .loans import add_months
from .logging_config import get_logger, log_action


class SavingsProductType(Enum):
    FIXED = "fixed"    # Locked until maturity
    TARGET = "target"  # Saving towards a target amount


class SavingsProductStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SavingsFrequency(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"


@dataclass
class SavingsProduct(StorageRecord):
    name: str
    product_type: SavingsProductType
    interest_rate: Decimal
    min_duration: int  # Days
    max_duration: Optional[int] = None
    penalty_percentage: Decimal = Decimal('0')
    allow_early_withdrawal: bool = True
    status: SavingsProductStatus = SavingsProductStatus.ACTIVE
    description: Optional[str] = None


@dataclass
class UserSavingsPlan(StorageRecord):
    member_id: str
    product_id: str
    account_id: str
    name: str
    duration: int  # Days
    start_date: date
    maturity_date: date
    target_amount: Optional[Money] = None
    auto_save_amount: Optional[Money] = None
    frequency: SavingsFrequency = SavingsFrequency.MANUAL
    status: SavingsPlanStatus = SavingsPlanStatus.ACTIVE
    closed_at: Optional[datetime] = None
    penalty_applied: Optional[Money] = None
    last_interest_date: Optional[date] = None
    last_auto_save_date: Optional[date] = None

    def is_mature(self, as_of: date) -> bool:
        return as_of >= self.maturity_date


@dataclass
class PlanWithdrawalResult:
    plan: UserSavingsPlan
    amount_withdrawn: Money
    penalty: Money
    penalty_transaction: Optional[Transaction] = None
    transfer: Optional[TransferResult] = None


class SavingsPlanManager:
    """
    Manages savings products and member savings plans
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        posting_engine: PostingEngine,
        member_manager: MemberManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.posting_engine = posting_engine
        self.member_manager = member_manager
        self.audit_trail = audit_trail
        self.products_table = "savings_products"
        self.plans_table = "savings_plans"
        self.logger = get_logger("scms.savings")

        self.storage.ensure_unique(self.products_table, "name")

    def create_product(
        self,
        name: str,
        product_type: SavingsProductType,
        interest_rate: Decimal,
        min_duration: int,
        max_duration: Optional[int] = None,
        penalty_percentage: Decimal = Decimal('0'),
        allow_early_withdrawal: bool = True,
        description: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> SavingsProduct:
        """Define a new savings product"""
        if not name:
            raise ValueError("Product name is required")
        if min_duration <= 0:
            raise ValueError("Minimum duration must be at least one day")
        if max_duration is not None and max_duration < min_duration:
            raise ValueError("Maximum duration cannot be shorter than minimum duration")
        interest_rate = Decimal(interest_rate)
        penalty_percentage = Decimal(penalty_percentage)
        if interest_rate < 0:
            raise ValueError("Interest rate cannot be negative")
        if not Decimal('0') <= penalty_percentage <= Decimal('100'):
            raise ValueError("Penalty percentage must be between 0 and 100")

        now = datetime.now(timezone.utc)
        product = SavingsProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            product_type=product_type,
            interest_rate=interest_rate,
            min_duration=min_duration,
            max_duration=max_duration,
            penalty_percentage=penalty_percentage,
            allow_early_withdrawal=allow_early_withdrawal,
            description=description
        )
        with self.storage.atomic():
            try:
                self._save_product(product)
            except UniqueConstraintError:
                raise CooperativeError(f"A savings product named '{name}' already exists")
            self.audit_trail.log_event(
                event_type=AuditEventType.SAVINGS_PRODUCT_CREATED,
                entity_type="savings_product",
                entity_id=product.id,
                user_id=performed_by,
                metadata={"name": name, "product_type": product_type.value}
            )
        return product

    def get_product(self, product_id: str) -> Optional[SavingsProduct]:
        data = self.storage.load(self.products_table, product_id)
        return self._product_from_dict(data) if data else None

    def require_product(self, product_id: str) -> SavingsProduct:
        product = self.get_product(product_id)
        if not product:
            raise SavingsProductNotFound(product_id)
        return product

    def list_products(self, active_only: bool = False) -> List[SavingsProduct]:
        filters = {"status": SavingsProductStatus.ACTIVE.value} if active_only else {}
        products = [self._product_from_dict(data) for data in self.storage.find(self.products_table, filters)]
        products.sort(key=lambda p: p.name)
        return products

    def create_plan(
        self,
        member_id: str,
        product_id: str,
        duration: int,
        name: Optional[str] = None,
        target_amount: Optional[Money] = None,
        auto_save_amount: Optional[Money] = None,
        frequency: SavingsFrequency = SavingsFrequency.MANUAL,
        start_date: Optional[date] = None
    ) -> UserSavingsPlan:
        """
        Subscribe a member to a product. Opens the plan's own account.

        Args:
            duration: Plan length in days, within the product's bounds
        """
        member = self.member_manager.require_member(member_id)
        if member.status != MemberStatus.ACTIVE:
            raise CooperativeError("Only active members can open savings plans")
        product = self.require_product(product_id)
        if product.status != SavingsProductStatus.ACTIVE:
            raise CooperativeError("This savings product is currently inactive")
        if duration < product.min_duration:
            raise ValueError(f"Duration must be at least {product.min_duration} days")
        if product.max_duration and duration > product.max_duration:
            raise ValueError(f"Duration cannot exceed {product.max_duration} days")
        if product.product_type == SavingsProductType.TARGET and (
            target_amount is None or not target_amount.is_positive()
        ):
            raise ValueError("Target savings plans need a positive target amount")

        start = start_date or date.today()
        now = datetime.now(timezone.utc)
        plan_name = name or product.name

        with self.storage.atomic():
            account = self.account_manager.open_account(
                member_id, AccountType.SAVINGS_PLAN,
                currency=target_amount.currency if target_amount else None,
                name=plan_name, performed_by=member_id
            )
            plan = UserSavingsPlan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                member_id=member_id,
                product_id=product.id,
                account_id=account.id,
                name=plan_name,
                duration=duration,
                start_date=start,
                maturity_date=start + timedelta(days=duration),
                target_amount=target_amount,
                auto_save_amount=auto_save_amount,
                frequency=frequency
            )
            self._save_plan(plan)
            self.audit_trail.log_event(
                event_type=AuditEventType.SAVINGS_PLAN_CREATED,
                entity_type="savings_plan",
                entity_id=plan.id,
                user_id=member_id,
                metadata={
                    "product_id": product.id,
                    "account_id": account.id,
                    "maturity_date": plan.maturity_date.isoformat()
                }
            )

        log_action(self.logger, "info", f"Savings plan opened: {plan_name}",
                   user_id=member_id, action="create_plan", resource=f"savings_plan:{plan.id}",
                   extra={"account_number": account.account_number, "duration": duration})
        return plan

    def get_plan(self, plan_id: str) -> Optional[UserSavingsPlan]:
        data = self.storage.load(self.plans_table, plan_id)
        return self._plan_from_dict(data) if data else None

    def require_plan(self, plan_id: str) -> UserSavingsPlan:
        plan = self.get_plan(plan_id)
        if not plan:
            raise SavingsPlanNotFound(plan_id)
        return plan

    def get_member_plans(self, member_id: str) -> List[UserSavingsPlan]:
        return [self._plan_from_dict(data) for data in self.storage.find(self.plans_table, {"member_id": member_id})]

    def list_plans(self, status: Optional[SavingsPlanStatus] = None) -> List[UserSavingsPlan]:
        filters = {"status": status.value} if status else {}
        return [self._plan_from_dict(data) for data in self.storage.find(self.plans_table, filters)]

    def fund_plan(self, plan_id: str, amount: Money, performed_by: str) -> TransferResult:
        """Move money from the member's main savings account into the plan"""
        plan = self.require_plan(plan_id)
        if plan.status != SavingsPlanStatus.ACTIVE:
            raise CooperativeError("Plan is not active")
        savings = self._main_savings_account(plan.member_id)
        return self.posting_engine.transfer(
            savings.id, plan.account_id, amount, performed_by, f"Contribution to {plan.name}"
        )

    def mark_defaulted(self, plan_id: str, performed_by: str, reason: str) -> UserSavingsPlan:
        """Member stopped contributing; the plan can only be liquidated afterwards"""
        with self.posting_engine.unit_of_work(f"savings_plan:{plan_id}"):
            plan = self.require_plan(plan_id)
            plan.status = ensure_transition(plan.status, SavingsPlanStatus.DEFAULTED, "savings plan")
            plan.updated_at = datetime.now(timezone.utc)
            self._save_plan(plan)
            self.audit_trail.log_event(
                event_type=AuditEventType.SAVINGS_PLAN_CLOSED,
                entity_type="savings_plan",
                entity_id=plan.id,
                user_id=performed_by,
                metadata={"status": plan.status.value, "reason": reason}
            )
        return plan

    def withdraw_from_plan(self, plan_id: str, performed_by: str,
                           as_of: Optional[date] = None) -> PlanWithdrawalResult:
        """
        Close a plan and pay its balance into the member's savings account

        Before maturity the product must allow early withdrawal, and
        ``penalty_percentage`` of the balance is withdrawn as a penalty
        first. The plan ends ``completed`` at maturity and ``liquidated``
        before it. Penalty, transfer, account closure and plan status commit
        together. A plan with nothing in it closes without any posting, but a
        member cannot withdraw early from an empty active plan.
        """
        today = as_of or date.today()
        plan = self.require_plan(plan_id)
        product = self.require_product(plan.product_id)
        mature = plan.is_mature(today)
        if not mature and not product.allow_early_withdrawal:
            raise CooperativeError("Early withdrawal not allowed for this product")
        savings = self._main_savings_account(plan.member_id)

        with self.posting_engine.unit_of_work(plan.account_id, savings.id, f"savings_plan:{plan_id}"):
            plan = self.require_plan(plan_id)
            if plan.status == SavingsPlanStatus.DEFAULTED or not mature:
                target = SavingsPlanStatus.LIQUIDATED
            else:
                target = SavingsPlanStatus.COMPLETED
            ensure_transition(plan.status, target, "savings plan")

            account = self.account_manager.require_account(plan.account_id)
            # An empty plan still closes at maturity or after default
            if not account.balance.is_positive() and target == SavingsPlanStatus.LIQUIDATED \
                    and plan.status == SavingsPlanStatus.ACTIVE:
                raise CooperativeError("No funds to withdraw")

            penalty = Money.zero(account.currency)
            penalty_transaction = None
            if not mature:
                penalty = account.balance * (product.penalty_percentage / Decimal('100'))
            if penalty.is_positive():
                penalty_transaction = self.posting_engine.withdraw(
                    account.id, penalty, performed_by,
                    f"Early withdrawal penalty for {plan.name}",
                    metadata={"category": "penalty", "savings_plan_id": plan.id}
                )

            remaining = self.account_manager.require_account(account.id).balance
            transfer = None
            if remaining.is_positive():
                transfer = self.posting_engine.transfer(
                    account.id, savings.id, remaining, performed_by,
                    f"Withdrawal from savings plan {plan.name}"
                )

            self.account_manager.close_account(account.id, f"Savings plan {target.value}", performed_by)

            now = datetime.now(timezone.utc)
            plan.status = target
            plan.closed_at = now
            plan.updated_at = now
            plan.penalty_applied = penalty if penalty.is_positive() else None
            self._save_plan(plan)
            self.audit_trail.log_event(
                event_type=AuditEventType.SAVINGS_PLAN_CLOSED,
                entity_type="savings_plan",
                entity_id=plan.id,
                user_id=performed_by,
                metadata={
                    "status": target.value,
                    "amount_withdrawn": remaining.to_string(),
                    "penalty": penalty.to_string()
                }
            )

        log_action(self.logger, "info", f"Savings plan {target.value}: {plan.name}",
                   user_id=performed_by, action="withdraw_from_plan", resource=f"savings_plan:{plan.id}",
                   extra={"amount_withdrawn": remaining.to_string(), "penalty": penalty.to_string()})
        return PlanWithdrawalResult(
            plan=plan,
            amount_withdrawn=remaining,
            penalty=penalty,
            penalty_transaction=penalty_transaction,
            transfer=transfer
        )

    def process_matured_plans(self, as_of: Optional[date] = None,
                              performed_by: str = "system") -> List[PlanWithdrawalResult]:
        """Pay out every active plan that has reached maturity"""
        today = as_of or date.today()
        results = []
        for plan in self.list_plans(SavingsPlanStatus.ACTIVE):
            if not plan.is_mature(today):
                continue
            try:
                results.append(self.withdraw_from_plan(plan.id, performed_by, as_of=today))
            except CooperativeError as e:
                self.logger.error("Could not pay out matured plan %s: %s", plan.id, e)
        return results

    def accrue_plan_interest(self, as_of: Optional[date] = None,
                             performed_by: str = "system") -> List[Transaction]:
        """
        Credit one month of interest to every active plan not yet credited
        in the month of ``as_of``.

        amount = balance * product.interest_rate / 100 / 12. A plan whose
        interest rounds to zero is left for a later run in the same month.
        """
        today = as_of or date.today()
        month = (today.year, today.month)
        products: Dict[str, SavingsProduct] = {}
        credited = []

        for plan in self.list_plans(SavingsPlanStatus.ACTIVE):
            if plan.last_interest_date and (plan.last_interest_date.year, plan.last_interest_date.month) >= month:
                continue
            if plan.product_id not in products:
                products[plan.product_id] = self.require_product(plan.product_id)
            rate = products[plan.product_id].interest_rate

            with self.posting_engine.unit_of_work(plan.account_id, f"savings_plan:{plan.id}"):
                plan = self.require_plan(plan.id)
                if plan.status != SavingsPlanStatus.ACTIVE:
                    continue
                account = self.account_manager.require_account(plan.account_id)
                interest = Money(account.balance.amount * rate / Decimal('1200'), account.currency)
                if not interest.is_positive():
                    continue
                transaction = self.posting_engine.recorder.record(
                    account.id, TransactionType.INTEREST, interest, performed_by,
                    f"Monthly interest for savings plan {plan.name}",
                    metadata={"savings_plan_id": plan.id, "month": f"{today:%Y-%m}", "rate": str(rate)}
                )
                plan.last_interest_date = today
                plan.updated_at = datetime.now(timezone.utc)
                self._save_plan(plan)
            credited.append(transaction)

            log_action(self.logger, "info", f"Plan interest credited: {plan.name}",
                       user_id=performed_by, action="plan_interest", resource=f"savings_plan:{plan.id}",
                       extra={"amount": interest.to_string(), "rate": str(rate)})
        return credited

    def _next_auto_save(self, plan: UserSavingsPlan) -> Optional[date]:
        if plan.frequency == SavingsFrequency.MANUAL or not plan.auto_save_amount:
            return None
        last = plan.last_auto_save_date
        if last is None:
            return plan.start_date
        if plan.frequency == SavingsFrequency.DAILY:
            return last + timedelta(days=1)
        if plan.frequency == SavingsFrequency.WEEKLY:
            return last + timedelta(days=7)
        return add_months(last, 1)

    def process_auto_saves(self, as_of: Optional[date] = None,
                           performed_by: str = "system") -> List[TransferResult]:
        """
        Move each due plan's ``auto_save_amount`` from the member's savings
        account into the plan, at most once per run.

        A member without enough money is skipped and retried on the next
        run; the plan is not marked as saved.
        """
        today = as_of or date.today()
        deposits = []

        for plan in self.list_plans(SavingsPlanStatus.ACTIVE):
            due = self._next_auto_save(plan)
            if due is None or due > today or plan.is_mature(today):
                continue
            try:
                savings = self._main_savings_account(plan.member_id)
                with self.posting_engine.unit_of_work(savings.id, plan.account_id, f"savings_plan:{plan.id}"):
                    plan = self.require_plan(plan.id)
                    if plan.status != SavingsPlanStatus.ACTIVE or plan.last_auto_save_date == today:
                        continue
                    transfer = self.posting_engine.transfer(
                        savings.id, plan.account_id, plan.auto_save_amount, performed_by,
                        f"Automatic contribution to {plan.name}"
                    )
                    plan.last_auto_save_date = today
                    plan.updated_at = datetime.now(timezone.utc)
                    self._save_plan(plan)
            except InsufficientFunds:
                self.logger.warning("Auto-save skipped for plan %s: insufficient funds", plan.id)
                continue
            except CooperativeError as e:
                self.logger.error("Auto-save failed for plan %s: %s", plan.id, e)
                continue
            deposits.append(transfer)

            log_action(self.logger, "info", f"Auto-save deposited into {plan.name}",
                       user_id=performed_by, action="auto_save", resource=f"savings_plan:{plan.id}",
                       extra={"amount": plan.auto_save_amount.to_string(), "frequency": plan.frequency.value})
        return deposits

    def _main_savings_account(self, member_id: str):
        savings = self.account_manager.get_member_account(member_id, AccountType.SAVINGS)
        if not savings:
            raise CooperativeError("Main savings account not found to receive funds")
        return savings

    def _save_product(self, product: SavingsProduct) -> None:
        result = product.to_dict()
        result['product_type'] = product.product_type.value
        result['status'] = product.status.value
        self.storage.save(self.products_table, product.id, result)

    def _product_from_dict(self, data: Dict) -> SavingsProduct:
        return SavingsProduct(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            product_type=SavingsProductType(data['product_type']),
            interest_rate=Decimal(data['interest_rate']),
            min_duration=data['min_duration'],
            max_duration=data.get('max_duration'),
            penalty_percentage=Decimal(data['penalty_percentage']),
            allow_early_withdrawal=data['allow_early_withdrawal'],
            status=SavingsProductStatus(data['status']),
            description=data.get('description')
        )

    def _save_plan(self, plan: UserSavingsPlan) -> None:
        result = plan.to_dict()
        result['status'] = plan.status.value
        result['frequency'] = plan.frequency.value
        result['start_date'] = plan.start_date.isoformat()
        result['maturity_date'] = plan.maturity_date.isoformat()
        currency = next(
            (m.currency for m in (plan.target_amount, plan.auto_save_amount, plan.penalty_applied) if m), None
        )
        result['currency'] = currency.code if currency else None
        for name in ['target_amount', 'auto_save_amount', 'penalty_applied']:
            value = getattr(plan, name)
            result[name] = str(value.amount) if value else None
        self.storage.save(self.plans_table, plan.id, result)

    def _plan_from_dict(self, data: Dict) -> UserSavingsPlan:
        currency = Currency[data['currency']] if data.get('currency') else None

        def money(name):
            return Money(Decimal(data[name]), currency) if data.get(name) else None

        def optional_date(name):
            return date.fromisoformat(data[name]) if data.get(name) else None

        return UserSavingsPlan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            product_id=data['product_id'],
            account_id=data['account_id'],
            name=data['name'],
            duration=data['duration'],
            start_date=date.fromisoformat(data['start_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            target_amount=money('target_amount'),
            auto_save_amount=money('auto_save_amount'),
            frequency=SavingsFrequency(data['frequency']),
            status=SavingsPlanStatus(data['status']),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None,
            penalty_applied=money('penalty_applied'),
            last_interest_date=optional_date('last_interest_date'),
            last_auto_save_date=optional_date('last_auto_save_date')
        )
