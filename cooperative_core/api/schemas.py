"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency, decimal_from_string
from ..accounts import Account
from ..transactions import Transaction
from ..loans import Loan


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("NGN", description="Currency code (NGN, USD, etc.)")

    def to_money(self) -> Money:
        if self.currency not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {self.currency}")
        return Money(decimal_from_string(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def money_dict(money: Optional[Money]) -> Optional[Dict[str, str]]:
    return {"amount": str(money.amount), "currency": money.currency.code} if money else None


# Member schemas
class RegisterMemberRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str


# Account schemas
class OpenAccountRequest(BaseModel):
    member_id: str
    account_type: str = Field(..., description="Account type (savings, share_capital, savings_plan)")
    currency: Optional[str] = None
    name: Optional[str] = None
    opening_balance: Optional[MoneyModel] = None


# Transaction schemas
class DepositRequest(BaseModel):
    account_id: str
    amount: MoneyModel
    description: Optional[str] = None


class WithdrawRequest(BaseModel):
    account_id: str
    amount: MoneyModel
    description: Optional[str] = None


class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: MoneyModel
    description: Optional[str] = None


# Loan schemas
class LoanApplicationRequest(BaseModel):
    member_id: str
    loan_amount: MoneyModel
    duration: int = Field(..., description="Duration in months")
    interest_rate: Optional[str] = None  # Decimal as string
    repayment_mode: str = "manual"
    monthly_deduction_amount: Optional[MoneyModel] = None
    purpose: Optional[str] = None


class LoanDecisionRequest(BaseModel):
    remarks: Optional[str] = None


class DisburseRequest(BaseModel):
    account_id: Optional[str] = None


class RepaymentRequest(BaseModel):
    amount: MoneyModel
    account_id: Optional[str] = None


class GuarantorRequest(BaseModel):
    guarantor_member_id: str


class GuaranteeResponseRequest(BaseModel):
    accept: bool


# Withdrawal request schemas
class WithdrawalRequestCreate(BaseModel):
    member_id: str
    account_id: str
    amount: MoneyModel
    reason: Optional[str] = None


# Savings schemas
class SavingsProductRequest(BaseModel):
    name: str
    product_type: str = Field(..., description="fixed or target")
    interest_rate: str
    min_duration: int = Field(..., description="Minimum duration in days")
    max_duration: Optional[int] = None
    penalty_percentage: str = "0"
    allow_early_withdrawal: bool = True
    description: Optional[str] = None


class SavingsPlanRequest(BaseModel):
    member_id: str
    product_id: str
    duration: int = Field(..., description="Duration in days")
    name: Optional[str] = None
    target_amount: Optional[MoneyModel] = None
    auto_save_amount: Optional[MoneyModel] = None
    frequency: str = "manual"


class FundPlanRequest(BaseModel):
    amount: MoneyModel


# Posting schemas
class PostingRunRequest(BaseModel):
    posting_type: str = Field(..., description="interest or dividend")
    period: str = Field(..., description="e.g. Monthly-2024-01, Quarterly-2024-Q1, FY-2024")
    rate: str = Field(..., description="Percentage rate as string")
    dry_run: bool = False


def account_response(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_number": account.account_number,
        "member_id": account.member_id,
        "account_type": account.account_type.value,
        "name": account.name,
        "status": account.status.value,
        "balance": money_dict(account.balance),
        "created_at": account.created_at.isoformat()
    }


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "account_id": transaction.account_id,
        "transaction_type": transaction.transaction_type.value,
        "amount": money_dict(transaction.amount),
        "balance_after": money_dict(transaction.balance_after),
        "reference": transaction.reference,
        "status": transaction.status.value,
        "description": transaction.description,
        "group_reference": transaction.group_reference,
        "reversal_of": transaction.reversal_of,
        "performed_by": transaction.performed_by,
        "created_at": transaction.created_at.isoformat()
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "member_id": loan.member_id,
        "status": loan.status.value,
        "repayment_mode": loan.repayment_mode.value,
        "loan_amount": money_dict(loan.loan_amount),
        "interest_rate": str(loan.interest_rate),
        "duration": loan.duration,
        "monthly_payment": money_dict(loan.monthly_payment),
        "total_interest": money_dict(loan.total_interest),
        "total_repayable": money_dict(loan.total_repayable),
        "outstanding_balance": money_dict(loan.outstanding_balance),
        "amount_repaid": money_dict(loan.amount_repaid),
        "monthly_deduction_amount": money_dict(loan.monthly_deduction_amount),
        "next_payment_date": loan.next_payment_date.isoformat() if loan.next_payment_date else None,
        "due_date": loan.due_date.isoformat() if loan.due_date else None,
        "approved_by": loan.approved_by,
        "review_remarks": loan.review_remarks
    }
