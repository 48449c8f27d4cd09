"""
Loan endpoints
"""

from decimal import Decimal, InvalidOperation
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from ..system import CooperativeSystem
from ..loans import RepaymentMode
from ..lifecycle import LoanStatus
from .dependencies import get_system, get_actor_id, http_error
from .schemas import (
    LoanApplicationRequest, LoanDecisionRequest, DisburseRequest, RepaymentRequest,
    GuarantorRequest, GuaranteeResponseRequest, ReasonRequest,
    loan_response, money_dict, transaction_response
)


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: LoanApplicationRequest,
    system: CooperativeSystem = Depends(get_system)
):
    """Submit a loan application"""
    try:
        interest_rate = Decimal(request.interest_rate) if request.interest_rate else None
    except InvalidOperation:
        raise HTTPException(status_code=400, detail=f"Invalid interest rate: {request.interest_rate}")

    try:
        loan = system.loan_manager.apply_for_loan(
            member_id=request.member_id,
            loan_amount=request.loan_amount.to_money(),
            duration=request.duration,
            interest_rate=interest_rate,
            repayment_mode=RepaymentMode(request.repayment_mode),
            monthly_deduction_amount=(request.monthly_deduction_amount.to_money()
                                      if request.monthly_deduction_amount else None),
            purpose=request.purpose
        )
    except ValueError as e:
        raise http_error(e)
    return loan_response(loan)


@router.get("")
async def list_loans(loan_status: Optional[str] = None, system: CooperativeSystem = Depends(get_system)):
    try:
        loans = system.loan_manager.list_loans(LoanStatus(loan_status) if loan_status else None)
    except ValueError as e:
        raise http_error(e)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.get("/{loan_id}")
async def get_loan(loan_id: str, system: CooperativeSystem = Depends(get_system)):
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_response(loan)


@router.get("/{loan_id}/repayments")
async def get_loan_repayments(loan_id: str, system: CooperativeSystem = Depends(get_system)):
    repayments = system.loan_manager.get_repayments(loan_id)
    return {
        "repayments": [
            {
                "id": r.id,
                "transaction_id": r.transaction_id,
                "amount": money_dict(r.amount),
                "principal": money_dict(r.principal),
                "interest": money_dict(r.interest),
                "outstanding_after": money_dict(r.outstanding_after),
                "created_at": r.created_at.isoformat()
            }
            for r in repayments
        ]
    }


@router.post("/{loan_id}/guarantors", status_code=status.HTTP_201_CREATED)
async def add_guarantor(
    loan_id: str,
    request: GuarantorRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        guarantor = system.loan_manager.add_guarantor(loan_id, request.guarantor_member_id, actor)
    except ValueError as e:
        raise http_error(e)
    return {"guarantor_id": guarantor.id, "status": guarantor.status.value}


@router.post("/guarantors/{guarantor_id}/respond")
async def respond_to_guarantee(
    guarantor_id: str,
    request: GuaranteeResponseRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        guarantor = system.loan_manager.respond_to_guarantee(guarantor_id, request.accept, actor)
    except ValueError as e:
        raise http_error(e)
    return {"guarantor_id": guarantor.id, "status": guarantor.status.value}


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: Optional[LoanDecisionRequest] = None,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        loan = system.loan_appraisal.approve(loan_id, actor, request.remarks if request else None)
    except ValueError as e:
        raise http_error(e)
    return loan_response(loan)


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: LoanDecisionRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        loan = system.loan_appraisal.reject(loan_id, actor, request.remarks)
    except ValueError as e:
        raise http_error(e)
    return loan_response(loan)


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: Optional[DisburseRequest] = None,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Disburse an approved loan into the borrower's account"""
    try:
        result = system.loan_appraisal.disburse(loan_id, actor, request.account_id if request else None)
    except ValueError as e:
        raise http_error(e)
    return {"loan": loan_response(result.loan), "transaction": transaction_response(result.transaction)}


@router.post("/{loan_id}/repay")
async def repay_loan(
    loan_id: str,
    request: RepaymentRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        result = system.loan_appraisal.repay(loan_id, request.amount.to_money(), actor, request.account_id)
    except ValueError as e:
        raise http_error(e)

    return {
        "loan": loan_response(result.loan),
        "transaction": transaction_response(result.transaction),
        "principal": money_dict(result.repayment.principal),
        "interest": money_dict(result.repayment.interest)
    }


@router.post("/{loan_id}/collect")
async def collect_scheduled_repayment(
    loan_id: str,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Take the monthly deduction of an automated loan"""
    try:
        result = system.loan_appraisal.collect_scheduled_repayment(loan_id, actor)
        loan = result.loan if result else system.loan_manager.require_loan(loan_id)
    except ValueError as e:
        raise http_error(e)
    return {"collected": result is not None, "loan": loan_response(loan)}


@router.post("/{loan_id}/default")
async def mark_loan_defaulted(
    loan_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        loan = system.loan_appraisal.mark_defaulted(loan_id, actor, request.reason)
    except ValueError as e:
        raise http_error(e)
    return loan_response(loan)
