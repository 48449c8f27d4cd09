"""
Transaction endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from ..system import CooperativeSystem
from .dependencies import get_system, get_actor_id, http_error
from .schemas import (
    DepositRequest, WithdrawRequest, TransferRequest, ReasonRequest, transaction_response
)


router = APIRouter()


@router.post("/deposit", status_code=status.HTTP_201_CREATED)
async def deposit(
    request: DepositRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Make a deposit"""
    try:
        transaction = system.posting_engine.deposit(
            account_id=request.account_id,
            amount=request.amount.to_money(),
            performed_by=actor,
            description=request.description
        )
    except ValueError as e:
        raise http_error(e)
    return transaction_response(transaction)


@router.post("/withdraw", status_code=status.HTTP_201_CREATED)
async def withdraw(
    request: WithdrawRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Make a withdrawal"""
    try:
        transaction = system.posting_engine.withdraw(
            account_id=request.account_id,
            amount=request.amount.to_money(),
            performed_by=actor,
            description=request.description
        )
    except ValueError as e:
        raise http_error(e)
    return transaction_response(transaction)


@router.post("/transfer", status_code=status.HTTP_201_CREATED)
async def transfer(
    request: TransferRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Make a transfer between accounts"""
    try:
        result = system.posting_engine.transfer(
            request.from_account_id,
            request.to_account_id,
            request.amount.to_money(),
            actor,
            description=request.description
        )
    except ValueError as e:
        raise http_error(e)

    return {
        "group_reference": result.group_reference,
        "debit": transaction_response(result.debit),
        "credit": transaction_response(result.credit)
    }


@router.get("/reference/{reference}")
async def get_transaction_by_reference(reference: str, system: CooperativeSystem = Depends(get_system)):
    transaction = system.recorder.get_by_reference(reference)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction_response(transaction)


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, system: CooperativeSystem = Depends(get_system)):
    transaction = system.recorder.get_transaction(transaction_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction_response(transaction)


@router.post("/{transaction_id}/reverse")
async def reverse_transaction(
    transaction_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Reverse a transaction (both legs for a transfer)"""
    try:
        reversals = system.posting_engine.reverse_transaction(transaction_id, actor, request.reason)
    except ValueError as e:
        raise http_error(e)
    return {"reversals": [transaction_response(t) for t in reversals]}
