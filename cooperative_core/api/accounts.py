"""
Account management endpoints
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from ..system import CooperativeSystem
from ..accounts import AccountType
from ..currency import Currency
from .dependencies import get_system, get_actor_id, http_error
from .schemas import OpenAccountRequest, ReasonRequest, account_response, transaction_response


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Open an account for an existing member"""
    try:
        system.member_manager.require_member(request.member_id)
        if request.currency and request.currency not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {request.currency}")
        account = system.account_manager.open_account(
            member_id=request.member_id,
            account_type=AccountType(request.account_type),
            currency=Currency[request.currency] if request.currency else None,
            name=request.name,
            opening_balance=request.opening_balance.to_money() if request.opening_balance else None,
            performed_by=actor
        )
    except ValueError as e:
        raise http_error(e)

    return {
        "account_id": account.id,
        "account_number": account.account_number,
        "message": "Account opened successfully"
    }


@router.get("/{account_id}")
async def get_account(account_id: str, system: CooperativeSystem = Depends(get_system)):
    """Get account details"""
    account = system.account_manager.get_account(account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account_response(account)


@router.get("/{account_id}/transactions")
async def get_account_transactions(
    account_id: str,
    limit: Optional[int] = None,
    offset: int = 0,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    system: CooperativeSystem = Depends(get_system)
):
    """Transaction history, newest first"""
    if not system.account_manager.get_account(account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    transactions = system.recorder.get_account_transactions(
        account_id, start_date=start_date, end_date=end_date, limit=limit, offset=offset
    )
    return {"transactions": [transaction_response(t) for t in transactions]}


@router.post("/{account_id}/freeze")
async def freeze_account(
    account_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        account = system.account_manager.freeze_account(account_id, request.reason, actor)
    except ValueError as e:
        raise http_error(e)
    return account_response(account)


@router.post("/{account_id}/unfreeze")
async def unfreeze_account(
    account_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        account = system.account_manager.unfreeze_account(account_id, request.reason, actor)
    except ValueError as e:
        raise http_error(e)
    return account_response(account)


@router.post("/{account_id}/close")
async def close_account(
    account_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        account = system.account_manager.close_account(account_id, request.reason, actor)
    except ValueError as e:
        raise http_error(e)
    return account_response(account)
