"""
Withdrawal request queue endpoints
"""

from fastapi import APIRouter, Depends, status

from ..system import CooperativeSystem
from ..withdrawals import WithdrawalRequest
from .dependencies import get_system, get_actor_id, http_error
from .schemas import WithdrawalRequestCreate, ReasonRequest, money_dict


router = APIRouter()


def request_response(request: WithdrawalRequest):
    return {
        "id": request.id,
        "member_id": request.member_id,
        "account_id": request.account_id,
        "amount": money_dict(request.amount),
        "reason": request.reason,
        "status": request.status.value,
        "processed_by": request.processed_by,
        "rejection_reason": request.rejection_reason,
        "transaction_id": request.transaction_id,
        "created_at": request.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    request: WithdrawalRequestCreate,
    system: CooperativeSystem = Depends(get_system)
):
    try:
        withdrawal = system.withdrawal_manager.request_withdrawal(
            request.member_id, request.account_id, request.amount.to_money(), request.reason
        )
    except ValueError as e:
        raise http_error(e)
    return request_response(withdrawal)


@router.get("/pending")
async def list_pending(system: CooperativeSystem = Depends(get_system)):
    return {"requests": [request_response(r) for r in system.withdrawal_queue.list_pending()]}


@router.get("/{request_id}")
async def get_request(request_id: str, system: CooperativeSystem = Depends(get_system)):
    try:
        withdrawal = system.withdrawal_manager.require_request(request_id)
    except ValueError as e:
        raise http_error(e)
    return request_response(withdrawal)


@router.post("/{request_id}/approve")
async def approve_request(
    request_id: str,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Approve and pay out a withdrawal request"""
    try:
        withdrawal = system.withdrawal_queue.approve(request_id, actor)
    except ValueError as e:
        raise http_error(e)
    return request_response(withdrawal)


@router.post("/{request_id}/reject")
async def reject_request(
    request_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        withdrawal = system.withdrawal_queue.reject(request_id, actor, request.reason)
    except ValueError as e:
        raise http_error(e)
    return request_response(withdrawal)


@router.post("/{request_id}/cancel")
async def cancel_request(
    request_id: str,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Requester withdraws their own request"""
    try:
        withdrawal = system.withdrawal_manager.cancel_request(request_id, actor)
    except ValueError as e:
        raise http_error(e)
    return request_response(withdrawal)
