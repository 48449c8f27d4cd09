"""
Member registration endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from ..system import CooperativeSystem
from ..members import Member
from ..lifecycle import MemberStatus
from .dependencies import get_system, get_actor_id, http_error
from .schemas import RegisterMemberRequest, ReasonRequest, account_response


router = APIRouter()


def member_response(member: Member):
    return {
        "id": member.id,
        "member_number": member.member_number,
        "first_name": member.first_name,
        "last_name": member.last_name,
        "email": member.email,
        "phone": member.phone,
        "status": member.status.value,
        "approved_by": member.approved_by,
        "rejection_reason": member.rejection_reason
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_member(
    request: RegisterMemberRequest,
    system: CooperativeSystem = Depends(get_system)
):
    """Register a member; the registration waits for approval"""
    try:
        member = system.member_manager.register_member(
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email,
            phone=request.phone
        )
    except ValueError as e:
        raise http_error(e)

    return {
        "member_id": member.id,
        "member_number": member.member_number,
        "status": member.status.value,
        "message": "Registration received"
    }


@router.get("")
async def list_members(
    member_status: Optional[str] = None,
    system: CooperativeSystem = Depends(get_system)
):
    try:
        members = system.member_manager.list_members(MemberStatus(member_status) if member_status else None)
    except ValueError as e:
        raise http_error(e)
    return {"members": [member_response(m) for m in members]}


@router.get("/pending")
async def list_pending_registrations(system: CooperativeSystem = Depends(get_system)):
    """Registration queue"""
    return {"members": [member_response(m) for m in system.registration_queue.list_pending()]}


@router.get("/{member_id}")
async def get_member(member_id: str, system: CooperativeSystem = Depends(get_system)):
    member = system.member_manager.get_member(member_id)
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return member_response(member)


@router.get("/{member_id}/accounts")
async def get_member_accounts(member_id: str, system: CooperativeSystem = Depends(get_system)):
    accounts = system.account_manager.get_member_accounts(member_id)
    return {"accounts": [account_response(a) for a in accounts]}


@router.post("/{member_id}/approve")
async def approve_member(
    member_id: str,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Approve a registration and open the member's accounts"""
    try:
        approval = system.registration_queue.approve(member_id, actor)
    except ValueError as e:
        raise http_error(e)

    return {
        "member": member_response(approval.member),
        "accounts": [account_response(a) for a in approval.accounts],
        "message": "Member approved"
    }


@router.post("/{member_id}/reject")
async def reject_member(
    member_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        member = system.registration_queue.reject(member_id, actor, request.reason)
    except ValueError as e:
        raise http_error(e)
    return member_response(member)


@router.post("/{member_id}/suspend")
async def suspend_member(
    member_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        member = system.member_manager.suspend_member(member_id, request.reason, actor)
    except ValueError as e:
        raise http_error(e)
    return member_response(member)


@router.post("/{member_id}/reinstate")
async def reinstate_member(
    member_id: str,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        member = system.member_manager.reinstate_member(member_id, actor)
    except ValueError as e:
        raise http_error(e)
    return member_response(member)
