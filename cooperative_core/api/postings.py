"""
Bulk interest and dividend posting endpoints
"""

from decimal import Decimal, InvalidOperation
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from ..system import CooperativeSystem
from ..interest import PostingType, PostingLog, PostingPreview
from .dependencies import get_system, get_actor_id, http_error
from .schemas import PostingRunRequest, ReasonRequest, money_dict


router = APIRouter()


def _posting_type(value: str) -> PostingType:
    try:
        return PostingType(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown posting type: {value}")


def log_response(log: PostingLog):
    return {
        "id": log.id,
        "posting_type": log.posting_type.value,
        "period": log.period,
        "rate": str(log.rate),
        "total_amount": money_dict(log.total_amount),
        "beneficiary_count": log.beneficiary_count,
        "status": log.status.value,
        "performed_by": log.performed_by,
        "failures": log.failures,
        "created_at": log.created_at.isoformat(),
        "completed_at": log.completed_at.isoformat() if log.completed_at else None
    }


def preview_response(preview: PostingPreview):
    return {
        "dry_run": True,
        "posting_type": preview.posting_type.value,
        "period": preview.period,
        "rate": str(preview.rate),
        "total_amount": money_dict(preview.total_amount),
        "beneficiary_count": preview.beneficiary_count,
        "already_posted": preview.already_posted,
        "preview": [line.as_dict() for line in preview.rows]
    }


@router.post("/run")
async def run_posting(
    request: PostingRunRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """
    Post interest or dividends for a period.

    With ``dry_run`` the projected totals are returned and nothing is written.
    Per-account failures are reported in the response rather than as an error.
    """
    posting_type = _posting_type(request.posting_type)
    try:
        rate = Decimal(request.rate)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail=f"Invalid rate: {request.rate}")

    try:
        result = system.interest_engine.run(
            posting_type, request.period, rate, actor, dry_run=request.dry_run
        )
    except ValueError as e:
        raise http_error(e)

    if request.dry_run:
        return preview_response(result)

    response = log_response(result.posting_log)
    response["dry_run"] = False
    response["skipped_accounts"] = len(result.skipped_account_ids)
    return response


@router.get("/history")
async def get_posting_history(
    posting_type: Optional[str] = None,
    system: CooperativeSystem = Depends(get_system)
):
    """Posting runs, newest first"""
    logs = system.interest_engine.get_posting_history(_posting_type(posting_type) if posting_type else None)
    return {"history": [log_response(log) for log in logs]}


@router.get("/stats/{posting_type}")
async def get_posting_stats(posting_type: str, system: CooperativeSystem = Depends(get_system)):
    return system.interest_engine.get_posting_stats(_posting_type(posting_type))


@router.post("/{posting_type}/{period}/abandon")
async def abandon_posting_run(
    posting_type: str,
    period: str,
    request: ReasonRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Mark a run stuck in ``pending`` as failed so it can be resumed"""
    try:
        log = system.interest_engine.abandon_run(_posting_type(posting_type), period, actor, request.reason)
    except ValueError as e:
        raise http_error(e)
    return log_response(log)
