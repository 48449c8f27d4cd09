"""
Financial report endpoints
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import PlainTextResponse

from ..system import CooperativeSystem
from ..reporting import ReportFormat, ReportResult
from .dependencies import get_system, http_error


router = APIRouter()


def _render(system: CooperativeSystem, result: ReportResult, format: str):
    try:
        report_format = ReportFormat(format)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported export format: {format}")

    exported = system.reporting_engine.export_report(result, report_format)
    if report_format == ReportFormat.CSV:
        return PlainTextResponse(exported, media_type="text/csv")
    return exported


@router.get("/balance-sheet")
async def balance_sheet(format: str = "dict", system: CooperativeSystem = Depends(get_system)):
    """Assets, liabilities and equity; ``totals.balanced`` checks the identity"""
    return _render(system, system.reporting_engine.balance_sheet(), format)


@router.get("/income-statement")
async def income_statement(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    format: str = "dict",
    system: CooperativeSystem = Depends(get_system)
):
    result = system.reporting_engine.income_statement(start_date, end_date)
    return _render(system, result, format)


@router.get("/summary")
async def financial_summary(system: CooperativeSystem = Depends(get_system)):
    return _render(system, system.reporting_engine.financial_summary(), "dict")


@router.get("/statement/{account_id}")
async def account_statement(
    account_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    format: str = "dict",
    system: CooperativeSystem = Depends(get_system)
):
    try:
        result = system.reporting_engine.account_statement(account_id, start_date, end_date, limit, offset)
    except ValueError as e:
        raise http_error(e)
    return _render(system, result, format)


@router.get("/reconciliation")
async def reconcile_accounts(system: CooperativeSystem = Depends(get_system)):
    """Replay every account's transactions against its stored balance"""
    return _render(system, system.reporting_engine.reconcile_accounts(), "dict")
