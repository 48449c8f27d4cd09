"""
Savings product and plan endpoints
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from ..system import CooperativeSystem
from ..savings import SavingsProduct, SavingsProductType, SavingsFrequency, UserSavingsPlan
from .dependencies import get_system, get_actor_id, http_error
from .schemas import SavingsProductRequest, SavingsPlanRequest, FundPlanRequest, money_dict, transaction_response


router = APIRouter()


def product_response(product: SavingsProduct):
    return {
        "id": product.id,
        "name": product.name,
        "product_type": product.product_type.value,
        "interest_rate": str(product.interest_rate),
        "min_duration": product.min_duration,
        "max_duration": product.max_duration,
        "penalty_percentage": str(product.penalty_percentage),
        "allow_early_withdrawal": product.allow_early_withdrawal,
        "status": product.status.value
    }


def plan_response(plan: UserSavingsPlan):
    return {
        "id": plan.id,
        "member_id": plan.member_id,
        "product_id": plan.product_id,
        "account_id": plan.account_id,
        "name": plan.name,
        "duration": plan.duration,
        "start_date": plan.start_date.isoformat(),
        "maturity_date": plan.maturity_date.isoformat(),
        "target_amount": money_dict(plan.target_amount),
        "frequency": plan.frequency.value,
        "status": plan.status.value,
        "penalty_applied": money_dict(plan.penalty_applied),
        "auto_save_amount": money_dict(plan.auto_save_amount),
        "last_interest_date": plan.last_interest_date.isoformat() if plan.last_interest_date else None,
        "last_auto_save_date": plan.last_auto_save_date.isoformat() if plan.last_auto_save_date else None
    }


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
    request: SavingsProductRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    try:
        interest_rate = Decimal(request.interest_rate)
        penalty_percentage = Decimal(request.penalty_percentage)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail="Rates must be decimal strings")

    try:
        product = system.savings_manager.create_product(
            name=request.name,
            product_type=SavingsProductType(request.product_type),
            interest_rate=interest_rate,
            min_duration=request.min_duration,
            max_duration=request.max_duration,
            penalty_percentage=penalty_percentage,
            allow_early_withdrawal=request.allow_early_withdrawal,
            description=request.description,
            performed_by=actor
        )
    except ValueError as e:
        raise http_error(e)
    return product_response(product)


@router.get("/products")
async def list_products(active_only: bool = False, system: CooperativeSystem = Depends(get_system)):
    return {"products": [product_response(p) for p in system.savings_manager.list_products(active_only)]}


@router.post("/plans", status_code=status.HTTP_201_CREATED)
async def create_plan(request: SavingsPlanRequest, system: CooperativeSystem = Depends(get_system)):
    """Subscribe a member to a savings product"""
    try:
        plan = system.savings_manager.create_plan(
            member_id=request.member_id,
            product_id=request.product_id,
            duration=request.duration,
            name=request.name,
            target_amount=request.target_amount.to_money() if request.target_amount else None,
            auto_save_amount=request.auto_save_amount.to_money() if request.auto_save_amount else None,
            frequency=SavingsFrequency(request.frequency)
        )
    except ValueError as e:
        raise http_error(e)
    return plan_response(plan)


@router.get("/plans/member/{member_id}")
async def get_member_plans(member_id: str, system: CooperativeSystem = Depends(get_system)):
    return {"plans": [plan_response(p) for p in system.savings_manager.get_member_plans(member_id)]}


@router.get("/plans/{plan_id}")
async def get_plan(plan_id: str, system: CooperativeSystem = Depends(get_system)):
    try:
        plan = system.savings_manager.require_plan(plan_id)
    except ValueError as e:
        raise http_error(e)
    return plan_response(plan)


@router.post("/plans/{plan_id}/fund")
async def fund_plan(
    plan_id: str,
    request: FundPlanRequest,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Move money from the member's savings account into the plan"""
    try:
        result = system.savings_manager.fund_plan(plan_id, request.amount.to_money(), actor)
    except ValueError as e:
        raise http_error(e)
    return {"group_reference": result.group_reference}


@router.post("/plans/{plan_id}/withdraw")
async def withdraw_from_plan(
    plan_id: str,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Close the plan and pay its balance into the member's savings account"""
    try:
        result = system.savings_manager.withdraw_from_plan(plan_id, actor)
    except ValueError as e:
        raise http_error(e)

    return {
        "plan": plan_response(result.plan),
        "amount_withdrawn": money_dict(result.amount_withdrawn),
        "penalty": money_dict(result.penalty)
    }


@router.post("/plans/process-matured")
async def process_matured_plans(
    as_of: Optional[date] = None,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    results = system.savings_manager.process_matured_plans(as_of, performed_by=actor)
    return {"processed": [plan_response(r.plan) for r in results]}


@router.post("/plans/accrue-interest")
async def accrue_plan_interest(
    as_of: Optional[date] = None,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    """Monthly interest on active plans; plans already credited this month are skipped"""
    credited = system.savings_manager.accrue_plan_interest(as_of, performed_by=actor)
    return {"credited": [transaction_response(t) for t in credited]}


@router.post("/plans/process-auto-saves")
async def process_auto_saves(
    as_of: Optional[date] = None,
    actor: str = Depends(get_actor_id),
    system: CooperativeSystem = Depends(get_system)
):
    deposits = system.savings_manager.process_auto_saves(as_of, performed_by=actor)
    return {"deposits": [transaction_response(d.credit) for d in deposits]}
