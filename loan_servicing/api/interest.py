"""
Interest endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .dependencies import ServicingSystem, get_org_context, get_servicing_system
from .schemas import (
    AccruedInterestRequest, InterestPeriodsResponse, InterestPositionResponse, PeriodInterestModel
)
from ..storage import OrgContext, RecordNotFoundError


router = APIRouter()


@router.post("/accrued")
async def calculate_accrued(request: AccruedInterestRequest):
    """Accrued interest for ad-hoc terms as of a date"""
    try:
        accrued = request.accrued()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"as_of": request.as_of.isoformat(), "accrued_interest": str(accrued)}


@router.get("/{loan_id}", response_model=InterestPositionResponse)
async def get_interest_position(
    loan_id: str,
    as_of: Optional[date] = None,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Accrued, paid and outstanding interest for a loan"""
    try:
        position = system.servicer.get_interest_position(ctx, loan_id, as_of)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")

    return InterestPositionResponse(
        loan_id=position.loan_id,
        as_of=position.as_of,
        accrued=str(position.accrued),
        interest_paid=str(position.interest_paid),
        outstanding=str(position.outstanding),
        ledger_accrued=str(position.ledger.interest_accrued),
        ledger_interest_remaining=str(position.ledger.interest_remaining),
        principal_remaining=str(position.ledger.principal_remaining),
        schedule_interest_due=str(position.schedule_balance.total_interest_due),
        schedule_interest_paid=str(position.schedule_balance.total_interest_paid),
        schedule_interest_balance=str(position.schedule_balance.interest_balance)
    )


@router.get("/{loan_id}/periods", response_model=InterestPeriodsResponse)
async def get_interest_by_period(
    loan_id: str,
    as_of: Optional[date] = None,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Interest actually due on each schedule period up to a date"""
    try:
        position = system.servicer.get_interest_position(ctx, loan_id, as_of)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")

    balance = position.schedule_balance
    return InterestPeriodsResponse(
        loan_id=position.loan_id,
        as_of=position.as_of,
        periods=[PeriodInterestModel.from_period(p) for p in balance.periods],
        total_interest_due=str(balance.total_interest_due),
        total_interest_paid=str(balance.total_interest_paid),
        interest_balance=str(balance.interest_balance)
    )
