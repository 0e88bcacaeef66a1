"""
Schedule endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .dependencies import ServicingSystem, get_org_context, get_servicing_system
from .schemas import (
    ScheduleResponse, ScheduleRowModel, ScheduleSummaryModel, SchedulePreviewRequest
)
from ..loans import PrincipalReduction
from ..schedule import calculate_loan_summary, generate_schedule
from ..servicing import ConcurrentModificationError
from ..storage import OrgContext, RecordNotFoundError


router = APIRouter()


def _response(rows) -> ScheduleResponse:
    return ScheduleResponse(
        rows=[ScheduleRowModel.from_row(row) for row in rows],
        summary=ScheduleSummaryModel.from_summary(calculate_loan_summary(rows))
    )


@router.post("/preview", response_model=ScheduleResponse)
async def preview_schedule(request: SchedulePreviewRequest):
    """Generate a schedule for terms without persisting anything"""
    try:
        terms = request.terms.to_loan_terms()
        reductions = [PrincipalReduction(date=r.date, amount=r.amount)
                      for r in request.applied_principal_reductions]
        rows = generate_schedule(terms, reductions)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _response(rows)


@router.get("/{loan_id}", response_model=ScheduleResponse)
async def get_schedule(
    loan_id: str,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Get a loan's stored schedule"""
    try:
        rows = system.servicer.get_schedule(ctx, loan_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    return _response(rows)


@router.post("/{loan_id}/regenerate", response_model=ScheduleResponse)
async def regenerate_schedule(
    loan_id: str,
    expected_version: Optional[int] = None,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Rebuild a loan's schedule from its terms and repayments"""
    try:
        rows = system.servicer.regenerate_schedule(ctx, loan_id, expected_version=expected_version)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _response(rows)
