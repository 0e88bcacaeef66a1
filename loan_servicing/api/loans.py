"""
Loan endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import ServicingSystem, get_org_context, get_servicing_system
from .schemas import CreateLoanRequest, FurtherAdvanceRequest, LoanResponse, UpdateStatusRequest
from ..loans import LoanStatus
from ..servicing import ConcurrentModificationError
from ..storage import OrgContext, RecordNotFoundError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LoanResponse)
async def create_loan(
    request: CreateLoanRequest,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Create a loan and generate its schedule"""
    try:
        loan = system.servicer.create_loan(
            ctx,
            request.terms.to_loan_terms(),
            loan_number=request.loan_number,
            borrower_id=request.borrower_id,
            status=LoanStatus(request.status)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return LoanResponse.from_loan(loan)


@router.get("", response_model=List[LoanResponse])
async def list_loans(
    loan_status: Optional[str] = None,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """List the organization's loans"""
    try:
        wanted = LoanStatus(loan_status) if loan_status else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [LoanResponse.from_loan(loan) for loan in system.servicer.list_loans(ctx, wanted)]


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(
    loan_id: str,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Get loan details"""
    try:
        loan = system.servicer.get_loan(ctx, loan_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/status", response_model=LoanResponse)
async def update_loan_status(
    loan_id: str,
    request: UpdateStatusRequest,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Change a loan's lifecycle status"""
    try:
        loan = system.servicer.update_status(ctx, loan_id, LoanStatus(request.status),
                                             expected_version=request.expected_version)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/advances", status_code=status.HTTP_201_CREATED)
async def record_further_advance(
    loan_id: str,
    request: FurtherAdvanceRequest,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Record a further advance of principal"""
    try:
        transaction = system.servicer.record_further_advance(
            ctx, loan_id, request.amount, request.advance_date,
            gross_amount=request.gross_amount,
            expected_version=request.expected_version
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "transaction_id": transaction.id,
        "message": "Further advance recorded"
    }
