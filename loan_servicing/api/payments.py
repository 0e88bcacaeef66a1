"""
Payment endpoints
"""

from fastapi import APIRouter, Depends, HTTPException

from .dependencies import ServicingSystem, get_org_context, get_servicing_system
from .schemas import (
    AllocationResponse, LoanResponse, ManualPaymentRequest, PaymentRequest,
    PaymentResponse, WaterfallPreviewRequest
)
from ..servicing import ConcurrentModificationError, PaymentOutcome
from ..storage import OrgContext, RecordNotFoundError
from ..waterfall import apply_payment_waterfall


router = APIRouter()


def _response(outcome: PaymentOutcome) -> PaymentResponse:
    return PaymentResponse(
        transaction_id=outcome.transaction.id,
        principal_applied=str(outcome.principal_applied),
        interest_applied=str(outcome.interest_applied),
        allocation=AllocationResponse.from_result(outcome.allocation),
        loan=LoanResponse.from_loan(outcome.loan)
    )


@router.post("/preview", response_model=AllocationResponse)
async def preview_allocation(request: WaterfallPreviewRequest):
    """Run the payment waterfall over supplied rows without persisting"""
    try:
        result = apply_payment_waterfall(
            request.payment,
            [row.to_row() for row in request.rows],
            request.existing_credit,
            request.overpayment_option
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AllocationResponse.from_result(result)


@router.post("/{loan_id}", response_model=PaymentResponse)
async def apply_payment(
    loan_id: str,
    request: PaymentRequest,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Apply a payment, splitting it between interest and principal"""
    try:
        outcome = system.servicer.apply_payment(
            ctx, loan_id, request.amount,
            payment_date=request.payment_date,
            overpayment_option=request.overpayment_option,
            expected_version=request.expected_version,
            reference=request.reference
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _response(outcome)


@router.post("/{loan_id}/manual", response_model=PaymentResponse)
async def apply_manual_payment(
    loan_id: str,
    request: ManualPaymentRequest,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Apply a payment with an explicit interest/principal split"""
    try:
        outcome = system.servicer.apply_manual_payment(
            ctx, loan_id, request.interest_amount, request.principal_amount,
            payment_date=request.payment_date,
            overpayment_option=request.overpayment_option,
            expected_version=request.expected_version,
            reference=request.reference
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _response(outcome)


@router.get("/{loan_id}/transactions")
async def get_transactions(
    loan_id: str,
    ctx: OrgContext = Depends(get_org_context),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """List a loan's recorded transactions"""
    try:
        system.servicer.get_loan(ctx, loan_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Loan not found")

    transactions = system.servicer.get_transactions(ctx, loan_id)
    return {"transactions": [tx.to_dict() for tx in transactions]}
