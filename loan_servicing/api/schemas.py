"""
Pydantic schemas for API requests and responses

Monetary amounts and rates travel as decimal strings.
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field

from ..accrual import calculate_accrued_interest
from ..ledger import PeriodInterest
from ..loans import Loan, LoanStatus, LoanTerms, ScheduleRow, ScheduleStatus
from ..schedule import ScheduleSummary
from ..waterfall import RowAllocation, WaterfallResult


class LoanTermsModel(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_interest_rate: str = Field(..., description="Annual rate in percent, e.g. '12'")
    duration: int = Field(..., description="Number of installments")
    interest_type: str = "Reducing"
    period: str = "Monthly"
    start_date: date
    interest_only_periods: int = 0
    interest_alignment: str = "period_based"
    interest_paid_in_advance: bool = False
    extend_for_full_period: bool = False
    has_penalty_rate: bool = False
    penalty_rate: Optional[str] = None
    penalty_rate_from: Optional[date] = None

    def to_loan_terms(self) -> LoanTerms:
        return LoanTerms(
            principal=self.principal,
            annual_interest_rate=self.annual_interest_rate,
            duration=self.duration,
            interest_type=self.interest_type,
            period=self.period,
            start_date=self.start_date,
            interest_only_periods=self.interest_only_periods,
            interest_alignment=self.interest_alignment,
            interest_paid_in_advance=self.interest_paid_in_advance,
            extend_for_full_period=self.extend_for_full_period,
            has_penalty_rate=self.has_penalty_rate,
            penalty_rate=self.penalty_rate,
            penalty_rate_from=self.penalty_rate_from
        )


class PrincipalReductionModel(BaseModel):
    date: date
    amount: str


class ScheduleRowModel(BaseModel):
    id: Optional[str] = None
    installment_number: int
    due_date: date
    principal_amount: str
    interest_amount: str
    total_due: str
    balance: str
    principal_paid: str = "0"
    interest_paid: str = "0"
    status: str = ScheduleStatus.PENDING.value
    is_extension_period: bool = False

    def to_row(self) -> ScheduleRow:
        return ScheduleRow(
            id=self.id,
            installment_number=self.installment_number,
            due_date=self.due_date,
            principal_amount=Decimal(self.principal_amount),
            interest_amount=Decimal(self.interest_amount),
            total_due=Decimal(self.total_due),
            balance=Decimal(self.balance),
            principal_paid=Decimal(self.principal_paid),
            interest_paid=Decimal(self.interest_paid),
            status=ScheduleStatus(self.status),
            is_extension_period=self.is_extension_period
        )

    @classmethod
    def from_row(cls, row: ScheduleRow) -> 'ScheduleRowModel':
        return cls(**row.to_dict())


class ScheduleSummaryModel(BaseModel):
    total_principal: str
    total_interest: str
    total_repayable: str
    installment_amount: str
    number_of_installments: int

    @classmethod
    def from_summary(cls, summary: ScheduleSummary) -> 'ScheduleSummaryModel':
        return cls(
            total_principal=str(summary.total_principal),
            total_interest=str(summary.total_interest),
            total_repayable=str(summary.total_repayable),
            installment_amount=str(summary.installment_amount),
            number_of_installments=summary.number_of_installments
        )


class ScheduleResponse(BaseModel):
    rows: List[ScheduleRowModel]
    summary: ScheduleSummaryModel


class SchedulePreviewRequest(BaseModel):
    terms: LoanTermsModel
    applied_principal_reductions: List[PrincipalReductionModel] = []


# Loan schemas
class CreateLoanRequest(BaseModel):
    terms: LoanTermsModel
    loan_number: Optional[str] = None
    borrower_id: Optional[str] = None
    status: str = LoanStatus.LIVE.value


class UpdateStatusRequest(BaseModel):
    status: str
    expected_version: Optional[int] = None


class FurtherAdvanceRequest(BaseModel):
    amount: str
    advance_date: date
    gross_amount: Optional[str] = None
    expected_version: Optional[int] = None


class LoanResponse(BaseModel):
    id: str
    loan_number: Optional[str] = None
    borrower_id: Optional[str] = None
    status: str
    principal_amount: str
    interest_rate: str
    interest_type: Optional[str] = None
    period: str
    duration: int
    start_date: date
    total_interest: Optional[str] = None
    principal_paid: str
    interest_paid: str
    credit_balance: str
    version: int

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanResponse':
        data = loan.to_dict()
        return cls(**{key: data[key] for key in cls.model_fields})


# Payment schemas
class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[date] = None
    overpayment_option: Optional[str] = None
    expected_version: Optional[int] = None
    reference: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    interest_amount: str
    principal_amount: str
    payment_date: Optional[date] = None
    overpayment_option: Optional[str] = None
    expected_version: Optional[int] = None
    reference: Optional[str] = None


class WaterfallPreviewRequest(BaseModel):
    payment: str
    rows: List[ScheduleRowModel]
    existing_credit: str = "0"
    overpayment_option: str = "credit"


class RowAllocationModel(BaseModel):
    row_id: Optional[str] = None
    installment_number: int
    interest_paid: str
    principal_paid: str
    status: str
    interest_applied: str
    principal_applied: str

    @classmethod
    def from_allocation(cls, allocation: RowAllocation) -> 'RowAllocationModel':
        return cls(
            row_id=allocation.row_id,
            installment_number=allocation.installment_number,
            interest_paid=str(allocation.interest_paid),
            principal_paid=str(allocation.principal_paid),
            status=allocation.status.value,
            interest_applied=str(allocation.interest_applied),
            principal_applied=str(allocation.principal_applied)
        )


class AllocationResponse(BaseModel):
    updates: List[RowAllocationModel]
    remaining_payment: Optional[str] = None
    principal_reduction: str
    credit_amount: str

    @classmethod
    def from_result(cls, result) -> 'AllocationResponse':
        remaining = None
        if isinstance(result, WaterfallResult):
            remaining = str(result.remaining_payment)
        return cls(
            updates=[RowAllocationModel.from_allocation(u) for u in result.updates],
            remaining_payment=remaining,
            principal_reduction=str(result.principal_reduction),
            credit_amount=str(result.credit_amount)
        )


class PaymentResponse(BaseModel):
    transaction_id: str
    principal_applied: str
    interest_applied: str
    allocation: AllocationResponse
    loan: LoanResponse


# Interest schemas
class AccruedInterestRequest(BaseModel):
    terms: LoanTermsModel
    as_of: date
    status: str = LoanStatus.LIVE.value
    total_interest: Optional[str] = None

    def accrued(self) -> Decimal:
        terms = self.terms.to_loan_terms()
        loan = Loan(
            principal_amount=terms.principal,
            interest_rate=terms.annual_interest_rate,
            duration=terms.duration,
            interest_type=terms.interest_type,
            period=terms.period,
            start_date=terms.start_date,
            status=LoanStatus(self.status),
            has_penalty_rate=terms.has_penalty_rate,
            penalty_rate=terms.penalty_rate,
            penalty_rate_from=terms.penalty_rate_from,
            total_interest=self.total_interest
        )
        return calculate_accrued_interest(loan, self.as_of)


class InterestPositionResponse(BaseModel):
    loan_id: str
    as_of: date
    accrued: str
    interest_paid: str
    outstanding: str
    ledger_accrued: str
    ledger_interest_remaining: str
    principal_remaining: str
    schedule_interest_due: str
    schedule_interest_paid: str
    schedule_interest_balance: str


class PeriodInterestModel(BaseModel):
    installment_number: int
    row_id: Optional[str] = None
    due_date: date
    period_start: date
    period_end: date
    days: int
    scheduled_interest: str
    interest_due: str
    running_interest_due: str

    @classmethod
    def from_period(cls, period: PeriodInterest) -> 'PeriodInterestModel':
        return cls(
            installment_number=period.installment_number,
            row_id=period.row_id,
            due_date=period.due_date,
            period_start=period.period_start,
            period_end=period.period_end,
            days=period.days,
            scheduled_interest=str(period.scheduled_interest),
            interest_due=str(period.interest_due),
            running_interest_due=str(period.running_interest_due)
        )


class InterestPeriodsResponse(BaseModel):
    loan_id: str
    as_of: date
    periods: List[PeriodInterestModel]
    total_interest_due: str
    total_interest_paid: str
    interest_balance: str
