"""
Capital Events Ledger Module

Derives principal movements (repayments and further advances) from a
loan's transaction history and accrues interest across them, segmenting
at each capital change so mid-period movements are charged correctly.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import uuid

from .currency import ZERO, round_currency, to_decimal
from .loans import Loan, LoanStatus, ScheduleRow, _coerce_date, add_periods
from .logging_config import get_logger


logger = get_logger("loan_servicing.ledger")

DAYS_PER_YEAR = Decimal(365)


class TransactionType(Enum):
    """Loan transaction types that move principal"""
    REPAYMENT = "Repayment"
    DISBURSEMENT = "Disbursement"


@dataclass
class LoanTransaction:
    """Money movement recorded against a loan"""
    loan_id: str
    type: TransactionType
    date: date
    amount: Decimal
    principal_applied: Decimal = ZERO
    interest_applied: Decimal = ZERO
    gross_amount: Optional[Decimal] = None   # Disbursements: amount owed before fees
    is_deleted: bool = False
    reference: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = TransactionType(self.type)
        self.date = _coerce_date(self.date, "transaction date")
        self.amount = to_decimal(self.amount)
        self.principal_applied = to_decimal(self.principal_applied)
        self.interest_applied = to_decimal(self.interest_applied)
        if self.gross_amount is not None:
            self.gross_amount = to_decimal(self.gross_amount)

    @property
    def advance_amount(self) -> Decimal:
        """Principal a disbursement adds, preferring the gross amount"""
        return self.gross_amount if self.gross_amount is not None else self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'type': self.type.value,
            'date': self.date.isoformat(),
            'amount': str(self.amount),
            'principal_applied': str(self.principal_applied),
            'interest_applied': str(self.interest_applied),
            'gross_amount': str(self.gross_amount) if self.gross_amount is not None else None,
            'is_deleted': self.is_deleted,
            'reference': self.reference,
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LoanTransaction':
        data = dict(data)
        data.pop('_org_id', None)
        if isinstance(data.get('created_at'), str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        return cls(**data)


TransactionInput = Union[LoanTransaction, Mapping[str, Any]]


@dataclass(frozen=True)
class CapitalEvent:
    """A change in outstanding principal on a date"""
    date: date
    principal_change: Decimal
    description: str
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class InterestSegment:
    """Interest charged on a constant balance at a constant rate"""
    start_date: date
    end_date: date
    days: int
    principal: Decimal
    rate: Decimal            # Annual percent
    interest: Decimal


@dataclass
class LedgerInterest:
    """Interest accrued across a window, with its breakdown"""
    total_interest: Decimal = ZERO
    segments: List[InterestSegment] = field(default_factory=list)

    @property
    def days(self) -> int:
        return sum(segment.days for segment in self.segments)


@dataclass
class AccruedInterestPosition:
    """Interest and principal position derived from transaction history"""
    interest_accrued: Decimal
    interest_paid: Decimal
    interest_remaining: Decimal
    principal_remaining: Decimal


def _as_transaction(tx: TransactionInput) -> LoanTransaction:
    if isinstance(tx, LoanTransaction):
        return tx
    return LoanTransaction.from_dict(tx)


def _live_transactions(transactions: Iterable[TransactionInput]) -> List[LoanTransaction]:
    return [t for t in (_as_transaction(tx) for tx in transactions or ()) if not t.is_deleted]


def _further_advances(loan: Loan, transactions: List[LoanTransaction]) -> List[LoanTransaction]:
    # The disbursement on the start date is the original principal
    return [tx for tx in transactions
            if tx.type is TransactionType.DISBURSEMENT and tx.date != loan.start_date]


def build_capital_events(loan: Loan, transactions: Iterable[TransactionInput]) -> List[CapitalEvent]:
    """
    Chronological principal changes from a loan's transactions

    Repayments with principal applied reduce principal; disbursements other
    than the initial one on the start date are further advances. Deleted
    transactions are ignored.
    """
    live = _live_transactions(transactions)
    events = []

    for tx in live:
        if tx.type is TransactionType.REPAYMENT and tx.principal_applied > ZERO:
            events.append(CapitalEvent(
                date=tx.date,
                principal_change=-tx.principal_applied,
                description=f"Repayment: -{tx.principal_applied:.2f} principal",
                transaction_id=tx.id
            ))

    for tx in _further_advances(loan, live):
        events.append(CapitalEvent(
            date=tx.date,
            principal_change=tx.advance_amount,
            description=f"Further Advance: +{tx.advance_amount:.2f}",
            transaction_id=tx.id
        ))

    events.sort(key=lambda event: event.date)
    return events


def calculate_interest_from_ledger(
    loan: Loan,
    capital_events: List[CapitalEvent],
    from_date: date,
    to_date: date
) -> LedgerInterest:
    """
    Interest accrued between two dates across capital events

    Events dated on or before ``from_date`` set the opening principal; later
    events and the penalty-rate date split the window into segments. Each
    segment accrues ``principal x rate / 365 x days`` at the rate in force
    on its first day.

    Args:
        loan: Loan servicing record
        capital_events: Events sorted by date, from build_capital_events
        from_date: Window start (exclusive for interest)
        to_date: Window end (inclusive)

    Returns:
        Total interest rounded to the penny plus per-segment breakdown
    """
    from_date = _coerce_date(from_date, "from date")
    to_date = _coerce_date(to_date, "to date")
    if from_date >= to_date:
        return LedgerInterest()

    running_principal = loan.principal_amount
    index = 0
    while index < len(capital_events) and capital_events[index].date <= from_date:
        running_principal = max(ZERO, running_principal + capital_events[index].principal_change)
        index += 1

    result = LedgerInterest()
    total = ZERO
    segment_start = from_date

    while segment_start < to_date:
        rate = loan.rate_on(segment_start)
        if index < len(capital_events) and capital_events[index].date < to_date:
            segment_end = capital_events[index].date
        else:
            segment_end = to_date
        penalty_from = loan.penalty_rate_from if loan.has_penalty_rate and loan.penalty_rate else None
        if penalty_from is not None and segment_start < penalty_from < segment_end:
            segment_end = penalty_from

        days = (segment_end - segment_start).days
        if days > 0 and running_principal > ZERO:
            interest = running_principal * rate / Decimal(100) / DAYS_PER_YEAR * Decimal(days)
            total += interest
            result.segments.append(InterestSegment(
                start_date=segment_start,
                end_date=segment_end,
                days=days,
                principal=running_principal,
                rate=rate,
                interest=round_currency(interest)
            ))

        segment_start = segment_end
        # Several events can share a date
        while index < len(capital_events) and capital_events[index].date == segment_end:
            running_principal = max(ZERO, running_principal + capital_events[index].principal_change)
            index += 1

    result.total_interest = round_currency(total)
    return result


def calculate_accrued_interest_with_transactions(
    loan: Optional[Loan],
    transactions: Iterable[TransactionInput] = (),
    as_of: Optional[date] = None,
    schedule_rows: Iterable[ScheduleRow] = ()
) -> AccruedInterestPosition:
    """
    Interest position from a loan's transaction history

    With schedule rows, interest is what the periods due so far really
    owe (see calculate_loan_interest_balance). Without them each day
    accrues at the contract rate on the principal outstanding that day,
    after applying any repayment or further advance dated that day.
    """
    if loan is None:
        return AccruedInterestPosition(ZERO, ZERO, ZERO, ZERO)
    if loan.status is LoanStatus.PENDING:
        return AccruedInterestPosition(ZERO, ZERO, ZERO, loan.principal_amount)

    as_of = _coerce_date(as_of or date.today(), "as-of date")
    live = _live_transactions(transactions)
    repayments = [tx for tx in live if tx.type is TransactionType.REPAYMENT]
    advances = _further_advances(loan, live)

    principal_paid = sum((tx.principal_applied for tx in repayments), ZERO)
    interest_paid = sum((tx.interest_applied for tx in repayments), ZERO)
    total_advanced = sum((tx.advance_amount for tx in advances), ZERO)
    principal_remaining = loan.principal_amount + total_advanced - principal_paid

    rows = list(schedule_rows or ())
    if rows:
        balance = calculate_loan_interest_balance(loan, rows, live, as_of)
        return AccruedInterestPosition(
            interest_accrued=balance.total_interest_due,
            interest_paid=balance.total_interest_paid,
            interest_remaining=balance.interest_balance,
            principal_remaining=round_currency(principal_remaining)
        )

    movements: Dict[date, Decimal] = {}
    for tx in advances:
        movements[tx.date] = movements.get(tx.date, ZERO) + tx.advance_amount
    for tx in repayments:
        if tx.principal_applied > ZERO:
            movements[tx.date] = movements.get(tx.date, ZERO) - tx.principal_applied

    daily_rate = loan.interest_rate / Decimal(100) / DAYS_PER_YEAR
    days_elapsed = max(0, (as_of - loan.start_date).days)
    running_principal = loan.principal_amount
    accrued = ZERO

    for offset in range(days_elapsed):
        current = loan.start_date + timedelta(days=offset)
        if current in movements:
            running_principal = max(ZERO, running_principal + movements[current])
        accrued += running_principal * daily_rate

    logger.debug("Loan %s accrued %s over %d days from %d transactions",
                 loan.id, accrued, days_elapsed, len(live))

    return AccruedInterestPosition(
        interest_accrued=round_currency(accrued),
        interest_paid=round_currency(interest_paid),
        interest_remaining=round_currency(accrued - interest_paid),
        principal_remaining=round_currency(principal_remaining)
    )


@dataclass
class PeriodInterest:
    """Ledger interest for one schedule period"""
    installment_number: int
    row_id: Optional[str]
    due_date: date
    period_start: date
    period_end: date
    days: int
    scheduled_interest: Decimal
    interest_due: Decimal
    running_interest_due: Decimal
    segments: List[InterestSegment] = field(default_factory=list)


@dataclass
class PeriodInterestResult:
    periods: List[PeriodInterest]
    total_interest_due: Decimal
    capital_events: List[CapitalEvent]


@dataclass
class InterestBalance:
    """Interest due on the schedule's periods against interest actually paid"""
    total_interest_due: Decimal
    total_interest_paid: Decimal
    interest_balance: Decimal
    periods: List[PeriodInterest] = field(default_factory=list)


def _period_bounds(loan: Loan, rows: List[ScheduleRow], index: int, in_advance: bool):
    due_date = rows[index].due_date
    if in_advance:
        # Due at the start of the period it covers
        if index + 1 < len(rows):
            return due_date, rows[index + 1].due_date
        return due_date, add_periods(due_date, loan.period, 1)
    if index == 0:
        return loan.start_date, due_date
    return rows[index - 1].due_date, due_date


def calculate_interest_by_period(
    loan: Loan,
    schedule_rows: Iterable[ScheduleRow],
    transactions: Iterable[TransactionInput] = (),
    as_of: Optional[date] = None
) -> PeriodInterestResult:
    """
    Interest actually due on each schedule period up to a date

    Every row due on or before ``as_of`` is charged through
    calculate_interest_from_ledger, so repayments and further advances
    made mid-period are reflected in what the period really owes rather
    than what the schedule projected at origination. Schedules whose first
    row falls due on the start date collect interest in advance; their
    periods run forward from each due date.

    Args:
        loan: Loan servicing record
        schedule_rows: Stored schedule rows in any order
        transactions: Loan transactions; deleted ones are ignored
        as_of: Last due date to include (defaults to today)

    Returns:
        Per-period interest, the rounded running total and the capital
        events used
    """
    as_of = _coerce_date(as_of or date.today(), "as-of date")
    capital_events = build_capital_events(loan, transactions)
    rows = sorted(schedule_rows, key=lambda row: row.due_date)
    in_advance = bool(rows) and rows[0].due_date == loan.start_date

    periods = []
    running = ZERO
    for index, row in enumerate(rows):
        if row.due_date > as_of:
            break
        period_start, period_end = _period_bounds(loan, rows, index, in_advance)
        ledger = calculate_interest_from_ledger(loan, capital_events, period_start, period_end)
        running += ledger.total_interest
        periods.append(PeriodInterest(
            installment_number=row.installment_number,
            row_id=row.id,
            due_date=row.due_date,
            period_start=period_start,
            period_end=period_end,
            days=ledger.days,
            scheduled_interest=row.interest_amount,
            interest_due=ledger.total_interest,
            running_interest_due=round_currency(running),
            segments=ledger.segments
        ))

    return PeriodInterestResult(
        periods=periods,
        total_interest_due=round_currency(running),
        capital_events=capital_events
    )


def calculate_loan_interest_balance(
    loan: Optional[Loan],
    schedule_rows: Iterable[ScheduleRow] = (),
    transactions: Iterable[TransactionInput] = (),
    as_of: Optional[date] = None
) -> InterestBalance:
    """
    Interest due on the schedule so far less interest paid so far

    Interest paid is what repayments dated on or before ``as_of`` applied
    to interest. Pending loans owe nothing.
    """
    rows = list(schedule_rows or ())
    if loan is None or loan.status is LoanStatus.PENDING or not rows:
        return InterestBalance(ZERO, ZERO, ZERO)

    as_of = _coerce_date(as_of or date.today(), "as-of date")
    by_period = calculate_interest_by_period(loan, rows, transactions, as_of)
    interest_paid = sum((tx.interest_applied for tx in _live_transactions(transactions)
                         if tx.type is TransactionType.REPAYMENT and tx.date <= as_of), ZERO)

    return InterestBalance(
        total_interest_due=by_period.total_interest_due,
        total_interest_paid=round_currency(interest_paid),
        interest_balance=round_currency(by_period.total_interest_due - interest_paid),
        periods=by_period.periods
    )
