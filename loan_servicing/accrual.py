"""
Interest Accrual Module

Computes how much interest a loan has accrued as of a date, independently
of its materialized repayment schedule. Used to reconcile what is owed
today against schedule rows, including penalty-rate step changes.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Optional, Tuple

from .currency import ZERO, Numeric, round_currency, to_decimal
from .loans import InterestType, Loan, LoanStatus
from .logging_config import get_logger
from .schedule import annuity_payment


logger = get_logger("loan_servicing.accrual")

DAYS_PER_YEAR = Decimal(365)


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def get_effective_rate(loan: Optional[Loan], on_date: Optional[date] = None) -> Decimal:
    """
    Annual interest rate (percent) in force on a date

    Returns the penalty rate when the loan carries one and ``on_date`` is on
    or after its effective date, otherwise the contract rate.
    """
    if loan is None:
        return ZERO
    return loan.rate_on(_as_date(on_date) or date.today())


def _split_days(loan: Loan, as_of: date, days_elapsed: int) -> Tuple[int, int]:
    """Split elapsed days into (contract-rate days, penalty-rate days)"""
    if not (loan.has_penalty_rate and loan.penalty_rate and loan.penalty_rate_from):
        return days_elapsed, 0

    penalty_from = loan.penalty_rate_from
    if loan.start_date < penalty_from <= as_of:
        days_to_penalty = (penalty_from - loan.start_date).days
        return days_to_penalty, days_elapsed - days_to_penalty
    if penalty_from <= loan.start_date:
        return 0, days_elapsed
    return days_elapsed, 0


def _simple_interest(balance: Decimal, annual_rate: Decimal, days: int) -> Decimal:
    return balance * (annual_rate / DAYS_PER_YEAR) * Decimal(days)


def calculate_accrued_interest(loan: Optional[Loan], as_of: Optional[date] = None) -> Decimal:
    """
    Interest accrued from the loan's start date to ``as_of``

    Not reduced by payments. Loans that have not been disbursed yet accrue
    nothing. Unknown interest types fall back to straight-line accrual of
    the loan's scheduled total interest.

    Args:
        loan: Loan servicing record
        as_of: Accrual date (defaults to today)

    Returns:
        Accrued interest rounded to the penny, never negative
    """
    if loan is None or loan.status is LoanStatus.PENDING:
        return ZERO

    as_of = _as_date(as_of) or date.today()
    days_elapsed = max(0, (as_of - loan.start_date).days)
    days_per_period = loan.period.average_days
    periods_elapsed = Decimal(days_elapsed) / days_per_period
    principal = loan.principal_amount

    days_to_penalty, days_at_penalty = _split_days(loan, as_of, days_elapsed)

    annual_rate = loan.interest_rate / Decimal(100)
    penalty_annual_rate = (loan.penalty_rate if loan.penalty_rate else loan.interest_rate) / Decimal(100)
    period_rate = annual_rate / Decimal(loan.period.periods_per_year)
    penalty_period_rate = penalty_annual_rate / Decimal(loan.period.periods_per_year)

    def split_simple() -> Decimal:
        return (_simple_interest(principal, annual_rate, days_to_penalty) +
                _simple_interest(principal, penalty_annual_rate, days_at_penalty))

    def straight_line(total_interest: Decimal) -> Decimal:
        total_days = Decimal(loan.duration) * days_per_period
        if total_days <= ZERO:
            return ZERO
        return min(total_interest / total_days * Decimal(days_elapsed), total_interest)

    interest_type = loan.known_interest_type

    if interest_type is InterestType.FLAT:
        if days_at_penalty > 0:
            accrued = split_simple()
        else:
            total_interest = loan.total_interest
            if total_interest is None:
                total_interest = (principal * annual_rate * Decimal(loan.duration) /
                                  Decimal(loan.period.periods_per_year))
            accrued = straight_line(total_interest)

    elif interest_type is InterestType.REDUCING:
        periods_completed = min(int(periods_elapsed), loan.duration)
        penalty_configured = bool(loan.has_penalty_rate and loan.penalty_rate and loan.penalty_rate_from)
        payment = annuity_payment(principal, period_rate, loan.duration)
        balance = principal
        accrued = ZERO

        for i in range(periods_completed):
            period_end_day = Decimal(i + 1) * days_per_period
            use_penalty = penalty_configured and Decimal(days_to_penalty) < period_end_day
            accrued += balance * (penalty_period_rate if use_penalty else period_rate)
            # Amortization follows the contract payment even under penalty
            balance = max(ZERO, balance - (payment - balance * period_rate))

        if periods_elapsed > periods_completed and balance > ZERO:
            partial_days = Decimal(days_elapsed) - Decimal(periods_completed) * days_per_period
            daily_rate = (penalty_annual_rate if days_at_penalty > 0 else annual_rate) / DAYS_PER_YEAR
            accrued += balance * daily_rate * partial_days

    elif interest_type is InterestType.INTEREST_ONLY:
        if days_at_penalty > 0:
            accrued = split_simple()
        else:
            accrued = periods_elapsed * principal * period_rate

    elif interest_type is InterestType.ROLLED_UP:
        daily_rate = annual_rate / DAYS_PER_YEAR
        if days_at_penalty > 0:
            penalty_daily_rate = penalty_annual_rate / DAYS_PER_YEAR
            amount_at_penalty = principal * (Decimal(1) + daily_rate) ** days_to_penalty
            final_amount = amount_at_penalty * (Decimal(1) + penalty_daily_rate) ** days_at_penalty
            accrued = final_amount - principal
        else:
            accrued = principal * ((Decimal(1) + daily_rate) ** days_elapsed - Decimal(1))

    else:
        logger.debug("Loan %s has unknown interest type %r, using straight-line accrual",
                     loan.id, loan.interest_type)
        if days_at_penalty > 0:
            accrued = split_simple()
        else:
            accrued = straight_line(loan.total_interest or ZERO)

    return round_currency(max(ZERO, accrued))


def calculate_live_interest_outstanding(
    loan: Optional[Loan],
    actual_interest_paid: Optional[Numeric] = None,
    as_of: Optional[date] = None
) -> Decimal:
    """
    Accrued interest less interest paid

    Args:
        loan: Loan servicing record
        actual_interest_paid: Interest paid per the transaction history;
            defaults to the loan's recorded ``interest_paid``
        as_of: Accrual date (defaults to today)

    Returns:
        Outstanding interest, negative when interest has been overpaid
    """
    accrued = calculate_accrued_interest(loan, as_of)
    if actual_interest_paid is not None:
        interest_paid = to_decimal(actual_interest_paid)
    else:
        interest_paid = loan.interest_paid if loan is not None else ZERO
    return round_currency(accrued - interest_paid)
