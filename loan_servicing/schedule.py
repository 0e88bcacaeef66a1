"""
Schedule Generator Module

Builds repayment schedules for Flat, Reducing, Interest-Only and Rolled-Up
loans under period-based, interest-in-advance and monthly-first due date
conventions.

Every amount is quantized to the penny when its row is built, and balances
carried between rows are built from those rounded amounts, so each schedule
reconciles exactly against the principal it amortizes.
"""

from decimal import Decimal
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Mapping, Sequence, Tuple, Union

from .currency import ZERO, round_currency
from .loans import (
    InterestAlignment, InterestType, LoanTerms, Period, PrincipalReduction,
    ScheduleRow, add_months, add_periods, end_of_month, start_of_month
)
from .logging_config import get_logger


logger = get_logger("loan_servicing.schedule")

# Projection rows emitted after a rolled-up term ends
ROLLED_UP_EXTENSION_MONTHS = 12

DAYS_PER_YEAR = Decimal(365)
MONTHS_PER_YEAR = Decimal(12)

ReductionInput = Union[PrincipalReduction, Mapping]


@dataclass(frozen=True)
class ScheduleSummary:
    """Aggregate figures for a generated schedule"""
    total_principal: Decimal
    total_interest: Decimal
    total_repayable: Decimal
    installment_amount: Decimal
    number_of_installments: int


def generate_schedule(
    terms: LoanTerms,
    applied_principal_reductions: Iterable[ReductionInput] = ()
) -> List[ScheduleRow]:
    """
    Generate the repayment schedule for a loan

    Args:
        terms: Loan terms
        applied_principal_reductions: Principal already applied against the
            loan, as ``PrincipalReduction`` objects or ``{date, amount}``
            mappings. Period-based schedules net these off the outstanding
            balance so that early repayments lower future interest.

    Returns:
        Rows ordered by installment number and due date
    """
    if not isinstance(terms, LoanTerms):
        raise TypeError(f"Expected LoanTerms, got {type(terms).__name__}")

    reductions = _normalize_reductions(applied_principal_reductions)

    if terms.interest_alignment is InterestAlignment.MONTHLY_FIRST and terms.period is Period.MONTHLY:
        schedule = _monthly_first_schedule(terms, reductions)
    elif terms.interest_paid_in_advance and terms.interest_type is not InterestType.ROLLED_UP:
        schedule = _advance_interest_schedule(terms)
    else:
        schedule = _period_based_schedule(terms, reductions)

    logger.debug(
        "Generated %d schedule rows (%s, %s, %s)",
        len(schedule), terms.interest_type.value, terms.period.value, terms.interest_alignment.value
    )
    return schedule


def nets_principal_reductions(terms: LoanTerms) -> bool:
    """
    Whether ``generate_schedule`` lowers future rows for principal repaid early

    Flat, interest-in-advance and monthly-first schedules are fixed at
    origination; only Rolled-Up nets reductions under every convention.
    """
    if terms.interest_type is InterestType.ROLLED_UP:
        return True
    if terms.interest_type is InterestType.FLAT:
        return False
    if terms.interest_alignment is InterestAlignment.MONTHLY_FIRST and terms.period is Period.MONTHLY:
        return False
    return not terms.interest_paid_in_advance


def calculate_loan_summary(schedule: Sequence[ScheduleRow]) -> ScheduleSummary:
    """Summarize a schedule's principal, interest and repayable totals"""
    total_principal = sum((row.principal_amount for row in schedule), ZERO)
    total_interest = sum((row.interest_amount for row in schedule), ZERO)
    total_repayable = sum((row.total_due for row in schedule), ZERO)

    return ScheduleSummary(
        total_principal=round_currency(total_principal),
        total_interest=round_currency(total_interest),
        total_repayable=round_currency(total_repayable),
        installment_amount=schedule[0].total_due if schedule else ZERO,
        number_of_installments=len(schedule)
    )


def annuity_payment(balance: Decimal, rate: Decimal, periods: int) -> Decimal:
    """
    Level payment that amortizes ``balance`` over ``periods``

    The formula is ``P * r * (1 + r)^n / ((1 + r)^n - 1)``. A zero rate
    degenerates to straight-line ``P / n``.
    """
    if balance <= ZERO:
        return ZERO
    if periods <= 0:
        return balance
    factor = (Decimal(1) + rate) ** periods
    if factor - Decimal(1) == ZERO:
        return balance / Decimal(periods)
    return balance * rate * factor / (factor - Decimal(1))


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _normalize_reductions(reductions: Iterable[ReductionInput]) -> List[PrincipalReduction]:
    normalized = []
    for reduction in reductions or ():
        if isinstance(reduction, PrincipalReduction):
            normalized.append(reduction)
        else:
            amount = reduction.get('amount', reduction.get('amount_applied', reduction.get('principal_applied')))
            normalized.append(PrincipalReduction(date=reduction['date'], amount=amount or ZERO))
    return normalized


def _principal_paid_before(reductions: Sequence[PrincipalReduction], due_date: date) -> Decimal:
    return sum((r.amount for r in reductions if r.date < due_date), ZERO)


def _opening_balance(carried: Decimal, principal: Decimal,
                     reductions: Sequence[PrincipalReduction], due_date: date) -> Decimal:
    """
    Outstanding principal at the start of the period ending ``due_date``

    The schedule's own carried balance, lowered to the actual balance when
    more principal than scheduled was repaid before the due date.
    """
    actual = principal - _principal_paid_before(reductions, due_date)
    return max(ZERO, min(carried, round_currency(actual)))


def _row(number: int, due_date: date, principal: Decimal, interest: Decimal,
         balance: Decimal, is_extension_period: bool = False) -> ScheduleRow:
    principal = round_currency(principal)
    interest = round_currency(interest)
    return ScheduleRow(
        installment_number=number,
        due_date=due_date,
        principal_amount=principal,
        interest_amount=interest,
        total_due=principal + interest,
        balance=max(ZERO, round_currency(balance)),
        is_extension_period=is_extension_period
    )


def _amortizing_step(opening: Decimal, rate: Decimal, periods_left: int) -> Tuple[Decimal, Decimal]:
    """Interest and principal for one period of a re-derived annuity"""
    raw_interest = opening * rate
    if periods_left <= 1:
        return round_currency(raw_interest), opening
    payment = annuity_payment(opening, rate, periods_left)
    principal = round_currency(payment - raw_interest)
    return round_currency(raw_interest), max(ZERO, min(principal, opening))


def _fixed_payment_rows(balance: Decimal, rate: Decimal, due_dates: Sequence[date],
                        first_number: int) -> List[ScheduleRow]:
    """Rows for a single up-front annuity run, final row clears the balance"""
    rows = []
    payment = annuity_payment(balance, rate, len(due_dates))
    for offset, due_date in enumerate(due_dates):
        raw_interest = balance * rate
        if offset == len(due_dates) - 1:
            principal = balance
        else:
            principal = max(ZERO, min(round_currency(payment - raw_interest), balance))
        balance = balance - principal
        rows.append(_row(first_number + offset, due_date, principal, raw_interest, balance))
    return rows


def _flat_rows(terms: LoanTerms, due_dates: Sequence[date]) -> List[ScheduleRow]:
    """Equal principal and equal interest on the original principal"""
    duration = Decimal(terms.duration)
    total_interest = round_currency(
        terms.principal * terms.annual_interest_rate / Decimal(100) * duration / Decimal(terms.periods_per_year)
    )
    interest_per_period = round_currency(total_interest / duration)
    principal_per_period = round_currency(terms.principal / duration)

    rows = []
    balance = terms.principal
    interest_billed = ZERO
    for index, due_date in enumerate(due_dates, start=1):
        if index == len(due_dates):
            principal = balance
            interest = max(ZERO, total_interest - interest_billed)
        else:
            principal = min(principal_per_period, balance)
            interest = interest_per_period
        balance = balance - principal
        interest_billed += interest
        rows.append(_row(index, due_date, principal, interest, balance))
    return rows


# ---------------------------------------------------------------------------
# Period-based schedules (due at the end of each period)
# ---------------------------------------------------------------------------

def _period_based_schedule(terms: LoanTerms,
                           reductions: Sequence[PrincipalReduction]) -> List[ScheduleRow]:
    if terms.interest_type is InterestType.ROLLED_UP:
        return _rolled_up_schedule(terms, reductions)
    if terms.interest_type is InterestType.INTEREST_ONLY:
        return _interest_only_schedule(terms, reductions)
    if terms.interest_type is InterestType.FLAT:
        due_dates = [add_periods(terms.start_date, terms.period, i) for i in range(1, terms.duration + 1)]
        return _flat_rows(terms, due_dates)
    return _reducing_schedule(terms, reductions)


def _reducing_schedule(terms: LoanTerms,
                       reductions: Sequence[PrincipalReduction]) -> List[ScheduleRow]:
    rate = terms.period_rate
    rows = []
    carried = terms.principal

    for i in range(1, terms.duration + 1):
        due_date = add_periods(terms.start_date, terms.period, i)
        opening = _opening_balance(carried, terms.principal, reductions, due_date)
        interest, principal = _amortizing_step(opening, rate, terms.duration - i + 1)
        carried = opening - principal
        rows.append(_row(i, due_date, principal, interest, carried))

    return rows


def _interest_only_schedule(terms: LoanTerms,
                            reductions: Sequence[PrincipalReduction]) -> List[ScheduleRow]:
    rate = terms.period_rate
    effective_io_periods = terms.interest_only_periods or terms.duration
    rows = []

    for i in range(1, effective_io_periods + 1):
        due_date = add_periods(terms.start_date, terms.period, i)
        opening = _opening_balance(terms.principal, terms.principal, reductions, due_date)
        rows.append(_row(i, due_date, ZERO, opening * rate, opening))

    if 0 < terms.interest_only_periods < terms.duration:
        remaining = terms.duration - terms.interest_only_periods
        carried = terms.principal
        for i in range(1, remaining + 1):
            due_date = add_periods(terms.start_date, terms.period, effective_io_periods + i)
            opening = _opening_balance(carried, terms.principal, reductions, due_date)
            interest, principal = _amortizing_step(opening, rate, remaining - i + 1)
            carried = opening - principal
            rows.append(_row(effective_io_periods + i, due_date, principal, interest, carried))
    else:
        # Balloon: outstanding principal falls due with the last interest payment
        last = rows[-1]
        rows[-1] = _row(last.installment_number, last.due_date, last.balance, last.interest_amount, ZERO)

    return rows


def _rolled_up_schedule(terms: LoanTerms,
                        reductions: Sequence[PrincipalReduction]) -> List[ScheduleRow]:
    rate = terms.period_rate
    rolled_up_interest = ZERO
    final_principal = terms.principal

    for i in range(1, terms.duration + 1):
        due_date = add_periods(terms.start_date, terms.period, i)
        opening = _opening_balance(terms.principal, terms.principal, reductions, due_date)
        rolled_up_interest += round_currency(opening * rate)
        final_principal = opening

    loan_end = terms.maturity_date
    rows = [_row(1, loan_end, final_principal, rolled_up_interest, final_principal)]

    for month in range(1, ROLLED_UP_EXTENSION_MONTHS + 1):
        due_date = add_months(loan_end, month)
        monthly_rate = terms.rate_on(due_date) / Decimal(100) / MONTHS_PER_YEAR
        rows.append(_row(1 + month, due_date, ZERO, final_principal * monthly_rate,
                         final_principal, is_extension_period=True))

    return rows


# ---------------------------------------------------------------------------
# Interest paid in advance (due at the start of each period)
# ---------------------------------------------------------------------------

def _advance_interest_schedule(terms: LoanTerms) -> List[ScheduleRow]:
    # Principal reductions are not netted on this path
    rate = terms.period_rate

    def due(index: int) -> date:
        return add_periods(terms.start_date, terms.period, index)

    if terms.interest_type is InterestType.FLAT:
        return _flat_rows(terms, [due(i) for i in range(terms.duration)])

    if terms.interest_type is InterestType.REDUCING:
        return _fixed_payment_rows(terms.principal, rate, [due(i) for i in range(terms.duration)], 1)

    effective_io_periods = terms.interest_only_periods or terms.duration
    interest = terms.principal * rate
    rows = [_row(i + 1, due(i), ZERO, interest, terms.principal) for i in range(effective_io_periods)]

    if 0 < terms.interest_only_periods < terms.duration:
        remaining = terms.duration - terms.interest_only_periods
        tail_dates = [due(effective_io_periods + i) for i in range(remaining)]
        rows.extend(_fixed_payment_rows(terms.principal, rate, tail_dates, effective_io_periods + 1))
    else:
        last = rows[-1]
        rows[-1] = _row(last.installment_number, last.due_date, terms.principal, last.interest_amount, ZERO)

    return rows


# ---------------------------------------------------------------------------
# Monthly-first alignment (stub to month end, then due on the 1st)
# ---------------------------------------------------------------------------

def _monthly_first_schedule(terms: LoanTerms,
                            reductions: Sequence[PrincipalReduction]) -> List[ScheduleRow]:
    if terms.interest_type is InterestType.ROLLED_UP:
        # No periodic due dates to align; rolled-up bills once at term end
        return _rolled_up_schedule(terms, reductions)

    start = terms.start_date
    annual_rate = terms.annual_interest_rate / Decimal(100)
    monthly_rate = annual_rate / MONTHS_PER_YEAR
    daily_rate = annual_rate / DAYS_PER_YEAR
    first_of_month = start_of_month(start)

    stub_days = (end_of_month(start) - start).days + 1
    rows = [_row(1, start, ZERO, terms.principal * daily_rate * Decimal(stub_days), terms.principal)]

    if terms.interest_type is InterestType.INTEREST_ONLY:
        effective_io_periods = terms.interest_only_periods or terms.duration
        interest = terms.principal * monthly_rate
        for i in range(effective_io_periods):
            rows.append(_row(len(rows) + 1, add_months(first_of_month, i + 1), ZERO, interest, terms.principal))

        if 0 < terms.interest_only_periods < terms.duration:
            remaining = terms.duration - terms.interest_only_periods
            tail_dates = [add_months(first_of_month, effective_io_periods + i + 1) for i in range(remaining)]
            rows.extend(_fixed_payment_rows(terms.principal, monthly_rate, tail_dates, len(rows) + 1))
        else:
            last = rows[-1]
            rows[-1] = _row(last.installment_number, last.due_date, terms.principal, last.interest_amount, ZERO)
        return rows

    is_flat = terms.interest_type is InterestType.FLAT
    payment = annuity_payment(terms.principal, monthly_rate, terms.duration)
    flat_principal = round_currency(terms.principal / Decimal(terms.duration))
    flat_interest = round_currency(terms.principal * monthly_rate)
    loan_end = add_months(start, terms.duration)
    balance = terms.principal

    for month in range(terms.duration):
        due_date = add_months(first_of_month, month + 1)
        is_last = month == terms.duration - 1
        opening = balance

        if is_last and not terms.extend_for_full_period and loan_end < add_months(due_date, 1):
            days_remaining = (loan_end - due_date).days
            interest = opening * daily_rate * Decimal(days_remaining)
            principal = opening
        elif is_flat:
            interest = flat_interest
            principal = opening if is_last else min(flat_principal, opening)
        else:
            interest = opening * monthly_rate
            if is_last:
                principal = opening
            else:
                principal = max(ZERO, min(round_currency(payment - interest), opening))

        balance = opening - principal
        rows.append(_row(month + 2, due_date, principal, interest, balance))

    return rows
