"""
Payment Waterfall Module

Allocates payments across repayment schedule rows: oldest due date first,
interest before principal. Overpayments are either held as credit for
future installments or applied as a principal reduction, bounded by the
principal the rows still owe.

Input rows are never mutated; callers persist the returned allocations.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from .currency import ZERO, Numeric, round_currency, to_decimal
from .loans import ScheduleRow, ScheduleStatus, derive_status
from .logging_config import get_logger


logger = get_logger("loan_servicing.waterfall")


class OverpaymentOption(Enum):
    """What happens to money left after every row is settled"""
    CREDIT = "credit"                        # Hold for future installments
    REDUCE_PRINCIPAL = "reduce_principal"    # Curtail principal still owed, credit the rest


@dataclass
class RowAllocation:
    """New paid totals for one schedule row and what this payment contributed"""
    row_id: Optional[str]
    installment_number: int
    interest_paid: Decimal
    principal_paid: Decimal
    status: ScheduleStatus
    interest_applied: Decimal = ZERO
    principal_applied: Decimal = ZERO


@dataclass
class WaterfallResult:
    """Outcome of an auto-split payment"""
    updates: List[RowAllocation] = field(default_factory=list)
    remaining_payment: Decimal = ZERO
    principal_reduction: Decimal = ZERO
    credit_amount: Decimal = ZERO

    @property
    def interest_applied(self) -> Decimal:
        return sum((u.interest_applied for u in self.updates), ZERO)

    @property
    def principal_applied(self) -> Decimal:
        return sum((u.principal_applied for u in self.updates), ZERO)


@dataclass
class ManualPaymentResult:
    """Outcome of a payment with an explicit interest/principal split"""
    updates: List[RowAllocation] = field(default_factory=list)
    principal_reduction: Decimal = ZERO
    credit_amount: Decimal = ZERO


def _parse_option(option: Union[OverpaymentOption, str, None]) -> OverpaymentOption:
    if option is None:
        return OverpaymentOption.CREDIT
    if isinstance(option, OverpaymentOption):
        return option
    try:
        return OverpaymentOption(option)
    except ValueError:
        raise ValueError(f"Unsupported overpayment option: {option!r}")


def _non_negative(value: Numeric, name: str) -> Decimal:
    amount = to_decimal(value)
    if amount < ZERO:
        raise ValueError(f"{name} cannot be negative: {amount}")
    return amount


def _oldest_first(rows: Sequence[ScheduleRow]) -> List[ScheduleRow]:
    # sorted() is stable, equal due dates keep input order
    return sorted(rows, key=lambda row: row.due_date)


class _Allocator:
    """Running allocation state across one or more sweeps of the same rows"""

    def __init__(self, rows: Sequence[ScheduleRow]):
        self.rows = _oldest_first(rows)
        self._updates: Dict[int, RowAllocation] = {}

    def _allocation(self, index: int) -> RowAllocation:
        allocation = self._updates.get(index)
        if allocation is None:
            row = self.rows[index]
            allocation = RowAllocation(
                row_id=row.id,
                installment_number=row.installment_number,
                interest_paid=row.interest_paid,
                principal_paid=row.principal_paid,
                status=row.status
            )
        return allocation

    def interest_due(self, index: int) -> Decimal:
        allocation = self._allocation(index)
        return max(ZERO, self.rows[index].interest_amount - allocation.interest_paid)

    def principal_due(self, index: int) -> Decimal:
        allocation = self._allocation(index)
        return max(ZERO, self.rows[index].principal_amount - allocation.principal_paid)

    def apply(self, index: int, interest: Decimal, principal: Decimal) -> None:
        if interest <= ZERO and principal <= ZERO:
            return
        row = self.rows[index]
        allocation = self._allocation(index)
        allocation.interest_applied += interest
        allocation.principal_applied += principal
        allocation.interest_paid = round_currency(allocation.interest_paid + interest)
        allocation.principal_paid = round_currency(allocation.principal_paid + principal)
        allocation.status = derive_status(row.total_due, allocation.principal_paid, allocation.interest_paid)
        self._updates[index] = allocation

    def sweep_principal(self, pool: Decimal, include_paid: bool = False) -> Decimal:
        """
        Apply ``pool`` to outstanding principal oldest first, return what is left

        Rows already marked Paid are skipped unless ``include_paid``; a Paid
        row can still owe principal within the status tolerance.
        """
        for index, row in enumerate(self.rows):
            if pool <= ZERO:
                break
            if row.status is ScheduleStatus.PAID and not include_paid:
                continue
            principal = min(pool, self.principal_due(index))
            if principal > ZERO:
                self.apply(index, ZERO, principal)
                pool -= principal
        return pool

    def updates(self) -> List[RowAllocation]:
        result = []
        for index in sorted(self._updates):
            allocation = self._updates[index]
            allocation.interest_applied = round_currency(allocation.interest_applied)
            allocation.principal_applied = round_currency(allocation.principal_applied)
            result.append(allocation)
        return result


def _settle_overpayment(allocator: _Allocator, pool: Decimal,
                        option: OverpaymentOption) -> tuple:
    """Return (principal_reduction, credit_amount) for money left after the main sweep"""
    if pool <= ZERO:
        return ZERO, ZERO
    if option is OverpaymentOption.CREDIT:
        return ZERO, pool

    # Only principal the rows still owe can be curtailed, the rest is held as credit
    left = allocator.sweep_principal(pool, include_paid=True)
    return pool - left, left


def apply_payment_waterfall(
    payment: Numeric,
    schedule_rows: Sequence[ScheduleRow],
    existing_credit: Numeric = ZERO,
    overpayment_option: Union[OverpaymentOption, str] = OverpaymentOption.CREDIT
) -> WaterfallResult:
    """
    Allocate a payment across schedule rows

    Order: interest then principal on each unpaid row, oldest due date
    first, then overpayment handling.

    Args:
        payment: Amount received
        schedule_rows: Current schedule rows
        existing_credit: Credit carried from earlier overpayments, added to
            the payment
        overpayment_option: ``credit`` or ``reduce_principal``

    Returns:
        Row allocations (rows receiving nothing are omitted), the amount
        left after the interest-then-principal pass, and how that amount
        was split between principal reduction and credit
    """
    option = _parse_option(overpayment_option)
    pool = _non_negative(payment, "Payment") + _non_negative(existing_credit, "Existing credit")
    allocator = _Allocator(schedule_rows)

    for index, row in enumerate(allocator.rows):
        if pool <= ZERO:
            break
        if row.status is ScheduleStatus.PAID:
            continue

        interest = min(pool, allocator.interest_due(index))
        pool -= interest
        principal = min(pool, allocator.principal_due(index))
        pool -= principal
        allocator.apply(index, interest, principal)

    principal_reduction, credit_amount = _settle_overpayment(allocator, pool, option)

    result = WaterfallResult(
        updates=allocator.updates(),
        remaining_payment=round_currency(pool),
        principal_reduction=round_currency(principal_reduction),
        credit_amount=round_currency(credit_amount)
    )
    logger.debug(
        "Waterfall allocated %s across %d rows (credit %s, principal reduction %s)",
        payment, len(result.updates), result.credit_amount, result.principal_reduction
    )
    return result


def apply_manual_payment(
    interest_amount: Numeric,
    principal_amount: Numeric,
    schedule_rows: Sequence[ScheduleRow],
    existing_credit: Numeric = ZERO,
    overpayment_option: Union[OverpaymentOption, str] = OverpaymentOption.CREDIT
) -> ManualPaymentResult:
    """
    Allocate a payment whose interest/principal split was chosen by the user

    The interest amount is swept across outstanding interest, oldest first;
    the principal amount plus any existing credit is then swept across
    outstanding principal. Leftover principal follows the overpayment
    option. Interest that finds no outstanding interest is returned as
    credit rather than dropped.
    """
    option = _parse_option(overpayment_option)
    interest_pool = _non_negative(interest_amount, "Interest amount")
    principal_pool = (_non_negative(principal_amount, "Principal amount") +
                      _non_negative(existing_credit, "Existing credit"))
    allocator = _Allocator(schedule_rows)

    for index, row in enumerate(allocator.rows):
        if interest_pool <= ZERO:
            break
        if row.status is ScheduleStatus.PAID:
            continue
        interest = min(interest_pool, allocator.interest_due(index))
        interest_pool -= interest
        allocator.apply(index, interest, ZERO)

    principal_pool = allocator.sweep_principal(principal_pool)

    principal_reduction, credit_amount = _settle_overpayment(allocator, principal_pool, option)
    credit_amount += interest_pool

    result = ManualPaymentResult(
        updates=allocator.updates(),
        principal_reduction=round_currency(principal_reduction),
        credit_amount=round_currency(credit_amount)
    )
    logger.debug(
        "Manual payment allocated across %d rows (credit %s, principal reduction %s)",
        len(result.updates), result.credit_amount, result.principal_reduction
    )
    return result
