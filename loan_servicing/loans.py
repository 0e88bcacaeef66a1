"""
Loan Module

Loan terms, repayment schedule rows and the persisted loan servicing record.
These are the shapes shared by the schedule generator, the accrual
calculator and the payment waterfall.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from enum import Enum
import calendar
import uuid

from .currency import CENT, ZERO, to_decimal


class InvalidLoanTermsError(ValueError):
    """Raised when loan terms cannot produce a meaningful schedule"""


class InterestType(Enum):
    """Interest calculation policies"""
    FLAT = "Flat"                    # Interest on original principal
    REDUCING = "Reducing"            # Amortizing annuity
    INTEREST_ONLY = "Interest-Only"  # Interest only, then tail or balloon
    ROLLED_UP = "Rolled-Up"          # Interest capitalized, billed at term end

    @classmethod
    def parse(cls, value: Union['InterestType', str, None]) -> Optional['InterestType']:
        """Return the matching member, or None for unknown or missing values"""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        normalized = str(value).strip().lower().replace("_", "-").replace(" ", "-")
        for member in cls:
            if member.value.lower() == normalized or member.name.lower().replace("_", "-") == normalized:
                return member
        return None


class Period(Enum):
    """Billing interval"""
    MONTHLY = "Monthly"   # 12 periods per year
    WEEKLY = "Weekly"     # 52 periods per year

    @property
    def periods_per_year(self) -> int:
        return 12 if self is Period.MONTHLY else 52

    @property
    def average_days(self) -> Decimal:
        """Average calendar days in one period, used for accrual approximations"""
        return Decimal('30.417') if self is Period.MONTHLY else Decimal('7')


class InterestAlignment(Enum):
    """How installment due dates line up with the calendar"""
    PERIOD_BASED = "period_based"     # Due dates step from the start date
    MONTHLY_FIRST = "monthly_first"   # Due on the 1st after an initial stub


class ScheduleStatus(Enum):
    """Payment state of a schedule row"""
    PENDING = "Pending"
    PARTIAL = "Partial"
    PAID = "Paid"


class LoanStatus(Enum):
    """Loan servicing lifecycle states"""
    PENDING = "Pending"        # Approved, not yet disbursed
    LIVE = "Live"              # Disbursed and being serviced
    SETTLED = "Settled"        # Fully repaid
    CLOSED = "Closed"
    DEFAULTED = "Defaulted"


STATUS_TOLERANCE = CENT


def penalty_applies(has_penalty_rate: bool, penalty_rate: Optional[Decimal],
                    penalty_rate_from: Optional[date], on_date: date) -> bool:
    """True when a configured penalty rate is in force on ``on_date``"""
    if not (has_penalty_rate and penalty_rate and penalty_rate_from):
        return False
    if isinstance(on_date, datetime):
        on_date = on_date.date()
    return on_date >= penalty_rate_from


def _coerce_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    parse = getattr(enum_cls, 'parse', None)
    if parse is not None:
        member = parse(value)
        if member is not None:
            return member
    else:
        for member in enum_cls:
            if isinstance(value, str) and value.strip().lower() in (member.value.lower(), member.name.lower()):
                return member
    raise InvalidLoanTermsError(f"Unsupported {field_name}: {value!r}")


def _coerce_date(value, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise InvalidLoanTermsError(f"Invalid {field_name}: {value!r}")


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms and conditions, read-only for the duration of a calculation"""
    principal: Decimal
    annual_interest_rate: Decimal        # Percent, e.g. 12 for 12%
    duration: int                        # Number of installments
    interest_type: InterestType
    period: Period
    start_date: date
    interest_only_periods: int = 0       # 0 = interest-only for the full duration
    interest_alignment: InterestAlignment = InterestAlignment.PERIOD_BASED
    interest_paid_in_advance: bool = False
    extend_for_full_period: bool = False
    has_penalty_rate: bool = False
    penalty_rate: Optional[Decimal] = None      # Percent
    penalty_rate_from: Optional[date] = None

    def __post_init__(self):
        try:
            object.__setattr__(self, 'principal', to_decimal(self.principal))
            object.__setattr__(self, 'annual_interest_rate', to_decimal(self.annual_interest_rate))
            if self.penalty_rate is not None:
                object.__setattr__(self, 'penalty_rate', to_decimal(self.penalty_rate))
        except ValueError as e:
            raise InvalidLoanTermsError(str(e)) from e

        object.__setattr__(self, 'interest_type',
                           _coerce_enum(InterestType, self.interest_type, "interest type"))
        object.__setattr__(self, 'period', _coerce_enum(Period, self.period, "period"))
        object.__setattr__(self, 'interest_alignment',
                           _coerce_enum(InterestAlignment, self.interest_alignment, "interest alignment"))
        object.__setattr__(self, 'start_date', _coerce_date(self.start_date, "start date"))
        if self.penalty_rate_from is not None:
            object.__setattr__(self, 'penalty_rate_from',
                               _coerce_date(self.penalty_rate_from, "penalty rate date"))

        if self.principal < ZERO:
            raise InvalidLoanTermsError(f"Principal cannot be negative: {self.principal}")
        if self.annual_interest_rate < ZERO:
            raise InvalidLoanTermsError(f"Interest rate cannot be negative: {self.annual_interest_rate}")
        if isinstance(self.duration, bool) or not isinstance(self.duration, int) or self.duration <= 0:
            raise InvalidLoanTermsError(f"Duration must be a positive integer: {self.duration!r}")
        if self.interest_only_periods is None:
            object.__setattr__(self, 'interest_only_periods', 0)
        if self.interest_only_periods < 0:
            raise InvalidLoanTermsError("Interest-only periods cannot be negative")
        if self.penalty_rate is not None and self.penalty_rate < ZERO:
            raise InvalidLoanTermsError("Penalty rate cannot be negative")

    @property
    def periods_per_year(self) -> int:
        return self.period.periods_per_year

    @property
    def period_rate(self) -> Decimal:
        """Contract rate per billing period as a fraction"""
        return self.annual_interest_rate / Decimal(100) / Decimal(self.periods_per_year)

    @property
    def maturity_date(self) -> date:
        """Date the contractual term ends"""
        return add_periods(self.start_date, self.period, self.duration)

    def rate_on(self, on_date: date) -> Decimal:
        """Annual rate (percent) in force on a date, penalty rate included"""
        if penalty_applies(self.has_penalty_rate, self.penalty_rate, self.penalty_rate_from, on_date):
            return self.penalty_rate
        return self.annual_interest_rate


@dataclass(frozen=True)
class PrincipalReduction:
    """Principal applied against the loan on a date"""
    date: date
    amount: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'date', _coerce_date(self.date, "reduction date"))
        object.__setattr__(self, 'amount', to_decimal(self.amount))


@dataclass
class ScheduleRow:
    """Single installment in a repayment schedule"""
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_due: Decimal
    balance: Decimal
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    status: ScheduleStatus = ScheduleStatus.PENDING
    is_extension_period: bool = False
    id: Optional[str] = None

    def __post_init__(self):
        calculated = self.principal_amount + self.interest_amount
        if abs(calculated - self.total_due) > STATUS_TOLERANCE:
            raise ValueError(f"Total due {self.total_due} does not equal "
                             f"principal {self.principal_amount} + interest {self.interest_amount}")

    @property
    def interest_due(self) -> Decimal:
        return max(ZERO, self.interest_amount - self.interest_paid)

    @property
    def principal_due(self) -> Decimal:
        return max(ZERO, self.principal_amount - self.principal_paid)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'total_due': str(self.total_due),
            'balance': str(self.balance),
            'principal_paid': str(self.principal_paid),
            'interest_paid': str(self.interest_paid),
            'status': self.status.value,
            'is_extension_period': self.is_extension_period
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleRow':
        return cls(
            id=data.get('id'),
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            total_due=Decimal(data['total_due']),
            balance=Decimal(data['balance']),
            principal_paid=Decimal(data.get('principal_paid') or '0'),
            interest_paid=Decimal(data.get('interest_paid') or '0'),
            status=ScheduleStatus(data.get('status') or ScheduleStatus.PENDING.value),
            is_extension_period=bool(data.get('is_extension_period', False))
        )


def derive_status(total_due: Decimal, principal_paid: Decimal, interest_paid: Decimal) -> ScheduleStatus:
    """Status implied by paid totals against the amount due"""
    total_paid = principal_paid + interest_paid
    if total_paid >= total_due - STATUS_TOLERANCE:
        return ScheduleStatus.PAID
    if total_paid > ZERO:
        return ScheduleStatus.PARTIAL
    return ScheduleStatus.PENDING


@dataclass
class Loan:
    """
    Persisted loan servicing record

    Unlike LoanTerms this mirrors stored data, so ``interest_type`` may hold
    a legacy value that no longer maps to a known policy.
    """
    principal_amount: Decimal
    interest_rate: Decimal              # Percent
    duration: int
    interest_type: Union[InterestType, str, None]
    period: Period
    start_date: date
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    org_id: Optional[str] = None
    loan_number: Optional[str] = None
    borrower_id: Optional[str] = None
    status: LoanStatus = LoanStatus.LIVE
    interest_only_periods: int = 0
    interest_alignment: InterestAlignment = InterestAlignment.PERIOD_BASED
    interest_paid_in_advance: bool = False
    extend_for_full_period: bool = False
    has_penalty_rate: bool = False
    penalty_rate: Optional[Decimal] = None
    penalty_rate_from: Optional[date] = None
    total_interest: Optional[Decimal] = None
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    credit_balance: Decimal = ZERO
    version: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        for name in ('principal_amount', 'interest_rate', 'principal_paid', 'interest_paid', 'credit_balance'):
            setattr(self, name, to_decimal(getattr(self, name)))
        if self.penalty_rate is not None:
            self.penalty_rate = to_decimal(self.penalty_rate)
        if self.total_interest is not None:
            self.total_interest = to_decimal(self.total_interest)
        parsed = InterestType.parse(self.interest_type)
        if parsed is not None:
            self.interest_type = parsed
        if isinstance(self.period, str):
            self.period = _coerce_enum(Period, self.period, "period")
        if isinstance(self.status, str):
            self.status = LoanStatus(self.status)
        if isinstance(self.interest_alignment, str):
            self.interest_alignment = InterestAlignment(self.interest_alignment)
        self.start_date = _coerce_date(self.start_date, "start date")
        if self.penalty_rate_from is not None:
            self.penalty_rate_from = _coerce_date(self.penalty_rate_from, "penalty rate date")

    def rate_on(self, on_date: date) -> Decimal:
        """Annual rate (percent) in force on a date, penalty rate included"""
        if penalty_applies(self.has_penalty_rate, self.penalty_rate, self.penalty_rate_from, on_date):
            return self.penalty_rate
        return self.interest_rate

    @property
    def known_interest_type(self) -> Optional[InterestType]:
        return self.interest_type if isinstance(self.interest_type, InterestType) else None

    def to_terms(self) -> LoanTerms:
        """Build calculation terms; raises InvalidLoanTermsError for unusable records"""
        return LoanTerms(
            principal=self.principal_amount,
            annual_interest_rate=self.interest_rate,
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

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        def optional_str(value):
            return str(value) if value is not None else None

        interest_type = self.interest_type
        if isinstance(interest_type, InterestType):
            interest_type = interest_type.value

        return {
            'id': self.id,
            'org_id': self.org_id,
            'loan_number': self.loan_number,
            'borrower_id': self.borrower_id,
            'principal_amount': str(self.principal_amount),
            'interest_rate': str(self.interest_rate),
            'duration': self.duration,
            'interest_type': interest_type,
            'period': self.period.value,
            'start_date': self.start_date.isoformat(),
            'status': self.status.value,
            'interest_only_periods': self.interest_only_periods,
            'interest_alignment': self.interest_alignment.value,
            'interest_paid_in_advance': self.interest_paid_in_advance,
            'extend_for_full_period': self.extend_for_full_period,
            'has_penalty_rate': self.has_penalty_rate,
            'penalty_rate': optional_str(self.penalty_rate),
            'penalty_rate_from': self.penalty_rate_from.isoformat() if self.penalty_rate_from else None,
            'total_interest': optional_str(self.total_interest),
            'principal_paid': str(self.principal_paid),
            'interest_paid': str(self.interest_paid),
            'credit_balance': str(self.credit_balance),
            'version': self.version,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create Loan from a stored dictionary"""
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        for key in ('principal_amount', 'interest_rate', 'penalty_rate', 'total_interest',
                    'principal_paid', 'interest_paid', 'credit_balance'):
            if data.get(key) is not None:
                data[key] = Decimal(data[key])
        data.pop('_org_id', None)
        return cls(**data)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_periods(start_date: date, period: Period, count: int) -> date:
    """Date ``count`` billing periods after ``start_date``"""
    if period is Period.MONTHLY:
        return add_months(start_date, count)
    return start_date + timedelta(weeks=count)


def end_of_month(day: date) -> date:
    return date(day.year, day.month, calendar.monthrange(day.year, day.month)[1])


def start_of_month(day: date) -> date:
    return day.replace(day=1)
