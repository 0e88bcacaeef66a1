"""
Loan Servicing Module

Orchestrates the read-allocate-persist cycle around the pure calculation
core: creates loans, materializes their schedules, applies payments
through the waterfall and reports interest positions. Every operation is
scoped by an explicit OrgContext.
"""

from decimal import Decimal
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Union

from .accrual import calculate_accrued_interest, calculate_live_interest_outstanding
from .audit import AuditEventType, AuditTrail
from .config import ServicingConfig, get_config
from .currency import ZERO, Numeric, round_currency, to_decimal
from .ledger import (
    AccruedInterestPosition, InterestBalance, LoanTransaction, TransactionType,
    calculate_accrued_interest_with_transactions, calculate_loan_interest_balance
)
from .loans import (
    Loan, LoanStatus, LoanTerms, PrincipalReduction, ScheduleRow, ScheduleStatus, derive_status
)
from .logging_config import get_logger, log_action
from .schedule import (
    ScheduleSummary, calculate_loan_summary, generate_schedule, nets_principal_reductions
)
from .storage import EntityStore, OrgContext, RecordNotFoundError
from .waterfall import (
    ManualPaymentResult, OverpaymentOption, WaterfallResult,
    apply_manual_payment, apply_payment_waterfall
)


logger = get_logger("loan_servicing.servicing")


class ConcurrentModificationError(Exception):
    """Loan changed between the read and the write of an allocation"""

    def __init__(self, loan_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Loan {loan_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.loan_id = loan_id
        self.expected_version = expected_version
        self.actual_version = actual_version


@dataclass
class PaymentOutcome:
    """Persisted effect of one payment"""
    loan: Loan
    transaction: LoanTransaction
    allocation: Union[WaterfallResult, ManualPaymentResult]
    principal_applied: Decimal
    interest_applied: Decimal


@dataclass
class InterestPosition:
    """Interest owed on a loan as of a date"""
    loan_id: str
    as_of: date
    accrued: Decimal
    interest_paid: Decimal
    outstanding: Decimal
    ledger: AccruedInterestPosition
    schedule_balance: InterestBalance


class LoanServicer:
    """
    Loan servicing operations over an entity store
    """

    def __init__(
        self,
        storage: EntityStore,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[ServicingConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        if audit_trail is None and self.config.enable_audit_logging:
            audit_trail = AuditTrail(storage)
        self.audit_trail = audit_trail

        self.loans_table = "loans"
        self.schedule_table = "schedule_rows"
        self.transactions_table = "loan_transactions"

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    def create_loan(
        self,
        ctx: OrgContext,
        terms: LoanTerms,
        loan_number: Optional[str] = None,
        borrower_id: Optional[str] = None,
        status: LoanStatus = LoanStatus.LIVE
    ) -> Loan:
        """
        Create a loan and materialize its repayment schedule

        Args:
            ctx: Organization the loan belongs to
            terms: Validated loan terms
            loan_number: Human-facing loan reference
            borrower_id: Borrower the loan is made to
            status: Initial status; Pending loans accrue no interest

        Returns:
            Created Loan
        """
        loan = Loan(
            principal_amount=terms.principal,
            interest_rate=terms.annual_interest_rate,
            duration=terms.duration,
            interest_type=terms.interest_type,
            period=terms.period,
            start_date=terms.start_date,
            org_id=ctx.org_id,
            loan_number=loan_number,
            borrower_id=borrower_id,
            status=status,
            interest_only_periods=terms.interest_only_periods,
            interest_alignment=terms.interest_alignment,
            interest_paid_in_advance=terms.interest_paid_in_advance,
            extend_for_full_period=terms.extend_for_full_period,
            has_penalty_rate=terms.has_penalty_rate,
            penalty_rate=terms.penalty_rate,
            penalty_rate_from=terms.penalty_rate_from
        )

        with self.storage.atomic():
            rows = generate_schedule(terms)
            loan.total_interest = self._contract_interest(rows)
            self.storage.create(ctx, self.loans_table, loan.to_dict())
            self._save_rows(ctx, loan.id, rows)

            self._audit(ctx, AuditEventType.LOAN_CREATED, loan.id, {
                "loan_number": loan_number,
                "principal_amount": loan.principal_amount,
                "interest_rate": loan.interest_rate,
                "interest_type": terms.interest_type,
                "duration": loan.duration,
                "period": loan.period,
                "installments": len(rows)
            })

        log_action(logger, "info", f"Created loan {loan.id}", org_id=ctx.org_id,
                   user_id=ctx.user_id, action="create_loan", resource=f"loan:{loan.id}")
        return loan

    def get_loan(self, ctx: OrgContext, loan_id: str) -> Loan:
        """Load a loan; raises RecordNotFoundError"""
        return Loan.from_dict(self.storage.get(ctx, self.loans_table, loan_id))

    def list_loans(self, ctx: OrgContext, status: Optional[LoanStatus] = None) -> List[Loan]:
        if status is None:
            records = self.storage.list(ctx, self.loans_table, order_by='created_at')
        else:
            records = self.storage.filter(ctx, self.loans_table, {'status': status.value},
                                          order_by='created_at')
        return [Loan.from_dict(record) for record in records]

    def update_status(self, ctx: OrgContext, loan_id: str, status: LoanStatus,
                      expected_version: Optional[int] = None) -> Loan:
        """Move a loan to a new lifecycle status"""
        with self.storage.atomic():
            loan = self._load_for_write(ctx, loan_id, expected_version)
            previous = loan.status
            loan = self._save_loan(ctx, loan, status=status)
            self._audit(ctx, AuditEventType.LOAN_STATUS_CHANGED, loan.id, {
                "from": previous, "to": status
            })
        return loan

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def get_schedule(self, ctx: OrgContext, loan_id: str) -> List[ScheduleRow]:
        """Schedule rows of a loan ordered by installment number"""
        self.get_loan(ctx, loan_id)
        records = self.storage.filter(ctx, self.schedule_table, {'loan_id': loan_id},
                                      order_by='installment_number')
        return [ScheduleRow.from_dict(record) for record in records]

    def get_schedule_summary(self, ctx: OrgContext, loan_id: str) -> ScheduleSummary:
        return calculate_loan_summary(self.get_schedule(ctx, loan_id))

    def regenerate_schedule(self, ctx: OrgContext, loan_id: str,
                            expected_version: Optional[int] = None) -> List[ScheduleRow]:
        """
        Rebuild a loan's schedule from its terms and principal repaid so far

        Schedules that net principal reductions keep every row due on or
        before the latest repayment as stored. Later rows are rebuilt
        against the balance actually left, so principal already repaid is
        counted once: either on a kept row or in the lower balance. Interest
        paid ahead on a rebuilt row is carried up to its new interest amount
        and any excess is moved to the loan's credit balance.

        Other schedules do not move with repayments; their rows are rebuilt
        as generated and paid amounts are carried onto the installment with
        the same number.
        """
        with self.storage.atomic():
            loan = self._load_for_write(ctx, loan_id, expected_version)
            terms = loan.to_terms()
            existing = self.get_schedule(ctx, loan_id)
            repayments = [
                tx for tx in self.get_transactions(ctx, loan_id)
                if tx.type is TransactionType.REPAYMENT and not tx.is_deleted
            ]

            cutoff = max((tx.date for tx in repayments), default=None)
            moved_to_credit = ZERO
            if cutoff is None or not nets_principal_reductions(terms):
                rows = self._carry_paid_amounts(generate_schedule(terms), existing)
                kept = []
            else:
                rows, kept, moved_to_credit = self._rebuild_after(terms, existing, repayments, cutoff)

            self.storage.delete_where(ctx, self.schedule_table, {'loan_id': loan_id})
            rows = self._save_rows(ctx, loan_id, rows)
            self._save_loan(
                ctx, loan,
                total_interest=self._contract_interest(rows),
                interest_paid=loan.interest_paid - moved_to_credit,
                credit_balance=loan.credit_balance + moved_to_credit
            )

            self._audit(ctx, AuditEventType.SCHEDULE_REGENERATED, loan_id, {
                "installments": len(rows),
                "rows_kept": len(kept),
                "cutoff_date": cutoff,
                "interest_moved_to_credit": moved_to_credit
            })

        log_action(logger, "info", f"Regenerated schedule for loan {loan_id}", org_id=ctx.org_id,
                   user_id=ctx.user_id, action="regenerate_schedule", resource=f"loan:{loan_id}")
        return rows

    @staticmethod
    def _carry_paid_amounts(rows: List[ScheduleRow], existing: List[ScheduleRow]) -> List[ScheduleRow]:
        previous_rows = {row.installment_number: row for row in existing}
        for row in rows:
            previous = previous_rows.get(row.installment_number)
            if previous is not None:
                row.principal_paid = previous.principal_paid
                row.interest_paid = previous.interest_paid
                row.status = derive_status(row.total_due, row.principal_paid, row.interest_paid)
        return rows

    @staticmethod
    def _rebuild_after(terms: LoanTerms, existing: List[ScheduleRow],
                       repayments: List[LoanTransaction], cutoff: date):
        """Return (rows, kept rows, interest moved to credit) for a netting schedule"""
        kept = [row for row in existing if row.due_date <= cutoff]
        previous_rows = {row.installment_number: row for row in existing}
        last_kept = max((row.installment_number for row in kept), default=0)

        principal_applied = sum((tx.principal_applied for tx in repayments), ZERO)
        paid_on_kept = sum((row.principal_paid for row in kept), ZERO)
        scheduled_on_kept = sum((row.principal_amount for row in kept), ZERO)
        # Kept rows account for their scheduled principal, everything else
        # repaid so far lowers the balance the later rows amortize
        reduction = PrincipalReduction(
            date=cutoff,
            amount=round_currency(scheduled_on_kept + principal_applied - paid_on_kept)
        )

        moved_to_credit = ZERO
        rebuilt = []
        for row in generate_schedule(terms, [reduction]):
            if row.installment_number <= last_kept:
                continue
            previous = previous_rows.get(row.installment_number)
            if previous is not None and previous.interest_paid > ZERO:
                row.interest_paid = min(previous.interest_paid, row.interest_amount)
                moved_to_credit += previous.interest_paid - row.interest_paid
            row.status = derive_status(row.total_due, row.principal_paid, row.interest_paid)
            rebuilt.append(row)

        return kept + rebuilt, kept, round_currency(moved_to_credit)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def get_transactions(self, ctx: OrgContext, loan_id: str) -> List[LoanTransaction]:
        records = self.storage.filter(ctx, self.transactions_table, {'loan_id': loan_id},
                                      order_by='date')
        return [LoanTransaction.from_dict(record) for record in records]

    def apply_payment(
        self,
        ctx: OrgContext,
        loan_id: str,
        amount: Numeric,
        payment_date: Optional[date] = None,
        overpayment_option: Union[OverpaymentOption, str, None] = None,
        expected_version: Optional[int] = None,
        reference: Optional[str] = None
    ) -> PaymentOutcome:
        """
        Apply a payment through the auto-split waterfall

        Args:
            ctx: Organization scope
            loan_id: Loan receiving the payment
            amount: Amount received
            payment_date: Value date (defaults to today)
            overpayment_option: Defaults to the configured option
            expected_version: Loan version the caller last read; a mismatch
                raises ConcurrentModificationError
            reference: Free-text payment reference

        Returns:
            PaymentOutcome with the updated loan and recorded transaction
        """
        option = overpayment_option or self.config.default_overpayment_option
        amount = to_decimal(amount)

        with self.storage.atomic():
            loan = self._load_for_write(ctx, loan_id, expected_version)
            rows = self.get_schedule(ctx, loan_id)
            allocation = apply_payment_waterfall(amount, rows, loan.credit_balance, option)
            funds = amount + loan.credit_balance
            outcome = self._persist_payment(ctx, loan, allocation, funds, amount,
                                            payment_date, reference)
            self._audit(ctx, AuditEventType.PAYMENT_APPLIED, loan_id, {
                "transaction_id": outcome.transaction.id,
                "amount": amount,
                "principal_applied": outcome.principal_applied,
                "interest_applied": outcome.interest_applied,
                "principal_reduction": allocation.principal_reduction,
                "credit_amount": allocation.credit_amount,
                "overpayment_option": option
            })
            self._audit_overpayment(ctx, loan_id, outcome.transaction.id, allocation)

        log_action(logger, "info", f"Applied payment of {amount} to loan {loan_id}",
                   org_id=ctx.org_id, user_id=ctx.user_id, action="apply_payment",
                   resource=f"loan:{loan_id}",
                   extra={"rows_updated": len(allocation.updates)})
        return outcome

    def apply_manual_payment(
        self,
        ctx: OrgContext,
        loan_id: str,
        interest_amount: Numeric,
        principal_amount: Numeric,
        payment_date: Optional[date] = None,
        overpayment_option: Union[OverpaymentOption, str, None] = None,
        expected_version: Optional[int] = None,
        reference: Optional[str] = None
    ) -> PaymentOutcome:
        """Apply a payment whose interest/principal split the user chose"""
        option = overpayment_option or self.config.default_overpayment_option
        interest_amount = to_decimal(interest_amount)
        principal_amount = to_decimal(principal_amount)
        amount = interest_amount + principal_amount

        with self.storage.atomic():
            loan = self._load_for_write(ctx, loan_id, expected_version)
            rows = self.get_schedule(ctx, loan_id)
            allocation = apply_manual_payment(interest_amount, principal_amount, rows,
                                              loan.credit_balance, option)
            funds = amount + loan.credit_balance
            outcome = self._persist_payment(ctx, loan, allocation, funds, amount,
                                            payment_date, reference)
            self._audit(ctx, AuditEventType.MANUAL_PAYMENT_APPLIED, loan_id, {
                "transaction_id": outcome.transaction.id,
                "interest_amount": interest_amount,
                "principal_amount": principal_amount,
                "principal_reduction": allocation.principal_reduction,
                "credit_amount": allocation.credit_amount,
                "overpayment_option": option
            })
            self._audit_overpayment(ctx, loan_id, outcome.transaction.id, allocation)

        log_action(logger, "info", f"Applied manual payment of {amount} to loan {loan_id}",
                   org_id=ctx.org_id, user_id=ctx.user_id, action="apply_manual_payment",
                   resource=f"loan:{loan_id}")
        return outcome

    def record_further_advance(
        self,
        ctx: OrgContext,
        loan_id: str,
        amount: Numeric,
        advance_date: date,
        gross_amount: Optional[Numeric] = None,
        expected_version: Optional[int] = None
    ) -> LoanTransaction:
        """Record additional principal lent after the start date"""
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValueError("Further advance amount must be positive")

        with self.storage.atomic():
            loan = self._load_for_write(ctx, loan_id, expected_version)
            if advance_date <= loan.start_date:
                raise ValueError("Further advance must be dated after the loan start date")
            transaction = LoanTransaction(
                loan_id=loan_id,
                type=TransactionType.DISBURSEMENT,
                date=advance_date,
                amount=amount,
                gross_amount=to_decimal(gross_amount) if gross_amount is not None else None
            )
            self.storage.create(ctx, self.transactions_table, transaction.to_dict())
            self._save_loan(ctx, loan)
            self._audit(ctx, AuditEventType.FURTHER_ADVANCE, loan_id, {
                "transaction_id": transaction.id,
                "amount": amount,
                "gross_amount": transaction.gross_amount,
                "date": advance_date
            })
        return transaction

    # ------------------------------------------------------------------
    # Interest
    # ------------------------------------------------------------------

    def get_interest_position(self, ctx: OrgContext, loan_id: str,
                              as_of: Optional[date] = None) -> InterestPosition:
        """
        Accrued, paid and outstanding interest for a loan

        ``ledger`` accrues day by day over the transaction history;
        ``schedule_balance`` charges each period due so far through the
        capital events ledger and nets interest paid against it.
        """
        as_of = as_of or date.today()
        loan = self.get_loan(ctx, loan_id)
        transactions = self.get_transactions(ctx, loan_id)
        ledger = calculate_accrued_interest_with_transactions(loan, transactions, as_of)
        schedule_balance = calculate_loan_interest_balance(
            loan, self.get_schedule(ctx, loan_id), transactions, as_of
        )

        return InterestPosition(
            loan_id=loan_id,
            as_of=as_of,
            accrued=calculate_accrued_interest(loan, as_of),
            interest_paid=loan.interest_paid,
            outstanding=calculate_live_interest_outstanding(loan, as_of=as_of),
            ledger=ledger,
            schedule_balance=schedule_balance
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_for_write(self, ctx: OrgContext, loan_id: str,
                        expected_version: Optional[int]) -> Loan:
        loan = self.get_loan(ctx, loan_id)
        if expected_version is not None and loan.version != expected_version:
            raise ConcurrentModificationError(loan_id, expected_version, loan.version)
        return loan

    def _save_loan(self, ctx: OrgContext, loan: Loan, **changes) -> Loan:
        """Write changes to a loan, bumping its version if nobody else has"""
        current = self.storage.get(ctx, self.loans_table, loan.id)
        if current.get('version') != loan.version:
            raise ConcurrentModificationError(loan.id, loan.version, current.get('version'))

        for key, value in changes.items():
            setattr(loan, key, value)
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.update(ctx, self.loans_table, loan.id, loan.to_dict())
        return loan

    def _save_rows(self, ctx: OrgContext, loan_id: str, rows: List[ScheduleRow]) -> List[ScheduleRow]:
        records = []
        for row in rows:
            record = row.to_dict()
            record['loan_id'] = loan_id
            records.append(record)
        saved = self.storage.create_many(ctx, self.schedule_table, records)
        for row, record in zip(rows, saved):
            row.id = record['id']
        return rows

    @staticmethod
    def _contract_interest(rows: List[ScheduleRow]) -> Decimal:
        return round_currency(sum((row.interest_amount for row in rows
                                   if not row.is_extension_period), ZERO))

    def _persist_payment(
        self,
        ctx: OrgContext,
        loan: Loan,
        allocation: Union[WaterfallResult, ManualPaymentResult],
        funds: Decimal,
        amount: Decimal,
        payment_date: Optional[date],
        reference: Optional[str]
    ) -> PaymentOutcome:
        interest_applied = round_currency(sum((u.interest_applied for u in allocation.updates), ZERO))
        # Whatever is neither interest nor held as credit went to principal
        principal_applied = round_currency(funds - interest_applied - allocation.credit_amount)

        for update in allocation.updates:
            if update.row_id is None:
                raise RecordNotFoundError(self.schedule_table, f"installment {update.installment_number}")
            self.storage.update(ctx, self.schedule_table, update.row_id, {
                'principal_paid': str(update.principal_paid),
                'interest_paid': str(update.interest_paid),
                'status': update.status.value
            })

        transaction = LoanTransaction(
            loan_id=loan.id,
            type=TransactionType.REPAYMENT,
            date=payment_date or date.today(),
            amount=amount,
            principal_applied=principal_applied,
            interest_applied=interest_applied,
            reference=reference
        )
        self.storage.create(ctx, self.transactions_table, transaction.to_dict())

        principal_paid = loan.principal_paid + principal_applied
        changes: Dict[str, object] = {
            'principal_paid': principal_paid,
            'interest_paid': loan.interest_paid + interest_applied,
            'credit_balance': allocation.credit_amount
        }
        if loan.status is LoanStatus.LIVE and self._fully_repaid(ctx, loan, principal_paid):
            changes['status'] = LoanStatus.SETTLED
        loan = self._save_loan(ctx, loan, **changes)

        return PaymentOutcome(
            loan=loan,
            transaction=transaction,
            allocation=allocation,
            principal_applied=principal_applied,
            interest_applied=interest_applied
        )

    def _fully_repaid(self, ctx: OrgContext, loan: Loan, principal_paid: Decimal) -> bool:
        rows = [row for row in self.get_schedule(ctx, loan.id) if not row.is_extension_period]
        if rows and all(row.status is ScheduleStatus.PAID for row in rows):
            return True
        advanced = sum((tx.advance_amount for tx in self.get_transactions(ctx, loan.id)
                        if tx.type is TransactionType.DISBURSEMENT and not tx.is_deleted), ZERO)
        return principal_paid >= loan.principal_amount + advanced

    def _audit_overpayment(self, ctx: OrgContext, loan_id: str, transaction_id: str,
                           allocation: Union[WaterfallResult, ManualPaymentResult]) -> None:
        if allocation.principal_reduction > ZERO:
            self._audit(ctx, AuditEventType.PRINCIPAL_REDUCED, loan_id, {
                "transaction_id": transaction_id,
                "amount": allocation.principal_reduction
            })
        if allocation.credit_amount > ZERO:
            self._audit(ctx, AuditEventType.CREDIT_HELD, loan_id, {
                "transaction_id": transaction_id,
                "amount": allocation.credit_amount
            })

    def _audit(self, ctx: OrgContext, event_type: AuditEventType, loan_id: str,
               metadata: Dict[str, object]) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(ctx, event_type, "loan", loan_id, metadata)
