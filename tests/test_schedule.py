"""
Test suite for the schedule generator

Tests Flat, Reducing, Interest-Only and Rolled-Up schedules under
period-based, interest-in-advance and monthly-first alignment. Every
schedule must reconcile to the penny.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from loan_servicing.loans import (
    InterestAlignment, InterestType, InvalidLoanTermsError, LoanTerms, Period,
    PrincipalReduction, ScheduleStatus
)
from loan_servicing.schedule import (
    ROLLED_UP_EXTENSION_MONTHS, annuity_payment, calculate_loan_summary, generate_schedule
)


def make_terms(**overrides):
    values = dict(
        principal=Decimal('100000'),
        annual_interest_rate=Decimal('12'),
        duration=12,
        interest_type=InterestType.REDUCING,
        period=Period.MONTHLY,
        start_date=date(2024, 1, 1)
    )
    values.update(overrides)
    return LoanTerms(**values)


def assert_rows_reconcile(rows):
    for row in rows:
        assert abs(row.total_due - (row.principal_amount + row.interest_amount)) <= Decimal('0.01')
        assert row.balance >= Decimal('0')
        assert row.status == ScheduleStatus.PENDING


class TestLoanTerms:
    """Test loan terms validation"""

    def test_string_values_are_coerced(self):
        """Test that strings from forms and storage are accepted"""
        terms = LoanTerms(
            principal="10000",
            annual_interest_rate="7.5",
            duration=24,
            interest_type="Interest-Only",
            period="Weekly",
            start_date="2024-03-01"
        )

        assert terms.principal == Decimal('10000')
        assert terms.annual_interest_rate == Decimal('7.5')
        assert terms.interest_type == InterestType.INTEREST_ONLY
        assert terms.period == Period.WEEKLY
        assert terms.start_date == date(2024, 3, 1)

    def test_negative_principal_rejected(self):
        with pytest.raises(InvalidLoanTermsError, match="Principal cannot be negative"):
            make_terms(principal=Decimal('-1'))

    def test_non_positive_duration_rejected(self):
        with pytest.raises(InvalidLoanTermsError, match="Duration must be a positive integer"):
            make_terms(duration=0)

    def test_unknown_interest_type_rejected(self):
        with pytest.raises(InvalidLoanTermsError, match="Unsupported interest type"):
            make_terms(interest_type="Balloon")

    def test_unknown_period_rejected(self):
        with pytest.raises(InvalidLoanTermsError, match="Unsupported period"):
            make_terms(period="Daily")

    def test_invalid_terms_error_is_value_error(self):
        """Test callers catching ValueError also catch bad terms"""
        with pytest.raises(ValueError):
            make_terms(annual_interest_rate=Decimal('-5'))

    def test_rate_on_switches_to_penalty_rate(self):
        terms = make_terms(
            has_penalty_rate=True,
            penalty_rate=Decimal('18'),
            penalty_rate_from=date(2024, 6, 1)
        )

        assert terms.rate_on(date(2024, 5, 31)) == Decimal('12')
        assert terms.rate_on(date(2024, 6, 1)) == Decimal('18')

    def test_generate_requires_loan_terms(self):
        with pytest.raises(TypeError):
            generate_schedule({'principal': 1000})


class TestReducingSchedule:
    """Test amortizing annuity schedules"""

    def test_reducing_balance_example(self):
        """Test 100,000 at 12% over 12 months"""
        rows = generate_schedule(make_terms())

        assert len(rows) == 12
        assert rows[0].due_date == date(2024, 2, 1)
        assert rows[0].interest_amount == Decimal('1000.00')
        assert rows[0].total_due == Decimal('8884.88')
        assert rows[0].principal_amount == Decimal('7884.88')
        assert rows[-1].balance == Decimal('0.00')
        assert rows[-1].due_date == date(2025, 1, 1)

    def test_amortization_completeness(self):
        rows = generate_schedule(make_terms(principal=Decimal('25000'), annual_interest_rate=Decimal('7.9'),
                                            duration=36))

        assert sum(row.principal_amount for row in rows) == Decimal('25000.00')
        assert rows[-1].balance == Decimal('0.00')
        assert_rows_reconcile(rows)

    def test_installments_stay_level(self):
        """Test re-derived payments do not drift by more than a penny"""
        rows = generate_schedule(make_terms())

        for row in rows[:-1]:
            assert abs(row.total_due - Decimal('8884.88')) <= Decimal('0.01')

    def test_balances_decrease(self):
        rows = generate_schedule(make_terms())

        for previous, current in zip(rows, rows[1:]):
            assert current.balance < previous.balance

    def test_zero_rate_is_straight_line(self):
        rows = generate_schedule(make_terms(principal=Decimal('12000'), annual_interest_rate=Decimal('0')))

        assert all(row.interest_amount == Decimal('0.00') for row in rows)
        assert all(row.principal_amount == Decimal('1000.00') for row in rows)
        assert rows[-1].balance == Decimal('0.00')

    def test_weekly_due_dates(self):
        rows = generate_schedule(make_terms(period=Period.WEEKLY, duration=4))

        assert [row.due_date for row in rows] == [date(2024, 1, 1) + timedelta(weeks=i) for i in range(1, 5)]

    def test_month_end_start_clamps_day(self):
        rows = generate_schedule(make_terms(start_date=date(2024, 1, 31), duration=3))

        assert [row.due_date for row in rows] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]

    def test_early_repayment_lowers_interest(self):
        """Test principal repaid before a due date reduces that period's balance"""
        reductions = [PrincipalReduction(date=date(2024, 1, 15), amount=Decimal('50000'))]
        rows = generate_schedule(make_terms(), reductions)

        assert rows[0].interest_amount == Decimal('500.00')
        assert rows[-1].balance == Decimal('0.00')
        assert sum(row.principal_amount for row in rows) == Decimal('50000.00')

    def test_reduction_mappings_accepted(self):
        reductions = [{'date': '2024-01-15', 'principal_applied': '50000'}]
        rows = generate_schedule(make_terms(), reductions)

        assert rows[0].interest_amount == Decimal('500.00')

    def test_reductions_on_due_date_apply_next_period(self):
        reductions = [PrincipalReduction(date=date(2024, 2, 1), amount=Decimal('50000'))]
        rows = generate_schedule(make_terms(), reductions)

        assert rows[0].interest_amount == Decimal('1000.00')
        assert rows[1].interest_amount < rows[0].interest_amount


class TestFlatSchedule:
    """Test flat-rate schedules"""

    def test_flat_example(self):
        """Test 12,000 at 10% over 12 months"""
        rows = generate_schedule(make_terms(principal=Decimal('12000'), annual_interest_rate=Decimal('10'),
                                            interest_type=InterestType.FLAT))

        assert len(rows) == 12
        for row in rows:
            assert row.interest_amount == Decimal('100.00')
            assert row.principal_amount == Decimal('1000.00')
            assert row.total_due == Decimal('1100.00')
        assert rows[-1].balance == Decimal('0.00')

    def test_final_row_absorbs_rounding(self):
        terms = make_terms(principal=Decimal('10000'), annual_interest_rate=Decimal('10'),
                           interest_type=InterestType.FLAT, duration=7)
        rows = generate_schedule(terms)

        total_interest = Decimal('10000') * Decimal('0.10') * Decimal(7) / Decimal(12)
        assert sum(row.principal_amount for row in rows) == Decimal('10000.00')
        assert sum(row.interest_amount for row in rows) == total_interest.quantize(Decimal('0.01'))
        assert rows[-1].balance == Decimal('0.00')
        assert_rows_reconcile(rows)

    def test_summary(self):
        rows = generate_schedule(make_terms(principal=Decimal('12000'), annual_interest_rate=Decimal('10'),
                                            interest_type=InterestType.FLAT))
        summary = calculate_loan_summary(rows)

        assert summary.total_principal == Decimal('12000.00')
        assert summary.total_interest == Decimal('1200.00')
        assert summary.total_repayable == Decimal('13200.00')
        assert summary.installment_amount == Decimal('1100.00')
        assert summary.number_of_installments == 12

    def test_empty_summary(self):
        summary = calculate_loan_summary([])

        assert summary.total_repayable == Decimal('0')
        assert summary.number_of_installments == 0


class TestInterestOnlySchedule:
    """Test interest-only schedules"""

    def test_balloon(self):
        """Test principal falls due with the final interest payment"""
        rows = generate_schedule(make_terms(principal=Decimal('10000'), duration=6,
                                            interest_type=InterestType.INTEREST_ONLY))

        assert len(rows) == 6
        assert all(row.interest_amount == Decimal('100.00') for row in rows)
        assert all(row.principal_amount == Decimal('0.00') for row in rows[:-1])
        assert all(row.balance == Decimal('10000.00') for row in rows[:-1])
        assert rows[-1].principal_amount == Decimal('10000.00')
        assert rows[-1].total_due == Decimal('10100.00')
        assert rows[-1].balance == Decimal('0.00')

    def test_amortizing_tail(self):
        rows = generate_schedule(make_terms(principal=Decimal('10000'), duration=6, interest_only_periods=3,
                                            interest_type=InterestType.INTEREST_ONLY))

        assert len(rows) == 6
        assert [row.installment_number for row in rows] == [1, 2, 3, 4, 5, 6]
        assert all(row.principal_amount == Decimal('0.00') for row in rows[:3])
        assert rows[3].interest_amount == Decimal('100.00')
        assert sum(row.principal_amount for row in rows) == Decimal('10000.00')
        assert rows[-1].balance == Decimal('0.00')

    def test_reduction_lowers_interest(self):
        reductions = [PrincipalReduction(date=date(2024, 2, 10), amount=Decimal('4000'))]
        rows = generate_schedule(make_terms(principal=Decimal('10000'), duration=6,
                                            interest_type=InterestType.INTEREST_ONLY), reductions)

        assert rows[0].interest_amount == Decimal('100.00')
        assert rows[1].interest_amount == Decimal('60.00')
        assert rows[-1].principal_amount == Decimal('6000.00')


class TestRolledUpSchedule:
    """Test rolled-up interest schedules"""

    def test_single_end_row_and_extensions(self):
        rows = generate_schedule(make_terms(principal=Decimal('10000'),
                                            interest_type=InterestType.ROLLED_UP))

        assert len(rows) == 1 + ROLLED_UP_EXTENSION_MONTHS
        end = rows[0]
        assert end.due_date == date(2025, 1, 1)
        assert end.principal_amount == Decimal('10000.00')
        assert end.interest_amount == Decimal('1200.00')
        assert end.balance == Decimal('10000.00')
        assert not end.is_extension_period

        extensions = rows[1:]
        assert all(row.is_extension_period for row in extensions)
        assert extensions[0].due_date == date(2025, 2, 1)
        assert all(row.interest_amount == Decimal('100.00') for row in extensions)
        assert all(row.principal_amount == Decimal('0.00') for row in extensions)

    def test_extension_uses_penalty_rate(self):
        terms = make_terms(principal=Decimal('10000'), interest_type=InterestType.ROLLED_UP,
                           has_penalty_rate=True, penalty_rate=Decimal('24'),
                           penalty_rate_from=date(2025, 3, 1))
        rows = generate_schedule(terms)

        assert rows[1].interest_amount == Decimal('100.00')
        assert rows[2].due_date == date(2025, 3, 1)
        assert rows[2].interest_amount == Decimal('200.00')

    def test_rolled_up_ignores_advance_flag(self):
        terms = make_terms(principal=Decimal('10000'), interest_type=InterestType.ROLLED_UP,
                           interest_paid_in_advance=True)
        rows = generate_schedule(terms)

        assert rows[0].due_date == date(2025, 1, 1)


class TestAdvanceInterestSchedule:
    """Test schedules with interest paid at the start of each period"""

    def test_first_installment_due_on_start_date(self):
        rows = generate_schedule(make_terms(interest_paid_in_advance=True))

        assert len(rows) == 12
        assert rows[0].due_date == date(2024, 1, 1)
        assert rows[-1].due_date == date(2024, 12, 1)
        assert rows[0].interest_amount == Decimal('1000.00')
        assert rows[-1].balance == Decimal('0.00')
        assert sum(row.principal_amount for row in rows) == Decimal('100000.00')

    def test_flat_in_advance(self):
        rows = generate_schedule(make_terms(principal=Decimal('12000'), annual_interest_rate=Decimal('10'),
                                            interest_type=InterestType.FLAT, interest_paid_in_advance=True))

        assert rows[0].due_date == date(2024, 1, 1)
        assert all(row.total_due == Decimal('1100.00') for row in rows)

    def test_interest_only_in_advance(self):
        rows = generate_schedule(make_terms(principal=Decimal('10000'), duration=6,
                                            interest_type=InterestType.INTEREST_ONLY,
                                            interest_paid_in_advance=True))

        assert rows[0].due_date == date(2024, 1, 1)
        assert rows[-1].principal_amount == Decimal('10000.00')
        assert rows[-1].balance == Decimal('0.00')

    def test_reductions_not_netted(self):
        reductions = [PrincipalReduction(date=date(2023, 12, 1), amount=Decimal('50000'))]
        with_reductions = generate_schedule(make_terms(interest_paid_in_advance=True), reductions)
        without = generate_schedule(make_terms(interest_paid_in_advance=True))

        assert [r.total_due for r in with_reductions] == [r.total_due for r in without]


class TestMonthlyFirstSchedule:
    """Test schedules aligned to the 1st of each month"""

    def terms(self, **overrides):
        values = dict(principal=Decimal('12000'), interest_alignment=InterestAlignment.MONTHLY_FIRST,
                      start_date=date(2024, 1, 15))
        values.update(overrides)
        return make_terms(**values)

    def test_stub_period_to_month_end(self):
        rows = generate_schedule(self.terms())

        stub = rows[0]
        expected = Decimal('12000') * Decimal('0.12') / Decimal(365) * Decimal(17)
        assert stub.due_date == date(2024, 1, 15)
        assert stub.principal_amount == Decimal('0.00')
        assert stub.interest_amount == expected.quantize(Decimal('0.01'))
        assert stub.balance == Decimal('12000.00')

    def test_installments_fall_on_the_first(self):
        rows = generate_schedule(self.terms())

        assert len(rows) == 13
        assert all(row.due_date.day == 1 for row in rows[1:])
        assert rows[1].due_date == date(2024, 2, 1)
        assert rows[-1].due_date == date(2025, 1, 1)
        assert rows[-1].balance == Decimal('0.00')
        assert sum(row.principal_amount for row in rows) == Decimal('12000.00')

    def test_final_period_truncated_to_loan_end(self):
        truncated = generate_schedule(self.terms())[-1]
        extended = generate_schedule(self.terms(extend_for_full_period=True))[-1]

        assert truncated.principal_amount == extended.principal_amount
        assert truncated.interest_amount < extended.interest_amount

    def test_flat_monthly_first(self):
        rows = generate_schedule(self.terms(interest_type=InterestType.FLAT, extend_for_full_period=True))

        assert all(row.interest_amount == Decimal('120.00') for row in rows[1:])
        assert rows[-1].balance == Decimal('0.00')

    def test_interest_only_monthly_first(self):
        rows = generate_schedule(self.terms(interest_type=InterestType.INTEREST_ONLY, duration=6))

        assert len(rows) == 7
        assert rows[1].interest_amount == Decimal('120.00')
        assert rows[-1].principal_amount == Decimal('12000.00')
        assert rows[-1].balance == Decimal('0.00')

    def test_rolled_up_monthly_first_uses_rolled_up_schedule(self):
        rows = generate_schedule(self.terms(interest_type=InterestType.ROLLED_UP))

        assert len(rows) == 1 + ROLLED_UP_EXTENSION_MONTHS
        assert rows[0].due_date == date(2025, 1, 15)

    def test_weekly_ignores_monthly_first(self):
        rows = generate_schedule(self.terms(period=Period.WEEKLY, duration=4))

        assert rows[0].due_date == date(2024, 1, 22)


class TestRowInvariant:
    """Test every generated row reconciles"""

    @pytest.mark.parametrize("interest_type", list(InterestType))
    @pytest.mark.parametrize("alignment", list(InterestAlignment))
    def test_total_due_is_principal_plus_interest(self, interest_type, alignment):
        terms = make_terms(principal=Decimal('33333.33'), annual_interest_rate=Decimal('9.75'),
                           duration=18, interest_type=interest_type, interest_alignment=alignment,
                           interest_only_periods=6, start_date=date(2024, 3, 17))
        assert_rows_reconcile(generate_schedule(terms))


class TestAnnuityPayment:
    """Test the annuity formula"""

    def test_standard_payment(self):
        payment = annuity_payment(Decimal('100000'), Decimal('0.01'), 12)
        assert payment.quantize(Decimal('0.01')) == Decimal('8884.88')

    def test_zero_rate_fallback(self):
        assert annuity_payment(Decimal('1200'), Decimal('0'), 12) == Decimal('100')

    def test_zero_balance(self):
        assert annuity_payment(Decimal('0'), Decimal('0.01'), 12) == Decimal('0')
