"""
Test suite for interest causation

Tests accrual amounts for current interest, late interest and insurance,
idempotency per (loan, period, kind), closed-period refusal and per-loan
exception reporting.
"""

import pytest
from decimal import Decimal, ROUND_HALF_UP
from datetime import date

from loan_servicing.audit import AuditEventType, AuditTrail
from loan_servicing.causation import CausationJob, CausationProcessor
from loan_servicing.currency import Currency, Money
from loan_servicing.dates import IntervalPolicy
from loan_servicing.errors import PeriodClosedError, PeriodNotFoundError
from loan_servicing.events import DomainEvent, EventDispatcher
from loan_servicing.loans import BucketKind, LateInterestRule, LoanManager, LoanRepository, LoanTerms
from loan_servicing.locks import KeyedLockRegistry
from loan_servicing.markers import CausationMarkerStore, CausationOutcome
from loan_servicing.periods import PeriodCloser, PeriodRepository
from loan_servicing.schedule import InsuranceChargeMethod, InsurancePolicy
from loan_servicing.storage import InMemoryStorage


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_manager(storage):
    """Create audit trail for testing"""
    return AuditTrail(storage)


@pytest.fixture
def loans(storage):
    return LoanRepository(storage)


@pytest.fixture
def periods(storage):
    repository = PeriodRepository(storage)
    repository.open_period(2024, 6)
    repository.open_period(2024, 7)
    return repository


@pytest.fixture
def markers(storage):
    return CausationMarkerStore(storage)


@pytest.fixture
def locks():
    return KeyedLockRegistry()


@pytest.fixture
def loan_manager(loans, audit_manager):
    return LoanManager(loans, audit_manager)


@pytest.fixture
def processor(loans, periods, markers, locks, audit_manager):
    return CausationProcessor(loans, periods, markers, locks, audit_manager, max_workers=4)


@pytest.fixture
def closer(periods, markers, loans, locks, audit_manager):
    return PeriodCloser(periods, markers, loans, locks, audit_manager)


# Installments fall due on the last day of each month
MONTH_END = IntervalPolicy(day_of_month=31)


def make_terms(rate="0.36", **kwargs) -> LoanTerms:
    kwargs.setdefault('first_due_date', date(2024, 6, 30))
    return LoanTerms(
        principal=Money(Decimal('1000000'), Currency.USD),
        annual_rate=Decimal(rate) if rate is not None else None,
        term=12,
        **kwargs
    )


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.USD)


class TestCurrentInterest:
    """Test current interest causation"""

    def test_accrues_over_full_period(self, loan_manager, processor, loans):
        """Test 30 days at 36% nominal annual on 1,000,000 (actual/360)"""
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        loan = loans.load_loan("42")
        bucket = loan.find_bucket(BucketKind.CURRENT_INTEREST, period_id="2024-06")
        assert bucket.accrued == usd("30000.00")
        assert bucket.due_date == date(2024, 6, 30)
        assert loan.caused_through[BucketKind.CURRENT_INTEREST] == date(2024, 6, 30)
        assert summary.loans_processed == 1
        assert summary.total_accrued == Decimal('30000.00')
        assert summary.message == "Causation of current_interest for 2024-06 completed with 0 exceptions"

    def test_accrues_from_origination_date(self, loan_manager, processor, loans):
        """Test a loan originated mid-period accrues only from origination"""
        loan_manager.originate_loan(make_terms(), date(2024, 6, 10), loan_id="42")

        processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        bucket = loans.load_loan("42").find_bucket(BucketKind.CURRENT_INTEREST, period_id="2024-06")
        assert bucket.accrued == usd("20000.00")

    def test_second_period_continues_from_caused_through(self, loan_manager, processor, loans):
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")

        processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))
        processor.run(CausationJob("2024-07", BucketKind.CURRENT_INTEREST))

        bucket = loans.load_loan("42").find_bucket(BucketKind.CURRENT_INTEREST, period_id="2024-07")
        assert bucket.accrued == usd("31000.00")

    def test_loans_originated_after_period_are_ignored(self, loan_manager, processor):
        loan_manager.originate_loan(make_terms(first_due_date=date(2024, 8, 5)), date(2024, 7, 5))

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        assert summary.loans_reviewed == 0

    def test_many_loans_in_parallel(self, loan_manager, processor, markers):
        for n in range(8):
            loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id=f"loan-{n}")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        assert summary.loans_processed == 8
        assert summary.total_accrued == Decimal('240000.00')
        assert len(markers.markers_for_period("2024-06")) == 8


class TestIdempotency:
    """Test causation runs at most once per loan, period and kind"""

    def test_rerun_skips_loan(self, loan_manager, processor, loans, audit_manager):
        """Test a repeated run leaves the accrued amount unchanged"""
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")
        job = CausationJob("2024-06", BucketKind.CURRENT_INTEREST)

        processor.run(job)
        summary = processor.run(job)

        bucket = loans.load_loan("42").find_bucket(BucketKind.CURRENT_INTEREST, period_id="2024-06")
        assert bucket.accrued == usd("30000.00")
        assert summary.loans_skipped == 1
        assert summary.loans_processed == 0
        assert len(audit_manager.get_events_by_type(AuditEventType.ACCRUAL_POSTED)) == 1

    def test_marker_recorded(self, loan_manager, processor, markers):
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST, run_id="run-1"))

        marker = markers.get_marker("42", "2024-06", BucketKind.CURRENT_INTEREST)
        assert marker.outcome == CausationOutcome.ACCRUED
        assert marker.amount == Decimal('30000.00')
        assert marker.run_id == summary.run_id == "run-1"
        assert marker.caused_through == date(2024, 6, 30)

    def test_duplicate_marker_rejected(self, loan_manager, processor, markers):
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")
        processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))
        marker = markers.get_marker("42", "2024-06", BucketKind.CURRENT_INTEREST)

        with pytest.raises(ValueError):
            markers.record_causation_run(marker)

    def test_scoped_job(self, loan_manager, processor, markers):
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="43")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST, loan_id="43"))

        assert summary.loans_reviewed == 1
        assert markers.has_causation_run("43", "2024-06", BucketKind.CURRENT_INTEREST)
        assert not markers.has_causation_run("42", "2024-06", BucketKind.CURRENT_INTEREST)

    def test_scoped_job_ignores_loan_originated_after_period(self, loan_manager, processor, markers, loans):
        loan_manager.originate_loan(make_terms(first_due_date=date(2024, 8, 5)), date(2024, 7, 5), loan_id="43")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST, loan_id="43"))

        assert summary.loans_reviewed == 0
        assert not markers.has_causation_run("43", "2024-06", BucketKind.CURRENT_INTEREST)
        assert loans.load_loan("43").buckets_of(BucketKind.CURRENT_INTEREST) == []


class TestLateInterest:
    """Test late interest causation"""

    def test_not_applicable_when_loan_is_current(self, loan_manager, processor, markers, loans):
        loan_manager.originate_loan(make_terms(late_annual_rate=Decimal('0.72')), date(2024, 5, 31), loan_id="42")

        summary = processor.run(CausationJob("2024-06", BucketKind.LATE_INTEREST))

        assert summary.loans_not_applicable == 1
        marker = markers.get_marker("42", "2024-06", BucketKind.LATE_INTEREST)
        assert marker.outcome == CausationOutcome.NOT_APPLICABLE
        assert loans.load_loan("42").buckets_of(BucketKind.LATE_INTEREST) == []

    def test_accrues_on_overdue_principal(self, loan_manager, processor, loans, closer):
        """Test late interest on the unpaid first installment for July"""
        loan_manager.originate_loan(make_terms(late_annual_rate=Decimal('0.72'), policy=MONTH_END),
                                    date(2024, 5, 31), loan_id="42")
        processor.run_all_kinds("2024-06")
        closer.close_period(2024, 6, closed_by="controller")

        processor.run(CausationJob("2024-07", BucketKind.LATE_INTEREST))

        loan = loans.load_loan("42")
        overdue = loan.principal_bucket(1).outstanding.amount
        expected = (overdue * Decimal('0.72') * 31 / 360).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        assert overdue == Decimal('70462.09')
        bucket = loan.find_bucket(BucketKind.LATE_INTEREST, period_id="2024-07")
        assert bucket.accrued == usd(expected)

    def test_rule_rate_takes_precedence(self, loan_manager, processor, loans):
        rules = [
            LateInterestRule(days_from=1, days_to=30, annual_rate=Decimal('0.48')),
            LateInterestRule(days_from=31, days_to=None, annual_rate=Decimal('0.36')),
        ]
        loan_manager.originate_loan(
            make_terms(late_annual_rate=Decimal('0.72'), late_interest_rules=rules, policy=MONTH_END),
            date(2024, 5, 31), loan_id="42"
        )
        processor.run(CausationJob("2024-06", BucketKind.LATE_INTEREST))

        processor.run(CausationJob("2024-07", BucketKind.LATE_INTEREST))

        loan = loans.load_loan("42")
        overdue = loan.principal_bucket(1).outstanding.amount
        expected = (overdue * Decimal('0.36') * 31 / 360).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        assert loan.outstanding(BucketKind.LATE_INTEREST) == usd(expected)

    def test_missing_late_rate_is_reported(self, loan_manager, processor, markers, audit_manager):
        """Test a missing rate becomes a run exception and leaves no marker"""
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")
        processor.run(CausationJob("2024-06", BucketKind.LATE_INTEREST))

        summary = processor.run(CausationJob("2024-07", BucketKind.LATE_INTEREST))

        assert summary.loans_failed == 1
        assert summary.exceptions[0].loan_id == "42"
        assert summary.exceptions[0].error_type == "MissingRateConfigurationError"
        assert summary.message == "Causation of late_interest for 2024-07 completed with 1 exceptions"
        assert not markers.has_causation_run("42", "2024-07", BucketKind.LATE_INTEREST)
        assert len(audit_manager.get_events_by_type(AuditEventType.CAUSATION_FAILED)) == 1


class TestInsurance:
    """Test insurance causation"""

    def test_periodic_insurance(self, loan_manager, processor, loans):
        insurance = InsurancePolicy(annual_rate=Decimal('0.012'))
        loan_manager.originate_loan(make_terms(insurance=insurance), date(2024, 5, 31), loan_id="42")

        processor.run(CausationJob("2024-06", BucketKind.INSURANCE))

        assert loans.load_loan("42").outstanding(BucketKind.INSURANCE) == usd("1000.00")

    def test_no_insurance_is_not_applicable(self, loan_manager, processor):
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")

        summary = processor.run(CausationJob("2024-06", BucketKind.INSURANCE))

        assert summary.loans_not_applicable == 1

    def test_one_time_insurance_is_not_caused(self, loan_manager, processor, loans):
        insurance = InsurancePolicy(annual_rate=Decimal('0.01'), method=InsuranceChargeMethod.ONE_TIME)
        loan_manager.originate_loan(make_terms(insurance=insurance), date(2024, 5, 31), loan_id="42")

        summary = processor.run(CausationJob("2024-06", BucketKind.INSURANCE))

        assert summary.loans_not_applicable == 1
        assert loans.load_loan("42").outstanding(BucketKind.INSURANCE) == usd("10000")


class TestCausationFailures:
    """Test run-level refusals and per-loan failures"""

    def test_closed_period_refused(self, loan_manager, processor, closer, loans):
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")
        processor.run_all_kinds("2024-06")
        closer.close_period(2024, 6, closed_by="controller")

        with pytest.raises(PeriodClosedError):
            processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))
        assert loans.load_loan("42").outstanding(BucketKind.CURRENT_INTEREST) == usd("30000")

    def test_unknown_period(self, processor):
        with pytest.raises(PeriodNotFoundError):
            processor.run(CausationJob("2023-01", BucketKind.CURRENT_INTEREST))

    def test_missing_interest_rate(self, loan_manager, processor, loans):
        loan_manager.originate_loan(make_terms(rate=None), date(2024, 5, 31), loan_id="42")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        assert summary.loans_failed == 1
        assert summary.exceptions[0].context['kind'] == "current_interest"
        assert loans.load_loan("42").buckets_of(BucketKind.CURRENT_INTEREST) == []

    def test_one_failure_does_not_stop_the_run(self, loan_manager, processor):
        loan_manager.originate_loan(make_terms(rate=None), date(2024, 5, 31), loan_id="bad")
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="good")

        summary = processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        assert summary.loans_failed == 1
        assert summary.loans_processed == 1

    def test_accrued_kind_required(self):
        with pytest.raises(ValueError):
            CausationJob("2024-06", BucketKind.PRINCIPAL)

    def test_run_completion_event(self, loan_manager, processor):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe(DomainEvent.CAUSATION_RUN_COMPLETED, received.append)
        processor.set_event_dispatcher(dispatcher)
        loan_manager.originate_loan(make_terms(), date(2024, 5, 31), loan_id="42")

        processor.run(CausationJob("2024-06", BucketKind.CURRENT_INTEREST))

        assert received[0].data['loans_processed'] == 1
        assert received[0].data['total_accrued'] == "30000.00"
