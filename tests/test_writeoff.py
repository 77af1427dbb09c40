"""
Test suite for the write-off workflow

Tests the PROPOSED -> REVIEWED -> EXECUTED approval chain, rejection,
refused transitions and the effect of execution on the loan ledger.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.allocation import PaymentAllocationEngine, PaymentEvent
from loan_servicing.audit import AuditEventType, AuditTrail
from loan_servicing.currency import Currency, Money
from loan_servicing.errors import (
    InvalidStateTransitionError, LoanNotEligibleError, PeriodClosedError, WriteOffCaseNotFoundError
)
from loan_servicing.loans import BucketKind, LoanManager, LoanRepository, LoanStatus, LoanTerms
from loan_servicing.locks import KeyedLockRegistry
from loan_servicing.periods import PeriodRepository
from loan_servicing.storage import InMemoryStorage
from loan_servicing.writeoff import ReviewDecision, WriteOffState, WriteOffWorkflow


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
    repository.open_period(2024, 9)
    return repository


@pytest.fixture
def locks():
    return KeyedLockRegistry()


@pytest.fixture
def workflow(loans, periods, locks, audit_manager):
    return WriteOffWorkflow(loans, periods, locks, audit_manager)


@pytest.fixture
def loan(loans, audit_manager):
    terms = LoanTerms(
        principal=Money(Decimal('100000'), Currency.USD),
        annual_rate=Decimal('0.24'),
        term=6,
        first_due_date=date(2024, 6, 30),
    )
    loan = LoanManager(loans, audit_manager).originate_loan(terms, date(2024, 5, 31), loan_id="42")
    loan.post_accrual(BucketKind.CURRENT_INTEREST, "2024-06", date(2024, 6, 30), usd(2000))
    loan.post_accrual(BucketKind.LATE_INTEREST, "2024-08", date(2024, 8, 31), usd(750))
    loans.save_loan(loan)
    return loan


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.USD)


def approved_case(workflow):
    case = workflow.generate_proposal("42", proposed_by="collector")
    return workflow.review_proposal(case.id, reviewer="risk", decision=ReviewDecision.APPROVE)


class TestProposal:
    """Test generating write-off proposals"""

    def test_proposal_covers_everything_outstanding(self, workflow, loan, audit_manager):
        case = workflow.generate_proposal("42", proposed_by="collector")

        assert case.state == WriteOffState.PROPOSED
        assert case.proposed_amount == usd("102750")
        assert case.proposed_breakdown['principal'] == Decimal('100000.00')
        assert case.proposed_breakdown['current_interest'] == Decimal('2000.00')
        assert case.proposed_breakdown['late_interest'] == Decimal('750.00')
        assert audit_manager.get_events_for_entity("write_off", case.id)[0].user_id == "collector"

    def test_one_open_case_per_loan(self, workflow, loan):
        workflow.generate_proposal("42", proposed_by="collector")

        with pytest.raises(LoanNotEligibleError):
            workflow.generate_proposal("42", proposed_by="collector")

    def test_new_proposal_after_rejection(self, workflow, loan):
        case = workflow.generate_proposal("42", proposed_by="collector")
        workflow.review_proposal(case.id, reviewer="risk", decision=ReviewDecision.REJECT)

        second = workflow.generate_proposal("42", proposed_by="collector")

        assert second.id != case.id
        assert len(workflow.cases_for_loan("42")) == 2

    def test_inactive_loan_refused(self, workflow, loan, loans):
        stored = loans.load_loan("42")
        stored.status = LoanStatus.SETTLED
        loans.save_loan(stored)

        with pytest.raises(LoanNotEligibleError):
            workflow.generate_proposal("42", proposed_by="collector")


class TestReview:
    """Test reviewing proposals"""

    def test_approve(self, workflow, loan, audit_manager):
        case = approved_case(workflow)

        assert case.state == WriteOffState.REVIEWED
        assert case.reviewed_by == "risk"
        assert case.reviewed_at is not None
        assert len(audit_manager.get_events_by_type(AuditEventType.WRITE_OFF_REVIEWED)) == 1

    def test_reject_is_terminal(self, workflow, loan, audit_manager):
        case = workflow.generate_proposal("42", proposed_by="collector")
        rejected = workflow.review_proposal(case.id, reviewer="risk", decision=ReviewDecision.REJECT,
                                            comments="collateral recovered")

        assert rejected.state == WriteOffState.REJECTED
        assert rejected.review_comments == "collateral recovered"
        with pytest.raises(InvalidStateTransitionError):
            workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))
        assert len(audit_manager.get_events_by_type(AuditEventType.WRITE_OFF_REJECTED)) == 1

    def test_review_twice_refused(self, workflow, loan):
        case = approved_case(workflow)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            workflow.review_proposal(case.id, reviewer="risk", decision=ReviewDecision.APPROVE)
        assert exc_info.value.current_state == "reviewed"

    def test_unknown_case(self, workflow):
        with pytest.raises(WriteOffCaseNotFoundError):
            workflow.review_proposal("missing", reviewer="risk", decision=ReviewDecision.APPROVE)


class TestExecution:
    """Test executing reviewed cases"""

    def test_execute_writes_off_every_bucket(self, workflow, loan, loans, audit_manager):
        case = approved_case(workflow)

        executed = workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))

        assert executed.state == WriteOffState.EXECUTED
        assert executed.executed_amount == usd("102750")
        assert executed.executed_breakdown['late_interest'] == Decimal('750.00')
        assert executed.execution_date == date(2024, 9, 15)

        stored = loans.load_loan("42")
        assert stored.status == LoanStatus.WRITTEN_OFF
        assert stored.outstanding_balance.is_zero()
        assert all(b.written_off == b.accrued for b in stored.buckets)
        assert len(audit_manager.get_events_by_type(AuditEventType.WRITE_OFF_EXECUTED)) == 1

    def test_execute_requires_review(self, workflow, loan):
        case = workflow.generate_proposal("42", proposed_by="collector")

        with pytest.raises(InvalidStateTransitionError):
            workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))
        assert workflow.get_case(case.id).state == WriteOffState.PROPOSED

    def test_execute_once(self, workflow, loan):
        case = approved_case(workflow)
        workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))

        with pytest.raises(InvalidStateTransitionError):
            workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 16))

    def test_execute_in_closed_period_refused(self, workflow, loan, loans, periods):
        case = approved_case(workflow)
        period = periods.get_period("2024-09")
        period.is_closed = True
        periods.save_period(period)

        with pytest.raises(PeriodClosedError):
            workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))
        assert loans.load_loan("42").status == LoanStatus.ACTIVE
        assert workflow.get_case(case.id).state == WriteOffState.REVIEWED

    def test_execute_refused_when_loan_settled_meanwhile(self, workflow, loan, loans, periods, locks,
                                                         audit_manager):
        case = approved_case(workflow)
        PaymentAllocationEngine(loans, periods, locks, audit_manager).apply(PaymentEvent(
            id="payoff", loan_id="42", amount=usd("102750"), payment_date=date(2024, 9, 10)
        ))

        with pytest.raises(LoanNotEligibleError):
            workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))

    def test_payments_refused_after_write_off(self, workflow, loan, loans, periods, locks, audit_manager):
        case = approved_case(workflow)
        workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))

        with pytest.raises(LoanNotEligibleError):
            PaymentAllocationEngine(loans, periods, locks, audit_manager).apply(PaymentEvent(
                id="late-payment", loan_id="42", amount=usd("100"), payment_date=date(2024, 9, 20)
            ))

    def test_list_cases_by_state(self, workflow, loan):
        case = approved_case(workflow)
        workflow.execute(case.id, executed_by="ops", execution_date=date(2024, 9, 15))

        assert [c.id for c in workflow.list_cases(WriteOffState.EXECUTED)] == [case.id]
        assert workflow.list_cases(WriteOffState.PROPOSED) == []
