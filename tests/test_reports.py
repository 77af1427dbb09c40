"""
Test suite for reporting structures
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.allocation import PaymentEvent
from loan_servicing.currency import Currency, Money
from loan_servicing.engine import LoanServicingEngine
from loan_servicing.reports import balance_summary, loan_statement, schedule_rows, settlement_records
from loan_servicing.storage import InMemoryStorage
from loan_servicing.writeoff import ReviewDecision


@pytest.fixture
def engine():
    return LoanServicingEngine(storage=InMemoryStorage())


@pytest.fixture
def loan(engine):
    engine.periods.open_period(2024, 6)
    engine.periods.open_period(2024, 7)
    terms = engine.loan_terms(Money(Decimal('120000'), Currency.USD), "0.24", 12,
                              first_due_date=date(2024, 6, 30))
    return engine.loan_manager.originate_loan(terms, date(2024, 5, 31), loan_id="42")


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.USD)


class TestReports:
    """Test report rows"""

    def test_schedule_rows(self, engine, loan):
        schedule = engine.loan_manager.simulate(loan.terms, loan.origination_date)

        rows = schedule_rows(schedule)

        assert len(rows) == 12
        assert rows[0]['number'] == 1
        assert rows[0]['due_date'] == "2024-06-30"
        assert rows[0]['interest'] == Decimal('2400.00')
        assert rows[0]['payment'] == rows[0]['principal'] + rows[0]['interest'] + rows[0]['insurance']

    def test_balance_summary(self, engine, loan):
        engine.causation.run_all_kinds("2024-06")
        stored = engine.loans.load_loan("42")

        summary = balance_summary(stored, date(2024, 7, 15))

        assert summary['principal'] == Decimal('120000.00')
        assert summary['current_interest'] == Decimal('2400.00')
        assert summary['total_outstanding'] == Decimal('122400.00')
        assert summary['overdue_installments'] == [1]
        assert summary['days_past_due'] == 15

    def test_loan_statement(self, engine, loan):
        engine.allocation.apply(PaymentEvent(id="p1", loan_id="42", amount=usd(5000),
                                             payment_date=date(2024, 6, 30)))
        stored = engine.loans.load_loan("42")

        statement = loan_statement(stored, engine.allocation.allocations_for_loan("42"), date(2024, 7, 1))

        assert statement['payments'][0]['principal'] == Decimal('5000.00')
        assert statement['installments'][0]['status'] == "partially_paid"
        assert statement['summary']['principal'] == Decimal('115000.00')

    def test_statement_excludes_later_payments(self, engine, loan):
        engine.allocation.apply(PaymentEvent(id="p1", loan_id="42", amount=usd(100),
                                             payment_date=date(2024, 7, 5)))
        stored = engine.loans.load_loan("42")

        statement = loan_statement(stored, engine.allocation.allocations_for_loan("42"), date(2024, 7, 1))

        assert statement['payments'] == []

    def test_settlement_records(self, engine, loan):
        case = engine.write_offs.generate_proposal("42", proposed_by="collector")
        engine.write_offs.review_proposal(case.id, reviewer="risk", decision=ReviewDecision.APPROVE)
        engine.write_offs.execute(case.id, executed_by="ops", execution_date=date(2024, 7, 20))
        open_case_loan = engine.loan_manager.originate_loan(loan.terms, date(2024, 5, 31), loan_id="43")
        engine.write_offs.generate_proposal(open_case_loan.id, proposed_by="collector")

        records = settlement_records(engine.write_offs.list_cases())

        assert len(records) == 1
        assert records[0].loan_id == "42"
        assert records[0].amount == Decimal('120000.00')
        assert records[0].currency == "USD"
        assert records[0].settlement_date == date(2024, 7, 20)
