"""
Reporting Structures

Plain data handed to report renderers and the bank-file formatter. Nothing
here formats output; it only shapes ledger data into rows.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List

from .allocation import AllocationResult
from .loans import BucketKind, Loan
from .schedule import AmortizationSchedule
from .writeoff import WriteOffCase, WriteOffState


@dataclass(frozen=True)
class SettlementRecord:
    """One executed write-off settlement for the bank-file formatter"""
    loan_id: str
    case_id: str
    amount: Decimal
    currency: str
    settlement_date: date


def balance_summary(loan: Loan, as_of: date) -> Dict[str, Any]:
    """Outstanding balance by kind plus delinquency figures"""
    overdue = loan.overdue_installments(as_of)
    return {
        'loan_id': loan.id,
        'status': loan.status.value,
        'currency': loan.currency.code,
        'as_of': as_of.isoformat(),
        'principal': loan.outstanding(BucketKind.PRINCIPAL).amount,
        'current_interest': loan.outstanding(BucketKind.CURRENT_INTEREST).amount,
        'late_interest': loan.outstanding(BucketKind.LATE_INTEREST).amount,
        'insurance': loan.outstanding(BucketKind.INSURANCE).amount,
        'total_outstanding': loan.outstanding_balance.amount,
        'credit_balance': loan.credit_balance.amount,
        'overdue_installments': [i.number for i in overdue],
        'days_past_due': loan.days_past_due(as_of),
    }


def schedule_rows(schedule: AmortizationSchedule) -> List[Dict[str, Any]]:
    return [
        {
            'number': line.number,
            'due_date': line.due_date.isoformat(),
            'opening_balance': line.opening_balance.amount,
            'principal': line.principal.amount,
            'interest': line.interest.amount,
            'insurance': line.insurance.amount,
            'payment': line.payment.amount,
            'closing_balance': line.closing_balance.amount,
        }
        for line in schedule
    ]


def loan_statement(loan: Loan, allocations: Iterable[AllocationResult], as_of: date) -> Dict[str, Any]:
    """Installment status, payment history and balances for a loan"""
    return {
        'summary': balance_summary(loan, as_of),
        'installments': [
            {
                'number': i.number,
                'due_date': i.due_date.isoformat(),
                'scheduled_principal': i.scheduled_principal.amount,
                'scheduled_interest': i.scheduled_interest.amount,
                'principal_outstanding': loan.principal_bucket(i.number).outstanding.amount,
                'status': i.status.value,
            }
            for i in loan.installments
        ],
        'payments': [
            {
                'payment_id': a.payment_id,
                'payment_date': a.payment_date.isoformat(),
                'amount': a.payment_amount.amount,
                'late_interest': a.amount_for(BucketKind.LATE_INTEREST).amount,
                'current_interest': a.amount_for(BucketKind.CURRENT_INTEREST).amount,
                'insurance': a.amount_for(BucketKind.INSURANCE).amount,
                'principal': a.amount_for(BucketKind.PRINCIPAL).amount,
                'credit': a.credit.amount,
            }
            for a in allocations
            if a.payment_date <= as_of
        ],
    }


def settlement_records(cases: Iterable[WriteOffCase]) -> List[SettlementRecord]:
    """(loan, amount, date) rows for executed write-offs, oldest first"""
    records = [
        SettlementRecord(
            loan_id=case.loan_id,
            case_id=case.id,
            amount=case.executed_amount.amount,
            currency=case.executed_amount.currency.code,
            settlement_date=case.execution_date,
        )
        for case in cases
        if case.state == WriteOffState.EXECUTED
    ]
    records.sort(key=lambda r: (r.settlement_date, r.loan_id))
    return records
