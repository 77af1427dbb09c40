"""
Write-Off Workflow Module

Three-phase approval for terminating a loan's obligations:
PROPOSED -> REVIEWED -> EXECUTED, with REJECTED as the terminal alternative
at review time. Every transition is checked against an explicit table and
recorded on the audit trail; execution is irreversible.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .currency import Currency, Money
from .errors import (
    InvalidStateTransitionError, LoanNotEligibleError, PeriodClosedError, WriteOffCaseNotFoundError
)
from .events import DomainEvent, EventPublisherMixin
from .loans import BucketKind, LoanRepository, LoanStatus
from .locks import KeyedLockRegistry
from .periods import PeriodRepository
from .storage import StorageRecord

logger = logging.getLogger(__name__)


class WriteOffState(Enum):
    PROPOSED = "proposed"
    REVIEWED = "reviewed"
    EXECUTED = "executed"
    REJECTED = "rejected"


class ReviewDecision(Enum):
    APPROVE = "approve"
    REJECT = "reject"


ALLOWED_TRANSITIONS = {
    WriteOffState.PROPOSED: {WriteOffState.REVIEWED, WriteOffState.REJECTED},
    WriteOffState.REVIEWED: {WriteOffState.EXECUTED},
    WriteOffState.EXECUTED: set(),
    WriteOffState.REJECTED: set(),
}

OPEN_STATES = (WriteOffState.PROPOSED, WriteOffState.REVIEWED)


@dataclass
class WriteOffCase(StorageRecord):
    """Write-off proposal and its review/execution history"""
    loan_id: str
    state: WriteOffState
    proposed_amount: Money
    proposed_by: str
    proposed_breakdown: Dict[str, Decimal] = field(default_factory=dict)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_comments: Optional[str] = None
    executed_by: Optional[str] = None
    executed_at: Optional[datetime] = None
    execution_date: Optional[date] = None
    executed_amount: Optional[Money] = None
    executed_breakdown: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def transition_to(self, target: WriteOffState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                "write_off_case", self.state.value, target.value, {'case_id': self.id}
            )
        self.state = target
        self.updated_at = datetime.now(timezone.utc)


class WriteOffWorkflow(EventPublisherMixin):
    """
    Generates, reviews and executes write-off cases
    """

    def __init__(
        self,
        loans: LoanRepository,
        periods: PeriodRepository,
        locks: KeyedLockRegistry,
        audit_trail: AuditTrail,
        table_name: str = "write_off_cases"
    ):
        self.loans = loans
        self.periods = periods
        self.locks = locks
        self.audit_trail = audit_trail
        self.table_name = table_name

    @property
    def storage(self):
        return self.loans.storage

    def get_case(self, case_id: str) -> WriteOffCase:
        data = self.storage.load(self.table_name, case_id)
        if not data:
            raise WriteOffCaseNotFoundError(case_id)
        return self._case_from_dict(data)

    def cases_for_loan(self, loan_id: str) -> List[WriteOffCase]:
        cases = [self._case_from_dict(d) for d in self.storage.find(self.table_name, {'loan_id': loan_id})]
        cases.sort(key=lambda c: c.created_at)
        return cases

    def list_cases(self, state: Optional[WriteOffState] = None) -> List[WriteOffCase]:
        records = (self.storage.load_all(self.table_name) if state is None
                   else self.storage.find(self.table_name, {'state': state.value}))
        cases = [self._case_from_dict(d) for d in records]
        cases.sort(key=lambda c: c.created_at)
        return cases

    def generate_proposal(self, loan_id: str, proposed_by: str) -> WriteOffCase:
        """
        Propose writing off everything a loan still owes.

        Raises:
            LoanNotFoundError: unknown loan
            LoanNotEligibleError: loan not ACTIVE, or it already has an open case
        """
        with self.locks.loan(loan_id):
            loan = self.loans.load_loan(loan_id)
            if not loan.is_active:
                raise LoanNotEligibleError(
                    f"Loan {loan_id} is {loan.status.value}; only active loans can be written off",
                    {'loan_id': loan_id, 'status': loan.status.value}
                )
            open_cases = [c for c in self.cases_for_loan(loan_id) if c.is_open]
            if open_cases:
                raise LoanNotEligibleError(
                    f"Loan {loan_id} already has open write-off case {open_cases[0].id}",
                    {'loan_id': loan_id, 'case_id': open_cases[0].id}
                )

            now = datetime.now(timezone.utc)
            case = WriteOffCase(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                state=WriteOffState.PROPOSED,
                proposed_amount=loan.outstanding_balance,
                proposed_by=proposed_by,
                proposed_breakdown={k.value: loan.outstanding(k).amount for k in BucketKind},
            )
            self._save_case(case)

        self.audit_trail.log_event(
            AuditEventType.WRITE_OFF_PROPOSED,
            "write_off",
            case.id,
            {'loan_id': loan_id, 'proposed_amount': case.proposed_amount.amount,
             'breakdown': case.proposed_breakdown},
            user_id=proposed_by
        )
        self.publish_event(DomainEvent.WRITE_OFF_PROPOSED, "write_off", case.id, {
            'loan_id': loan_id, 'proposed_amount': str(case.proposed_amount.amount)
        })
        logger.info(f"Write-off case {case.id} proposed for loan {loan_id}: {case.proposed_amount.to_string()}")
        return case

    def review_proposal(self, case_id: str, reviewer: str, decision: ReviewDecision,
                        comments: Optional[str] = None) -> WriteOffCase:
        """
        Approve (PROPOSED -> REVIEWED) or reject (PROPOSED -> REJECTED) a case.

        Raises:
            InvalidStateTransitionError: case is not PROPOSED
        """
        case = self.get_case(case_id)
        with self.locks.loan(case.loan_id):
            case = self.get_case(case_id)
            target = WriteOffState.REVIEWED if decision == ReviewDecision.APPROVE else WriteOffState.REJECTED
            case.transition_to(target)
            case.reviewed_by = reviewer
            case.reviewed_at = datetime.now(timezone.utc)
            case.review_comments = comments
            self._save_case(case)

        if target == WriteOffState.REVIEWED:
            audit_type, event_type = AuditEventType.WRITE_OFF_REVIEWED, DomainEvent.WRITE_OFF_REVIEWED
        else:
            audit_type, event_type = AuditEventType.WRITE_OFF_REJECTED, DomainEvent.WRITE_OFF_REJECTED
        self.audit_trail.log_event(audit_type, "write_off", case.id,
                                   {'loan_id': case.loan_id, 'decision': decision, 'comments': comments},
                                   user_id=reviewer)
        self.publish_event(event_type, "write_off", case.id, {'loan_id': case.loan_id, 'reviewer': reviewer})
        logger.info(f"Write-off case {case.id} {target.value} by {reviewer}")
        return case

    def execute(self, case_id: str, executed_by: str,
                execution_date: Optional[date] = None) -> WriteOffCase:
        """
        Execute a reviewed case: write off every outstanding bucket and mark
        the loan WRITTEN_OFF.

        Raises:
            InvalidStateTransitionError: case is not REVIEWED
            PeriodClosedError: execution date falls in a closed period
            LoanNotEligibleError: loan stopped being ACTIVE after the proposal
        """
        execution_date = execution_date or datetime.now(timezone.utc).date()
        case = self.get_case(case_id)

        with self.locks.loan(case.loan_id):
            case = self.get_case(case_id)
            if WriteOffState.EXECUTED not in ALLOWED_TRANSITIONS[case.state]:
                raise InvalidStateTransitionError(
                    "write_off_case", case.state.value, WriteOffState.EXECUTED.value, {'case_id': case.id}
                )
            if self.periods.is_date_closed(execution_date):
                raise PeriodClosedError(
                    f"Cannot execute write-off {case.id} in a closed period",
                    {'case_id': case.id, 'execution_date': execution_date.isoformat()}
                )

            loan = self.loans.load_loan(case.loan_id)
            if not loan.is_active:
                raise LoanNotEligibleError(
                    f"Loan {loan.id} is {loan.status.value}; write-off cannot execute",
                    {'loan_id': loan.id, 'case_id': case.id, 'status': loan.status.value}
                )

            breakdown = {k.value: Decimal('0') for k in BucketKind}
            total = Money.zero(loan.currency)
            with self.storage.atomic():
                for bucket in loan.buckets:
                    remaining = bucket.outstanding
                    if remaining.is_positive():
                        bucket.written_off = bucket.written_off + remaining
                        breakdown[bucket.kind.value] += remaining.amount
                        total = total + remaining
                loan.status = LoanStatus.WRITTEN_OFF
                loan.closed_at = datetime.now(timezone.utc)
                self.loans.save_loan(loan)

                case.transition_to(WriteOffState.EXECUTED)
                case.executed_by = executed_by
                case.executed_at = loan.closed_at
                case.execution_date = execution_date
                case.executed_amount = total
                case.executed_breakdown = breakdown
                self._save_case(case)

        self.audit_trail.log_event(
            AuditEventType.WRITE_OFF_EXECUTED,
            "write_off",
            case.id,
            {'loan_id': case.loan_id, 'executed_amount': total.amount, 'breakdown': breakdown,
             'execution_date': execution_date},
            user_id=executed_by
        )
        self.publish_event(DomainEvent.WRITE_OFF_EXECUTED, "write_off", case.id, {
            'loan_id': case.loan_id,
            'executed_amount': str(total.amount),
            'execution_date': execution_date.isoformat(),
        })
        logger.info(f"Write-off case {case.id} executed for loan {case.loan_id}: {total.to_string()}")
        return case

    def _save_case(self, case: WriteOffCase) -> None:
        self.storage.save(self.table_name, case.id, self._case_to_dict(case))

    def _case_to_dict(self, case: WriteOffCase) -> Dict[str, Any]:
        def ts(value):
            return value.isoformat() if value else None

        return {
            'id': case.id,
            'created_at': case.created_at.isoformat(),
            'updated_at': case.updated_at.isoformat(),
            'loan_id': case.loan_id,
            'state': case.state.value,
            'currency': case.proposed_amount.currency.code,
            'proposed_amount': str(case.proposed_amount.amount),
            'proposed_by': case.proposed_by,
            'proposed_breakdown': {k: str(v) for k, v in case.proposed_breakdown.items()},
            'reviewed_by': case.reviewed_by,
            'reviewed_at': ts(case.reviewed_at),
            'review_comments': case.review_comments,
            'executed_by': case.executed_by,
            'executed_at': ts(case.executed_at),
            'execution_date': ts(case.execution_date),
            'executed_amount': str(case.executed_amount.amount) if case.executed_amount else None,
            'executed_breakdown': {k: str(v) for k, v in case.executed_breakdown.items()},
        }

    def _case_from_dict(self, data: Dict[str, Any]) -> WriteOffCase:
        currency = Currency[data['currency']]

        def dt(value):
            return datetime.fromisoformat(value) if value else None

        return WriteOffCase(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            state=WriteOffState(data['state']),
            proposed_amount=Money(Decimal(data['proposed_amount']), currency),
            proposed_by=data['proposed_by'],
            proposed_breakdown={k: Decimal(v) for k, v in data['proposed_breakdown'].items()},
            reviewed_by=data['reviewed_by'],
            reviewed_at=dt(data['reviewed_at']),
            review_comments=data['review_comments'],
            executed_by=data['executed_by'],
            executed_at=dt(data['executed_at']),
            execution_date=date.fromisoformat(data['execution_date']) if data['execution_date'] else None,
            executed_amount=Money(Decimal(data['executed_amount']), currency) if data['executed_amount'] else None,
            executed_breakdown={k: Decimal(v) for k, v in data['executed_breakdown'].items()},
        )
