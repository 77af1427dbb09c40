"""
Payment Allocation Module

Distributes an incoming payment across a loan's outstanding obligations in a
fixed precedence: late interest, current interest, insurance (each oldest
period first), then principal (oldest installment first). Whatever is left
after every bucket is satisfied becomes loan credit.

The plan is computed by a pure allocator and checked against the ledger
invariants before anything is written. Each payment id is consumed exactly
once; re-submitting a payment returns the original allocation.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .audit import AuditEventType, AuditTrail
from .currency import Currency, Money, sum_money
from .errors import AllocationInvariantError, LoanNotEligibleError, PeriodClosedError
from .events import DomainEvent, EventPublisherMixin
from .loans import BucketKind, LoanRepository, LoanStatus, ObligationBucket
from .locks import KeyedLockRegistry
from .logging_config import log_action
from .periods import PeriodRepository

logger = logging.getLogger(__name__)

ALLOCATION_PRECEDENCE = (
    BucketKind.LATE_INTEREST,
    BucketKind.CURRENT_INTEREST,
    BucketKind.INSURANCE,
    BucketKind.PRINCIPAL,
)


class PaymentSource(Enum):
    TELLER = "teller"
    PAYROLL = "payroll"
    BANK_FILE = "bank_file"


@dataclass(frozen=True)
class PaymentEvent:
    """Normalized incoming payment"""
    id: str
    loan_id: str
    amount: Money
    payment_date: date
    source: PaymentSource = PaymentSource.TELLER
    movement_type: str = "payment"


@dataclass(frozen=True)
class AllocationLine:
    bucket_id: str
    kind: BucketKind
    amount: Money
    period_id: Optional[str] = None
    installment_number: Optional[int] = None


@dataclass
class AllocationResult:
    """How one payment was distributed"""
    payment_id: str
    loan_id: str
    payment_amount: Money
    payment_date: date
    lines: List[AllocationLine]
    credit: Money
    loan_status: LoanStatus
    allocated_at: datetime

    @property
    def distributed(self) -> Money:
        return sum_money((l.amount for l in self.lines), self.credit.currency)

    def amount_for(self, kind: BucketKind) -> Money:
        return sum_money((l.amount for l in self.lines if l.kind == kind), self.credit.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.payment_id,
            'loan_id': self.loan_id,
            'payment_amount': str(self.payment_amount.amount),
            'currency': self.credit.currency.code,
            'payment_date': self.payment_date.isoformat(),
            'lines': [
                {
                    'bucket_id': l.bucket_id,
                    'kind': l.kind.value,
                    'amount': str(l.amount.amount),
                    'period_id': l.period_id,
                    'installment_number': l.installment_number,
                }
                for l in self.lines
            ],
            'credit': str(self.credit.amount),
            'loan_status': self.loan_status.value,
            'allocated_at': self.allocated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocationResult':
        currency = Currency[data['currency']]
        return cls(
            payment_id=data['id'],
            loan_id=data['loan_id'],
            payment_amount=Money(Decimal(data['payment_amount']), currency),
            payment_date=date.fromisoformat(data['payment_date']),
            lines=[
                AllocationLine(
                    bucket_id=l['bucket_id'],
                    kind=BucketKind(l['kind']),
                    amount=Money(Decimal(l['amount']), currency),
                    period_id=l['period_id'],
                    installment_number=l['installment_number'],
                )
                for l in data['lines']
            ],
            credit=Money(Decimal(data['credit']), currency),
            loan_status=LoanStatus(data['loan_status']),
            allocated_at=datetime.fromisoformat(data['allocated_at']),
        )


class PaymentAllocator:
    """Pure allocation planner; never touches storage"""

    @staticmethod
    def plan(amount: Money, buckets: Iterable[ObligationBucket]) -> Tuple[List[AllocationLine], Money]:
        """
        Plan the distribution of ``amount`` over ``buckets``.

        Returns:
            (allocation lines in application order, leftover credit)
        """
        buckets = list(buckets)
        lines: List[AllocationLine] = []
        remaining = amount

        for kind in ALLOCATION_PRECEDENCE:
            ordered = sorted((b for b in buckets if b.kind == kind), key=lambda b: b.age_key)
            for bucket in ordered:
                if not remaining.is_positive():
                    return lines, remaining
                due = bucket.outstanding
                if not due.is_positive():
                    continue
                take = remaining.min(due)
                lines.append(AllocationLine(
                    bucket_id=bucket.id,
                    kind=bucket.kind,
                    amount=take,
                    period_id=bucket.period_id,
                    installment_number=bucket.installment_number,
                ))
                remaining = remaining - take

        return lines, remaining


@dataclass
class BatchAllocationResult:
    results: List[AllocationResult] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)


class PaymentAllocationEngine(EventPublisherMixin):
    """
    Applies payment events to loans
    """

    def __init__(
        self,
        loans: LoanRepository,
        periods: PeriodRepository,
        locks: KeyedLockRegistry,
        audit_trail: AuditTrail,
        payments_table: str = "payment_allocations"
    ):
        self.loans = loans
        self.periods = periods
        self.locks = locks
        self.audit_trail = audit_trail
        self.payments_table = payments_table
        self.allocator = PaymentAllocator()

    @property
    def storage(self):
        return self.loans.storage

    def get_allocation(self, payment_id: str) -> Optional[AllocationResult]:
        data = self.storage.load(self.payments_table, payment_id)
        return AllocationResult.from_dict(data) if data else None

    def allocations_for_loan(self, loan_id: str) -> List[AllocationResult]:
        results = [AllocationResult.from_dict(d)
                   for d in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        results.sort(key=lambda r: (r.payment_date, r.allocated_at))
        return results

    def apply(self, event: PaymentEvent) -> AllocationResult:
        """
        Apply one payment to its loan.

        Args:
            event: The payment to apply

        Returns:
            AllocationResult; the stored result when the payment id was already consumed

        Raises:
            ValueError: non-positive amount or currency mismatch
            LoanNotFoundError: unknown loan
            LoanNotEligibleError: loan is not ACTIVE
            PeriodClosedError: payment date falls in a closed period
            AllocationInvariantError: the plan would break a ledger invariant
        """
        if not event.amount.is_positive():
            raise ValueError(f"Payment {event.id} amount must be positive")

        with self.locks.payment(event.id), self.locks.loan(event.loan_id):
            existing = self.get_allocation(event.id)
            if existing is not None:
                if existing.loan_id != event.loan_id:
                    raise ValueError(f"Payment {event.id} was already applied to loan {existing.loan_id}")
                logger.info(f"Payment {event.id} already applied; returning recorded allocation")
                return existing

            if self.periods.is_date_closed(event.payment_date):
                raise PeriodClosedError(
                    f"Payment {event.id} is dated in a closed period",
                    {'payment_id': event.id, 'payment_date': event.payment_date.isoformat()}
                )

            loan = self.loans.load_loan(event.loan_id)
            if not loan.is_active:
                raise LoanNotEligibleError(
                    f"Loan {loan.id} is {loan.status.value} and cannot take payments",
                    {'loan_id': loan.id, 'status': loan.status.value, 'payment_id': event.id}
                )
            if event.amount.currency != loan.currency:
                raise ValueError(
                    f"Payment currency {event.amount.currency.code} does not match loan currency {loan.currency.code}"
                )

            lines, credit = self.allocator.plan(event.amount, loan.buckets)
            self._verify(loan, event, lines, credit)

            with self.storage.atomic():
                by_id = {b.id: b for b in loan.buckets}
                for line in lines:
                    bucket = by_id[line.bucket_id]
                    bucket.paid = bucket.paid + line.amount
                loan.credit_balance = loan.credit_balance + credit
                loan.refresh_installment_statuses(event.payment_date)
                settled = loan.outstanding_balance.is_zero()
                if settled:
                    loan.status = LoanStatus.SETTLED
                    loan.closed_at = datetime.now(timezone.utc)
                self.loans.save_loan(loan)

                result = AllocationResult(
                    payment_id=event.id,
                    loan_id=loan.id,
                    payment_amount=event.amount,
                    payment_date=event.payment_date,
                    lines=lines,
                    credit=credit,
                    loan_status=loan.status,
                    allocated_at=datetime.now(timezone.utc),
                )
                self.storage.save(self.payments_table, event.id, result.to_dict())

        self.audit_trail.log_event(
            AuditEventType.PAYMENT_ALLOCATED,
            "loan",
            loan.id,
            {
                'payment_id': event.id,
                'amount': event.amount.amount,
                'source': event.source,
                'late_interest': result.amount_for(BucketKind.LATE_INTEREST).amount,
                'current_interest': result.amount_for(BucketKind.CURRENT_INTEREST).amount,
                'insurance': result.amount_for(BucketKind.INSURANCE).amount,
                'principal': result.amount_for(BucketKind.PRINCIPAL).amount,
                'credit': credit.amount,
            }
        )
        self.publish_event(DomainEvent.PAYMENT_ALLOCATED, "loan", loan.id, result.to_dict())
        if settled:
            self.audit_trail.log_event(AuditEventType.LOAN_SETTLED, "loan", loan.id,
                                       {'payment_id': event.id})
            self.publish_event(DomainEvent.LOAN_SETTLED, "loan", loan.id, {'payment_id': event.id})

        log_action(logger, "info", f"Allocated {event.amount.to_string()} from payment {event.id}",
                   loan_id=loan.id, action="allocate_payment",
                   extra={'lines': len(lines), 'credit': str(credit.amount), 'settled': settled})
        return result

    def apply_all(self, events: Iterable[PaymentEvent]) -> BatchAllocationResult:
        """Apply a stream of payments; one failing payment does not stop the batch"""
        batch = BatchAllocationResult()
        for event in events:
            try:
                batch.results.append(self.apply(event))
            except Exception as e:
                logger.error(f"Failed to apply payment {event.id} to loan {event.loan_id}: {e}")
                batch.failures.append({
                    'payment_id': event.id,
                    'loan_id': event.loan_id,
                    'error_type': type(e).__name__,
                    'reason': str(e),
                })
        return batch

    def _verify(self, loan, event: PaymentEvent, lines: List[AllocationLine], credit: Money) -> None:
        """Check the plan against the ledger before any write"""
        by_id = {b.id: b for b in loan.buckets}
        problem = None
        context: Dict[str, Any] = {'loan_id': loan.id, 'payment_id': event.id}

        for bucket in loan.buckets:
            if bucket.outstanding.is_negative() or bucket.paid + bucket.written_off > bucket.accrued:
                problem = "bucket outstanding is negative"
                context.update({
                    'bucket_id': bucket.id,
                    'accrued': str(bucket.accrued.amount),
                    'paid': str(bucket.paid.amount),
                    'written_off': str(bucket.written_off.amount),
                })
                break

        if not problem and credit.is_negative():
            problem = "negative credit"
        for line in lines:
            if problem:
                break
            bucket = by_id.get(line.bucket_id)
            if bucket is None:
                problem = "unknown bucket"
            elif not line.amount.is_positive():
                problem = "non-positive allocation line"
            elif bucket.paid + line.amount + bucket.written_off > bucket.accrued:
                problem = "paid would exceed accrued"
            if problem:
                context.update({
                    'bucket_id': line.bucket_id,
                    'line_amount': str(line.amount.amount),
                    'accrued': str(bucket.accrued.amount) if bucket else None,
                    'paid': str(bucket.paid.amount) if bucket else None,
                })

        distributed = sum_money((l.amount for l in lines), loan.currency)
        if not problem and distributed + credit != event.amount:
            problem = "distributed plus credit does not equal payment"
            context.update({'distributed': str(distributed.amount), 'credit': str(credit.amount),
                            'payment': str(event.amount.amount)})

        if problem:
            self.audit_trail.log_event(AuditEventType.INVARIANT_VIOLATION, "loan", loan.id,
                                       {'check': problem, **context})
            log_action(logger, "error", f"Allocation invariant violated: {problem}",
                       loan_id=loan.id, action="allocate_payment", extra=context)
            raise AllocationInvariantError(f"Allocation invariant violated: {problem}", context)
