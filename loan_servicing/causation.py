"""
Interest Causation Module

Accrues ("causes") current interest, late interest and insurance for one open
accounting period and one kind. Runs are idempotent per (loan, period, kind):
a loan that already has a marker is skipped, so a failed or interrupted run
can simply be submitted again.

Loans are processed in parallel across a thread pool and serialized per loan.
Per-loan failures never abort the run; they are reported in the summary and
leave no marker behind, which keeps the period from being closed.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .config import get_config
from .currency import Money, round_to_currency
from .errors import (
    LoanNotEligibleError, LoanServicingError, MissingRateConfigurationError, PeriodClosedError
)
from .events import DomainEvent, EventPublisherMixin
from .loans import ACCRUED_KINDS, BucketKind, Loan, LoanRepository, select_late_rate
from .locks import KeyedLockRegistry
from .logging_config import log_action
from .markers import CausationMarker, CausationMarkerStore, CausationOutcome
from .periods import AccountingPeriod, PeriodRepository
from .rates import InterestRateType, period_rate
from .schedule import InsuranceChargeMethod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CausationJob:
    """A request to cause one kind for one period, optionally scoped to one loan"""
    period_id: str
    kind: BucketKind
    loan_id: Optional[str] = None
    run_id: Optional[str] = None
    requested_by: Optional[str] = None

    def __post_init__(self):
        if self.kind not in ACCRUED_KINDS:
            raise ValueError(f"{self.kind.value} is not an accrued obligation kind")


@dataclass
class CausationException:
    loan_id: str
    error_type: str
    reason: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CausationRunSummary:
    run_id: str
    period_id: str
    kind: BucketKind
    loans_reviewed: int = 0
    loans_processed: int = 0
    loans_not_applicable: int = 0
    loans_skipped: int = 0
    loans_failed: int = 0
    total_accrued: Decimal = Decimal('0')
    exceptions: List[CausationException] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def message(self) -> str:
        return (f"Causation of {self.kind.value} for {self.period_id} "
                f"completed with {len(self.exceptions)} exceptions")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'period_id': self.period_id,
            'kind': self.kind.value,
            'loans_reviewed': self.loans_reviewed,
            'loans_processed': self.loans_processed,
            'loans_not_applicable': self.loans_not_applicable,
            'loans_skipped': self.loans_skipped,
            'loans_failed': self.loans_failed,
            'total_accrued': str(self.total_accrued),
            'exceptions': [
                {'loan_id': e.loan_id, 'error_type': e.error_type, 'reason': e.reason, 'context': e.context}
                for e in self.exceptions
            ],
            'message': self.message,
        }


@dataclass
class _LoanResult:
    loan_id: str
    status: str  # processed, not_applicable, skipped, failed
    amount: Decimal = Decimal('0')
    exception: Optional[CausationException] = None


class CausationProcessor(EventPublisherMixin):
    """
    Runs causation jobs against open accounting periods
    """

    def __init__(
        self,
        loans: LoanRepository,
        periods: PeriodRepository,
        markers: CausationMarkerStore,
        locks: KeyedLockRegistry,
        audit_trail: AuditTrail,
        max_workers: Optional[int] = None,
        minimum_accrual: Optional[Decimal] = None
    ):
        settings = get_config()
        self.loans = loans
        self.periods = periods
        self.markers = markers
        self.locks = locks
        self.audit_trail = audit_trail
        self.max_workers = max_workers or settings.causation_max_workers
        self.minimum_accrual = (
            minimum_accrual if minimum_accrual is not None
            else Decimal(settings.minimum_accrual_amount)
        )

    def run(self, job: CausationJob) -> CausationRunSummary:
        """
        Execute a causation job.

        Args:
            job: Period, kind and optional single-loan scope

        Returns:
            CausationRunSummary with per-loan exceptions

        Raises:
            PeriodNotFoundError: the period was never opened
            PeriodClosedError: the period is closed
            LoanNotFoundError: a scoped job names an unknown loan
        """
        run_id = job.run_id or str(uuid.uuid4())
        summary = CausationRunSummary(run_id=run_id, period_id=job.period_id, kind=job.kind,
                                      started_at=datetime.now(timezone.utc))

        with self.locks.period(job.period_id):
            period = self.periods.get_period(job.period_id)
            if period.is_closed:
                raise PeriodClosedError(f"Period {period.id} is closed; causation refused",
                                        {'period_id': period.id, 'kind': job.kind.value})

            if job.loan_id:
                candidates = [self.loans.load_loan(job.loan_id)]
            else:
                candidates = self.loans.list_active_loans()
            loan_ids = [l.id for l in candidates if l.origination_date <= period.end_date]

            log_action(logger, "info", f"Starting causation of {job.kind.value} over {len(loan_ids)} loans",
                       period_id=period.id, action="causation_run", correlation_id=run_id)

            results = []
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [pool.submit(self._process_loan, loan_id, job, period, run_id)
                           for loan_id in loan_ids]
                for future in as_completed(futures):
                    results.append(future.result())

        for result in sorted(results, key=lambda r: r.loan_id):
            summary.loans_reviewed += 1
            if result.status == "processed":
                summary.loans_processed += 1
                summary.total_accrued += result.amount
            elif result.status == "not_applicable":
                summary.loans_not_applicable += 1
            elif result.status == "skipped":
                summary.loans_skipped += 1
            else:
                summary.loans_failed += 1
                summary.exceptions.append(result.exception)
        summary.finished_at = datetime.now(timezone.utc)

        self.audit_trail.log_event(
            AuditEventType.CAUSATION_RUN_COMPLETED,
            "causation_run",
            run_id,
            {
                'period_id': job.period_id,
                'kind': job.kind,
                'loans_reviewed': summary.loans_reviewed,
                'loans_processed': summary.loans_processed,
                'loans_failed': summary.loans_failed,
                'total_accrued': summary.total_accrued,
            },
            user_id=job.requested_by
        )
        self.publish_event(DomainEvent.CAUSATION_RUN_COMPLETED, "causation_run", run_id, summary.to_dict())
        log_action(logger, "warning" if summary.exceptions else "info", summary.message,
                   period_id=job.period_id, action="causation_run", correlation_id=run_id,
                   extra={'processed': summary.loans_processed, 'total_accrued': str(summary.total_accrued)})
        return summary

    def run_all_kinds(self, period_id: str, requested_by: Optional[str] = None) -> List[CausationRunSummary]:
        """Cause current interest, late interest and insurance for a period, in that order"""
        return [self.run(CausationJob(period_id=period_id, kind=kind, requested_by=requested_by))
                for kind in ACCRUED_KINDS]

    def _process_loan(self, loan_id: str, job: CausationJob, period: AccountingPeriod,
                      run_id: str) -> _LoanResult:
        try:
            with self.locks.loan(loan_id):
                if self.markers.has_causation_run(loan_id, period.id, job.kind):
                    return _LoanResult(loan_id, "skipped")

                loan = self.loans.load_loan(loan_id)
                if not loan.is_active:
                    raise LoanNotEligibleError(f"Loan {loan_id} is {loan.status.value}",
                                               {'loan_id': loan_id, 'status': loan.status.value})

                amount = self.compute_accrual(loan, period, job.kind)
                outcome = CausationOutcome.NOT_APPLICABLE if amount is None else CausationOutcome.ACCRUED
                posted = amount if amount is not None and amount > self.minimum_accrual else Decimal('0')

                with self.loans.storage.atomic():
                    if posted > 0:
                        loan.post_accrual(job.kind, period.id, period.end_date, Money(posted, loan.currency))
                    previous = loan.caused_through.get(job.kind)
                    if previous is None or previous < period.end_date:
                        loan.caused_through[job.kind] = period.end_date
                    loan.refresh_installment_statuses(period.end_date)
                    self.loans.save_loan(loan)
                    self.markers.record_causation_run(CausationMarker(
                        loan_id=loan_id,
                        period_id=period.id,
                        kind=job.kind,
                        outcome=outcome,
                        amount=posted,
                        run_id=run_id,
                        caused_through=period.end_date,
                        recorded_at=datetime.now(timezone.utc),
                    ))
        except LoanServicingError as e:
            return self._failure(loan_id, job, period, run_id, e)
        except Exception as e:
            logger.exception(f"Unexpected causation failure for loan {loan_id}")
            return self._failure(loan_id, job, period, run_id, e)

        if posted > 0:
            self.audit_trail.log_event(
                AuditEventType.ACCRUAL_POSTED,
                "loan",
                loan_id,
                {'period_id': period.id, 'kind': job.kind, 'amount': posted, 'run_id': run_id}
            )
            self.publish_event(DomainEvent.ACCRUAL_POSTED, "loan", loan_id, {
                'period_id': period.id, 'kind': job.kind.value, 'amount': str(posted)
            })
        status = "not_applicable" if outcome == CausationOutcome.NOT_APPLICABLE else "processed"
        return _LoanResult(loan_id, status, posted)

    def _failure(self, loan_id: str, job: CausationJob, period: AccountingPeriod,
                 run_id: str, error: Exception) -> _LoanResult:
        context = dict(getattr(error, 'context', {}) or {})
        context.update({'period_id': period.id, 'kind': job.kind.value})
        exception = CausationException(
            loan_id=loan_id,
            error_type=type(error).__name__,
            reason=getattr(error, 'message', str(error)),
            context=context,
        )
        self.audit_trail.log_event(
            AuditEventType.CAUSATION_FAILED,
            "loan",
            loan_id,
            {'run_id': run_id, 'error_type': exception.error_type, 'reason': exception.reason, **context}
        )
        log_action(logger, "error", f"Causation failed for loan {loan_id}: {exception.reason}",
                   loan_id=loan_id, period_id=period.id, action="causation", correlation_id=run_id)
        return _LoanResult(loan_id, "failed", exception=exception)

    # Accrual computation

    @staticmethod
    def accrual_anchor(loan: Loan, period: AccountingPeriod, kind: BucketKind) -> date:
        """Later of last caused-through date, day before period start and origination"""
        day_before = period.start_date - timedelta(days=1)
        candidates = [day_before, loan.origination_date]
        if kind in loan.caused_through:
            candidates.append(loan.caused_through[kind])
        return max(candidates)

    def compute_accrual(self, loan: Loan, period: AccountingPeriod, kind: BucketKind) -> Optional[Decimal]:
        """
        Amount to accrue for the kind in the period, rounded to the minor unit.

        Returns None when the kind does not apply to the loan this period.
        Raises MissingRateConfigurationError when a needed rate is not set.
        """
        anchor = self.accrual_anchor(loan, period, kind)
        days = loan.terms.day_count.day_count(anchor, period.end_date)
        if kind == BucketKind.CURRENT_INTEREST:
            return self._current_interest(loan, days)
        if kind == BucketKind.LATE_INTEREST:
            return self._late_interest(loan, period, anchor)
        return self._insurance(loan, days)

    def _current_interest(self, loan: Loan, days: int) -> Decimal:
        terms = loan.terms
        if terms.annual_rate is None:
            raise MissingRateConfigurationError(
                f"Loan {loan.id} has no interest rate configured",
                {'loan_id': loan.id, 'kind': BucketKind.CURRENT_INTEREST.value}
            )
        base = loan.principal_outstanding.amount
        if days <= 0 or base <= 0:
            return Decimal('0')
        rate = period_rate(terms.annual_rate, days, terms.rate_type, terms.day_count)
        return round_to_currency(base * rate, loan.currency)

    def _late_interest(self, loan: Loan, period: AccountingPeriod, anchor: date) -> Optional[Decimal]:
        overdue = loan.overdue_installments(period.end_date)
        if not overdue:
            # Loan is current: late interest pauses for this period only
            return None

        terms = loan.terms
        raw = Decimal('0')
        for installment in overdue:
            days_past_due = (period.end_date - installment.due_date).days
            rate = select_late_rate(terms.late_interest_rules, days_past_due)
            if rate is None:
                rate = terms.late_annual_rate
            if rate is None:
                raise MissingRateConfigurationError(
                    f"Loan {loan.id} has no late-interest rate for {days_past_due} days past due",
                    {'loan_id': loan.id, 'kind': BucketKind.LATE_INTEREST.value,
                     'days_past_due': days_past_due}
                )
            start = max(anchor, installment.due_date)
            days = terms.day_count.day_count(start, period.end_date)
            if days <= 0:
                continue
            overdue_principal = loan.principal_bucket(installment.number).outstanding.amount
            raw += overdue_principal * period_rate(rate, days, terms.rate_type, terms.day_count)
        return round_to_currency(raw, loan.currency)

    def _insurance(self, loan: Loan, days: int) -> Optional[Decimal]:
        insurance = loan.terms.insurance
        if insurance is None or insurance.method == InsuranceChargeMethod.ONE_TIME:
            return None
        base = loan.principal_outstanding.amount
        if days <= 0 or base <= 0:
            return Decimal('0')
        if insurance.fixed_amount is not None:
            return round_to_currency(insurance.fixed_amount, loan.currency)
        rate = period_rate(insurance.annual_rate, days, InterestRateType.NOMINAL_ANNUAL, loan.terms.day_count)
        return insurance.apply_minimum(round_to_currency(base * rate, loan.currency))
