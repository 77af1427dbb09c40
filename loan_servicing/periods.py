"""
Accounting Period Module

Monthly accounting periods, their repository, and the period closer. A period
can only be closed once causation has run for every active loan and every
accrued kind; closing is one-way.

On close the closer can also store a portfolio aging snapshot per loan
(days past due, aging bucket, provision amount).
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditEventType, AuditTrail
from .currency import round_to_currency
from .dates import period_bounds_for, period_id_for
from .errors import IncompleteCausationError, PeriodClosedError, PeriodNotFoundError
from .events import DomainEvent, EventPublisherMixin
from .loans import ACCRUED_KINDS, LoanRepository
from .locks import KeyedLockRegistry
from .logging_config import log_action
from .markers import CausationMarkerStore
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)


@dataclass
class AccountingPeriod(StorageRecord):
    """One calendar month of the books; id is YYYY-MM"""
    year: int
    month: int
    start_date: date
    end_date: date
    is_closed: bool = False
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None

    @property
    def period_id(self) -> str:
        return self.id

    def contains(self, d: date) -> bool:
        return self.start_date <= d <= self.end_date


class PeriodRepository:
    """Period provider backed by StorageInterface"""

    def __init__(self, storage: StorageInterface, table_name: str = "accounting_periods"):
        self.storage = storage
        self.table_name = table_name

    def open_period(self, year: int, month: int) -> AccountingPeriod:
        """Create the period if it does not exist yet; returns the stored period"""
        period_id = f"{year:04d}-{month:02d}"
        existing = self.storage.load(self.table_name, period_id)
        if existing:
            return self._period_from_dict(existing)
        start, end = period_bounds_for(year, month)
        now = datetime.now(timezone.utc)
        period = AccountingPeriod(
            id=period_id, created_at=now, updated_at=now,
            year=year, month=month, start_date=start, end_date=end
        )
        self.save_period(period)
        return period

    def load_period(self, year: int, month: int) -> AccountingPeriod:
        return self.get_period(f"{year:04d}-{month:02d}")

    def get_period(self, period_id: str) -> AccountingPeriod:
        data = self.storage.load(self.table_name, period_id)
        if not data:
            raise PeriodNotFoundError(period_id)
        return self._period_from_dict(data)

    def save_period(self, period: AccountingPeriod) -> None:
        period.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, period.id, self._period_to_dict(period))

    def list_periods(self) -> List[AccountingPeriod]:
        periods = [self._period_from_dict(d) for d in self.storage.load_all(self.table_name)]
        periods.sort(key=lambda p: p.id)
        return periods

    def first_open_period(self) -> Optional[AccountingPeriod]:
        for period in self.list_periods():
            if not period.is_closed:
                return period
        return None

    def earliest_open_date(self) -> Optional[date]:
        """Day after the latest closed period, or None when nothing is closed"""
        closed = [p for p in self.list_periods() if p.is_closed]
        if not closed:
            return None
        return closed[-1].end_date + timedelta(days=1)

    def is_date_closed(self, d: date) -> bool:
        """True when the date falls inside a known closed period"""
        data = self.storage.load(self.table_name, period_id_for(d))
        return bool(data and data['is_closed'])

    def _period_to_dict(self, period: AccountingPeriod) -> Dict[str, Any]:
        return {
            'id': period.id,
            'created_at': period.created_at.isoformat(),
            'updated_at': period.updated_at.isoformat(),
            'year': period.year,
            'month': period.month,
            'start_date': period.start_date.isoformat(),
            'end_date': period.end_date.isoformat(),
            'is_closed': period.is_closed,
            'closed_at': period.closed_at.isoformat() if period.closed_at else None,
            'closed_by': period.closed_by,
        }

    def _period_from_dict(self, data: Dict[str, Any]) -> AccountingPeriod:
        return AccountingPeriod(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            year=data['year'],
            month=data['month'],
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            is_closed=data['is_closed'],
            closed_at=datetime.fromisoformat(data['closed_at']) if data['closed_at'] else None,
            closed_by=data['closed_by'],
        )


@dataclass(frozen=True)
class AgingBucket:
    """Days-past-due bracket with its provision rate (days_to None means open ended)"""
    name: str
    days_from: int
    days_to: Optional[int]
    provision_rate: Decimal

    def matches(self, days_past_due: int) -> bool:
        if days_past_due < self.days_from:
            return False
        return self.days_to is None or days_past_due <= self.days_to


@dataclass
class AgingSnapshot:
    period_id: str
    loan_id: str
    days_past_due: int
    bucket_name: Optional[str]
    principal_outstanding: Decimal
    past_due_amount: Decimal
    provision_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': f"{self.period_id}:{self.loan_id}",
            'period_id': self.period_id,
            'loan_id': self.loan_id,
            'days_past_due': self.days_past_due,
            'bucket_name': self.bucket_name,
            'principal_outstanding': str(self.principal_outstanding),
            'past_due_amount': str(self.past_due_amount),
            'provision_amount': str(self.provision_amount),
        }


@dataclass
class PeriodCloseResult:
    period: AccountingPeriod
    loans_checked: int
    snapshots: List[AgingSnapshot] = field(default_factory=list)


class PeriodCloser(EventPublisherMixin):
    """
    Closes accounting periods once causation is complete
    """

    def __init__(
        self,
        periods: PeriodRepository,
        markers: CausationMarkerStore,
        loans: LoanRepository,
        locks: KeyedLockRegistry,
        audit_trail: AuditTrail,
        aging_buckets: Optional[List[AgingBucket]] = None,
        snapshot_table: str = "aging_snapshots"
    ):
        self.periods = periods
        self.markers = markers
        self.loans = loans
        self.locks = locks
        self.audit_trail = audit_trail
        self.aging_buckets = sorted(aging_buckets or [], key=lambda b: b.days_from)
        self.snapshot_table = snapshot_table

    def missing_causation(self, period: AccountingPeriod) -> Tuple[int, List[Tuple[str, str]]]:
        """(loans checked, [(loan_id, kind), ...] without a marker) for the period"""
        recorded = {(m.loan_id, m.kind) for m in self.markers.markers_for_period(period.id)}
        missing = []
        loans = [l for l in self.loans.list_active_loans() if l.origination_date <= period.end_date]
        for loan in loans:
            for kind in ACCRUED_KINDS:
                if (loan.id, kind) not in recorded:
                    missing.append((loan.id, kind.value))
        return len(loans), missing

    def close_period(self, year: int, month: int, closed_by: str) -> PeriodCloseResult:
        """
        Close an accounting period.

        Args:
            year: Period year
            month: Period month
            closed_by: Actor closing the period

        Returns:
            PeriodCloseResult with the closed period and any aging snapshots

        Raises:
            PeriodNotFoundError: period was never opened
            PeriodClosedError: period is already closed
            IncompleteCausationError: some active loan is missing a causation run
        """
        period_id = f"{year:04d}-{month:02d}"
        with self.locks.period(period_id):
            period = self.periods.get_period(period_id)
            if period.is_closed:
                raise PeriodClosedError(f"Period {period_id} is already closed",
                                        {'period_id': period_id})

            loans_checked, missing = self.missing_causation(period)
            if missing:
                self.audit_trail.log_event(
                    AuditEventType.PERIOD_CLOSE_REFUSED,
                    "period",
                    period_id,
                    {'missing': [list(m) for m in missing[:50]], 'missing_count': len(missing)},
                    user_id=closed_by
                )
                log_action(logger, "warning", f"Refused to close {period_id}: {len(missing)} missing causation runs",
                           period_id=period_id, action="close_period")
                raise IncompleteCausationError(period_id, missing)

            snapshots = self._aging_snapshots(period)

            with self.periods.storage.atomic():
                for snapshot in snapshots:
                    self.periods.storage.save(self.snapshot_table, f"{period_id}:{snapshot.loan_id}",
                                              snapshot.to_dict())
                period.is_closed = True
                period.closed_at = datetime.now(timezone.utc)
                period.closed_by = closed_by
                self.periods.save_period(period)

        self.audit_trail.log_event(
            AuditEventType.PERIOD_CLOSED,
            "period",
            period_id,
            {'loans_checked': loans_checked, 'snapshots': len(snapshots)},
            user_id=closed_by
        )
        self.publish_event(DomainEvent.PERIOD_CLOSED, "period", period_id, {
            'closed_by': closed_by,
            'loans_checked': loans_checked,
        })
        log_action(logger, "info", f"Closed period {period_id}", period_id=period_id,
                   action="close_period", extra={'loans_checked': loans_checked})

        return PeriodCloseResult(period=period, loans_checked=loans_checked, snapshots=snapshots)

    def _aging_snapshots(self, period: AccountingPeriod) -> List[AgingSnapshot]:
        if not self.aging_buckets:
            return []

        snapshots = []
        for loan in self.loans.list_active_loans():
            if loan.origination_date > period.end_date:
                continue
            dpd = loan.days_past_due(period.end_date)
            bucket = next((b for b in self.aging_buckets if b.matches(dpd)), None)
            principal = loan.principal_outstanding.amount
            past_due = sum(
                (loan.principal_bucket(i.number).outstanding.amount
                 for i in loan.overdue_installments(period.end_date)),
                Decimal('0')
            )
            provision = Decimal('0')
            if bucket is not None:
                provision = round_to_currency(principal * bucket.provision_rate, loan.currency)
            snapshots.append(AgingSnapshot(
                period_id=period.id,
                loan_id=loan.id,
                days_past_due=dpd,
                bucket_name=bucket.name if bucket else None,
                principal_outstanding=principal,
                past_due_amount=past_due,
                provision_amount=provision,
            ))
        return snapshots

    def get_snapshots(self, period_id: str) -> List[Dict[str, Any]]:
        return self.periods.storage.find(self.snapshot_table, {'period_id': period_id})
