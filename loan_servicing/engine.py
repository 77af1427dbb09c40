"""
Loan Servicing Engine

Wires storage, audit trail, locks, repositories and the five processing
components into one object.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from .allocation import PaymentAllocationEngine
from .audit import AuditTrail
from .causation import CausationProcessor
from .config import LoanServicingConfig, get_config
from .currency import Currency, Money
from .dates import BusinessDayShift, DayCountConvention, IntervalPolicy, PaymentScheduleMode
from .events import EventDispatcher
from .loans import LoanManager, LoanRepository, LoanTerms
from .rates import InterestRateType
from .locks import KeyedLockRegistry
from .markers import CausationMarkerStore
from .periods import AgingBucket, PeriodCloser, PeriodRepository
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .writeoff import WriteOffWorkflow

logger = logging.getLogger(__name__)


def storage_from_url(database_url: str) -> StorageInterface:
    """Build a storage backend from a ``sqlite:///path`` or ``memory://`` URL"""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")


class LoanServicingEngine:
    """Loan servicing engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        settings: Optional[LoanServicingConfig] = None,
        aging_buckets: Optional[List[AgingBucket]] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.settings = settings or get_config()
        self.storage = storage or storage_from_url(self.settings.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.settings.enable_audit_logging)
        self.locks = KeyedLockRegistry()
        self.dispatcher = dispatcher or EventDispatcher()

        self.loans = LoanRepository(self.storage)
        self.periods = PeriodRepository(self.storage)
        self.markers = CausationMarkerStore(self.storage)

        self.loan_manager = LoanManager(self.loans, self.audit_trail, periods=self.periods)
        self.causation = CausationProcessor(
            self.loans, self.periods, self.markers, self.locks, self.audit_trail,
            max_workers=self.settings.causation_max_workers
        )
        self.allocation = PaymentAllocationEngine(self.loans, self.periods, self.locks, self.audit_trail)
        self.period_closer = PeriodCloser(
            self.periods, self.markers, self.loans, self.locks, self.audit_trail,
            aging_buckets=aging_buckets if self.settings.enable_aging_snapshots else None
        )
        self.write_offs = WriteOffWorkflow(self.loans, self.periods, self.locks, self.audit_trail)

        for component in (self.loan_manager, self.causation, self.allocation,
                          self.period_closer, self.write_offs):
            component.set_event_dispatcher(self.dispatcher)

        logger.debug(f"Loan servicing engine initialized on {type(self.storage).__name__}")

    def close(self) -> None:
        self.storage.close()

    def interval_policy(self, mode: PaymentScheduleMode = PaymentScheduleMode.MONTHLY_CALENDAR,
                        **overrides) -> IntervalPolicy:
        """Interval policy with calendar defaults taken from settings"""
        values = {
            'mode': mode,
            'semi_month_days': (self.settings.semi_monthly_first_day, self.settings.semi_monthly_second_day),
            'end_of_month_fallback': self.settings.end_of_month_fallback,
            'shift': BusinessDayShift(self.settings.business_day_shift),
        }
        values.update(overrides)
        return IntervalPolicy(**values)

    def loan_terms(self, principal, annual_rate, term: int, **overrides) -> LoanTerms:
        """
        Loan terms with currency, day-count and rate-type defaults from settings.

        ``principal`` may be a Money or a plain amount in the default currency.
        """
        if not isinstance(principal, Money):
            principal = Money(Decimal(str(principal)), Currency[self.settings.default_currency])
        values = {
            'principal': principal,
            'annual_rate': Decimal(str(annual_rate)) if annual_rate is not None else None,
            'term': term,
            'policy': self.interval_policy(),
            'rate_type': InterestRateType(self.settings.default_rate_type),
            'day_count': DayCountConvention(self.settings.default_day_count),
        }
        values.update(overrides)
        return LoanTerms(**values)
