"""
Loan Module

Loan data model (terms, installments, obligation buckets), the loan state
provider backed by StorageInterface, and loan origination.

The outstanding balance of a loan is always derived from its obligation
buckets. Each bucket records what was accrued, what was paid and what was
written off; those three fields have exactly one writer each (causation,
payment allocation and the write-off workflow respectively).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .currency import Currency, Money, sum_money
from .dates import (
    BusinessDayShift, DayCountConvention, IntervalPolicy, PaymentScheduleMode, period_id_for
)
from .errors import LoanNotEligibleError, LoanNotFoundError
from .events import DomainEvent, EventPublisherMixin
from .rates import InterestRateType
from .schedule import (
    AmortizationSchedule, FinancingType, InsuranceChargeMethod, InsurancePolicy,
    ScheduleRequest, build_schedule
)
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    SETTLED = "settled"            # Nothing outstanding
    WRITTEN_OFF = "written_off"    # Obligations terminated by write-off
    CANCELLED = "cancelled"


class InstallmentStatus(Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    LATE = "late"


class BucketKind(Enum):
    """Obligation types, also the causation kinds for the accrued ones"""
    PRINCIPAL = "principal"
    CURRENT_INTEREST = "current_interest"
    LATE_INTEREST = "late_interest"
    INSURANCE = "insurance"


ACCRUED_KINDS = (BucketKind.CURRENT_INTEREST, BucketKind.LATE_INTEREST, BucketKind.INSURANCE)


@dataclass(frozen=True)
class LateInterestRule:
    """Late-interest rate bracket by days past due (days_to None means open ended)"""
    days_from: int
    days_to: Optional[int]
    annual_rate: Decimal
    priority: int = 0

    def matches(self, days_past_due: int) -> bool:
        if days_past_due < self.days_from:
            return False
        return self.days_to is None or days_past_due <= self.days_to


def select_late_rate(rules: List[LateInterestRule], days_past_due: int) -> Optional[Decimal]:
    """Rate of the matching rule with the lowest priority number, None if no rule matches"""
    matching = [r for r in rules if r.matches(days_past_due)]
    if not matching:
        return None
    matching.sort(key=lambda r: (r.priority, -r.days_from))
    return matching[0].annual_rate


@dataclass
class LoanTerms:
    """Loan terms and conditions"""
    principal: Money
    annual_rate: Optional[Decimal]            # e.g. Decimal('0.24') for 24%
    term: int                                 # Number of installments
    policy: IntervalPolicy = field(default_factory=IntervalPolicy)
    financing_type: FinancingType = FinancingType.DECLINING_BALANCE
    rate_type: InterestRateType = InterestRateType.NOMINAL_ANNUAL
    day_count: DayCountConvention = DayCountConvention.ACTUAL_360
    late_annual_rate: Optional[Decimal] = None
    late_interest_rules: List[LateInterestRule] = field(default_factory=list)
    insurance: Optional[InsurancePolicy] = None
    first_due_date: Optional[date] = None

    def schedule_request(self, disbursement_date: date,
                         earliest_allowed: Optional[date] = None) -> ScheduleRequest:
        return ScheduleRequest(
            principal=self.principal,
            annual_rate=self.annual_rate if self.annual_rate is not None else Decimal('0'),
            term=self.term,
            policy=self.policy,
            financing_type=self.financing_type,
            first_due_date=self.first_due_date,
            disbursement_date=disbursement_date,
            rate_type=self.rate_type,
            day_count=self.day_count,
            insurance=self.insurance,
            earliest_allowed=earliest_allowed,
        )


@dataclass
class Installment:
    """Scheduled installment; amounts never change after origination"""
    number: int
    due_date: date
    scheduled_principal: Money
    scheduled_interest: Money
    scheduled_insurance: Money
    opening_balance: Money
    closing_balance: Money
    status: InstallmentStatus = InstallmentStatus.PENDING


@dataclass
class ObligationBucket:
    """Typed accrual line that payments are allocated against"""
    id: str
    kind: BucketKind
    due_date: date
    accrued: Money
    paid: Money
    written_off: Money
    period_id: Optional[str] = None            # Interest and insurance
    installment_number: Optional[int] = None   # Principal

    @property
    def outstanding(self) -> Money:
        return self.accrued - self.paid - self.written_off

    @property
    def age_key(self):
        """Oldest first ordering within a kind"""
        return (self.due_date, self.period_id or "", self.installment_number or 0)


def bucket_id(kind: BucketKind, period_id: Optional[str] = None,
              installment_number: Optional[int] = None) -> str:
    if kind == BucketKind.PRINCIPAL:
        return f"{kind.value}:{installment_number}"
    return f"{kind.value}:{period_id}"


@dataclass
class Loan(StorageRecord):
    """Loan with its installment plan and obligation ledger"""
    terms: LoanTerms
    origination_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    installments: List[Installment] = field(default_factory=list)
    buckets: List[ObligationBucket] = field(default_factory=list)
    credit_balance: Optional[Money] = None
    caused_through: Dict[BucketKind, date] = field(default_factory=dict)
    version: int = 0
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.credit_balance is None:
            self.credit_balance = Money.zero(self.currency)

    @property
    def currency(self) -> Currency:
        return self.terms.principal.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def buckets_of(self, kind: BucketKind) -> List[ObligationBucket]:
        return sorted((b for b in self.buckets if b.kind == kind), key=lambda b: b.age_key)

    def find_bucket(self, kind: BucketKind, period_id: Optional[str] = None,
                    installment_number: Optional[int] = None) -> Optional[ObligationBucket]:
        wanted = bucket_id(kind, period_id, installment_number)
        for bucket in self.buckets:
            if bucket.id == wanted:
                return bucket
        return None

    def outstanding(self, kind: Optional[BucketKind] = None) -> Money:
        buckets = self.buckets if kind is None else [b for b in self.buckets if b.kind == kind]
        return sum_money((b.outstanding for b in buckets), self.currency)

    @property
    def outstanding_balance(self) -> Money:
        return self.outstanding()

    @property
    def principal_outstanding(self) -> Money:
        return self.outstanding(BucketKind.PRINCIPAL)

    def principal_bucket(self, installment_number: int) -> Optional[ObligationBucket]:
        return self.find_bucket(BucketKind.PRINCIPAL, installment_number=installment_number)

    def overdue_installments(self, as_of: date) -> List[Installment]:
        """Installments due before ``as_of`` whose principal is not fully paid"""
        overdue = []
        for installment in self.installments:
            if installment.due_date >= as_of:
                continue
            bucket = self.principal_bucket(installment.number)
            if bucket is not None and bucket.outstanding.is_positive():
                overdue.append(installment)
        return overdue

    def days_past_due(self, as_of: date) -> int:
        overdue = self.overdue_installments(as_of)
        if not overdue:
            return 0
        return (as_of - overdue[0].due_date).days

    def post_accrual(self, kind: BucketKind, period_id: str, due_date: date, amount: Money) -> ObligationBucket:
        """Add accrued amount to the (kind, period) bucket, creating it if needed"""
        bucket = self.find_bucket(kind, period_id=period_id)
        if bucket is None:
            zero = Money.zero(self.currency)
            bucket = ObligationBucket(
                id=bucket_id(kind, period_id),
                kind=kind,
                due_date=due_date,
                accrued=amount,
                paid=zero,
                written_off=zero,
                period_id=period_id,
            )
            self.buckets.append(bucket)
        else:
            bucket.accrued = bucket.accrued + amount
        return bucket

    def refresh_installment_statuses(self, as_of: date) -> None:
        """
        Recompute installment statuses from principal buckets.

        Precedence: PAID, then LATE (past due with principal outstanding),
        then PARTIALLY_PAID, then PENDING.
        """
        for installment in self.installments:
            bucket = self.principal_bucket(installment.number)
            if bucket is None or not bucket.outstanding.is_positive():
                installment.status = InstallmentStatus.PAID
            elif installment.due_date < as_of:
                installment.status = InstallmentStatus.LATE
            elif bucket.paid.is_positive():
                installment.status = InstallmentStatus.PARTIALLY_PAID
            else:
                installment.status = InstallmentStatus.PENDING


class LoanRepository:
    """
    Loan state provider.

    Loans are stored as JSON documents with an integer version; ``save_loan``
    is a compare-and-set on that version.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loans"):
        self.storage = storage
        self.table_name = table_name

    def load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.table_name, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return self._loan_from_dict(data)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        return self._loan_from_dict(data) if data else None

    def save_loan(self, loan: Loan) -> None:
        """Persist the loan, failing with ConcurrentModificationError on a stale version"""
        loan.updated_at = datetime.now(timezone.utc)
        data = self._loan_to_dict(loan)
        data['version'] = loan.version + 1
        self.storage.save(self.table_name, loan.id, data, expected_version=loan.version)
        loan.version += 1

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        if status is None:
            records = self.storage.load_all(self.table_name)
        else:
            records = self.storage.find(self.table_name, {'status': status.value})
        loans = [self._loan_from_dict(data) for data in records]
        loans.sort(key=lambda l: l.id)
        return loans

    def list_active_loans(self) -> List[Loan]:
        return self.list_loans(LoanStatus.ACTIVE)

    # Serialization

    @staticmethod
    def _money(amount: str, currency: Currency) -> Money:
        return Money(Decimal(amount), currency)

    @staticmethod
    def _opt_decimal(value) -> Optional[str]:
        return str(value) if value is not None else None

    def _terms_to_dict(self, terms: LoanTerms) -> Dict[str, Any]:
        policy = terms.policy
        insurance = terms.insurance
        return {
            'principal': str(terms.principal.amount),
            'currency': terms.principal.currency.code,
            'annual_rate': self._opt_decimal(terms.annual_rate),
            'term': terms.term,
            'policy': {
                'mode': policy.mode.value,
                'interval_days': policy.interval_days,
                'day_of_month': policy.day_of_month,
                'semi_month_days': list(policy.semi_month_days),
                'end_of_month_fallback': policy.end_of_month_fallback,
                'shift': policy.shift.value,
                'holidays': sorted(d.isoformat() for d in policy.holidays),
            },
            'financing_type': terms.financing_type.value,
            'rate_type': terms.rate_type.value,
            'day_count': terms.day_count.value,
            'late_annual_rate': self._opt_decimal(terms.late_annual_rate),
            'late_interest_rules': [
                {
                    'days_from': r.days_from,
                    'days_to': r.days_to,
                    'annual_rate': str(r.annual_rate),
                    'priority': r.priority,
                }
                for r in terms.late_interest_rules
            ],
            'insurance': None if insurance is None else {
                'annual_rate': str(insurance.annual_rate),
                'fixed_amount': self._opt_decimal(insurance.fixed_amount),
                'minimum_amount': str(insurance.minimum_amount),
                'method': insurance.method.value,
            },
            'first_due_date': terms.first_due_date.isoformat() if terms.first_due_date else None,
        }

    def _terms_from_dict(self, data: Dict[str, Any]) -> LoanTerms:
        currency = Currency[data['currency']]
        p = data['policy']
        ins = data.get('insurance')

        def opt_decimal(value) -> Optional[Decimal]:
            return Decimal(value) if value is not None else None

        return LoanTerms(
            principal=self._money(data['principal'], currency),
            annual_rate=opt_decimal(data['annual_rate']),
            term=data['term'],
            policy=IntervalPolicy(
                mode=PaymentScheduleMode(p['mode']),
                interval_days=p['interval_days'],
                day_of_month=p['day_of_month'],
                semi_month_days=tuple(p['semi_month_days']),
                end_of_month_fallback=p['end_of_month_fallback'],
                shift=BusinessDayShift(p['shift']),
                holidays=frozenset(date.fromisoformat(d) for d in p['holidays']),
            ),
            financing_type=FinancingType(data['financing_type']),
            rate_type=InterestRateType(data['rate_type']),
            day_count=DayCountConvention(data['day_count']),
            late_annual_rate=opt_decimal(data['late_annual_rate']),
            late_interest_rules=[
                LateInterestRule(
                    days_from=r['days_from'],
                    days_to=r['days_to'],
                    annual_rate=Decimal(r['annual_rate']),
                    priority=r['priority'],
                )
                for r in data['late_interest_rules']
            ],
            insurance=None if ins is None else InsurancePolicy(
                annual_rate=Decimal(ins['annual_rate']),
                fixed_amount=opt_decimal(ins['fixed_amount']),
                minimum_amount=Decimal(ins['minimum_amount']),
                method=InsuranceChargeMethod(ins['method']),
            ),
            first_due_date=date.fromisoformat(data['first_due_date']) if data['first_due_date'] else None,
        )

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'terms': self._terms_to_dict(loan.terms),
            'origination_date': loan.origination_date.isoformat(),
            'status': loan.status.value,
            'installments': [
                {
                    'number': i.number,
                    'due_date': i.due_date.isoformat(),
                    'scheduled_principal': str(i.scheduled_principal.amount),
                    'scheduled_interest': str(i.scheduled_interest.amount),
                    'scheduled_insurance': str(i.scheduled_insurance.amount),
                    'opening_balance': str(i.opening_balance.amount),
                    'closing_balance': str(i.closing_balance.amount),
                    'status': i.status.value,
                }
                for i in loan.installments
            ],
            'buckets': [
                {
                    'id': b.id,
                    'kind': b.kind.value,
                    'due_date': b.due_date.isoformat(),
                    'accrued': str(b.accrued.amount),
                    'paid': str(b.paid.amount),
                    'written_off': str(b.written_off.amount),
                    'period_id': b.period_id,
                    'installment_number': b.installment_number,
                }
                for b in loan.buckets
            ],
            'credit_balance': str(loan.credit_balance.amount),
            'caused_through': {k.value: d.isoformat() for k, d in loan.caused_through.items()},
            'version': loan.version,
            'closed_at': loan.closed_at.isoformat() if loan.closed_at else None,
        }

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        terms = self._terms_from_dict(data['terms'])
        currency = terms.principal.currency
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            terms=terms,
            origination_date=date.fromisoformat(data['origination_date']),
            status=LoanStatus(data['status']),
            installments=[
                Installment(
                    number=i['number'],
                    due_date=date.fromisoformat(i['due_date']),
                    scheduled_principal=self._money(i['scheduled_principal'], currency),
                    scheduled_interest=self._money(i['scheduled_interest'], currency),
                    scheduled_insurance=self._money(i['scheduled_insurance'], currency),
                    opening_balance=self._money(i['opening_balance'], currency),
                    closing_balance=self._money(i['closing_balance'], currency),
                    status=InstallmentStatus(i['status']),
                )
                for i in data['installments']
            ],
            buckets=[
                ObligationBucket(
                    id=b['id'],
                    kind=BucketKind(b['kind']),
                    due_date=date.fromisoformat(b['due_date']),
                    accrued=self._money(b['accrued'], currency),
                    paid=self._money(b['paid'], currency),
                    written_off=self._money(b['written_off'], currency),
                    period_id=b['period_id'],
                    installment_number=b['installment_number'],
                )
                for b in data['buckets']
            ],
            credit_balance=self._money(data['credit_balance'], currency),
            caused_through={
                BucketKind(k): date.fromisoformat(v) for k, v in data['caused_through'].items()
            },
            version=data['version'],
            closed_at=datetime.fromisoformat(data['closed_at']) if data['closed_at'] else None,
        )


class LoanManager(EventPublisherMixin):
    """
    Originates loans and runs schedule simulations
    """

    def __init__(self, repository: LoanRepository, audit_trail: AuditTrail, periods=None):
        self.repository = repository
        self.audit_trail = audit_trail
        self.periods = periods  # PeriodRepository; bounds backward due date shifts

    def simulate(self, terms: LoanTerms, disbursement_date: date,
                 earliest_allowed: Optional[date] = None) -> AmortizationSchedule:
        """Build a schedule without persisting anything"""
        if earliest_allowed is None and self.periods is not None:
            earliest_allowed = self.periods.earliest_open_date()
        return build_schedule(terms.schedule_request(disbursement_date, earliest_allowed))

    def originate_loan(
        self,
        terms: LoanTerms,
        origination_date: date,
        loan_id: Optional[str] = None,
        earliest_allowed: Optional[date] = None,
        originated_by: Optional[str] = None
    ) -> Loan:
        """
        Originate a loan: build its schedule and lay down the principal buckets.

        Args:
            terms: Loan terms
            origination_date: Disbursement date; interest accrues from here
            loan_id: Optional explicit id (generated otherwise)
            earliest_allowed: Earliest date a due date may shift back to; defaults to
                the day after the latest closed accounting period
            originated_by: Actor for the audit trail

        Returns:
            The persisted ACTIVE loan
        """
        schedule = self.simulate(terms, origination_date, earliest_allowed)
        now = datetime.now(timezone.utc)
        currency = terms.principal.currency
        zero = Money.zero(currency)

        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            terms=terms,
            origination_date=origination_date,
        )

        for line in schedule:
            loan.installments.append(Installment(
                number=line.number,
                due_date=line.due_date,
                scheduled_principal=line.principal,
                scheduled_interest=line.interest,
                scheduled_insurance=line.insurance,
                opening_balance=line.opening_balance,
                closing_balance=line.closing_balance,
            ))
            loan.buckets.append(ObligationBucket(
                id=bucket_id(BucketKind.PRINCIPAL, installment_number=line.number),
                kind=BucketKind.PRINCIPAL,
                due_date=line.due_date,
                accrued=line.principal,
                paid=zero,
                written_off=zero,
                installment_number=line.number,
            ))

        # One-time insurance premiums are billed with the first installment
        if terms.insurance and terms.insurance.method == InsuranceChargeMethod.ONE_TIME:
            premium = schedule.installments[0].insurance
            if premium.is_positive():
                loan.post_accrual(BucketKind.INSURANCE, period_id_for(origination_date),
                                  schedule.installments[0].due_date, premium)

        self.repository.save_loan(loan)

        self.audit_trail.log_event(
            AuditEventType.SCHEDULE_BUILT,
            "loan",
            loan.id,
            {
                'installments': len(schedule),
                'periodic_payment': schedule.periodic_payment.amount,
                'installment_rate': schedule.installment_rate,
                'financing_type': terms.financing_type,
                'maturity_date': schedule.maturity_date,
            }
        )
        self.audit_trail.log_event(
            AuditEventType.LOAN_ORIGINATED,
            "loan",
            loan.id,
            {
                'principal': terms.principal.amount,
                'currency': currency.code,
                'annual_rate': terms.annual_rate,
                'origination_date': origination_date,
            },
            user_id=originated_by
        )
        self.publish_event(DomainEvent.LOAN_ORIGINATED, "loan", loan.id, {
            'principal': str(terms.principal.amount),
            'currency': currency.code,
            'installments': len(schedule),
        })

        logger.info(f"Originated loan {loan.id} for {terms.principal.to_string()} over {terms.term} installments")
        return loan

    def cancel_loan(self, loan_id: str, cancelled_by: Optional[str] = None) -> Loan:
        """Cancel an ACTIVE loan that has received no payments"""
        loan = self.repository.load_loan(loan_id)
        if not loan.is_active:
            raise LoanNotEligibleError(f"Loan {loan_id} is not active",
                                       {'loan_id': loan_id, 'status': loan.status.value})
        if any(b.paid.is_positive() for b in loan.buckets):
            raise LoanNotEligibleError(f"Loan {loan_id} has payments and cannot be cancelled",
                                       {'loan_id': loan_id})
        loan.status = LoanStatus.CANCELLED
        loan.closed_at = datetime.now(timezone.utc)
        self.repository.save_loan(loan)
        self.audit_trail.log_event(AuditEventType.LOAN_CANCELLED, "loan", loan_id, {}, user_id=cancelled_by)
        logger.info(f"Cancelled loan {loan_id}")
        return loan
