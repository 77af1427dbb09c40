"""
Amortization Schedule Builder

Builds the installment plan for a simulated or live loan: declining-balance
(French annuity) or flat financing, optional per-installment insurance, due
dates from the loan's interval policy. Amounts are rounded to the currency
minor unit per installment and the final installment absorbs the cumulative
rounding remainder, so scheduled principal always sums to the loan principal.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import List, Optional, Tuple

from .currency import Money, round_to_currency, sum_money
from .dates import DayCountConvention, IntervalPolicy, build_due_dates, first_due_date
from .errors import InvalidPrincipalError, InvalidRateError, InvalidTermError, RoundingDriftError
from .rates import InterestRateType, installment_rate

logger = logging.getLogger(__name__)


class FinancingType(Enum):
    """How principal and interest are spread over installments"""
    DECLINING_BALANCE = "declining_balance"  # Level payment, interest on remaining balance
    FLAT = "flat"                            # Equal principal, interest on original principal


class InsuranceChargeMethod(Enum):
    PER_INSTALLMENT = "per_installment"
    ONE_TIME = "one_time"


@dataclass(frozen=True)
class InsurancePolicy:
    """Credit life insurance attached to a loan"""
    annual_rate: Decimal = Decimal('0')
    fixed_amount: Optional[Decimal] = None   # Overrides the rate when set
    minimum_amount: Decimal = Decimal('0')
    method: InsuranceChargeMethod = InsuranceChargeMethod.PER_INSTALLMENT

    def __post_init__(self):
        if self.annual_rate < 0:
            raise InvalidRateError("Insurance rate cannot be negative",
                                   {'annual_rate': str(self.annual_rate)})
        if self.fixed_amount is not None and self.fixed_amount < 0:
            raise ValueError("Insurance fixed amount cannot be negative")
        if self.minimum_amount < 0:
            raise ValueError("Insurance minimum amount cannot be negative")

    def apply_minimum(self, amount: Decimal) -> Decimal:
        if amount > 0 and amount < self.minimum_amount:
            return self.minimum_amount
        return amount


@dataclass(frozen=True)
class ScheduleRequest:
    """Inputs for one schedule build"""
    principal: Money
    annual_rate: Decimal
    term: int
    policy: IntervalPolicy = field(default_factory=IntervalPolicy)
    financing_type: FinancingType = FinancingType.DECLINING_BALANCE
    first_due_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    rate_type: InterestRateType = InterestRateType.NOMINAL_ANNUAL
    day_count: DayCountConvention = DayCountConvention.ACTUAL_360
    insurance: Optional[InsurancePolicy] = None
    earliest_allowed: Optional[date] = None  # Backward date shifts never cross this

    def validate(self) -> None:
        """Raise the first validation error found; no computation happens before this"""
        if not isinstance(self.term, int) or self.term <= 0:
            raise InvalidTermError("Term must be a positive number of installments",
                                   {'term': self.term})
        if self.annual_rate is None or Decimal(str(self.annual_rate)) < 0:
            raise InvalidRateError("Interest rate cannot be negative",
                                   {'annual_rate': str(self.annual_rate)})
        if not self.principal.is_positive():
            raise InvalidPrincipalError("Principal must be positive",
                                        {'principal': str(self.principal.amount)})
        if self.first_due_date is None and self.disbursement_date is None:
            raise ValueError("Either first_due_date or disbursement_date is required")


@dataclass(frozen=True)
class ScheduledInstallment:
    """One line of an amortization schedule"""
    number: int
    due_date: date
    opening_balance: Money
    principal: Money
    interest: Money
    insurance: Money
    closing_balance: Money

    @property
    def payment(self) -> Money:
        return self.principal + self.interest + self.insurance


@dataclass(frozen=True)
class ScheduleSummary:
    total_principal: Money
    total_interest: Money
    total_insurance: Money
    total_payment: Money
    first_payment: Money
    min_payment: Money
    max_payment: Money


@dataclass(frozen=True)
class AmortizationSchedule:
    """Immutable ordered installment plan"""
    installments: Tuple[ScheduledInstallment, ...]
    periodic_payment: Money  # Level principal + interest before final-installment adjustment
    installment_rate: Decimal
    financing_type: FinancingType

    def __len__(self) -> int:
        return len(self.installments)

    def __iter__(self):
        return iter(self.installments)

    @property
    def currency(self):
        return self.periodic_payment.currency

    @property
    def total_principal(self) -> Money:
        return sum_money((i.principal for i in self.installments), self.currency)

    @property
    def total_interest(self) -> Money:
        return sum_money((i.interest for i in self.installments), self.currency)

    @property
    def total_insurance(self) -> Money:
        return sum_money((i.insurance for i in self.installments), self.currency)

    @property
    def maturity_date(self) -> date:
        return self.installments[-1].due_date

    def summary(self) -> ScheduleSummary:
        payments = [i.payment for i in self.installments]
        return ScheduleSummary(
            total_principal=self.total_principal,
            total_interest=self.total_interest,
            total_insurance=self.total_insurance,
            total_payment=sum_money(payments, self.currency),
            first_payment=payments[0],
            min_payment=min(payments),
            max_payment=max(payments),
        )


def _retires_early(principal: Decimal, payment: Decimal, rate: Decimal, term: int, currency) -> bool:
    """True when a level payment would clear the balance before the final installment"""
    balance = principal
    for _ in range(term - 1):
        balance -= payment - round_to_currency(balance * rate, currency)
        if balance <= 0:
            return True
    return False


def _level_payment(principal: Decimal, rate: Decimal, term: int, currency) -> Decimal:
    """
    Annuity payment P * r(1+r)^n / ((1+r)^n - 1), rounded to the minor unit.

    Rounds half-up unless the rounded-up payment would retire the loan before
    its last installment; then rounds down so the final installment takes a
    non-negative remainder.
    """
    if rate == 0:
        raw = principal / Decimal(term)
    else:
        factor = (Decimal('1') + rate) ** term
        raw = principal * rate * factor / (factor - Decimal('1'))
    payment = round_to_currency(raw, currency)
    if _retires_early(principal, payment, rate, term, currency):
        payment = round_to_currency(raw, currency, ROUND_DOWN)
    return payment


def _insurance_amount(request: ScheduleRequest, number: int, opening: Decimal, currency) -> Decimal:
    insurance = request.insurance
    if insurance is None:
        return Decimal('0')
    if insurance.method == InsuranceChargeMethod.ONE_TIME:
        if number != 1:
            return Decimal('0')
        if insurance.fixed_amount is not None:
            return round_to_currency(insurance.fixed_amount, currency)
        raw = request.principal.amount * insurance.annual_rate
    else:
        if insurance.fixed_amount is not None:
            return round_to_currency(insurance.fixed_amount, currency)
        rate = installment_rate(insurance.annual_rate, request.policy,
                                InterestRateType.NOMINAL_ANNUAL, request.day_count)
        raw = opening * rate
    return insurance.apply_minimum(round_to_currency(raw, currency))


def build_schedule(request: ScheduleRequest) -> AmortizationSchedule:
    """
    Build an amortization schedule.

    Args:
        request: Principal, rate, term, calendar and financing options

    Returns:
        AmortizationSchedule whose scheduled principal sums exactly to the
        requested principal

    Raises:
        InvalidTermError, InvalidRateError, InvalidPrincipalError: bad inputs
        RoundingDriftError: rounding produced a negative principal portion
    """
    request.validate()

    currency = request.principal.currency
    principal = request.principal.amount
    term = request.term
    annual_rate = Decimal(str(request.annual_rate))
    rate = installment_rate(annual_rate, request.policy, request.rate_type, request.day_count)

    first = request.first_due_date or first_due_date(request.disbursement_date, request.policy)
    due_dates = build_due_dates(first, term, request.policy, request.earliest_allowed)

    if request.financing_type == FinancingType.DECLINING_BALANCE:
        payment = _level_payment(principal, rate, term, currency)
        flat_principal = None
        flat_interest = None
    else:
        flat_principal = _level_payment(principal, Decimal('0'), term, currency)
        flat_interest = round_to_currency(principal * rate, currency)
        payment = flat_principal + flat_interest

    installments: List[ScheduledInstallment] = []
    balance = principal
    for number, due in enumerate(due_dates, start=1):
        if request.financing_type == FinancingType.DECLINING_BALANCE:
            interest = round_to_currency(balance * rate, currency)
            portion = min(payment - interest, balance)
        else:
            interest = flat_interest
            portion = min(flat_principal, balance)

        if number == term:
            portion = balance

        if portion < 0:
            raise RoundingDriftError(
                "Scheduled principal portion became negative",
                {'installment': number, 'portion': str(portion), 'balance': str(balance)}
            )

        insurance = _insurance_amount(request, number, balance, currency)
        closing = balance - portion
        installments.append(ScheduledInstallment(
            number=number,
            due_date=due,
            opening_balance=Money(balance, currency),
            principal=Money(portion, currency),
            interest=Money(interest, currency),
            insurance=Money(insurance, currency),
            closing_balance=Money(closing, currency),
        ))
        balance = closing

    schedule = AmortizationSchedule(
        installments=tuple(installments),
        periodic_payment=Money(payment, currency),
        installment_rate=rate,
        financing_type=request.financing_type,
    )

    if schedule.total_principal != request.principal:
        raise RoundingDriftError(
            "Scheduled principal does not sum to the loan principal",
            {'expected': str(principal), 'actual': str(schedule.total_principal.amount)}
        )

    logger.debug(
        f"Built {request.financing_type.value} schedule: {term} installments, "
        f"payment {schedule.periodic_payment.to_string()}, rate {rate}"
    )
    return schedule
