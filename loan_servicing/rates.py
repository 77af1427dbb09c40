"""
Rate Conversion Module

Converts a quoted loan rate into the rate that applies to a number of days
or to one installment. Nominal rates scale linearly; effective rates
compound.
"""

from decimal import Decimal
from enum import Enum

from .dates import DayCountConvention, IntervalPolicy, PaymentScheduleMode

ONE = Decimal('1')
DAYS_PER_MONTH = Decimal('30')


class InterestRateType(Enum):
    """How a quoted rate is expressed"""
    NOMINAL_ANNUAL = "nominal_annual"
    EFFECTIVE_ANNUAL = "effective_annual"
    NOMINAL_MONTHLY = "nominal_monthly"
    EFFECTIVE_MONTHLY = "effective_monthly"

    @property
    def is_effective(self) -> bool:
        return self in (InterestRateType.EFFECTIVE_ANNUAL, InterestRateType.EFFECTIVE_MONTHLY)

    @property
    def is_monthly(self) -> bool:
        return self in (InterestRateType.NOMINAL_MONTHLY, InterestRateType.EFFECTIVE_MONTHLY)


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _scale(rate: Decimal, numerator: Decimal, denominator: Decimal, effective: bool) -> Decimal:
    # Multiply before dividing so exact fractions (30/360) stay exact
    if effective:
        return (ONE + rate) ** (numerator / denominator) - ONE
    return rate * numerator / denominator


def period_rate(rate, days: int,
                rate_type: InterestRateType = InterestRateType.NOMINAL_ANNUAL,
                convention: DayCountConvention = DayCountConvention.ACTUAL_360) -> Decimal:
    """
    Rate applicable to ``days`` elapsed days.

    Annual rates use the convention's year base; monthly rates use a
    30-day month.
    """
    rate = _as_decimal(rate)
    if days <= 0 or rate == 0:
        return Decimal('0')
    base = DAYS_PER_MONTH if rate_type.is_monthly else convention.year_base
    return _scale(rate, Decimal(days), base, rate_type.is_effective)


def installment_rate(rate, policy: IntervalPolicy,
                     rate_type: InterestRateType = InterestRateType.NOMINAL_ANNUAL,
                     convention: DayCountConvention = DayCountConvention.ACTUAL_360) -> Decimal:
    """Rate for one installment period implied by the schedule frequency"""
    rate = _as_decimal(rate)
    if rate == 0:
        return Decimal('0')
    if policy.mode == PaymentScheduleMode.INTERVAL_DAYS:
        return period_rate(rate, policy.interval_days, rate_type, convention)

    per_year = Decimal(policy.installments_per_year)
    numerator = Decimal('12') if rate_type.is_monthly else ONE
    return _scale(rate, numerator, per_year, rate_type.is_effective)
