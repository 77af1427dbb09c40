"""
Calendar & Period Resolver

Day counting, month arithmetic, due-date generation for the three payment
schedule modes and business-day shifting. Everything here is pure and
deterministic so schedules and accrual windows can be recomputed exactly.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple


class PaymentScheduleMode(Enum):
    """How installment due dates are laid out"""
    INTERVAL_DAYS = "interval_days"        # Fixed number of days between dues
    MONTHLY_CALENDAR = "monthly_calendar"  # Same day each month
    SEMI_MONTHLY = "semi_monthly"          # Two anchor days per month


class BusinessDayShift(Enum):
    """Where a due date moves when it lands on a weekend or holiday"""
    NONE = "none"
    FORWARD = "forward"
    BACKWARD = "backward"


class DayCountConvention(Enum):
    """Year basis used to turn an annual rate into a daily fraction"""
    ACTUAL_360 = "actual_360"
    ACTUAL_365 = "actual_365"
    ACTUAL_ACTUAL = "actual_actual"
    THIRTY_360 = "thirty_360"

    @property
    def year_base(self) -> Decimal:
        return {
            DayCountConvention.ACTUAL_360: Decimal('360'),
            DayCountConvention.ACTUAL_365: Decimal('365'),
            DayCountConvention.ACTUAL_ACTUAL: Decimal('365.25'),
            DayCountConvention.THIRTY_360: Decimal('360'),
        }[self]

    def day_count(self, start: date, end: date) -> int:
        if self == DayCountConvention.THIRTY_360:
            return days_between_30_360(start, end)
        return days_between(start, end)


@dataclass(frozen=True)
class IntervalPolicy:
    """Installment calendar for a loan"""
    mode: PaymentScheduleMode = PaymentScheduleMode.MONTHLY_CALENDAR
    interval_days: int = 30
    day_of_month: Optional[int] = None  # Anchor; defaults to the first due date's day
    semi_month_days: Tuple[int, int] = (15, 30)
    end_of_month_fallback: bool = True
    shift: BusinessDayShift = BusinessDayShift.NONE
    holidays: FrozenSet[date] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.interval_days <= 0:
            raise ValueError("interval_days must be positive")
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31")
        first, second = self.semi_month_days
        if not (1 <= first < second <= 31):
            raise ValueError("semi_month_days must be two increasing days between 1 and 31")

    @property
    def installments_per_year(self) -> Optional[int]:
        if self.mode == PaymentScheduleMode.MONTHLY_CALENDAR:
            return 12
        if self.mode == PaymentScheduleMode.SEMI_MONTHLY:
            return 24
        return None


def days_between(start: date, end: date) -> int:
    """Actual calendar days from start to end"""
    return (end - start).days


def days_between_30_360(start: date, end: date) -> int:
    """US 30/360 day count"""
    d1 = 30 if start.day == 31 else start.day
    d2 = end.day
    if d2 == 31 and d1 >= 30:
        d2 = 30
    return 360 * (end.year - start.year) + 30 * (end.month - start.month) + (d2 - d1)


def is_end_of_month(d: date) -> bool:
    return d.day == calendar.monthrange(d.year, d.month)[1]


def _month_day(year: int, month: int, day: int, end_of_month_fallback: bool = True) -> date:
    """Resolve an anchor day inside a month that may be shorter than the anchor"""
    last = calendar.monthrange(year, month)[1]
    if day <= last:
        return date(year, month, day)
    if end_of_month_fallback:
        return date(year, month, last)
    # Overflow into the next month the way calendar arithmetic would
    return date(year, month, last) + timedelta(days=day - last)


def add_months(start: date, months: int, day: Optional[int] = None,
               end_of_month_fallback: bool = True) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    return _month_day(year, month, day or start.day, end_of_month_fallback)


def is_business_day(d: date, holidays: FrozenSet[date] = frozenset()) -> bool:
    return d.weekday() < 5 and d not in holidays


def resolve_due_date(nominal: date, policy: IntervalPolicy,
                     earliest_allowed: Optional[date] = None) -> date:
    """
    Apply the business-day shift policy to a nominal due date.

    A backward shift never lands before ``earliest_allowed`` (normally the
    start of the first open accounting period); in that case the date is
    shifted forward instead.
    """
    if policy.shift == BusinessDayShift.NONE:
        return nominal

    def forward(d: date) -> date:
        while not is_business_day(d, policy.holidays):
            d += timedelta(days=1)
        return d

    if policy.shift == BusinessDayShift.FORWARD:
        return forward(nominal)

    shifted = nominal
    while not is_business_day(shifted, policy.holidays):
        shifted -= timedelta(days=1)
    if earliest_allowed is not None and shifted < earliest_allowed:
        return forward(nominal)
    return shifted


def _semi_monthly_dates_after(current: date, policy: IntervalPolicy):
    year, month = current.year, current.month
    while True:
        for anchor in policy.semi_month_days:
            candidate = _month_day(year, month, anchor, policy.end_of_month_fallback)
            if candidate > current:
                yield candidate
        month += 1
        if month > 12:
            month = 1
            year += 1


def next_due_date(previous: date, policy: IntervalPolicy, anchor_day: Optional[int] = None) -> date:
    """Nominal due date that follows ``previous`` under the policy"""
    if policy.mode == PaymentScheduleMode.INTERVAL_DAYS:
        return previous + timedelta(days=policy.interval_days)
    if policy.mode == PaymentScheduleMode.MONTHLY_CALENDAR:
        day = policy.day_of_month or anchor_day or previous.day
        return add_months(previous, 1, day, policy.end_of_month_fallback)
    return next(_semi_monthly_dates_after(previous, policy))


def first_due_date(disbursement_date: date, policy: IntervalPolicy) -> date:
    """Nominal first due date one interval after disbursement"""
    return next_due_date(disbursement_date, policy)


def build_due_dates(first: date, count: int, policy: IntervalPolicy,
                    earliest_allowed: Optional[date] = None) -> List[date]:
    """
    Generate ``count`` shifted due dates starting at ``first``.

    Nominal dates are generated from the unshifted chain so that a shift on
    one installment never drifts the following ones.
    """
    if count <= 0:
        return []

    anchor_day = first.day
    nominal = [first]
    while len(nominal) < count:
        nominal.append(next_due_date(nominal[-1], policy, anchor_day))

    resolved: List[date] = []
    for d in nominal:
        shifted = resolve_due_date(d, policy, earliest_allowed)
        if resolved and shifted <= resolved[-1]:
            shifted = resolve_due_date(
                d, IntervalPolicy(shift=BusinessDayShift.FORWARD, holidays=policy.holidays)
            )
        resolved.append(shifted)
    return resolved


def period_id_for(d: date) -> str:
    """Accounting period id (YYYY-MM) containing the date"""
    return f"{d.year:04d}-{d.month:02d}"


def parse_period_id(period_id: str) -> Tuple[int, int]:
    try:
        year_text, month_text = period_id.split("-")
        year, month = int(year_text), int(month_text)
    except ValueError:
        raise ValueError(f"Malformed period id: {period_id!r}")
    if not 1 <= month <= 12:
        raise ValueError(f"Malformed period id: {period_id!r}")
    return year, month


def period_bounds_for(year: int, month: int) -> Tuple[date, date]:
    """First and last calendar day of an accounting period"""
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)
