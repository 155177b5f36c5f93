"""
Service Billing Module

Generates contiguous billing periods for recurring or one-off obligations.
Each frequency maps to a period unit; every period starts the day after
the previous one ends.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union
from enum import Enum

from .currency import Currency, DEFAULT_CURRENCY, Numeric, round_money
from .dates import add_months, add_weeks, add_years, day_in_month
from .exceptions import InvalidScheduleError, UnsupportedFrequencyError, ValidationError


class ServiceFrequency(Enum):
    """Billing frequency options"""
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    BIMONTHLY = "BIMONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUAL = "SEMIANNUAL"
    ANNUAL = "ANNUAL"
    ONCE = "ONCE"


class ServiceRecurrenceType(Enum):
    """Whether the obligation repeats"""
    RECURRING = "RECURRING"
    ONE_OFF = "ONE_OFF"


class ServiceScheduleStatus(Enum):
    """Billing period states"""
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    SKIPPED = "SKIPPED"


class UnitKind(Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True)
class PeriodUnit:
    """Length of one billing period"""
    kind: UnitKind
    count: int

    @property
    def is_calendar_based(self) -> bool:
        """Month and year units honor a configured due day"""
        return self.kind in (UnitKind.MONTH, UnitKind.YEAR)

    def advance(self, start: date, steps: int) -> date:
        """Move start forward by steps whole units"""
        if self.kind == UnitKind.WEEK:
            return add_weeks(start, self.count * steps)
        elif self.kind == UnitKind.MONTH:
            return add_months(start, self.count * steps)
        return add_years(start, self.count * steps)


FREQUENCY_UNITS: Dict[ServiceFrequency, PeriodUnit] = {
    ServiceFrequency.WEEKLY: PeriodUnit(UnitKind.WEEK, 1),
    ServiceFrequency.BIWEEKLY: PeriodUnit(UnitKind.WEEK, 2),
    ServiceFrequency.MONTHLY: PeriodUnit(UnitKind.MONTH, 1),
    ServiceFrequency.BIMONTHLY: PeriodUnit(UnitKind.MONTH, 2),
    ServiceFrequency.QUARTERLY: PeriodUnit(UnitKind.MONTH, 3),
    ServiceFrequency.SEMIANNUAL: PeriodUnit(UnitKind.MONTH, 6),
    ServiceFrequency.ANNUAL: PeriodUnit(UnitKind.YEAR, 1),
    ServiceFrequency.ONCE: PeriodUnit(UnitKind.MONTH, 1),  # capped to a single period
}


@dataclass(frozen=True)
class BillingPeriod:
    """Single generated billing period, before persistence"""
    period_start: date
    period_end: date
    due_date: date
    expected_amount: Decimal


def coerce_service_frequency(value: Union[ServiceFrequency, str]) -> ServiceFrequency:
    """Accept an enum member or its name"""
    if isinstance(value, ServiceFrequency):
        return value
    try:
        return ServiceFrequency(str(value).upper())
    except ValueError:
        raise UnsupportedFrequencyError(f"Unsupported service frequency: {value}")


def is_one_off(recurrence_type: ServiceRecurrenceType, frequency: ServiceFrequency) -> bool:
    return recurrence_type == ServiceRecurrenceType.ONE_OFF or frequency == ServiceFrequency.ONCE


def period_due_date(unit: PeriodUnit, period_start: date, period_end: date,
                    due_day: Optional[int]) -> date:
    """
    Due date for one period.

    Calendar units with a due day use that day in the period's starting
    month, falling back to the month's last day when the day does not exist
    there. Everything else is due on the period's last day.
    """
    if unit.is_calendar_based and due_day:
        return day_in_month(period_start.year, period_start.month, due_day)
    return period_end


def generate_service_schedule(
    frequency: Union[ServiceFrequency, str],
    period_count: int,
    start_date: date,
    amount: Numeric,
    due_day: Optional[int] = None,
    recurrence_type: ServiceRecurrenceType = ServiceRecurrenceType.RECURRING,
    currency: Currency = DEFAULT_CURRENCY,
    units: Mapping[ServiceFrequency, PeriodUnit] = FREQUENCY_UNITS
) -> List[BillingPeriod]:
    """
    Build the billing periods for a service

    Args:
        frequency: Billing frequency
        period_count: Periods requested (clamped to 1 for one-off obligations)
        start_date: First day of the first period
        amount: Expected amount of every period
        due_day: Optional day of month the periods fall due
        recurrence_type: RECURRING or ONE_OFF
        currency: Currency defining the rounding unit
        units: Frequency to period-length mapping

    Returns:
        Contiguous, non-overlapping periods ordered by start

    Raises:
        UnsupportedFrequencyError: If the frequency has no unit mapping
        InvalidScheduleError: If fewer than one period is requested
    """
    frequency = coerce_service_frequency(frequency)
    unit = units.get(frequency)
    if unit is None:
        raise UnsupportedFrequencyError(f"No period unit configured for {frequency.value}")
    if period_count is None or int(period_count) <= 0:
        raise InvalidScheduleError("Number of periods must be greater than zero")
    if due_day is not None and not 1 <= due_day <= 31:
        raise ValidationError(f"Due day must be between 1 and 31, got {due_day}")

    expected_amount = round_money(amount, currency)
    if expected_amount < 0:
        raise ValidationError("Service amount cannot be negative")

    count = 1 if is_one_off(recurrence_type, frequency) else int(period_count)

    periods = []
    cursor = start_date
    for _ in range(count):
        period_start = cursor
        period_end = unit.advance(cursor, 1) - timedelta(days=1)
        cursor = period_end + timedelta(days=1)
        periods.append(BillingPeriod(
            period_start=period_start,
            period_end=period_end,
            due_date=period_due_date(unit, period_start, period_end, due_day),
            expected_amount=expected_amount
        ))

    return periods
