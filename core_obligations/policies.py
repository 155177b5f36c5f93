"""
Service Policy Module

Emission schedules (when the counterpart issues its invoice) and late-fee
policies. Each policy is a small tagged union: a variant only carries the
fields that make sense for its mode, so a FIXED_DAY emission can never hold
an exact date and a NONE late fee can never hold a value.

Persistence still uses the flat columns (emission_mode, emission_day, ...),
built and parsed by the helpers at the bottom of this module.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, Any, Optional, Union
from enum import Enum

from .currency import Numeric, to_decimal
from .dates import parse_date
from .exceptions import ValidationError


class EmissionMode(Enum):
    """How the counterpart issues the document for each period"""
    FIXED_DAY = "FIXED_DAY"
    DATE_RANGE = "DATE_RANGE"
    SPECIFIC_DATE = "SPECIFIC_DATE"


class LateFeeMode(Enum):
    """Late fee calculation modes"""
    NONE = "NONE"
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"


def _check_day(name: str, day: Optional[int]) -> None:
    if day is None or not 1 <= int(day) <= 31:
        raise ValidationError(f"{name} must be between 1 and 31", details={"field": name})


@dataclass(frozen=True)
class FixedDayEmission:
    """Issued on the same day every period"""
    day: int

    def __post_init__(self):
        _check_day("emission_day", self.day)

    @property
    def mode(self) -> EmissionMode:
        return EmissionMode.FIXED_DAY

    def to_fields(self) -> Dict[str, Any]:
        return _emission_fields(self.mode, day=self.day)


@dataclass(frozen=True)
class DateRangeEmission:
    """Issued somewhere between two days of the period"""
    start_day: int
    end_day: int

    def __post_init__(self):
        _check_day("emission_start_day", self.start_day)
        _check_day("emission_end_day", self.end_day)
        if self.start_day > self.end_day:
            raise ValidationError(
                "Emission start day must not be after the end day",
                details={"emission_start_day": self.start_day, "emission_end_day": self.end_day}
            )

    @property
    def mode(self) -> EmissionMode:
        return EmissionMode.DATE_RANGE

    def to_fields(self) -> Dict[str, Any]:
        return _emission_fields(self.mode, start_day=self.start_day, end_day=self.end_day)


@dataclass(frozen=True)
class SpecificDateEmission:
    """Issued once, on an exact date"""
    exact_date: date

    def __post_init__(self):
        if self.exact_date is None:
            raise ValidationError("Specific-date emission requires an exact date",
                                  details={"field": "emission_exact_date"})

    @property
    def mode(self) -> EmissionMode:
        return EmissionMode.SPECIFIC_DATE

    def to_fields(self) -> Dict[str, Any]:
        return _emission_fields(self.mode, exact_date=self.exact_date.isoformat())


EmissionSchedule = Union[FixedDayEmission, DateRangeEmission, SpecificDateEmission]


def _emission_fields(mode: EmissionMode, day=None, start_day=None, end_day=None,
                     exact_date=None) -> Dict[str, Any]:
    return {
        'emission_mode': mode.value,
        'emission_day': day,
        'emission_start_day': start_day,
        'emission_end_day': end_day,
        'emission_exact_date': exact_date,
    }


def build_emission(
    mode: Union[EmissionMode, str, None],
    day: Optional[int] = None,
    start_day: Optional[int] = None,
    end_day: Optional[int] = None,
    exact_date: Union[date, str, None] = None
) -> EmissionSchedule:
    """
    Build an emission variant from flat fields

    Raises:
        ValidationError: If the fields required by the mode are missing or inconsistent
    """
    if mode is None:
        mode = EmissionMode.FIXED_DAY
    try:
        mode = EmissionMode(mode.value if isinstance(mode, EmissionMode) else str(mode).upper())
    except ValueError:
        raise ValidationError(f"Unknown emission mode: {mode}", details={"field": "emission_mode"})

    if mode == EmissionMode.FIXED_DAY:
        if day is None:
            raise ValidationError("Fixed-day emission requires an emission day",
                                  details={"field": "emission_day"})
        return FixedDayEmission(day=int(day))
    elif mode == EmissionMode.DATE_RANGE:
        if start_day is None or end_day is None:
            raise ValidationError("Date-range emission requires start and end days",
                                  details={"field": "emission_start_day"})
        return DateRangeEmission(start_day=int(start_day), end_day=int(end_day))

    if exact_date is None:
        raise ValidationError("Specific-date emission requires an exact date",
                              details={"field": "emission_exact_date"})
    try:
        return SpecificDateEmission(exact_date=parse_date(exact_date))
    except ValueError as e:
        raise ValidationError(str(e), details={"field": "emission_exact_date"})


@dataclass(frozen=True)
class NoLateFee:
    """No surcharge, however late"""

    @property
    def mode(self) -> LateFeeMode:
        return LateFeeMode.NONE

    @property
    def grace_days(self) -> int:
        return 0

    def to_fields(self) -> Dict[str, Any]:
        return {'late_fee_mode': self.mode.value, 'late_fee_value': None, 'late_fee_grace_days': None}


@dataclass(frozen=True)
class FixedLateFee:
    """Flat surcharge once the grace window has passed"""
    amount: Decimal
    grace_days: int = 0

    def __post_init__(self):
        if self.amount < 0:
            raise ValidationError("Late fee value cannot be negative", details={"field": "late_fee_value"})
        if self.grace_days < 0:
            raise ValidationError("Grace days cannot be negative", details={"field": "late_fee_grace_days"})

    @property
    def mode(self) -> LateFeeMode:
        return LateFeeMode.FIXED

    def to_fields(self) -> Dict[str, Any]:
        return {'late_fee_mode': self.mode.value, 'late_fee_value': str(self.amount),
                'late_fee_grace_days': self.grace_days}


@dataclass(frozen=True)
class PercentageLateFee:
    """Surcharge as a percentage of the expected amount"""
    percent: Decimal
    grace_days: int = 0

    def __post_init__(self):
        if self.percent < 0:
            raise ValidationError("Late fee value cannot be negative", details={"field": "late_fee_value"})
        if self.grace_days < 0:
            raise ValidationError("Grace days cannot be negative", details={"field": "late_fee_grace_days"})

    @property
    def mode(self) -> LateFeeMode:
        return LateFeeMode.PERCENTAGE

    def to_fields(self) -> Dict[str, Any]:
        return {'late_fee_mode': self.mode.value, 'late_fee_value': str(self.percent),
                'late_fee_grace_days': self.grace_days}


LateFeePolicy = Union[NoLateFee, FixedLateFee, PercentageLateFee]


def build_late_fee(
    mode: Union[LateFeeMode, str, None],
    value: Optional[Numeric] = None,
    grace_days: Optional[int] = None
) -> LateFeePolicy:
    """
    Build a late-fee variant from flat fields. Missing grace days count as zero.

    Raises:
        ValidationError: If a charging mode has no value
    """
    if mode is None:
        return NoLateFee()
    try:
        mode = LateFeeMode(mode.value if isinstance(mode, LateFeeMode) else str(mode).upper())
    except ValueError:
        raise ValidationError(f"Unknown late fee mode: {mode}", details={"field": "late_fee_mode"})

    if mode == LateFeeMode.NONE:
        return NoLateFee()
    if value is None:
        raise ValidationError("Late fee value is required when a late fee mode is set",
                              details={"field": "late_fee_value"})
    try:
        amount = to_decimal(value)
    except ValueError as e:
        raise ValidationError(str(e), details={"field": "late_fee_value"})
    grace = int(grace_days) if grace_days is not None else 0

    if mode == LateFeeMode.FIXED:
        return FixedLateFee(amount=amount, grace_days=grace)
    return PercentageLateFee(percent=amount, grace_days=grace)
