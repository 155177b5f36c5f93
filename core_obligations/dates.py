"""
Date arithmetic helpers shared by the schedule generators.
"""

from datetime import date, timedelta
import calendar


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the month end when the day does not exist"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_years(start_date: date, years: int) -> date:
    return add_months(start_date, years * 12)


def add_weeks(start_date: date, weeks: int) -> date:
    return start_date + timedelta(weeks=weeks)


def day_in_month(year: int, month: int, day: int) -> date:
    """
    Build a date for the given day of month.
    
    A day past the end of the month (e.g. 31 in April) falls back to the
    month's last day instead of rolling into the next month.
    """
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def parse_date(value) -> date:
    """Accept a date or an ISO YYYY-MM-DD string"""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Invalid date: {value!r}")
