"""
Loan Amortization Module

Generates installment schedules for loans with simple interest on the
original principal, split proportionally across installments. Rounding
remainders are absorbed by the last installment so that the principal,
interest and amount columns each sum exactly to their totals.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Union
from enum import Enum

from .currency import Currency, DEFAULT_CURRENCY, Numeric, round_money, to_decimal
from .dates import add_months, add_weeks
from .exceptions import InvalidScheduleError, UnsupportedFrequencyError


class LoanFrequency(Enum):
    """Repayment frequency options"""
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


@dataclass(frozen=True)
class LoanInstallment:
    """Single generated installment, before persistence"""
    installment_number: int
    due_date: date
    expected_amount: Decimal
    expected_principal: Decimal
    expected_interest: Decimal


def coerce_loan_frequency(value: Union[LoanFrequency, str]) -> LoanFrequency:
    """Accept an enum member or its name"""
    if isinstance(value, LoanFrequency):
        return value
    try:
        return LoanFrequency(str(value).upper())
    except ValueError:
        raise UnsupportedFrequencyError(f"Unsupported loan frequency: {value}")


def installment_due_date(start_date: date, frequency: LoanFrequency, index: int) -> date:
    """Due date of the installment at 0-based index"""
    if frequency == LoanFrequency.WEEKLY:
        return add_weeks(start_date, index)
    elif frequency == LoanFrequency.BIWEEKLY:
        return add_weeks(start_date, 2 * index)
    elif frequency == LoanFrequency.MONTHLY:
        return add_months(start_date, index)
    raise UnsupportedFrequencyError(f"Unsupported loan frequency: {frequency}")


def simple_interest_total(principal: Numeric, interest_rate: Numeric,
                          currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Interest on the original principal for the whole term (rate in percent)"""
    return round_money(to_decimal(principal) * to_decimal(interest_rate) / Decimal('100'), currency)


def generate_loan_schedule(
    principal: Numeric,
    interest_rate: Numeric,
    total_installments: int,
    frequency: Union[LoanFrequency, str],
    start_date: date,
    currency: Currency = DEFAULT_CURRENCY
) -> List[LoanInstallment]:
    """
    Build the installment list for a loan

    Args:
        principal: Amount borrowed (> 0)
        interest_rate: Nominal rate in percent for the whole term (>= 0)
        total_installments: Number of installments (> 0)
        frequency: WEEKLY, BIWEEKLY or MONTHLY
        start_date: Due date of the first installment
        currency: Currency defining the rounding unit

    Returns:
        Installments ordered by number

    Raises:
        InvalidScheduleError: If the terms cannot produce a schedule
        UnsupportedFrequencyError: If the frequency is unknown
    """
    if total_installments is None or int(total_installments) <= 0:
        raise InvalidScheduleError("Total installments must be greater than zero")
    total_installments = int(total_installments)
    frequency = coerce_loan_frequency(frequency)

    principal = round_money(principal, currency)
    rate = to_decimal(interest_rate)
    if principal <= 0:
        raise InvalidScheduleError("Principal amount must be positive")
    if rate < 0:
        raise InvalidScheduleError("Interest rate cannot be negative")

    interest_total = simple_interest_total(principal, rate, currency)
    total_amount = round_money(principal + interest_total, currency)

    count = Decimal(total_installments)
    base_principal = principal / count
    base_interest = interest_total / count

    principal_allocated = Decimal('0')
    interest_allocated = Decimal('0')
    amount_allocated = Decimal('0')
    schedule = []

    for index in range(total_installments):
        number = index + 1
        if number < total_installments:
            principal_share = round_money(base_principal, currency)
            interest_share = round_money(base_interest, currency)
            amount_share = round_money(principal_share + interest_share, currency)
        else:
            # Last installment takes whatever rounding left over
            principal_share = round_money(principal - principal_allocated, currency)
            interest_share = round_money(interest_total - interest_allocated, currency)
            amount_share = total_amount - amount_allocated
            if principal_share < 0 or interest_share < 0:
                raise InvalidScheduleError(
                    f"Amount {principal} is too small to split into {total_installments} installments"
                )

        principal_allocated += principal_share
        interest_allocated += interest_share
        amount_allocated += amount_share

        schedule.append(LoanInstallment(
            installment_number=number,
            due_date=installment_due_date(start_date, frequency, index),
            expected_amount=amount_share,
            expected_principal=principal_share,
            expected_interest=interest_share
        ))

    return schedule
