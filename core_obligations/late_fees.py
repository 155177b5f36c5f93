"""
Late Fee Calculator

Late fees are never stored. They are assessed on every read from the
entry's due date, its status and the service's policy, as of a given day.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, Any

from .billing import ServiceScheduleStatus
from .currency import Currency, DEFAULT_CURRENCY, Numeric, round_money
from .policies import FixedLateFee, LateFeePolicy, NoLateFee, PercentageLateFee

SETTLED_STATUSES = (ServiceScheduleStatus.PAID, ServiceScheduleStatus.SKIPPED)


@dataclass(frozen=True)
class LateFeeAssessment:
    """Result of assessing one billing period"""
    overdue_days: int
    late_fee_amount: Decimal
    effective_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'overdue_days': self.overdue_days,
            'late_fee_amount': str(self.late_fee_amount),
            'effective_amount': str(self.effective_amount)
        }


def overdue_days(due_date: date, today: date) -> int:
    return max(0, (today - due_date).days)


def assess_late_fee(
    expected_amount: Numeric,
    status: ServiceScheduleStatus,
    due_date: date,
    policy: LateFeePolicy,
    today: date,
    currency: Currency = DEFAULT_CURRENCY
) -> LateFeeAssessment:
    """
    Assess the late fee of a billing period as of today

    No fee applies while the period is settled, without a policy, or still
    inside the grace window (overdue days <= grace days).
    """
    expected = round_money(expected_amount, currency)
    days = overdue_days(due_date, today)

    fee = Decimal('0')
    if (not isinstance(policy, NoLateFee)
            and status not in SETTLED_STATUSES
            and days > (policy.grace_days or 0)):
        if isinstance(policy, FixedLateFee):
            fee = policy.amount
        elif isinstance(policy, PercentageLateFee):
            fee = expected * policy.percent / Decimal('100')

    fee = round_money(fee, currency)
    return LateFeeAssessment(
        overdue_days=days,
        late_fee_amount=fee,
        effective_amount=round_money(expected + fee, currency)
    )
