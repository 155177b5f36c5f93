"""
Test suite for late fee assessment and the service policy variants
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from core_obligations.billing import ServiceScheduleStatus
from core_obligations.exceptions import ValidationError
from core_obligations.late_fees import assess_late_fee
from core_obligations.policies import (
    DateRangeEmission, EmissionMode, FixedDayEmission, FixedLateFee, LateFeeMode,
    NoLateFee, PercentageLateFee, SpecificDateEmission, build_emission, build_late_fee
)

TODAY = date(2024, 6, 15)


class TestLateFeeAssessment:
    """Test fees computed as of a given day"""

    def test_percentage_fee_example(self):
        """Test 5% with 3 grace days on a 1000 period due 10 days ago"""
        result = assess_late_fee(
            expected_amount=Decimal('1000'),
            status=ServiceScheduleStatus.PENDING,
            due_date=TODAY - timedelta(days=10),
            policy=PercentageLateFee(percent=Decimal('5'), grace_days=3),
            today=TODAY
        )
        assert result.overdue_days == 10
        assert result.late_fee_amount == Decimal('50.00')
        assert result.effective_amount == Decimal('1050.00')

    def test_fixed_fee(self):
        result = assess_late_fee(Decimal('200'), ServiceScheduleStatus.PARTIAL, TODAY - timedelta(days=1),
                                 FixedLateFee(amount=Decimal('15')), TODAY)
        assert result.late_fee_amount == Decimal('15.00')
        assert result.effective_amount == Decimal('215.00')

    def test_inside_grace_window(self):
        """Test overdue days equal to grace days still charge nothing"""
        result = assess_late_fee(Decimal('1000'), ServiceScheduleStatus.PENDING, TODAY - timedelta(days=3),
                                 PercentageLateFee(percent=Decimal('5'), grace_days=3), TODAY)
        assert result.overdue_days == 3
        assert result.late_fee_amount == Decimal('0.00')
        assert result.effective_amount == Decimal('1000.00')

    @pytest.mark.parametrize("status", [ServiceScheduleStatus.PAID, ServiceScheduleStatus.SKIPPED])
    def test_settled_periods_have_no_fee(self, status):
        result = assess_late_fee(Decimal('1000'), status, TODAY - timedelta(days=30),
                                 FixedLateFee(amount=Decimal('15')), TODAY)
        assert result.overdue_days == 30
        assert result.late_fee_amount == Decimal('0.00')

    def test_no_policy(self):
        result = assess_late_fee(Decimal('1000'), ServiceScheduleStatus.PENDING,
                                 TODAY - timedelta(days=30), NoLateFee(), TODAY)
        assert result.late_fee_amount == Decimal('0.00')

    def test_future_due_date_is_not_overdue(self):
        result = assess_late_fee(Decimal('1000'), ServiceScheduleStatus.PENDING,
                                 TODAY + timedelta(days=5), FixedLateFee(amount=Decimal('15')), TODAY)
        assert result.overdue_days == 0
        assert result.late_fee_amount == Decimal('0.00')

    def test_percentage_fee_is_rounded(self):
        result = assess_late_fee(Decimal('33.33'), ServiceScheduleStatus.PENDING, TODAY - timedelta(days=1),
                                 PercentageLateFee(percent=Decimal('1.5')), TODAY)
        # 0.49995 rounds half up
        assert result.late_fee_amount == Decimal('0.50')
        assert result.effective_amount == Decimal('33.83')

    def test_fee_depends_on_the_day_asked(self):
        policy = FixedLateFee(amount=Decimal('10'), grace_days=5)
        due = date(2024, 6, 1)
        before = assess_late_fee(Decimal('100'), ServiceScheduleStatus.PENDING, due, policy, date(2024, 6, 6))
        after = assess_late_fee(Decimal('100'), ServiceScheduleStatus.PENDING, due, policy, date(2024, 6, 7))
        assert before.late_fee_amount == Decimal('0.00')
        assert after.late_fee_amount == Decimal('10.00')


class TestEmissionVariants:
    """Test each emission mode only carries its own fields"""

    def test_fixed_day(self):
        emission = build_emission("FIXED_DAY", day=10)
        assert emission == FixedDayEmission(day=10)
        assert emission.to_fields() == {
            'emission_mode': 'FIXED_DAY', 'emission_day': 10, 'emission_start_day': None,
            'emission_end_day': None, 'emission_exact_date': None
        }

    def test_fixed_day_requires_day(self):
        with pytest.raises(ValidationError):
            build_emission(EmissionMode.FIXED_DAY)

    def test_default_mode_is_fixed_day(self):
        assert build_emission(None, day=3) == FixedDayEmission(day=3)

    def test_date_range(self):
        emission = build_emission("DATE_RANGE", start_day=5, end_day=10, exact_date="2024-01-01")
        assert emission == DateRangeEmission(start_day=5, end_day=10)
        assert emission.to_fields()['emission_exact_date'] is None

    def test_date_range_must_be_ordered(self):
        with pytest.raises(ValidationError):
            build_emission("DATE_RANGE", start_day=10, end_day=5)

    def test_specific_date(self):
        emission = build_emission("SPECIFIC_DATE", day=4, exact_date="2024-03-15")
        assert emission == SpecificDateEmission(exact_date=date(2024, 3, 15))
        fields = emission.to_fields()
        assert fields['emission_exact_date'] == "2024-03-15"
        assert fields['emission_day'] is None

    def test_specific_date_requires_date(self):
        with pytest.raises(ValidationError):
            build_emission("SPECIFIC_DATE")

    def test_unknown_mode(self):
        with pytest.raises(ValidationError):
            build_emission("WHENEVER", day=1)

    def test_day_out_of_range(self):
        with pytest.raises(ValidationError):
            FixedDayEmission(day=0)


class TestLateFeeVariants:

    def test_none_mode(self):
        policy = build_late_fee(LateFeeMode.NONE, value=Decimal('5'))
        assert policy == NoLateFee()
        assert policy.to_fields()['late_fee_value'] is None

    def test_charging_mode_requires_value(self):
        with pytest.raises(ValidationError):
            build_late_fee("PERCENTAGE")

    def test_missing_grace_days_count_as_zero(self):
        policy = build_late_fee("FIXED", value="12.5")
        assert policy == FixedLateFee(amount=Decimal('12.5'), grace_days=0)

    def test_percentage(self):
        policy = build_late_fee("percentage", value=5, grace_days=3)
        assert policy == PercentageLateFee(percent=Decimal('5'), grace_days=3)
        assert policy.to_fields() == {'late_fee_mode': 'PERCENTAGE', 'late_fee_value': '5',
                                      'late_fee_grace_days': 3}

    def test_negative_value(self):
        with pytest.raises(ValidationError):
            build_late_fee("FIXED", value="-1")
