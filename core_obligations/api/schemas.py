"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Annotated, Any, Dict, Optional
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..amortization import LoanFrequency
from ..billing import ServiceFrequency, ServiceRecurrenceType
from ..loans import BorrowerType, InterestType, LoanScheduleOverrides
from ..policies import (
    EmissionMode, EmissionSchedule, LateFeeMode, LateFeePolicy,
    build_emission, build_late_fee
)
from ..services import (
    AmountIndexation, ServiceObligationType, ServiceOwnership,
    ServiceScheduleOverrides, ServiceType
)


class CamelModel(BaseModel):
    """Accepts camelCase payloads as well as snake_case field names"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _id_to_str(value: Any) -> Any:
    # Ids of external records may arrive as numbers
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


ExternalId = Annotated[str, BeforeValidator(_id_to_str)]


# Loan schemas
class CreateLoanRequest(CamelModel):
    title: str = Field(..., min_length=1)
    borrower_name: str = Field(..., min_length=1)
    borrower_type: BorrowerType = BorrowerType.PERSON
    principal_amount: Decimal = Field(..., gt=0)
    interest_rate: Decimal = Field(..., ge=0)
    interest_type: InterestType = InterestType.SIMPLE
    frequency: LoanFrequency = LoanFrequency.MONTHLY
    total_installments: int = Field(..., ge=1, le=360)
    start_date: date
    notes: Optional[str] = None
    generate_schedule: bool = True


class RegenerateLoanScheduleRequest(CamelModel):
    total_installments: Optional[int] = Field(None, ge=1, le=360)
    start_date: Optional[date] = None
    interest_rate: Optional[Decimal] = Field(None, ge=0)
    frequency: Optional[LoanFrequency] = None

    def to_overrides(self) -> LoanScheduleOverrides:
        return LoanScheduleOverrides(
            total_installments=self.total_installments,
            start_date=self.start_date,
            interest_rate=self.interest_rate,
            frequency=self.frequency
        )


class PaymentLinkRequest(CamelModel):
    transaction_id: ExternalId = Field(..., min_length=1)
    paid_amount: Decimal = Field(..., ge=0)
    paid_date: date


class ServicePaymentLinkRequest(PaymentLinkRequest):
    note: Optional[str] = None


# Service schemas
class ServiceRequest(CamelModel):
    name: str = Field(..., min_length=1)
    detail: Optional[str] = None
    category: Optional[str] = None
    service_type: ServiceType = ServiceType.BUSINESS
    ownership: ServiceOwnership = ServiceOwnership.COMPANY
    obligation_type: ServiceObligationType = ServiceObligationType.SERVICE
    recurrence_type: ServiceRecurrenceType = ServiceRecurrenceType.RECURRING
    frequency: ServiceFrequency = ServiceFrequency.MONTHLY
    default_amount: Decimal = Field(..., ge=0)
    amount_indexation: AmountIndexation = AmountIndexation.NONE
    counterpart_id: Optional[ExternalId] = None
    counterpart_account_id: Optional[ExternalId] = None
    account_reference: Optional[str] = None
    emission_mode: EmissionMode = EmissionMode.FIXED_DAY
    emission_day: Optional[int] = Field(None, ge=1, le=31)
    emission_start_day: Optional[int] = Field(None, ge=1, le=31)
    emission_end_day: Optional[int] = Field(None, ge=1, le=31)
    emission_exact_date: Optional[date] = None
    due_day: Optional[int] = Field(None, ge=1, le=31)
    start_date: date
    months_to_generate: Optional[int] = Field(None, ge=1, le=60)
    late_fee_mode: LateFeeMode = LateFeeMode.NONE
    late_fee_value: Optional[Decimal] = Field(None, ge=0)
    late_fee_grace_days: Optional[int] = Field(None, ge=0, le=31)
    notes: Optional[str] = None

    def to_emission(self) -> EmissionSchedule:
        return build_emission(
            self.emission_mode,
            day=self.emission_day,
            start_day=self.emission_start_day,
            end_day=self.emission_end_day,
            exact_date=self.emission_exact_date
        )

    def to_late_fee(self) -> LateFeePolicy:
        return build_late_fee(self.late_fee_mode, value=self.late_fee_value,
                              grace_days=self.late_fee_grace_days)

    def to_fields(self) -> Dict[str, Any]:
        """Keyword arguments shared by create_service and update_service"""
        fields = {
            'name': self.name,
            'detail': self.detail,
            'category': self.category,
            'service_type': self.service_type,
            'ownership': self.ownership,
            'obligation_type': self.obligation_type,
            'recurrence_type': self.recurrence_type,
            'frequency': self.frequency,
            'default_amount': self.default_amount,
            'amount_indexation': self.amount_indexation,
            'counterpart_id': self.counterpart_id,
            'counterpart_account_id': self.counterpart_account_id,
            'account_reference': self.account_reference,
            'emission': self.to_emission(),
            'due_day': self.due_day,
            'start_date': self.start_date,
            'months_to_generate': self.months_to_generate,
            'late_fee': self.to_late_fee(),
            'notes': self.notes
        }
        # An update without a period count keeps the stored one
        if fields['months_to_generate'] is None:
            del fields['months_to_generate']
        return fields


class RegenerateServiceScheduleRequest(CamelModel):
    months: Optional[int] = Field(None, ge=1, le=60)
    start_date: Optional[date] = None
    default_amount: Optional[Decimal] = Field(None, ge=0)
    due_day: Optional[int] = Field(None, ge=1, le=31)
    frequency: Optional[ServiceFrequency] = None
    emission_day: Optional[int] = Field(None, ge=1, le=31)

    def to_overrides(self) -> ServiceScheduleOverrides:
        return ServiceScheduleOverrides(
            months=self.months,
            start_date=self.start_date,
            default_amount=self.default_amount,
            due_day=self.due_day,
            frequency=self.frequency,
            emission_day=self.emission_day
        )
