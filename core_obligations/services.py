"""
Service Module

Recurring and one-off obligations (rent, utilities, taxes, subscriptions...)
with billing periods generated ahead of time. Late fees are assessed at read
time and also decide whether a payment fully settles a period.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .billing import (
    ServiceFrequency, ServiceRecurrenceType, ServiceScheduleStatus,
    coerce_service_frequency, generate_service_schedule
)
from .clock import Clock, SystemClock
from .counterparts import CounterpartDirectory, CounterpartDisplay
from .currency import Currency, DEFAULT_CURRENCY, Numeric, round_money
from .dates import parse_date
from .exceptions import InvalidScheduleError, NotFoundError, ValidationError
from .late_fees import LateFeeAssessment, assess_late_fee
from .logging_config import get_logger, log_action
from .policies import (
    EmissionSchedule, FixedDayEmission, LateFeePolicy, NoLateFee,
    build_emission, build_late_fee
)
from .storage import StorageInterface, StorageRecord
from .transactions import TransactionDirectory, TransactionSummary

logger = get_logger("obligations.services")


class ServiceType(Enum):
    BUSINESS = "BUSINESS"
    PERSONAL = "PERSONAL"
    SUPPLIER = "SUPPLIER"
    TAX = "TAX"
    UTILITY = "UTILITY"
    LEASE = "LEASE"
    SOFTWARE = "SOFTWARE"
    OTHER = "OTHER"


class ServiceOwnership(Enum):
    COMPANY = "COMPANY"
    OWNER = "OWNER"
    MIXED = "MIXED"
    THIRD_PARTY = "THIRD_PARTY"


class ServiceObligationType(Enum):
    SERVICE = "SERVICE"
    DEBT = "DEBT"
    LOAN = "LOAN"
    OTHER = "OTHER"


class AmountIndexation(Enum):
    """Indexation of the default amount (stored only, never applied)"""
    NONE = "NONE"
    UF = "UF"


class ServiceStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


# SKIPPED periods still keep a service active
OPEN_PERIOD_STATUSES = (
    ServiceScheduleStatus.PENDING,
    ServiceScheduleStatus.PARTIAL,
    ServiceScheduleStatus.SKIPPED,
)

UNPAID_PERIOD_STATUSES = (ServiceScheduleStatus.PENDING, ServiceScheduleStatus.PARTIAL)


def _enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}", details={"field": field_name})


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Service(StorageRecord):
    """Recurring or one-off obligation"""
    name: str
    service_type: ServiceType
    ownership: ServiceOwnership
    obligation_type: ServiceObligationType
    recurrence_type: ServiceRecurrenceType
    frequency: ServiceFrequency
    default_amount: Decimal
    start_date: date
    emission: EmissionSchedule
    late_fee: LateFeePolicy = field(default_factory=NoLateFee)
    amount_indexation: AmountIndexation = AmountIndexation.NONE
    months_to_generate: int = 12
    due_day: Optional[int] = None
    detail: Optional[str] = None
    category: Optional[str] = None
    counterpart_id: Optional[str] = None
    counterpart_account_id: Optional[str] = None
    account_reference: Optional[str] = None
    status: ServiceStatus = ServiceStatus.ACTIVE
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        # Policies are stored as flat columns
        del result['emission']
        del result['late_fee']
        result.update(self.emission.to_fields())
        result.update(self.late_fee.to_fields())
        for key in ('service_type', 'ownership', 'obligation_type', 'recurrence_type',
                    'frequency', 'amount_indexation', 'status'):
            result[key] = getattr(self, key).value
        result['start_date'] = self.start_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Service':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            service_type=ServiceType(data['service_type']),
            ownership=ServiceOwnership(data['ownership']),
            obligation_type=ServiceObligationType(data['obligation_type']),
            recurrence_type=ServiceRecurrenceType(data['recurrence_type']),
            frequency=ServiceFrequency(data['frequency']),
            default_amount=Decimal(data['default_amount']),
            start_date=date.fromisoformat(data['start_date']),
            emission=build_emission(
                data['emission_mode'],
                day=data.get('emission_day'),
                start_day=data.get('emission_start_day'),
                end_day=data.get('emission_end_day'),
                exact_date=data.get('emission_exact_date')
            ),
            late_fee=build_late_fee(
                data.get('late_fee_mode'),
                value=data.get('late_fee_value'),
                grace_days=data.get('late_fee_grace_days')
            ),
            amount_indexation=AmountIndexation(data.get('amount_indexation', 'NONE')),
            months_to_generate=int(data['months_to_generate']),
            due_day=data.get('due_day'),
            detail=data.get('detail'),
            category=data.get('category'),
            counterpart_id=data.get('counterpart_id'),
            counterpart_account_id=data.get('counterpart_account_id'),
            account_reference=data.get('account_reference'),
            status=ServiceStatus(data['status']),
            notes=data.get('notes')
        )


@dataclass
class ServiceScheduleEntry(StorageRecord):
    """One billing period of a service"""
    service_id: str
    period_start: date
    period_end: date
    due_date: date
    expected_amount: Decimal
    status: ServiceScheduleStatus = ServiceScheduleStatus.PENDING
    transaction_id: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    paid_date: Optional[date] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['period_start'] = self.period_start.isoformat()
        result['period_end'] = self.period_end.isoformat()
        result['due_date'] = self.due_date.isoformat()
        result['status'] = self.status.value
        result['paid_date'] = self.paid_date.isoformat() if self.paid_date else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceScheduleEntry':
        paid_amount = data.get('paid_amount')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            service_id=data['service_id'],
            period_start=date.fromisoformat(data['period_start']),
            period_end=date.fromisoformat(data['period_end']),
            due_date=date.fromisoformat(data['due_date']),
            expected_amount=Decimal(data['expected_amount']),
            status=ServiceScheduleStatus(data['status']),
            transaction_id=data.get('transaction_id'),
            paid_amount=Decimal(paid_amount) if paid_amount is not None else None,
            paid_date=_optional_date(data.get('paid_date')),
            note=data.get('note')
        )


@dataclass(frozen=True)
class ServiceScheduleOverrides:
    """New terms applied by a regeneration and written back to the service"""
    months: Optional[int] = None
    start_date: Optional[date] = None
    default_amount: Optional[Numeric] = None
    due_day: Optional[int] = None
    frequency: Optional[Union[ServiceFrequency, str]] = None
    emission_day: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in {
            'months': self.months,
            'start_date': self.start_date,
            'default_amount': self.default_amount,
            'due_day': self.due_day,
            'frequency': self.frequency,
            'emission_day': self.emission_day,
        }.items() if v is not None}


@dataclass(frozen=True)
class ServiceSummary:
    """Totals folded from a service's billing periods"""
    total_expected: Decimal
    total_paid: Decimal
    pending_count: int     # Unpaid and not yet due
    overdue_count: int     # Unpaid and past due
    counterpart: CounterpartDisplay = field(default_factory=CounterpartDisplay)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'total_expected': str(self.total_expected),
            'total_paid': str(self.total_paid),
            'pending_count': self.pending_count,
            'overdue_count': self.overdue_count
        }
        result.update(self.counterpart.to_dict())
        return result


@dataclass(frozen=True)
class ServiceScheduleView:
    """Billing period joined with its settling payment and live late fee"""
    entry: ServiceScheduleEntry
    assessment: LateFeeAssessment
    transaction: Optional[TransactionSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.entry.to_dict()
        result.update(self.assessment.to_dict())
        result['transaction'] = self.transaction.to_dict() if self.transaction else None
        return result


@dataclass(frozen=True)
class ServiceWithSummary:
    service: Service
    summary: ServiceSummary

    def to_dict(self) -> Dict[str, Any]:
        result = self.service.to_dict()
        result.update(self.summary.to_dict())
        return result


@dataclass(frozen=True)
class ServiceDetail:
    service: Service
    schedules: List[ServiceScheduleView]
    summary: ServiceSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'service': ServiceWithSummary(self.service, self.summary).to_dict(),
            'schedules': [view.to_dict() for view in self.schedules]
        }


def derive_service_status(statuses: Iterable[ServiceScheduleStatus]) -> ServiceStatus:
    """INACTIVE once no period is left open; overdue periods do not matter here"""
    if any(s in OPEN_PERIOD_STATUSES for s in statuses):
        return ServiceStatus.ACTIVE
    return ServiceStatus.INACTIVE


def summarize_service_schedule(
    entries: Iterable[ServiceScheduleEntry],
    today: date,
    currency: Currency = DEFAULT_CURRENCY,
    counterpart: Optional[CounterpartDisplay] = None
) -> ServiceSummary:
    total_expected = Decimal('0')
    total_paid = Decimal('0')
    pending = 0
    overdue = 0
    for entry in entries:
        total_expected += entry.expected_amount
        total_paid += entry.paid_amount or Decimal('0')
        if entry.status in UNPAID_PERIOD_STATUSES:
            if entry.due_date < today:
                overdue += 1
            else:
                pending += 1
    return ServiceSummary(
        total_expected=round_money(total_expected, currency),
        total_paid=round_money(total_paid, currency),
        pending_count=pending,
        overdue_count=overdue,
        counterpart=counterpart or CounterpartDisplay()
    )


class ServiceManager:
    """
    Manages services and their billing periods
    """

    _UPDATABLE_FIELDS = frozenset({
        'name', 'detail', 'category', 'service_type', 'ownership', 'obligation_type',
        'recurrence_type', 'frequency', 'default_amount', 'amount_indexation',
        'counterpart_id', 'counterpart_account_id', 'account_reference', 'emission',
        'due_day', 'start_date', 'months_to_generate', 'late_fee', 'notes'
    })

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        transaction_directory: TransactionDirectory,
        counterpart_directory: CounterpartDirectory,
        clock: Optional[Clock] = None,
        currency: Currency = DEFAULT_CURRENCY,
        default_months: int = 12,
        max_months: int = 60,
        max_grace_days: int = 31
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.transaction_directory = transaction_directory
        self.counterpart_directory = counterpart_directory
        self.clock = clock or SystemClock()
        self.currency = currency
        self.default_months = default_months
        self.max_months = max_months
        self.max_grace_days = max_grace_days

        self.services_table = "services"
        self.schedules_table = "service_schedules"

        self.storage.register_unique(self.schedules_table, ("service_id", "period_start"))

    def create_service(
        self,
        name: str,
        default_amount: Numeric,
        start_date: Union[date, str],
        emission: EmissionSchedule,
        frequency: Union[ServiceFrequency, str] = ServiceFrequency.MONTHLY,
        recurrence_type: Union[ServiceRecurrenceType, str] = ServiceRecurrenceType.RECURRING,
        service_type: Union[ServiceType, str] = ServiceType.BUSINESS,
        ownership: Union[ServiceOwnership, str] = ServiceOwnership.COMPANY,
        obligation_type: Union[ServiceObligationType, str] = ServiceObligationType.SERVICE,
        amount_indexation: Union[AmountIndexation, str] = AmountIndexation.NONE,
        late_fee: Optional[LateFeePolicy] = None,
        due_day: Optional[int] = None,
        months_to_generate: Optional[int] = None,
        detail: Optional[str] = None,
        category: Optional[str] = None,
        counterpart_id: Optional[str] = None,
        counterpart_account_id: Optional[str] = None,
        account_reference: Optional[str] = None,
        notes: Optional[str] = None,
        generate_schedule: bool = True
    ) -> Service:
        """
        Register a new service and materialize its billing periods

        Args:
            name: Display name
            default_amount: Expected amount of every period
            start_date: First day of the first period
            emission: When the counterpart issues its document
            frequency: Billing frequency
            recurrence_type: RECURRING or ONE_OFF
            late_fee: Late-fee policy, none by default
            due_day: Day of month periods fall due (month/year frequencies)
            months_to_generate: Periods to materialize (config default when None)

        Returns:
            Created Service object
        """
        if not name or not name.strip():
            raise ValidationError("Service name is required", details={"field": "name"})

        now = self.clock.now()
        service = Service(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            service_type=_enum(ServiceType, service_type, "service_type"),
            ownership=_enum(ServiceOwnership, ownership, "ownership"),
            obligation_type=_enum(ServiceObligationType, obligation_type, "obligation_type"),
            recurrence_type=_enum(ServiceRecurrenceType, recurrence_type, "recurrence_type"),
            frequency=coerce_service_frequency(frequency),
            default_amount=self._amount(default_amount),
            start_date=self._date(start_date, "start_date"),
            emission=self._emission(emission),
            late_fee=self._late_fee(late_fee),
            amount_indexation=_enum(AmountIndexation, amount_indexation, "amount_indexation"),
            months_to_generate=self._months(months_to_generate),
            due_day=self._due_day(due_day),
            detail=detail,
            category=category,
            counterpart_id=counterpart_id,
            counterpart_account_id=counterpart_account_id,
            account_reference=account_reference,
            status=ServiceStatus.ACTIVE,
            notes=notes
        )

        with self.storage.atomic():
            self._save_service(service)

            self.audit_trail.log_event(
                event_type=AuditEventType.SERVICE_CREATED,
                entity_type="service",
                entity_id=service.id,
                metadata={
                    "name": service.name,
                    "frequency": service.frequency,
                    "recurrence_type": service.recurrence_type,
                    "default_amount": service.default_amount,
                    "start_date": service.start_date,
                    "months_to_generate": service.months_to_generate
                }
            )

            if generate_schedule:
                self.regenerate_schedule(service.id)

        log_action(logger, "info", f"Service created: {service.name}",
                   action="create_service", resource=f"service:{service.id}",
                   extra={"frequency": service.frequency.value,
                          "default_amount": str(service.default_amount)})

        return self.get_service(service.id)

    def update_service(self, service_id: str, **changes: Any) -> Service:
        """
        Change descriptive fields and terms of a service

        The billing periods already generated are left as they are; call
        regenerate_schedule() to apply new terms to them.

        Raises:
            NotFoundError: If the service does not exist
            ValidationError: If a field is unknown or invalid
        """
        unknown = set(changes) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            data = self.storage.lock_for_update(self.services_table, service_id)
            if not data:
                raise NotFoundError("Service", service_id)
            service = Service.from_dict(data)

            for key, value in changes.items():
                setattr(service, key, self._coerce_field(key, value))
            service.updated_at = self.clock.now()
            self._save_service(service)

            self.audit_trail.log_event(
                event_type=AuditEventType.SERVICE_UPDATED,
                entity_type="service",
                entity_id=service_id,
                metadata={"fields": sorted(changes)}
            )

        log_action(logger, "info", f"Service updated: {service.name}",
                   action="update_service", resource=f"service:{service_id}",
                   extra={"fields": sorted(changes)})

        return service

    def regenerate_schedule(
        self,
        service_id: str,
        overrides: Optional[ServiceScheduleOverrides] = None
    ) -> List[ServiceScheduleEntry]:
        """
        Discard and rebuild the billing periods of a service

        Overridden terms are written back to the service row. On any failure
        the previous periods are left untouched.

        Returns:
            The new periods ordered by start date
        """
        overrides = overrides or ServiceScheduleOverrides()

        with self.storage.atomic():
            data = self.storage.lock_for_update(self.services_table, service_id)
            if not data:
                raise NotFoundError("Service", service_id)
            service = self._with_overrides(Service.from_dict(data), overrides)

            # Generate first so invalid terms fail before anything is deleted
            periods = generate_service_schedule(
                frequency=service.frequency,
                period_count=service.months_to_generate,
                start_date=service.start_date,
                amount=service.default_amount,
                due_day=service.due_day,
                recurrence_type=service.recurrence_type,
                currency=self.currency
            )

            removed = self.storage.delete_where(self.schedules_table, {'service_id': service_id})

            now = self.clock.now()
            entries = [
                ServiceScheduleEntry(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    service_id=service_id,
                    period_start=period.period_start,
                    period_end=period.period_end,
                    due_date=period.due_date,
                    expected_amount=period.expected_amount
                )
                for period in periods
            ]
            self.storage.save_many(self.schedules_table, [(e.id, e.to_dict()) for e in entries])

            service.updated_at = now
            self._save_service(service)
            self._refresh_status(service, entries)

            self.audit_trail.log_event(
                event_type=AuditEventType.SERVICE_SCHEDULE_REGENERATED,
                entity_type="service",
                entity_id=service_id,
                metadata={
                    "removed_entries": removed,
                    "created_entries": len(entries),
                    "overrides": overrides.to_dict()
                }
            )

        log_action(logger, "info", f"Service schedule regenerated with {len(entries)} periods",
                   action="regenerate_service_schedule", resource=f"service:{service_id}")

        return entries

    def apply_payment(
        self,
        schedule_id: str,
        transaction_id: str,
        paid_amount: Numeric,
        paid_date: Optional[Union[date, str]] = None,
        note: Optional[str] = None
    ) -> ServiceScheduleView:
        """
        Link a settling payment to a billing period

        The period becomes PAID when the paid amount covers its effective
        amount (expected amount plus the late fee as of today) and PARTIAL
        otherwise.

        Raises:
            NotFoundError: If the period or the transaction does not exist
        """
        paid = self._money(paid_amount, "paid_amount")
        if paid < 0:
            raise ValidationError("Paid amount cannot be negative", details={"field": "paid_amount"})
        today = self.clock.today()
        paid_on = self._date(paid_date, "paid_date") if paid_date else today

        with self.storage.atomic():
            entry, service = self._lock_entry(schedule_id)

            transaction = self.transaction_directory.get_transaction(transaction_id)
            if not transaction:
                raise NotFoundError("Transaction", transaction_id)

            target = self._assess(entry, service, today).effective_amount

            entry.transaction_id = transaction.id
            entry.paid_amount = paid
            entry.paid_date = paid_on
            entry.note = note
            entry.status = (ServiceScheduleStatus.PAID if paid >= target
                            else ServiceScheduleStatus.PARTIAL)
            entry.updated_at = self.clock.now()
            self.storage.save(self.schedules_table, entry.id, entry.to_dict())

            self._refresh_status(service)

            self.audit_trail.log_event(
                event_type=AuditEventType.SERVICE_PAYMENT_APPLIED,
                entity_type="service",
                entity_id=service.id,
                metadata={
                    "schedule_id": entry.id,
                    "period_start": entry.period_start,
                    "transaction_id": transaction.id,
                    "paid_amount": paid,
                    "target_amount": target,
                    "paid_date": paid_on,
                    "status": entry.status
                }
            )

        log_action(logger, "info", f"Payment applied to period starting {entry.period_start.isoformat()}",
                   action="apply_service_payment", resource=f"service_schedule:{entry.id}",
                   extra={"transaction_id": transaction.id, "paid_amount": str(paid),
                          "target_amount": str(target), "status": entry.status.value})

        return ServiceScheduleView(
            entry=entry,
            assessment=self._assess(entry, service, today),
            transaction=TransactionSummary.from_transaction(transaction)
        )

    def unlink_payment(self, schedule_id: str) -> ServiceScheduleView:
        """Detach the settling payment of a billing period and reset it to PENDING"""
        with self.storage.atomic():
            entry, service = self._lock_entry(schedule_id)
            previous_transaction = entry.transaction_id
            # Nothing linked: leave the period and its service as they are
            if previous_transaction is None:
                return ServiceScheduleView(entry=entry, assessment=self._assess(entry, service, self.clock.today()))

            entry.transaction_id = None
            entry.paid_amount = None
            entry.paid_date = None
            entry.status = ServiceScheduleStatus.PENDING
            entry.updated_at = self.clock.now()
            self.storage.save(self.schedules_table, entry.id, entry.to_dict())

            self._refresh_status(service)

            self.audit_trail.log_event(
                event_type=AuditEventType.SERVICE_PAYMENT_UNLINKED,
                entity_type="service",
                entity_id=service.id,
                metadata={"schedule_id": entry.id, "transaction_id": previous_transaction}
            )

        log_action(logger, "info", f"Payment unlinked from period starting {entry.period_start.isoformat()}",
                   action="unlink_service_payment", resource=f"service_schedule:{entry.id}")

        return ServiceScheduleView(entry=entry, assessment=self._assess(entry, service, self.clock.today()))

    def refresh_status(self, service_id: str) -> ServiceStatus:
        """Recompute the service status from its billing periods"""
        with self.storage.atomic():
            data = self.storage.lock_for_update(self.services_table, service_id)
            if not data:
                raise NotFoundError("Service", service_id)
            return self._refresh_status(Service.from_dict(data))

    def get_service(self, service_id: str) -> Optional[Service]:
        data = self.storage.load(self.services_table, service_id)
        if data:
            return Service.from_dict(data)
        return None

    def get_schedule(self, service_id: str) -> List[ServiceScheduleEntry]:
        """Billing periods of a service ordered by start date"""
        return self._load_entries(service_id)

    def get_schedule_entry(self, schedule_id: str) -> Optional[ServiceScheduleEntry]:
        data = self.storage.load(self.schedules_table, schedule_id)
        if data:
            return ServiceScheduleEntry.from_dict(data)
        return None

    def get_service_detail(self, service_id: str) -> ServiceDetail:
        """Service with its periods, their payments, live late fees and totals"""
        service = self.get_service(service_id)
        if not service:
            raise NotFoundError("Service", service_id)

        today = self.clock.today()
        entries = self._load_entries(service_id)
        views = [
            ServiceScheduleView(
                entry=entry,
                assessment=self._assess(entry, service, today),
                transaction=self.transaction_directory.get_summary(entry.transaction_id)
            )
            for entry in entries
        ]
        return ServiceDetail(service=service, schedules=views,
                             summary=self._summarize(service, entries, today))

    def list_services_with_summary(self) -> List[ServiceWithSummary]:
        """All services, newest first, with their schedule totals"""
        today = self.clock.today()
        entries_by_service: Dict[str, List[ServiceScheduleEntry]] = {}
        for data in self.storage.load_all(self.schedules_table):
            entry = ServiceScheduleEntry.from_dict(data)
            entries_by_service.setdefault(entry.service_id, []).append(entry)

        services = [Service.from_dict(data) for data in self.storage.load_all(self.services_table)]
        services.sort(key=lambda s: s.created_at, reverse=True)

        return [
            ServiceWithSummary(
                service=service,
                summary=self._summarize(service, entries_by_service.get(service.id, []), today)
            )
            for service in services
        ]

    def _coerce_field(self, key: str, value: Any) -> Any:
        if key == 'name':
            if not value or not str(value).strip():
                raise ValidationError("Service name is required", details={"field": "name"})
            return str(value).strip()
        if key == 'service_type':
            return _enum(ServiceType, value, key)
        if key == 'ownership':
            return _enum(ServiceOwnership, value, key)
        if key == 'obligation_type':
            return _enum(ServiceObligationType, value, key)
        if key == 'recurrence_type':
            return _enum(ServiceRecurrenceType, value, key)
        if key == 'amount_indexation':
            return _enum(AmountIndexation, value, key)
        if key == 'frequency':
            return coerce_service_frequency(value)
        if key == 'default_amount':
            return self._amount(value)
        if key == 'emission':
            return self._emission(value)
        if key == 'late_fee':
            return self._late_fee(value)
        if key == 'due_day':
            return self._due_day(value)
        if key == 'start_date':
            return self._date(value, key)
        if key == 'months_to_generate':
            return self._months(value)
        return value

    def _with_overrides(self, service: Service, overrides: ServiceScheduleOverrides) -> Service:
        if overrides.months is not None:
            service.months_to_generate = self._months(overrides.months)
        if overrides.start_date is not None:
            service.start_date = self._date(overrides.start_date, "start_date")
        if overrides.default_amount is not None:
            service.default_amount = self._amount(overrides.default_amount)
        if overrides.due_day is not None:
            service.due_day = self._due_day(overrides.due_day)
        if overrides.frequency is not None:
            service.frequency = coerce_service_frequency(overrides.frequency)
        if overrides.emission_day is not None:
            if not isinstance(service.emission, FixedDayEmission):
                raise ValidationError(
                    f"Emission day only applies to FIXED_DAY services, not {service.emission.mode.value}",
                    details={"field": "emission_day"}
                )
            service.emission = FixedDayEmission(day=int(overrides.emission_day))
        return service

    def _refresh_status(self, service: Service,
                        entries: Optional[List[ServiceScheduleEntry]] = None) -> ServiceStatus:
        """Caller must hold the service's row lock"""
        if entries is None:
            entries = self._load_entries(service.id)
        new_status = derive_service_status(e.status for e in entries)
        if new_status != service.status:
            old_status = service.status
            service.status = new_status
            service.updated_at = self.clock.now()
            self._save_service(service)

            self.audit_trail.log_event(
                event_type=AuditEventType.SERVICE_STATUS_CHANGED,
                entity_type="service",
                entity_id=service.id,
                metadata={"old_status": old_status, "new_status": new_status}
            )
            log_action(logger, "info", f"Service status changed to {new_status.value}",
                       action="refresh_service_status", resource=f"service:{service.id}",
                       extra={"old_status": old_status.value, "new_status": new_status.value})
        return service.status

    def _lock_entry(self, schedule_id: str):
        """Lock the parent service of a period and return both in their current state"""
        data = self.storage.load(self.schedules_table, schedule_id)
        if not data:
            raise NotFoundError("Service schedule", schedule_id)
        service_data = self.storage.lock_for_update(self.services_table, data['service_id'])
        if not service_data:
            raise NotFoundError("Service", data['service_id'])

        # A regeneration may have replaced the periods while we waited
        data = self.storage.load(self.schedules_table, schedule_id)
        if not data:
            raise NotFoundError("Service schedule", schedule_id)
        return ServiceScheduleEntry.from_dict(data), Service.from_dict(service_data)

    def _assess(self, entry: ServiceScheduleEntry, service: Service, today: date) -> LateFeeAssessment:
        return assess_late_fee(
            expected_amount=entry.expected_amount,
            status=entry.status,
            due_date=entry.due_date,
            policy=service.late_fee,
            today=today,
            currency=self.currency
        )

    def _summarize(self, service: Service, entries: List[ServiceScheduleEntry],
                   today: date) -> ServiceSummary:
        display = self.counterpart_directory.display_for(service.counterpart_id,
                                                         service.counterpart_account_id)
        return summarize_service_schedule(entries, today, self.currency, display)

    def _emission(self, emission: Any) -> EmissionSchedule:
        if emission is None:
            # Same rule as an explicit FIXED_DAY without a day
            return build_emission(None)
        if isinstance(emission, dict):
            return build_emission(
                emission.get('emission_mode'),
                day=emission.get('emission_day'),
                start_day=emission.get('emission_start_day'),
                end_day=emission.get('emission_end_day'),
                exact_date=emission.get('emission_exact_date')
            )
        return emission

    def _late_fee(self, policy: Any) -> LateFeePolicy:
        if policy is None:
            return NoLateFee()
        if isinstance(policy, dict):
            policy = build_late_fee(policy.get('late_fee_mode'),
                                    value=policy.get('late_fee_value'),
                                    grace_days=policy.get('late_fee_grace_days'))
        if policy.grace_days > self.max_grace_days:
            raise ValidationError(f"Grace days cannot exceed {self.max_grace_days}",
                                  details={"field": "late_fee_grace_days"})
        return policy

    def _months(self, value: Optional[int]) -> int:
        if value is None:
            return self.default_months
        try:
            months = int(value)
        except (TypeError, ValueError):
            raise InvalidScheduleError(f"Invalid number of periods: {value!r}")
        if months <= 0:
            raise InvalidScheduleError("Number of periods must be greater than zero",
                                       details={"field": "months_to_generate"})
        if months > self.max_months:
            raise ValidationError(f"Cannot generate more than {self.max_months} periods",
                                  details={"field": "months_to_generate"})
        return months

    @staticmethod
    def _due_day(value: Optional[int]) -> Optional[int]:
        if value is None:
            return None
        try:
            day = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid due day: {value!r}", details={"field": "due_day"})
        if not 1 <= day <= 31:
            raise ValidationError("Due day must be between 1 and 31", details={"field": "due_day"})
        return day

    def _amount(self, value: Any) -> Decimal:
        amount = self._money(value, "default_amount")
        if amount < 0:
            raise ValidationError("Default amount cannot be negative", details={"field": "default_amount"})
        return amount

    def _money(self, value: Any, field_name: str) -> Decimal:
        try:
            return round_money(value, self.currency)
        except ValueError as e:
            raise ValidationError(str(e), details={"field": field_name})

    @staticmethod
    def _date(value: Any, field_name: str) -> date:
        try:
            return parse_date(value)
        except ValueError as e:
            raise ValidationError(str(e), details={"field": field_name})

    def _load_entries(self, service_id: str) -> List[ServiceScheduleEntry]:
        entries = [
            ServiceScheduleEntry.from_dict(data)
            for data in self.storage.find(self.schedules_table, {'service_id': service_id})
        ]
        entries.sort(key=lambda e: e.period_start)
        return entries

    def _save_service(self, service: Service) -> None:
        self.storage.save(self.services_table, service.id, service.to_dict())
