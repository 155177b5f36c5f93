"""
Loan Module

Handles loan registration, installment schedule (re)generation, payment
linking against installments, lazy overdue promotion and the derived loan
status. Every schedule mutation runs in one transaction holding the loan's
row lock, so at most one mutation per loan is in flight at any time.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum
import uuid

from .amortization import LoanFrequency, coerce_loan_frequency, generate_loan_schedule
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .currency import Currency, DEFAULT_CURRENCY, Numeric, round_money, to_decimal
from .dates import parse_date
from .exceptions import InvalidScheduleError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord
from .transactions import TransactionDirectory, TransactionSummary

logger = get_logger("obligations.loans")


class LoanStatus(Enum):
    """Derived loan states"""
    ACTIVE = "ACTIVE"          # Installments still open, none overdue
    COMPLETED = "COMPLETED"    # Nothing left open
    DEFAULTED = "DEFAULTED"    # At least one installment overdue


class LoanScheduleStatus(Enum):
    """Installment states"""
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class InterestType(Enum):
    """Interest computation type (only simple interest is computed)"""
    SIMPLE = "SIMPLE"
    COMPOUND = "COMPOUND"


class BorrowerType(Enum):
    PERSON = "PERSON"
    COMPANY = "COMPANY"


OPEN_INSTALLMENT_STATUSES = (
    LoanScheduleStatus.PENDING,
    LoanScheduleStatus.PARTIAL,
    LoanScheduleStatus.OVERDUE,
)


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Loan(StorageRecord):
    """Fixed-term borrowing obligation"""
    title: str
    borrower_name: str
    borrower_type: BorrowerType
    principal_amount: Decimal
    interest_rate: Decimal          # Percent for the whole term, e.g. 10 for 10%
    interest_type: InterestType
    frequency: LoanFrequency
    total_installments: int
    start_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['borrower_type'] = self.borrower_type.value
        result['interest_rate'] = str(self.interest_rate)
        result['interest_type'] = self.interest_type.value
        result['frequency'] = self.frequency.value
        result['start_date'] = self.start_date.isoformat()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            title=data['title'],
            borrower_name=data['borrower_name'],
            borrower_type=BorrowerType(data['borrower_type']),
            principal_amount=Decimal(data['principal_amount']),
            interest_rate=Decimal(data['interest_rate']),
            interest_type=InterestType(data['interest_type']),
            frequency=LoanFrequency(data['frequency']),
            total_installments=int(data['total_installments']),
            start_date=date.fromisoformat(data['start_date']),
            status=LoanStatus(data['status']),
            notes=data.get('notes')
        )


@dataclass
class LoanScheduleEntry(StorageRecord):
    """One installment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    expected_amount: Decimal
    expected_principal: Decimal
    expected_interest: Decimal
    status: LoanScheduleStatus = LoanScheduleStatus.PENDING
    transaction_id: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    paid_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['due_date'] = self.due_date.isoformat()
        result['status'] = self.status.value
        result['paid_date'] = self.paid_date.isoformat() if self.paid_date else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanScheduleEntry':
        paid_amount = data.get('paid_amount')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date']),
            expected_amount=Decimal(data['expected_amount']),
            expected_principal=Decimal(data['expected_principal']),
            expected_interest=Decimal(data['expected_interest']),
            status=LoanScheduleStatus(data['status']),
            transaction_id=data.get('transaction_id'),
            paid_amount=Decimal(paid_amount) if paid_amount is not None else None,
            paid_date=_optional_date(data.get('paid_date'))
        )


@dataclass(frozen=True)
class LoanScheduleOverrides:
    """New terms applied by a regeneration and written back to the loan"""
    total_installments: Optional[int] = None
    start_date: Optional[date] = None
    interest_rate: Optional[Numeric] = None
    frequency: Optional[Union[LoanFrequency, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in {
            'total_installments': self.total_installments,
            'start_date': self.start_date,
            'interest_rate': self.interest_rate,
            'frequency': self.frequency,
        }.items() if v is not None}


@dataclass(frozen=True)
class LoanSummary:
    """Totals folded from a loan's installments"""
    total_expected: Decimal
    total_paid: Decimal
    remaining_amount: Decimal
    paid_installments: int
    pending_installments: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_expected': str(self.total_expected),
            'total_paid': str(self.total_paid),
            'remaining_amount': str(self.remaining_amount),
            'paid_installments': self.paid_installments,
            'pending_installments': self.pending_installments
        }


@dataclass(frozen=True)
class LoanScheduleView:
    """Installment joined with the descriptive fields of its settling payment"""
    entry: LoanScheduleEntry
    transaction: Optional[TransactionSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.entry.to_dict()
        result['transaction'] = self.transaction.to_dict() if self.transaction else None
        return result


@dataclass(frozen=True)
class LoanWithSummary:
    loan: Loan
    summary: LoanSummary

    def to_dict(self) -> Dict[str, Any]:
        result = self.loan.to_dict()
        result.update(self.summary.to_dict())
        return result


@dataclass(frozen=True)
class LoanDetail:
    loan: Loan
    schedules: List[LoanScheduleView]
    summary: LoanSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan': self.loan.to_dict(),
            'schedules': [view.to_dict() for view in self.schedules],
            'summary': self.summary.to_dict()
        }


def derive_loan_status(statuses: Iterable[LoanScheduleStatus]) -> LoanStatus:
    """
    Loan status from its installment states: COMPLETED when nothing is open,
    DEFAULTED when anything is overdue, ACTIVE otherwise.
    """
    statuses = list(statuses)
    if not any(s in OPEN_INSTALLMENT_STATUSES for s in statuses):
        return LoanStatus.COMPLETED
    if LoanScheduleStatus.OVERDUE in statuses:
        return LoanStatus.DEFAULTED
    return LoanStatus.ACTIVE


def summarize_loan_schedule(entries: Iterable[LoanScheduleEntry],
                            currency: Currency = DEFAULT_CURRENCY) -> LoanSummary:
    total_expected = Decimal('0')
    total_paid = Decimal('0')
    paid = 0
    pending = 0
    for entry in entries:
        total_expected += entry.expected_amount
        total_paid += entry.paid_amount or Decimal('0')
        if entry.status == LoanScheduleStatus.PAID:
            paid += 1
        else:
            pending += 1
    return LoanSummary(
        total_expected=round_money(total_expected, currency),
        total_paid=round_money(total_paid, currency),
        remaining_amount=round_money(max(Decimal('0'), total_expected - total_paid), currency),
        paid_installments=paid,
        pending_installments=pending
    )


class LoanManager:
    """
    Manages loans and their installment schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        transaction_directory: TransactionDirectory,
        clock: Optional[Clock] = None,
        currency: Currency = DEFAULT_CURRENCY,
        max_installments: int = 360
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.transaction_directory = transaction_directory
        self.clock = clock or SystemClock()
        self.currency = currency
        self.max_installments = max_installments

        self.loans_table = "loans"
        self.schedules_table = "loan_schedules"

        self.storage.register_unique(self.schedules_table, ("loan_id", "installment_number"))

    def create_loan(
        self,
        title: str,
        borrower_name: str,
        principal_amount: Numeric,
        interest_rate: Numeric,
        total_installments: int,
        start_date: Union[date, str],
        frequency: Union[LoanFrequency, str] = LoanFrequency.MONTHLY,
        borrower_type: Union[BorrowerType, str] = BorrowerType.PERSON,
        interest_type: Union[InterestType, str] = InterestType.SIMPLE,
        notes: Optional[str] = None,
        generate_schedule: bool = True
    ) -> Loan:
        """
        Register a new loan

        Args:
            title: Short label for the loan
            borrower_name: Who owes the money
            principal_amount: Amount borrowed
            interest_rate: Nominal rate in percent for the whole term
            total_installments: Number of installments
            start_date: Due date of the first installment
            frequency: Repayment frequency
            borrower_type: PERSON or COMPANY
            interest_type: SIMPLE or COMPOUND (both computed as simple interest)
            notes: Free text
            generate_schedule: Build the installment schedule right away

        Returns:
            Created Loan object
        """
        if not title or not title.strip():
            raise ValidationError("Loan title is required", details={"field": "title"})
        if not borrower_name or not borrower_name.strip():
            raise ValidationError("Borrower name is required", details={"field": "borrower_name"})

        principal = self._money(principal_amount, "principal_amount")
        if principal <= 0:
            raise ValidationError("Principal amount must be positive", details={"field": "principal_amount"})
        rate = self._rate(interest_rate)
        installments = self._installments(total_installments)

        try:
            borrower_type = BorrowerType(borrower_type.value if isinstance(borrower_type, BorrowerType)
                                         else str(borrower_type).upper())
            interest_type = InterestType(interest_type.value if isinstance(interest_type, InterestType)
                                         else str(interest_type).upper())
        except ValueError as e:
            raise ValidationError(str(e))

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            title=title.strip(),
            borrower_name=borrower_name.strip(),
            borrower_type=borrower_type,
            principal_amount=principal,
            interest_rate=rate,
            interest_type=interest_type,
            frequency=coerce_loan_frequency(frequency),
            total_installments=installments,
            start_date=self._date(start_date, "start_date"),
            status=LoanStatus.ACTIVE,
            notes=notes
        )

        with self.storage.atomic():
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "title": loan.title,
                    "borrower_name": loan.borrower_name,
                    "principal_amount": loan.principal_amount,
                    "interest_rate": loan.interest_rate,
                    "total_installments": loan.total_installments,
                    "frequency": loan.frequency,
                    "start_date": loan.start_date
                }
            )

            if generate_schedule:
                self.regenerate_schedule(loan.id)

        log_action(logger, "info", f"Loan created: {loan.title}",
                   action="create_loan", resource=f"loan:{loan.id}",
                   extra={"principal_amount": str(loan.principal_amount),
                          "total_installments": loan.total_installments})

        return self.get_loan(loan.id)

    def regenerate_schedule(
        self,
        loan_id: str,
        overrides: Optional[LoanScheduleOverrides] = None
    ) -> List[LoanScheduleEntry]:
        """
        Discard and rebuild the installment schedule of a loan

        Overridden terms are written back to the loan row. On any failure the
        previous schedule is left untouched.

        Returns:
            The new installments ordered by number
        """
        overrides = overrides or LoanScheduleOverrides()

        with self.storage.atomic():
            data = self.storage.lock_for_update(self.loans_table, loan_id)
            if not data:
                raise NotFoundError("Loan", loan_id)
            loan = self._with_overrides(Loan.from_dict(data), overrides)

            # Generate first so invalid terms fail before anything is deleted
            installments = generate_loan_schedule(
                principal=loan.principal_amount,
                interest_rate=loan.interest_rate,
                total_installments=loan.total_installments,
                frequency=loan.frequency,
                start_date=loan.start_date,
                currency=self.currency
            )

            removed = self.storage.delete_where(self.schedules_table, {'loan_id': loan_id})

            now = self.clock.now()
            entries = [
                LoanScheduleEntry(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    installment_number=item.installment_number,
                    due_date=item.due_date,
                    expected_amount=item.expected_amount,
                    expected_principal=item.expected_principal,
                    expected_interest=item.expected_interest
                )
                for item in installments
            ]
            self.storage.save_many(self.schedules_table, [(e.id, e.to_dict()) for e in entries])

            loan.updated_at = now
            self._save_loan(loan)
            self._refresh_status(loan, entries)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_SCHEDULE_REGENERATED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "removed_entries": removed,
                    "created_entries": len(entries),
                    "overrides": overrides.to_dict()
                }
            )

        log_action(logger, "info", f"Loan schedule regenerated with {len(entries)} installments",
                   action="regenerate_loan_schedule", resource=f"loan:{loan_id}")

        return entries

    def apply_payment(
        self,
        schedule_id: str,
        transaction_id: str,
        paid_amount: Numeric,
        paid_date: Optional[Union[date, str]] = None
    ) -> LoanScheduleView:
        """
        Link a settling payment to an installment

        The installment becomes PAID when the paid amount covers its expected
        amount and PARTIAL otherwise.

        Raises:
            NotFoundError: If the installment or the transaction does not exist
        """
        paid = self._money(paid_amount, "paid_amount")
        if paid < 0:
            raise ValidationError("Paid amount cannot be negative", details={"field": "paid_amount"})
        paid_on = self._date(paid_date, "paid_date") if paid_date else self.clock.today()

        with self.storage.atomic():
            entry = self._lock_entry(schedule_id)

            transaction = self.transaction_directory.get_transaction(transaction_id)
            if not transaction:
                raise NotFoundError("Transaction", transaction_id)

            entry.transaction_id = transaction.id
            entry.paid_amount = paid
            entry.paid_date = paid_on
            entry.status = (LoanScheduleStatus.PAID if paid >= entry.expected_amount
                            else LoanScheduleStatus.PARTIAL)
            entry.updated_at = self.clock.now()
            self.storage.save(self.schedules_table, entry.id, entry.to_dict())

            self._refresh_status(self._load_loan(entry.loan_id))

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_APPLIED,
                entity_type="loan",
                entity_id=entry.loan_id,
                metadata={
                    "schedule_id": entry.id,
                    "installment_number": entry.installment_number,
                    "transaction_id": transaction.id,
                    "paid_amount": paid,
                    "paid_date": paid_on,
                    "status": entry.status
                }
            )

        log_action(logger, "info", f"Payment applied to installment {entry.installment_number}",
                   action="apply_loan_payment", resource=f"loan_schedule:{entry.id}",
                   extra={"transaction_id": transaction.id, "paid_amount": str(paid),
                          "status": entry.status.value})

        return LoanScheduleView(entry=entry, transaction=TransactionSummary.from_transaction(transaction))

    def unlink_payment(self, schedule_id: str) -> LoanScheduleView:
        """
        Detach the settling payment of an installment and reset it to PENDING

        An installment without a linked payment is returned unchanged, so its
        loan keeps the status it had.
        """
        with self.storage.atomic():
            entry = self._lock_entry(schedule_id)
            previous_transaction = entry.transaction_id
            if previous_transaction is None:
                return LoanScheduleView(entry=entry)

            entry.transaction_id = None
            entry.paid_amount = None
            entry.paid_date = None
            entry.status = LoanScheduleStatus.PENDING
            entry.updated_at = self.clock.now()
            self.storage.save(self.schedules_table, entry.id, entry.to_dict())

            self._refresh_status(self._load_loan(entry.loan_id))

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_UNLINKED,
                entity_type="loan",
                entity_id=entry.loan_id,
                metadata={"schedule_id": entry.id, "transaction_id": previous_transaction}
            )

        log_action(logger, "info", f"Payment unlinked from installment {entry.installment_number}",
                   action="unlink_loan_payment", resource=f"loan_schedule:{entry.id}")

        return LoanScheduleView(entry=entry)

    def promote_overdue(self, loan_id: str) -> int:
        """
        Mark PENDING installments due before today as OVERDUE

        Returns:
            Number of installments promoted
        """
        today = self.clock.today()

        with self.storage.atomic():
            data = self.storage.lock_for_update(self.loans_table, loan_id)
            if not data:
                raise NotFoundError("Loan", loan_id)

            now = self.clock.now()
            promoted = []
            for entry in self._load_entries(loan_id):
                if entry.status == LoanScheduleStatus.PENDING and entry.due_date < today:
                    entry.status = LoanScheduleStatus.OVERDUE
                    entry.updated_at = now
                    promoted.append(entry)

            if promoted:
                self.storage.save_many(self.schedules_table, [(e.id, e.to_dict()) for e in promoted])
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_INSTALLMENTS_OVERDUE,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "as_of": today,
                        "installments": [e.installment_number for e in promoted]
                    }
                )

            self._refresh_status(Loan.from_dict(data))

        if promoted:
            log_action(logger, "warning", f"{len(promoted)} installments overdue",
                       action="promote_overdue", resource=f"loan:{loan_id}")

        return len(promoted)

    def refresh_status(self, loan_id: str) -> LoanStatus:
        """Recompute the loan status from its installments"""
        with self.storage.atomic():
            data = self.storage.lock_for_update(self.loans_table, loan_id)
            if not data:
                raise NotFoundError("Loan", loan_id)
            return self._refresh_status(Loan.from_dict(data))

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def get_schedule(self, loan_id: str) -> List[LoanScheduleEntry]:
        """Installments of a loan ordered by number"""
        return self._load_entries(loan_id)

    def get_schedule_entry(self, schedule_id: str) -> Optional[LoanScheduleEntry]:
        data = self.storage.load(self.schedules_table, schedule_id)
        if data:
            return LoanScheduleEntry.from_dict(data)
        return None

    def get_loan_detail(self, loan_id: str) -> LoanDetail:
        """Loan with its installments, their payments and totals; promotes overdue installments first"""
        if not self.storage.exists(self.loans_table, loan_id):
            raise NotFoundError("Loan", loan_id)

        self.promote_overdue(loan_id)

        loan = self._load_loan(loan_id)
        entries = self._load_entries(loan_id)
        views = [
            LoanScheduleView(entry=entry,
                             transaction=self.transaction_directory.get_summary(entry.transaction_id))
            for entry in entries
        ]
        return LoanDetail(loan=loan, schedules=views,
                          summary=summarize_loan_schedule(entries, self.currency))

    def list_loans_with_summary(self) -> List[LoanWithSummary]:
        """All loans, newest first, with their schedule totals"""
        entries_by_loan: Dict[str, List[LoanScheduleEntry]] = {}
        for data in self.storage.load_all(self.schedules_table):
            entry = LoanScheduleEntry.from_dict(data)
            entries_by_loan.setdefault(entry.loan_id, []).append(entry)

        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda l: l.created_at, reverse=True)

        return [
            LoanWithSummary(
                loan=loan,
                summary=summarize_loan_schedule(entries_by_loan.get(loan.id, []), self.currency)
            )
            for loan in loans
        ]

    def _refresh_status(self, loan: Loan,
                        entries: Optional[List[LoanScheduleEntry]] = None) -> LoanStatus:
        """Caller must hold the loan's row lock"""
        if entries is None:
            entries = self._load_entries(loan.id)
        new_status = derive_loan_status(e.status for e in entries)
        if new_status != loan.status:
            old_status = loan.status
            loan.status = new_status
            loan.updated_at = self.clock.now()
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"old_status": old_status, "new_status": new_status}
            )
            log_action(logger, "info", f"Loan status changed to {new_status.value}",
                       action="refresh_loan_status", resource=f"loan:{loan.id}",
                       extra={"old_status": old_status.value, "new_status": new_status.value})
        return loan.status

    def _lock_entry(self, schedule_id: str) -> LoanScheduleEntry:
        """Lock the parent loan of an installment and return the installment's current state"""
        data = self.storage.load(self.schedules_table, schedule_id)
        if not data:
            raise NotFoundError("Loan schedule", schedule_id)
        self.storage.lock_for_update(self.loans_table, data['loan_id'])

        # A regeneration may have replaced the schedule while we waited
        data = self.storage.load(self.schedules_table, schedule_id)
        if not data:
            raise NotFoundError("Loan schedule", schedule_id)
        return LoanScheduleEntry.from_dict(data)

    def _with_overrides(self, loan: Loan, overrides: LoanScheduleOverrides) -> Loan:
        if overrides.total_installments is not None:
            loan.total_installments = self._installments(overrides.total_installments)
        if overrides.start_date is not None:
            loan.start_date = self._date(overrides.start_date, "start_date")
        if overrides.interest_rate is not None:
            loan.interest_rate = self._rate(overrides.interest_rate)
        if overrides.frequency is not None:
            loan.frequency = coerce_loan_frequency(overrides.frequency)
        return loan

    def _installments(self, value: Any) -> int:
        try:
            count = int(value)
        except (TypeError, ValueError):
            raise InvalidScheduleError(f"Invalid number of installments: {value!r}")
        if count <= 0:
            raise InvalidScheduleError("Total installments must be greater than zero",
                                       details={"field": "total_installments"})
        if count > self.max_installments:
            raise ValidationError(f"Total installments cannot exceed {self.max_installments}",
                                  details={"field": "total_installments"})
        return count

    @staticmethod
    def _rate(value: Any) -> Decimal:
        try:
            rate = to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e), details={"field": "interest_rate"})
        if rate < 0:
            raise ValidationError("Interest rate cannot be negative", details={"field": "interest_rate"})
        return rate

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

    def _load_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("Loan", loan_id)
        return loan

    def _load_entries(self, loan_id: str) -> List[LoanScheduleEntry]:
        entries = [
            LoanScheduleEntry.from_dict(data)
            for data in self.storage.find(self.schedules_table, {'loan_id': loan_id})
        ]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
