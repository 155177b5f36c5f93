"""
Test suite for loan management

Tests loan registration, schedule regeneration, payment linking, overdue
promotion and the derived loan status.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date

from core_obligations.amortization import LoanFrequency
from core_obligations.audit import AuditTrail, AuditEventType
from core_obligations.clock import FixedClock
from core_obligations.exceptions import InvalidScheduleError, NotFoundError, ValidationError
from core_obligations.loans import (
    LoanManager, LoanScheduleOverrides, LoanScheduleStatus, LoanStatus, derive_loan_status
)
from core_obligations.storage import InMemoryStorage
from core_obligations.transactions import TransactionDirectory


@pytest.fixture
def clock():
    return FixedClock(date(2024, 1, 15))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def transaction_directory(storage):
    return TransactionDirectory(storage)


@pytest.fixture
def loan_manager(storage, audit_trail, transaction_directory, clock):
    return LoanManager(storage, audit_trail, transaction_directory, clock=clock, max_installments=120)


@pytest.fixture
def loan(loan_manager):
    return loan_manager.create_loan(
        title="Truck financing",
        borrower_name="Acme Logistics",
        principal_amount=Decimal('300000'),
        interest_rate=Decimal('10'),
        total_installments=3,
        start_date=date(2024, 2, 1),
        borrower_type="company"
    )


class TestLoanCreation:
    """Test registering loans"""

    def test_create_loan_with_schedule(self, loan_manager, loan):
        assert loan.status == LoanStatus.ACTIVE
        assert loan.principal_amount == Decimal('300000.00')
        assert loan.frequency == LoanFrequency.MONTHLY

        schedule = loan_manager.get_schedule(loan.id)
        assert [e.installment_number for e in schedule] == [1, 2, 3]
        assert [e.expected_amount for e in schedule] == [Decimal('110000.00')] * 3
        assert [e.due_date for e in schedule] == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]
        assert all(e.status == LoanScheduleStatus.PENDING for e in schedule)

    def test_create_without_schedule(self, loan_manager):
        loan = loan_manager.create_loan("Bridge loan", "Jane Roe", "5000", "0", 5, "2024-02-01",
                                        generate_schedule=False)
        assert loan_manager.get_schedule(loan.id) == []

    def test_creation_is_audited(self, loan, audit_trail):
        events = audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_SCHEDULE_REGENERATED
        ]

    def test_timestamps_come_from_clock(self, loan_manager, loan, clock):
        assert loan.created_at == clock.now()
        assert all(e.created_at == clock.now() for e in loan_manager.get_schedule(loan.id))

    def test_requires_title(self, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.create_loan(" ", "Jane Roe", "5000", "5", 5, "2024-02-01")

    def test_zero_installments(self, loan_manager, storage):
        with pytest.raises(InvalidScheduleError):
            loan_manager.create_loan("Bridge loan", "Jane Roe", "5000", "5", 0, "2024-02-01")
        assert storage.count("loans") == 0

    def test_installments_above_maximum(self, loan_manager):
        with pytest.raises(ValidationError) as exc_info:
            loan_manager.create_loan("Mortgage", "Jane Roe", "5000", "5", 121, "2024-02-01")
        assert exc_info.value.code == "validation_error"

    def test_negative_rate(self, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.create_loan("Bridge loan", "Jane Roe", "5000", "-1", 5, "2024-02-01")

    def test_principal_too_small_leaves_nothing_behind(self, loan_manager, storage):
        with pytest.raises(InvalidScheduleError):
            loan_manager.create_loan("Tiny", "Jane Roe", "0.05", "0", 10, "2024-02-01")
        assert storage.count("loans") == 0
        assert storage.count("loan_schedules") == 0

    def test_list_newest_first(self, loan_manager, loan):
        newer = loan_manager.create_loan("Laptop", "Jane Roe", "1200", "0", 12, "2024-02-01")
        listed = loan_manager.list_loans_with_summary()
        assert [item.loan.id for item in listed] == [newer.id, loan.id]
        assert listed[1].summary.total_expected == Decimal('330000.00')


class TestScheduleRegeneration:
    """Test rebuilding installment schedules"""

    def test_overrides_are_written_back(self, loan_manager, loan):
        entries = loan_manager.regenerate_schedule(
            loan.id,
            LoanScheduleOverrides(total_installments=6, interest_rate=Decimal('0'),
                                  frequency="WEEKLY", start_date=date(2024, 3, 4))
        )
        assert len(entries) == 6
        assert entries[1].due_date == date(2024, 3, 11)

        updated = loan_manager.get_loan(loan.id)
        assert updated.total_installments == 6
        assert updated.interest_rate == Decimal('0')
        assert updated.frequency == LoanFrequency.WEEKLY
        assert updated.start_date == date(2024, 3, 4)
        assert [e.id for e in loan_manager.get_schedule(loan.id)] == [e.id for e in entries]

    def test_regeneration_discards_payments(self, loan_manager, loan, transaction_directory):
        payment = transaction_directory.record_transaction(Decimal('110000'))
        first = loan_manager.get_schedule(loan.id)[0]
        loan_manager.apply_payment(first.id, payment.id, "110000")

        loan_manager.regenerate_schedule(loan.id)
        assert all(e.transaction_id is None for e in loan_manager.get_schedule(loan.id))

    def test_failed_regeneration_keeps_old_schedule(self, loan_manager, loan, storage):
        before = loan_manager.get_schedule(loan.id)

        with pytest.raises(InvalidScheduleError):
            loan_manager.regenerate_schedule(loan.id, LoanScheduleOverrides(total_installments=0))

        assert [e.id for e in loan_manager.get_schedule(loan.id)] == [e.id for e in before]
        assert loan_manager.get_loan(loan.id).total_installments == 3
        assert not storage.in_transaction

    def test_unknown_loan(self, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.regenerate_schedule("missing")


class TestPayments:
    """Test linking and unlinking settling payments"""

    @pytest.fixture(autouse=True)
    def payment(self, transaction_directory):
        self.payment = transaction_directory.record_transaction(
            Decimal('110000'), description="Wire transfer"
        )

    def test_full_payment(self, loan_manager, loan):
        first = loan_manager.get_schedule(loan.id)[0]
        view = loan_manager.apply_payment(first.id, self.payment.id, "110000", "2024-02-01")

        assert view.entry.status == LoanScheduleStatus.PAID
        assert view.entry.paid_date == date(2024, 2, 1)
        assert view.transaction.description == "Wire transfer"

    def test_partial_payment(self, loan_manager, loan):
        first = loan_manager.get_schedule(loan.id)[0]
        view = loan_manager.apply_payment(first.id, self.payment.id, "50000")

        assert view.entry.status == LoanScheduleStatus.PARTIAL
        assert view.entry.paid_amount == Decimal('50000.00')
        # Defaults to the clock's day
        assert view.entry.paid_date == date(2024, 1, 15)

    def test_missing_transaction(self, loan_manager, loan):
        first = loan_manager.get_schedule(loan.id)[0]
        with pytest.raises(NotFoundError) as exc_info:
            loan_manager.apply_payment(first.id, "no-such-transaction", "110000")
        assert exc_info.value.entity_type == "Transaction"
        assert loan_manager.get_schedule_entry(first.id).status == LoanScheduleStatus.PENDING

    def test_missing_schedule_entry(self, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.apply_payment("missing", self.payment.id, "1")

    def test_negative_paid_amount(self, loan_manager, loan):
        first = loan_manager.get_schedule(loan.id)[0]
        with pytest.raises(ValidationError):
            loan_manager.apply_payment(first.id, self.payment.id, "-1")

    def test_all_paid_completes_loan(self, loan_manager, loan):
        for entry in loan_manager.get_schedule(loan.id):
            loan_manager.apply_payment(entry.id, self.payment.id, entry.expected_amount)

        assert loan_manager.get_loan(loan.id).status == LoanStatus.COMPLETED

        detail = loan_manager.get_loan_detail(loan.id)
        assert detail.summary.paid_installments == 3
        assert detail.summary.remaining_amount == Decimal('0.00')

    def test_unlink_resets_entry(self, loan_manager, loan):
        entries = loan_manager.get_schedule(loan.id)
        for entry in entries:
            loan_manager.apply_payment(entry.id, self.payment.id, entry.expected_amount)

        view = loan_manager.unlink_payment(entries[0].id)
        assert view.entry.status == LoanScheduleStatus.PENDING
        assert view.entry.transaction_id is None
        assert view.entry.paid_amount is None
        assert loan_manager.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_unlink_is_idempotent(self, loan_manager, loan, audit_trail):
        first = loan_manager.get_schedule(loan.id)[0]
        loan_manager.apply_payment(first.id, self.payment.id, "110000")
        loan_manager.unlink_payment(first.id)
        events_before = audit_trail.count_events()

        view = loan_manager.unlink_payment(first.id)
        assert view.entry.status == LoanScheduleStatus.PENDING
        assert view.entry.transaction_id is None
        assert view.entry.paid_amount is None
        assert view.entry.paid_date is None
        assert loan_manager.get_loan(loan.id).status == LoanStatus.ACTIVE
        assert audit_trail.count_events() == events_before

    def test_overpayment_does_not_go_negative(self, loan_manager, loan):
        for entry in loan_manager.get_schedule(loan.id):
            loan_manager.apply_payment(entry.id, self.payment.id, "200000")
        summary = loan_manager.get_loan_detail(loan.id).summary
        assert summary.total_paid == Decimal('600000.00')
        assert summary.remaining_amount == Decimal('0.00')


class TestOverduePromotion:
    """Test installments past due are promoted on read"""

    def test_detail_promotes_overdue(self, loan_manager, loan, clock):
        clock.advance_to(date(2024, 3, 10))

        detail = loan_manager.get_loan_detail(loan.id)
        statuses = [view.entry.status for view in detail.schedules]
        assert statuses == [LoanScheduleStatus.OVERDUE, LoanScheduleStatus.OVERDUE,
                            LoanScheduleStatus.PENDING]
        assert detail.loan.status == LoanStatus.DEFAULTED

    def test_due_today_is_not_overdue(self, loan_manager, loan, clock):
        clock.advance_to(date(2024, 2, 1))
        assert loan_manager.promote_overdue(loan.id) == 0

    def test_paid_installments_stay_paid(self, loan_manager, loan, clock, transaction_directory):
        payment = transaction_directory.record_transaction(Decimal('110000'))
        first = loan_manager.get_schedule(loan.id)[0]
        loan_manager.apply_payment(first.id, payment.id, "110000")

        clock.advance_to(date(2024, 2, 20))
        assert loan_manager.promote_overdue(loan.id) == 0
        assert loan_manager.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_paying_overdue_installments_completes(self, loan_manager, loan, clock, transaction_directory):
        clock.advance_to(date(2024, 5, 1))
        loan_manager.promote_overdue(loan.id)
        assert loan_manager.get_loan(loan.id).status == LoanStatus.DEFAULTED

        payment = transaction_directory.record_transaction(Decimal('330000'))
        for entry in loan_manager.get_schedule(loan.id):
            loan_manager.apply_payment(entry.id, payment.id, entry.expected_amount)
        assert loan_manager.get_loan(loan.id).status == LoanStatus.COMPLETED

    def test_unlinking_unpaid_overdue_keeps_loan_defaulted(self, loan_manager, loan, clock):
        clock.advance_to(date(2024, 3, 10))
        assert loan_manager.get_loan_detail(loan.id).loan.status == LoanStatus.DEFAULTED

        for entry in loan_manager.get_schedule(loan.id):
            view = loan_manager.unlink_payment(entry.id)
            assert view.entry.transaction_id is None
            assert view.entry.paid_amount is None

        assert loan_manager.get_loan(loan.id).status == LoanStatus.DEFAULTED
        statuses = [e.status for e in loan_manager.get_schedule(loan.id)]
        assert statuses == [LoanScheduleStatus.OVERDUE, LoanScheduleStatus.OVERDUE,
                            LoanScheduleStatus.PENDING]

    def test_unknown_loan_detail(self, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.get_loan_detail("missing")


class TestDeriveLoanStatus:

    def test_empty_schedule_is_completed(self):
        assert derive_loan_status([]) == LoanStatus.COMPLETED

    def test_overdue_wins_over_pending(self):
        assert derive_loan_status([LoanScheduleStatus.PENDING, LoanScheduleStatus.OVERDUE]) == LoanStatus.DEFAULTED

    def test_partial_keeps_loan_active(self):
        assert derive_loan_status([LoanScheduleStatus.PAID, LoanScheduleStatus.PARTIAL]) == LoanStatus.ACTIVE


class TestConcurrentMutations:
    """Test payments and regenerations on the same loan are serialized"""

    def test_payment_racing_regeneration(self, loan_manager, loan, storage, transaction_directory):
        payment = transaction_directory.record_transaction(Decimal('110000'))
        errors = []

        def regenerate():
            try:
                for _ in range(15):
                    loan_manager.regenerate_schedule(loan.id)
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        def pay():
            try:
                for _ in range(15):
                    schedule = loan_manager.get_schedule(loan.id)
                    if not schedule:
                        continue
                    try:
                        loan_manager.apply_payment(schedule[0].id, payment.id, "110000")
                    except NotFoundError:
                        # The installment was replaced by a regeneration in between
                        pass
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=regenerate), threading.Thread(target=pay)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

        rows = storage.load_all(loan_manager.schedules_table)
        assert len(rows) == 3
        assert {row['loan_id'] for row in rows} == {loan.id}
        assert sorted(row['installment_number'] for row in rows) == [1, 2, 3]

        schedule = loan_manager.get_schedule(loan.id)
        assert loan_manager.get_loan(loan.id).status == derive_loan_status(e.status for e in schedule)
