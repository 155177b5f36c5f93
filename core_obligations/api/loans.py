"""
Loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_engine
from .schemas import CreateLoanRequest, PaymentLinkRequest, RegenerateLoanScheduleRequest
from ..engine import ObligationEngine


router = APIRouter()
schedules_router = APIRouter()


@router.get("")
def list_loans(engine: ObligationEngine = Depends(get_engine)):
    """List loans with their schedule totals"""
    loans = engine.loan_manager.list_loans_with_summary()
    return {"status": "ok", "loans": [item.to_dict() for item in loans]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Register a loan and generate its installments"""
    loan = engine.loan_manager.create_loan(
        title=request.title,
        borrower_name=request.borrower_name,
        borrower_type=request.borrower_type,
        principal_amount=request.principal_amount,
        interest_rate=request.interest_rate,
        interest_type=request.interest_type,
        frequency=request.frequency,
        total_installments=request.total_installments,
        start_date=request.start_date,
        notes=request.notes,
        generate_schedule=request.generate_schedule
    )
    detail = engine.loan_manager.get_loan_detail(loan.id)
    return {"status": "ok", **detail.to_dict()}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    engine: ObligationEngine = Depends(get_engine)
):
    """Get loan detail with installments and totals"""
    detail = engine.loan_manager.get_loan_detail(loan_id)
    return {"status": "ok", **detail.to_dict()}


@router.post("/{loan_id}/schedules")
def regenerate_loan_schedule(
    loan_id: str,
    request: RegenerateLoanScheduleRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Rebuild the installment schedule, optionally with new terms"""
    engine.loan_manager.regenerate_schedule(loan_id, request.to_overrides())
    detail = engine.loan_manager.get_loan_detail(loan_id)
    return {"status": "ok", **detail.to_dict()}


@schedules_router.post("/{schedule_id}/pay")
def pay_loan_schedule(
    schedule_id: str,
    request: PaymentLinkRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Link a settling payment to an installment"""
    view = engine.loan_manager.apply_payment(
        schedule_id=schedule_id,
        transaction_id=request.transaction_id,
        paid_amount=request.paid_amount,
        paid_date=request.paid_date
    )
    return {"status": "ok", "schedule": view.to_dict()}


@schedules_router.post("/{schedule_id}/unlink")
def unlink_loan_schedule(
    schedule_id: str,
    engine: ObligationEngine = Depends(get_engine)
):
    """Detach the settling payment of an installment"""
    view = engine.loan_manager.unlink_payment(schedule_id)
    return {"status": "ok", "schedule": view.to_dict()}
