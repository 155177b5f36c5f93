"""
Service endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_engine
from .schemas import RegenerateServiceScheduleRequest, ServicePaymentLinkRequest, ServiceRequest
from ..engine import ObligationEngine


router = APIRouter()


@router.get("")
def list_services(engine: ObligationEngine = Depends(get_engine)):
    """List services with their schedule totals"""
    services = engine.service_manager.list_services_with_summary()
    return {"status": "ok", "services": [item.to_dict() for item in services]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_service(
    request: ServiceRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Register a service and generate its billing periods"""
    service = engine.service_manager.create_service(**request.to_fields())
    detail = engine.service_manager.get_service_detail(service.id)
    return {"status": "ok", **detail.to_dict()}


@router.get("/{service_id}")
def get_service(
    service_id: str,
    engine: ObligationEngine = Depends(get_engine)
):
    """Get service detail with billing periods, live late fees and totals"""
    detail = engine.service_manager.get_service_detail(service_id)
    return {"status": "ok", **detail.to_dict()}


@router.put("/{service_id}")
def update_service(
    service_id: str,
    request: ServiceRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Update a service; existing billing periods are kept"""
    engine.service_manager.update_service(service_id, **request.to_fields())
    detail = engine.service_manager.get_service_detail(service_id)
    return {"status": "ok", **detail.to_dict()}


@router.post("/{service_id}/schedules")
def regenerate_service_schedule(
    service_id: str,
    request: RegenerateServiceScheduleRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Rebuild the billing periods, optionally with new terms"""
    engine.service_manager.regenerate_schedule(service_id, request.to_overrides())
    detail = engine.service_manager.get_service_detail(service_id)
    return {"status": "ok", **detail.to_dict()}


@router.post("/schedules/{schedule_id}/pay")
def pay_service_schedule(
    schedule_id: str,
    request: ServicePaymentLinkRequest,
    engine: ObligationEngine = Depends(get_engine)
):
    """Link a settling payment to a billing period"""
    view = engine.service_manager.apply_payment(
        schedule_id=schedule_id,
        transaction_id=request.transaction_id,
        paid_amount=request.paid_amount,
        paid_date=request.paid_date,
        note=request.note
    )
    return {"status": "ok", "schedule": view.to_dict()}


@router.post("/schedules/{schedule_id}/unlink")
def unlink_service_schedule(
    schedule_id: str,
    engine: ObligationEngine = Depends(get_engine)
):
    """Detach the settling payment of a billing period"""
    view = engine.service_manager.unlink_payment(schedule_id)
    return {"status": "ok", "schedule": view.to_dict()}
