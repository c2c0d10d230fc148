"""
Field visit endpoints
"""

from decimal import InvalidOperation
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Request, status

from .deps import get_system, get_actor, to_http_exception
from .device import parse_device_info
from .schemas import RecordVisitRequest
from ..system import CollectionSystem
from ..directory import Actor
from ..visits import VisitRequest
from ..errors import CollectionError
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("tax_collection.api.visits")


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_visit(
    body: RecordVisitRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Record a field visit and apply its escalation and payment effects"""
    try:
        visit_request = VisitRequest(
            demand_id=body.demand_id,
            visit_type=body.visit_type,
            citizen_response=body.citizen_response,
            remarks=body.remarks,
            property_id=body.property_id,
            expected_payment_date=body.expected_payment_date,
            amount_collected=body.amount(),
            payment_mode=body.payment_mode,
            cheque_number=body.cheque_number,
            bank_name=body.bank_name,
            transaction_id=body.transaction_id,
            latitude=body.latitude,
            longitude=body.longitude,
            address=body.address,
            proof_photo_url=body.proof_photo_url,
            proof_note=body.proof_note,
            task_id=body.task_id,
            device=parse_device_info(request)
        )
        outcome = system.visit_recorder.record_visit(actor, visit_request)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail="Invalid amount")
    except CollectionError as e:
        log_action(
            logger, "warning", f"Field visit rejected: {e.message}",
            user_id=actor.id, action="record_visit", resource=f"demand:{body.demand_id}",
            extra={"error_code": e.error_code}
        )
        raise to_http_exception(e)

    log_action(
        logger, "info", "Field visit recorded",
        user_id=actor.id, action="record_visit", resource=f"field_visit:{outcome.visit.id}",
        extra={
            "visit_number": outcome.visit.visit_number,
            "demand_id": outcome.demand.id,
            "status": outcome.visit.status.value,
            "escalation_level": outcome.follow_up.escalation_level,
        }
    )

    return {
        "visit": outcome.visit.to_dict(),
        "follow_up": outcome.follow_up.to_dict(),
        "demand": outcome.demand.to_dict(),
        "payment": outcome.payment.to_dict() if outcome.payment else None,
        "notice": outcome.notice.to_dict() if outcome.notice else None,
        "enforcement_eligible": outcome.follow_up.is_enforcement_eligible,
        "message": (
            "Field visit recorded (flagged: outside attendance window)"
            if outcome.visit.attendance_window_note else "Field visit recorded successfully"
        )
    }


@router.get("/context/{demand_id}")
async def get_visit_context(
    demand_id: str,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Demand, follow-up state and visit history for the visit form"""
    try:
        context = system.visit_recorder.get_visit_context(actor, demand_id)
    except CollectionError as e:
        raise to_http_exception(e)

    follow_up = context['follow_up']
    return {
        "demand": context['demand'].to_dict(),
        "property": context['property'].to_dict(),
        "follow_up": follow_up.to_dict() if follow_up else None,
        "visits": [v.to_dict() for v in context['visits']],
        "next_escalation_sequence": context['next_escalation_sequence'],
        "expected_escalation_type": context['expected_escalation_type'].value,
        "today": context['today'].isoformat()
    }


@router.get("/{visit_id}")
async def get_visit(
    visit_id: str,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Get a field visit"""
    try:
        visit = system.visit_recorder.get_visit(visit_id, actor)
    except CollectionError as e:
        raise to_http_exception(e)
    return visit.to_dict()


@router.get("")
async def list_visits(
    demand_id: Optional[str] = None,
    collector_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """List field visits; collectors see only their own"""
    if actor.is_collector:
        collector_id = actor.id
    visits = system.visit_recorder.list_visits(demand_id=demand_id, collector_id=collector_id)
    return {
        "visits": [v.to_dict() for v in visits],
        "count": len(visits)
    }
