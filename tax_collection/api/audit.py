"""
Audit endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .deps import get_system, get_actor, require_privileged
from ..system import CollectionSystem
from ..directory import Actor
from ..audit import AuditEventType


router = APIRouter()


@router.get("/integrity")
async def verify_audit_integrity(
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Verify the audit hash chain"""
    require_privileged(actor)
    return system.audit_trail.check_integrity(actor.id, actor.role.value)


@router.get("/events")
async def list_audit_events(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    event_type: Optional[AuditEventType] = None,
    limit: int = 100,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Audit events for an entity, of a type, or the most recent"""
    require_privileged(actor)
    trail = system.audit_trail
    if entity_type and entity_id:
        events = trail.get_events_for_entity(entity_type, entity_id)
    elif event_type:
        events = trail.get_events_by_type(event_type, limit=limit)
    else:
        events = trail.get_all_events(limit=limit)
    return {
        "events": [e.to_dict() for e in events],
        "count": len(events)
    }
