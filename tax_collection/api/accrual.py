"""
Accrual run endpoints
"""

from fastapi import APIRouter, Depends

from .deps import get_system, get_actor, require_privileged, to_http_exception
from .schemas import RunAccrualRequest
from ..system import CollectionSystem
from ..directory import Actor
from ..errors import CollectionError
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("tax_collection.api.accrual")


@router.post("/run")
async def run_accrual(
    request: RunAccrualRequest,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Trigger a penalty and interest accrual run (admin)"""
    require_privileged(actor)
    try:
        report = system.accrual_scheduler.run(as_of=request.as_of, actor=actor)
    except CollectionError as e:
        raise to_http_exception(e)

    log_action(
        logger, "info", "Accrual run triggered manually",
        user_id=actor.id, action="run_accrual", resource=f"accrual_run:{report.run_id}",
        extra={"demands_updated": report.demands_updated, "errors": len(report.errors)}
    )
    return report.to_dict()


@router.get("/status")
async def get_accrual_status(
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Most recent accrual run and whether one is in progress"""
    require_privileged(actor)
    return {
        "is_running": system.accrual_scheduler.is_running,
        "last_run": system.accrual_scheduler.last_run_status()
    }
