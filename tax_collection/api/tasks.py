"""
Collector task endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .deps import get_system, get_actor, require_privileged, to_http_exception
from .schemas import GenerateTasksRequest, CompleteTaskRequest
from ..system import CollectionSystem
from ..directory import Actor
from ..errors import CollectionError
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("tax_collection.api.tasks")


@router.get("/daily")
async def get_daily_tasks(
    task_date: Optional[date] = None,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Today's open tasks for the calling collector, generated on first request"""
    try:
        daily = system.task_synthesizer.get_daily_tasks(actor, task_date)
    except CollectionError as e:
        raise to_http_exception(e)

    tasks = [t.to_dict() for t in daily.tasks]
    return {
        "task_date": daily.task_date.isoformat(),
        "tasks": tasks,
        "tasks_by_priority": {
            level: [t for t in tasks if t['priority'] == level]
            for level in ("critical", "high", "medium", "low")
        },
        "summary": daily.summary,
        "generated_now": daily.generated_now,
        "message": daily.message
    }


@router.post("/generate")
async def generate_tasks(
    request: GenerateTasksRequest,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Generate tasks for every active collector (admin)"""
    require_privileged(actor)
    try:
        summary = system.task_synthesizer.generate_for_all(actor, request.task_date)
    except CollectionError as e:
        raise to_http_exception(e)

    log_action(
        logger, "info", f"Generated {summary['tasks_generated']} tasks",
        user_id=actor.id, action="generate_tasks", resource="collector_tasks",
        extra={"task_date": summary['task_date'], "collectors": summary['collectors']}
    )
    summary["message"] = (
        f"Generated {summary['tasks_generated']} tasks for {summary['collectors']} collectors"
    )
    return summary


@router.patch("/{task_id}/complete")
async def complete_task(
    task_id: str,
    request: CompleteTaskRequest,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Mark the caller's task completed"""
    try:
        task = system.task_synthesizer.complete_task(
            actor, task_id,
            completion_note=request.completion_note,
            related_visit_id=request.related_visit_id
        )
    except CollectionError as e:
        raise to_http_exception(e)

    return {
        "task": task.to_dict(),
        "message": "Task marked as completed"
    }
