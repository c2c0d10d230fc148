"""
Task Synthesizer

Builds each collector's daily work queue from open demands in their wards and
the follow-up state of those demands. The scheduled daily run and the lazy
on-demand run behind "get today's tasks" share one routine, so both produce
the same task set for a collector and date.

A task is keyed by (collector, demand, date); generating twice for the same
day skips demands that already have a task.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging

from .currency import format_amount
from .clock import CivilClock
from .storage import StorageInterface, StorageRecord
from .numbering import SequenceGenerator
from .audit import AuditTrail, AuditEventType
from .demands import Demand, DemandManager
from .directory import Actor, Collector, Directory, Property, SYSTEM_ACTOR
from .follow_ups import FollowUp, FollowUpTracker, Priority
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)

NO_TASKS_MESSAGE = (
    "No tasks for today. This may mean all demands are paid or no demands "
    "are due/overdue in your assigned wards."
)
ALL_TASKS_COMPLETED_MESSAGE = "All tasks for today are completed."


class TaskType(Enum):
    PROMISED_PAYMENT = "promised_payment"
    OVERDUE_FOLLOWUP = "overdue_followup"
    ENFORCEMENT_VISIT = "enforcement_visit"
    ESCALATION_VISIT = "escalation_visit"
    DUE_TODAY = "due_today"


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskGeneratedBy(Enum):
    SYSTEM = "system"
    ADMIN = "admin"


OPEN_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


@dataclass
class CollectorTask(StorageRecord):
    """One collector's work item for one demand on one day"""
    task_number: str
    collector_id: str
    demand_id: str
    property_id: str
    task_date: date
    task_type: TaskType
    priority: Priority
    action_required: str
    follow_up_id: Optional[str] = None
    owner_id: Optional[str] = None
    citizen_name: str = "Unknown"
    property_number: str = "N/A"
    ward_number: str = "N/A"
    due_amount: Decimal = Decimal("0.00")
    overdue_days: int = 0
    visit_count: int = 0
    last_visit_date: Optional[datetime] = None
    last_visit_status: str = "No visits yet"
    expected_payment_date: Optional[date] = None
    status: TaskStatus = TaskStatus.PENDING
    generated_by: TaskGeneratedBy = TaskGeneratedBy.SYSTEM
    generation_reason: str = ""
    is_auto_generated: bool = True
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    completion_note: Optional[str] = None
    related_visit_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES


def task_id_for(collector_id: str, demand_id: str, task_date: date) -> str:
    """Deterministic key; one task per collector, demand and day"""
    return f"{collector_id}:{demand_id}:{task_date.isoformat()}"


def _display_date(value) -> str:
    if value is None:
        return "Never"
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime('%d/%m/%Y')


def choose_task_type(
    follow_up: FollowUp,
    demand: Demand,
    today: date
) -> Tuple[TaskType, Priority, str]:
    """
    Task type, priority and action text for a demand.

    Checked in order, first match wins:
    promised date reached, follow-up date reached, enforcement eligible
    without a notice, three or more visits, due today, otherwise overdue.
    """
    overdue_days = demand.days_past_due(today)

    if follow_up.expected_payment_date and follow_up.expected_payment_date <= today:
        return (
            TaskType.PROMISED_PAYMENT,
            Priority.HIGH,
            f"Citizen promised to pay by {_display_date(follow_up.expected_payment_date)}. "
            f"Follow up for payment."
        )

    if follow_up.next_follow_up_date and follow_up.next_follow_up_date <= today:
        priority = Priority.HIGH if follow_up.visit_count >= 2 else Priority.MEDIUM
        return (
            TaskType.OVERDUE_FOLLOWUP,
            priority,
            f"Follow up required. Last visit: {_display_date(follow_up.last_visit_date)}. "
            f"Visit count: {follow_up.visit_count}"
        )

    if follow_up.is_enforcement_eligible and not follow_up.notice_triggered:
        return (
            TaskType.ENFORCEMENT_VISIT,
            Priority.CRITICAL,
            f"Enforcement eligible after {follow_up.visit_count} visits. Final warning visit required."
        )

    if follow_up.visit_count >= 3:
        return (
            TaskType.ESCALATION_VISIT,
            Priority.CRITICAL,
            f"Escalation visit required. {follow_up.visit_count} visits completed."
        )

    if demand.due_date == today:
        return (
            TaskType.DUE_TODAY,
            Priority.HIGH,
            f"Demand due today. Amount due: {format_amount(demand.balance_amount)}. "
            f"Collect payment or record visit."
        )

    if overdue_days > 60:
        priority = Priority.CRITICAL
    elif overdue_days > 30:
        priority = Priority.HIGH
    else:
        priority = Priority.MEDIUM
    return (
        TaskType.OVERDUE_FOLLOWUP,
        priority,
        f"Demand overdue by {overdue_days} days. Amount due: {format_amount(demand.balance_amount)}"
    )


@dataclass
class TaskGenerationResult:
    """Outcome of generating one collector's tasks for a day"""
    collector_id: str
    task_date: date
    demands_processed: int = 0
    tasks: List[CollectorTask] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    @property
    def tasks_generated(self) -> int:
        return len(self.tasks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'collector_id': self.collector_id,
            'task_date': self.task_date.isoformat(),
            'tasks_generated': self.tasks_generated,
            'demands_processed': self.demands_processed,
            'skipped': list(self.skipped),
        }


@dataclass
class DailyTasks:
    """A collector's open tasks for a day, highest priority first"""
    collector_id: str
    task_date: date
    tasks: List[CollectorTask]
    generated_now: int = 0
    completed_count: int = 0

    @property
    def summary(self) -> Dict[str, int]:
        counts = {p.value: 0 for p in sorted(Priority, key=lambda p: p.rank)}
        for task in self.tasks:
            counts[task.priority.value] += 1
        counts['total'] = len(self.tasks)
        return counts

    @property
    def message(self) -> Optional[str]:
        if self.tasks:
            return None
        return ALL_TASKS_COMPLETED_MESSAGE if self.completed_count else NO_TASKS_MESSAGE


def sort_tasks(tasks: List[CollectorTask]) -> List[CollectorTask]:
    """Critical first, then the longest overdue"""
    return sorted(tasks, key=lambda t: (t.priority.rank, -t.overdue_days, t.task_number))


class TaskSynthesizer:
    """Generates and serves collector tasks"""

    def __init__(
        self,
        storage: StorageInterface,
        demand_manager: DemandManager,
        directory: Directory,
        follow_up_tracker: FollowUpTracker,
        sequences: SequenceGenerator,
        audit_trail: AuditTrail,
        clock: Optional[CivilClock] = None
    ):
        self.storage = storage
        self.demand_manager = demand_manager
        self.directory = directory
        self.follow_up_tracker = follow_up_tracker
        self.sequences = sequences
        self.audit_trail = audit_trail
        self.clock = clock or CivilClock()

        self.tasks_table = "collector_tasks"

    def generate_for_collector(
        self,
        collector: Collector,
        target_date: Optional[date] = None,
        generated_by: TaskGeneratedBy = TaskGeneratedBy.SYSTEM
    ) -> TaskGenerationResult:
        """
        Create missing tasks for one collector and date.

        Demands that already have a task for the date are skipped. A failure
        on one demand is recorded in skipped and the rest continue.
        """
        task_date = target_date or self.clock.today()
        result = TaskGenerationResult(collector_id=collector.id, task_date=task_date)

        ward_ids = self.directory.collector_ward_ids(collector.id)
        if not ward_ids:
            logger.warning("Collector %s has no assigned wards. Skipping task generation.", collector.id)
            return result

        properties = self.directory.properties_in_wards(ward_ids)
        demands = self.demand_manager.find_collectible(list(properties), task_date)
        result.demands_processed = len(demands)
        wards = {ward_id: self.directory.get_ward(ward_id) for ward_id in ward_ids}

        for demand in demands:
            prop = properties[demand.property_id]
            try:
                task = self._create_task(collector, demand, prop, wards.get(prop.ward_id),
                                         task_date, generated_by)
            except Exception as e:
                logger.error("Error creating task for demand %s: %s", demand.demand_number, e)
                result.skipped.append({'demand_id': demand.id, 'reason': f"Error: {e}"})
                continue

            if task is None:
                result.skipped.append({'demand_id': demand.id, 'reason': "Task already exists for today"})
            else:
                result.tasks.append(task)

        logger.info(
            "Generated %d tasks for collector %s on %s (%d demands, %d skipped)",
            result.tasks_generated, collector.id, task_date,
            result.demands_processed, len(result.skipped)
        )
        return result

    def _create_task(
        self,
        collector: Collector,
        demand: Demand,
        prop: Property,
        ward,
        task_date: date,
        generated_by: TaskGeneratedBy
    ) -> Optional[CollectorTask]:
        task_id = task_id_for(collector.id, demand.id, task_date)

        with self.storage.atomic():
            follow_up, _ = self.follow_up_tracker.get_or_create(demand, prop, task_date)
            if self.storage.exists(self.tasks_table, task_id):
                return None

            task_type, priority, action = choose_task_type(follow_up, demand, task_date)
            overdue_days = demand.days_past_due(task_date)
            now = datetime.now(timezone.utc)
            task = CollectorTask(
                id=task_id,
                created_at=now,
                updated_at=now,
                task_number="",
                collector_id=collector.id,
                demand_id=demand.id,
                property_id=prop.id,
                owner_id=prop.owner_id,
                follow_up_id=follow_up.id,
                task_date=task_date,
                task_type=task_type,
                priority=priority,
                action_required=action,
                citizen_name=prop.owner_name or "Unknown",
                property_number=prop.property_number or "N/A",
                ward_number=ward.ward_number if ward else "N/A",
                due_amount=demand.balance_amount,
                overdue_days=overdue_days,
                visit_count=follow_up.visit_count,
                last_visit_date=follow_up.last_visit_date,
                last_visit_status=(
                    f"{follow_up.last_visit_type.value} - {follow_up.last_citizen_response.value}"
                    if follow_up.last_visit_type and follow_up.last_citizen_response
                    else "No visits yet"
                ),
                expected_payment_date=follow_up.expected_payment_date,
                generated_by=generated_by,
                generation_reason=(
                    "Auto-generated: Demand due today" if demand.due_date == task_date
                    else f"Auto-generated: Demand overdue by {overdue_days} days"
                )
            )
            # a losing insert gives its task number back
            try:
                with self.storage.savepoint():
                    task.task_number = self.sequences.next_task_number(collector.id, task_date)
                    self.storage.insert(self.tasks_table, task.id, task.to_dict())
            except ConflictError:
                logger.debug("Task %s created concurrently", task_id)
                return None
        return task

    def generate_for_all(
        self,
        actor: Actor = SYSTEM_ACTOR,
        target_date: Optional[date] = None
    ) -> Dict[str, Any]:
        """Daily run over every active collector; admin or system only"""
        if not actor.is_privileged:
            raise AuthorizationError("Only admin can generate tasks")

        task_date = target_date or self.clock.today()
        generated_by = TaskGeneratedBy.SYSTEM if actor.id == SYSTEM_ACTOR.id else TaskGeneratedBy.ADMIN
        collectors = self.directory.list_active_collectors()

        results = []
        for collector in collectors:
            try:
                results.append(self.generate_for_collector(collector, task_date, generated_by))
            except Exception as e:
                logger.error("Task generation failed for collector %s: %s", collector.id, e)
                results.append(TaskGenerationResult(
                    collector_id=collector.id,
                    task_date=task_date,
                    skipped=[{'demand_id': None, 'reason': f"Error: {e}"}]
                ))

        total = sum(r.tasks_generated for r in results)
        summary = {
            'task_date': task_date.isoformat(),
            'collectors': len(collectors),
            'tasks_generated': total,
            'results': [r.to_dict() for r in results],
        }

        self.audit_trail.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            event_type=AuditEventType.TASK_GENERATED,
            entity_type="collector_task",
            entity_id=task_date.isoformat(),
            description=f"Generated {total} tasks for {len(collectors)} collectors",
            metadata={'tasks_generated': total, 'collectors': len(collectors)}
        )
        logger.info("Task generation completed: %d tasks for %d collectors", total, len(collectors))
        return summary

    def get_daily_tasks(self, actor: Actor, target_date: Optional[date] = None) -> DailyTasks:
        """Open tasks for the collector, generated on demand when none exist yet"""
        if not actor.is_collector:
            raise AuthorizationError("Only collectors can view daily tasks")

        task_date = target_date or self.clock.today()
        tasks = self.list_tasks(collector_id=actor.id, target_date=task_date, open_only=True)

        generated = 0
        if not tasks:
            logger.info("No tasks found for collector %s on %s. Generating on demand.", actor.id, task_date)
            collector = self.directory.require_collector(actor.id)
            generated = self.generate_for_collector(collector, task_date).tasks_generated
            tasks = self.list_tasks(collector_id=actor.id, target_date=task_date, open_only=True)

        return DailyTasks(
            collector_id=actor.id,
            task_date=task_date,
            tasks=sort_tasks(tasks),
            generated_now=generated,
            completed_count=len(self.list_tasks(actor.id, task_date, status=TaskStatus.COMPLETED))
        )

    def get_task(self, task_id: str) -> Optional[CollectorTask]:
        data = self.storage.load(self.tasks_table, task_id)
        return CollectorTask.from_dict(data) if data else None

    def complete_task(
        self,
        actor: Actor,
        task_id: str,
        completion_note: Optional[str] = None,
        related_visit_id: Optional[str] = None
    ) -> CollectorTask:
        """Mark one of the collector's own tasks completed"""
        if not actor.is_collector:
            raise AuthorizationError("Only collectors can complete tasks")

        with self.storage.atomic():
            data = self.storage.lock_for_update(self.tasks_table, task_id)
            if not data:
                raise NotFoundError("Task not found")
            task = CollectorTask.from_dict(data)
            if task.collector_id != actor.id:
                raise AuthorizationError("You can only complete your own tasks")
            if task.status == TaskStatus.COMPLETED:
                raise ValidationError("Task is already completed")

            before = task.to_dict()
            now = datetime.now(timezone.utc)
            task.status = TaskStatus.COMPLETED
            task.completed_at = now
            task.completed_by = actor.id
            task.completion_note = completion_note or "Task completed"
            task.related_visit_id = related_visit_id
            task.updated_at = now
            self.storage.save(self.tasks_table, task.id, task.to_dict())

        self.audit_trail.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            event_type=AuditEventType.TASK_COMPLETED,
            entity_type="collector_task",
            entity_id=task.id,
            before=before,
            after=task.to_dict(),
            description=f"Collector completed task: {task.action_required}",
            metadata={'task_number': task.task_number, 'related_visit_id': related_visit_id}
        )
        return task

    def list_tasks(
        self,
        collector_id: Optional[str] = None,
        target_date: Optional[date] = None,
        status: Optional[TaskStatus] = None,
        open_only: bool = False
    ) -> List[CollectorTask]:
        filters = {}
        if collector_id:
            filters['collector_id'] = collector_id
        if target_date:
            filters['task_date'] = target_date.isoformat()
        if status:
            filters['status'] = status.value

        tasks = [CollectorTask.from_dict(data) for data in self.storage.find(self.tasks_table, filters)]
        if open_only:
            tasks = [t for t in tasks if t.is_open]
        return sort_tasks(tasks)
