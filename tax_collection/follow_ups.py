"""
Follow-Up State Tracker

One follow-up record per demand tracks how far field escalation has gone:
visit count, the citizen's last response and promise, escalation level and
status, enforcement eligibility, notice and resolution state.

Escalation is driven by the number of escalation-type visits on the demand:

    1 -> reminder       -> first_reminder
    2 -> reminder       -> second_reminder
    3 -> warning        -> final_warning
    4+ -> final_warning -> enforcement_eligible

Resolution (balance paid off) is terminal; no escalation happens after it.
"""

from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass
from typing import List, Optional, Tuple
from enum import Enum
import logging

from .storage import StorageInterface, StorageRecord
from .demands import Demand
from .directory import Property
from .errors import ConflictError


logger = logging.getLogger(__name__)

MAX_ESCALATION_LEVEL = 4


class VisitType(Enum):
    """Kinds of field visit"""
    REMINDER = "reminder"
    PAYMENT_COLLECTION = "payment_collection"
    WARNING = "warning"
    FINAL_WARNING = "final_warning"

    @property
    def is_escalation(self) -> bool:
        return self != VisitType.PAYMENT_COLLECTION


class CitizenResponse(Enum):
    """What the citizen said during a visit"""
    WILL_PAY_TODAY = "will_pay_today"
    WILL_PAY_LATER = "will_pay_later"
    REFUSED_TO_PAY = "refused_to_pay"
    NOT_AVAILABLE = "not_available"


class EscalationStatus(Enum):
    """Escalation stage of a follow-up"""
    NONE = "none"
    FIRST_REMINDER = "first_reminder"
    SECOND_REMINDER = "second_reminder"
    FINAL_WARNING = "final_warning"
    ENFORCEMENT_ELIGIBLE = "enforcement_eligible"


class Priority(Enum):
    """Work priority, shared by follow-ups and tasks"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """0 for critical up to 3 for low, for sorting"""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}

_ESCALATION_STATUS_BY_LEVEL = {
    0: EscalationStatus.NONE,
    1: EscalationStatus.FIRST_REMINDER,
    2: EscalationStatus.SECOND_REMINDER,
    3: EscalationStatus.FINAL_WARNING,
    4: EscalationStatus.ENFORCEMENT_ELIGIBLE,
}


def expected_visit_type(sequence_number: int) -> VisitType:
    """Visit type required for the nth escalation visit on a demand"""
    if sequence_number <= 2:
        return VisitType.REMINDER
    if sequence_number == 3:
        return VisitType.WARNING
    return VisitType.FINAL_WARNING


def escalation_status_for(level: int) -> EscalationStatus:
    return _ESCALATION_STATUS_BY_LEVEL[max(0, min(level, MAX_ESCALATION_LEVEL))]


def calculate_priority(visit_count: int, overdue_days: int) -> Priority:
    """Follow-up priority from visit count and days past due"""
    if visit_count >= 3 or overdue_days > 60:
        return Priority.CRITICAL
    if visit_count >= 2 or overdue_days > 30:
        return Priority.HIGH
    if overdue_days > 15:
        return Priority.MEDIUM
    return Priority.LOW


def initial_priority(overdue_days: int) -> Priority:
    """Priority seeded on a new follow-up before any visit"""
    if overdue_days > 30:
        return Priority.HIGH
    if overdue_days > 15:
        return Priority.MEDIUM
    return Priority.LOW


def calculate_next_follow_up_date(
    response: CitizenResponse,
    today: date,
    expected_payment_date: Optional[date] = None,
    promise_buffer_days: int = 2,
    not_available_retry_days: int = 3,
    refused_retry_days: int = 7
) -> Optional[date]:
    """When the collector should return, based on the citizen's response"""
    if response == CitizenResponse.WILL_PAY_LATER:
        if expected_payment_date is None:
            return None
        return expected_payment_date + timedelta(days=promise_buffer_days)
    if response == CitizenResponse.NOT_AVAILABLE:
        return today + timedelta(days=not_available_retry_days)
    if response == CitizenResponse.REFUSED_TO_PAY:
        return today + timedelta(days=refused_retry_days)
    return None


@dataclass
class FollowUp(StorageRecord):
    """Escalation state of one demand"""
    demand_id: str
    property_id: str
    owner_id: Optional[str] = None
    visit_count: int = 0
    last_visit_date: Optional[datetime] = None
    last_visit_id: Optional[str] = None
    last_visit_type: Optional[VisitType] = None
    last_citizen_response: Optional[CitizenResponse] = None
    expected_payment_date: Optional[date] = None
    escalation_level: int = 0
    escalation_status: EscalationStatus = EscalationStatus.NONE
    is_enforcement_eligible: bool = False
    enforcement_eligible_date: Optional[date] = None
    notice_triggered: bool = False
    notice_id: Optional[str] = None
    is_resolved: bool = False
    resolved_date: Optional[date] = None
    resolved_by: Optional[str] = None
    priority: Priority = Priority.LOW
    next_follow_up_date: Optional[date] = None
    last_updated_by: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.escalation_level <= MAX_ESCALATION_LEVEL:
            raise ValueError(f"Escalation level must be between 0 and {MAX_ESCALATION_LEVEL}")

    def escalate_to(self, escalation_visit_count: int, today: date) -> bool:
        """
        Set level and status from the number of escalation visits.

        Returns True only on the visit that makes the demand enforcement
        eligible; the eligibility date is stamped on that edge.
        """
        level = min(escalation_visit_count, MAX_ESCALATION_LEVEL)
        if level < self.escalation_level:
            raise ValueError("Escalation level cannot decrease")

        self.escalation_level = level
        self.escalation_status = escalation_status_for(level)

        if level >= MAX_ESCALATION_LEVEL and not self.is_enforcement_eligible:
            self.is_enforcement_eligible = True
            self.enforcement_eligible_date = today
            return True
        return False

    def resolve(self, today: date, resolved_by: Optional[str]) -> None:
        self.is_resolved = True
        self.resolved_date = today
        self.resolved_by = resolved_by
        self.next_follow_up_date = None
        self.expected_payment_date = None


def follow_up_id_for(demand_id: str) -> str:
    """Deterministic key; one follow-up per demand"""
    return f"FU-{demand_id}"


class FollowUpTracker:
    """Persistence and lazy creation of follow-ups"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.follow_ups_table = "follow_ups"

    def get(self, follow_up_id: str) -> Optional[FollowUp]:
        data = self.storage.load(self.follow_ups_table, follow_up_id)
        return FollowUp.from_dict(data) if data else None

    def get_by_demand(self, demand_id: str) -> Optional[FollowUp]:
        return self.get(follow_up_id_for(demand_id))

    def get_or_create(
        self,
        demand: Demand,
        prop: Property,
        today: date,
        overdue_days: Optional[int] = None
    ) -> Tuple[FollowUp, bool]:
        """
        Fetch the demand's follow-up, creating it on first encounter.

        The seed priority uses overdue_days when given, otherwise the raw
        days past the due date.

        Concurrent creators collapse onto one row through the unique key;
        the loser re-reads the winner's record.
        """
        existing = self.get_by_demand(demand.id)
        if existing:
            return existing, False

        now = datetime.now(timezone.utc)
        follow_up = FollowUp(
            id=follow_up_id_for(demand.id),
            created_at=now,
            updated_at=now,
            demand_id=demand.id,
            property_id=prop.id,
            owner_id=prop.owner_id,
            priority=initial_priority(
                overdue_days if overdue_days is not None else demand.days_past_due(today)
            )
        )
        try:
            self.storage.insert(self.follow_ups_table, follow_up.id, follow_up.to_dict())
        except ConflictError:
            logger.debug("Follow-up for demand %s created concurrently", demand.id)
            return self.get_by_demand(demand.id), False
        return follow_up, True

    def save(self, follow_up: FollowUp) -> None:
        follow_up.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.follow_ups_table, follow_up.id, follow_up.to_dict())

    def list_follow_ups(
        self,
        is_resolved: Optional[bool] = None,
        is_enforcement_eligible: Optional[bool] = None
    ) -> List[FollowUp]:
        filters = {}
        if is_resolved is not None:
            filters['is_resolved'] = is_resolved
        if is_enforcement_eligible is not None:
            filters['is_enforcement_eligible'] = is_enforcement_eligible
        follow_ups = [FollowUp.from_dict(data) for data in self.storage.find(self.follow_ups_table, filters)]
        follow_ups.sort(key=lambda f: (f.priority.rank, f.created_at))
        return follow_ups
