"""
Enforcement Notices

Creates the final-warrant notice raised when field escalation reaches the
final warning stage. Notice rendering and service are handled elsewhere;
this module only records the notice.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .currency import round_amount
from .clock import CivilClock
from .storage import StorageInterface, StorageRecord
from .numbering import SequenceGenerator
from .demands import Demand
from .directory import Actor, Property
from .follow_ups import FollowUp


class NoticeType(Enum):
    FINAL_WARRANT = "final_warrant"


class NoticeStatus(Enum):
    GENERATED = "generated"
    SERVED = "served"
    CLOSED = "closed"


@dataclass
class Notice(StorageRecord):
    """Enforcement notice against a demand"""
    notice_number: str
    notice_type: NoticeType
    demand_id: str
    property_id: str
    financial_year: str
    notice_date: date
    due_date: date
    amount_due: Decimal
    penalty_amount: Decimal
    owner_id: Optional[str] = None
    status: NoticeStatus = NoticeStatus.GENERATED
    generated_by: Optional[str] = None
    is_collector_triggered: bool = False
    triggered_by_visit_count: int = 0
    follow_up_id: Optional[str] = None
    remarks: Optional[str] = None


class NoticeService:
    """Records enforcement notices"""

    def __init__(
        self,
        storage: StorageInterface,
        sequences: SequenceGenerator,
        clock: Optional[CivilClock] = None,
        due_days: int = 15
    ):
        self.storage = storage
        self.sequences = sequences
        self.clock = clock or CivilClock()
        self.due_days = due_days
        self.notices_table = "notices"

    def create_enforcement_notice(
        self,
        demand: Demand,
        prop: Property,
        follow_up: FollowUp,
        actor: Actor
    ) -> Notice:
        """Final-warrant notice for the demand's current balance"""
        today = self.clock.today()
        now = datetime.now(timezone.utc)
        notice = Notice(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notice_number=self.sequences.next_notice_number(today.year),
            notice_type=NoticeType.FINAL_WARRANT,
            demand_id=demand.id,
            property_id=prop.id,
            owner_id=prop.owner_id,
            financial_year=demand.financial_year,
            notice_date=today,
            due_date=today + timedelta(days=self.due_days),
            amount_due=demand.balance_amount,
            penalty_amount=round_amount(demand.penalty_amount + demand.interest_amount),
            generated_by=actor.id,
            is_collector_triggered=actor.is_collector,
            triggered_by_visit_count=follow_up.visit_count,
            follow_up_id=follow_up.id,
            remarks=(
                f"Auto-generated after escalation level {follow_up.escalation_level} "
                f"({follow_up.visit_count} visits)"
            )
        )
        self.storage.insert(self.notices_table, notice.id, notice.to_dict())
        return notice

    def get_notice(self, notice_id: str) -> Optional[Notice]:
        data = self.storage.load(self.notices_table, notice_id)
        return Notice.from_dict(data) if data else None

    def list_notices(self, demand_id: Optional[str] = None) -> List[Notice]:
        filters = {'demand_id': demand_id} if demand_id else {}
        notices = [Notice.from_dict(data) for data in self.storage.find(self.notices_table, filters)]
        notices.sort(key=lambda n: n.notice_number)
        return notices
