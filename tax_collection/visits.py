"""
Visit Recorder

Validates and records a collector's field visit to a defaulting citizen and
applies its consequences in one transaction:

- escalation visits must follow the reminder, reminder, warning,
  final_warning sequence for the demand
- the demand's follow-up records the visit, response, escalation level,
  priority and next follow-up date
- a payment_collection visit where the citizen pays now records a payment
  and resolves the follow-up once the balance reaches zero
- reaching the notice level raises one enforcement notice per follow-up
- visits outside an open attendance session are accepted but flagged

Any validation failure rolls back every write of the visit. Audit entries and
receipt rendering run after commit and never fail the visit.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import ZERO, round_amount
from .clock import CivilClock
from .storage import StorageInterface, StorageRecord
from .numbering import SequenceGenerator
from .audit import AuditTrail, AuditEventType
from .demands import Demand, DemandManager, DemandStatus
from .directory import Actor, Directory, Property
from .follow_ups import (
    FollowUp, FollowUpTracker, VisitType, CitizenResponse,
    expected_visit_type, calculate_priority, calculate_next_follow_up_date
)
from .notices import Notice, NoticeService
from .payments import Payment, PaymentMode, PaymentService
from .errors import (
    ValidationError, VisitSequenceError, AuthorizationError, ConflictError, NotFoundError
)


logger = logging.getLogger(__name__)

OUTSIDE_WINDOW_NOTE = "Visit recorded outside attendance window. Collector may not be on duty."


class VisitStatus(Enum):
    RECORDED = "recorded"
    FLAGGED = "flagged"


@dataclass
class DeviceInfo:
    """Where a visit was submitted from"""
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    browser_name: Optional[str] = None
    operating_system: Optional[str] = None
    source: str = "web"


@dataclass
class FieldVisit(StorageRecord):
    """One collector interaction with one demand; never updated"""
    visit_number: str
    collector_id: str
    demand_id: str
    property_id: str
    visit_date: datetime
    visit_type: VisitType
    citizen_response: CitizenResponse
    remarks: str
    visit_sequence_number: int
    escalation_sequence_number: Optional[int] = None
    owner_id: Optional[str] = None
    expected_payment_date: Optional[date] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    browser_name: Optional[str] = None
    operating_system: Optional[str] = None
    source: str = "web"
    proof_photo_url: Optional[str] = None
    proof_note: Optional[str] = None
    attendance_id: Optional[str] = None
    is_within_attendance_window: bool = False
    attendance_window_note: Optional[str] = None
    status: VisitStatus = VisitStatus.RECORDED
    amount_collected: Optional[Decimal] = None
    payment_id: Optional[str] = None
    notice_id: Optional[str] = None
    task_id: Optional[str] = None


@dataclass
class VisitRequest:
    """A collector's visit submission"""
    demand_id: str
    visit_type: VisitType
    citizen_response: CitizenResponse
    remarks: str
    property_id: Optional[str] = None
    expected_payment_date: Optional[date] = None
    amount_collected: Optional[Decimal] = None
    payment_mode: Optional[PaymentMode] = None
    cheque_number: Optional[str] = None
    bank_name: Optional[str] = None
    transaction_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    proof_photo_url: Optional[str] = None
    proof_note: Optional[str] = None
    task_id: Optional[str] = None
    device: DeviceInfo = field(default_factory=DeviceInfo)

    @property
    def collects_payment(self) -> bool:
        return (self.visit_type == VisitType.PAYMENT_COLLECTION
                and self.citizen_response == CitizenResponse.WILL_PAY_TODAY)


@dataclass
class VisitOutcome:
    """Everything a visit changed"""
    visit: FieldVisit
    follow_up: FollowUp
    demand: Demand
    payment: Optional[Payment] = None
    notice: Optional[Notice] = None
    became_enforcement_eligible: bool = False


class VisitRecorder:
    """Records field visits and drives follow-up escalation"""

    def __init__(
        self,
        storage: StorageInterface,
        demand_manager: DemandManager,
        directory: Directory,
        follow_up_tracker: FollowUpTracker,
        payment_service: PaymentService,
        notice_service: NoticeService,
        sequences: SequenceGenerator,
        audit_trail: AuditTrail,
        clock: Optional[CivilClock] = None,
        notice_level: int = 3,
        promise_buffer_days: int = 2,
        not_available_retry_days: int = 3,
        refused_retry_days: int = 7,
        default_payment_mode: PaymentMode = PaymentMode.CASH
    ):
        self.storage = storage
        self.demand_manager = demand_manager
        self.directory = directory
        self.follow_up_tracker = follow_up_tracker
        self.payment_service = payment_service
        self.notice_service = notice_service
        self.sequences = sequences
        self.audit_trail = audit_trail
        self.clock = clock or CivilClock()
        self.notice_level = notice_level
        self.promise_buffer_days = promise_buffer_days
        self.not_available_retry_days = not_available_retry_days
        self.refused_retry_days = refused_retry_days
        self.default_payment_mode = default_payment_mode

        self.visits_table = "field_visits"
        self.visit_numbers_table = "field_visit_numbers"

    def record_visit(self, actor: Actor, request: VisitRequest) -> VisitOutcome:
        """
        Validate and record a field visit.

        Raises:
            AuthorizationError: actor is not a collector or the property is
                outside the collector's wards
            NotFoundError: unknown demand or property
            VisitSequenceError: escalation visit out of order
            PaymentExceedsBalanceError: collected amount above the balance
            ValidationError: missing or inconsistent fields
            ConflictError: demand already settled or follow-up resolved
        """
        if not actor.is_collector:
            raise AuthorizationError("Only collectors can record field visits")
        self._validate_request(request)

        today = self.clock.today()
        visited_at = self.clock.now()

        with self.storage.atomic():
            demand = self.demand_manager.lock_demand(request.demand_id)
            prop = self._check_access(actor, demand, request)
            self._check_demand_open(demand)

            follow_up, _ = self.follow_up_tracker.get_or_create(
                demand, prop, today, overdue_days=demand.overdue_days
            )
            if follow_up.is_resolved:
                raise ConflictError(f"Follow-up for demand {demand.demand_number} is already resolved")
            before = follow_up.to_dict()

            prior_visits = self.list_visits(demand_id=demand.id)
            escalation_count = sum(1 for v in prior_visits if v.visit_type.is_escalation)

            escalation_sequence = None
            if request.visit_type.is_escalation:
                escalation_sequence = escalation_count + 1
                expected = expected_visit_type(escalation_sequence)
                if request.visit_type != expected:
                    raise VisitSequenceError(expected.value, request.visit_type.value, escalation_sequence)

            visit_id = str(uuid.uuid4())

            payment = None
            if request.collects_payment:
                payment = self.payment_service.create_payment(
                    demand,
                    request.amount_collected,
                    request.payment_mode or self.default_payment_mode,
                    actor,
                    remarks=request.remarks,
                    cheque_number=request.cheque_number,
                    bank_name=request.bank_name,
                    transaction_id=request.transaction_id,
                    field_visit_id=visit_id
                )

            became_eligible = self._update_follow_up(
                follow_up, request, actor, demand, visit_id, visited_at, today, escalation_sequence
            )
            if payment and demand.balance_amount <= ZERO:
                follow_up.resolve(today, actor.id)

            notice = self._maybe_trigger_notice(demand, prop, follow_up, actor)

            attendance = self.directory.open_session(actor.id)
            visit = FieldVisit(
                id=visit_id,
                created_at=datetime.now(timezone.utc),
                updated_at=datetime.now(timezone.utc),
                visit_number=self.sequences.next_visit_number(today.year),
                collector_id=actor.id,
                demand_id=demand.id,
                property_id=prop.id,
                owner_id=prop.owner_id,
                visit_date=visited_at,
                visit_type=request.visit_type,
                citizen_response=request.citizen_response,
                remarks=request.remarks.strip(),
                visit_sequence_number=len(prior_visits) + 1,
                escalation_sequence_number=escalation_sequence,
                expected_payment_date=(
                    request.expected_payment_date
                    if request.citizen_response == CitizenResponse.WILL_PAY_LATER else None
                ),
                latitude=request.latitude,
                longitude=request.longitude,
                address=request.address,
                ip_address=request.device.ip_address,
                device_type=request.device.device_type,
                browser_name=request.device.browser_name,
                operating_system=request.device.operating_system,
                source=request.device.source,
                proof_photo_url=request.proof_photo_url,
                proof_note=request.proof_note,
                attendance_id=attendance.id if attendance else None,
                is_within_attendance_window=attendance is not None,
                attendance_window_note=None if attendance else OUTSIDE_WINDOW_NOTE,
                status=VisitStatus.RECORDED if attendance else VisitStatus.FLAGGED,
                amount_collected=payment.amount if payment else None,
                payment_id=payment.id if payment else None,
                notice_id=notice.id if notice else None,
                task_id=request.task_id
            )
            # unique key on the visit number; a duplicate rolls the visit back
            self.storage.insert(
                self.visit_numbers_table, visit.visit_number,
                {'id': visit.visit_number, 'visit_id': visit.id}
            )
            self.storage.insert(self.visits_table, visit.id, visit.to_dict())
            self.follow_up_tracker.save(follow_up)

        logger.info(
            "Visit %s recorded for demand %s by %s (%s, level %d)",
            visit.visit_number, demand.demand_number, actor.id,
            visit.status.value, follow_up.escalation_level
        )

        outcome = VisitOutcome(
            visit=visit,
            follow_up=follow_up,
            demand=demand,
            payment=payment,
            notice=notice,
            became_enforcement_eligible=became_eligible
        )
        self._after_commit(actor, outcome, before)
        return outcome

    def _validate_request(self, request: VisitRequest) -> None:
        if not request.demand_id:
            raise ValidationError("Demand is required")
        if not request.remarks or not request.remarks.strip():
            raise ValidationError("Remarks are required")
        if request.citizen_response == CitizenResponse.WILL_PAY_LATER and not request.expected_payment_date:
            raise ValidationError("Expected payment date is required when citizen promises to pay later")

        if request.collects_payment:
            if request.amount_collected is None:
                raise ValidationError("Amount collected is required when the citizen pays during the visit")
            try:
                amount = round_amount(request.amount_collected)
            except (InvalidOperation, TypeError):
                raise ValidationError("Amount collected must be a valid amount")
            if amount.is_nan():
                raise ValidationError("Amount collected must be a valid amount")
            if amount <= ZERO:
                raise ValidationError("Amount collected must be greater than zero")
        elif request.amount_collected is not None:
            raise ValidationError(
                "Amount can only be collected on a payment_collection visit where the citizen pays today"
            )

    def _check_access(self, actor: Actor, demand: Demand, request: VisitRequest) -> Property:
        prop = self.directory.require_property(demand.property_id)
        if request.property_id and request.property_id != prop.id:
            raise ValidationError("Property does not match the demand")
        if prop.ward_id not in self.directory.collector_ward_ids(actor.id):
            raise AuthorizationError(
                "You do not have access to this property. It is not in your assigned wards."
            )
        return prop

    def _check_demand_open(self, demand: Demand) -> None:
        if demand.status == DemandStatus.CANCELLED:
            raise ValidationError(f"Demand {demand.demand_number} is cancelled")
        if demand.is_settled:
            raise ConflictError("Cannot record a visit for a fully paid demand")

    def _update_follow_up(
        self,
        follow_up: FollowUp,
        request: VisitRequest,
        actor: Actor,
        demand: Demand,
        visit_id: str,
        visited_at: datetime,
        today: date,
        escalation_sequence: Optional[int]
    ) -> bool:
        follow_up.visit_count += 1
        follow_up.last_visit_date = visited_at
        follow_up.last_visit_id = visit_id
        follow_up.last_visit_type = request.visit_type
        follow_up.last_citizen_response = request.citizen_response
        follow_up.expected_payment_date = (
            request.expected_payment_date
            if request.citizen_response == CitizenResponse.WILL_PAY_LATER else None
        )
        follow_up.last_updated_by = actor.id

        became_eligible = False
        if escalation_sequence is not None:
            became_eligible = follow_up.escalate_to(escalation_sequence, today)

        follow_up.priority = calculate_priority(follow_up.visit_count, demand.overdue_days)
        follow_up.next_follow_up_date = calculate_next_follow_up_date(
            request.citizen_response,
            today,
            request.expected_payment_date,
            promise_buffer_days=self.promise_buffer_days,
            not_available_retry_days=self.not_available_retry_days,
            refused_retry_days=self.refused_retry_days
        )
        return became_eligible

    def _maybe_trigger_notice(
        self,
        demand: Demand,
        prop: Property,
        follow_up: FollowUp,
        actor: Actor
    ) -> Optional[Notice]:
        """Raise the enforcement notice once per follow-up; failures leave it for the next visit"""
        if (follow_up.is_resolved
                or follow_up.notice_triggered
                or follow_up.escalation_level < self.notice_level
                or demand.balance_amount <= ZERO):
            return None

        try:
            with self.storage.savepoint():
                notice = self.notice_service.create_enforcement_notice(demand, prop, follow_up, actor)
        except Exception:
            logger.exception("Enforcement notice creation failed for demand %s", demand.demand_number)
            return None

        follow_up.notice_triggered = True
        follow_up.notice_id = notice.id
        return notice

    def _after_commit(self, actor: Actor, outcome: VisitOutcome, follow_up_before: Dict[str, Any]) -> None:
        visit = outcome.visit
        follow_up = outcome.follow_up
        demand = outcome.demand
        role = actor.role.value

        self.audit_trail.record(
            actor_id=actor.id,
            actor_role=role,
            event_type=AuditEventType.FIELD_VISIT,
            entity_type="field_visit",
            entity_id=visit.id,
            after=visit.to_dict(),
            description=(
                f"Collector recorded field visit #{visit.visit_sequence_number} "
                f"for demand {demand.demand_number}"
            ),
            metadata={
                'visit_number': visit.visit_number,
                'demand_id': demand.id,
                'visit_type': visit.visit_type,
                'citizen_response': visit.citizen_response,
                'escalation_status': follow_up.escalation_status,
                'is_within_attendance_window': visit.is_within_attendance_window,
                'notice_id': outcome.notice.id if outcome.notice else None,
            }
        )
        self.audit_trail.record(
            actor_id=actor.id,
            actor_role=role,
            event_type=AuditEventType.FOLLOW_UP,
            entity_type="follow_up",
            entity_id=follow_up.id,
            before=follow_up_before,
            after=follow_up.to_dict(),
            description=f"Follow-up updated after visit {visit.visit_number}"
        )

        if outcome.payment:
            self.audit_trail.record(
                actor_id=actor.id,
                actor_role=role,
                event_type=AuditEventType.PAYMENT_COLLECTED,
                entity_type="payment",
                entity_id=outcome.payment.id,
                after=outcome.payment.to_dict(),
                description=(
                    f"Collected {outcome.payment.amount} against demand {demand.demand_number} "
                    f"during visit {visit.visit_number}"
                ),
                metadata={'balance_after': demand.balance_amount, 'resolved': follow_up.is_resolved}
            )
            self.payment_service.render_receipt(outcome.payment)

        if outcome.notice:
            self.audit_trail.record(
                actor_id=actor.id,
                actor_role=role,
                event_type=AuditEventType.NOTICE_TRIGGERED,
                entity_type="notice",
                entity_id=outcome.notice.id,
                after=outcome.notice.to_dict(),
                description=(
                    f"Enforcement notice {outcome.notice.notice_number} triggered for demand "
                    f"{demand.demand_number} at escalation level {follow_up.escalation_level}"
                )
            )

        if outcome.became_enforcement_eligible:
            self.audit_trail.record(
                actor_id=actor.id,
                actor_role=role,
                event_type=AuditEventType.ENFORCEMENT_ELIGIBLE,
                entity_type="follow_up",
                entity_id=follow_up.id,
                description=f"Demand {demand.demand_number} became eligible for enforcement",
                metadata={'enforcement_eligible_date': follow_up.enforcement_eligible_date}
            )

    def get_visit(self, visit_id: str, actor: Optional[Actor] = None) -> FieldVisit:
        """Load a visit; collectors may only see their own"""
        data = self.storage.load(self.visits_table, visit_id)
        if not data:
            raise NotFoundError(f"Field visit {visit_id} not found")
        visit = FieldVisit.from_dict(data)
        if actor and actor.is_collector and visit.collector_id != actor.id:
            raise AuthorizationError("You can only view your own field visits")
        return visit

    def list_visits(
        self,
        demand_id: Optional[str] = None,
        collector_id: Optional[str] = None
    ) -> List[FieldVisit]:
        """Visits in the order they were recorded"""
        filters = {}
        if demand_id:
            filters['demand_id'] = demand_id
        if collector_id:
            filters['collector_id'] = collector_id
        visits = [FieldVisit.from_dict(data) for data in self.storage.find(self.visits_table, filters)]
        visits.sort(key=lambda v: (v.visit_date, v.visit_number))
        return visits

    def get_visit_context(self, actor: Actor, demand_id: str) -> Dict[str, Any]:
        """What a collector needs before visiting: demand, follow-up, history and the next expected escalation type"""
        if not actor.is_collector:
            raise AuthorizationError("Only collectors can access field visit context")

        demand = self.demand_manager.require_demand(demand_id)
        prop = self.directory.require_property(demand.property_id)
        if prop.ward_id not in self.directory.collector_ward_ids(actor.id):
            raise AuthorizationError(
                "You do not have access to this property. It is not in your assigned wards."
            )

        follow_up = self.follow_up_tracker.get_by_demand(demand.id)
        history = self.list_visits(demand_id=demand.id)
        escalation_count = sum(1 for v in history if v.visit_type.is_escalation)
        return {
            'demand': demand,
            'property': prop,
            'follow_up': follow_up,
            'visits': history,
            'next_escalation_sequence': escalation_count + 1,
            'expected_escalation_type': expected_visit_type(escalation_count + 1),
            'today': self.clock.today(),
        }
