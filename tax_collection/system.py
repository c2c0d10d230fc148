"""
Collection system wiring

Builds every engine component over one storage backend and one civil clock.
The API, CLI and scheduled jobs all work through a CollectionSystem.
"""

from typing import Optional
import logging

from .config import CollectionConfig, get_config
from .clock import CivilClock
from .storage import StorageInterface, create_storage
from .audit import AuditTrail, AuditEventType
from .numbering import SequenceGenerator
from .directory import Directory, SYSTEM_ACTOR
from .demands import DemandManager
from .penalty_rules import PenaltyRuleRegistry
from .accrual_scheduler import AccrualScheduler
from .follow_ups import FollowUpTracker
from .notices import NoticeService
from .payments import PaymentMode, PaymentService, ReceiptRenderer
from .visits import VisitRecorder
from .tasks import TaskSynthesizer


logger = logging.getLogger(__name__)


class CollectionSystem:
    """Tax collection engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[CollectionConfig] = None,
        clock: Optional[CivilClock] = None,
        receipt_renderer: Optional[ReceiptRenderer] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock or CivilClock(self.config.timezone)

        # Shared services
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.sequences = SequenceGenerator(self.storage)
        self.directory = Directory(self.storage)
        self.demand_manager = DemandManager(self.storage)
        self.rule_registry = PenaltyRuleRegistry(self.storage, self.audit_trail)
        self.follow_up_tracker = FollowUpTracker(self.storage)

        # Collaborators
        self.notice_service = NoticeService(
            self.storage, self.sequences, self.clock,
            due_days=self.config.enforcement_notice_due_days
        )
        self.payment_service = PaymentService(
            self.storage, self.demand_manager, self.sequences, self.clock, receipt_renderer
        )

        # Engine components
        self.accrual_scheduler = AccrualScheduler(
            self.storage, self.demand_manager, self.rule_registry, self.audit_trail, self.clock
        )
        self.visit_recorder = VisitRecorder(
            self.storage,
            self.demand_manager,
            self.directory,
            self.follow_up_tracker,
            self.payment_service,
            self.notice_service,
            self.sequences,
            self.audit_trail,
            self.clock,
            notice_level=self.config.enforcement_notice_level,
            promise_buffer_days=self.config.promise_buffer_days,
            not_available_retry_days=self.config.not_available_retry_days,
            refused_retry_days=self.config.refused_retry_days,
            default_payment_mode=PaymentMode(self.config.default_payment_mode)
        )
        self.task_synthesizer = TaskSynthesizer(
            self.storage,
            self.demand_manager,
            self.directory,
            self.follow_up_tracker,
            self.sequences,
            self.audit_trail,
            self.clock
        )

    def announce_start(self, component: str) -> None:
        """Audit that a long-running component came up"""
        self.audit_trail.record(
            actor_id=SYSTEM_ACTOR.id,
            actor_role=SYSTEM_ACTOR.role.value,
            event_type=AuditEventType.SYSTEM_START,
            entity_type="system",
            entity_id=component,
            description=f"{component} started"
        )
        logger.info("%s started (storage: %s, timezone: %s)",
                    component, type(self.storage).__name__, self.clock.tz_name)

    def close(self) -> None:
        self.storage.close()


_system: Optional[CollectionSystem] = None


def get_system() -> CollectionSystem:
    """Process-wide system built from configuration on first use"""
    global _system
    if _system is None:
        _system = CollectionSystem()
    return _system


def set_system(system: Optional[CollectionSystem]) -> None:
    """Replace the process-wide system"""
    global _system
    _system = system
