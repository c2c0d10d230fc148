"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every accrual, visit, payment, notice and task change is logged here.
"""

import hashlib
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, to_storable


logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events"""
    # Accrual events
    PENALTY_APPLIED = "PENALTY_APPLIED"
    ACCRUAL_RUN_COMPLETED = "ACCRUAL_RUN_COMPLETED"
    PENALTY_RULE_CREATED = "PENALTY_RULE_CREATED"

    # Field events
    FIELD_VISIT = "FIELD_VISIT"
    FOLLOW_UP = "FOLLOW_UP"
    ENFORCEMENT_ELIGIBLE = "ENFORCEMENT_ELIGIBLE"
    NOTICE_TRIGGERED = "NOTICE_TRIGGERED"
    PAYMENT_COLLECTED = "PAYMENT_COLLECTED"

    # Task events
    TASK_GENERATED = "TASK_GENERATED"
    TASK_COMPLETED = "TASK_COMPLETED"

    # System events
    SYSTEM_START = "SYSTEM_START"
    AUDIT_INTEGRITY_CHECK = "AUDIT_INTEGRITY_CHECK"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # demand, follow_up, field_visit, collector_task, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    sequence: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    description: str = ""
    previous_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        # Keep payloads JSON-safe so the hash is stable across backends
        self.metadata = to_storable(self.metadata or {})
        if self.previous_data is not None:
            self.previous_data = to_storable(self.previous_data)
        if self.new_data is not None:
            self.new_data = to_storable(self.new_data)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'user_id': self.user_id,
            'user_role': self.user_role,
            'description': self.description,
            'previous_data': self.previous_data,
            'new_data': self.new_data,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._last_sequence = latest.get('sequence', 0)
        else:
            self._last_hash = None
            self._last_sequence = 0

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        user_role: Optional[str] = None,
        description: str = "",
        previous_data: Optional[Dict[str, Any]] = None,
        new_data: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who initiated the action
            user_role: Role of the actor (collector, admin, system)
            description: Human-readable summary
            previous_data: Entity snapshot before the change
            new_data: Entity snapshot after the change

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            # Re-load chain head in case another writer appended
            self._load_chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                sequence=self._last_sequence + 1,
                metadata=metadata or {},
                user_id=user_id,
                user_role=user_role,
                description=description,
                previous_data=previous_data,
                new_data=new_data
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._last_sequence = event.sequence
            return event

    def record(
        self,
        actor_id: Optional[str],
        actor_role: Optional[str],
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """
        Fire-and-forget audit entry.

        Failures are logged and swallowed; the business operation that
        triggered the entry has already been committed.
        """
        if not self.enabled:
            return None
        try:
            return self.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=actor_id,
                user_role=actor_role,
                description=description,
                previous_data=before,
                new_data=after
            )
        except Exception:
            logger.exception(
                "Audit write failed for %s %s/%s", event_type.value, entity_type, entity_id
            )
            return None

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of events to return

        Returns:
            List of AuditEvent objects in chain order
        """
        filters = {
            'entity_type': entity_type,
            'entity_id': entity_id
        }
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        events.sort(key=lambda x: x.sequence)

        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events of one type in chain order"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'event_type': event_type.value})
        ]
        events.sort(key=lambda x: x.sequence)

        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """Get all audit events in chain order"""
        events = self._all_events()
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'details': {}
        }

        events = self._all_events()
        if not events:
            return result

        result['total_events'] = len(events)

        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })

        previous_hash = ""
        for i, event in enumerate(events):
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        result['details'] = {
            'first_event_time': events[0].created_at.isoformat(),
            'last_event_time': events[-1].created_at.isoformat(),
            'event_types': sorted(set(e.event_type.value for e in events)),
            'entity_types': sorted(set(e.entity_type for e in events))
        }

        return result

    def check_integrity(self, actor_id: Optional[str], actor_role: Optional[str]) -> Dict[str, Any]:
        """Verify the chain and record that the check ran, with its outcome"""
        result = self.verify_integrity()
        self.record(
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
            entity_type="audit_trail",
            entity_id=self.table_name,
            description="Audit chain verified" if result['valid'] else "Audit chain verification failed",
            metadata={
                'valid': result['valid'],
                'total_events': result['total_events'],
                'hash_errors': len(result['hash_errors']),
                'chain_breaks': len(result['chain_breaks'])
            }
        )
        return result

    def get_event_by_id(self, event_id: str) -> Optional[AuditEvent]:
        """Get a specific audit event by ID"""
        event_data = self.storage.load(self.table_name, event_id)
        if event_data:
            return AuditEvent.from_dict(event_data)
        return None

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        self._load_chain_head()
        return self._last_hash
