"""
Directory Module

Read models for the records the engine consumes but does not own: properties,
wards and their collector assignment, collector accounts and duty attendance.
Registration and assessment of these records happen elsewhere; this module
keeps just enough of them to drive accrual, visits and task generation.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import NotFoundError, ValidationError, ConflictError


class ActorRole(Enum):
    """Roles that can act on the engine"""
    COLLECTOR = "collector"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Identity of whoever triggered an operation"""
    id: str
    role: ActorRole
    name: Optional[str] = None

    @property
    def is_collector(self) -> bool:
        return self.role == ActorRole.COLLECTOR

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM, name="Scheduler")


@dataclass
class Property(StorageRecord):
    """Taxable property"""
    property_number: str
    ward_id: str
    owner_id: Optional[str] = None
    owner_name: str = ""
    address: str = ""


@dataclass
class Ward(StorageRecord):
    """Ward with its assigned collector"""
    ward_number: str
    ward_name: str = ""
    collector_id: Optional[str] = None
    is_active: bool = True


@dataclass
class Collector(StorageRecord):
    """Field staff account"""
    name: str
    role: ActorRole = ActorRole.COLLECTOR
    phone: Optional[str] = None
    is_active: bool = True

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role, name=self.name)


@dataclass
class AttendanceSession(StorageRecord):
    """A collector's duty window between check-in and check-out"""
    collector_id: str
    login_at: datetime
    logout_at: Optional[datetime] = None
    login_latitude: Optional[float] = None
    login_longitude: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.logout_at is None


class Directory:
    """Properties, wards, collectors and attendance"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.properties_table = "properties"
        self.wards_table = "wards"
        self.collectors_table = "collectors"
        self.attendance_table = "collector_attendance"

    # Properties

    def create_property(
        self,
        property_number: str,
        ward_id: str,
        owner_name: str = "",
        owner_id: Optional[str] = None,
        address: str = "",
        property_id: Optional[str] = None
    ) -> Property:
        """Register a property for collection purposes"""
        if not self.storage.exists(self.wards_table, ward_id):
            raise NotFoundError(f"Ward {ward_id} not found")

        now = datetime.now(timezone.utc)
        prop = Property(
            id=property_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            property_number=property_number,
            ward_id=ward_id,
            owner_id=owner_id,
            owner_name=owner_name,
            address=address
        )
        self.storage.insert(self.properties_table, prop.id, prop.to_dict())
        return prop

    def get_property(self, property_id: str) -> Optional[Property]:
        data = self.storage.load(self.properties_table, property_id)
        return Property.from_dict(data) if data else None

    def require_property(self, property_id: str) -> Property:
        prop = self.get_property(property_id)
        if not prop:
            raise NotFoundError(f"Property {property_id} not found")
        return prop

    def properties_in_wards(self, ward_ids: List[str]) -> Dict[str, Property]:
        """Properties keyed by id for the given wards"""
        wanted = set(ward_ids)
        result = {}
        for data in self.storage.load_all(self.properties_table):
            if data.get('ward_id') in wanted:
                prop = Property.from_dict(data)
                result[prop.id] = prop
        return result

    # Wards

    def create_ward(
        self,
        ward_number: str,
        ward_name: str = "",
        collector_id: Optional[str] = None,
        ward_id: Optional[str] = None
    ) -> Ward:
        now = datetime.now(timezone.utc)
        ward = Ward(
            id=ward_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            ward_number=ward_number,
            ward_name=ward_name,
            collector_id=collector_id
        )
        self.storage.insert(self.wards_table, ward.id, ward.to_dict())
        return ward

    def get_ward(self, ward_id: str) -> Optional[Ward]:
        data = self.storage.load(self.wards_table, ward_id)
        return Ward.from_dict(data) if data else None

    def assign_ward(self, ward_id: str, collector_id: Optional[str]) -> Ward:
        """Assign a ward to a collector, or unassign with None"""
        ward = self.get_ward(ward_id)
        if not ward:
            raise NotFoundError(f"Ward {ward_id} not found")
        if collector_id is not None:
            self.require_collector(collector_id)

        ward.collector_id = collector_id
        ward.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.wards_table, ward.id, ward.to_dict())
        return ward

    def collector_ward_ids(self, collector_id: str) -> List[str]:
        """Active wards assigned to a collector"""
        return [
            data['id'] for data in self.storage.find(self.wards_table, {'collector_id': collector_id})
            if data.get('is_active', True)
        ]

    # Collectors

    def create_collector(
        self,
        name: str,
        role: ActorRole = ActorRole.COLLECTOR,
        phone: Optional[str] = None,
        collector_id: Optional[str] = None
    ) -> Collector:
        now = datetime.now(timezone.utc)
        collector = Collector(
            id=collector_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            role=role,
            phone=phone
        )
        self.storage.insert(self.collectors_table, collector.id, collector.to_dict())
        return collector

    def get_collector(self, collector_id: str) -> Optional[Collector]:
        data = self.storage.load(self.collectors_table, collector_id)
        return Collector.from_dict(data) if data else None

    def require_collector(self, collector_id: str) -> Collector:
        collector = self.get_collector(collector_id)
        if not collector:
            raise NotFoundError(f"Collector {collector_id} not found")
        return collector

    def list_active_collectors(self) -> List[Collector]:
        """Active accounts with the collector role"""
        collectors = [
            Collector.from_dict(data)
            for data in self.storage.find(self.collectors_table, {
                'role': ActorRole.COLLECTOR.value,
                'is_active': True
            })
        ]
        collectors.sort(key=lambda c: c.name)
        return collectors

    # Attendance

    def check_in(
        self,
        collector_id: str,
        at: Optional[datetime] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None
    ) -> AttendanceSession:
        """Open a duty session; a collector can have only one open session"""
        self.require_collector(collector_id)
        if self.open_session(collector_id):
            raise ConflictError(f"Collector {collector_id} is already checked in")

        now = datetime.now(timezone.utc)
        session = AttendanceSession(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            collector_id=collector_id,
            login_at=at or now,
            login_latitude=latitude,
            login_longitude=longitude
        )
        self.storage.insert(self.attendance_table, session.id, session.to_dict())
        return session

    def check_out(self, collector_id: str, at: Optional[datetime] = None) -> AttendanceSession:
        """Close the collector's open duty session"""
        session = self.open_session(collector_id)
        if not session:
            raise ValidationError(f"Collector {collector_id} has no open attendance session")

        now = datetime.now(timezone.utc)
        session.logout_at = at or now
        session.updated_at = now
        self.storage.save(self.attendance_table, session.id, session.to_dict())
        return session

    def open_session(self, collector_id: str) -> Optional[AttendanceSession]:
        """Most recent session without a logout, if any"""
        sessions = [
            AttendanceSession.from_dict(data)
            for data in self.storage.find(self.attendance_table, {'collector_id': collector_id})
        ]
        open_sessions = [s for s in sessions if s.is_open]
        if not open_sessions:
            return None
        return max(open_sessions, key=lambda s: s.login_at)
