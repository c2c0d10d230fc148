"""
Shared fixtures: an in-memory collection system on a frozen civil clock,
with one ward, one collector, one property and one overdue demand.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from tax_collection.clock import FixedClock
from tax_collection.config import CollectionConfig
from tax_collection.storage import InMemoryStorage
from tax_collection.system import CollectionSystem
from tax_collection.directory import Actor, ActorRole


TODAY = date(2024, 8, 10)
FINANCIAL_YEAR = "2024-25"

ADMIN = Actor(id="ADMIN01", role=ActorRole.ADMIN, name="Revenue Officer")


@pytest.fixture
def clock():
    return FixedClock.at_date(TODAY)


@pytest.fixture
def system(clock):
    config = CollectionConfig(database_url="memory://")
    return CollectionSystem(storage=InMemoryStorage(), config=config, clock=clock)


@pytest.fixture
def collector(system):
    return system.directory.create_collector("Ravi Kumar", collector_id="COL001")


@pytest.fixture
def collector_actor(collector):
    return collector.as_actor()


@pytest.fixture
def ward(system, collector):
    return system.directory.create_ward("W-01", "Shivaji Nagar", collector_id=collector.id, ward_id="WARD01")


@pytest.fixture
def prop(system, ward):
    return system.directory.create_property(
        "PROP-0001", ward.id,
        owner_name="Asha Patil",
        owner_id="OWN001",
        address="12 Station Road",
        property_id="PROP001"
    )


@pytest.fixture
def demand(system, prop):
    """Base 1000, due 40 days before TODAY"""
    return system.demand_manager.create_demand(
        prop.id, FINANCIAL_YEAR, Decimal("1000"),
        TODAY - timedelta(days=40),
        demand_number="DM-0001",
        demand_id="DEM001"
    )
