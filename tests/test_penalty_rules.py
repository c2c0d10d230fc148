"""
Test suite for the penalty rule registry

Tests rule validation, resolution precedence, effective windows and
superseding rules.
"""

import pytest
from datetime import date
from decimal import Decimal

from tax_collection.storage import InMemoryStorage
from tax_collection.audit import AuditTrail, AuditEventType
from tax_collection.penalty_rules import (
    PenaltyRuleRegistry, ChargeType, ChargeFrequency, ALL_YEARS
)
from tax_collection.errors import ValidationError, NotFoundError


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def registry(storage, audit_trail):
    return PenaltyRuleRegistry(storage, audit_trail)


def create(registry, financial_year="2024-25", effective_from=date(2024, 4, 1), **kwargs):
    settings = dict(
        rule_name=f"Rule {financial_year} {effective_from}",
        penalty_type=ChargeType.PERCENTAGE,
        penalty_value=Decimal("2"),
    )
    settings.update(kwargs)
    return registry.create_rule(financial_year=financial_year, effective_from=effective_from, **settings)


class TestRuleCreation:
    """Test creating rules"""

    def test_create_rule(self, registry, audit_trail):
        """Test a valid rule is stored and audited"""
        rule = create(registry, created_by="ADMIN01")

        stored = registry.get_rule(rule.id)
        assert stored.penalty_value == Decimal("2")
        assert stored.penalty_frequency == ChargeFrequency.MONTHLY

        events = audit_trail.get_events_by_type(AuditEventType.PENALTY_RULE_CREATED)
        assert len(events) == 1
        assert events[0].entity_id == rule.id

    def test_penalty_type_none_rejected(self, registry):
        """Test a rule must carry a penalty"""
        with pytest.raises(ValidationError):
            create(registry, penalty_type=ChargeType.NONE)

    def test_negative_value_rejected(self, registry):
        """Test negative values are rejected"""
        with pytest.raises(ValidationError):
            create(registry, penalty_value=Decimal("-1"))

    def test_inverted_window_rejected(self, registry):
        """Test effective_to before effective_from is rejected"""
        with pytest.raises(ValidationError):
            create(registry, effective_to=date(2024, 3, 1))


class TestRuleResolution:
    """Test choosing the rule in force"""

    def test_exact_year_beats_all(self, registry):
        """Test a financial-year rule wins over an ALL rule"""
        create(registry, financial_year=ALL_YEARS, effective_from=date(2024, 6, 1))
        exact = create(registry, financial_year="2024-25", effective_from=date(2024, 4, 1))

        assert registry.resolve_rule("2024-25", date(2024, 8, 10)).id == exact.id

    def test_falls_back_to_all(self, registry):
        """Test ALL applies when no exact rule exists"""
        fallback = create(registry, financial_year=ALL_YEARS)
        assert registry.resolve_rule("2023-24", date(2024, 8, 10)).id == fallback.id

    def test_latest_effective_from_wins(self, registry):
        """Test the most recent rule in a tier wins"""
        create(registry, effective_from=date(2024, 4, 1))
        newer = create(registry, effective_from=date(2024, 7, 1))

        assert registry.resolve_rule("2024-25", date(2024, 8, 10)).id == newer.id
        assert registry.resolve_rule("2024-25", date(2024, 6, 10)).id != newer.id

    def test_expired_and_future_rules_ignored(self, registry):
        """Test the effective window bounds"""
        create(registry, effective_from=date(2024, 4, 1), effective_to=date(2024, 6, 30))
        create(registry, effective_from=date(2024, 9, 1))

        assert registry.resolve_rule("2024-25", date(2024, 8, 10)) is None

    def test_no_rule(self, registry):
        """Test None when nothing matches"""
        assert registry.resolve_rule("2024-25", date(2024, 8, 10)) is None


class TestSupersede:
    """Test replacing a rule"""

    def test_supersede_creates_new_rule(self, registry):
        """Test the old rule is untouched and the new one resolves"""
        old = create(registry, penalty_value=Decimal("2"))
        new = registry.supersede_rule(old.id, date(2024, 8, 1), penalty_value=Decimal("3"))

        assert new.supersedes_rule_id == old.id
        assert registry.get_rule(old.id).penalty_value == Decimal("2")
        assert registry.resolve_rule("2024-25", date(2024, 8, 10)).id == new.id
        assert registry.resolve_rule("2024-25", date(2024, 7, 10)).id == old.id

    def test_supersede_requires_later_date(self, registry):
        """Test a replacement cannot start before the original"""
        old = create(registry)
        with pytest.raises(ValidationError):
            registry.supersede_rule(old.id, date(2024, 4, 1))

    def test_supersede_unknown_rule(self, registry):
        """Test superseding a missing rule"""
        with pytest.raises(NotFoundError):
            registry.supersede_rule("missing", date(2024, 8, 1))

    def test_supersede_unknown_setting(self, registry):
        """Test unknown settings are rejected"""
        old = create(registry)
        with pytest.raises(ValidationError):
            registry.supersede_rule(old.id, date(2024, 8, 1), colour="red")
