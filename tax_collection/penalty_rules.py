"""
Penalty Rule Module

Penalty rules describe how an overdue demand grows: the penalty and interest
formulas, the amount they are computed on, the grace period and caps. A rule
applies to one financial year or to ``ALL`` years over an effective window.

Rules are immutable once created. A change of policy is expressed by
superseding: a new rule with a later effective date, leaving history intact.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import logging
import uuid

from .currency import ZERO, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError


logger = logging.getLogger(__name__)

ALL_YEARS = "ALL"


class ChargeType(Enum):
    """How a penalty or interest amount is computed"""
    NONE = "none"              # interest only
    FLAT = "flat"              # fixed amount per period
    PERCENTAGE = "percentage"  # percent of the chosen base per period


class ChargeFrequency(Enum):
    """How often a charge accrues"""
    ONE_TIME = "one_time"
    MONTHLY = "monthly"        # per started 30-day block
    DAILY = "daily"


class ChargeBase(Enum):
    """Which amount of the demand a percentage charge is computed on"""
    BASE_AMOUNT = "base_amount"
    TOTAL_AMOUNT = "total_amount"
    BALANCE_AMOUNT = "balance_amount"


@dataclass
class PenaltyRule(StorageRecord):
    """Late-payment penalty and interest policy"""
    financial_year: str
    rule_name: str
    penalty_type: ChargeType
    penalty_value: Decimal
    effective_from: date
    penalty_frequency: ChargeFrequency = ChargeFrequency.MONTHLY
    penalty_base: ChargeBase = ChargeBase.BASE_AMOUNT
    interest_type: ChargeType = ChargeType.NONE
    interest_value: Decimal = ZERO
    interest_frequency: ChargeFrequency = ChargeFrequency.MONTHLY
    interest_base: ChargeBase = ChargeBase.BALANCE_AMOUNT
    grace_period_days: int = 0
    max_penalty_amount: Optional[Decimal] = None
    max_interest_amount: Optional[Decimal] = None
    is_active: bool = True
    effective_to: Optional[date] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    supersedes_rule_id: Optional[str] = None

    def __post_init__(self):
        if self.penalty_type == ChargeType.NONE:
            raise ValueError("Penalty type must be flat or percentage")
        if to_decimal(self.penalty_value) < ZERO:
            raise ValueError("Penalty value cannot be negative")
        if to_decimal(self.interest_value) < ZERO:
            raise ValueError("Interest value cannot be negative")
        if self.grace_period_days < 0:
            raise ValueError("Grace period cannot be negative")
        if self.effective_to and self.effective_to < self.effective_from:
            raise ValueError("Rule effective_to must not precede effective_from")
        for cap_name in ('max_penalty_amount', 'max_interest_amount'):
            cap = getattr(self, cap_name)
            if cap is not None and to_decimal(cap) < ZERO:
                raise ValueError(f"{cap_name} cannot be negative")

    def is_effective_on(self, day: date) -> bool:
        """Active and day falls inside [effective_from, effective_to]"""
        if not self.is_active:
            return False
        if self.effective_from > day:
            return False
        return self.effective_to is None or self.effective_to >= day


class PenaltyRuleRegistry:
    """Stores penalty rules and resolves the one in force for a demand"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.rules_table = "penalty_rules"

    def create_rule(
        self,
        financial_year: str,
        rule_name: str,
        penalty_type: ChargeType,
        penalty_value: Decimal,
        effective_from: date,
        penalty_frequency: ChargeFrequency = ChargeFrequency.MONTHLY,
        penalty_base: ChargeBase = ChargeBase.BASE_AMOUNT,
        interest_type: ChargeType = ChargeType.NONE,
        interest_value: Decimal = ZERO,
        interest_frequency: ChargeFrequency = ChargeFrequency.MONTHLY,
        interest_base: ChargeBase = ChargeBase.BALANCE_AMOUNT,
        grace_period_days: int = 0,
        max_penalty_amount: Optional[Decimal] = None,
        max_interest_amount: Optional[Decimal] = None,
        effective_to: Optional[date] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        supersedes_rule_id: Optional[str] = None
    ) -> PenaltyRule:
        """Create a new penalty rule"""
        if not financial_year or not rule_name:
            raise ValidationError("Financial year and rule name are required")

        now = datetime.now(timezone.utc)
        try:
            rule = PenaltyRule(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                financial_year=financial_year,
                rule_name=rule_name,
                penalty_type=penalty_type,
                penalty_value=to_decimal(penalty_value),
                effective_from=effective_from,
                penalty_frequency=penalty_frequency,
                penalty_base=penalty_base,
                interest_type=interest_type,
                interest_value=to_decimal(interest_value),
                interest_frequency=interest_frequency,
                interest_base=interest_base,
                grace_period_days=grace_period_days,
                max_penalty_amount=to_decimal(max_penalty_amount) if max_penalty_amount is not None else None,
                max_interest_amount=to_decimal(max_interest_amount) if max_interest_amount is not None else None,
                effective_to=effective_to,
                description=description,
                created_by=created_by,
                supersedes_rule_id=supersedes_rule_id
            )
        except ValueError as e:
            raise ValidationError(str(e))

        self.storage.insert(self.rules_table, rule.id, rule.to_dict())
        logger.info("Created penalty rule %s (%s) for %s", rule.rule_name, rule.id, rule.financial_year)

        if self.audit_trail:
            self.audit_trail.record(
                actor_id=created_by,
                actor_role=None,
                event_type=AuditEventType.PENALTY_RULE_CREATED,
                entity_type="penalty_rule",
                entity_id=rule.id,
                after=rule.to_dict(),
                description=f"Penalty rule '{rule.rule_name}' created for {rule.financial_year}",
                metadata={'supersedes_rule_id': supersedes_rule_id}
            )
        return rule

    def supersede_rule(self, rule_id: str, effective_from: date, **changes) -> PenaltyRule:
        """
        Create a replacement for an existing rule.

        The new rule copies every setting of the old one, overridden by
        ``changes``, and takes effect from ``effective_from``. The old rule is
        not modified; the resolver prefers the later effective date.
        """
        old = self.require_rule(rule_id)
        if effective_from <= old.effective_from:
            raise ValidationError("A superseding rule must take effect after the rule it replaces")

        settings = {
            'financial_year': old.financial_year,
            'rule_name': old.rule_name,
            'penalty_type': old.penalty_type,
            'penalty_value': old.penalty_value,
            'penalty_frequency': old.penalty_frequency,
            'penalty_base': old.penalty_base,
            'interest_type': old.interest_type,
            'interest_value': old.interest_value,
            'interest_frequency': old.interest_frequency,
            'interest_base': old.interest_base,
            'grace_period_days': old.grace_period_days,
            'max_penalty_amount': old.max_penalty_amount,
            'max_interest_amount': old.max_interest_amount,
            'effective_to': old.effective_to,
            'description': old.description,
            'created_by': old.created_by,
        }
        unknown = set(changes) - set(settings)
        if unknown:
            raise ValidationError(f"Unknown rule settings: {', '.join(sorted(unknown))}")
        settings.update(changes)

        return self.create_rule(
            effective_from=effective_from,
            supersedes_rule_id=old.id,
            **settings
        )

    def get_rule(self, rule_id: str) -> Optional[PenaltyRule]:
        data = self.storage.load(self.rules_table, rule_id)
        return PenaltyRule.from_dict(data) if data else None

    def require_rule(self, rule_id: str) -> PenaltyRule:
        rule = self.get_rule(rule_id)
        if not rule:
            raise NotFoundError(f"Penalty rule {rule_id} not found")
        return rule

    def list_rules(
        self,
        financial_year: Optional[str] = None,
        active_only: bool = False
    ) -> List[PenaltyRule]:
        """Rules newest first, optionally filtered"""
        filters = {}
        if financial_year:
            filters['financial_year'] = financial_year
        if active_only:
            filters['is_active'] = True
        rules = [PenaltyRule.from_dict(data) for data in self.storage.find(self.rules_table, filters)]
        rules.sort(key=lambda r: (r.effective_from, r.created_at), reverse=True)
        return rules

    def resolve_rule(self, financial_year: str, as_of: date) -> Optional[PenaltyRule]:
        """
        Rule in force for a financial year on a civil date.

        An exact financial-year match beats an ``ALL`` rule; within a tier the
        latest effective_from wins. Returns None when no rule applies.
        """
        candidates = [
            rule for rule in (PenaltyRule.from_dict(data) for data in self.storage.load_all(self.rules_table))
            if rule.is_effective_on(as_of)
        ]

        for year in (financial_year, ALL_YEARS):
            tier = [rule for rule in candidates if rule.financial_year == year]
            if tier:
                tier.sort(key=lambda r: (r.effective_from, r.created_at), reverse=True)
                return tier[0]
        return None
