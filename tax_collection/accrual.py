"""
Accrual Calculator

Pure functions computing overdue days, penalty and interest for a demand
under a penalty rule, plus the idempotency guard and the in-place
application of a fresh accrual.

Charges are recomputed from scratch on each application, never added
incrementally, so repeating an application in the same window leaves the
amounts unchanged.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional
import math

from .currency import ZERO, round_amount
from .clock import CivilClock
from .demands import Demand, DemandStatus
from .penalty_rules import PenaltyRule, ChargeType, ChargeFrequency, ChargeBase


_HUNDRED = Decimal("100")


@dataclass
class AccrualResult:
    """Before and after amounts of one accrual application"""
    demand_id: str
    rule_id: str
    rule_name: str
    overdue_days: int
    previous_penalty: Decimal
    previous_interest: Decimal
    previous_total: Decimal
    previous_balance: Decimal
    new_penalty: Decimal
    new_interest: Decimal
    new_total: Decimal
    new_balance: Decimal

    @property
    def penalty_added(self) -> Decimal:
        return round_amount(self.new_penalty - self.previous_penalty)

    @property
    def interest_added(self) -> Decimal:
        return round_amount(self.new_interest - self.previous_interest)

    @property
    def changed(self) -> bool:
        return self.penalty_added != ZERO or self.interest_added != ZERO

    def previous_amounts(self) -> Dict[str, Any]:
        return {
            'penalty_amount': self.previous_penalty,
            'interest_amount': self.previous_interest,
            'total_amount': self.previous_total,
            'balance_amount': self.previous_balance,
        }

    def new_amounts(self) -> Dict[str, Any]:
        return {
            'penalty_amount': self.new_penalty,
            'interest_amount': self.new_interest,
            'total_amount': self.new_total,
            'balance_amount': self.new_balance,
            'overdue_days': self.overdue_days,
        }


def calculate_overdue_days(due_date: date, grace_period_days: int, today: date) -> int:
    """Whole civil days past due, less the grace period, floored at zero"""
    days = (today - due_date).days - (grace_period_days or 0)
    return max(0, days)


def select_base(demand: Demand, base: ChargeBase) -> Decimal:
    """
    Amount a percentage charge is computed on.

    ``balance_amount`` is the outstanding principal: the balance before any
    accrued penalty or interest posts.
    """
    if base == ChargeBase.BASE_AMOUNT:
        return demand.base_amount
    if base == ChargeBase.TOTAL_AMOUNT:
        return round_amount(demand.base_amount + demand.arrears_amount)
    return demand.principal_outstanding


def _period_multiplier(frequency: ChargeFrequency, overdue_days: int) -> int:
    if frequency == ChargeFrequency.ONE_TIME:
        return 1
    if frequency == ChargeFrequency.MONTHLY:
        return math.ceil(overdue_days / 30)
    return overdue_days


def _charge(
    charge_type: ChargeType,
    value: Decimal,
    frequency: ChargeFrequency,
    base_amount: Decimal,
    cap: Optional[Decimal],
    overdue_days: int
) -> Decimal:
    if overdue_days <= 0 or base_amount <= ZERO or charge_type == ChargeType.NONE:
        return ZERO

    multiplier = _period_multiplier(frequency, overdue_days)
    if charge_type == ChargeType.FLAT:
        amount = value * multiplier
    else:
        amount = base_amount * value * multiplier / _HUNDRED

    if cap is not None and amount > cap:
        amount = cap
    return round_amount(amount)


def calculate_penalty(demand: Demand, rule: PenaltyRule, overdue_days: int) -> Decimal:
    """Penalty due for the given overdue days, capped and rounded"""
    return _charge(
        rule.penalty_type,
        rule.penalty_value,
        rule.penalty_frequency,
        select_base(demand, rule.penalty_base),
        rule.max_penalty_amount,
        overdue_days
    )


def calculate_interest(demand: Demand, rule: PenaltyRule, overdue_days: int) -> Decimal:
    """Interest due for the given overdue days, capped and rounded"""
    return _charge(
        rule.interest_type,
        rule.interest_value,
        rule.interest_frequency,
        select_base(demand, rule.interest_base),
        rule.max_interest_amount,
        overdue_days
    )


def should_apply(
    demand: Demand,
    rule: Optional[PenaltyRule],
    overdue_days: int,
    today: date,
    clock: Optional[CivilClock] = None
) -> bool:
    """True when accrual is due; see skip_reason for why it is not"""
    return skip_reason(demand, rule, overdue_days, today, clock) is None


def skip_reason(
    demand: Demand,
    rule: Optional[PenaltyRule],
    overdue_days: int,
    today: date,
    clock: Optional[CivilClock] = None
) -> Optional[str]:
    """
    Reason accrual must not be applied now, or None when it should be.

    The accrual window follows the rule's penalty frequency: once per civil
    day for daily rules, once per calendar month for monthly rules and once
    ever for one-time rules.
    """
    if rule is None:
        return "No active penalty rule found"
    if overdue_days <= 0:
        return "Within grace period"
    if demand.status in (DemandStatus.PAID, DemandStatus.CANCELLED):
        return f"Demand is {demand.status.value}"
    if demand.balance_amount <= ZERO:
        return "No outstanding balance"

    if rule.penalty_frequency == ChargeFrequency.ONE_TIME:
        if demand.penalty_amount > ZERO:
            return "One-time penalty already applied"
        return None

    if demand.last_penalty_applied_at is None:
        return None

    last = (clock or CivilClock()).civil_date(demand.last_penalty_applied_at)
    if today < last:
        return "Already accrued through a later date"
    if rule.penalty_frequency == ChargeFrequency.DAILY and last == today:
        return "Already applied today"
    if rule.penalty_frequency == ChargeFrequency.MONTHLY and (last.year, last.month) == (today.year, today.month):
        return "Already applied this month"
    return None


def apply_accrual(
    demand: Demand,
    rule: PenaltyRule,
    overdue_days: int,
    applied_at: datetime
) -> AccrualResult:
    """
    Recompute penalty and interest on the demand in place.

    Posted charges never decrease: a recomputation that comes out lower
    (for example after a part payment shrinks the outstanding principal)
    keeps the previously posted figure. The caller persists the demand.
    """
    previous_penalty = demand.penalty_amount
    previous_interest = demand.interest_amount
    previous_total = demand.total_amount
    previous_balance = demand.balance_amount

    new_penalty = max(previous_penalty, calculate_penalty(demand, rule, overdue_days))
    new_interest = max(previous_interest, calculate_interest(demand, rule, overdue_days))

    demand.penalty_amount = new_penalty
    demand.interest_amount = new_interest
    demand.recompute_totals()
    demand.overdue_days = max(demand.overdue_days, overdue_days)
    demand.last_penalty_applied_at = applied_at
    demand.penalty_rule_id = rule.id

    if demand.status == DemandStatus.PENDING and overdue_days > 0:
        demand.status = DemandStatus.OVERDUE

    demand.penalty_breakdown.append({
        'date': applied_at.isoformat(),
        'overdue_days': overdue_days,
        'penalty': str(round_amount(new_penalty - previous_penalty)),
        'interest': str(round_amount(new_interest - previous_interest)),
        'total_penalty': str(new_penalty),
        'total_interest': str(new_interest),
        'rule_id': rule.id,
        'reason': f"Auto-applied by accrual run (Rule: {rule.rule_name})",
    })

    return AccrualResult(
        demand_id=demand.id,
        rule_id=rule.id,
        rule_name=rule.rule_name,
        overdue_days=overdue_days,
        previous_penalty=previous_penalty,
        previous_interest=previous_interest,
        previous_total=previous_total,
        previous_balance=previous_balance,
        new_penalty=new_penalty,
        new_interest=new_interest,
        new_total=demand.total_amount,
        new_balance=demand.balance_amount
    )
