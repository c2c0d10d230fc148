"""
Demand Module

A demand is the amount owed on one property for one financial year. Its
penalty and interest grow through accrual; its paid amount grows through
payment posting. Nothing else changes the amounts and demands are never
deleted.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import ZERO, round_amount, to_decimal
from .storage import StorageInterface, StorageRecord
from .errors import NotFoundError, ValidationError, PaymentExceedsBalanceError


class DemandStatus(Enum):
    """Lifecycle status of a demand"""
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


OPEN_STATUSES = (DemandStatus.PENDING, DemandStatus.PARTIALLY_PAID, DemandStatus.OVERDUE)


@dataclass
class Demand(StorageRecord):
    """Tax demand with accrued penalty and interest"""
    demand_number: str
    property_id: str
    financial_year: str
    base_amount: Decimal
    due_date: date
    service_type: str = "HOUSE_TAX"
    arrears_amount: Decimal = ZERO
    penalty_amount: Decimal = ZERO
    interest_amount: Decimal = ZERO
    total_amount: Optional[Decimal] = None
    paid_amount: Decimal = ZERO
    balance_amount: Optional[Decimal] = None
    status: DemandStatus = DemandStatus.PENDING
    overdue_days: int = 0
    last_penalty_applied_at: Optional[datetime] = None
    penalty_rule_id: Optional[str] = None
    penalty_breakdown: List[Dict[str, Any]] = field(default_factory=list)
    remarks: Optional[str] = None

    def __post_init__(self):
        for name in ('base_amount', 'arrears_amount', 'penalty_amount',
                     'interest_amount', 'paid_amount'):
            value = round_amount(getattr(self, name))
            if value < ZERO:
                raise ValueError(f"{name} cannot be negative")
            setattr(self, name, value)

        if self.total_amount is None or self.balance_amount is None:
            self.recompute_totals()
        else:
            self.total_amount = round_amount(self.total_amount)
            self.balance_amount = round_amount(self.balance_amount)

    def recompute_totals(self) -> None:
        """total = base + arrears + penalty + interest; balance = total - paid"""
        self.total_amount = round_amount(
            self.base_amount + self.arrears_amount + self.penalty_amount + self.interest_amount
        )
        self.balance_amount = round_amount(self.total_amount - self.paid_amount)

    @property
    def principal_outstanding(self) -> Decimal:
        """Unpaid base plus arrears, before any accrued charge"""
        return max(ZERO, round_amount(self.base_amount + self.arrears_amount - self.paid_amount))

    @property
    def accrued_charges(self) -> Decimal:
        return round_amount(self.penalty_amount + self.interest_amount)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES and self.balance_amount > ZERO

    @property
    def is_settled(self) -> bool:
        return self.status == DemandStatus.PAID or self.balance_amount <= ZERO

    def days_past_due(self, today: date) -> int:
        """Civil days since the due date, zero when not yet due"""
        return max(0, (today - self.due_date).days)

    def amounts_snapshot(self) -> Dict[str, Any]:
        """Amounts and status, for audit before/after images"""
        return {
            'penalty_amount': self.penalty_amount,
            'interest_amount': self.interest_amount,
            'total_amount': self.total_amount,
            'paid_amount': self.paid_amount,
            'balance_amount': self.balance_amount,
            'overdue_days': self.overdue_days,
            'status': self.status,
        }


class DemandManager:
    """Manager for demands and payment posting"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.demands_table = "demands"

    def create_demand(
        self,
        property_id: str,
        financial_year: str,
        base_amount: Decimal,
        due_date: date,
        arrears_amount: Decimal = ZERO,
        service_type: str = "HOUSE_TAX",
        demand_number: Optional[str] = None,
        demand_id: Optional[str] = None
    ) -> Demand:
        """Raise a new demand against a property"""
        base_amount = to_decimal(base_amount)
        if base_amount <= ZERO:
            raise ValidationError("Demand base amount must be positive")

        now = datetime.now(timezone.utc)
        demand_id = demand_id or str(uuid.uuid4())
        demand = Demand(
            id=demand_id,
            created_at=now,
            updated_at=now,
            demand_number=demand_number or f"DM-{financial_year}-{demand_id[:8].upper()}",
            property_id=property_id,
            financial_year=financial_year,
            base_amount=base_amount,
            arrears_amount=to_decimal(arrears_amount),
            due_date=due_date,
            service_type=service_type
        )
        self.storage.insert(self.demands_table, demand.id, demand.to_dict())
        return demand

    def get_demand(self, demand_id: str) -> Optional[Demand]:
        """Get demand by ID"""
        data = self.storage.load(self.demands_table, demand_id)
        return Demand.from_dict(data) if data else None

    def require_demand(self, demand_id: str) -> Demand:
        demand = self.get_demand(demand_id)
        if not demand:
            raise NotFoundError(f"Demand {demand_id} not found")
        return demand

    def lock_demand(self, demand_id: str) -> Demand:
        """Load a demand holding its row lock; call inside storage.atomic()"""
        data = self.storage.lock_for_update(self.demands_table, demand_id)
        if not data:
            raise NotFoundError(f"Demand {demand_id} not found")
        return Demand.from_dict(data)

    def save_demand(self, demand: Demand) -> None:
        demand.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.demands_table, demand.id, demand.to_dict())

    def list_demands(
        self,
        property_id: Optional[str] = None,
        status: Optional[DemandStatus] = None
    ) -> List[Demand]:
        filters = {}
        if property_id:
            filters['property_id'] = property_id
        if status:
            filters['status'] = status.value
        demands = [Demand.from_dict(data) for data in self.storage.find(self.demands_table, filters)]
        demands.sort(key=lambda d: (d.due_date, d.demand_number))
        return demands

    def _open_demands(self) -> List[Demand]:
        open_values = {s.value for s in OPEN_STATUSES}
        return [
            Demand.from_dict(data)
            for data in self.storage.load_all(self.demands_table)
            if data.get('status') in open_values
        ]

    def find_accrual_candidates(self, as_of: date) -> List[Demand]:
        """Open demands with a positive balance whose due date has passed, oldest first"""
        demands = [
            d for d in self._open_demands()
            if d.balance_amount > ZERO and d.due_date < as_of
        ]
        demands.sort(key=lambda d: (d.due_date, d.demand_number))
        return demands

    def find_collectible(self, property_ids: List[str], as_of: date) -> List[Demand]:
        """Open demands due on or before as_of for the given properties"""
        wanted = set(property_ids)
        demands = [
            d for d in self._open_demands()
            if d.property_id in wanted and d.balance_amount > ZERO and d.due_date <= as_of
        ]
        demands.sort(key=lambda d: (d.due_date, d.demand_number))
        return demands

    def post_payment(self, demand: Demand, amount: Decimal) -> Demand:
        """
        Apply a collected amount to a demand in place and persist it.

        The amount must be positive and no larger than the balance; the demand
        moves to paid at zero balance, otherwise to partially paid.
        """
        amount = round_amount(amount)
        if amount <= ZERO:
            raise ValidationError("Payment amount must be greater than zero")
        if demand.status in (DemandStatus.PAID, DemandStatus.CANCELLED):
            raise ValidationError(f"Demand {demand.demand_number} is {demand.status.value}")
        if amount > demand.balance_amount:
            raise PaymentExceedsBalanceError(amount, demand.balance_amount)

        demand.paid_amount = round_amount(demand.paid_amount + amount)
        demand.recompute_totals()
        if demand.balance_amount <= ZERO:
            demand.status = DemandStatus.PAID
        else:
            demand.status = DemandStatus.PARTIALLY_PAID

        self.save_demand(demand)
        return demand
