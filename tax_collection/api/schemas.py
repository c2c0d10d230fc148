"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, Field

from ..follow_ups import VisitType, CitizenResponse
from ..payments import PaymentMode
from ..penalty_rules import ChargeType, ChargeFrequency, ChargeBase


# Visit schemas
class RecordVisitRequest(BaseModel):
    demand_id: str
    visit_type: VisitType
    citizen_response: CitizenResponse
    remarks: str
    property_id: Optional[str] = None
    expected_payment_date: Optional[date] = None
    amount_collected: Optional[str] = Field(None, description="Decimal amount as string")
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

    def amount(self) -> Optional[Decimal]:
        return Decimal(self.amount_collected) if self.amount_collected is not None else None


# Task schemas
class GenerateTasksRequest(BaseModel):
    task_date: Optional[date] = None


class CompleteTaskRequest(BaseModel):
    completion_note: Optional[str] = None
    related_visit_id: Optional[str] = None


# Accrual schemas
class RunAccrualRequest(BaseModel):
    as_of: Optional[date] = None


# Penalty rule schemas
class CreatePenaltyRuleRequest(BaseModel):
    financial_year: str
    rule_name: str
    penalty_type: ChargeType
    penalty_value: str = Field(..., description="Decimal value as string")
    effective_from: date
    penalty_frequency: ChargeFrequency = ChargeFrequency.MONTHLY
    penalty_base: ChargeBase = ChargeBase.BASE_AMOUNT
    interest_type: ChargeType = ChargeType.NONE
    interest_value: str = "0"
    interest_frequency: ChargeFrequency = ChargeFrequency.MONTHLY
    interest_base: ChargeBase = ChargeBase.BALANCE_AMOUNT
    grace_period_days: int = 0
    max_penalty_amount: Optional[str] = None
    max_interest_amount: Optional[str] = None
    effective_to: Optional[date] = None
    description: Optional[str] = None
    supersedes_rule_id: Optional[str] = None
