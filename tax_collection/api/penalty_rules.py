"""
Penalty rule endpoints
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .deps import get_system, get_actor, require_privileged, to_http_exception
from .schemas import CreatePenaltyRuleRequest
from ..system import CollectionSystem
from ..directory import Actor
from ..errors import CollectionError


router = APIRouter()


@router.get("")
async def list_penalty_rules(
    financial_year: Optional[str] = None,
    as_of: Optional[date] = None,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """List rules, or the rule in force for a financial year on a date"""
    registry = system.rule_registry
    if financial_year and as_of:
        rule = registry.resolve_rule(financial_year, as_of)
        return {"rules": [rule.to_dict()] if rule else [], "resolved": True}

    rules = registry.list_rules(financial_year=financial_year)
    return {"rules": [r.to_dict() for r in rules], "resolved": False}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_penalty_rule(
    request: CreatePenaltyRuleRequest,
    actor: Actor = Depends(get_actor),
    system: CollectionSystem = Depends(get_system)
):
    """Create a penalty rule; a rule replacing another names it in supersedes_rule_id"""
    require_privileged(actor)
    try:
        settings = dict(
            financial_year=request.financial_year,
            rule_name=request.rule_name,
            penalty_type=request.penalty_type,
            penalty_value=Decimal(request.penalty_value),
            penalty_frequency=request.penalty_frequency,
            penalty_base=request.penalty_base,
            interest_type=request.interest_type,
            interest_value=Decimal(request.interest_value),
            interest_frequency=request.interest_frequency,
            interest_base=request.interest_base,
            grace_period_days=request.grace_period_days,
            max_penalty_amount=(
                Decimal(request.max_penalty_amount) if request.max_penalty_amount is not None else None
            ),
            max_interest_amount=(
                Decimal(request.max_interest_amount) if request.max_interest_amount is not None else None
            ),
            effective_to=request.effective_to,
            description=request.description,
            created_by=actor.id
        )
        if request.supersedes_rule_id:
            rule = system.rule_registry.supersede_rule(
                request.supersedes_rule_id, request.effective_from, **settings
            )
        else:
            rule = system.rule_registry.create_rule(effective_from=request.effective_from, **settings)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail="Invalid decimal value")
    except CollectionError as e:
        raise to_http_exception(e)

    return {
        "rule": rule.to_dict(),
        "message": "Penalty rule created successfully"
    }
