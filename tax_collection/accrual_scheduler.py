"""
Accrual Scheduler

Batch job that grows penalty and interest on every overdue demand. Runs once
a day from the job scheduler and can be triggered by hand for recovery.

Each demand is accrued in its own transaction. A failure on one demand is
recorded in the run report and never stops the batch; the next run retries
it through the accrual idempotency guard.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from enum import Enum
from itertools import groupby
from typing import Any, Dict, List, Optional
import logging
import threading
import time
import uuid

from .currency import ZERO, round_amount
from .clock import CivilClock
from .storage import StorageInterface, to_storable
from .audit import AuditTrail, AuditEventType
from .demands import Demand, DemandManager
from .penalty_rules import PenaltyRuleRegistry
from .accrual import calculate_overdue_days, skip_reason, apply_accrual
from .directory import Actor, SYSTEM_ACTOR
from .errors import ConflictError


logger = logging.getLogger(__name__)

NO_RULE_REASON = "No active penalty rule found"


class AccrualOutcome(Enum):
    """What happened to one demand in a run"""
    APPLIED = "applied"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class DemandAccrualOutcome:
    """Per-demand line of an accrual run report"""
    demand_id: str
    demand_number: str
    financial_year: str
    outcome: AccrualOutcome
    reason: Optional[str] = None
    overdue_days: int = 0
    penalty_added: Decimal = ZERO
    interest_added: Decimal = ZERO
    rule_id: Optional[str] = None


@dataclass
class AccrualRunReport:
    """Summary of one accrual run"""
    run_id: str
    run_at: datetime
    as_of: date
    triggered_by: str
    demands_processed: int = 0
    demands_updated: int = 0
    total_penalty_applied: Decimal = ZERO
    total_interest_applied: Decimal = ZERO
    skipped_groups: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[DemandAccrualOutcome] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def skipped(self) -> List[DemandAccrualOutcome]:
        return [o for o in self.outcomes if o.outcome == AccrualOutcome.SKIPPED]

    @property
    def errors(self) -> List[DemandAccrualOutcome]:
        return [o for o in self.outcomes if o.outcome == AccrualOutcome.ERROR]

    def record(self, outcome: DemandAccrualOutcome) -> None:
        self.outcomes.append(outcome)
        self.demands_processed += 1
        if outcome.outcome == AccrualOutcome.APPLIED:
            self.demands_updated += 1
            self.total_penalty_applied = round_amount(self.total_penalty_applied + outcome.penalty_added)
            self.total_interest_applied = round_amount(self.total_interest_applied + outcome.interest_added)

    def to_dict(self) -> Dict[str, Any]:
        return to_storable({
            'run_id': self.run_id,
            'run_at': self.run_at,
            'as_of': self.as_of,
            'triggered_by': self.triggered_by,
            'demands_processed': self.demands_processed,
            'demands_updated': self.demands_updated,
            'total_penalty_applied': self.total_penalty_applied,
            'total_interest_applied': self.total_interest_applied,
            'skipped_groups': self.skipped_groups,
            'skipped': [vars(o) for o in self.skipped],
            'errors': [vars(o) for o in self.errors],
            'completed_at': self.completed_at,
            'duration_seconds': round(self.duration_seconds, 3),
        })


class AccrualScheduler:
    """Runs penalty and interest accrual over all overdue demands"""

    def __init__(
        self,
        storage: StorageInterface,
        demand_manager: DemandManager,
        rule_registry: PenaltyRuleRegistry,
        audit_trail: AuditTrail,
        clock: Optional[CivilClock] = None
    ):
        self.storage = storage
        self.demand_manager = demand_manager
        self.rule_registry = rule_registry
        self.audit_trail = audit_trail
        self.clock = clock or CivilClock()

        self.runs_table = "accrual_runs"
        self._run_lock = threading.Lock()
        self._last_report: Optional[AccrualRunReport] = None

    def run(self, as_of: Optional[date] = None, actor: Actor = SYSTEM_ACTOR) -> AccrualRunReport:
        """
        Accrue every overdue demand as of a civil date (default: today).

        Raises:
            ConflictError: another run on this scheduler is still in progress
        """
        if not self._run_lock.acquire(blocking=False):
            raise ConflictError("An accrual run is already in progress")
        try:
            return self._run(as_of, actor)
        finally:
            self._run_lock.release()

    def _run(self, as_of: Optional[date], actor: Actor) -> AccrualRunReport:
        started = time.monotonic()
        today = self.clock.today()
        as_of = as_of or today
        applied_at = self.clock.now() if as_of == today else self.clock.start_of_day(as_of)

        report = AccrualRunReport(
            run_id=str(uuid.uuid4()),
            run_at=datetime.now(timezone.utc),
            as_of=as_of,
            triggered_by=actor.id
        )
        logger.info("Accrual run %s started for %s", report.run_id, as_of.isoformat())

        candidates = self.demand_manager.find_accrual_candidates(as_of)
        candidates.sort(key=lambda d: d.financial_year)

        for financial_year, group in groupby(candidates, key=lambda d: d.financial_year):
            demands = sorted(group, key=lambda d: (d.due_date, d.demand_number))
            rule = self.rule_registry.resolve_rule(financial_year, as_of)

            if rule is None:
                logger.warning("No penalty rule for %s, skipping %d demands", financial_year, len(demands))
                report.skipped_groups.append({
                    'financial_year': financial_year,
                    'reason': NO_RULE_REASON,
                    'count': len(demands),
                })
                for demand in demands:
                    report.record(DemandAccrualOutcome(
                        demand_id=demand.id,
                        demand_number=demand.demand_number,
                        financial_year=financial_year,
                        outcome=AccrualOutcome.SKIPPED,
                        reason=NO_RULE_REASON
                    ))
                continue

            for demand in demands:
                report.record(self._accrue_demand(demand, rule, as_of, applied_at, actor))

        report.completed_at = datetime.now(timezone.utc)
        report.duration_seconds = time.monotonic() - started
        self._finish(report, actor)
        return report

    def _accrue_demand(self, candidate: Demand, rule, as_of: date, applied_at: datetime,
                       actor: Actor) -> DemandAccrualOutcome:
        outcome = DemandAccrualOutcome(
            demand_id=candidate.id,
            demand_number=candidate.demand_number,
            financial_year=candidate.financial_year,
            outcome=AccrualOutcome.SKIPPED,
            rule_id=rule.id
        )
        try:
            with self.storage.atomic():
                demand = self.demand_manager.lock_demand(candidate.id)
                overdue_days = calculate_overdue_days(demand.due_date, rule.grace_period_days, as_of)
                outcome.overdue_days = overdue_days

                reason = skip_reason(demand, rule, overdue_days, as_of, self.clock)
                if reason:
                    outcome.reason = reason
                    return outcome

                result = apply_accrual(demand, rule, overdue_days, applied_at)
                self.demand_manager.save_demand(demand)
        except Exception as e:
            logger.exception("Accrual failed for demand %s", candidate.demand_number)
            outcome.outcome = AccrualOutcome.ERROR
            outcome.reason = str(e)
            return outcome

        outcome.outcome = AccrualOutcome.APPLIED
        outcome.penalty_added = result.penalty_added
        outcome.interest_added = result.interest_added

        self.audit_trail.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            event_type=AuditEventType.PENALTY_APPLIED,
            entity_type="demand",
            entity_id=demand.id,
            before=result.previous_amounts(),
            after=result.new_amounts(),
            description=(
                f"Penalty and interest applied to demand {demand.demand_number}: "
                f"penalty +{result.penalty_added}, interest +{result.interest_added}"
            ),
            metadata={
                'rule_id': rule.id,
                'rule_name': rule.rule_name,
                'overdue_days': overdue_days,
                'penalty_added': result.penalty_added,
                'interest_added': result.interest_added,
                'as_of': as_of,
            }
        )
        return outcome

    def _finish(self, report: AccrualRunReport, actor: Actor) -> None:
        self._last_report = report
        summary = report.to_dict()
        try:
            self.storage.save(self.runs_table, report.run_id, summary)
        except Exception:
            logger.exception("Could not persist accrual run report %s", report.run_id)

        self.audit_trail.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            event_type=AuditEventType.ACCRUAL_RUN_COMPLETED,
            entity_type="accrual_run",
            entity_id=report.run_id,
            description=(
                f"Accrual run for {report.as_of.isoformat()}: "
                f"{report.demands_updated}/{report.demands_processed} demands updated"
            ),
            metadata={
                'demands_processed': report.demands_processed,
                'demands_updated': report.demands_updated,
                'total_penalty_applied': report.total_penalty_applied,
                'total_interest_applied': report.total_interest_applied,
                'errors': len(report.errors),
                'skipped': len(report.skipped),
            }
        )
        logger.info(
            "Accrual run %s finished: %d processed, %d updated, %d skipped, %d errors",
            report.run_id, report.demands_processed, report.demands_updated,
            len(report.skipped), len(report.errors)
        )

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def last_run_status(self) -> Optional[Dict[str, Any]]:
        """Summary of the most recent run, from memory or storage"""
        if self._last_report is not None:
            return self._last_report.to_dict()
        history = self.run_history(limit=1)
        return history[0] if history else None

    def run_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Persisted run summaries, newest first"""
        runs = self.storage.load_all(self.runs_table)
        runs.sort(key=lambda r: r.get('run_at', ''), reverse=True)
        return runs[:limit]
