"""
Test suite for the accrual scheduler

Tests batch accrual runs: grouping by financial year, idempotent re-runs,
per-demand failure isolation, run reports and overlapping runs.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from tax_collection.audit import AuditEventType
from tax_collection.accrual_scheduler import AccrualOutcome
from tax_collection.demands import DemandStatus
from tax_collection.penalty_rules import ChargeType, ChargeFrequency, ChargeBase
from tax_collection.errors import ConflictError

from conftest import TODAY, FINANCIAL_YEAR


def create_standard_rule(system, frequency=ChargeFrequency.MONTHLY, financial_year=FINANCIAL_YEAR):
    return system.rule_registry.create_rule(
        financial_year=financial_year,
        rule_name="Standard arrears",
        penalty_type=ChargeType.PERCENTAGE,
        penalty_value=Decimal("2"),
        penalty_frequency=frequency,
        penalty_base=ChargeBase.BASE_AMOUNT,
        interest_type=ChargeType.PERCENTAGE,
        interest_value=Decimal("5"),
        interest_frequency=frequency,
        interest_base=ChargeBase.BALANCE_AMOUNT,
        effective_from=date(2024, 4, 1)
    )


class TestAccrualRun:
    """Test a full accrual run"""

    def test_scenario_a(self, system, demand):
        """Test the run posts penalty 40 and interest 100"""
        create_standard_rule(system)
        report = system.accrual_scheduler.run()

        assert report.demands_processed == 1
        assert report.demands_updated == 1
        assert report.total_penalty_applied == Decimal("40.00")
        assert report.total_interest_applied == Decimal("100.00")

        stored = system.demand_manager.get_demand(demand.id)
        assert stored.penalty_amount == Decimal("40.00")
        assert stored.interest_amount == Decimal("100.00")
        assert stored.balance_amount == Decimal("1140.00")
        assert stored.status == DemandStatus.OVERDUE
        assert stored.overdue_days == 40

    def test_penalty_applied_audit(self, system, demand):
        """Test each applied demand is audited with before and after amounts"""
        rule = create_standard_rule(system)
        system.accrual_scheduler.run()

        events = system.audit_trail.get_events_for_entity("demand", demand.id)
        assert len(events) == 1
        event = events[0]
        assert event.event_type == AuditEventType.PENALTY_APPLIED
        assert event.previous_data['penalty_amount'] == "0.00"
        assert event.new_data['penalty_amount'] == "40.00"
        assert event.metadata['rule_id'] == rule.id
        assert event.metadata['overdue_days'] == 40

        completed = system.audit_trail.get_events_by_type(AuditEventType.ACCRUAL_RUN_COMPLETED)
        assert len(completed) == 1

    def test_daily_rule_twice_same_day(self, system, demand):
        """Test a second run on the same day changes nothing"""
        create_standard_rule(system, frequency=ChargeFrequency.DAILY)
        system.accrual_scheduler.run()
        first = system.demand_manager.get_demand(demand.id)

        report = system.accrual_scheduler.run()
        second = system.demand_manager.get_demand(demand.id)

        assert report.demands_updated == 0
        assert report.skipped[0].reason == "Already applied today"
        assert second.penalty_amount == first.penalty_amount
        assert second.interest_amount == first.interest_amount
        assert second.balance_amount == first.balance_amount

    def test_monthly_rule_next_month(self, system, clock, demand):
        """Test a monthly rule accrues again in the following month"""
        create_standard_rule(system)
        system.accrual_scheduler.run()

        clock.set(clock.start_of_day(date(2024, 9, 2)).replace(hour=1))
        system.accrual_scheduler.run()

        stored = system.demand_manager.get_demand(demand.id)
        # 63 days overdue: three started months
        assert stored.penalty_amount == Decimal("60.00")
        assert stored.interest_amount == Decimal("150.00")

    def test_group_without_rule_skipped(self, system, prop, demand):
        """Test a financial year with no rule is reported and left alone"""
        create_standard_rule(system)
        orphan = system.demand_manager.create_demand(
            prop.id, "2019-20", Decimal("500"), TODAY - timedelta(days=400), demand_number="DM-OLD"
        )

        report = system.accrual_scheduler.run()

        assert report.demands_updated == 1
        assert report.skipped_groups == [
            {'financial_year': "2019-20", 'reason': "No active penalty rule found", 'count': 1}
        ]
        assert system.demand_manager.get_demand(orphan.id).penalty_amount == Decimal("0.00")

    def test_not_yet_due_demand_ignored(self, system, prop, demand):
        """Test demands due today or later are not candidates"""
        create_standard_rule(system)
        system.demand_manager.create_demand(prop.id, FINANCIAL_YEAR, Decimal("700"), TODAY)

        report = system.accrual_scheduler.run()
        assert report.demands_processed == 1

    def test_paid_demand_ignored(self, system, demand):
        """Test fully paid demands are not accrued"""
        create_standard_rule(system)
        system.demand_manager.post_payment(demand, Decimal("1000"))

        report = system.accrual_scheduler.run()
        assert report.demands_processed == 0


class TestFailureIsolation:
    """Test one demand's failure does not stop the run"""

    def test_error_recorded_and_others_applied(self, system, prop, demand, monkeypatch):
        """Test a failing demand is reported while the rest accrue"""
        create_standard_rule(system)
        other = system.demand_manager.create_demand(
            prop.id, FINANCIAL_YEAR, Decimal("2000"), TODAY - timedelta(days=10), demand_number="DM-0002"
        )

        original = system.demand_manager.lock_demand

        def failing_lock(demand_id):
            if demand_id == demand.id:
                raise RuntimeError("row lock timeout")
            return original(demand_id)

        monkeypatch.setattr(system.demand_manager, "lock_demand", failing_lock)
        report = system.accrual_scheduler.run()

        assert report.demands_processed == 2
        assert report.demands_updated == 1
        assert len(report.errors) == 1
        assert report.errors[0].outcome == AccrualOutcome.ERROR
        assert "row lock timeout" in report.errors[0].reason
        assert system.demand_manager.get_demand(other.id).penalty_amount == Decimal("40.00")
        assert system.demand_manager.get_demand(demand.id).penalty_amount == Decimal("0.00")


class TestRunControl:
    """Test run status and exclusivity"""

    def test_overlapping_run_rejected(self, system, demand):
        """Test a second concurrent run raises ConflictError"""
        scheduler = system.accrual_scheduler
        scheduler._run_lock.acquire()
        try:
            assert scheduler.is_running
            with pytest.raises(ConflictError):
                scheduler.run()
        finally:
            scheduler._run_lock.release()

    def test_last_run_status(self, system, demand):
        """Test the latest report is exposed and persisted"""
        create_standard_rule(system)
        assert system.accrual_scheduler.last_run_status() is None

        report = system.accrual_scheduler.run()
        status = system.accrual_scheduler.last_run_status()

        assert status['run_id'] == report.run_id
        assert status['demands_updated'] == 1
        assert status['as_of'] == TODAY.isoformat()
        assert system.accrual_scheduler.run_history()[0]['run_id'] == report.run_id

    def test_run_as_of_past_date(self, system, demand):
        """Test accrual as of an earlier civil date"""
        create_standard_rule(system)
        report = system.accrual_scheduler.run(as_of=TODAY - timedelta(days=20))

        assert report.as_of == TODAY - timedelta(days=20)
        stored = system.demand_manager.get_demand(demand.id)
        assert stored.overdue_days == 20
        assert stored.penalty_amount == Decimal("20.00")

    def test_recovery_run_after_todays_run(self, system, demand):
        """Test an earlier-dated run never rewinds the demand or reopens today"""
        create_standard_rule(system, frequency=ChargeFrequency.DAILY)
        scheduler = system.accrual_scheduler
        scheduler.run()
        first = system.demand_manager.get_demand(demand.id)

        recovery = scheduler.run(as_of=TODAY - timedelta(days=3))
        assert recovery.demands_updated == 0
        assert recovery.skipped[0].reason == "Already accrued through a later date"

        again = scheduler.run()
        assert again.demands_updated == 0
        assert again.skipped[0].reason == "Already applied today"

        stored = system.demand_manager.get_demand(demand.id)
        assert stored.overdue_days == 40
        assert stored.last_penalty_applied_at == first.last_penalty_applied_at
        assert len(stored.penalty_breakdown) == 1
        assert len(system.audit_trail.get_events_for_entity("demand", demand.id)) == 1
