"""
Test suite for field visit recording

Tests escalation sequencing, follow-up updates, payment collection with
resolution, enforcement notices, attendance flagging, access checks and
rollback of rejected visits.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from tax_collection.audit import AuditEventType
from tax_collection.demands import DemandStatus
from tax_collection.directory import Actor, ActorRole
from tax_collection.follow_ups import VisitType, CitizenResponse, EscalationStatus, Priority
from tax_collection.payments import PaymentMode
from tax_collection.penalty_rules import ChargeType
from tax_collection.visits import VisitRequest, VisitStatus, DeviceInfo, OUTSIDE_WINDOW_NOTE
from tax_collection.errors import (
    ValidationError, VisitSequenceError, PaymentExceedsBalanceError,
    AuthorizationError, ConflictError, NotFoundError
)

from conftest import TODAY, FINANCIAL_YEAR, ADMIN


def visit(demand_id, visit_type=VisitType.REMINDER, response=CitizenResponse.NOT_AVAILABLE, **kwargs):
    return VisitRequest(
        demand_id=demand_id,
        visit_type=visit_type,
        citizen_response=response,
        remarks=kwargs.pop('remarks', "Visited property"),
        **kwargs
    )


def collect(demand_id, amount, **kwargs):
    return visit(
        demand_id, VisitType.PAYMENT_COLLECTION, CitizenResponse.WILL_PAY_TODAY,
        amount_collected=Decimal(amount), **kwargs
    )


def add_rule(system, **kwargs):
    return system.rule_registry.create_rule(
        financial_year=FINANCIAL_YEAR,
        rule_name="Standard arrears",
        penalty_type=ChargeType.PERCENTAGE,
        penalty_value=Decimal("2"),
        effective_from=date(2024, 4, 1),
        **kwargs
    )


@pytest.fixture
def recorder(system):
    return system.visit_recorder


class TestEscalationSequence:
    """Test visit ordering rules"""

    def test_scenario_b(self, system, recorder, collector_actor, demand):
        """Test reminder, reminder, warning leaves the follow-up at final warning"""
        for visit_type in (VisitType.REMINDER, VisitType.REMINDER, VisitType.WARNING):
            outcome = recorder.record_visit(collector_actor, visit(demand.id, visit_type))

        follow_up = outcome.follow_up
        assert follow_up.visit_count == 3
        assert follow_up.escalation_level == 3
        assert follow_up.escalation_status == EscalationStatus.FINAL_WARNING
        assert not follow_up.is_enforcement_eligible

    def test_wrong_type_rejected(self, system, recorder, collector_actor, demand):
        """Test a warning as the second escalation visit is rejected"""
        recorder.record_visit(collector_actor, visit(demand.id, VisitType.REMINDER))

        with pytest.raises(VisitSequenceError) as exc_info:
            recorder.record_visit(collector_actor, visit(demand.id, VisitType.WARNING))

        assert exc_info.value.expected_type == "reminder"
        assert exc_info.value.sequence_number == 2
        assert "reminder" in str(exc_info.value)
        assert system.follow_up_tracker.get_by_demand(demand.id).visit_count == 1

    def test_first_visit_must_be_reminder(self, recorder, collector_actor, demand):
        """Test escalation levels cannot be skipped"""
        with pytest.raises(VisitSequenceError):
            recorder.record_visit(collector_actor, visit(demand.id, VisitType.FINAL_WARNING))

    def test_payment_collection_outside_sequence(self, recorder, collector_actor, demand):
        """Test a payment visit neither needs nor consumes a sequence slot"""
        recorder.record_visit(collector_actor, collect(demand.id, "100"))
        outcome = recorder.record_visit(collector_actor, visit(demand.id, VisitType.REMINDER))

        assert outcome.visit.visit_sequence_number == 2
        assert outcome.visit.escalation_sequence_number == 1
        assert outcome.follow_up.escalation_level == 1
        assert outcome.follow_up.visit_count == 2

    def test_enforcement_eligible_at_four(self, system, recorder, collector_actor, demand):
        """Test the fourth escalation visit makes the demand eligible once"""
        for visit_type in (VisitType.REMINDER, VisitType.REMINDER, VisitType.WARNING,
                           VisitType.FINAL_WARNING):
            outcome = recorder.record_visit(collector_actor, visit(demand.id, visit_type))

        assert outcome.became_enforcement_eligible
        assert outcome.follow_up.escalation_status == EscalationStatus.ENFORCEMENT_ELIGIBLE
        assert outcome.follow_up.enforcement_eligible_date == TODAY

        again = recorder.record_visit(collector_actor, visit(demand.id, VisitType.FINAL_WARNING))
        assert not again.became_enforcement_eligible
        assert again.follow_up.escalation_level == 4

        events = system.audit_trail.get_events_by_type(AuditEventType.ENFORCEMENT_ELIGIBLE)
        assert len(events) == 1


class TestFollowUpUpdates:
    """Test follow-up fields set by a visit"""

    def test_will_pay_later(self, recorder, collector_actor, demand):
        """Test promise date and revisit date"""
        promised = TODAY + timedelta(days=5)
        outcome = recorder.record_visit(collector_actor, visit(
            demand.id, response=CitizenResponse.WILL_PAY_LATER, expected_payment_date=promised
        ))

        assert outcome.follow_up.expected_payment_date == promised
        assert outcome.follow_up.next_follow_up_date == promised + timedelta(days=2)
        assert outcome.visit.expected_payment_date == promised

    def test_will_pay_later_requires_date(self, recorder, collector_actor, demand):
        with pytest.raises(ValidationError):
            recorder.record_visit(collector_actor, visit(demand.id, response=CitizenResponse.WILL_PAY_LATER))

    def test_remarks_required(self, recorder, collector_actor, demand):
        with pytest.raises(ValidationError):
            recorder.record_visit(collector_actor, visit(demand.id, remarks="   "))

    def test_priority_recomputed(self, system, recorder, collector_actor, demand):
        """Test 40 accrued overdue days give high priority; three visits make it critical"""
        add_rule(system)
        system.accrual_scheduler.run()

        outcome = recorder.record_visit(collector_actor, visit(demand.id))
        assert outcome.follow_up.priority == Priority.HIGH

        recorder.record_visit(collector_actor, visit(demand.id))
        outcome = recorder.record_visit(collector_actor, visit(demand.id, VisitType.WARNING))
        assert outcome.follow_up.priority == Priority.CRITICAL

    def test_priority_uses_grace_adjusted_days(self, system, recorder, collector_actor, demand):
        """Test a 15-day grace turns 40 days past due into 25 overdue days"""
        add_rule(system, grace_period_days=15)
        system.accrual_scheduler.run()
        assert system.demand_manager.get_demand(demand.id).overdue_days == 25

        outcome = recorder.record_visit(collector_actor, visit(demand.id))
        assert outcome.follow_up.priority == Priority.MEDIUM

    def test_priority_before_any_accrual(self, recorder, collector_actor, demand):
        """Test a demand never accrued counts as not yet overdue"""
        outcome = recorder.record_visit(collector_actor, visit(demand.id))
        assert outcome.follow_up.priority == Priority.LOW

    def test_visit_numbers_sequential(self, recorder, collector_actor, demand):
        """Test visit numbers run per calendar year"""
        first = recorder.record_visit(collector_actor, visit(demand.id)).visit
        second = recorder.record_visit(collector_actor, visit(demand.id)).visit

        assert first.visit_number == "FV-2024-000001"
        assert second.visit_number == "FV-2024-000002"

    def test_duplicate_visit_number_rejected(self, system, recorder, collector_actor, demand, monkeypatch):
        """Test a reused visit number fails the visit and rolls it back"""
        monkeypatch.setattr(system.sequences, "next_visit_number", lambda year: f"FV-{year}-000001")
        recorder.record_visit(collector_actor, visit(demand.id))

        with pytest.raises(ConflictError):
            recorder.record_visit(collector_actor, visit(demand.id))

        assert system.storage.count("field_visits") == 1
        assert system.follow_up_tracker.get_by_demand(demand.id).visit_count == 1

    def test_device_metadata_kept(self, recorder, collector_actor, demand):
        device = DeviceInfo(ip_address="10.0.0.7", device_type="mobile", browser_name="Chrome",
                            operating_system="Android", source="mobile")
        outcome = recorder.record_visit(collector_actor, visit(demand.id, device=device))

        assert outcome.visit.ip_address == "10.0.0.7"
        assert outcome.visit.source == "mobile"


class TestPaymentCollection:
    """Test collecting money during a visit"""

    def test_partial_payment(self, system, recorder, collector_actor, demand):
        """Test a part payment reduces the balance without resolving"""
        outcome = recorder.record_visit(collector_actor, collect(demand.id, "400"))

        assert outcome.payment.amount == Decimal("400.00")
        assert outcome.payment.payment_mode == PaymentMode.CASH
        assert outcome.payment.field_visit_id == outcome.visit.id
        assert outcome.visit.payment_id == outcome.payment.id
        assert outcome.demand.balance_amount == Decimal("600.00")
        assert outcome.demand.status == DemandStatus.PARTIALLY_PAID
        assert not outcome.follow_up.is_resolved
        assert outcome.follow_up.next_follow_up_date is None

    def test_full_payment_resolves(self, system, recorder, collector_actor, demand):
        """Test paying the exact balance resolves the follow-up"""
        outcome = recorder.record_visit(collector_actor, collect(demand.id, "1000"))

        assert outcome.demand.balance_amount == Decimal("0.00")
        assert outcome.demand.status == DemandStatus.PAID
        assert outcome.follow_up.is_resolved
        assert outcome.follow_up.resolved_date == TODAY
        assert outcome.follow_up.resolved_by == collector_actor.id

        with pytest.raises(ConflictError):
            recorder.record_visit(collector_actor, visit(demand.id))

    def test_amount_above_balance_mutates_nothing(self, system, recorder, collector_actor, demand):
        """Test an over-collection is rejected with every write rolled back"""
        recorder.record_visit(collector_actor, visit(demand.id))
        follow_up_before = system.follow_up_tracker.get_by_demand(demand.id).to_dict()
        demand_before = system.demand_manager.get_demand(demand.id).to_dict()

        with pytest.raises(PaymentExceedsBalanceError):
            recorder.record_visit(collector_actor, collect(demand.id, "1000.01"))

        assert system.payment_service.list_payments(demand.id) == []
        assert system.demand_manager.get_demand(demand.id).to_dict() == demand_before
        assert system.follow_up_tracker.get_by_demand(demand.id).to_dict() == follow_up_before
        assert len(recorder.list_visits(demand_id=demand.id)) == 1

    def test_first_visit_rejection_leaves_no_follow_up(self, system, recorder, collector_actor, demand):
        """Test a follow-up created inside a rejected visit is rolled back"""
        with pytest.raises(PaymentExceedsBalanceError):
            recorder.record_visit(collector_actor, collect(demand.id, "5000"))

        assert system.follow_up_tracker.get_by_demand(demand.id) is None
        assert system.sequences.current_value("field_visit:2024") == 0

    def test_amount_required(self, recorder, collector_actor, demand):
        request = visit(demand.id, VisitType.PAYMENT_COLLECTION, CitizenResponse.WILL_PAY_TODAY)
        with pytest.raises(ValidationError):
            recorder.record_visit(collector_actor, request)

    def test_amount_only_on_payment_visit(self, recorder, collector_actor, demand):
        with pytest.raises(ValidationError):
            recorder.record_visit(collector_actor, visit(demand.id, amount_collected=Decimal("10")))

    def test_non_finite_amount_rejected(self, system, recorder, collector_actor, demand):
        """Test infinite or NaN amounts are validation errors and change nothing"""
        for amount in ("Infinity", "NaN", "1E+40"):
            with pytest.raises(ValidationError):
                recorder.record_visit(collector_actor, collect(demand.id, amount))

        assert system.demand_manager.get_demand(demand.id).paid_amount == Decimal("0")
        assert system.sequences.current_value("field_visit:2024") == 0

    def test_cheque_needs_number(self, recorder, collector_actor, demand):
        with pytest.raises(ValidationError):
            recorder.record_visit(collector_actor, collect(demand.id, "100", payment_mode=PaymentMode.CHEQUE))

    def test_payment_audited(self, system, recorder, collector_actor, demand):
        outcome = recorder.record_visit(collector_actor, collect(demand.id, "250"))
        events = system.audit_trail.get_events_for_entity("payment", outcome.payment.id)

        assert [e.event_type for e in events] == [AuditEventType.PAYMENT_COLLECTED]


class TestEnforcementNotice:
    """Test notice triggering"""

    def test_notice_at_level_three_once(self, system, recorder, collector_actor, demand):
        """Test one notice on reaching level 3 and none afterwards"""
        recorder.record_visit(collector_actor, visit(demand.id))
        second = recorder.record_visit(collector_actor, visit(demand.id))
        assert second.notice is None

        third = recorder.record_visit(collector_actor, visit(demand.id, VisitType.WARNING))
        assert third.notice is not None
        assert third.notice.notice_number == "ENF-2024-000001"
        assert third.notice.due_date == TODAY + timedelta(days=15)
        assert third.notice.amount_due == Decimal("1000.00")
        assert third.notice.is_collector_triggered
        assert third.follow_up.notice_triggered
        assert third.follow_up.notice_id == third.notice.id
        assert third.visit.notice_id == third.notice.id

        fourth = recorder.record_visit(collector_actor, visit(demand.id, VisitType.FINAL_WARNING))
        assert fourth.notice is None
        assert len(system.notice_service.list_notices(demand.id)) == 1

    def test_notice_failure_does_not_fail_visit(self, system, recorder, collector_actor, demand, monkeypatch):
        """Test a failed notice is retried on the next visit"""
        recorder.record_visit(collector_actor, visit(demand.id))
        recorder.record_visit(collector_actor, visit(demand.id))

        original = system.notice_service.create_enforcement_notice

        def broken(*args, **kwargs):
            raise RuntimeError("template missing")

        monkeypatch.setattr(system.notice_service, "create_enforcement_notice", broken)
        third = recorder.record_visit(collector_actor, visit(demand.id, VisitType.WARNING))
        assert third.notice is None
        assert not third.follow_up.notice_triggered

        monkeypatch.setattr(system.notice_service, "create_enforcement_notice", original)
        fourth = recorder.record_visit(collector_actor, visit(demand.id, VisitType.FINAL_WARNING))
        assert fourth.notice is not None
        assert fourth.follow_up.notice_triggered


class TestAttendance:
    """Test attendance window flagging"""

    def test_visit_without_session_flagged(self, recorder, collector_actor, demand):
        outcome = recorder.record_visit(collector_actor, visit(demand.id))

        assert outcome.visit.status == VisitStatus.FLAGGED
        assert not outcome.visit.is_within_attendance_window
        assert outcome.visit.attendance_window_note == OUTSIDE_WINDOW_NOTE

    def test_visit_during_session_recorded(self, system, recorder, collector_actor, demand):
        session = system.directory.check_in(collector_actor.id)
        outcome = recorder.record_visit(collector_actor, visit(demand.id))

        assert outcome.visit.status == VisitStatus.RECORDED
        assert outcome.visit.attendance_id == session.id
        assert outcome.visit.attendance_window_note is None

    def test_after_check_out_flagged(self, system, recorder, collector_actor, demand):
        system.directory.check_in(collector_actor.id)
        system.directory.check_out(collector_actor.id)
        outcome = recorder.record_visit(collector_actor, visit(demand.id))

        assert outcome.visit.status == VisitStatus.FLAGGED


class TestAccess:
    """Test role and ward checks"""

    def test_admin_cannot_record(self, recorder, demand):
        with pytest.raises(AuthorizationError):
            recorder.record_visit(ADMIN, visit(demand.id))

    def test_other_ward_rejected(self, system, recorder, demand):
        other = system.directory.create_collector("Meena Shah", collector_id="COL002")
        with pytest.raises(AuthorizationError):
            recorder.record_visit(other.as_actor(), visit(demand.id))

    def test_unknown_demand(self, recorder, collector_actor):
        with pytest.raises(NotFoundError):
            recorder.record_visit(collector_actor, visit("missing"))

    def test_cancelled_demand(self, system, recorder, collector_actor, demand):
        demand.status = DemandStatus.CANCELLED
        system.demand_manager.save_demand(demand)
        with pytest.raises(ValidationError):
            recorder.record_visit(collector_actor, visit(demand.id))

    def test_get_visit_own_only(self, system, recorder, collector_actor, demand):
        outcome = recorder.record_visit(collector_actor, visit(demand.id))
        other = Actor(id="COL002", role=ActorRole.COLLECTOR)

        assert recorder.get_visit(outcome.visit.id, collector_actor).id == outcome.visit.id
        assert recorder.get_visit(outcome.visit.id, ADMIN).id == outcome.visit.id
        with pytest.raises(AuthorizationError):
            recorder.get_visit(outcome.visit.id, other)
        with pytest.raises(NotFoundError):
            recorder.get_visit("missing")


class TestVisitContext:
    """Test the pre-visit context"""

    def test_context(self, recorder, collector_actor, demand):
        recorder.record_visit(collector_actor, visit(demand.id))
        context = recorder.get_visit_context(collector_actor, demand.id)

        assert context['demand'].id == demand.id
        assert context['follow_up'].visit_count == 1
        assert len(context['visits']) == 1
        assert context['next_escalation_sequence'] == 2
        assert context['expected_escalation_type'] == VisitType.REMINDER

    def test_context_before_any_visit(self, recorder, collector_actor, demand):
        context = recorder.get_visit_context(collector_actor, demand.id)
        assert context['follow_up'] is None
        assert context['expected_escalation_type'] == VisitType.REMINDER
