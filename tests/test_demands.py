"""
Test suite for demands, payments and the directory

Tests demand totals and payment posting, payment capture with receipts,
ward assignment and attendance sessions.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from tax_collection.demands import DemandStatus
from tax_collection.payments import PaymentMode, ReceiptRenderer
from tax_collection.errors import (
    ValidationError, PaymentExceedsBalanceError, ConflictError, NotFoundError
)

from conftest import TODAY, FINANCIAL_YEAR


class BrokenRenderer(ReceiptRenderer):
    def render(self, payment):
        raise IOError("printer offline")


class StaticRenderer(ReceiptRenderer):
    def render(self, payment):
        return f"/receipts/{payment.receipt_number}.pdf"


class TestDemands:
    """Test demand amounts and posting"""

    def test_totals(self, system, prop):
        demand = system.demand_manager.create_demand(
            prop.id, FINANCIAL_YEAR, Decimal("1000"), TODAY, arrears_amount=Decimal("250.50")
        )
        assert demand.total_amount == Decimal("1250.50")
        assert demand.balance_amount == Decimal("1250.50")
        assert demand.status == DemandStatus.PENDING

    def test_non_positive_base_rejected(self, system, prop):
        with pytest.raises(ValidationError):
            system.demand_manager.create_demand(prop.id, FINANCIAL_YEAR, Decimal("0"), TODAY)

    def test_partial_then_full_payment(self, system, demand):
        manager = system.demand_manager
        manager.post_payment(demand, Decimal("400"))
        assert demand.status == DemandStatus.PARTIALLY_PAID
        assert demand.balance_amount == Decimal("600.00")

        manager.post_payment(demand, Decimal("600"))
        stored = manager.get_demand(demand.id)
        assert stored.status == DemandStatus.PAID
        assert stored.is_settled

    def test_overpayment_rejected(self, system, demand):
        with pytest.raises(PaymentExceedsBalanceError):
            system.demand_manager.post_payment(demand, Decimal("1000.01"))

    def test_days_past_due(self, demand):
        assert demand.days_past_due(TODAY) == 40
        assert demand.days_past_due(demand.due_date - timedelta(days=3)) == 0


class TestPayments:
    """Test payment capture"""

    def test_create_payment(self, system, collector_actor, demand):
        payment = system.payment_service.create_payment(
            demand, Decimal("250"), PaymentMode.CASH, collector_actor
        )

        assert payment.payment_number == "PAY-2024-000001"
        assert payment.receipt_number == "RCP-2024-000001"
        assert payment.payment_date == TODAY
        assert payment.received_by == collector_actor.id
        assert system.demand_manager.get_demand(demand.id).paid_amount == Decimal("250.00")

    def test_cheque_requires_number(self, system, collector_actor, demand):
        with pytest.raises(ValidationError):
            system.payment_service.create_payment(demand, Decimal("250"), PaymentMode.CHEQUE, collector_actor)

    def test_receipt_failure_keeps_payment(self, system, collector_actor, demand):
        """Test a rendering failure never undoes the payment"""
        service = system.payment_service
        service.receipt_renderer = BrokenRenderer()
        payment = service.create_payment(demand, Decimal("250"), PaymentMode.CASH, collector_actor)

        assert service.render_receipt(payment) is None
        assert service.get_payment(payment.id) is not None

    def test_receipt_url_saved(self, system, collector_actor, demand):
        service = system.payment_service
        service.receipt_renderer = StaticRenderer()
        payment = service.create_payment(demand, Decimal("250"), PaymentMode.CASH, collector_actor)

        service.render_receipt(payment)
        assert service.get_payment(payment.id).receipt_url == "/receipts/RCP-2024-000001.pdf"


class TestDirectory:
    """Test wards and attendance"""

    def test_ward_assignment(self, system, collector, ward):
        directory = system.directory
        assert directory.collector_ward_ids(collector.id) == [ward.id]

        directory.assign_ward(ward.id, None)
        assert directory.collector_ward_ids(collector.id) == []

    def test_assign_unknown_collector(self, system, ward):
        with pytest.raises(NotFoundError):
            system.directory.assign_ward(ward.id, "COL404")

    def test_attendance_session(self, system, collector):
        directory = system.directory
        session = directory.check_in(collector.id)
        assert directory.open_session(collector.id).id == session.id

        with pytest.raises(ConflictError):
            directory.check_in(collector.id)

        directory.check_out(collector.id)
        assert directory.open_session(collector.id) is None

        with pytest.raises(ValidationError):
            directory.check_out(collector.id)

    def test_active_collectors(self, system, collector):
        system.directory.create_collector("Zoya Khan", collector_id="COL002")
        names = [c.name for c in system.directory.list_active_collectors()]
        assert names == ["Ravi Kumar", "Zoya Khan"]
