"""
Payment Capture

Records money collected against a demand and posts it to the demand's paid
and balance amounts. Settlement with payment gateways is out of scope; a
payment here is the collector's or counter's record of money received.

Receipt rendering is a pluggable, best-effort step run after the payment is
recorded. A rendering failure is logged and never undoes the payment.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import logging
import uuid

from .currency import round_amount, to_decimal
from .clock import CivilClock
from .storage import StorageInterface, StorageRecord
from .numbering import SequenceGenerator
from .demands import Demand, DemandManager
from .directory import Actor
from .errors import ValidationError


logger = logging.getLogger(__name__)


class PaymentMode(Enum):
    CASH = "cash"
    CHEQUE = "cheque"
    DD = "dd"
    ONLINE = "online"
    CARD = "card"


class PaymentStatus(Enum):
    COMPLETED = "completed"


_REFERENCE_REQUIRED = (PaymentMode.CHEQUE, PaymentMode.DD)


@dataclass
class Payment(StorageRecord):
    """Money received against a demand"""
    payment_number: str
    receipt_number: str
    demand_id: str
    property_id: str
    amount: Decimal
    payment_mode: PaymentMode
    payment_date: date
    status: PaymentStatus = PaymentStatus.COMPLETED
    received_by: Optional[str] = None
    cheque_number: Optional[str] = None
    bank_name: Optional[str] = None
    transaction_id: Optional[str] = None
    field_visit_id: Optional[str] = None
    remarks: Optional[str] = None
    receipt_url: Optional[str] = None


class ReceiptRenderer:
    """Produces a receipt document for a payment; returns its location"""

    def render(self, payment: Payment) -> Optional[str]:
        return None


class PaymentService:
    """Creates payments and posts them to demands"""

    def __init__(
        self,
        storage: StorageInterface,
        demand_manager: DemandManager,
        sequences: SequenceGenerator,
        clock: Optional[CivilClock] = None,
        receipt_renderer: Optional[ReceiptRenderer] = None
    ):
        self.storage = storage
        self.demand_manager = demand_manager
        self.sequences = sequences
        self.clock = clock or CivilClock()
        self.receipt_renderer = receipt_renderer or ReceiptRenderer()
        self.payments_table = "payments"

    def create_payment(
        self,
        demand: Demand,
        amount: Decimal,
        mode: PaymentMode,
        actor: Actor,
        remarks: Optional[str] = None,
        cheque_number: Optional[str] = None,
        bank_name: Optional[str] = None,
        transaction_id: Optional[str] = None,
        field_visit_id: Optional[str] = None
    ) -> Payment:
        """
        Record a payment and apply it to the demand.

        The demand object is updated in place. Runs in its own transaction or
        joins the caller's.

        Raises:
            ValidationError: non-positive amount or missing cheque/DD reference
            PaymentExceedsBalanceError: amount larger than the demand balance
        """
        amount = round_amount(to_decimal(amount))
        if mode in _REFERENCE_REQUIRED and not cheque_number:
            raise ValidationError(f"{mode.value} payments require a cheque/DD number")

        today = self.clock.today()
        with self.storage.atomic():
            self.demand_manager.post_payment(demand, amount)

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_number=self.sequences.next_payment_number(today.year),
                receipt_number=self.sequences.next_receipt_number(today.year),
                demand_id=demand.id,
                property_id=demand.property_id,
                amount=amount,
                payment_mode=mode,
                payment_date=today,
                received_by=actor.id,
                cheque_number=cheque_number,
                bank_name=bank_name,
                transaction_id=transaction_id,
                field_visit_id=field_visit_id,
                remarks=remarks
            )
            self.storage.insert(self.payments_table, payment.id, payment.to_dict())

        logger.info("Payment %s of %s recorded for demand %s",
                    payment.payment_number, amount, demand.demand_number)
        return payment

    def render_receipt(self, payment: Payment) -> Optional[str]:
        """Best-effort receipt rendering; failures are logged and ignored"""
        try:
            url = self.receipt_renderer.render(payment)
        except Exception:
            logger.exception("Receipt rendering failed for payment %s", payment.payment_number)
            return None
        if url:
            payment.receipt_url = url
            payment.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.payments_table, payment.id, payment.to_dict())
        return url

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        return Payment.from_dict(data) if data else None

    def list_payments(self, demand_id: Optional[str] = None) -> List[Payment]:
        filters = {'demand_id': demand_id} if demand_id else {}
        payments = [Payment.from_dict(data) for data in self.storage.find(self.payments_table, filters)]
        payments.sort(key=lambda p: p.payment_number)
        return payments
