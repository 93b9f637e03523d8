"""Tests for RefundService - partial and full refunds.

Tests verify:
1. Refunds record against the captured payment
2. Cumulative refunds never exceed the captured amount
3. A full refund moves the payment to refunded
4. Persistence failure rolls back and queues a reconciliation entry
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from fare_settlement.errors import GatewayError, NotFoundError, RefundError, ValidationError
from fare_settlement.models import PaymentRecord, ReconciliationEntry, RefundRecord
from fare_settlement.settlement.gateway import StubGateway
from fare_settlement.settlement.services import CaptureService, RefundService
from tests.settlement.conftest import EventRecorder, SettlementTestData, fail_next_flush


def captured_payment(db: Session, gateway: StubGateway, test_data: SettlementTestData, fare: Decimal):
    booking = test_data.create_booking(db)
    payment = test_data.create_authorized_payment(db, booking, Decimal("500.00"))
    CaptureService(db, gateway).capture_payment(
        booking_id=booking.booking_id,
        gateway_payment_id=payment.gateway_payment_id,
        final_amount=fare,
    )
    return booking, payment


class TestPartialRefund:
    """Test refunds smaller than the captured amount."""

    def test_records_processed_refund(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """A partial refund is recorded and the payment stays captured."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))
        service = RefundService(db, gateway)

        outcome = service.process_refund(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_amount=Decimal("50.00"),
            reason="route deviation",
        )

        assert outcome.amount == Decimal("50.00")
        assert outcome.refunded_total == Decimal("50.00")
        assert outcome.remaining_refundable == Decimal("400.00")
        assert outcome.payment_status == "captured"
        assert outcome.estimated_settlement_time == "5-7 business days"
        assert outcome.fully_refunded is False

        refund = db.get(RefundRecord, outcome.refund_id)
        assert refund.status == "processed"
        assert refund.reason == "route deviation"
        assert refund.gateway_refund_id == outcome.gateway_refund_id
        assert gateway.payments[payment.gateway_payment_id]["refunded_minor"] == 5000

    def test_refunds_accumulate(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Successive refunds track a running total."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))
        service = RefundService(db, gateway)

        service.process_refund(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_amount=Decimal("100.00"),
        )
        second = service.process_refund(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_amount=Decimal("150.00"),
        )

        assert second.refunded_total == Decimal("250.00")
        assert second.remaining_refundable == Decimal("200.00")
        assert db.get(PaymentRecord, payment.payment_id).refunded_total == Decimal("250.00")


class TestFullRefund:
    """Test refunds that exhaust the captured amount."""

    def test_full_refund_marks_payment_refunded(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, emitter, recorder: EventRecorder
    ):
        """Refunding everything moves the payment to refunded."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))

        outcome = RefundService(db, gateway, emitter=emitter).process_refund(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_amount=Decimal("450.00"),
        )

        assert outcome.payment_status == "refunded"
        assert outcome.fully_refunded is True
        assert db.get(PaymentRecord, payment.payment_id).status == "refunded"
        assert recorder.types == ["RefundProcessed"]
        assert recorder.events[0].fully_refunded is True

    def test_refunded_payment_rejects_more(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Nothing more can be refunded after a full refund."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))
        service = RefundService(db, gateway)
        service.process_refund(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_amount=Decimal("450.00"),
        )

        with pytest.raises(ValidationError):
            service.process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("0.01"),
            )


class TestRefundBound:
    """Scenario E: refunds beyond the captured amount are rejected."""

    def test_refund_above_captured_rejected(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Refund of captured + 0.01 creates no refund record."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))

        with pytest.raises(ValidationError):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("450.01"),
            )

        assert db.query(RefundRecord).count() == 0
        assert gateway.call_count("refund_payment") == 0

    def test_cumulative_bound_enforced(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """The bound applies to the running total, not each refund alone."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))
        service = RefundService(db, gateway)
        service.process_refund(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            refund_amount=Decimal("400.00"),
        )

        with pytest.raises(ValidationError):
            service.process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("50.01"),
            )

        assert db.query(RefundRecord).count() == 1

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    def test_non_positive_refund_rejected(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, amount
    ):
        """Zero and negative refunds are rejected."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))

        with pytest.raises(ValidationError):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=amount,
            )

    def test_fraction_of_minor_unit_rejected(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """A refund the gateway would round is rejected before reaching it."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("100.00"))

        with pytest.raises(ValidationError):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("99.995"),
            )

        assert gateway.payments[payment.gateway_payment_id]["refunded_minor"] == 0
        assert db.query(RefundRecord).count() == 0

    def test_uncaptured_payment_rejected(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Only captured payments can be refunded."""
        booking = test_data.create_booking(db)
        payment = test_data.create_authorized_payment(db, booking)

        with pytest.raises(ValidationError, match="captured"):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("10.00"),
            )


class TestRefundFailures:
    """Test refund failure handling."""

    def test_unknown_payment(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Unknown payments raise NotFoundError."""
        booking = test_data.create_booking(db)

        with pytest.raises(NotFoundError):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id="pay_missing",
                refund_amount=Decimal("10.00"),
            )

    def test_gateway_rejection_writes_nothing(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Gateway errors propagate with no refund recorded."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))
        gateway.fail_next("refund_payment")

        with pytest.raises(GatewayError):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("10.00"),
            )

        assert db.query(RefundRecord).count() == 0

    def test_persistence_failure_rolls_back_and_reconciles(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, monkeypatch
    ):
        """A failed write after a gateway refund is queued for reconciliation."""
        booking, payment = captured_payment(db, gateway, test_data, Decimal("450.00"))
        fail_next_flush(monkeypatch, db)

        with pytest.raises(RefundError):
            RefundService(db, gateway).process_refund(
                booking_id=booking.booking_id,
                gateway_payment_id=payment.gateway_payment_id,
                refund_amount=Decimal("450.00"),
            )

        assert db.query(RefundRecord).count() == 0
        record = db.get(PaymentRecord, payment.payment_id)
        db.refresh(record)
        assert record.status == "captured"

        entry = db.execute(select(ReconciliationEntry)).scalar_one()
        assert entry.kind == "refund"
        assert entry.amount == Decimal("450.00")
        assert entry.gateway_reference.startswith("rfnd_stub_")
