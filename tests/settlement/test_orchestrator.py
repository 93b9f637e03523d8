"""Tests for SettlementOrchestrator - end-of-trip settlement.

Tests verify:
1. Gateway settlement within the authorization
2. Fare overrun collected from the wallet
3. Fare overrun deferred to a payment link when the wallet is short
4. Cash settlement without a gateway payment
5. Capture failure aborts settlement; later failures are reconciled
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from fare_settlement.errors import GatewayError, NotFoundError, ValidationError
from fare_settlement.models import Booking, EarningsRecord, PaymentRecord, ReconciliationEntry
from fare_settlement.settlement.events import EventEmitter
from fare_settlement.settlement.gateway import StubGateway
from fare_settlement.settlement.services import (
    CaptureService,
    EarningsCalculator,
    SettlementOrchestrator,
    StaticPricingRules,
    WalletLedgerService,
)
from tests.settlement.conftest import EventRecorder, SettlementTestData


def build_orchestrator(db: Session, gateway: StubGateway, emitter: EventEmitter | None = None, rules=None):
    return SettlementOrchestrator(
        db,
        capture=CaptureService(db, gateway, emitter=emitter),
        wallet=WalletLedgerService(db, emitter),
        earnings=EarningsCalculator(db, rules=rules or StaticPricingRules(), emitter=emitter),
        emitter=emitter,
    )


class ExplodingRules:
    """Pricing rules store that is down."""

    def get(self, rule_key: str):
        raise RuntimeError("pricing store unavailable")


class TestGatewaySettlement:
    """Test settlement of bookings paid through the gateway."""

    def test_fare_within_authorization(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Fare below the authorization settles immediately."""
        booking = test_data.create_booking(db)
        test_data.create_authorized_payment(db, booking, Decimal("500.00"))

        outcome = build_orchestrator(db, gateway).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("450.00"),
        )

        assert outcome.settlement_status == "settled"
        assert outcome.settlement_result.payment_method == "gateway"
        assert outcome.settlement_result.captured_amount == Decimal("450.00")
        assert outcome.settlement_result.additional_payment_needed is False
        assert outcome.earnings_result.provider_earnings == Decimal("343.80")
        assert db.get(Booking, booking.booking_id).payment_status == "completed"

    def test_overrun_collected_from_wallet(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """The shortfall is debited from a funded wallet."""
        booking = test_data.create_booking(db)
        payment = test_data.create_authorized_payment(db, booking, Decimal("500.00"))
        test_data.fund_wallet(db, Decimal("200.00"))
        wallet = WalletLedgerService(db)

        outcome = build_orchestrator(db, gateway).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("620.00"),
        )

        result = outcome.settlement_result
        assert outcome.settlement_status == "settled"
        assert result.additional_payment_needed is True
        assert result.additional_amount == Decimal("120.00")
        assert result.additional_payment_method == "wallet"
        assert wallet.get_balance(test_data.user_id) == Decimal("80.00")

        shortfall = db.execute(
            select(PaymentRecord).where(PaymentRecord.parent_payment_id == payment.payment_id)
        ).scalar_one()
        assert shortfall.status == "captured"
        assert shortfall.captured_amount == Decimal("120.00")

        types = sorted(line.transaction_type for line in wallet.get_transactions(test_data.user_id))
        assert types == ["fare_adjustment", "top_up"]
        assert wallet.verify_balance(test_data.user_id) is True

    def test_overrun_deferred_to_payment_link(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """An insufficient wallet defers the shortfall without failing settlement."""
        booking = test_data.create_booking(db)
        payment = test_data.create_authorized_payment(db, booking, Decimal("500.00"))
        test_data.fund_wallet(db, Decimal("50.00"))

        outcome = build_orchestrator(db, gateway).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("620.00"),
        )

        assert outcome.settlement_status == "additional_payment_pending"
        assert outcome.settlement_result.additional_payment_method == "payment_link"
        assert WalletLedgerService(db).get_balance(test_data.user_id) == Decimal("50.00")
        assert db.get(Booking, booking.booking_id).payment_status == "completed"

        shortfall = db.execute(
            select(PaymentRecord).where(PaymentRecord.parent_payment_id == payment.payment_id)
        ).scalar_one()
        assert shortfall.status == "pending"

    def test_complete_additional_payment(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Collecting the deferred overrun settles the booking."""
        booking = test_data.create_booking(db)
        test_data.create_authorized_payment(db, booking, Decimal("500.00"))
        orchestrator = build_orchestrator(db, gateway)
        orchestrator.settle_payment(booking_id=booking.booking_id, final_fare=Decimal("620.00"))

        result = orchestrator.complete_additional_payment(
            booking_id=booking.booking_id,
            gateway_payment_id="pay_link_001",
        )

        assert result.settlement_status == "settled"
        assert result.amount == Decimal("120.00")
        shortfall = db.get(PaymentRecord, result.payment_id)
        assert shortfall.status == "captured"
        assert shortfall.method == "payment_link"
        assert shortfall.gateway_payment_id == "pay_link_001"

    def test_complete_without_pending_shortfall(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData
    ):
        """Nothing to collect raises NotFoundError."""
        booking = test_data.create_booking(db)

        with pytest.raises(NotFoundError):
            build_orchestrator(db, gateway).complete_additional_payment(
                booking_id=booking.booking_id,
                gateway_payment_id="pay_link_001",
            )

    def test_events_published_after_commit(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, emitter, recorder: EventRecorder
    ):
        """Settlement publishes its events once, in order, after committing."""
        booking = test_data.create_booking(db)
        test_data.create_authorized_payment(db, booking, Decimal("500.00"))

        build_orchestrator(db, gateway, emitter).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("620.00"),
        )

        assert recorder.types == [
            "PaymentCaptured",
            "ShortfallRecorded",
            "EarningsCalculated",
            "AdditionalPaymentDeferred",
            "PaymentSettled",
        ]


class TestCashSettlement:
    """Test bookings without a gateway payment."""

    def test_cash_booking(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """No gateway payment records a cash settlement."""
        booking = test_data.create_booking(db)

        outcome = build_orchestrator(db, gateway).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("1000"),
        )

        assert outcome.settlement_result.payment_method == "cash"
        assert outcome.settlement_result.captured_amount is None
        assert outcome.settlement_status == "settled"
        assert outcome.earnings_result.provider_earnings == Decimal("764.00")
        assert gateway.call_count("capture_payment") == 0

    def test_created_payment_is_not_captured(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """A pre-auth the customer never authorized is treated as cash."""
        booking = test_data.create_booking(db)
        db.add(
            PaymentRecord(
                booking_id=booking.booking_id,
                user_id=booking.user_id,
                gateway_order_id="order_never_paid",
                status="created",
                authorized_amount=Decimal("500.00"),
            )
        )
        db.commit()

        outcome = build_orchestrator(db, gateway).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("450.00"),
        )

        assert outcome.settlement_result.payment_method == "cash"


class TestSettlementFailures:
    """Test settlement failure handling."""

    def test_unknown_booking(self, db: Session, gateway: StubGateway):
        """Unknown bookings raise NotFoundError."""
        with pytest.raises(NotFoundError):
            build_orchestrator(db, gateway).settle_payment(booking_id=uuid4(), final_fare=Decimal("100"))

    def test_already_settled(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """A settled booking cannot be settled again."""
        booking = test_data.create_booking(db)
        orchestrator = build_orchestrator(db, gateway)
        orchestrator.settle_payment(booking_id=booking.booking_id, final_fare=Decimal("100"))

        with pytest.raises(ValidationError):
            orchestrator.settle_payment(booking_id=booking.booking_id, final_fare=Decimal("100"))
        assert db.query(EarningsRecord).count() == 1

    def test_fraction_of_minor_unit_rejected(self, db: Session, gateway: StubGateway, test_data: SettlementTestData):
        """Fares finer than the currency's minor unit are rejected."""
        booking = test_data.create_booking(db)

        with pytest.raises(ValidationError):
            build_orchestrator(db, gateway).settle_payment(
                booking_id=booking.booking_id,
                final_fare=Decimal("450.005"),
            )

        stored = db.get(Booking, booking.booking_id)
        db.refresh(stored)
        assert stored.payment_status == "pending"

    def test_capture_at_different_fare_rejected(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, emitter, recorder: EventRecorder
    ):
        """A payment already captured for another amount cannot settle a new fare."""
        booking = test_data.create_booking(db)
        payment = test_data.create_authorized_payment(db, booking, Decimal("500.00"))
        CaptureService(db, gateway).capture_payment(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            final_amount=Decimal("450.00"),
        )

        with pytest.raises(ValidationError, match="already captured"):
            build_orchestrator(db, gateway, emitter).settle_payment(
                booking_id=booking.booking_id,
                final_fare=Decimal("620.00"),
            )

        stored = db.get(Booking, booking.booking_id)
        db.refresh(stored)
        assert stored.payment_status == "pending"
        assert db.query(EarningsRecord).count() == 0
        assert db.query(PaymentRecord).count() == 1
        assert recorder.events == []

    def test_settles_earlier_capture_at_same_fare(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData
    ):
        """Settling for the fare already captured completes the booking."""
        booking = test_data.create_booking(db)
        payment = test_data.create_authorized_payment(db, booking, Decimal("500.00"))
        CaptureService(db, gateway).capture_payment(
            booking_id=booking.booking_id,
            gateway_payment_id=payment.gateway_payment_id,
            final_amount=Decimal("450.00"),
        )

        outcome = build_orchestrator(db, gateway).settle_payment(
            booking_id=booking.booking_id,
            final_fare=Decimal("450.00"),
        )

        assert outcome.settlement_status == "settled"
        assert outcome.settlement_result.capture.is_new is False
        assert gateway.payments[payment.gateway_payment_id]["captured_minor"] == 45000

    def test_capture_failure_aborts(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, emitter, recorder: EventRecorder
    ):
        """A gateway capture failure leaves the booking unchanged."""
        booking = test_data.create_booking(db)
        test_data.create_authorized_payment(db, booking, Decimal("500.00"))
        gateway.fail_next("capture_payment", "gateway unavailable", retryable=True)

        with pytest.raises(GatewayError):
            build_orchestrator(db, gateway, emitter).settle_payment(
                booking_id=booking.booking_id,
                final_fare=Decimal("450.00"),
            )

        stored = db.get(Booking, booking.booking_id)
        db.refresh(stored)
        assert stored.payment_status == "pending"
        assert db.query(EarningsRecord).count() == 0
        assert db.query(ReconciliationEntry).count() == 0
        assert recorder.events == []

    def test_failure_after_capture_is_reconciled(
        self, db: Session, gateway: StubGateway, test_data: SettlementTestData, emitter, recorder: EventRecorder
    ):
        """A failure after the gateway captured rolls back and records the capture."""
        booking = test_data.create_booking(db)
        payment = test_data.create_authorized_payment(db, booking, Decimal("500.00"))

        with pytest.raises(RuntimeError):
            build_orchestrator(db, gateway, emitter, rules=ExplodingRules()).settle_payment(
                booking_id=booking.booking_id,
                final_fare=Decimal("450.00"),
            )

        record = db.get(PaymentRecord, payment.payment_id)
        db.refresh(record)
        assert record.status == "authorized"
        assert gateway.payments[payment.gateway_payment_id]["status"] == "captured"

        entry = db.execute(select(ReconciliationEntry)).scalar_one()
        assert entry.kind == "settlement"
        assert entry.booking_id == booking.booking_id
        assert entry.amount == Decimal("450.00")
        assert "pricing store unavailable" in entry.error

        # Only the reconciliation event escapes the discarded batch
        assert recorder.types == ["ReconciliationRequired"]
