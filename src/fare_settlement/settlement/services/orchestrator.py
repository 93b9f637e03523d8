"""Settlement Orchestrator - end-of-trip money movement for a booking.

Coordinates the other services:
1. Capture the authorized payment (or record a cash settlement)
2. Collect any fare overrun from the customer's wallet, deferring to a
   payment link when the wallet cannot cover it
3. Compute provider earnings
4. Mark the booking's payment complete

Capture, earnings and the booking update share one top-level transaction.
The wallet debit runs in its own savepoint so an insufficient balance never
fails the settlement.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from fare_settlement.database import acquire_booking_lock, transaction
from fare_settlement.errors import NotFoundError, ValidationError
from fare_settlement.models import Booking, PaymentRecord
from fare_settlement.settlement.config import SettlementConfig
from fare_settlement.settlement.events import (
    AdditionalPaymentDeferred,
    EventEmitter,
    EventMetadata,
    PaymentCaptured,
    PaymentSettled,
)
from fare_settlement.settlement.gateway import is_whole_minor_units
from fare_settlement.settlement.services.capture import CaptureOutcome, CaptureService
from fare_settlement.settlement.services.earnings import EarningsCalculator, EarningsResult
from fare_settlement.settlement.services.lookups import (
    find_active_payment,
    load_booking_for_update,
    load_pending_shortfall_for_update,
)
from fare_settlement.settlement.services.reconciliation import ReconciliationService
from fare_settlement.settlement.services.wallet_ledger import WalletAdjustment, WalletLedgerService
from fare_settlement.settlement.state_machine import (
    PaymentStateMachine,
    PaymentStatus,
    SettlementStateMachine,
    SettlementStatus,
)

logger = logging.getLogger(__name__)

BOOKING_PAYMENT_COMPLETED = "completed"


@dataclass(frozen=True)
class SettlementResult:
    """How the fare was collected."""

    payment_method: str  # 'gateway' or 'cash'
    capture: CaptureOutcome | None = None
    additional_payment_needed: bool = False
    additional_amount: Decimal = Decimal("0")
    additional_payment_method: str | None = None  # 'wallet' or 'payment_link'
    wallet_adjustment: WalletAdjustment | None = None

    @property
    def captured_amount(self) -> Decimal | None:
        return self.capture.captured_amount if self.capture else None


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of settling a booking."""

    booking_id: UUID
    final_fare: Decimal
    settlement_result: SettlementResult
    earnings_result: EarningsResult
    settlement_status: str


@dataclass(frozen=True)
class AdditionalPaymentResult:
    """Result of collecting a deferred fare overrun."""

    booking_id: UUID
    payment_id: UUID
    gateway_payment_id: str
    amount: Decimal
    settlement_status: str


class SettlementOrchestrator:
    """Settles bookings by composing capture, wallet and earnings."""

    def __init__(
        self,
        db: Session,
        capture: CaptureService,
        wallet: WalletLedgerService,
        earnings: EarningsCalculator,
        reconciliation: ReconciliationService | None = None,
        config: SettlementConfig | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.db = db
        self.capture = capture
        self.wallet = wallet
        self.earnings = earnings
        self.reconciliation = reconciliation or ReconciliationService(db, emitter)
        self.shortfall_transaction_type = (
            config.shortfall_transaction_type if config else "fare_adjustment"
        )
        self.emitter = emitter

    def settle_payment(self, *, booking_id: UUID, final_fare: Decimal) -> SettlementOutcome:
        """Settle a completed booking for its final fare.

        Args:
            booking_id: Booking to settle
            final_fare: Final fare in major units

        Returns:
            SettlementOutcome; settlement_status is `settled`, or
            `additional_payment_pending` when the overrun awaits a payment link

        Raises:
            ValidationError: Non-positive fare, fare finer than the minor unit,
                booking already settled, or payment already captured for a
                different fare
            NotFoundError: Unknown booking
            GatewayError: Capture rejected; nothing changes
            CaptureError: Capture could not be persisted
        """
        fare = Decimal(final_fare)
        if fare <= 0:
            raise ValidationError("Final fare must be positive")
        if not is_whole_minor_units(fare):
            raise ValidationError(f"Final fare {fare} is not a whole number of minor units")

        events = self.emitter.batch() if self.emitter else contextlib.nullcontext()
        with events:
            with transaction(self.db):
                acquire_booking_lock(self.db, booking_id)
                booking = load_booking_for_update(self.db, booking_id)
                if booking.payment_status == BOOKING_PAYMENT_COMPLETED:
                    raise ValidationError(f"Booking {booking_id} is already settled")

                machine = SettlementStateMachine()
                payment = find_active_payment(self.db, booking_id)

                if payment is None:
                    settlement = SettlementResult(payment_method="cash")
                    machine.transition_to(SettlementStatus.SETTLED)
                    earnings = self._finish(booking, fare)
                else:
                    capture = self.capture.capture_payment(
                        booking_id=booking_id,
                        gateway_payment_id=payment.gateway_payment_id,
                        final_amount=fare,
                    )
                    if not capture.is_new and capture.final_amount != fare:
                        raise ValidationError(
                            f"Payment {capture.gateway_payment_id} was already captured for "
                            f"{capture.final_amount}; cannot settle booking {booking_id} for {fare}"
                        )
                    machine.transition_to(SettlementStatus.CAPTURED)
                    try:
                        settlement = self._collect_shortfall(booking.user_id, capture)
                        if settlement.additional_payment_method == "payment_link":
                            machine.transition_to(SettlementStatus.ADDITIONAL_PAYMENT_PENDING)
                        else:
                            machine.transition_to(SettlementStatus.SETTLED)
                        earnings = self._finish(booking, fare)
                    except Exception as exc:
                        if capture.is_new:
                            logger.exception(
                                "Settlement of booking %s failed after capturing %s",
                                booking_id,
                                capture.captured_amount,
                            )
                            self.reconciliation.defer(
                                kind="settlement",
                                error=str(exc),
                                booking_id=booking_id,
                                gateway_payment_id=capture.gateway_payment_id,
                                gateway_reference=capture.capture_id,
                                amount=capture.captured_amount,
                            )
                        raise

            outcome = SettlementOutcome(
                booking_id=booking_id,
                final_fare=fare,
                settlement_result=settlement,
                earnings_result=earnings,
                settlement_status=machine.status.value,
            )
            logger.info(
                "Settled booking %s for %s via %s: %s",
                booking_id,
                fare,
                settlement.payment_method,
                outcome.settlement_status,
            )
            self._emit(outcome)

        return outcome

    def complete_additional_payment(
        self,
        *,
        booking_id: UUID,
        gateway_payment_id: str,
    ) -> AdditionalPaymentResult:
        """Mark a deferred overrun collected through a payment link.

        Raises:
            NotFoundError: The booking has no pending shortfall
        """
        with transaction(self.db):
            acquire_booking_lock(self.db, booking_id)
            load_booking_for_update(self.db, booking_id)
            shortfall = load_pending_shortfall_for_update(self.db, booking_id)

            machine = SettlementStateMachine(SettlementStatus.ADDITIONAL_PAYMENT_PENDING)
            PaymentStateMachine.validate_transition(shortfall.status, PaymentStatus.CAPTURED)
            shortfall.status = PaymentStatus.CAPTURED.value
            shortfall.method = "payment_link"
            shortfall.gateway_payment_id = gateway_payment_id
            shortfall.captured_amount = shortfall.authorized_amount
            shortfall.captured_at = datetime.now(timezone.utc)
            machine.transition_to(SettlementStatus.SETTLED)
            self.db.flush()

        logger.info(
            "Collected additional %s for booking %s via payment %s",
            shortfall.authorized_amount,
            booking_id,
            gateway_payment_id,
        )
        if self.emitter:
            self.emitter.emit(
                PaymentCaptured(
                    metadata=EventMetadata.create(source_service="settlement"),
                    payment_id=shortfall.payment_id,
                    booking_id=booking_id,
                    gateway_payment_id=gateway_payment_id,
                    captured_amount=shortfall.authorized_amount,
                    capture_id=gateway_payment_id,
                )
            )

        return AdditionalPaymentResult(
            booking_id=booking_id,
            payment_id=shortfall.payment_id,
            gateway_payment_id=gateway_payment_id,
            amount=shortfall.authorized_amount,
            settlement_status=machine.status.value,
        )

    def _collect_shortfall(self, user_id: UUID, capture: CaptureOutcome) -> SettlementResult:
        """Debit a fare overrun from the wallet, or defer it to a payment link."""
        if not capture.additional_payment_needed:
            return SettlementResult(payment_method="gateway", capture=capture)

        shortfall = self.db.get(PaymentRecord, capture.shortfall_payment_id)
        if shortfall is None:
            raise NotFoundError("Shortfall payment", str(capture.shortfall_payment_id))
        if shortfall.status != PaymentStatus.PENDING.value:
            # Collected by an earlier settlement attempt
            return SettlementResult(
                payment_method="gateway",
                capture=capture,
                additional_payment_needed=True,
                additional_amount=capture.additional_amount,
                additional_payment_method=shortfall.method,
            )

        adjustment = self.wallet.try_adjust_wallet(
            user_id=user_id,
            amount=-capture.additional_amount,
            transaction_type=self.shortfall_transaction_type,
            booking_id=capture.booking_id,
            description=f"Fare adjustment for booking {capture.booking_id}",
        )
        if not adjustment.applied:
            logger.warning(
                "Wallet cannot cover %s for booking %s; deferring to payment link",
                capture.additional_amount,
                capture.booking_id,
            )
            return SettlementResult(
                payment_method="gateway",
                capture=capture,
                additional_payment_needed=True,
                additional_amount=capture.additional_amount,
                additional_payment_method="payment_link",
                wallet_adjustment=adjustment,
            )

        PaymentStateMachine.validate_transition(shortfall.status, PaymentStatus.CAPTURED)
        shortfall.status = PaymentStatus.CAPTURED.value
        shortfall.captured_amount = shortfall.authorized_amount
        shortfall.captured_at = datetime.now(timezone.utc)
        self.db.flush()
        return SettlementResult(
            payment_method="gateway",
            capture=capture,
            additional_payment_needed=True,
            additional_amount=capture.additional_amount,
            additional_payment_method="wallet",
            wallet_adjustment=adjustment,
        )

    def _finish(self, booking: Booking, fare: Decimal) -> EarningsResult:
        earnings = self.earnings.calculate_provider_earnings(
            booking_id=booking.booking_id,
            provider_id=booking.provider_id,
            final_fare=fare,
        )
        booking.payment_status = BOOKING_PAYMENT_COMPLETED
        self.db.flush()
        return earnings

    def _emit(self, outcome: SettlementOutcome) -> None:
        if not self.emitter:
            return
        settlement = outcome.settlement_result
        metadata = EventMetadata.create(source_service="settlement")
        if settlement.additional_payment_method == "payment_link":
            self.emitter.emit(
                AdditionalPaymentDeferred(
                    metadata=metadata,
                    booking_id=outcome.booking_id,
                    payment_id=settlement.capture.shortfall_payment_id,
                    amount=settlement.additional_amount,
                )
            )
        self.emitter.emit(
            PaymentSettled(
                metadata=EventMetadata.create(correlation_id=metadata.correlation_id),
                booking_id=outcome.booking_id,
                final_fare=outcome.final_fare,
                settlement_status=outcome.settlement_status,
                payment_method=settlement.payment_method,
            )
        )
