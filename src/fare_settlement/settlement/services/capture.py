"""Capture Engine - turns a pre-authorization into a transfer.

Handles both fare outcomes:
- final fare within the authorization: capture exactly the final fare; the
  gateway releases the remainder
- final fare above the authorization: capture the full authorization and
  record the overrun as a linked `pending` shortfall row

The gateway call and the ledger writes run inside one transaction. If the
writes fail after the gateway accepted the capture, everything local rolls
back and a reconciliation entry records the captured funds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fare_settlement.database import transaction
from fare_settlement.errors import CaptureError, ValidationError
from fare_settlement.models import PaymentRecord
from fare_settlement.settlement.events import (
    EventEmitter,
    EventMetadata,
    PaymentCaptured,
    ShortfallRecorded,
)
from fare_settlement.settlement.gateway import PaymentGateway, is_whole_minor_units, to_minor_units
from fare_settlement.settlement.services.lookups import find_shortfall, load_payment_for_update
from fare_settlement.settlement.services.reconciliation import ReconciliationService
from fare_settlement.settlement.state_machine import PaymentStateMachine, PaymentStatus

logger = logging.getLogger(__name__)

SHORTFALL_METHOD = "wallet_deduction"


@dataclass(frozen=True)
class CaptureOutcome:
    """Result of a capture.

    IMPORTANT: Check `is_new` before acting on the outcome. If `is_new=False`
    the payment had already been captured and the stored outcome is returned;
    no gateway call was made.
    """

    payment_id: UUID
    booking_id: UUID
    gateway_payment_id: str
    authorized_amount: Decimal
    captured_amount: Decimal
    final_amount: Decimal
    additional_payment_needed: bool
    additional_amount: Decimal
    shortfall_payment_id: UUID | None
    capture_id: str | None
    is_new: bool


def capture_idempotency_key(gateway_payment_id: str) -> str:
    """Gateway idempotency key for capturing a payment.

    One authorization is captured at most once, so the key depends only on
    the gateway payment id. A retry after a local rollback replays the
    gateway's stored result instead of capturing twice.
    """
    return f"capture:{gateway_payment_id}"


class CaptureService:
    """Captures authorized payments, splitting fare overruns into shortfalls."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        reconciliation: ReconciliationService | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.reconciliation = reconciliation or ReconciliationService(db, emitter)
        self.emitter = emitter

    def capture_payment(
        self,
        *,
        booking_id: UUID,
        gateway_payment_id: str,
        final_amount: Decimal,
        authorized_amount: Decimal | None = None,
    ) -> CaptureOutcome:
        """Capture the final fare against an authorized payment.

        Args:
            booking_id: Booking the payment belongs to
            gateway_payment_id: Gateway id of the authorized payment
            final_amount: Final fare in major units
            authorized_amount: Amount the caller believes was authorized.
                Must match the stored authorization when given.

        Returns:
            CaptureOutcome; `additional_payment_needed` is True when the fare
            overran the authorization

        Raises:
            ValidationError: Non-positive fare, fare finer than the currency's
                minor unit, or mismatched authorization
            NotFoundError: No payment record for (booking, gateway payment)
            InvalidTransitionError: The payment is not in a capturable status
            GatewayError: The gateway rejected the capture; nothing is written
            CaptureError: The capture could not be persisted
        """
        final = Decimal(final_amount)
        if final <= 0:
            raise ValidationError("Final amount must be positive")
        if not is_whole_minor_units(final):
            raise ValidationError(f"Final amount {final} is not a whole number of minor units")

        with transaction(self.db):
            record = load_payment_for_update(self.db, booking_id, gateway_payment_id)

            if record.status == PaymentStatus.CAPTURED.value:
                return self._stored_outcome(record, final)

            PaymentStateMachine.validate_transition(record.status, PaymentStatus.CAPTURED)
            if authorized_amount is not None and Decimal(authorized_amount) != record.authorized_amount:
                raise ValidationError(
                    f"Authorized amount {authorized_amount} does not match "
                    f"recorded authorization {record.authorized_amount}"
                )

            capture_amount = min(final, record.authorized_amount)
            shortfall = final - capture_amount

            result = self.gateway.capture_payment(
                payment_id=gateway_payment_id,
                amount_minor=to_minor_units(capture_amount),
                currency=record.currency,
                idempotency_key=capture_idempotency_key(gateway_payment_id),
            )

            try:
                record.status = PaymentStatus.CAPTURED.value
                record.captured_amount = capture_amount
                record.captured_at = datetime.now(timezone.utc)

                shortfall_record = None
                if shortfall > 0:
                    shortfall_record = PaymentRecord(
                        booking_id=record.booking_id,
                        user_id=record.user_id,
                        method=SHORTFALL_METHOD,
                        status=PaymentStatus.PENDING.value,
                        authorized_amount=shortfall,
                        captured_amount=Decimal("0"),
                        currency=record.currency,
                        email=record.email,
                        contact=record.contact,
                        parent_payment_id=record.payment_id,
                    )
                    self.db.add(shortfall_record)
                self.db.flush()
            except SQLAlchemyError as exc:
                logger.exception(
                    "Captured %s on payment %s but failed to persist it",
                    capture_amount,
                    gateway_payment_id,
                )
                self.reconciliation.defer(
                    kind="capture",
                    error=str(exc),
                    booking_id=booking_id,
                    gateway_payment_id=gateway_payment_id,
                    gateway_reference=result.capture_id,
                    amount=capture_amount,
                )
                raise CaptureError(
                    f"Failed to persist capture of payment {gateway_payment_id}"
                ) from exc

            outcome = CaptureOutcome(
                payment_id=record.payment_id,
                booking_id=booking_id,
                gateway_payment_id=gateway_payment_id,
                authorized_amount=record.authorized_amount,
                captured_amount=capture_amount,
                final_amount=final,
                additional_payment_needed=shortfall > 0,
                additional_amount=shortfall,
                shortfall_payment_id=shortfall_record.payment_id if shortfall_record else None,
                capture_id=result.capture_id,
                is_new=True,
            )

        if shortfall > 0:
            logger.info(
                "Captured %s of %s on payment %s; shortfall %s pending",
                capture_amount,
                final,
                gateway_payment_id,
                shortfall,
            )
        else:
            logger.info("Captured %s on payment %s", capture_amount, gateway_payment_id)
        self._emit(outcome)
        return outcome

    def _stored_outcome(self, record: PaymentRecord, final: Decimal) -> CaptureOutcome:
        shortfall_record = find_shortfall(self.db, record.payment_id)
        shortfall = shortfall_record.authorized_amount if shortfall_record else Decimal("0")
        stored_final = record.captured_amount + shortfall
        if stored_final != final:
            logger.warning(
                "Payment %s already captured for %s; ignoring requested %s",
                record.gateway_payment_id,
                stored_final,
                final,
            )
        return CaptureOutcome(
            payment_id=record.payment_id,
            booking_id=record.booking_id,
            gateway_payment_id=record.gateway_payment_id or "",
            authorized_amount=record.authorized_amount,
            captured_amount=record.captured_amount,
            final_amount=stored_final,
            additional_payment_needed=shortfall > 0,
            additional_amount=shortfall,
            shortfall_payment_id=shortfall_record.payment_id if shortfall_record else None,
            capture_id=None,
            is_new=False,
        )

    def _emit(self, outcome: CaptureOutcome) -> None:
        if not self.emitter:
            return
        metadata = EventMetadata.create(source_service="capture")
        self.emitter.emit(
            PaymentCaptured(
                metadata=metadata,
                payment_id=outcome.payment_id,
                booking_id=outcome.booking_id,
                gateway_payment_id=outcome.gateway_payment_id,
                captured_amount=outcome.captured_amount,
                capture_id=outcome.capture_id or "",
            )
        )
        if outcome.shortfall_payment_id is not None:
            self.emitter.emit(
                ShortfallRecorded(
                    metadata=EventMetadata.create(
                        correlation_id=metadata.correlation_id,
                        causation_id=metadata.event_id,
                        source_service="capture",
                    ),
                    payment_id=outcome.shortfall_payment_id,
                    parent_payment_id=outcome.payment_id,
                    booking_id=outcome.booking_id,
                    amount=outcome.additional_amount,
                )
            )
