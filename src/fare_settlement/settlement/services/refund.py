"""Refund Processor.

Refunds part or all of a captured payment. The cumulative refund bound
(sum of refunds <= captured amount) is enforced locally before the gateway
is called, so an over-refund never reaches the gateway.
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
from fare_settlement.errors import RefundError, ValidationError
from fare_settlement.models import RefundRecord
from fare_settlement.settlement.events import EventEmitter, EventMetadata, RefundProcessed
from fare_settlement.settlement.gateway import PaymentGateway, is_whole_minor_units, to_minor_units
from fare_settlement.settlement.services.lookups import load_payment_for_update
from fare_settlement.settlement.services.reconciliation import ReconciliationService
from fare_settlement.settlement.state_machine import PaymentStateMachine, PaymentStatus

logger = logging.getLogger(__name__)

ESTIMATED_SETTLEMENT_TIME = "5-7 business days"


@dataclass(frozen=True)
class RefundOutcome:
    """Result of a processed refund."""

    refund_id: UUID
    gateway_refund_id: str
    payment_id: UUID
    booking_id: UUID
    amount: Decimal
    refunded_total: Decimal
    remaining_refundable: Decimal
    payment_status: str
    estimated_settlement_time: str = ESTIMATED_SETTLEMENT_TIME

    @property
    def fully_refunded(self) -> bool:
        return self.remaining_refundable == 0


class RefundService:
    """Issues gateway refunds and records them against the payment."""

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

    def process_refund(
        self,
        *,
        booking_id: UUID,
        gateway_payment_id: str,
        refund_amount: Decimal,
        reason: str | None = None,
    ) -> RefundOutcome:
        """Refund a captured payment.

        Args:
            booking_id: Booking the payment belongs to
            gateway_payment_id: Gateway id of the captured payment
            refund_amount: Amount to refund in major units
            reason: Free-text reason stored with the refund

        Returns:
            RefundOutcome with running totals

        Raises:
            ValidationError: Non-positive amount or one finer than the minor
                unit, payment not captured, or amount above what remains
                refundable. No refund is recorded.
            NotFoundError: No payment record for (booking, gateway payment)
            GatewayError: The gateway rejected the refund
            RefundError: The refund could not be persisted
        """
        amount = Decimal(refund_amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if not is_whole_minor_units(amount):
            raise ValidationError(f"Refund amount {amount} is not a whole number of minor units")

        with transaction(self.db):
            record = load_payment_for_update(self.db, booking_id, gateway_payment_id)
            if not PaymentStateMachine.can_refund(record.status):
                raise ValidationError(
                    f"Payment {gateway_payment_id} is {record.status}; only captured payments can be refunded"
                )

            already_refunded = record.refunded_total
            refundable = record.captured_amount - already_refunded
            if amount > refundable:
                logger.warning(
                    "Rejected refund of %s on payment %s: only %s refundable",
                    amount,
                    gateway_payment_id,
                    refundable,
                )
                raise ValidationError(
                    f"Refund amount {amount} exceeds refundable amount {refundable}"
                )

            result = self.gateway.refund_payment(
                payment_id=gateway_payment_id,
                amount_minor=to_minor_units(amount),
                notes={"booking_id": str(booking_id), "reason": reason or ""},
            )

            refunded_total = already_refunded + amount
            try:
                refund = RefundRecord(
                    gateway_refund_id=result.refund_id,
                    amount=amount,
                    reason=reason,
                    status="processed",
                    refunded_at=datetime.now(timezone.utc),
                )
                record.refunds.append(refund)
                if refunded_total >= record.captured_amount:
                    PaymentStateMachine.validate_transition(record.status, PaymentStatus.REFUNDED)
                    record.status = PaymentStatus.REFUNDED.value
                self.db.flush()
            except SQLAlchemyError as exc:
                logger.exception(
                    "Refunded %s on payment %s but failed to persist it",
                    amount,
                    gateway_payment_id,
                )
                self.reconciliation.defer(
                    kind="refund",
                    error=str(exc),
                    booking_id=booking_id,
                    gateway_payment_id=gateway_payment_id,
                    gateway_reference=result.refund_id,
                    amount=amount,
                )
                raise RefundError(f"Failed to persist refund of payment {gateway_payment_id}") from exc

            outcome = RefundOutcome(
                refund_id=refund.refund_id,
                gateway_refund_id=result.refund_id,
                payment_id=record.payment_id,
                booking_id=booking_id,
                amount=amount,
                refunded_total=refunded_total,
                remaining_refundable=record.captured_amount - refunded_total,
                payment_status=record.status,
            )

        logger.info(
            "Refunded %s on payment %s (%s of %s refunded)",
            amount,
            gateway_payment_id,
            refunded_total,
            outcome.refunded_total + outcome.remaining_refundable,
        )
        if self.emitter:
            self.emitter.emit(
                RefundProcessed(
                    metadata=EventMetadata.create(source_service="refund"),
                    refund_id=outcome.refund_id,
                    payment_id=outcome.payment_id,
                    booking_id=booking_id,
                    amount=amount,
                    fully_refunded=outcome.fully_refunded,
                )
            )
        return outcome
