"""Fare pre-authorization.

Reserves the estimated fare on the customer's instrument by creating a
manual-capture gateway order. Funds move only when the Capture Engine
captures the authorization at the end of the trip.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fare_settlement.database import transaction
from fare_settlement.errors import NotFoundError, SettlementError, ValidationError
from fare_settlement.models import Booking, PaymentRecord
from fare_settlement.settlement.config import SettlementConfig
from fare_settlement.settlement.events import (
    EventEmitter,
    EventMetadata,
    PaymentAuthorized,
    PaymentPreAuthorized,
)
from fare_settlement.settlement.gateway import PaymentGateway, is_whole_minor_units, to_minor_units
from fare_settlement.settlement.schemas import CustomerDetails
from fare_settlement.settlement.state_machine import PaymentStateMachine, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreAuthResult:
    """Result of creating a pre-authorization."""

    payment_id: UUID
    gateway_order_id: str
    amount: Decimal
    currency: str
    status: str


@dataclass(frozen=True)
class AuthorizationResult:
    """Result of recording a customer authorization.

    `is_new=False` means the authorization had already been recorded.
    """

    payment_id: UUID
    booking_id: UUID
    gateway_payment_id: str
    status: str
    is_new: bool


class FareAuthorizationService:
    """Issues pre-authorizations and records customer authorizations."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        config: SettlementConfig | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.default_currency = config.default_currency if config else "INR"
        self.emitter = emitter

    def create_pre_auth_payment(
        self,
        *,
        booking_id: UUID,
        user_id: UUID,
        estimated_amount: Decimal,
        customer_details: CustomerDetails | dict[str, Any],
        currency: str | None = None,
    ) -> PreAuthResult:
        """Create a manual-capture order for the estimated fare.

        Args:
            booking_id: Booking the fare belongs to
            user_id: Paying customer
            estimated_amount: Estimated fare in major units
            customer_details: Name, email and contact of the payer
            currency: ISO currency code, defaults to the configured currency

        Returns:
            PreAuthResult for the new `created` payment record

        Raises:
            ValidationError: Non-positive amount or invalid customer details
            NotFoundError: Unknown booking
            GatewayError: The gateway rejected the order
        """
        amount = Decimal(estimated_amount)
        if amount <= 0:
            raise ValidationError("Estimated amount must be positive")
        amount_minor = to_minor_units(amount)
        if amount_minor <= 0:
            raise ValidationError("Estimated amount is below the smallest currency unit")
        if not is_whole_minor_units(amount):
            raise ValidationError(f"Estimated amount {amount} is not a whole number of minor units")

        details = self._validate_customer(customer_details)
        currency = (currency or self.default_currency).upper()
        if len(currency) != 3:
            raise ValidationError(f"Invalid currency code: {currency}")

        with transaction(self.db):
            if self.db.get(Booking, booking_id) is None:
                raise NotFoundError("Booking", str(booking_id))

            order = self.gateway.create_order(
                amount_minor=amount_minor,
                currency=currency,
                receipt=f"booking_{booking_id}_{int(time.time() * 1000)}",
                manual_capture=True,
                notes={"booking_id": str(booking_id), "user_id": str(user_id)},
            )

            try:
                record = PaymentRecord(
                    booking_id=booking_id,
                    user_id=user_id,
                    gateway_order_id=order.order_id,
                    method="gateway",
                    status=PaymentStatus.CREATED.value,
                    authorized_amount=amount,
                    captured_amount=Decimal("0"),
                    currency=currency,
                    email=details.email,
                    contact=details.contact,
                )
                self.db.add(record)
                self.db.flush()
            except SQLAlchemyError as exc:
                # No money moved yet; the orphaned order expires at the gateway.
                raise SettlementError(
                    f"Failed to record pre-authorization for booking {booking_id}"
                ) from exc

        logger.info(
            "Created pre-authorization %s for booking %s: %s %s",
            order.order_id,
            booking_id,
            amount,
            currency,
        )
        if self.emitter:
            self.emitter.emit(
                PaymentPreAuthorized(
                    metadata=EventMetadata.create(source_service="preauth"),
                    payment_id=record.payment_id,
                    booking_id=booking_id,
                    gateway_order_id=order.order_id,
                    amount=amount,
                    currency=currency,
                )
            )

        return PreAuthResult(
            payment_id=record.payment_id,
            gateway_order_id=order.order_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.CREATED.value,
        )

    def record_authorization(
        self,
        *,
        gateway_order_id: str,
        gateway_payment_id: str,
        method: str | None = None,
    ) -> AuthorizationResult:
        """Move a `created` record to `authorized` once the customer pays.

        Repeating the call with the same gateway payment id is a no-op.

        Raises:
            NotFoundError: No payment record for the order
            InvalidTransitionError: The record cannot be authorized
        """
        with transaction(self.db):
            record = self.db.execute(
                select(PaymentRecord)
                .where(PaymentRecord.gateway_order_id == gateway_order_id)
                .with_for_update()
            ).scalar_one_or_none()
            if record is None:
                raise NotFoundError("PaymentRecord", f"order {gateway_order_id}")

            if record.gateway_payment_id == gateway_payment_id and record.status != PaymentStatus.CREATED.value:
                return AuthorizationResult(
                    payment_id=record.payment_id,
                    booking_id=record.booking_id,
                    gateway_payment_id=gateway_payment_id,
                    status=record.status,
                    is_new=False,
                )

            PaymentStateMachine.validate_transition(record.status, PaymentStatus.AUTHORIZED)
            record.status = PaymentStatus.AUTHORIZED.value
            record.gateway_payment_id = gateway_payment_id
            if method:
                record.method = method
            self.db.flush()

        logger.info("Payment %s authorized for order %s", gateway_payment_id, gateway_order_id)
        if self.emitter:
            self.emitter.emit(
                PaymentAuthorized(
                    metadata=EventMetadata.create(source_service="preauth"),
                    payment_id=record.payment_id,
                    booking_id=record.booking_id,
                    gateway_payment_id=gateway_payment_id,
                )
            )

        return AuthorizationResult(
            payment_id=record.payment_id,
            booking_id=record.booking_id,
            gateway_payment_id=gateway_payment_id,
            status=record.status,
            is_new=True,
        )

    @staticmethod
    def _validate_customer(details: CustomerDetails | dict[str, Any]) -> CustomerDetails:
        if isinstance(details, CustomerDetails):
            return details
        try:
            return CustomerDetails.model_validate(details)
        except PydanticValidationError as exc:
            fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
            raise ValidationError(f"Invalid customer details: {fields}") from exc
