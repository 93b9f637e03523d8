"""Settlement facade - one entry point for booking money movement.

Usage:
    settlement = FareSettlement(session, config)

    # Reserve the estimated fare
    preauth = settlement.create_pre_auth_payment(
        booking_id=booking_id, user_id=user_id,
        estimated_amount=Decimal("500.00"), customer_details=details,
    )

    # Customer authorizes out of band; the gateway calls back
    settlement.handle_webhook(body, signature)

    # End of trip
    outcome = settlement.settle_payment(booking_id=booking_id, final_fare=Decimal("620.00"))

The facade:
- Wires services to one session, gateway and event emitter
- Verifies webhook signatures before acting on them
- Leaves commit and rollback decisions to each operation's transaction
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from fare_settlement.errors import InvalidTransitionError, NotFoundError, ValidationError
from fare_settlement.models import ReconciliationEntry, WalletTransaction
from fare_settlement.settlement.config import GatewayConfig, SettlementConfig, create_sandbox_config
from fare_settlement.settlement.events import EventEmitter
from fare_settlement.settlement.gateway import (
    HttpGateway,
    PaymentGateway,
    StubGateway,
    parse_webhook,
    verify_webhook_signature,
)
from fare_settlement.settlement.schemas import CustomerDetails
from fare_settlement.settlement.services import (
    AdditionalPaymentResult,
    AuthorizationResult,
    CaptureOutcome,
    CaptureService,
    EarningsCalculator,
    EarningsResult,
    FareAuthorizationService,
    PreAuthResult,
    PricingRulesProvider,
    ReconciliationService,
    RefundOutcome,
    RefundService,
    SettlementOrchestrator,
    SettlementOutcome,
    WalletAdjustment,
    WalletLedgerService,
)

logger = logging.getLogger(__name__)


class WebhookStatus(str, Enum):
    """Result of handle_webhook."""

    PROCESSED = "processed"  # State changed
    DUPLICATE = "duplicate"  # Already applied (idempotent)
    IGNORED = "ignored"  # Event type not acted on
    INVALID = "invalid"  # Bad signature or malformed payload
    UNKNOWN = "unknown"  # No payment record for the order


@dataclass(frozen=True)
class WebhookResult:
    """Result of handling a gateway webhook."""

    status: WebhookStatus
    event: str | None = None
    payment_id: UUID | None = None


def build_gateway(config: GatewayConfig) -> PaymentGateway:
    """Gateway adapter for a configuration: the stub in sandbox, HTTP otherwise."""
    if config.sandbox:
        return StubGateway()
    return HttpGateway(config)


class FareSettlement:
    """Synchronous settlement facade over a single session."""

    def __init__(
        self,
        session: Session,
        config: SettlementConfig | None = None,
        gateway: PaymentGateway | None = None,
        pricing_rules: PricingRulesProvider | None = None,
        event_emitter: EventEmitter | None = None,
    ) -> None:
        self._session = session
        self._config = config or create_sandbox_config()
        self._owns_gateway = gateway is None
        self._gateway = gateway or build_gateway(self._config.gateway)
        self._emitter = event_emitter

        # Wire up services
        self._reconciliation = ReconciliationService(session, event_emitter)
        self._preauth = FareAuthorizationService(session, self._gateway, self._config, event_emitter)
        self._capture = CaptureService(session, self._gateway, self._reconciliation, event_emitter)
        self._refund = RefundService(session, self._gateway, self._reconciliation, event_emitter)
        self._wallet = WalletLedgerService(session, event_emitter)
        self._earnings = EarningsCalculator(
            session,
            rules=pricing_rules,
            config=self._config.earnings,
            emitter=event_emitter,
        )
        self._orchestrator = SettlementOrchestrator(
            session,
            capture=self._capture,
            wallet=self._wallet,
            earnings=self._earnings,
            reconciliation=self._reconciliation,
            config=self._config,
            emitter=event_emitter,
        )

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    def close(self) -> None:
        """Close the gateway adapter if this facade built it."""
        if self._owns_gateway:
            self._gateway.close()

    # ------------------------------------------------------------------
    # Payment lifecycle
    # ------------------------------------------------------------------

    def create_pre_auth_payment(
        self,
        *,
        booking_id: UUID,
        user_id: UUID,
        estimated_amount: Decimal,
        customer_details: CustomerDetails | dict[str, Any],
        currency: str | None = None,
    ) -> PreAuthResult:
        """Reserve the estimated fare with a manual-capture order."""
        return self._preauth.create_pre_auth_payment(
            booking_id=booking_id,
            user_id=user_id,
            estimated_amount=estimated_amount,
            customer_details=customer_details,
            currency=currency,
        )

    def record_authorization(
        self,
        *,
        gateway_order_id: str,
        gateway_payment_id: str,
        method: str | None = None,
    ) -> AuthorizationResult:
        """Record the customer's authorization of an order."""
        return self._preauth.record_authorization(
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            method=method,
        )

    def capture_payment(
        self,
        *,
        booking_id: UUID,
        gateway_payment_id: str,
        final_amount: Decimal,
        authorized_amount: Decimal | None = None,
    ) -> CaptureOutcome:
        """Capture the final fare against an authorization."""
        return self._capture.capture_payment(
            booking_id=booking_id,
            gateway_payment_id=gateway_payment_id,
            final_amount=final_amount,
            authorized_amount=authorized_amount,
        )

    def process_refund(
        self,
        *,
        booking_id: UUID,
        gateway_payment_id: str,
        refund_amount: Decimal,
        reason: str | None = None,
    ) -> RefundOutcome:
        """Refund part or all of a captured payment."""
        return self._refund.process_refund(
            booking_id=booking_id,
            gateway_payment_id=gateway_payment_id,
            refund_amount=refund_amount,
            reason=reason,
        )

    def settle_payment(self, *, booking_id: UUID, final_fare: Decimal) -> SettlementOutcome:
        """Settle a completed booking."""
        return self._orchestrator.settle_payment(booking_id=booking_id, final_fare=final_fare)

    def complete_additional_payment(
        self,
        *,
        booking_id: UUID,
        gateway_payment_id: str,
    ) -> AdditionalPaymentResult:
        """Record collection of a fare overrun deferred to a payment link."""
        return self._orchestrator.complete_additional_payment(
            booking_id=booking_id,
            gateway_payment_id=gateway_payment_id,
        )

    def calculate_provider_earnings(
        self,
        *,
        booking_id: UUID,
        provider_id: UUID,
        final_fare: Decimal,
    ) -> EarningsResult:
        """Compute and record provider earnings."""
        return self._earnings.calculate_provider_earnings(
            booking_id=booking_id,
            provider_id=provider_id,
            final_fare=final_fare,
        )

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    def adjust_wallet(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        transaction_type: str,
        booking_id: UUID | None = None,
        description: str | None = None,
    ) -> WalletAdjustment:
        """Apply a signed wallet delta; raises InsufficientBalanceError on overdraw."""
        return self._wallet.adjust_wallet(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            booking_id=booking_id,
            description=description,
        )

    def wallet_balance(self, user_id: UUID) -> Decimal:
        return self._wallet.get_balance(user_id)

    def wallet_transactions(self, user_id: UUID, limit: int = 50) -> list[WalletTransaction]:
        return self._wallet.get_transactions(user_id, limit=limit)

    def verify_wallet(self, user_id: UUID) -> bool:
        """True when the stored balance matches the sum of ledger deltas."""
        return self._wallet.verify_balance(user_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def open_reconciliation_entries(self, limit: int = 100) -> list[ReconciliationEntry]:
        return self._reconciliation.list_open(limit=limit)

    def resolve_reconciliation_entry(self, entry_id: UUID, note: str) -> ReconciliationEntry:
        return self._reconciliation.resolve(entry_id, note)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def handle_webhook(self, body: bytes, signature: str | None) -> WebhookResult:
        """Handle a gateway webhook delivery.

        1. Verify the HMAC signature against the configured webhook secret
        2. Parse the payload
        3. Apply `payment.authorized` to the matching payment record

        `payment.captured` is acknowledged only; captures are driven by
        settlement, which has already recorded them.
        `payment.failed` is logged for operators and otherwise acknowledged.

        Args:
            body: Raw request body, exactly as received
            signature: Value of the signature header

        Returns:
            WebhookResult describing what happened
        """
        if not verify_webhook_signature(body, signature, self._config.gateway.webhook_secret):
            logger.warning("Rejected webhook with invalid signature")
            return WebhookResult(status=WebhookStatus.INVALID)

        try:
            event = parse_webhook(body)
            payment = event.payment
        except (ValidationError, ValueError) as exc:
            logger.warning("Rejected malformed webhook: %s", exc)
            return WebhookResult(status=WebhookStatus.INVALID)

        if event.event == "payment.failed" and payment is not None:
            logger.warning(
                "Gateway reported failed payment %s for order %s: %s",
                payment.id,
                payment.order_id,
                payment.error_description or "no description",
            )
            return WebhookResult(status=WebhookStatus.IGNORED, event=event.event)

        if event.event not in ("payment.authorized", "payment.captured") or payment is None:
            logger.info("Ignoring webhook event %s", event.event)
            return WebhookResult(status=WebhookStatus.IGNORED, event=event.event)

        if not payment.order_id:
            logger.warning("Webhook %s for payment %s has no order id", event.event, payment.id)
            return WebhookResult(status=WebhookStatus.INVALID, event=event.event)

        if event.event == "payment.captured":
            logger.info("Gateway confirmed capture of payment %s", payment.id)
            return WebhookResult(status=WebhookStatus.IGNORED, event=event.event)

        try:
            result = self._preauth.record_authorization(
                gateway_order_id=payment.order_id,
                gateway_payment_id=payment.id,
                method=payment.method,
            )
        except NotFoundError:
            logger.warning("Webhook for unknown order %s", payment.order_id)
            return WebhookResult(status=WebhookStatus.UNKNOWN, event=event.event)
        except InvalidTransitionError as exc:
            logger.warning("Webhook for payment %s not applied: %s", payment.id, exc)
            return WebhookResult(status=WebhookStatus.DUPLICATE, event=event.event)

        return WebhookResult(
            status=WebhookStatus.PROCESSED if result.is_new else WebhookStatus.DUPLICATE,
            event=event.event,
            payment_id=result.payment_id,
        )
