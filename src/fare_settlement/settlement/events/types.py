"""Domain event types for settlement operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for persistence and notification fan-out
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PAYMENT = "payment"
    REFUND = "refund"
    WALLET = "wallet"
    EARNINGS = "earnings"
    SETTLEMENT = "settlement"
    RECONCILIATION = "reconciliation"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    causation_id: UUID | None  # Event that caused this one
    actor_type: str  # 'system', 'webhook', 'operator'
    source_service: str  # Service that emitted
    version: int = 1  # Schema version for evolution

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        causation_id: UUID | None = None,
        actor_type: str = "system",
        source_service: str = "settlement",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            causation_id=causation_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return _serialize_dict(data)

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentPreAuthorized(DomainEvent):
    """A manual-capture gateway order was created for an estimated fare."""

    payment_id: UUID
    booking_id: UUID
    gateway_order_id: str
    amount: Decimal
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentAuthorized(DomainEvent):
    """The customer authorized funds against a gateway order."""

    payment_id: UUID
    booking_id: UUID
    gateway_payment_id: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentCaptured(DomainEvent):
    """Authorized funds were captured."""

    payment_id: UUID
    booking_id: UUID
    gateway_payment_id: str
    captured_amount: Decimal
    capture_id: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class ShortfallRecorded(DomainEvent):
    """The final fare exceeded the authorization; a pending row covers the rest."""

    payment_id: UUID
    parent_payment_id: UUID
    booking_id: UUID
    amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


# =============================================================================
# Refund Events
# =============================================================================


@dataclass(frozen=True)
class RefundProcessed(DomainEvent):
    """A refund was accepted by the gateway and recorded."""

    refund_id: UUID
    payment_id: UUID
    booking_id: UUID
    amount: Decimal
    fully_refunded: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


# =============================================================================
# Wallet Events
# =============================================================================


@dataclass(frozen=True)
class WalletAdjusted(DomainEvent):
    """A wallet credit or debit was applied."""

    user_id: UUID
    booking_id: UUID | None
    amount: Decimal
    transaction_type: str
    balance_before: Decimal
    balance_after: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.WALLET


# =============================================================================
# Earnings Events
# =============================================================================


@dataclass(frozen=True)
class EarningsCalculated(DomainEvent):
    """Provider earnings were computed for a booking."""

    booking_id: UUID
    provider_id: UUID
    final_fare: Decimal
    provider_earnings: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.EARNINGS


# =============================================================================
# Settlement Events
# =============================================================================


@dataclass(frozen=True)
class PaymentSettled(DomainEvent):
    """A booking's end-of-trip settlement completed."""

    booking_id: UUID
    final_fare: Decimal
    settlement_status: str
    payment_method: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.SETTLEMENT


@dataclass(frozen=True)
class AdditionalPaymentDeferred(DomainEvent):
    """A fare overrun could not be taken from the wallet and awaits a payment link."""

    booking_id: UUID
    payment_id: UUID
    amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.SETTLEMENT


# =============================================================================
# Reconciliation Events
# =============================================================================


@dataclass(frozen=True)
class ReconciliationRequired(DomainEvent):
    """Gateway money moved but the local ledger write failed."""

    kind: str
    booking_id: UUID | None
    gateway_payment_id: str | None
    amount: Decimal | None
    error: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECONCILIATION
