"""Domain events emitted by the settlement services."""

from fare_settlement.settlement.events.emitter import EventBatch, EventEmitter, EventHandler
from fare_settlement.settlement.events.types import (
    AdditionalPaymentDeferred,
    DomainEvent,
    EarningsCalculated,
    EventCategory,
    EventMetadata,
    PaymentAuthorized,
    PaymentCaptured,
    PaymentPreAuthorized,
    PaymentSettled,
    ReconciliationRequired,
    RefundProcessed,
    ShortfallRecorded,
    WalletAdjusted,
)

__all__ = [
    "EventEmitter",
    "EventBatch",
    "EventHandler",
    "EventCategory",
    "EventMetadata",
    "DomainEvent",
    "PaymentPreAuthorized",
    "PaymentAuthorized",
    "PaymentCaptured",
    "ShortfallRecorded",
    "RefundProcessed",
    "WalletAdjusted",
    "EarningsCalculated",
    "PaymentSettled",
    "AdditionalPaymentDeferred",
    "ReconciliationRequired",
]
