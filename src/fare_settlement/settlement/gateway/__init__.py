"""Payment gateway adapters."""

from fare_settlement.settlement.gateway.base import (
    CaptureResult,
    OrderResult,
    PaymentGateway,
    RefundResult,
    from_minor_units,
    is_whole_minor_units,
    to_minor_units,
)
from fare_settlement.settlement.gateway.http import HttpGateway
from fare_settlement.settlement.gateway.stub import StubGateway
from fare_settlement.settlement.gateway.webhooks import (
    compute_signature,
    parse_webhook,
    verify_webhook_signature,
)

__all__ = [
    "PaymentGateway",
    "OrderResult",
    "CaptureResult",
    "RefundResult",
    "to_minor_units",
    "from_minor_units",
    "is_whole_minor_units",
    "HttpGateway",
    "StubGateway",
    "compute_signature",
    "parse_webhook",
    "verify_webhook_signature",
]
