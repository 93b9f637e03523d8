"""Base protocol and types for payment gateway adapters.

All gateway adapters must implement the PaymentGateway protocol. Amounts
cross this boundary in integer minor currency units (paise, cents).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

_MINOR_UNITS = Decimal("100")


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit Decimal amount to integer minor units."""
    return int((Decimal(amount) * _MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert integer minor units back to a two-place Decimal."""
    return (Decimal(amount_minor) / _MINOR_UNITS).quantize(Decimal("0.01"))


def is_whole_minor_units(amount: Decimal) -> bool:
    """True when the amount converts to minor units without rounding."""
    return from_minor_units(to_minor_units(amount)) == Decimal(amount)


@dataclass(frozen=True)
class OrderResult:
    """Result of creating a gateway order."""

    order_id: str
    amount_minor: int
    currency: str
    status: str = "created"
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureResult:
    """Result of capturing an authorized payment."""

    capture_id: str
    payment_id: str
    amount_minor: int
    currency: str
    status: str = "captured"


@dataclass(frozen=True)
class RefundResult:
    """Result of refunding a captured payment."""

    refund_id: str
    payment_id: str
    amount_minor: int
    status: str = "processed"


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    The settlement services use these adapters without knowing
    gateway-specific details. Every call must honour a bounded timeout and
    must not retry on its own; callers decide whether a retry is safe.
    Failures are raised as ``fare_settlement.errors.GatewayError``.
    """

    gateway_name: str

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        manual_capture: bool = True,
        notes: dict[str, str] | None = None,
    ) -> OrderResult:
        """Create an order the customer authorizes against.

        Args:
            amount_minor: Amount in minor units
            currency: ISO currency code
            receipt: Merchant receipt reference
            manual_capture: If True, authorize only; funds move on capture
            notes: Free-form key/value metadata

        Returns:
            OrderResult with the gateway order id.
        """
        ...

    def capture_payment(
        self,
        *,
        payment_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str | None = None,
    ) -> CaptureResult:
        """Capture up to the authorized amount of a payment.

        The unclaimed remainder of the authorization is released by the
        gateway; no explicit release call exists.
        """
        ...

    def refund_payment(
        self,
        *,
        payment_id: str,
        amount_minor: int,
        notes: dict[str, str] | None = None,
    ) -> RefundResult:
        """Refund part or all of a captured payment."""
        ...

    def close(self) -> None:
        """Release connections held by the adapter."""
        ...
