"""In-memory gateway stub for local development and testing.

Replace with HttpGateway (or another real adapter) for production.
"""

from __future__ import annotations

import datetime
import uuid
from typing import Any

from fare_settlement.errors import GatewayError
from fare_settlement.settlement.gateway.base import (
    CaptureResult,
    OrderResult,
    RefundResult,
)


class StubGateway:
    """Stub manual-capture gateway.

    Behaves like a real authorize/capture gateway:
    - orders are authorized by the customer out of band (simulate_authorization)
    - a capture can never exceed the authorized amount
    - a capture is idempotent per idempotency key
    - refunds are bounded by the captured amount
    """

    gateway_name = "stub"

    def __init__(self) -> None:
        # In-memory tracking for stub
        self.orders: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._captures_by_key: dict[str, CaptureResult] = {}
        self._failures: dict[str, tuple[str, bool]] = {}
        self.closed = False

    # ------------------------------------------------------------------
    # Gateway protocol
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.closed = True

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        manual_capture: bool = True,
        notes: dict[str, str] | None = None,
    ) -> OrderResult:
        """Create order (stub implementation)."""
        self._record("create_order", amount_minor=amount_minor, receipt=receipt)
        self._raise_if_failing("create_order")
        if amount_minor <= 0:
            raise GatewayError("create_order", "amount must be positive")

        order_id = f"order_stub_{uuid.uuid4().hex[:14]}"
        self.orders[order_id] = {
            "amount_minor": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "manual_capture": manual_capture,
            "notes": dict(notes or {}),
            "created_at": datetime.datetime.now(datetime.timezone.utc),
        }
        return OrderResult(
            order_id=order_id,
            amount_minor=amount_minor,
            currency=currency,
            raw={"receipt": receipt, "payment_capture": 0 if manual_capture else 1},
        )

    def capture_payment(
        self,
        *,
        payment_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str | None = None,
    ) -> CaptureResult:
        """Capture authorized funds (stub implementation)."""
        self._record("capture_payment", payment_id=payment_id, amount_minor=amount_minor)

        if idempotency_key and idempotency_key in self._captures_by_key:
            return self._captures_by_key[idempotency_key]

        self._raise_if_failing("capture_payment")

        payment = self.payments.get(payment_id)
        if payment is None:
            raise GatewayError("capture_payment", f"payment {payment_id} not found")
        if payment["status"] != "authorized":
            raise GatewayError("capture_payment", f"payment {payment_id} is {payment['status']}")
        if amount_minor <= 0:
            raise GatewayError("capture_payment", "amount must be positive")
        if amount_minor > payment["authorized_minor"]:
            raise GatewayError(
                "capture_payment",
                "capture amount exceeds authorized amount",
            )

        payment["captured_minor"] = amount_minor
        payment["status"] = "captured"
        result = CaptureResult(
            capture_id=f"capt_stub_{uuid.uuid4().hex[:14]}",
            payment_id=payment_id,
            amount_minor=amount_minor,
            currency=currency,
        )
        if idempotency_key:
            self._captures_by_key[idempotency_key] = result
        return result

    def refund_payment(
        self,
        *,
        payment_id: str,
        amount_minor: int,
        notes: dict[str, str] | None = None,
    ) -> RefundResult:
        """Refund captured funds (stub implementation)."""
        self._record("refund_payment", payment_id=payment_id, amount_minor=amount_minor)
        self._raise_if_failing("refund_payment")

        payment = self.payments.get(payment_id)
        if payment is None:
            raise GatewayError("refund_payment", f"payment {payment_id} not found")
        refundable = payment["captured_minor"] - payment["refunded_minor"]
        if amount_minor <= 0 or amount_minor > refundable:
            raise GatewayError(
                "refund_payment",
                f"refund of {amount_minor} exceeds refundable {refundable}",
            )

        payment["refunded_minor"] += amount_minor
        payment.setdefault("refunds", []).append({"amount_minor": amount_minor, "notes": notes or {}})
        return RefundResult(
            refund_id=f"rfnd_stub_{uuid.uuid4().hex[:14]}",
            payment_id=payment_id,
            amount_minor=amount_minor,
        )

    # ------------------------------------------------------------------
    # Simulation helpers (for testing)
    # ------------------------------------------------------------------

    def simulate_authorization(self, order_id: str, payment_id: str | None = None) -> str:
        """Simulate the customer authorizing an order.

        Returns:
            The gateway payment id holding the authorization.
        """
        order = self.orders[order_id]
        payment_id = payment_id or f"pay_stub_{uuid.uuid4().hex[:14]}"
        self.payments[payment_id] = {
            "order_id": order_id,
            "authorized_minor": order["amount_minor"],
            "captured_minor": 0,
            "refunded_minor": 0,
            "currency": order["currency"],
            "status": "authorized",
        }
        return payment_id

    def fail_next(self, operation: str, message: str = "simulated failure", retryable: bool = False) -> None:
        """Make the next call to ``operation`` raise GatewayError."""
        self._failures[operation] = (message, retryable)

    def call_count(self, operation: str) -> int:
        """Number of times ``operation`` was invoked."""
        return sum(1 for name, _ in self.calls if name == operation)

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))

    def _raise_if_failing(self, operation: str) -> None:
        failure = self._failures.pop(operation, None)
        if failure is not None:
            message, retryable = failure
            raise GatewayError(operation, message, retryable=retryable)
