"""REST gateway adapter over httpx.

Speaks a Razorpay-style JSON API: orders, payment capture and payment
refund. Every request runs with the configured timeout and is never
retried here.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from fare_settlement.errors import GatewayError
from fare_settlement.settlement.config import GatewayConfig
from fare_settlement.settlement.gateway.base import (
    CaptureResult,
    OrderResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


class HttpGateway:
    """Manual-capture gateway adapter using basic-auth JSON over HTTPS."""

    def __init__(self, config: GatewayConfig, client: httpx.Client | None = None):
        self.config = config
        self.gateway_name = config.name
        self._client = client or httpx.Client(
            base_url=config.base_url,
            auth=(config.key_id, config.key_secret),
            timeout=config.timeout_seconds,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        manual_capture: bool = True,
        notes: dict[str, str] | None = None,
    ) -> OrderResult:
        """Create an authorize-only order."""
        body = self._post(
            "create_order",
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 0 if manual_capture else 1,
                "notes": notes or {},
            },
        )
        return OrderResult(
            order_id=str(body["id"]),
            amount_minor=int(body.get("amount", amount_minor)),
            currency=str(body.get("currency", currency)),
            status=str(body.get("status", "created")),
            raw=body,
        )

    def capture_payment(
        self,
        *,
        payment_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str | None = None,
    ) -> CaptureResult:
        """Capture an authorized payment."""
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        body = self._post(
            "capture_payment",
            f"/payments/{payment_id}/capture",
            {"amount": amount_minor, "currency": currency},
            headers=headers,
        )
        return CaptureResult(
            capture_id=str(body.get("capture_id") or body["id"]),
            payment_id=payment_id,
            amount_minor=int(body.get("amount", amount_minor)),
            currency=str(body.get("currency", currency)),
            status=str(body.get("status", "captured")),
        )

    def refund_payment(
        self,
        *,
        payment_id: str,
        amount_minor: int,
        notes: dict[str, str] | None = None,
    ) -> RefundResult:
        """Refund a captured payment."""
        body = self._post(
            "refund_payment",
            f"/payments/{payment_id}/refund",
            {"amount": amount_minor, "notes": notes or {}},
        )
        return RefundResult(
            refund_id=str(body["id"]),
            payment_id=payment_id,
            amount_minor=int(body.get("amount", amount_minor)),
            status=str(body.get("status", "processed")),
        )

    def _post(
        self,
        operation: str,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("Gateway %s timed out after %ss", operation, self.config.timeout_seconds)
            raise GatewayError(operation, "request timed out", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise GatewayError(
                operation,
                f"HTTP {status}: {_error_description(exc.response)}",
                retryable=status >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(operation, str(exc), retryable=True) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(operation, "response was not valid JSON") from exc


def _error_description(response: httpx.Response) -> str:
    """Extract the gateway's error description from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("description"):
        return str(error["description"])
    return response.text[:200]
