"""Webhook signature verification and parsing."""

from __future__ import annotations

import hashlib
import hmac

from pydantic import ValidationError as PydanticValidationError

from fare_settlement.errors import ValidationError
from fare_settlement.settlement.schemas import WebhookEvent


def compute_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of a raw webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a webhook signature in constant time.

    Returns False when either the signature or the secret is missing.
    """
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature)


def parse_webhook(body: bytes) -> WebhookEvent:
    """Parse a raw webhook body, raising ValidationError on malformed input."""
    try:
        return WebhookEvent.model_validate_json(body)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed webhook payload: {exc.error_count()} error(s)") from exc
