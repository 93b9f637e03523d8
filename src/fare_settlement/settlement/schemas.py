"""Pydantic schemas for inbound payloads (customer details, gateway webhooks)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CustomerDetails(BaseModel):
    """Customer contact details attached to a pre-authorization."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = None
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    contact: str = Field(min_length=7, max_length=20, pattern=r"^\+?[0-9 \-]+$")


# ============================================================================
# Webhook schemas
# ============================================================================


class WebhookPaymentEntity(BaseModel):
    """Payment entity carried by payment.* webhook events."""

    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str | None = None
    amount: int
    currency: str = "INR"
    status: str
    method: str | None = None
    error_description: str | None = None


class WebhookEvent(BaseModel):
    """Envelope of a gateway webhook delivery."""

    model_config = ConfigDict(extra="ignore")

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def payment(self) -> WebhookPaymentEntity | None:
        """The payment entity, if this event carries one."""
        entity = self.payload.get("payment", {}).get("entity")
        if entity is None:
            return None
        return WebhookPaymentEntity.model_validate(entity)
