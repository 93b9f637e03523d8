"""Booking and pricing-rule models owned by neighbouring subsystems.

Only the columns settlement reads are mapped. Settlement writes
``Booking.payment_status`` and nothing else.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from fare_settlement.models.base import Base, TimestampMixin


class Booking(Base, TimestampMixin):
    """A customer booking with an assigned provider."""

    __tablename__ = "booking"

    booking_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    provider_id: Mapped[UUID] = mapped_column(nullable=False)
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed', 'refunded')",
            name="booking_payment_status_check",
        ),
    )


class PricingRule(Base, TimestampMixin):
    """Admin-managed pricing rule (commission, GST, ...)."""

    __tablename__ = "pricing_rule"

    pricing_rule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    rule_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    rule_value: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
