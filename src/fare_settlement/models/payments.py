"""Gateway payment and refund models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fare_settlement.models.base import Base, TimestampMixin


class PaymentRecord(Base, TimestampMixin):
    """A customer payment against a booking.

    Created at pre-authorization and mutated (never deleted) through
    authorization, capture and refund. A fare overrun is represented by a
    second row with method ``wallet_deduction`` linked via parent_payment_id.
    """

    __tablename__ = "payment_record"

    payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        ForeignKey("booking.booking_id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    method: Mapped[str] = mapped_column(String, nullable=False, default="gateway")
    status: Mapped[str] = mapped_column(String, nullable=False, default="created")
    authorized_amount: Mapped[Decimal] = mapped_column(nullable=False)
    captured_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    contact: Mapped[str | None] = mapped_column(String, nullable=True)
    parent_payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_record.payment_id", ondelete="RESTRICT"),
        nullable=True,
    )
    captured_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'authorized', 'captured', 'refunded', 'pending')",
            name="payment_record_status_check",
        ),
        CheckConstraint("authorized_amount > 0", name="payment_record_authorized_positive"),
        CheckConstraint(
            "captured_amount >= 0 AND captured_amount <= authorized_amount",
            name="payment_record_capture_within_authorization",
        ),
        Index("ix_payment_record_booking_gateway", "booking_id", "gateway_payment_id"),
    )

    # Relationships
    refunds: Mapped[list[RefundRecord]] = relationship(
        back_populates="payment",
        order_by="RefundRecord.refunded_at",
    )
    parent: Mapped[PaymentRecord | None] = relationship(remote_side=[payment_id])

    @property
    def is_shortfall(self) -> bool:
        """True for the secondary row covering a fare overrun."""
        return self.parent_payment_id is not None

    @property
    def refunded_total(self) -> Decimal:
        """Sum of processed refunds against this payment."""
        return sum(
            (r.amount for r in self.refunds if r.status == "processed"),
            Decimal("0"),
        )


class RefundRecord(Base):
    """A gateway refund recorded against a captured payment."""

    __tablename__ = "refund_record"

    refund_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_record.payment_id", ondelete="RESTRICT"),
        nullable=False,
    )
    gateway_refund_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="processed")
    refunded_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="refund_record_amount_positive"),
        CheckConstraint(
            "status IN ('processed', 'failed')",
            name="refund_record_status_check",
        ),
    )

    # Relationships
    payment: Mapped[PaymentRecord] = relationship(back_populates="refunds")
