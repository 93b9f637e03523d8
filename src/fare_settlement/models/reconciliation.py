"""Reconciliation outbox model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fare_settlement.models.base import Base, TimestampMixin


class ReconciliationEntry(Base, TimestampMixin):
    """A gateway side effect the local ledger failed to record.

    Written after the gateway accepted a capture or refund but the
    database write that should have followed it rolled back. An operator
    resolves the entry once ledger and gateway agree again.
    """

    __tablename__ = "reconciliation_entry"

    reconciliation_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    booking_id: Mapped[UUID | None] = mapped_column(nullable=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="open")
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('capture', 'refund', 'settlement')",
            name="reconciliation_entry_kind_check",
        ),
        CheckConstraint(
            "status IN ('open', 'resolved')",
            name="reconciliation_entry_status_check",
        ),
    )
