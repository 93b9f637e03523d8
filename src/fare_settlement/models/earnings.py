"""Provider earnings model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column

from fare_settlement.models.base import Base


class EarningsRecord(Base):
    """Commission/GST breakdown written once per settlement."""

    __tablename__ = "earnings_record"

    earnings_record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    provider_id: Mapped[UUID] = mapped_column(nullable=False)
    booking_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    final_fare: Mapped[Decimal] = mapped_column(nullable=False)
    platform_commission: Mapped[Decimal] = mapped_column(nullable=False)
    gst_amount: Mapped[Decimal] = mapped_column(nullable=False)
    provider_earnings: Mapped[Decimal] = mapped_column(nullable=False)
    commission_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    gst_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("final_fare > 0", name="earnings_record_fare_positive"),
        CheckConstraint(
            "commission_percentage >= 0 AND commission_percentage <= 100",
            name="earnings_record_commission_range",
        ),
    )
