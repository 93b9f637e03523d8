"""Row lookups shared by the settlement services.

All ``*_for_update`` helpers take a row lock (``SELECT ... FOR UPDATE``)
that is held until the surrounding transaction ends. SQLite ignores the
lock clause; there the write lock taken by BEGIN IMMEDIATE serializes writers.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fare_settlement.errors import NotFoundError
from fare_settlement.models import Booking, PaymentRecord
from fare_settlement.settlement.state_machine import PaymentStatus


def load_booking_for_update(db: Session, booking_id: UUID) -> Booking:
    """Load a booking with a row lock, raising NotFoundError if absent."""
    booking = db.execute(
        select(Booking).where(Booking.booking_id == booking_id).with_for_update()
    ).scalar_one_or_none()
    if booking is None:
        raise NotFoundError("Booking", str(booking_id))
    return booking


def load_payment_for_update(db: Session, booking_id: UUID, gateway_payment_id: str) -> PaymentRecord:
    """Load the primary payment record for (booking, gateway payment) with a row lock."""
    record = db.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.booking_id == booking_id,
            PaymentRecord.gateway_payment_id == gateway_payment_id,
            PaymentRecord.parent_payment_id.is_(None),
        )
        .with_for_update()
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError("PaymentRecord", f"{booking_id}/{gateway_payment_id}")
    return record


def find_active_payment(db: Session, booking_id: UUID) -> PaymentRecord | None:
    """The gateway payment settlement should capture, if the booking has one.

    Active means authorized (or already captured) with a gateway payment id,
    excluding shortfall rows. The most recent one wins.
    """
    return db.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.booking_id == booking_id,
            PaymentRecord.parent_payment_id.is_(None),
            PaymentRecord.gateway_payment_id.is_not(None),
            PaymentRecord.status.in_([PaymentStatus.AUTHORIZED.value, PaymentStatus.CAPTURED.value]),
        )
        .order_by(PaymentRecord.created_at.desc())
        .limit(1)
        .with_for_update()
    ).scalar_one_or_none()


def find_shortfall(db: Session, parent_payment_id: UUID) -> PaymentRecord | None:
    """The shortfall row linked to a payment, if the fare overran it."""
    return db.execute(
        select(PaymentRecord).where(PaymentRecord.parent_payment_id == parent_payment_id)
    ).scalar_one_or_none()


def load_pending_shortfall_for_update(db: Session, booking_id: UUID) -> PaymentRecord:
    """Load a booking's uncollected shortfall row, raising NotFoundError if none."""
    record = db.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.booking_id == booking_id,
            PaymentRecord.parent_payment_id.is_not(None),
            PaymentRecord.status == PaymentStatus.PENDING.value,
        )
        .with_for_update()
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError("Pending shortfall payment", str(booking_id))
    return record
