"""Payment and settlement state machines with transition validation."""

from __future__ import annotations

from enum import Enum

from fare_settlement.errors import InvalidTransitionError


class PaymentStatus(str, Enum):
    """Payment record status values."""

    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    PENDING = "pending"  # Shortfall awaiting collection


class SettlementStatus(str, Enum):
    """Booking-level settlement status values."""

    PENDING = "pending"
    CAPTURED = "captured"
    ADDITIONAL_PAYMENT_PENDING = "additional_payment_pending"
    SETTLED = "settled"


class PaymentStateMachine:
    """State machine for payment record status transitions.

    Allowed transitions:
    - created → authorized
    - created → captured (auto-captured orders)
    - authorized → captured
    - captured → refunded
    - pending → captured (shortfall collected)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.CREATED: [PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED],
        PaymentStatus.AUTHORIZED: [PaymentStatus.CAPTURED],
        PaymentStatus.CAPTURED: [PaymentStatus.REFUNDED],
        PaymentStatus.PENDING: [PaymentStatus.CAPTURED],
        PaymentStatus.REFUNDED: [],  # Terminal state
    }

    # Statuses a gateway capture may start from
    CAPTURABLE = {PaymentStatus.CREATED, PaymentStatus.AUTHORIZED}

    # Statuses against which refunds may be issued
    REFUNDABLE = {PaymentStatus.CAPTURED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(PaymentStatus(from_status).value, PaymentStatus(to_status).value)

    @classmethod
    def can_capture(cls, status: str) -> bool:
        """Check if a gateway capture may be issued in this status."""
        return status in cls.CAPTURABLE

    @classmethod
    def can_refund(cls, status: str) -> bool:
        """Check if refunds may be issued in this status."""
        return status in cls.REFUNDABLE


class SettlementStateMachine:
    """State machine for booking settlement.

    Allowed transitions:
    - pending → captured
    - pending → settled (cash bookings skip capture)
    - captured → settled
    - captured → additional_payment_pending
    - additional_payment_pending → settled
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        SettlementStatus.PENDING: [SettlementStatus.CAPTURED, SettlementStatus.SETTLED],
        SettlementStatus.CAPTURED: [
            SettlementStatus.SETTLED,
            SettlementStatus.ADDITIONAL_PAYMENT_PENDING,
        ],
        SettlementStatus.ADDITIONAL_PAYMENT_PENDING: [SettlementStatus.SETTLED],
        SettlementStatus.SETTLED: [],  # Terminal state
    }

    def __init__(self, status: str = SettlementStatus.PENDING):
        self.status = SettlementStatus(status)
        self.history: list[SettlementStatus] = [self.status]

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    def transition_to(self, to_status: str) -> SettlementStatus:
        """Move to a new status, raising InvalidTransitionError if invalid."""
        target = SettlementStatus(to_status)
        if not self.can_transition(self.status, target):
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        self.history.append(self.status)
        return self.status

    @property
    def is_terminal(self) -> bool:
        """True once the booking is fully settled."""
        return self.status == SettlementStatus.SETTLED
