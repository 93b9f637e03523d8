"""Typed errors raised by the settlement subsystem.

Every transactional operation rolls back fully and re-raises one of these.
Route handlers map them to client/server responses.
"""

from __future__ import annotations

from decimal import Decimal


class SettlementError(Exception):
    """Base class for all settlement errors."""


class ValidationError(SettlementError):
    """Raised when an operation receives invalid input."""


class NotFoundError(SettlementError):
    """Raised when a payment record or booking does not exist."""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class GatewayError(SettlementError):
    """Raised when the payment gateway rejects a request or times out.

    Attributes:
        operation: Gateway operation that failed (create_order, capture, refund)
        retryable: True for timeouts and 5xx responses; retries belong to the caller
    """

    def __init__(self, operation: str, message: str, retryable: bool = False):
        self.operation = operation
        self.retryable = retryable
        super().__init__(f"Gateway {operation} failed: {message}")


class InsufficientBalanceError(SettlementError):
    """Raised when a wallet debit would drive the balance negative."""

    def __init__(self, user_id: object, balance: Decimal, requested: Decimal):
        self.user_id = user_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient wallet balance for user {user_id}: "
            f"balance {balance}, requested debit {requested}"
        )


class CaptureError(SettlementError):
    """Raised when a capture could not be persisted."""


class RefundError(SettlementError):
    """Raised when a refund could not be persisted."""


class InvalidTransitionError(SettlementError):
    """Raised when an invalid status transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ImmutableRecordError(SettlementError):
    """Raised on an attempt to update or delete an append-only row."""
