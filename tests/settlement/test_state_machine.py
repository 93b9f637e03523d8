"""Tests for payment and settlement state machines."""

import pytest

from fare_settlement.errors import InvalidTransitionError
from fare_settlement.settlement.state_machine import (
    PaymentStateMachine,
    PaymentStatus,
    SettlementStateMachine,
    SettlementStatus,
)


class TestPaymentStateMachine:
    """Test payment record transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        # created → authorized
        assert PaymentStateMachine.can_transition("created", "authorized") is True

        # created → captured (auto-capture)
        assert PaymentStateMachine.can_transition("created", "captured") is True

        # authorized → captured
        assert PaymentStateMachine.can_transition("authorized", "captured") is True

        # captured → refunded
        assert PaymentStateMachine.can_transition("captured", "refunded") is True

        # pending shortfall → captured
        assert PaymentStateMachine.can_transition("pending", "captured") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # No going backwards
        assert PaymentStateMachine.can_transition("authorized", "created") is False
        assert PaymentStateMachine.can_transition("captured", "authorized") is False

        # Can't refund what was never captured
        assert PaymentStateMachine.can_transition("authorized", "refunded") is False

        # Refunded is terminal
        assert PaymentStateMachine.can_transition("refunded", "captured") is False
        assert PaymentStateMachine.can_transition("refunded", "authorized") is False

    def test_enum_members_accepted(self):
        """Enum members and raw strings are interchangeable."""
        assert PaymentStateMachine.can_transition(PaymentStatus.AUTHORIZED, "captured") is True
        assert PaymentStateMachine.can_transition("authorized", PaymentStatus.CAPTURED) is True

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            PaymentStateMachine.validate_transition(PaymentStatus.REFUNDED, PaymentStatus.CAPTURED)

        assert exc_info.value.from_status == "refunded"
        assert exc_info.value.to_status == "captured"
        assert "'refunded' to 'captured'" in str(exc_info.value)

    def test_can_capture(self):
        """Test capturable statuses."""
        assert PaymentStateMachine.can_capture("created") is True
        assert PaymentStateMachine.can_capture("authorized") is True
        assert PaymentStateMachine.can_capture("captured") is False
        assert PaymentStateMachine.can_capture("refunded") is False

    def test_can_refund(self):
        """Test refundable statuses."""
        assert PaymentStateMachine.can_refund("captured") is True
        assert PaymentStateMachine.can_refund("authorized") is False
        assert PaymentStateMachine.can_refund("refunded") is False


class TestSettlementStateMachine:
    """Test booking settlement transitions."""

    def test_gateway_path(self):
        """pending → captured → settled."""
        machine = SettlementStateMachine()
        machine.transition_to("captured")
        machine.transition_to("settled")

        assert machine.status == SettlementStatus.SETTLED
        assert machine.history == [
            SettlementStatus.PENDING,
            SettlementStatus.CAPTURED,
            SettlementStatus.SETTLED,
        ]
        assert machine.is_terminal is True

    def test_deferred_overrun_path(self):
        """captured → additional_payment_pending → settled."""
        machine = SettlementStateMachine("captured")
        machine.transition_to(SettlementStatus.ADDITIONAL_PAYMENT_PENDING)
        assert machine.is_terminal is False

        machine.transition_to(SettlementStatus.SETTLED)
        assert machine.is_terminal is True

    def test_cash_path(self):
        """Cash bookings settle straight from pending."""
        machine = SettlementStateMachine()
        assert machine.transition_to("settled") == SettlementStatus.SETTLED

    def test_settled_is_terminal(self):
        """Nothing leaves settled."""
        machine = SettlementStateMachine("settled")

        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.transition_to("captured")

        assert exc_info.value.from_status == "settled"
        assert machine.status == SettlementStatus.SETTLED

    def test_cannot_defer_before_capture(self):
        """Overrun deferral requires a capture first."""
        assert SettlementStateMachine.can_transition("pending", "additional_payment_pending") is False

    def test_unknown_status_rejected(self):
        """Unknown statuses are rejected on construction."""
        with pytest.raises(ValueError):
            SettlementStateMachine("archived")
