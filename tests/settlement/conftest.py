"""Settlement test fixtures with database setup."""

from collections.abc import Generator
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from fare_settlement.database import create_schema, get_engine
from fare_settlement.models import Booking, PaymentRecord, PricingRule
from fare_settlement.settlement.events import DomainEvent, EventEmitter
from fare_settlement.settlement.gateway import StubGateway, to_minor_units
from fare_settlement.settlement.services import WalletLedgerService


@pytest.fixture(scope="function")
def engine(tmp_path):
    """SQLite engine on a temporary file with the full schema."""
    engine = get_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False, autoflush=False)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    """Get database session for tests."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


class EventRecorder:
    """Collects every event published by an emitter."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def emitter(recorder: EventRecorder) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(recorder)
    return emitter


# Test data generators
class SettlementTestData:
    """Test data generator for settlement tests."""

    def __init__(self, gateway: StubGateway):
        self.gateway = gateway
        self.user_id = uuid4()
        self.provider_id = uuid4()

    def create_booking(self, db: Session, user_id: UUID | None = None) -> Booking:
        """Create a booking awaiting settlement."""
        booking = Booking(user_id=user_id or self.user_id, provider_id=self.provider_id)
        db.add(booking)
        db.commit()
        return booking

    def create_authorized_payment(
        self,
        db: Session,
        booking: Booking,
        amount: Decimal = Decimal("500.00"),
    ) -> PaymentRecord:
        """Create a payment the customer has authorized at the gateway."""
        order = self.gateway.create_order(
            amount_minor=to_minor_units(amount),
            currency="INR",
            receipt=f"booking_{booking.booking_id}_test",
        )
        gateway_payment_id = self.gateway.simulate_authorization(order.order_id)
        record = PaymentRecord(
            booking_id=booking.booking_id,
            user_id=booking.user_id,
            gateway_order_id=order.order_id,
            gateway_payment_id=gateway_payment_id,
            status="authorized",
            authorized_amount=amount,
            currency="INR",
        )
        db.add(record)
        db.commit()
        return record

    def fund_wallet(self, db: Session, amount: Decimal, user_id: UUID | None = None) -> None:
        """Credit a customer's wallet."""
        WalletLedgerService(db).adjust_wallet(
            user_id=user_id or self.user_id,
            amount=amount,
            transaction_type="top_up",
            description="Test top-up",
        )
        db.commit()

    def set_pricing_rule(self, db: Session, key: str, value: str, active: bool = True) -> None:
        db.add(PricingRule(rule_key=key, rule_value=value, is_active=active))
        db.commit()


@pytest.fixture
def test_data(gateway: StubGateway) -> SettlementTestData:
    """Provide test data generator."""
    return SettlementTestData(gateway)


def fail_next_flush(monkeypatch: pytest.MonkeyPatch, db: Session) -> dict[str, Any]:
    """Make the session's next flush with pending changes raise a database error.

    Flushes of a clean session (such as the one a SAVEPOINT begins with) and
    later flushes (including the one that writes reconciliation entries)
    run normally.
    """
    original = db.flush
    state = {"failed": False}

    def flaky_flush(objects=None):
        if not state["failed"] and (db.new or db.dirty or db.deleted):
            state["failed"] = True
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return original(objects)

    monkeypatch.setattr(db, "flush", flaky_flush)
    return state
