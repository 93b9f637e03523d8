"""Database connection, session and transaction management."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator
from uuid import UUID

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, SessionTransaction, sessionmaker

from fare_settlement.config import get_settings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

_DEPTH_KEY = "fare_settlement.transaction_depth"
_DEFERRED_KEY = "fare_settlement.deferred_writes"
_AFTER_END_KEY = "fare_settlement.after_end_writes"
_BEGIN_IMMEDIATE = "fare_settlement_begin_immediate"

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def configure_sqlite(engine: Engine) -> None:
    """Make pysqlite honour BEGIN/SAVEPOINT so nested transactions work.

    Transactions opened by ``transaction()`` start with BEGIN IMMEDIATE and
    take the database write lock up front, so concurrent writers wait on the
    busy timeout in turn instead of failing on a lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        if conn.get_execution_options().get(_BEGIN_IMMEDIATE):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        configure_sqlite(engine)
        return engine
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db(database_url: str | None = None) -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine(database_url)
        _session_factory = sessionmaker(
            _engine,
            class_=Session,
            expire_on_commit=False,
            autoflush=False,
        )
    assert _session_factory is not None
    return _engine, _session_factory


def create_schema(engine: Engine) -> None:
    """Create all tables known to the ORM metadata."""
    from fare_settlement.models import Base

    Base.metadata.create_all(engine)


@contextmanager
def get_session(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Get a database session that commits on success and rolls back on error."""
    if factory is None:
        _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def defer_write(session: Session, writer: Callable[[Session], None]) -> None:
    """Queue a write that must survive a rollback of the current transaction.

    The outermost ``transaction()`` block runs queued writers before commit
    on success, or in a fresh transaction after rollback on failure. When the
    caller owns the outer transaction, the writers run in a separate session
    once that transaction ends, whether it commits or rolls back.
    """
    session.info.setdefault(_DEFERRED_KEY, []).append(writer)


def _run_deferred(session: Session) -> None:
    writers = session.info.pop(_DEFERRED_KEY, [])
    for writer in writers:
        writer(session)
    if writers:
        session.flush()


@contextmanager
def _begin(session: Session) -> Iterator[None]:
    with session.begin():
        session.connection(execution_options={_BEGIN_IMMEDIATE: True})
        yield


def _write_detached(session: Session, writers: list[Callable[[Session], None]]) -> None:
    with Session(bind=session.get_bind(), autoflush=False, expire_on_commit=False) as detached:
        with _begin(detached):
            for writer in writers:
                writer(detached)
            detached.flush()


@event.listens_for(Session, "after_transaction_end")
def _write_after_caller_transaction(session: Session, session_transaction: SessionTransaction) -> None:
    if session_transaction.parent is not None:
        return
    writers = session.info.pop(_AFTER_END_KEY, None)
    if writers:
        _write_detached(session, writers)


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Run a block in its own transaction.

    Opens a top-level transaction when none is active, or a SAVEPOINT when
    called inside another ``transaction()`` block or a caller-managed
    transaction. A failing SAVEPOINT rolls back only its own writes.
    """
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        if depth:
            with session.begin_nested():
                yield session
        elif session.in_transaction():
            # Caller owns the outer transaction and may still roll it back.
            try:
                with session.begin_nested():
                    yield session
            finally:
                writers = session.info.pop(_DEFERRED_KEY, [])
                if writers:
                    session.info.setdefault(_AFTER_END_KEY, []).extend(writers)
        else:
            try:
                with _begin(session):
                    yield session
                    _run_deferred(session)
            except Exception:
                if session.info.get(_DEFERRED_KEY):
                    with _begin(session):
                        _run_deferred(session)
                raise
    finally:
        session.info[_DEPTH_KEY] = depth


def acquire_booking_lock(session: Session, booking_id: str | UUID) -> None:
    """Serialize settlement for a booking until the transaction ends.

    Uses a transaction-scoped advisory lock on PostgreSQL. On SQLite the
    write lock taken by BEGIN IMMEDIATE already serializes settlements.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
        {"lock_key": f"booking:{booking_id}"},
    )
    logger.debug("Acquired settlement lock for booking %s", booking_id)
