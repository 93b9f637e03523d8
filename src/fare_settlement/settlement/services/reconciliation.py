"""Reconciliation outbox for gateway side effects the ledger failed to record.

The gateway call and the ledger write cannot share a transaction. When the
gateway accepted a capture or refund but the following write rolled back,
an entry is queued here so an operator can bring both sides back in line.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fare_settlement.database import defer_write, transaction
from fare_settlement.errors import NotFoundError, ValidationError
from fare_settlement.models import ReconciliationEntry
from fare_settlement.settlement.events import EventEmitter, EventMetadata, ReconciliationRequired

logger = logging.getLogger(__name__)

KINDS = frozenset({"capture", "refund", "settlement"})


class ReconciliationService:
    """Queue, list and resolve reconciliation entries."""

    def __init__(self, db: Session, emitter: EventEmitter | None = None):
        self.db = db
        self.emitter = emitter

    def defer(
        self,
        *,
        kind: str,
        error: str,
        booking_id: UUID | None = None,
        gateway_payment_id: str | None = None,
        gateway_reference: str | None = None,
        amount: Decimal | None = None,
    ) -> None:
        """Queue an entry on the session.

        The outermost ``transaction()`` block writes it, in a fresh
        transaction if its own work rolled back.
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown reconciliation kind: {kind}")

        def _write(session: Session) -> None:
            session.add(
                ReconciliationEntry(
                    kind=kind,
                    booking_id=booking_id,
                    gateway_payment_id=gateway_payment_id,
                    gateway_reference=gateway_reference,
                    amount=amount,
                    error=error,
                )
            )
            logger.error(
                "Reconciliation required (%s) for booking %s, gateway payment %s: %s",
                kind,
                booking_id,
                gateway_payment_id,
                error,
            )
            if self.emitter:
                # Published even when the enclosing event batch is discarded
                self.emitter.emit_now(
                    ReconciliationRequired(
                        metadata=EventMetadata.create(source_service="reconciliation"),
                        kind=kind,
                        booking_id=booking_id,
                        gateway_payment_id=gateway_payment_id,
                        amount=amount,
                        error=error,
                    )
                )

        defer_write(self.db, _write)

    def list_open(self, limit: int = 100) -> list[ReconciliationEntry]:
        """Open entries, oldest first."""
        with transaction(self.db):
            return list(
                self.db.execute(
                    select(ReconciliationEntry)
                    .where(ReconciliationEntry.status == "open")
                    .order_by(ReconciliationEntry.created_at)
                    .limit(limit)
                ).scalars()
            )

    def resolve(self, entry_id: UUID, note: str) -> ReconciliationEntry:
        """Mark an entry resolved.

        Raises:
            NotFoundError: If the entry does not exist
            ValidationError: If the note is empty or the entry is already resolved
        """
        if not note or not note.strip():
            raise ValidationError("A resolution note is required")

        with transaction(self.db):
            entry = self.db.execute(
                select(ReconciliationEntry)
                .where(ReconciliationEntry.reconciliation_entry_id == entry_id)
                .with_for_update()
            ).scalar_one_or_none()
            if entry is None:
                raise NotFoundError("ReconciliationEntry", str(entry_id))
            if entry.status == "resolved":
                raise ValidationError(f"Reconciliation entry {entry_id} is already resolved")

            entry.status = "resolved"
            entry.resolved_at = datetime.now(timezone.utc)
            entry.resolution_note = note.strip()
            self.db.flush()

        logger.info("Resolved reconciliation entry %s", entry_id)
        return entry
