"""Customer wallet models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, event, func
from sqlalchemy.orm import Mapped, mapped_column

from fare_settlement.errors import ImmutableRecordError, ValidationError
from fare_settlement.models.base import Base, TimestampMixin


class WalletAccount(Base, TimestampMixin):
    """Per-user wallet balance. Created lazily on the first adjustment."""

    __tablename__ = "wallet_account"

    wallet_account_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="wallet_account_balance_non_negative"),
    )


class WalletTransaction(Base, TimestampMixin):
    """Append-only wallet ledger line with before/after balance snapshot."""

    __tablename__ = "wallet_transaction"

    wallet_transaction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("wallet_account.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    booking_id: Mapped[UUID | None] = mapped_column(nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    transaction_type: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    balance_before: Mapped[Decimal] = mapped_column(nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(nullable=False)

    __table_args__ = (
        CheckConstraint("amount <> 0", name="wallet_transaction_amount_nonzero"),
        Index("ix_wallet_transaction_user_created", "user_id", "created_at"),
    )


@event.listens_for(WalletTransaction, "before_insert")
def _check_wallet_transaction_snapshot(mapper, connection, target):  # noqa: ARG001
    # Compared in Decimal; SQLite stores Numeric as REAL.
    if target.balance_after != target.balance_before + target.amount:
        raise ValidationError(
            f"wallet_transaction snapshot is inconsistent: "
            f"{target.balance_before} + {target.amount} != {target.balance_after}"
        )


@event.listens_for(WalletTransaction, "before_update")
def _reject_wallet_transaction_update(mapper, connection, target):  # noqa: ARG001
    raise ImmutableRecordError(
        f"wallet_transaction {target.wallet_transaction_id} is append-only"
    )


@event.listens_for(WalletTransaction, "before_delete")
def _reject_wallet_transaction_delete(mapper, connection, target):  # noqa: ARG001
    raise ImmutableRecordError(
        f"wallet_transaction {target.wallet_transaction_id} is append-only"
    )
