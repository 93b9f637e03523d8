"""Wallet Ledger - per-user balances backed by an append-only ledger.

Invariants:
- wallet_account.balance equals the sum of the user's wallet_transaction amounts
- a debit never drives the balance negative
- wallet_transaction rows are never updated or deleted

Adjustments for one user are serialized by a row lock on the wallet
account (the database write lock on SQLite). The account is created
lazily by the first applied adjustment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fare_settlement.database import transaction
from fare_settlement.errors import InsufficientBalanceError, ValidationError
from fare_settlement.models import WalletAccount, WalletTransaction
from fare_settlement.settlement.events import EventEmitter, EventMetadata, WalletAdjusted

logger = logging.getLogger(__name__)


class AdjustmentStatus(str, Enum):
    """Outcome of a wallet adjustment attempt."""

    APPLIED = "applied"
    INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass(frozen=True)
class WalletAdjustment:
    """Tagged result of a wallet adjustment.

    When `status` is INSUFFICIENT_BALANCE nothing was written and
    balance_after equals balance_before.
    """

    status: AdjustmentStatus
    user_id: UUID
    balance_before: Decimal
    balance_after: Decimal
    transaction_amount: Decimal
    wallet_transaction_id: UUID | None = None

    @property
    def applied(self) -> bool:
        return self.status == AdjustmentStatus.APPLIED


class WalletLedgerService:
    """Applies signed wallet adjustments with before/after snapshots."""

    def __init__(self, db: Session, emitter: EventEmitter | None = None):
        self.db = db
        self.emitter = emitter

    def try_adjust_wallet(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        transaction_type: str,
        booking_id: UUID | None = None,
        description: str | None = None,
    ) -> WalletAdjustment:
        """Apply a signed delta unless it would overdraw the wallet.

        Args:
            user_id: Wallet owner
            amount: Signed delta; negative for debits
            transaction_type: Ledger type (refund, fare_adjustment, top_up, ...)
            booking_id: Booking the adjustment relates to, if any
            description: Free-text description stored on the ledger line

        Returns:
            WalletAdjustment tagged `applied` or `insufficient_balance`

        Raises:
            ValidationError: Zero amount or missing transaction type
        """
        delta = Decimal(amount)
        if delta == 0:
            raise ValidationError("Wallet adjustment amount must be non-zero")
        if not transaction_type:
            raise ValidationError("transaction_type is required")

        with transaction(self.db):
            account = self._lock_account(user_id)
            balance_before = account.balance if account else Decimal("0")
            balance_after = balance_before + delta

            if delta < 0 and balance_after < 0:
                logger.warning(
                    "Insufficient wallet balance for user %s: balance %s, debit %s",
                    user_id,
                    balance_before,
                    -delta,
                )
                return WalletAdjustment(
                    status=AdjustmentStatus.INSUFFICIENT_BALANCE,
                    user_id=user_id,
                    balance_before=balance_before,
                    balance_after=balance_before,
                    transaction_amount=delta,
                )

            if account is None:
                account = self._create_account(user_id)
                balance_before = account.balance
                balance_after = balance_before + delta

            account.balance = balance_after
            ledger_line = WalletTransaction(
                user_id=user_id,
                booking_id=booking_id,
                amount=delta,
                transaction_type=transaction_type,
                description=description,
                balance_before=balance_before,
                balance_after=balance_after,
            )
            self.db.add(ledger_line)
            self.db.flush()

        logger.info(
            "Wallet %s for user %s: %s -> %s (%s)",
            transaction_type,
            user_id,
            balance_before,
            balance_after,
            delta,
        )
        if self.emitter:
            self.emitter.emit(
                WalletAdjusted(
                    metadata=EventMetadata.create(source_service="wallet"),
                    user_id=user_id,
                    booking_id=booking_id,
                    amount=delta,
                    transaction_type=transaction_type,
                    balance_before=balance_before,
                    balance_after=balance_after,
                )
            )

        return WalletAdjustment(
            status=AdjustmentStatus.APPLIED,
            user_id=user_id,
            balance_before=balance_before,
            balance_after=balance_after,
            transaction_amount=delta,
            wallet_transaction_id=ledger_line.wallet_transaction_id,
        )

    def adjust_wallet(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        transaction_type: str,
        booking_id: UUID | None = None,
        description: str | None = None,
    ) -> WalletAdjustment:
        """Apply a signed delta, raising if the debit would overdraw the wallet.

        Raises:
            InsufficientBalanceError: The debit exceeds the balance; nothing is written
            ValidationError: Zero amount or missing transaction type
        """
        result = self.try_adjust_wallet(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            booking_id=booking_id,
            description=description,
        )
        if not result.applied:
            raise InsufficientBalanceError(user_id, result.balance_before, -result.transaction_amount)
        return result

    def get_balance(self, user_id: UUID) -> Decimal:
        """Current balance; zero for users without a wallet."""
        with transaction(self.db):
            balance = self.db.execute(
                select(WalletAccount.balance).where(WalletAccount.user_id == user_id)
            ).scalar_one_or_none()
        return balance if balance is not None else Decimal("0")

    def get_transactions(self, user_id: UUID, limit: int = 50) -> list[WalletTransaction]:
        """Most recent ledger lines for a user, newest first."""
        with transaction(self.db):
            return list(
                self.db.execute(
                    select(WalletTransaction)
                    .where(WalletTransaction.user_id == user_id)
                    .order_by(WalletTransaction.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    def verify_balance(self, user_id: UUID) -> bool:
        """Check the stored balance against the sum of ledger deltas."""
        with transaction(self.db):
            stored = self.db.execute(
                select(WalletAccount.balance).where(WalletAccount.user_id == user_id)
            ).scalar_one_or_none()
            total = self.db.execute(
                select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                    WalletTransaction.user_id == user_id
                )
            ).scalar_one()
        stored = stored if stored is not None else Decimal("0")
        if Decimal(total) != stored:
            logger.warning(
                "Wallet balance mismatch for user %s: stored %s, ledger %s",
                user_id,
                stored,
                total,
            )
            return False
        return True

    def _lock_account(self, user_id: UUID) -> WalletAccount | None:
        return self.db.execute(
            select(WalletAccount).where(WalletAccount.user_id == user_id).with_for_update()
        ).scalar_one_or_none()

    def _create_account(self, user_id: UUID) -> WalletAccount:
        try:
            with transaction(self.db):
                account = WalletAccount(user_id=user_id, balance=Decimal("0"))
                self.db.add(account)
                self.db.flush()
            return account
        except IntegrityError:
            # Another request created the wallet first; use theirs.
            logger.info("Wallet for user %s created concurrently, reloading", user_id)
            account = self._lock_account(user_id)
            if account is None:
                raise
            return account
