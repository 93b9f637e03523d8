"""ORM models for the settlement ledger."""

from fare_settlement.models.base import Base, TimestampMixin
from fare_settlement.models.booking import Booking, PricingRule
from fare_settlement.models.earnings import EarningsRecord
from fare_settlement.models.payments import PaymentRecord, RefundRecord
from fare_settlement.models.reconciliation import ReconciliationEntry
from fare_settlement.models.wallet import WalletAccount, WalletTransaction

__all__ = [
    "Base",
    "TimestampMixin",
    "Booking",
    "PricingRule",
    "EarningsRecord",
    "PaymentRecord",
    "RefundRecord",
    "ReconciliationEntry",
    "WalletAccount",
    "WalletTransaction",
]
