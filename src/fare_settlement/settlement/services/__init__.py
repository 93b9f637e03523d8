"""Settlement services."""

from fare_settlement.settlement.services.capture import CaptureOutcome, CaptureService
from fare_settlement.settlement.services.earnings import (
    DatabasePricingRules,
    EarningsBreakdown,
    EarningsCalculator,
    EarningsResult,
    PricingRulesProvider,
    StaticPricingRules,
)
from fare_settlement.settlement.services.orchestrator import (
    AdditionalPaymentResult,
    SettlementOrchestrator,
    SettlementOutcome,
    SettlementResult,
)
from fare_settlement.settlement.services.preauth import (
    AuthorizationResult,
    FareAuthorizationService,
    PreAuthResult,
)
from fare_settlement.settlement.services.reconciliation import ReconciliationService
from fare_settlement.settlement.services.refund import RefundOutcome, RefundService
from fare_settlement.settlement.services.wallet_ledger import (
    AdjustmentStatus,
    WalletAdjustment,
    WalletLedgerService,
)

__all__ = [
    "FareAuthorizationService",
    "PreAuthResult",
    "AuthorizationResult",
    "CaptureService",
    "CaptureOutcome",
    "RefundService",
    "RefundOutcome",
    "WalletLedgerService",
    "WalletAdjustment",
    "AdjustmentStatus",
    "EarningsCalculator",
    "EarningsResult",
    "EarningsBreakdown",
    "PricingRulesProvider",
    "DatabasePricingRules",
    "StaticPricingRules",
    "ReconciliationService",
    "SettlementOrchestrator",
    "SettlementOutcome",
    "SettlementResult",
    "AdditionalPaymentResult",
]
