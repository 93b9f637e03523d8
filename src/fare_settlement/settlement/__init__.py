"""Payment settlement and wallet ledger.

Pre-authorization, capture, refunds, wallet adjustments and provider
earnings for bookings, kept consistent across the payment gateway and the
local ledger.
"""

from fare_settlement.settlement.config import (
    EarningsConfig,
    GatewayConfig,
    SettlementConfig,
    create_sandbox_config,
    validate_production_config,
)
from fare_settlement.settlement.facade import (
    FareSettlement,
    WebhookResult,
    WebhookStatus,
    build_gateway,
)
from fare_settlement.settlement.state_machine import (
    PaymentStateMachine,
    PaymentStatus,
    SettlementStateMachine,
    SettlementStatus,
)

__all__ = [
    "FareSettlement",
    "WebhookResult",
    "WebhookStatus",
    "build_gateway",
    "SettlementConfig",
    "GatewayConfig",
    "EarningsConfig",
    "create_sandbox_config",
    "validate_production_config",
    "PaymentStatus",
    "PaymentStateMachine",
    "SettlementStatus",
    "SettlementStateMachine",
]
