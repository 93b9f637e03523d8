"""Settlement configuration objects.

Explicit configuration for the settlement services. Every instance is
immutable after creation (frozen dataclasses) and validated on construction.

Pattern:
    config = SettlementConfig(
        gateway=GatewayConfig(name="razorpay", base_url=..., key_id=..., key_secret=...),
        earnings=EarningsConfig(),
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from fare_settlement.config import Settings


@dataclass(frozen=True)
class GatewayConfig:
    """
    Payment gateway configuration.

    Attributes:
        name: Identifier for this gateway instance.
        base_url: REST endpoint root.
        key_id: API key id (basic auth user).
        key_secret: API key secret (basic auth password).
        webhook_secret: Secret for validating incoming webhooks.
        timeout_seconds: Bound on every gateway call. Gateway calls are never
            retried inside an open transaction; retries belong to the caller.
        sandbox: If True, use the in-memory stub gateway. Default True.
    """

    name: str
    base_url: str = ""
    key_id: str = ""
    key_secret: str = ""
    webhook_secret: str | None = None
    timeout_seconds: float = 10.0
    sandbox: bool = True

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.name:
            raise ValueError("name is required")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.timeout_seconds > 60:
            raise ValueError("timeout_seconds cannot exceed 60")
        if not self.sandbox and not self.base_url:
            raise ValueError("base_url is required for a live gateway")


@dataclass(frozen=True)
class EarningsConfig:
    """
    Provider earnings configuration.

    Attributes:
        commission_rule_key: Pricing rule holding the platform commission %.
        gst_rule_key: Pricing rule holding the GST % charged on commission.
        default_commission_percentage: Used when the rule is unset or inactive.
        default_gst_percentage: Used when the rule is unset or inactive.
    """

    commission_rule_key: str = "platform_commission_percentage"
    gst_rule_key: str = "gst_percentage"
    default_commission_percentage: Decimal = Decimal("20")
    default_gst_percentage: Decimal = Decimal("18")

    def __post_init__(self) -> None:
        """Validate configuration."""
        for name in ("default_commission_percentage", "default_gst_percentage"):
            value = getattr(self, name)
            if value < 0 or value > 100:
                raise ValueError(f"{name} must be between 0 and 100")


@dataclass(frozen=True)
class SettlementConfig:
    """
    Complete settlement configuration.

    Attributes:
        gateway: Gateway configuration.
        earnings: Earnings rule configuration.
        default_currency: Currency for new pre-authorizations.
        shortfall_transaction_type: Wallet transaction type used when a
            fare overrun is debited from the customer's wallet.
    """

    gateway: GatewayConfig
    earnings: EarningsConfig = field(default_factory=EarningsConfig)
    default_currency: str = "INR"
    shortfall_transaction_type: str = "fare_adjustment"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if len(self.default_currency) != 3:
            raise ValueError("default_currency must be an ISO 4217 code")

    @classmethod
    def from_settings(cls, settings: Settings) -> SettlementConfig:
        """Build configuration from environment-backed settings."""
        return cls(
            gateway=GatewayConfig(
                name="razorpay" if settings.gateway_configured else "sandbox",
                base_url=settings.gateway_base_url,
                key_id=settings.gateway_key_id,
                key_secret=settings.gateway_key_secret,
                webhook_secret=settings.gateway_webhook_secret,
                timeout_seconds=settings.gateway_timeout_seconds,
                sandbox=not settings.gateway_configured,
            ),
            default_currency=settings.default_currency,
        )


def create_sandbox_config(webhook_secret: str | None = "sandbox_webhook_secret") -> SettlementConfig:
    """
    Create a sandbox configuration for testing.

    Uses the in-memory stub gateway. Use this only for development and testing.
    """
    return SettlementConfig(
        gateway=GatewayConfig(name="sandbox", sandbox=True, webhook_secret=webhook_secret),
    )


def validate_production_config(config: SettlementConfig) -> list[str]:
    """
    Validate that a configuration is safe for production.

    Returns a list of warnings/errors. Empty list = safe.
    """
    issues: list[str] = []

    if config.gateway.sandbox:
        issues.append(f"WARNING: Sandbox gateway enabled: {config.gateway.name}")

    if not config.gateway.sandbox and not (config.gateway.key_id and config.gateway.key_secret):
        issues.append(f"CRITICAL: Gateway '{config.gateway.name}' has no credentials")

    if not config.gateway.webhook_secret:
        issues.append(f"WARNING: Gateway '{config.gateway.name}' has no webhook_secret")

    if not config.gateway.base_url.startswith("https://") and not config.gateway.sandbox:
        issues.append("WARNING: Gateway base_url is not HTTPS")

    return issues
