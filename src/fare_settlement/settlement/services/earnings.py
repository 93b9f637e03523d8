"""Earnings Calculator - provider payout for a settled booking.

    platform_commission = final_fare * commission_percentage / 100
    gst_amount          = platform_commission * gst_percentage / 100
    provider_earnings   = round(final_fare - platform_commission - gst_amount, 2)

Percentages come from an injected PricingRulesProvider; unset or inactive
rules fall back to the configured defaults (20% commission, 18% GST).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Mapping, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fare_settlement.database import transaction
from fare_settlement.errors import ValidationError
from fare_settlement.models import EarningsRecord, PricingRule
from fare_settlement.settlement.config import EarningsConfig
from fare_settlement.settlement.events import EarningsCalculated, EventEmitter, EventMetadata

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")
_CENTS = Decimal("0.01")
_STORED_SCALE = Decimal("0.0001")


class PricingRulesProvider(Protocol):
    """Source of pricing rule values."""

    def get(self, rule_key: str) -> Decimal | None:
        """Active value of a rule, or None if unset or inactive."""
        ...


class DatabasePricingRules:
    """Reads active rules from the pricing_rule table."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, rule_key: str) -> Decimal | None:
        raw = self.db.execute(
            select(PricingRule.rule_value).where(
                PricingRule.rule_key == rule_key,
                PricingRule.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if raw is None:
            return None
        try:
            return Decimal(raw)
        except InvalidOperation:
            logger.warning("Ignoring non-numeric pricing rule %s=%r", rule_key, raw)
            return None


class StaticPricingRules:
    """Fixed rule values, for tests and static deployments."""

    def __init__(self, rules: Mapping[str, Decimal | int | str] | None = None):
        self._rules = {key: Decimal(value) for key, value in (rules or {}).items()}

    def get(self, rule_key: str) -> Decimal | None:
        return self._rules.get(rule_key)


@dataclass(frozen=True)
class EarningsBreakdown:
    """Provider-facing summary of how the fare was split."""

    gross_fare: Decimal
    platform_fee: Decimal
    gst_on_commission: Decimal
    net_earnings: Decimal


@dataclass(frozen=True)
class EarningsResult:
    """Computed and recorded provider earnings."""

    earnings_record_id: UUID
    booking_id: UUID
    provider_id: UUID
    final_fare: Decimal
    platform_commission: Decimal
    gst_amount: Decimal
    provider_earnings: Decimal
    commission_percentage: Decimal
    gst_percentage: Decimal
    earnings_breakdown: EarningsBreakdown


class EarningsCalculator:
    """Computes and records provider earnings from the final fare."""

    def __init__(
        self,
        db: Session,
        rules: PricingRulesProvider | None = None,
        config: EarningsConfig | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.db = db
        self.rules = rules if rules is not None else DatabasePricingRules(db)
        self.config = config or EarningsConfig()
        self.emitter = emitter

    def calculate_provider_earnings(
        self,
        *,
        booking_id: UUID,
        provider_id: UUID,
        final_fare: Decimal,
    ) -> EarningsResult:
        """Compute the commission/GST split and write one earnings record.

        Raises:
            ValidationError: Non-positive final fare
        """
        fare = Decimal(final_fare)
        if fare <= 0:
            raise ValidationError("Final fare must be positive")

        with transaction(self.db):
            commission_pct = self._percentage(
                self.config.commission_rule_key,
                self.config.default_commission_percentage,
            )
            gst_pct = self._percentage(self.config.gst_rule_key, self.config.default_gst_percentage)

            commission = (fare * commission_pct / _HUNDRED).quantize(_STORED_SCALE, rounding=ROUND_HALF_UP)
            gst = (commission * gst_pct / _HUNDRED).quantize(_STORED_SCALE, rounding=ROUND_HALF_UP)
            earnings = (fare - commission - gst).quantize(_CENTS, rounding=ROUND_HALF_UP)

            record = EarningsRecord(
                provider_id=provider_id,
                booking_id=booking_id,
                final_fare=fare,
                platform_commission=commission,
                gst_amount=gst,
                provider_earnings=earnings,
                commission_percentage=commission_pct,
                gst_percentage=gst_pct,
            )
            self.db.add(record)
            self.db.flush()

        logger.info(
            "Provider %s earns %s of %s for booking %s (commission %s, gst %s)",
            provider_id,
            earnings,
            fare,
            booking_id,
            commission,
            gst,
        )
        if self.emitter:
            self.emitter.emit(
                EarningsCalculated(
                    metadata=EventMetadata.create(source_service="earnings"),
                    booking_id=booking_id,
                    provider_id=provider_id,
                    final_fare=fare,
                    provider_earnings=earnings,
                )
            )

        return EarningsResult(
            earnings_record_id=record.earnings_record_id,
            booking_id=booking_id,
            provider_id=provider_id,
            final_fare=fare,
            platform_commission=commission,
            gst_amount=gst,
            provider_earnings=earnings,
            commission_percentage=commission_pct,
            gst_percentage=gst_pct,
            earnings_breakdown=EarningsBreakdown(
                gross_fare=fare,
                platform_fee=commission,
                gst_on_commission=gst,
                net_earnings=earnings,
            ),
        )

    def _percentage(self, rule_key: str, default: Decimal) -> Decimal:
        value = self.rules.get(rule_key)
        if value is None:
            return default
        if value < 0 or value > 100:
            logger.warning("Pricing rule %s=%s out of range, using default %s", rule_key, value, default)
            return default
        return value
