"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .catalog import DEFAULT_CATALOG, TierCatalog
from .exceptions import ConfigurationError
from .models import BillingInterval, SubscriptionTier

DEFAULT_GRACE_PERIOD_DAYS = 28


@dataclass(frozen=True)
class PriceIds:
    """Provider price identifiers for each paid tier and interval."""

    starter_monthly: Optional[str] = None
    starter_annual: Optional[str] = None
    professional_monthly: Optional[str] = None
    professional_annual: Optional[str] = None
    additional_seat: Optional[str] = None

    def _by_tier(self) -> Dict[tuple, Optional[str]]:
        return {
            (SubscriptionTier.STARTER, BillingInterval.MONTHLY): self.starter_monthly,
            (SubscriptionTier.STARTER, BillingInterval.ANNUAL): self.starter_annual,
            (SubscriptionTier.PROFESSIONAL, BillingInterval.MONTHLY): self.professional_monthly,
            (SubscriptionTier.PROFESSIONAL, BillingInterval.ANNUAL): self.professional_annual,
        }

    def for_tier(self, tier: SubscriptionTier, interval: BillingInterval) -> str:
        """Return the base plan price id, raising when it is not configured."""

        price_id = self._by_tier().get((tier, interval))
        if not price_id:
            env_var = f"STRIPE_PRICE_{tier.value.upper()}_{interval.value.upper()}"
            raise ConfigurationError(
                "Billing price is not configured.",
                detail={"setting": env_var},
            )
        return price_id

    def tier_for(self, price_id: Optional[str]) -> Optional[SubscriptionTier]:
        """Reverse lookup of a tier from a base plan price id."""

        if not price_id:
            return None
        for (tier, _interval), configured in self._by_tier().items():
            if configured and configured == price_id:
                return tier
        return None

    def seat_price(self) -> str:
        if not self.additional_seat:
            raise ConfigurationError(
                "Additional seat price is not configured.",
                detail={"setting": "STRIPE_PRICE_ADDITIONAL_SEAT"},
            )
        return self.additional_seat


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for billing flows, injected into the engines."""

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    prices: PriceIds = field(default_factory=PriceIds)
    catalog: TierCatalog = DEFAULT_CATALOG
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    gateway_timeout_seconds: float = 10.0
    conflict_max_attempts: int = 3
    conflict_backoff_seconds: float = 0.05
    settle_seat_invoices: bool = True
    default_currency: str = "gbp"
    environment: str = "development"
    grace_sweep_enabled: bool = True
    grace_sweep_hour_utc: int = 3

    @property
    def is_test_mode(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_secret_key.startswith("sk_test_"))

    def require_webhook_secret(self) -> str:
        if not self.stripe_webhook_secret:
            raise ConfigurationError(
                "Webhook secret is not configured.",
                detail={"setting": "STRIPE_WEBHOOK_SECRET"},
            )
        return self.stripe_webhook_secret


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(
    env: Optional[Mapping[str, str]] = None,
    *,
    catalog: TierCatalog = DEFAULT_CATALOG,
) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    environment = (env_mapping.get("APP_ENV") or "development").strip().lower()
    secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    if environment == "production" and secret_key and secret_key.startswith("sk_test_"):
        raise ConfigurationError(
            "STRIPE_SECRET_KEY is a test key. Production requires a live key.",
            detail={"setting": "STRIPE_SECRET_KEY"},
        )

    prices = PriceIds(
        starter_monthly=env_mapping.get("STRIPE_PRICE_STARTER_MONTHLY") or None,
        starter_annual=env_mapping.get("STRIPE_PRICE_STARTER_ANNUAL") or None,
        professional_monthly=env_mapping.get("STRIPE_PRICE_PROFESSIONAL_MONTHLY") or None,
        professional_annual=env_mapping.get("STRIPE_PRICE_PROFESSIONAL_ANNUAL") or None,
        additional_seat=env_mapping.get("STRIPE_PRICE_ADDITIONAL_SEAT") or None,
    )

    grace_period_days = _to_int(
        env_mapping.get("BILLING_GRACE_PERIOD_DAYS"), default=DEFAULT_GRACE_PERIOD_DAYS
    )
    if grace_period_days < 1:
        raise ValueError("BILLING_GRACE_PERIOD_DAYS must be at least 1")

    return BillingConfig(
        stripe_secret_key=secret_key,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        prices=prices,
        catalog=catalog,
        grace_period_days=grace_period_days,
        gateway_timeout_seconds=max(
            0.1, _to_float(env_mapping.get("BILLING_GATEWAY_TIMEOUT_SECONDS"), default=10.0)
        ),
        conflict_max_attempts=max(
            1, _to_int(env_mapping.get("BILLING_CONFLICT_MAX_ATTEMPTS"), default=3)
        ),
        conflict_backoff_seconds=max(
            0.0, _to_float(env_mapping.get("BILLING_CONFLICT_BACKOFF_SECONDS"), default=0.05)
        ),
        settle_seat_invoices=_to_bool(env_mapping.get("BILLING_SETTLE_SEAT_INVOICES"), default=True),
        default_currency=(env_mapping.get("BILLING_DEFAULT_CURRENCY") or "gbp").strip().lower(),
        environment=environment,
        grace_sweep_enabled=_to_bool(env_mapping.get("BILLING_GRACE_SWEEP_ENABLED"), default=True),
        grace_sweep_hour_utc=min(
            23, max(0, _to_int(env_mapping.get("BILLING_GRACE_SWEEP_HOUR"), default=3))
        ),
    )


__all__ = ["BillingConfig", "DEFAULT_GRACE_PERIOD_DAYS", "PriceIds", "load_billing_config"]
