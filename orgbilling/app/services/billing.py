"""Application wiring for the billing engines."""
from __future__ import annotations

import logging
from functools import lru_cache

import psycopg2.extras

from ..billing import (
    BillingConfig,
    BillingEventLogger,
    BillingHistoryEvent,
    BillingNotifier,
    EntitlementInvalidator,
    MemberDirectory,
    PostgresSubscriptionStore,
    SeatAdjustmentEngine,
    StripeBillingGateway,
    Subscription,
    WebhookEventProcessor,
    load_billing_config,
)
from ..billing.repository import managed_connection


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failure(
        self,
        subscription: Subscription,
        *,
        amount: int,
        currency: str,
        attempt_count: int,
    ) -> None:
        logger.warning(
            "Payment failure for organization %s subscription=%s amount=%s %s attempt=%s grace_ends=%s",
            subscription.organization_id,
            subscription.provider_subscription_id,
            amount,
            currency,
            attempt_count,
            subscription.grace_period_ends_at,
        )

    def notify_grace_period_expired(self, subscription: Subscription) -> None:
        logger.warning(
            "Grace period expired for organization %s subscription=%s; access locked",
            subscription.organization_id,
            subscription.provider_subscription_id,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding committed billing history to logging."""

    def log(self, event: BillingHistoryEvent) -> None:
        logger.info(
            "Billing event %s organization=%s subscription=%s status=%s metadata=%s",
            event.event_type.value,
            event.organization_id,
            event.subscription_id,
            event.status.value,
            event.metadata,
        )


class LoggingEntitlementInvalidator(EntitlementInvalidator):
    """Placeholder invalidator that emits log statements until cache hooks exist."""

    def invalidate_organization(self, organization_id: str) -> None:
        logger.debug("Invalidate organization entitlements %s", organization_id)


class PostgresMemberDirectory(MemberDirectory):
    """Counts active organization members from the membership table."""

    def count_active_members(self, organization_id: str) -> int:
        with managed_connection() as (connection, _managed):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT COUNT(*) AS active
                    FROM organization_members
                    WHERE organization_id = %s AND status = 'active'
                    """,
                    (organization_id,),
                )
                row = cursor.fetchone()
        return int(row["active"]) if row else 0


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_subscription_store() -> PostgresSubscriptionStore:
    return PostgresSubscriptionStore()


@lru_cache(maxsize=1)
def get_billing_gateway() -> StripeBillingGateway:
    config = get_billing_config()
    return StripeBillingGateway(
        api_key=config.stripe_secret_key or "",
        timeout_seconds=config.gateway_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookEventProcessor:
    return WebhookEventProcessor(
        store=get_subscription_store(),
        gateway=get_billing_gateway(),
        config=get_billing_config(),
        notifier=LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
        entitlement_invalidator=LoggingEntitlementInvalidator(),
    )


@lru_cache(maxsize=1)
def get_seat_engine() -> SeatAdjustmentEngine:
    return SeatAdjustmentEngine(
        store=get_subscription_store(),
        gateway=get_billing_gateway(),
        config=get_billing_config(),
        event_logger=LoggingBillingEventLogger(),
        entitlement_invalidator=LoggingEntitlementInvalidator(),
        directory=PostgresMemberDirectory(),
    )


__all__ = [
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "LoggingEntitlementInvalidator",
    "PostgresMemberDirectory",
    "get_billing_config",
    "get_seat_engine",
    "get_subscription_store",
    "get_webhook_processor",
]
