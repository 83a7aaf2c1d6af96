"""Interfaces for services the billing engines notify after commit."""
from __future__ import annotations

import logging
from typing import Iterable, Protocol

from .models import BillingHistoryEvent, Subscription
from .state_machine import (
    InvalidateEntitlements,
    NotifyGracePeriodExpired,
    NotifyPaymentFailed,
    SideEffect,
    WarnUnmappedPrice,
)

logger = logging.getLogger(__name__)


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to organization owners."""

    def notify_payment_failure(
        self,
        subscription: Subscription,
        *,
        amount: int,
        currency: str,
        attempt_count: int,
    ) -> None:
        ...

    def notify_grace_period_expired(self, subscription: Subscription) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures committed billing history rows for auditing."""

    def log(self, event: BillingHistoryEvent) -> None:
        ...


class EntitlementInvalidator(Protocol):
    """Invalidates entitlement caches affected by billing changes."""

    def invalidate_organization(self, organization_id: str) -> None:
        ...


class MemberDirectory(Protocol):
    """Source of truth for how many members currently occupy seats."""

    def count_active_members(self, organization_id: str) -> int:
        ...


def dispatch_side_effects(
    effects: Iterable[SideEffect],
    *,
    notifier: BillingNotifier,
    entitlement_invalidator: EntitlementInvalidator,
) -> None:
    """Run side effects for a committed transition.

    The transition is already durable, so a failing notification is logged
    and the remaining effects still run.
    """

    for effect in effects:
        try:
            if isinstance(effect, NotifyPaymentFailed):
                notifier.notify_payment_failure(
                    effect.subscription,
                    amount=effect.amount,
                    currency=effect.currency,
                    attempt_count=effect.attempt_count,
                )
            elif isinstance(effect, NotifyGracePeriodExpired):
                notifier.notify_grace_period_expired(effect.subscription)
            elif isinstance(effect, InvalidateEntitlements):
                entitlement_invalidator.invalidate_organization(effect.organization_id)
            elif isinstance(effect, WarnUnmappedPrice):
                logger.warning(
                    "Unmapped price %s on subscription %s; kept current tier",
                    effect.price_id,
                    effect.provider_subscription_id,
                    extra={"organization_id": effect.organization_id},
                )
        except Exception:
            logger.exception(
                "Billing side effect failed",
                extra={"effect": type(effect).__name__},
            )


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "EntitlementInvalidator",
    "MemberDirectory",
    "dispatch_side_effects",
]
