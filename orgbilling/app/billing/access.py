"""Authorization helpers driven by a subscription's access status."""
from __future__ import annotations

from typing import Optional

from .catalog import DEFAULT_CATALOG, TierCatalog, can_access_tier
from .exceptions import AccessDeniedError
from .models import AccessStatus, Subscription, SubscriptionTier

_DENIED_MESSAGES = {
    AccessStatus.LOCKED: "Billing access is locked. Update your payment method to continue.",
    AccessStatus.READ_ONLY: "Your subscription has ended. The workspace is read-only.",
}


def require_access(subscription: Subscription, *, write: bool = False) -> None:
    """Raise :class:`AccessDeniedError` unless the organization may proceed.

    ``grace_period`` keeps full access. ``read_only`` allows reads only and
    ``locked`` allows nothing.
    """

    status = subscription.access_status
    if status == AccessStatus.LOCKED or (write and status == AccessStatus.READ_ONLY):
        raise AccessDeniedError(
            _DENIED_MESSAGES[status],
            detail={"access_status": status.value},
        )


def effective_tier(subscription: Optional[Subscription]) -> SubscriptionTier:
    """Tier whose features an organization may currently use."""

    if subscription is None:
        return SubscriptionTier.FREE
    if subscription.access_status in (AccessStatus.ACTIVE, AccessStatus.GRACE_PERIOD):
        return subscription.tier
    return SubscriptionTier.FREE


def has_feature(
    subscription: Optional[Subscription],
    feature: str,
    *,
    catalog: TierCatalog = DEFAULT_CATALOG,
) -> bool:
    return feature in catalog.get(effective_tier(subscription)).features


__all__ = ["can_access_tier", "effective_tier", "has_feature", "require_access"]
