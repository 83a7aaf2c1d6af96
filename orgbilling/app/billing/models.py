"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionTier(str, Enum):
    """Ordered subscription plan levels."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER: Tuple[SubscriptionTier, ...] = (
    SubscriptionTier.FREE,
    SubscriptionTier.STARTER,
    SubscriptionTier.PROFESSIONAL,
)


class SubscriptionStatus(str, Enum):
    """Lifecycle status as reported by the billing provider."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class AccessStatus(str, Enum):
    """Derived gate controlling feature access for an organization."""

    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    LOCKED = "locked"
    READ_ONLY = "read_only"


class BillingEventType(str, Enum):
    """Ledger categories recorded in billing history."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    INVOICE_CREATED = "invoice_created"
    SEATS_ADDED = "seats_added"
    SEATS_REMOVED = "seats_removed"
    TIER_UPGRADED = "tier_upgraded"
    TIER_DOWNGRADED = "tier_downgraded"

    # Rows sourced from provider events keep the provider's event name.
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    PROVIDER_SUBSCRIPTION_CREATED = "customer.subscription.created"
    PROVIDER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    PROVIDER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_SCHEDULE_CREATED = "subscription_schedule.created"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    GRACE_PERIOD_EXPIRED = "grace_period.expired"


class BillingEventStatus(str, Enum):
    """Outcome recorded on a billing history row."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class SeatChangeDirection(str, Enum):
    """Direction of a seat adjustment."""

    ADD = "add"
    REMOVE = "remove"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingDowngrade(BaseModel):
    """A tier change scheduled with the provider for a future date."""

    tier: SubscriptionTier
    effective_date: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """Internally owned subscription state for one organization."""

    subscription_id: str
    organization_id: str
    provider_customer_id: str
    provider_subscription_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    seats_included: int = Field(ge=0)
    seats_total: int = Field(ge=0)
    seats_active: int = Field(default=0, ge=0)
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    access_status: AccessStatus = AccessStatus.ACTIVE
    grace_period_started_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    pending_downgrade: Optional[PendingDowngrade] = None
    upgraded_from: Optional[SubscriptionTier] = None
    upgraded_at: Optional[datetime] = None
    upgrade_trigger_feature: Optional[str] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def additional_seats(self) -> int:
        return max(0, self.seats_total - self.seats_included)

    @property
    def in_grace_period(self) -> bool:
        return self.access_status == AccessStatus.GRACE_PERIOD

    @property
    def seat_floor(self) -> int:
        """Lowest seat total allowed by included seats and current usage."""
        return max(self.seats_included, self.seats_active)


class BillingHistoryEvent(BaseModel):
    """Append-only ledger row; one per processed provider event or seat command."""

    organization_id: str
    subscription_id: str
    event_type: BillingEventType
    provider_event_id: str
    status: BillingEventStatus
    description: str
    amount: Optional[int] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value


class SeatPreviewLine(BaseModel):
    """Normalized invoice line returned with a seat change preview."""

    description: str
    amount: int
    currency: str
    is_proration: bool = False
    period_end: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SeatChangePreview(BaseModel):
    """Priced quote for a seat change; never persisted."""

    direction: SeatChangeDirection
    seats_requested: int
    seats_after: int
    additional_seats_after: int
    immediate_amount: int
    currency: str
    proration_lines: Tuple[SeatPreviewLine, ...] = ()
    upcoming_lines: Tuple[SeatPreviewLine, ...] = ()

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SeatChangeResult(BaseModel):
    """Outcome of an applied seat change."""

    direction: SeatChangeDirection
    seats_changed: int
    seats_total: int
    subscription: Subscription
    reconciled: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SeatUsage(BaseModel):
    """Seat utilisation summary for an organization."""

    included: int
    total: int
    active: int

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def available(self) -> int:
        return self.total - self.active

    @property
    def is_over_limit(self) -> bool:
        return self.active > self.total

    @property
    def overage(self) -> int:
        return max(0, self.active - self.total)

    @classmethod
    def for_subscription(cls, subscription: Subscription) -> "SeatUsage":
        return cls(
            included=subscription.seats_included,
            total=subscription.seats_total,
            active=subscription.seats_active,
        )


__all__ = [
    "AccessStatus",
    "BillingEventStatus",
    "BillingEventType",
    "BillingHistoryEvent",
    "BillingInterval",
    "PendingDowngrade",
    "SeatChangeDirection",
    "SeatChangePreview",
    "SeatChangeResult",
    "SeatPreviewLine",
    "SeatUsage",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTier",
]
