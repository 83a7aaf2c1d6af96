"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    AccessStatus,
    BillingEventStatus,
    BillingEventType,
    BillingHistoryEvent,
    BillingInterval,
    SeatChangeDirection,
    SeatChangePreview,
    SeatChangeResult,
    SeatPreviewLine,
    SeatUsage,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookOutcome,
)


class SeatChangeRequest(BaseModel):
    mode: SeatChangeDirection = SeatChangeDirection.ADD
    # Validated by the seat engine so every rejection carries the same message.
    seats: Any = None

    model_config = ConfigDict(populate_by_name=True)


class SeatPreviewLineResponse(BaseModel):
    description: str
    amount: int
    currency: str
    is_proration: bool = Field(alias="isProration")
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_line(cls, line: SeatPreviewLine) -> "SeatPreviewLineResponse":
        return cls(
            description=line.description,
            amount=line.amount,
            currency=line.currency,
            is_proration=line.is_proration,
            period_end=line.period_end,
        )


class SeatPreviewResponse(BaseModel):
    mode: SeatChangeDirection
    immediate_amount: int = Field(alias="immediateAmount")
    currency: str
    seats_after: int = Field(alias="seatsAfter")
    additional_seats_after: int = Field(alias="additionalSeatsAfter")
    proration_lines: List[SeatPreviewLineResponse] = Field(alias="prorationLines", default_factory=list)
    upcoming_lines: List[SeatPreviewLineResponse] = Field(alias="upcomingLines", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_preview(cls, preview: SeatChangePreview) -> "SeatPreviewResponse":
        return cls(
            mode=preview.direction,
            immediate_amount=preview.immediate_amount,
            currency=preview.currency,
            seats_after=preview.seats_after,
            additional_seats_after=preview.additional_seats_after,
            proration_lines=[SeatPreviewLineResponse.from_line(line) for line in preview.proration_lines],
            upcoming_lines=[SeatPreviewLineResponse.from_line(line) for line in preview.upcoming_lines],
        )


class SeatApplyResponse(BaseModel):
    mode: SeatChangeDirection
    seats_changed: int = Field(alias="seatsChanged")
    new_seat_total: int = Field(alias="newSeatTotal")
    reconciled: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SeatChangeResult) -> "SeatApplyResponse":
        return cls(
            mode=result.direction,
            seats_changed=result.seats_changed,
            new_seat_total=result.seats_total,
            reconciled=result.reconciled,
        )


class SeatUsageResponse(BaseModel):
    included: int
    total: int
    active: int
    available: int
    is_over_limit: bool = Field(alias="isOverLimit")
    overage: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_usage(cls, usage: SeatUsage) -> "SeatUsageResponse":
        return cls(
            included=usage.included,
            total=usage.total,
            active=usage.active,
            available=usage.available,
            is_over_limit=usage.is_over_limit,
            overage=usage.overage,
        )


class PendingDowngradeResponse(BaseModel):
    tier: SubscriptionTier
    effective_date: datetime = Field(alias="effectiveDate")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    tier: SubscriptionTier
    status: SubscriptionStatus
    access_status: AccessStatus = Field(alias="accessStatus")
    billing_interval: BillingInterval = Field(alias="billingInterval")
    current_period_start: datetime = Field(alias="currentPeriodStart")
    current_period_end: datetime = Field(alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    grace_period_ends_at: Optional[datetime] = Field(alias="gracePeriodEndsAt", default=None)
    pending_downgrade: Optional[PendingDowngradeResponse] = Field(alias="pendingDowngrade", default=None)
    seats: SeatUsageResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription, usage: SeatUsage) -> "SubscriptionResponse":
        pending = subscription.pending_downgrade
        return cls(
            tier=subscription.tier,
            status=subscription.status,
            access_status=subscription.access_status,
            billing_interval=subscription.billing_interval,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            grace_period_ends_at=subscription.grace_period_ends_at,
            pending_downgrade=(
                PendingDowngradeResponse(tier=pending.tier, effective_date=pending.effective_date)
                if pending
                else None
            ),
            seats=SeatUsageResponse.from_usage(usage),
        )


class BillingHistoryItem(BaseModel):
    event_type: BillingEventType = Field(alias="eventType")
    status: BillingEventStatus
    description: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_event(cls, event: BillingHistoryEvent) -> "BillingHistoryItem":
        return cls(
            event_type=event.event_type,
            status=event.status,
            description=event.description,
            amount=event.amount,
            currency=event.currency,
            metadata=event.metadata,
            created_at=event.created_at,
        )


class BillingHistoryResponse(BaseModel):
    events: List[BillingHistoryItem]

    model_config = ConfigDict(populate_by_name=True)


class WebhookAcknowledgement(BaseModel):
    received: bool = True
    status: str
    event_id: str = Field(alias="eventId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: WebhookOutcome) -> "WebhookAcknowledgement":
        return cls(status=outcome.status.value, event_id=outcome.event_id)


__all__ = [
    "BillingHistoryItem",
    "BillingHistoryResponse",
    "SeatApplyResponse",
    "SeatChangeRequest",
    "SeatPreviewResponse",
    "SeatUsageResponse",
    "SubscriptionResponse",
    "WebhookAcknowledgement",
]
