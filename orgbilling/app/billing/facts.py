"""Typed facts decoded from billing provider webhook events.

Provider events are decoded exactly once, at the webhook boundary, into one
of the fact types below. Anything the state machine does not understand is
decoded into :class:`IgnoredEvent` rather than falling through a default
branch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .exceptions import ValidationError
from .models import BillingInterval, SubscriptionStatus, SubscriptionTier


class ProviderEventType(str, Enum):
    """Provider event names the processor reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_SCHEDULE_CREATED = "subscription_schedule.created"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class SubscriptionItem:
    """A priced line on a provider subscription."""

    price_id: Optional[str]
    quantity: int = 1
    item_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderSubscriptionCreated:
    event_id: str
    event_type: str
    organization_id: str
    provider_customer_id: str
    provider_subscription_id: str
    tier: SubscriptionTier
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    seats: Optional[int] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    upgrade_trigger_feature: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderSubscriptionUpdated:
    event_id: str
    event_type: str
    provider_subscription_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    items: Tuple[SubscriptionItem, ...] = ()


@dataclass(frozen=True)
class SchedulePhaseCreated:
    event_id: str
    event_type: str
    provider_subscription_id: str
    effective_date: datetime
    price_id: Optional[str] = None
    schedule_id: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    event_type: str
    provider_subscription_id: str
    amount: int
    currency: str
    invoice_id: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    event_type: str
    provider_subscription_id: str
    amount: int
    currency: str
    attempt_count: int = 0
    invoice_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderSubscriptionDeleted:
    event_id: str
    event_type: str
    provider_subscription_id: str


@dataclass(frozen=True)
class GracePeriodExpired:
    """Internal sweep command raised once a grace window has elapsed."""

    event_id: str
    provider_subscription_id: str
    event_type: str = "grace_period.expired"


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str
    reason: str
    provider_subscription_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


SubscriptionFact = Union[
    ProviderSubscriptionCreated,
    ProviderSubscriptionUpdated,
    SchedulePhaseCreated,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    ProviderSubscriptionDeleted,
    GracePeriodExpired,
]

Fact = Union[SubscriptionFact, IgnoredEvent]

CREATION_FACTS = (ProviderSubscriptionCreated,)


def decode_event(event: Mapping[str, Any]) -> Fact:
    """Decode a verified provider event into a fact."""

    if not isinstance(event, Mapping):
        raise ValidationError("Malformed webhook payload.")

    event_id = event.get("id")
    event_type = event.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
        raise ValidationError("Webhook payload is missing an event id or type.")

    data = event.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise ValidationError("Webhook payload is missing its data object.")

    try:
        provider_type = ProviderEventType(event_type)
    except ValueError:
        return IgnoredEvent(event_id=event_id, event_type=event_type, reason="unhandled_event_type")

    decoder = _DECODERS[provider_type]
    try:
        return decoder(event_id, event_type, obj)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(
            "Webhook payload could not be decoded.",
            detail={"event_type": event_type},
        ) from exc


def _decode_checkout_completed(event_id: str, event_type: str, session: Mapping[str, Any]) -> Fact:
    if session.get("mode") != "subscription":
        return IgnoredEvent(event_id, event_type, reason="not_a_subscription_checkout")

    metadata = _mapping(session.get("metadata"))
    organization_id = _meta(metadata, "organizationId", "organization_id")
    tier = _meta(metadata, "tier")
    seats = _meta(metadata, "seats")
    provider_subscription_id = _object_id(session.get("subscription"))
    if not organization_id or not tier or not seats:
        return IgnoredEvent(
            event_id,
            event_type,
            reason="missing_checkout_metadata",
            provider_subscription_id=provider_subscription_id,
        )
    if not provider_subscription_id:
        return IgnoredEvent(event_id, event_type, reason="missing_subscription_reference")

    return ProviderSubscriptionCreated(
        event_id=event_id,
        event_type=event_type,
        organization_id=organization_id,
        provider_customer_id=_object_id(session.get("customer")) or "",
        provider_subscription_id=provider_subscription_id,
        tier=SubscriptionTier(tier),
        billing_interval=_interval_from_metadata(_meta(metadata, "interval")),
        status=SubscriptionStatus.ACTIVE,
        seats=_positive_int(seats),
        upgrade_trigger_feature=_meta(metadata, "upgradeTriggerFeature", "upgrade_trigger_feature"),
        session_id=session.get("id"),
    )


def _decode_subscription_created(event_id: str, event_type: str, subscription: Mapping[str, Any]) -> Fact:
    metadata = _mapping(subscription.get("metadata"))
    organization_id = _meta(metadata, "organizationId", "organization_id")
    if not organization_id:
        return IgnoredEvent(
            event_id,
            event_type,
            reason="missing_organization_metadata",
            provider_subscription_id=subscription.get("id"),
        )

    items = _subscription_items(subscription)
    period_start, period_end = _subscription_periods(subscription)
    seats = _meta(metadata, "seats")
    return ProviderSubscriptionCreated(
        event_id=event_id,
        event_type=event_type,
        organization_id=organization_id,
        provider_customer_id=_object_id(subscription.get("customer")) or "",
        provider_subscription_id=str(subscription["id"]),
        tier=SubscriptionTier(_meta(metadata, "tier") or SubscriptionTier.STARTER.value),
        billing_interval=_interval_from_subscription(subscription, items),
        status=SubscriptionStatus(subscription.get("status") or SubscriptionStatus.ACTIVE.value),
        seats=_positive_int(seats) if seats else None,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        upgrade_trigger_feature=_meta(metadata, "upgradeTriggerFeature", "upgrade_trigger_feature"),
    )


def _decode_subscription_updated(event_id: str, event_type: str, subscription: Mapping[str, Any]) -> Fact:
    period_start, period_end = _subscription_periods(subscription)
    return ProviderSubscriptionUpdated(
        event_id=event_id,
        event_type=event_type,
        provider_subscription_id=str(subscription["id"]),
        status=SubscriptionStatus(subscription["status"]),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        items=_subscription_items(subscription),
    )


def _decode_subscription_deleted(event_id: str, event_type: str, subscription: Mapping[str, Any]) -> Fact:
    return ProviderSubscriptionDeleted(
        event_id=event_id,
        event_type=event_type,
        provider_subscription_id=str(subscription["id"]),
    )


def _decode_schedule_created(event_id: str, event_type: str, schedule: Mapping[str, Any]) -> Fact:
    provider_subscription_id = _object_id(schedule.get("subscription"))
    if not provider_subscription_id:
        return IgnoredEvent(event_id, event_type, reason="missing_subscription_reference")

    phases = schedule.get("phases") or []
    if not phases:
        return IgnoredEvent(
            event_id,
            event_type,
            reason="schedule_without_phases",
            provider_subscription_id=provider_subscription_id,
        )

    future_phase = _mapping(phases[-1])
    phase_items = future_phase.get("items") or []
    price_id = _object_id(_mapping(phase_items[0]).get("price")) if phase_items else None
    return SchedulePhaseCreated(
        event_id=event_id,
        event_type=event_type,
        provider_subscription_id=provider_subscription_id,
        effective_date=_from_timestamp(future_phase["start_date"]),
        price_id=price_id,
        schedule_id=schedule.get("id"),
    )


def _decode_invoice_succeeded(event_id: str, event_type: str, invoice: Mapping[str, Any]) -> Fact:
    provider_subscription_id = _invoice_subscription_id(invoice)
    if not provider_subscription_id:
        return IgnoredEvent(event_id, event_type, reason="invoice_without_subscription")
    return InvoicePaymentSucceeded(
        event_id=event_id,
        event_type=event_type,
        provider_subscription_id=provider_subscription_id,
        amount=int(invoice.get("amount_paid") or 0),
        currency=str(invoice.get("currency") or "gbp").lower(),
        invoice_id=invoice.get("id"),
    )


def _decode_invoice_failed(event_id: str, event_type: str, invoice: Mapping[str, Any]) -> Fact:
    provider_subscription_id = _invoice_subscription_id(invoice)
    if not provider_subscription_id:
        return IgnoredEvent(event_id, event_type, reason="invoice_without_subscription")
    return InvoicePaymentFailed(
        event_id=event_id,
        event_type=event_type,
        provider_subscription_id=provider_subscription_id,
        amount=int(invoice.get("amount_due") or 0),
        currency=str(invoice.get("currency") or "gbp").lower(),
        attempt_count=int(invoice.get("attempt_count") or 0),
        invoice_id=invoice.get("id"),
    )


_DECODERS: Dict[ProviderEventType, Callable[[str, str, Mapping[str, Any]], Fact]] = {
    ProviderEventType.CHECKOUT_SESSION_COMPLETED: _decode_checkout_completed,
    ProviderEventType.SUBSCRIPTION_CREATED: _decode_subscription_created,
    ProviderEventType.SUBSCRIPTION_UPDATED: _decode_subscription_updated,
    ProviderEventType.SUBSCRIPTION_DELETED: _decode_subscription_deleted,
    ProviderEventType.SUBSCRIPTION_SCHEDULE_CREATED: _decode_schedule_created,
    ProviderEventType.INVOICE_PAYMENT_SUCCEEDED: _decode_invoice_succeeded,
    ProviderEventType.INVOICE_PAYMENT_FAILED: _decode_invoice_failed,
}


def _mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _meta(metadata: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _object_id(value: object) -> Optional[str]:
    """Return an id from a field that may be a bare id or an expanded object."""

    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    return None


def _positive_int(value: str) -> int:
    seats = int(value)
    if seats < 1:
        raise ValueError("seat count must be positive")
    return seats


def _from_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("Unsupported timestamp value")
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _optional_timestamp(value: object) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return _from_timestamp(value)


def _subscription_items(subscription: Mapping[str, Any]) -> Tuple[SubscriptionItem, ...]:
    items = _mapping(subscription.get("items")).get("data") or []
    parsed = []
    for raw in items:
        item = _mapping(raw)
        price = item.get("price") or item.get("plan")
        parsed.append(
            SubscriptionItem(
                price_id=_object_id(price),
                quantity=int(item.get("quantity") or 0),
                item_id=item.get("id"),
            )
        )
    return tuple(parsed)


def _subscription_periods(subscription: Mapping[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions report billing periods per item.
        items = _mapping(subscription.get("items")).get("data") or []
        first = _mapping(items[0]) if items else {}
        start = start if start is not None else first.get("current_period_start")
        end = end if end is not None else first.get("current_period_end")
    return _optional_timestamp(start), _optional_timestamp(end)


def _interval_from_metadata(value: Optional[str]) -> BillingInterval:
    if value == BillingInterval.ANNUAL.value:
        return BillingInterval.ANNUAL
    return BillingInterval.MONTHLY


def _interval_from_subscription(
    subscription: Mapping[str, Any],
    items: Tuple[SubscriptionItem, ...],
) -> BillingInterval:
    raw_items = _mapping(subscription.get("items")).get("data") or []
    first = _mapping(raw_items[0]) if raw_items else {}
    plan = _mapping(first.get("plan"))
    recurring = _mapping(_mapping(first.get("price")).get("recurring"))
    interval = plan.get("interval") or recurring.get("interval")
    if interval == "year":
        return BillingInterval.ANNUAL
    return BillingInterval.MONTHLY


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = _mapping(invoice.get("parent"))
    details = _mapping(parent.get("subscription_details"))
    return _object_id(details.get("subscription"))


__all__ = [
    "CREATION_FACTS",
    "Fact",
    "GracePeriodExpired",
    "IgnoredEvent",
    "InvoicePaymentFailed",
    "InvoicePaymentSucceeded",
    "ProviderEventType",
    "ProviderSubscriptionCreated",
    "ProviderSubscriptionDeleted",
    "ProviderSubscriptionUpdated",
    "SchedulePhaseCreated",
    "SubscriptionFact",
    "SubscriptionItem",
    "decode_event",
]
