"""Pure subscription state transitions.

``SubscriptionStateMachine.apply`` takes the current subscription (or
``None``) and a decoded fact and returns the next subscription, the history
row to append and the side effects to run after commit. It performs no I/O.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from .catalog import TierCatalog
from .config import BillingConfig
from .exceptions import InvariantViolation
from .facts import (
    GracePeriodExpired,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ProviderSubscriptionCreated,
    ProviderSubscriptionDeleted,
    ProviderSubscriptionUpdated,
    SchedulePhaseCreated,
    SubscriptionFact,
    SubscriptionItem,
)
from .models import (
    AccessStatus,
    BillingEventStatus,
    BillingEventType,
    BillingHistoryEvent,
    BillingInterval,
    PendingDowngrade,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)

_PERIOD_LENGTH = {
    BillingInterval.MONTHLY: timedelta(days=30),
    BillingInterval.ANNUAL: timedelta(days=365),
}


@dataclass(frozen=True)
class NotifyPaymentFailed:
    subscription: Subscription
    amount: int
    currency: str
    attempt_count: int


@dataclass(frozen=True)
class NotifyGracePeriodExpired:
    subscription: Subscription


@dataclass(frozen=True)
class InvalidateEntitlements:
    organization_id: str
    reason: str


@dataclass(frozen=True)
class WarnUnmappedPrice:
    organization_id: str
    provider_subscription_id: str
    price_id: Optional[str]


SideEffect = Union[NotifyPaymentFailed, NotifyGracePeriodExpired, InvalidateEntitlements, WarnUnmappedPrice]


@dataclass(frozen=True)
class Transition:
    """Result of applying a fact.

    ``history_event`` is ``None`` when the fact does not change anything,
    in which case nothing is written.
    """

    subscription: Subscription
    history_event: Optional[BillingHistoryEvent]
    side_effects: Tuple[SideEffect, ...] = field(default_factory=tuple)


def derive_access_status(
    status: SubscriptionStatus,
    grace_active: bool,
    current: AccessStatus = AccessStatus.ACTIVE,
) -> AccessStatus:
    """Map provider status plus grace state onto the access gate."""

    if status in (SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID):
        return AccessStatus.READ_ONLY
    if status == SubscriptionStatus.PAST_DUE or grace_active:
        return AccessStatus.GRACE_PERIOD
    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return AccessStatus.ACTIVE
    return current


def check_invariants(subscription: Subscription, catalog: TierCatalog) -> None:
    """Raise :class:`InvariantViolation` when a computed state is unsound."""

    limits = catalog.get(subscription.tier).seats
    context = {
        "subscription_id": subscription.subscription_id,
        "tier": subscription.tier.value,
        "seats_total": subscription.seats_total,
    }
    if subscription.seats_included != limits.included:
        raise InvariantViolation("Included seats do not match the tier.", detail=context)
    if subscription.seats_total < subscription.seats_included:
        raise InvariantViolation("Seat total is below the included allocation.", detail=context)
    if subscription.seats_total > limits.max:
        raise InvariantViolation("Seat total exceeds the tier maximum.", detail=context)
    if subscription.current_period_end <= subscription.current_period_start:
        raise InvariantViolation("Billing period ends before it starts.", detail=context)

    has_window = (
        subscription.grace_period_started_at is not None
        and subscription.grace_period_ends_at is not None
    )
    partial_window = (subscription.grace_period_started_at is None) != (
        subscription.grace_period_ends_at is None
    )
    if partial_window or has_window != subscription.in_grace_period:
        raise InvariantViolation(
            "Grace period timestamps disagree with the access status.", detail=context
        )


def format_amount(amount: int, currency: str) -> str:
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{major}.{minor:02d} {currency.upper()}"


@dataclass(slots=True)
class SubscriptionStateMachine:
    """Computes subscription transitions from provider facts."""

    config: BillingConfig

    @property
    def catalog(self) -> TierCatalog:
        return self.config.catalog

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.config.grace_period_days)

    def apply(
        self,
        current: Optional[Subscription],
        fact: SubscriptionFact,
        *,
        now: datetime,
    ) -> Transition:
        if isinstance(fact, ProviderSubscriptionCreated):
            if current is None or current.provider_subscription_id != fact.provider_subscription_id:
                transition = self._create(fact, now, replacing=current)
            else:
                transition = self._refresh_existing(current, fact, now)
        elif current is None:
            raise ValueError(f"{type(fact).__name__} requires an existing subscription")
        elif isinstance(fact, ProviderSubscriptionUpdated):
            transition = self._updated(current, fact, now)
        elif isinstance(fact, SchedulePhaseCreated):
            transition = self._schedule_created(current, fact, now)
        elif isinstance(fact, InvoicePaymentSucceeded):
            transition = self._payment_succeeded(current, fact, now)
        elif isinstance(fact, InvoicePaymentFailed):
            transition = self._payment_failed(current, fact, now)
        elif isinstance(fact, ProviderSubscriptionDeleted):
            transition = self._deleted(current, fact, now)
        elif isinstance(fact, GracePeriodExpired):
            transition = self._grace_expired(current, fact, now)
        else:
            raise TypeError(f"Unsupported fact type: {type(fact).__name__}")

        if transition.history_event is not None:
            check_invariants(transition.subscription, self.catalog)
        return transition

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _create(
        self,
        fact: ProviderSubscriptionCreated,
        now: datetime,
        *,
        replacing: Optional[Subscription] = None,
    ) -> Transition:
        """Create a subscription, or replace an ended one when the organization resubscribes."""

        tier = self.catalog.get(fact.tier)
        seats_total = min(max(fact.seats or tier.seats.included, tier.seats.included), tier.seats.max)
        period_start = fact.current_period_start or now
        period_end = fact.current_period_end or period_start + _PERIOD_LENGTH[fact.billing_interval]
        access = derive_access_status(fact.status, grace_active=False)
        in_grace = access == AccessStatus.GRACE_PERIOD

        subscription = Subscription(
            subscription_id=replacing.subscription_id if replacing else str(uuid.uuid4()),
            organization_id=fact.organization_id,
            provider_customer_id=fact.provider_customer_id,
            provider_subscription_id=fact.provider_subscription_id,
            tier=fact.tier,
            status=fact.status,
            billing_interval=fact.billing_interval,
            seats_included=tier.seats.included,
            seats_total=seats_total,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=fact.cancel_at_period_end,
            access_status=access,
            grace_period_started_at=now if in_grace else None,
            grace_period_ends_at=now + self.grace_period if in_grace else None,
            upgraded_from=replacing.tier if replacing else SubscriptionTier.FREE,
            upgraded_at=now,
            upgrade_trigger_feature=fact.upgrade_trigger_feature,
            version=replacing.version if replacing else 0,
            created_at=replacing.created_at if replacing else now,
            updated_at=now,
        )
        metadata: Dict[str, Any] = {"tier": fact.tier.value, "seats": seats_total}
        if fact.session_id:
            metadata["session_id"] = fact.session_id
        if replacing is not None:
            metadata["replaced_provider_subscription_id"] = replacing.provider_subscription_id
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType(fact.event_type),
            f"Subscription created: {tier.display_name} plan with {seats_total} seats",
            metadata=metadata,
            now=now,
        )
        return Transition(
            subscription,
            history,
            (InvalidateEntitlements(subscription.organization_id, "subscription_created"),),
        )

    def _refresh_existing(
        self,
        current: Subscription,
        fact: ProviderSubscriptionCreated,
        now: datetime,
    ) -> Transition:
        updates: Dict[str, Any] = {"status": fact.status, "updated_at": now}
        if fact.current_period_start and fact.current_period_end:
            updates["current_period_start"] = fact.current_period_start
            updates["current_period_end"] = fact.current_period_end
        subscription = current.model_copy(update=updates)
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType(fact.event_type),
            "Subscription already recorded; refreshed from provider",
            metadata={"already_recorded": True},
            now=now,
        )
        return Transition(subscription, history)

    def _updated(
        self,
        current: Subscription,
        fact: ProviderSubscriptionUpdated,
        now: datetime,
    ) -> Transition:
        updates: Dict[str, Any] = {
            "status": fact.status,
            "cancel_at_period_end": fact.cancel_at_period_end,
            "updated_at": now,
        }
        if fact.current_period_start and fact.current_period_end:
            updates["current_period_start"] = fact.current_period_start
            updates["current_period_end"] = fact.current_period_end

        metadata: Dict[str, Any] = {"status": fact.status.value}
        side_effects = []

        tier = self._tier_from_items(fact.items) or current.tier
        if tier != current.tier:
            limits = self.catalog.get(tier).seats
            updates["tier"] = tier
            updates["seats_included"] = limits.included
            updates["seats_total"] = min(max(current.seats_total, limits.included), limits.max)
            if current.pending_downgrade and current.pending_downgrade.tier == tier:
                updates["pending_downgrade"] = None
            if tier.rank > current.tier.rank:
                updates["upgraded_from"] = current.tier
                updates["upgraded_at"] = now
            metadata["tier_changed"] = {"from": current.tier.value, "to": tier.value}
            side_effects.append(InvalidateEntitlements(current.organization_id, "tier_changed"))

        seats_total = self._seats_from_items(fact.items, tier)
        if seats_total is not None and seats_total != updates.get("seats_total", current.seats_total):
            metadata["seats_reconciled"] = {
                "from": updates.get("seats_total", current.seats_total),
                "to": seats_total,
            }
            updates["seats_total"] = seats_total

        if fact.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            updates["grace_period_started_at"] = None
            updates["grace_period_ends_at"] = None
            grace_active = False
        else:
            grace_active = current.in_grace_period

        access = derive_access_status(fact.status, grace_active, current.access_status)
        if access == AccessStatus.GRACE_PERIOD and current.access_status == AccessStatus.LOCKED:
            # An expired grace window is not reopened by further dunning updates.
            access = AccessStatus.LOCKED
        if access == AccessStatus.GRACE_PERIOD and not current.in_grace_period:
            updates["grace_period_started_at"] = now
            updates["grace_period_ends_at"] = now + self.grace_period
        elif access != AccessStatus.GRACE_PERIOD:
            updates["grace_period_started_at"] = None
            updates["grace_period_ends_at"] = None
        updates["access_status"] = access
        if access != current.access_status:
            metadata["access_status"] = {"from": current.access_status.value, "to": access.value}
            side_effects.append(InvalidateEntitlements(current.organization_id, "access_changed"))

        subscription = current.model_copy(update=updates)
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType.PROVIDER_SUBSCRIPTION_UPDATED,
            f"Subscription updated: status={fact.status.value}",
            metadata=metadata,
            now=now,
        )
        return Transition(subscription, history, tuple(side_effects))

    def _schedule_created(
        self,
        current: Subscription,
        fact: SchedulePhaseCreated,
        now: datetime,
    ) -> Transition:
        metadata: Dict[str, Any] = {"price_id": fact.price_id}
        side_effects = []
        tier = self.config.prices.tier_for(fact.price_id)
        if tier is None:
            tier = current.tier
            metadata["tier_resolution_fallback"] = True
            side_effects.append(
                WarnUnmappedPrice(
                    organization_id=current.organization_id,
                    provider_subscription_id=current.provider_subscription_id,
                    price_id=fact.price_id,
                )
            )
        if fact.schedule_id:
            metadata["schedule_id"] = fact.schedule_id
        metadata["tier"] = tier.value

        subscription = current.model_copy(
            update={
                "pending_downgrade": PendingDowngrade(tier=tier, effective_date=fact.effective_date),
                "updated_at": now,
            }
        )
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType.SUBSCRIPTION_SCHEDULE_CREATED,
            "Downgrade scheduled for end of billing period",
            metadata=metadata,
            now=now,
        )
        return Transition(subscription, history, tuple(side_effects))

    def _payment_succeeded(
        self,
        current: Subscription,
        fact: InvoicePaymentSucceeded,
        now: datetime,
    ) -> Transition:
        updates: Dict[str, Any] = {"updated_at": now}
        side_effects = []
        recovering = current.in_grace_period or current.access_status == AccessStatus.LOCKED
        if recovering:
            status = current.status
            if status == SubscriptionStatus.PAST_DUE:
                status = SubscriptionStatus.ACTIVE
            updates.update(
                status=status,
                access_status=derive_access_status(status, False, AccessStatus.ACTIVE),
                grace_period_started_at=None,
                grace_period_ends_at=None,
            )
            side_effects.append(InvalidateEntitlements(current.organization_id, "grace_period_ended"))

        subscription = current.model_copy(update=updates)
        metadata: Dict[str, Any] = {"restored_access": recovering}
        if fact.invoice_id:
            metadata["invoice_id"] = fact.invoice_id
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType.INVOICE_PAYMENT_SUCCEEDED,
            f"Payment succeeded: {format_amount(fact.amount, fact.currency)}",
            amount=fact.amount,
            currency=fact.currency,
            metadata=metadata,
            now=now,
        )
        return Transition(subscription, history, tuple(side_effects))

    def _payment_failed(
        self,
        current: Subscription,
        fact: InvoicePaymentFailed,
        now: datetime,
    ) -> Transition:
        updates: Dict[str, Any] = {"updated_at": now}
        side_effects = []
        access = derive_access_status(current.status, grace_active=True, current=current.access_status)
        locked = current.access_status == AccessStatus.LOCKED
        if access == AccessStatus.GRACE_PERIOD and not current.in_grace_period and not locked:
            updates.update(
                access_status=access,
                grace_period_started_at=now,
                grace_period_ends_at=now + self.grace_period,
            )
            side_effects.append(InvalidateEntitlements(current.organization_id, "grace_period_started"))

        subscription = current.model_copy(update=updates)
        side_effects.insert(
            0,
            NotifyPaymentFailed(
                subscription=subscription,
                amount=fact.amount,
                currency=fact.currency,
                attempt_count=fact.attempt_count,
            ),
        )
        metadata: Dict[str, Any] = {
            "attempt_count": fact.attempt_count,
            "grace_period_ends_at": (
                subscription.grace_period_ends_at.isoformat()
                if subscription.grace_period_ends_at
                else None
            ),
        }
        if fact.invoice_id:
            metadata["invoice_id"] = fact.invoice_id
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType.INVOICE_PAYMENT_FAILED,
            f"Payment failed: {format_amount(fact.amount, fact.currency)}",
            status=BillingEventStatus.FAILED,
            amount=fact.amount,
            currency=fact.currency,
            metadata=metadata,
            now=now,
        )
        return Transition(subscription, history, tuple(side_effects))

    def _deleted(
        self,
        current: Subscription,
        fact: ProviderSubscriptionDeleted,
        now: datetime,
    ) -> Transition:
        subscription = current.model_copy(
            update={
                "status": SubscriptionStatus.CANCELED,
                "access_status": AccessStatus.READ_ONLY,
                "cancel_at_period_end": False,
                "grace_period_started_at": None,
                "grace_period_ends_at": None,
                "updated_at": now,
            }
        )
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType.PROVIDER_SUBSCRIPTION_DELETED,
            "Subscription canceled",
            metadata={"previous_tier": current.tier.value},
            now=now,
        )
        return Transition(
            subscription,
            history,
            (InvalidateEntitlements(current.organization_id, "subscription_canceled"),),
        )

    def _grace_expired(
        self,
        current: Subscription,
        fact: GracePeriodExpired,
        now: datetime,
    ) -> Transition:
        ends_at = current.grace_period_ends_at
        if not current.in_grace_period or ends_at is None or ends_at > now:
            return Transition(current, None)

        subscription = current.model_copy(
            update={
                "access_status": AccessStatus.LOCKED,
                "grace_period_started_at": None,
                "grace_period_ends_at": None,
                "updated_at": now,
            }
        )
        history = self._history(
            subscription,
            fact.event_id,
            BillingEventType.GRACE_PERIOD_EXPIRED,
            "Grace period expired; access locked",
            status=BillingEventStatus.FAILED,
            metadata={"grace_period_ended_at": ends_at.isoformat()},
            now=now,
        )
        return Transition(
            subscription,
            history,
            (
                NotifyGracePeriodExpired(subscription),
                InvalidateEntitlements(current.organization_id, "access_locked"),
            ),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _tier_from_items(self, items: Tuple[SubscriptionItem, ...]) -> Optional[SubscriptionTier]:
        for item in items:
            tier = self.config.prices.tier_for(item.price_id)
            if tier is not None:
                return tier
        return None

    def _seats_from_items(self, items: Tuple[SubscriptionItem, ...], tier: SubscriptionTier) -> Optional[int]:
        seat_price = self.config.prices.additional_seat
        if not seat_price or self._tier_from_items(items) is None:
            return None
        limits = self.catalog.get(tier).seats
        additional = sum(item.quantity for item in items if item.price_id == seat_price)
        return min(limits.included + additional, limits.max)

    def _history(
        self,
        subscription: Subscription,
        event_id: str,
        event_type: BillingEventType,
        description: str,
        *,
        now: datetime,
        status: BillingEventStatus = BillingEventStatus.SUCCEEDED,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BillingHistoryEvent:
        return BillingHistoryEvent(
            organization_id=subscription.organization_id,
            subscription_id=subscription.provider_subscription_id,
            event_type=event_type,
            provider_event_id=event_id,
            status=status,
            description=description,
            amount=amount,
            currency=currency,
            metadata=metadata or {},
            created_at=now,
        )


__all__ = [
    "InvalidateEntitlements",
    "NotifyGracePeriodExpired",
    "NotifyPaymentFailed",
    "SideEffect",
    "SubscriptionStateMachine",
    "Transition",
    "WarnUnmappedPrice",
    "check_invariants",
    "derive_access_status",
    "format_amount",
]
