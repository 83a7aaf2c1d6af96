"""Seat adjustment engine: price a seat change, then apply it."""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .access import require_access
from .catalog import TierDefinition
from .collaborators import BillingEventLogger, EntitlementInvalidator, MemberDirectory
from .config import BillingConfig
from .exceptions import (
    ConflictError,
    ExternalServiceError,
    GatewayTimeoutError,
    NotFoundError,
    ValidationError,
)
from .gateway import (
    BillingGateway,
    additional_seat_quantity,
    build_seat_items,
    settle_subscription_invoice,
)
from .models import (
    BillingEventStatus,
    BillingEventType,
    BillingHistoryEvent,
    SeatChangeDirection,
    SeatChangePreview,
    SeatChangeResult,
    SeatPreviewLine,
    SeatUsage,
    Subscription,
)
from .repository import SubscriptionStore
from .state_machine import check_invariants

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_count(count: object) -> int:
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise ValidationError("Enter a valid number of seats.")
    return count


def _line_is_proration(line: Mapping[str, Any]) -> bool:
    if line.get("proration"):
        return True
    parent = line.get("parent") or {}
    for key in ("subscription_item_details", "invoice_item_details"):
        details = parent.get(key) or {}
        if details.get("proration"):
            return True
    return False


def normalize_preview_lines(
    invoice: Mapping[str, Any],
    default_currency: str,
) -> Tuple[Tuple[SeatPreviewLine, ...], Tuple[SeatPreviewLine, ...]]:
    """Split preview invoice lines into proration and upcoming lines."""

    currency = (invoice.get("currency") or default_currency).lower()
    proration: List[SeatPreviewLine] = []
    upcoming: List[SeatPreviewLine] = []
    for line in (invoice.get("lines") or {}).get("data") or []:
        period_end = (line.get("period") or {}).get("end")
        normalized = SeatPreviewLine(
            description=line.get("description") or "Billing item",
            amount=int(line.get("amount") or 0),
            currency=(line.get("currency") or currency).lower(),
            is_proration=_line_is_proration(line),
            period_end=datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None,
        )
        (proration if normalized.is_proration else upcoming).append(normalized)
    return tuple(proration), tuple(upcoming)


@dataclass(frozen=True)
class _SeatPlan:
    subscription: Subscription
    tier: TierDefinition
    seats_after: int

    @property
    def additional_after(self) -> int:
        return self.seats_after - self.subscription.seats_included


class _StalePlan(Exception):
    """Another seat change landed after the plan was computed."""

    def __init__(self, *, provider_written: bool) -> None:
        super().__init__("stale seat plan")
        self.provider_written = provider_written


@dataclass(slots=True)
class SeatAdjustmentEngine:
    """Coordinates seat changes between the store and the billing gateway."""

    store: SubscriptionStore
    gateway: BillingGateway
    config: BillingConfig
    event_logger: BillingEventLogger
    entitlement_invalidator: EntitlementInvalidator
    directory: Optional[MemberDirectory] = None
    clock: Callable[[], datetime] = _utcnow
    sleep: Callable[[float], None] = time.sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def seat_usage(self, organization_id: str) -> SeatUsage:
        subscription = self._load(organization_id)
        return SeatUsage(
            included=subscription.seats_included,
            total=subscription.seats_total,
            active=self._seats_active(subscription),
        )

    def preview_seat_change(
        self,
        organization_id: str,
        direction: SeatChangeDirection,
        count: int,
    ) -> SeatChangePreview:
        """Price a seat change without changing anything."""

        seats = _validate_count(count)
        plan = self._plan(self._load(organization_id), direction, seats)
        subscription = plan.subscription

        provider_subscription = self.gateway.retrieve_subscription(subscription.provider_subscription_id)
        items = self._seat_items(provider_subscription, subscription, plan.additional_after)
        invoice = self.gateway.create_preview_invoice(
            customer_id=subscription.provider_customer_id,
            subscription_id=subscription.provider_subscription_id,
            items=items,
        )
        proration_lines, upcoming_lines = normalize_preview_lines(invoice, self.config.default_currency)
        return SeatChangePreview(
            direction=direction,
            seats_requested=seats,
            seats_after=plan.seats_after,
            additional_seats_after=plan.additional_after,
            immediate_amount=sum(line.amount for line in proration_lines),
            currency=(invoice.get("currency") or self.config.default_currency).lower(),
            proration_lines=proration_lines,
            upcoming_lines=upcoming_lines,
        )

    def apply_seat_change(
        self,
        organization_id: str,
        direction: SeatChangeDirection,
        count: int,
        *,
        actor_id: Optional[str] = None,
    ) -> SeatChangeResult:
        """Apply a seat change with the provider, then record it locally.

        The plan is recomputed from the stored row whenever another seat
        change lands first, so concurrent applies add up instead of
        overwriting each other.
        """

        seats = _validate_count(count)
        attempts = max(1, self.config.conflict_max_attempts)
        provider_written = False
        attempt = 0
        while True:
            attempt += 1
            plan = self._plan(self._load(organization_id), direction, seats)
            try:
                saved, history, reconciled = self._apply_plan(
                    plan,
                    direction,
                    seats,
                    actor_id,
                    check_provider=not provider_written,
                )
                break
            except _StalePlan as stale:
                provider_written = provider_written or stale.provider_written
                if attempt >= attempts:
                    if provider_written:
                        self._log_reconciliation(plan)
                        raise ExternalServiceError(
                            "Seat change was applied with the billing provider but could not be saved. "
                            "It will be reconciled automatically.",
                            retryable=False,
                        )
                    raise ConflictError(
                        "Seats were changed by another request. Review the new total and try again.",
                        detail={"organization_id": organization_id},
                    )
                logger.info(
                    "Seat plan for %s went stale, replanning (attempt %s/%s)",
                    organization_id,
                    attempt,
                    attempts,
                )
                self.sleep(self.config.conflict_backoff_seconds * (2 ** (attempt - 1)))

        self.event_logger.log(history)
        self.entitlement_invalidator.invalidate_organization(saved.organization_id)
        logger.info(
            "Seat change applied for %s: %s %s seats, total now %s",
            organization_id,
            direction.value,
            seats,
            saved.seats_total,
            extra={"reconciled": reconciled},
        )
        return SeatChangeResult(
            direction=direction,
            seats_changed=seats,
            seats_total=saved.seats_total,
            subscription=saved,
            reconciled=reconciled,
        )

    def _apply_plan(
        self,
        plan: _SeatPlan,
        direction: SeatChangeDirection,
        seats: int,
        actor_id: Optional[str],
        *,
        check_provider: bool,
    ) -> Tuple[Subscription, BillingHistoryEvent, bool]:
        subscription = plan.subscription
        seat_price = self.config.prices.seat_price()

        provider_subscription = self.gateway.retrieve_subscription(subscription.provider_subscription_id)
        # A provider quantity that disagrees with the stored row means another
        # seat change is in flight between its gateway call and its save.
        provider_seats = additional_seat_quantity(provider_subscription, seat_price)
        if check_provider and provider_seats != subscription.additional_seats:
            raise _StalePlan(provider_written=False)
        items = self._seat_items(provider_subscription, subscription, plan.additional_after)

        reconciled = False
        try:
            self.gateway.update_subscription(subscription.provider_subscription_id, items=items)
        except GatewayTimeoutError:
            reconciled = self._reconcile_after_timeout(subscription, plan.additional_after)

        invoice_id = None
        if direction == SeatChangeDirection.ADD and self.config.settle_seat_invoices:
            invoice_id = self._settle(subscription)

        saved, history = self._persist(plan, direction, seats, reconciled, invoice_id, actor_id)
        return saved, history, reconciled

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def _load(self, organization_id: str) -> Subscription:
        subscription = self.store.get_by_organization(organization_id)
        if subscription is None:
            raise NotFoundError(
                "No active subscription found. Upgrade to a paid plan to manage seats.",
                detail={"organization_id": organization_id},
            )
        return subscription

    def _seats_active(self, subscription: Subscription) -> int:
        if self.directory is None:
            return subscription.seats_active
        return self.directory.count_active_members(subscription.organization_id)

    def _plan(
        self,
        subscription: Subscription,
        direction: SeatChangeDirection,
        seats: int,
    ) -> _SeatPlan:
        tier = self.config.catalog.get(subscription.tier)
        if not tier.is_paid:
            raise ValidationError("Seat management requires a paid subscription.")
        require_access(subscription, write=True)

        seats_active = self._seats_active(subscription)
        if direction == SeatChangeDirection.ADD:
            seats_after = subscription.seats_total + seats
        else:
            seats_after = subscription.seats_total - seats

        floor = max(subscription.seats_included, seats_active)
        if seats_after < floor:
            raise ValidationError(
                "Cannot reduce seats below your included allocation or active users.",
                detail={"minimum_seats": floor},
            )
        if seats_after > tier.seats.max:
            raise ValidationError(
                f"Cannot exceed {tier.seats.max} seats on the {tier.display_name} plan.",
                detail={"maximum_seats": tier.seats.max},
            )
        return _SeatPlan(
            subscription=subscription,
            tier=tier,
            seats_after=seats_after,
        )

    # ------------------------------------------------------------------
    # Gateway helpers
    # ------------------------------------------------------------------
    def _seat_items(
        self,
        provider_subscription: Mapping[str, Any],
        subscription: Subscription,
        additional_seats: int,
    ) -> List[Dict[str, Any]]:
        prices = self.config.prices
        return build_seat_items(
            provider_subscription,
            base_price_id=prices.for_tier(subscription.tier, subscription.billing_interval),
            seat_price_id=prices.seat_price(),
            additional_seats=additional_seats,
        )

    def _reconcile_after_timeout(self, subscription: Subscription, additional_after: int) -> bool:
        logger.warning(
            "Seat update timed out for %s; checking provider state",
            subscription.provider_subscription_id,
        )
        provider_subscription = self.gateway.retrieve_subscription(subscription.provider_subscription_id)
        applied = additional_seat_quantity(provider_subscription, self.config.prices.seat_price())
        if applied != additional_after:
            raise ExternalServiceError(
                "The billing provider did not confirm the seat change. Please try again.",
                detail={"operation": "update_subscription"},
            )
        return True

    def _settle(self, subscription: Subscription) -> Optional[str]:
        try:
            invoice = settle_subscription_invoice(
                self.gateway,
                customer_id=subscription.provider_customer_id,
                subscription_id=subscription.provider_subscription_id,
            )
        except ExternalServiceError:
            # The seat change stands; the provider collects on the next cycle.
            logger.warning(
                "Could not settle seat invoice for %s",
                subscription.provider_subscription_id,
                exc_info=True,
            )
            return None
        return invoice.get("id") if invoice else None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _persist(
        self,
        plan: _SeatPlan,
        direction: SeatChangeDirection,
        seats: int,
        reconciled: bool,
        invoice_id: Optional[str],
        actor_id: Optional[str],
    ) -> Tuple[Subscription, BillingHistoryEvent]:
        attempts = max(1, self.config.conflict_max_attempts)
        subscription = plan.subscription
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._save_seats(subscription, plan, direction, seats, reconciled, invoice_id, actor_id)
            except ConflictError:
                fresh = self.store.get_subscription(subscription.subscription_id)
                if fresh is not None and fresh.seats_total != plan.subscription.seats_total:
                    raise _StalePlan(provider_written=True)
                if attempt >= attempts or fresh is None or not self._still_valid(fresh, plan.seats_after):
                    self._log_reconciliation(plan)
                    raise ExternalServiceError(
                        "Seat change was applied with the billing provider but could not be saved. "
                        "It will be reconciled automatically.",
                        retryable=False,
                    )
                subscription = fresh
                self.sleep(self.config.conflict_backoff_seconds * (2 ** (attempt - 1)))
            except Exception as exc:
                self._log_reconciliation(plan)
                raise ExternalServiceError(
                    "Seat change was applied with the billing provider but could not be saved. "
                    "It will be reconciled automatically.",
                    retryable=False,
                ) from exc

    def _still_valid(self, subscription: Subscription, seats_after: int) -> bool:
        tier = self.config.catalog.get(subscription.tier)
        floor = max(subscription.seats_included, self._seats_active(subscription))
        return floor <= seats_after <= tier.seats.max

    def _save_seats(
        self,
        subscription: Subscription,
        plan: _SeatPlan,
        direction: SeatChangeDirection,
        seats: int,
        reconciled: bool,
        invoice_id: Optional[str],
        actor_id: Optional[str],
    ) -> Tuple[Subscription, BillingHistoryEvent]:
        now = self.clock()
        updated = subscription.model_copy(
            update={
                "seats_total": plan.seats_after,
                "updated_at": now,
            }
        )
        check_invariants(updated, self.config.catalog)
        noun = "seat" if seats == 1 else "seats"
        verb = "Added" if direction == SeatChangeDirection.ADD else "Removed"
        metadata: Dict[str, Any] = {
            "seats_before": subscription.seats_total,
            "seats_after": plan.seats_after,
            "additional_seats": plan.additional_after,
            "reconciled": reconciled,
        }
        if invoice_id:
            metadata["invoice_id"] = invoice_id
        if actor_id:
            metadata["actor_id"] = actor_id
        history = BillingHistoryEvent(
            organization_id=subscription.organization_id,
            subscription_id=subscription.provider_subscription_id,
            event_type=(
                BillingEventType.SEATS_ADDED
                if direction == SeatChangeDirection.ADD
                else BillingEventType.SEATS_REMOVED
            ),
            provider_event_id=f"seat_change:{uuid.uuid4()}",
            status=BillingEventStatus.SUCCEEDED,
            description=f"{verb} {seats} {noun}",
            metadata=metadata,
            created_at=now,
        )
        saved = self.store.save_transition(updated, history, expected_version=subscription.version)
        return saved, history

    def _log_reconciliation(self, plan: _SeatPlan) -> None:
        logger.error(
            "Seat change for %s applied at provider but not persisted; awaiting webhook reconciliation",
            plan.subscription.provider_subscription_id,
            extra={
                "organization_id": plan.subscription.organization_id,
                "seats_after": plan.seats_after,
            },
            exc_info=True,
        )


__all__ = ["SeatAdjustmentEngine", "normalize_preview_lines"]
