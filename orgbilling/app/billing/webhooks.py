"""Idempotent processing of billing provider webhooks."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict

from .collaborators import (
    BillingEventLogger,
    BillingNotifier,
    EntitlementInvalidator,
    dispatch_side_effects,
)
from .config import BillingConfig
from .exceptions import AuthenticationError, ConflictError, DuplicateEventError
from .facts import (
    CREATION_FACTS,
    Fact,
    GracePeriodExpired,
    IgnoredEvent,
    ProviderEventType,
    SubscriptionFact,
    decode_event,
)
from .gateway import BillingGateway
from .models import SubscriptionStatus
from .repository import SubscriptionStore
from .state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)


class WebhookOutcomeStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class WebhookOutcome(BaseModel):
    """Acknowledgement returned for every accepted event."""

    status: WebhookOutcomeStatus
    event_id: str
    event_type: str
    reason: Optional[str] = None
    subscription_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class WebhookEventProcessor:
    """Verifies, decodes and applies provider events exactly once."""

    store: SubscriptionStore
    gateway: BillingGateway
    config: BillingConfig
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    entitlement_invalidator: EntitlementInvalidator
    clock: Callable[[], datetime] = _utcnow
    sleep: Callable[[float], None] = time.sleep
    state_machine: SubscriptionStateMachine = field(init=False)

    def __post_init__(self) -> None:
        self.state_machine = SubscriptionStateMachine(self.config)

    def process(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Handle one raw webhook delivery."""

        if not signature:
            logger.warning("Webhook rejected: missing signature header")
            raise AuthenticationError("Missing webhook signature.")

        secret = self.config.require_webhook_secret()
        try:
            event = self.gateway.verify_webhook_signature(payload, signature, secret)
        except AuthenticationError:
            logger.warning("Webhook rejected: signature verification failed")
            raise

        fact = decode_event(event)
        logger.info(
            "Webhook received %s (%s)",
            fact.event_type,
            fact.event_id,
            extra={"event_id": fact.event_id, "event_type": fact.event_type},
        )
        return self.handle_fact(fact)

    def handle_fact(self, fact: Fact, *, now: Optional[datetime] = None) -> WebhookOutcome:
        if isinstance(fact, IgnoredEvent):
            logger.info(
                "Ignoring webhook %s (%s): %s",
                fact.event_type,
                fact.event_id,
                fact.reason,
            )
            return self._outcome(fact, WebhookOutcomeStatus.IGNORED, reason=fact.reason)

        if self.store.has_history_event(fact.event_id):
            logger.info("Duplicate webhook %s acknowledged", fact.event_id)
            return self._outcome(fact, WebhookOutcomeStatus.DUPLICATE, reason="already_processed")

        attempts = max(1, self.config.conflict_max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._commit(fact, now)
            except DuplicateEventError:
                logger.info("Concurrent delivery of %s already committed", fact.event_id)
                return self._outcome(fact, WebhookOutcomeStatus.DUPLICATE, reason="already_processed")
            except ConflictError:
                if attempt >= attempts:
                    logger.error(
                        "Giving up on %s after %s conflicting attempts",
                        fact.event_id,
                        attempts,
                        extra={"provider_subscription_id": fact.provider_subscription_id},
                    )
                    raise
                delay = self.config.conflict_backoff_seconds * (2 ** (attempt - 1))
                logger.info(
                    "Write conflict on %s, retrying in %.3fs (attempt %s/%s)",
                    fact.event_id,
                    delay,
                    attempt,
                    attempts,
                )
                self.sleep(delay)

    def expire_grace_periods(self, now: Optional[datetime] = None) -> List[WebhookOutcome]:
        """Lock every subscription whose grace window has elapsed."""

        moment = now or self.clock()
        outcomes = []
        for subscription in self.store.list_expired_grace_periods(moment):
            ends_at = subscription.grace_period_ends_at
            fact = GracePeriodExpired(
                event_id=f"grace_expired:{subscription.subscription_id}:{ends_at.isoformat()}",
                provider_subscription_id=subscription.provider_subscription_id,
            )
            try:
                outcomes.append(self.handle_fact(fact, now=moment))
            except Exception:
                # The remaining subscriptions still lock; this one is retried on the next sweep.
                logger.exception(
                    "Could not expire grace period for %s",
                    subscription.provider_subscription_id,
                    extra={"organization_id": subscription.organization_id},
                )
        if outcomes:
            logger.info("Grace period sweep processed %s subscriptions", len(outcomes))
        return outcomes

    def _commit(self, fact: SubscriptionFact, now: Optional[datetime]) -> WebhookOutcome:
        current = self.store.get_by_provider_subscription_id(fact.provider_subscription_id)

        if isinstance(fact, CREATION_FACTS):
            if current is not None and fact.event_type == ProviderEventType.CHECKOUT_SESSION_COMPLETED.value:
                return self._outcome(
                    fact, WebhookOutcomeStatus.DUPLICATE, reason="subscription_already_recorded"
                )
            if current is None:
                current = self.store.get_by_organization(fact.organization_id)
                if current is not None and current.status != SubscriptionStatus.CANCELED:
                    logger.warning(
                        "Organization %s already has live subscription %s; ignoring %s",
                        fact.organization_id,
                        current.provider_subscription_id,
                        fact.provider_subscription_id,
                    )
                    return self._outcome(
                        fact,
                        WebhookOutcomeStatus.IGNORED,
                        reason="organization_has_subscription",
                    )
        elif current is None:
            logger.info(
                "No subscription for %s; ignoring %s",
                fact.provider_subscription_id,
                fact.event_id,
            )
            return self._outcome(fact, WebhookOutcomeStatus.IGNORED, reason="subscription_not_found")

        transition = self.state_machine.apply(current, fact, now=now or self.clock())
        if transition.history_event is None:
            return self._outcome(fact, WebhookOutcomeStatus.IGNORED, reason="no_change")

        saved = self.store.save_transition(
            transition.subscription,
            transition.history_event,
            expected_version=current.version if current is not None else None,
        )

        self.event_logger.log(transition.history_event)
        dispatch_side_effects(
            transition.side_effects,
            notifier=self.notifier,
            entitlement_invalidator=self.entitlement_invalidator,
        )
        return self._outcome(
            fact, WebhookOutcomeStatus.PROCESSED, subscription_id=saved.subscription_id
        )

    @staticmethod
    def _outcome(
        fact: Fact,
        status: WebhookOutcomeStatus,
        *,
        reason: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> WebhookOutcome:
        return WebhookOutcome(
            status=status,
            event_id=fact.event_id,
            event_type=fact.event_type,
            reason=reason,
            subscription_id=subscription_id,
        )


__all__ = ["WebhookEventProcessor", "WebhookOutcome", "WebhookOutcomeStatus"]
