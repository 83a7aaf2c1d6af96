"""Shared fakes for the billing test-suite."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest

from orgbilling.app.billing import (
    AuthenticationError,
    BillingConfig,
    BillingEventLogger,
    BillingHistoryEvent,
    BillingNotifier,
    EntitlementInvalidator,
    InMemorySubscriptionStore,
    MemberDirectory,
    PriceIds,
    SeatAdjustmentEngine,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookEventProcessor,
)
from orgbilling.app.billing.gateway import BillingGateway, decode_payload

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

PRICES = PriceIds(
    starter_monthly="price_starter_monthly",
    starter_annual="price_starter_annual",
    professional_monthly="price_pro_monthly",
    professional_annual="price_pro_annual",
    additional_seat="price_seat",
)


class FakeGateway(BillingGateway):
    """In-memory provider keyed by provider subscription id."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.preview_invoice: Dict[str, Any] = {"currency": "gbp", "lines": {"data": []}}
        self.invoices: Dict[str, List[Dict[str, Any]]] = {"open": [], "draft": []}
        self.updates: List[tuple] = []
        self.previews: List[Dict[str, Any]] = []
        self.created_invoices: List[str] = []
        self.finalized: List[str] = []
        self.paid: List[str] = []
        self.update_error: Optional[Exception] = None
        self.apply_before_error = False

    def add_subscription(
        self,
        provider_subscription_id: str,
        *,
        base_price: str = "price_starter_monthly",
        seat_quantity: Optional[int] = None,
    ) -> Dict[str, Any]:
        items = [{"id": "si_base", "price": {"id": base_price}, "quantity": 1}]
        if seat_quantity is not None:
            items.append({"id": "si_seat", "price": {"id": "price_seat"}, "quantity": seat_quantity})
        subscription = {"id": provider_subscription_id, "items": {"data": items}}
        self.subscriptions[provider_subscription_id] = subscription
        return subscription

    def retrieve_subscription(self, provider_subscription_id: str) -> Dict[str, Any]:
        return json.loads(json.dumps(self.subscriptions[provider_subscription_id]))

    def update_subscription(
        self,
        provider_subscription_id: str,
        *,
        items: Sequence[Mapping[str, Any]],
        proration_behavior: str = "create_prorations",
    ) -> Dict[str, Any]:
        self.updates.append((provider_subscription_id, [dict(item) for item in items], proration_behavior))
        if self.update_error is not None and not self.apply_before_error:
            raise self.update_error
        self._apply_items(provider_subscription_id, items)
        if self.update_error is not None:
            raise self.update_error
        return self.retrieve_subscription(provider_subscription_id)

    def _apply_items(self, provider_subscription_id: str, items: Sequence[Mapping[str, Any]]) -> None:
        stored = self.subscriptions[provider_subscription_id]["items"]["data"]
        for item in items:
            if "id" in item:
                for existing in stored:
                    if existing["id"] == item["id"]:
                        existing["quantity"] = item["quantity"]
            else:
                stored.append(
                    {"id": "si_seat", "price": {"id": item["price"]}, "quantity": item["quantity"]}
                )

    def create_preview_invoice(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        items: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        self.previews.append(
            {"customer_id": customer_id, "subscription_id": subscription_id, "items": list(items)}
        )
        return self.preview_invoice

    def list_invoices(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        status: str,
        limit: int = 1,
    ) -> List[Dict[str, Any]]:
        return self.invoices.get(status, [])[:limit]

    def create_invoice(self, *, customer_id: str, subscription_id: str) -> Dict[str, Any]:
        invoice = {"id": "in_created", "status": "draft", "collection_method": "charge_automatically"}
        self.created_invoices.append(invoice["id"])
        return invoice

    def finalize_invoice(self, invoice_id: str) -> Dict[str, Any]:
        self.finalized.append(invoice_id)
        return {"id": invoice_id, "status": "open", "collection_method": "charge_automatically"}

    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        self.paid.append(invoice_id)
        return {"id": invoice_id, "status": "paid", "collection_method": "charge_automatically"}

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        if signature != f"valid:{secret}":
            raise AuthenticationError("Invalid webhook signature.")
        return decode_payload(payload)


class RecordingNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.payment_failures: List[tuple] = []
        self.grace_expired: List[Subscription] = []

    def notify_payment_failure(
        self,
        subscription: Subscription,
        *,
        amount: int,
        currency: str,
        attempt_count: int,
    ) -> None:
        self.payment_failures.append((subscription, amount, currency, attempt_count))

    def notify_grace_period_expired(self, subscription: Subscription) -> None:
        self.grace_expired.append(subscription)


class RecordingEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingHistoryEvent] = []

    def log(self, event: BillingHistoryEvent) -> None:
        self.events.append(event)


class RecordingInvalidator(EntitlementInvalidator):
    def __init__(self) -> None:
        self.organization_ids: List[str] = []

    def invalidate_organization(self, organization_id: str) -> None:
        self.organization_ids.append(organization_id)


class FakeDirectory(MemberDirectory):
    def __init__(self) -> None:
        self.active: Dict[str, int] = {}

    def count_active_members(self, organization_id: str) -> int:
        return self.active.get(organization_id, 0)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        prices=PRICES,
        conflict_max_attempts=3,
        conflict_backoff_seconds=0.1,
    )


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def invalidator() -> RecordingInvalidator:
    return RecordingInvalidator()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def processor(store, gateway, billing_config, notifier, event_logger, invalidator, sleeper):
    return WebhookEventProcessor(
        store=store,
        gateway=gateway,
        config=billing_config,
        notifier=notifier,
        event_logger=event_logger,
        entitlement_invalidator=invalidator,
        clock=lambda: NOW,
        sleep=sleeper,
    )


@pytest.fixture
def seat_engine(store, gateway, billing_config, event_logger, invalidator, directory, sleeper):
    return SeatAdjustmentEngine(
        store=store,
        gateway=gateway,
        config=billing_config,
        event_logger=event_logger,
        entitlement_invalidator=invalidator,
        directory=directory,
        clock=lambda: NOW,
        sleep=sleeper,
    )


@pytest.fixture
def make_subscription():
    def _make(**overrides: Any) -> Subscription:
        values: Dict[str, Any] = {
            "subscription_id": "11111111-1111-1111-1111-111111111111",
            "organization_id": "org-1",
            "provider_customer_id": "cus_1",
            "provider_subscription_id": "sub_1",
            "tier": SubscriptionTier.STARTER,
            "status": SubscriptionStatus.ACTIVE,
            "seats_included": 5,
            "seats_total": 5,
            "current_period_start": NOW - timedelta(days=10),
            "current_period_end": NOW + timedelta(days=20),
            "created_at": NOW - timedelta(days=10),
            "updated_at": NOW - timedelta(days=10),
        }
        values.update(overrides)
        return Subscription(**values)

    return _make


@pytest.fixture
def seed(store):
    """Insert a subscription into the in-memory store and return the stored copy."""

    def _seed(subscription: Subscription) -> Subscription:
        return store.save_transition(subscription, None, expected_version=None)

    return _seed
