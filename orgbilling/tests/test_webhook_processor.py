import json
import logging
from dataclasses import replace
from datetime import timedelta

import pytest

from orgbilling.app.billing import (
    AccessStatus,
    AuthenticationError,
    BillingEventType,
    ConfigurationError,
    ConflictError,
    DuplicateEventError,
    InMemorySubscriptionStore,
    SubscriptionStatus,
    SubscriptionTier,
    ValidationError,
    WebhookEventProcessor,
    WebhookOutcomeStatus,
)
from orgbilling.app.billing.facts import GracePeriodExpired

from conftest import NOW

SIGNATURE = "valid:whsec_test"


def _payload(event_type, obj, event_id):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _checkout(event_id="evt_checkout", subscription_id="sub_1", organization_id="org-1", seats="7"):
    return _payload(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "mode": "subscription",
            "customer": "cus_1",
            "subscription": subscription_id,
            "metadata": {"organizationId": organization_id, "tier": "starter", "seats": seats},
        },
        event_id,
    )


def _invoice(event_type, event_id, amount=5000):
    amount_key = "amount_paid" if event_type == "invoice.payment_succeeded" else "amount_due"
    return _payload(
        event_type,
        {"id": "in_1", amount_key: amount, "currency": "gbp", "subscription": "sub_1", "attempt_count": 1},
        event_id,
    )


class FlakyStore(InMemorySubscriptionStore):
    def __init__(self, failures, error=ConflictError):
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    def save_transition(self, subscription, history_event, *, expected_version):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("Subscription was modified concurrently.")
        return super().save_transition(subscription, history_event, expected_version=expected_version)


def test_checkout_creates_subscription_and_replay_is_duplicate(processor, store, event_logger, invalidator):
    payload = _checkout()

    first = processor.process(payload, SIGNATURE)
    second = processor.process(payload, SIGNATURE)

    assert first.status == WebhookOutcomeStatus.PROCESSED
    assert second.status == WebhookOutcomeStatus.DUPLICATE
    assert second.reason == "already_processed"

    subscription = store.get_by_organization("org-1")
    assert subscription.tier == SubscriptionTier.STARTER
    assert subscription.seats_total == 7
    assert subscription.version == 1
    assert first.subscription_id == subscription.subscription_id
    assert len(store.list_history("org-1")) == 1
    assert len(event_logger.events) == 1
    assert invalidator.organization_ids == ["org-1"]


def test_second_checkout_for_recorded_subscription_is_duplicate(processor, store):
    processor.process(_checkout(), SIGNATURE)

    outcome = processor.process(_checkout(event_id="evt_checkout_retry"), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.DUPLICATE
    assert outcome.reason == "subscription_already_recorded"
    assert len(store.list_history("org-1")) == 1


def test_subscription_created_after_checkout_refreshes_existing_row(processor, store):
    processor.process(_checkout(), SIGNATURE)

    outcome = processor.process(
        _payload(
            "customer.subscription.created",
            {"id": "sub_1", "status": "active", "customer": "cus_1", "metadata": {"organizationId": "org-1"}},
            "evt_created",
        ),
        SIGNATURE,
    )

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    history = store.list_history("org-1")
    assert history[0].metadata == {"already_recorded": True}
    assert store.get_by_organization("org-1").seats_total == 7


def test_second_live_subscription_for_organization_is_ignored(processor, store):
    processor.process(_checkout(), SIGNATURE)

    outcome = processor.process(_checkout(event_id="evt_other", subscription_id="sub_2"), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.IGNORED
    assert outcome.reason == "organization_has_subscription"
    assert store.get_by_organization("org-1").provider_subscription_id == "sub_1"


def test_resubscribe_after_cancellation_replaces_row(processor, store, make_subscription, seed):
    seed(make_subscription(status=SubscriptionStatus.CANCELED, access_status=AccessStatus.READ_ONLY))

    outcome = processor.process(_checkout(event_id="evt_again", subscription_id="sub_2"), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    subscription = store.get_by_organization("org-1")
    assert subscription.provider_subscription_id == "sub_2"
    assert subscription.access_status == AccessStatus.ACTIVE
    assert subscription.version == 2


def test_payment_failure_then_recovery(processor, store, notifier, invalidator, make_subscription, seed):
    seed(make_subscription())

    failed = processor.process(_invoice("invoice.payment_failed", "evt_fail"), SIGNATURE)

    assert failed.status == WebhookOutcomeStatus.PROCESSED
    subscription = store.get_by_organization("org-1")
    assert subscription.access_status == AccessStatus.GRACE_PERIOD
    assert subscription.grace_period_ends_at == NOW + timedelta(days=28)
    assert notifier.payment_failures[0][1:] == (5000, "gbp", 1)

    paid = processor.process(_invoice("invoice.payment_succeeded", "evt_paid"), SIGNATURE)

    assert paid.status == WebhookOutcomeStatus.PROCESSED
    subscription = store.get_by_organization("org-1")
    assert subscription.access_status == AccessStatus.ACTIVE
    assert subscription.grace_period_ends_at is None
    assert invalidator.organization_ids == ["org-1", "org-1"]
    assert [event.event_type for event in store.list_history("org-1")] == [
        BillingEventType.INVOICE_PAYMENT_SUCCEEDED,
        BillingEventType.INVOICE_PAYMENT_FAILED,
    ]


def test_scheduled_downgrade_sets_pending_tier(processor, store, make_subscription, seed):
    seed(make_subscription(tier=SubscriptionTier.PROFESSIONAL, seats_included=20, seats_total=20))

    outcome = processor.process(
        _payload(
            "subscription_schedule.created",
            {
                "id": "sub_sched_1",
                "subscription": "sub_1",
                "phases": [{"start_date": 1743508800, "items": [{"price": "price_starter_monthly"}]}],
            },
            "evt_sched",
        ),
        SIGNATURE,
    )

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    pending = store.get_by_organization("org-1").pending_downgrade
    assert pending.tier == SubscriptionTier.STARTER


def test_event_for_unknown_subscription_is_ignored(processor, store):
    outcome = processor.process(_invoice("invoice.payment_failed", "evt_fail"), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.IGNORED
    assert outcome.reason == "subscription_not_found"
    assert not store.has_history_event("evt_fail")


def test_unhandled_event_type_is_acknowledged(processor):
    outcome = processor.process(_payload("customer.created", {"id": "cus_1"}, "evt_x"), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.IGNORED
    assert outcome.reason == "unhandled_event_type"


def test_missing_signature_is_rejected(processor, store):
    with pytest.raises(AuthenticationError):
        processor.process(_checkout(), None)

    assert store.get_by_organization("org-1") is None


def test_invalid_signature_is_rejected(processor, store):
    with pytest.raises(AuthenticationError):
        processor.process(_checkout(), "t=1,v1=forged")

    assert store.get_by_organization("org-1") is None


def test_invalid_json_is_rejected(processor):
    with pytest.raises(ValidationError):
        processor.process(b"not json", SIGNATURE)


def test_missing_webhook_secret_is_a_configuration_error(
    store, gateway, billing_config, notifier, event_logger, invalidator
):
    processor = WebhookEventProcessor(
        store=store,
        gateway=gateway,
        config=replace(billing_config, stripe_webhook_secret=None),
        notifier=notifier,
        event_logger=event_logger,
        entitlement_invalidator=invalidator,
    )

    with pytest.raises(ConfigurationError):
        processor.process(_checkout(), SIGNATURE)


def _processor_with(store, gateway, billing_config, notifier, event_logger, invalidator, sleeper):
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


def test_conflicting_write_is_retried_with_backoff(
    gateway, billing_config, notifier, event_logger, invalidator, sleeper
):
    store = FlakyStore(failures=2)
    processor = _processor_with(store, gateway, billing_config, notifier, event_logger, invalidator, sleeper)

    outcome = processor.process(_checkout(), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    assert sleeper.delays == [0.1, 0.2]
    assert store.calls == 3


def test_conflict_is_raised_after_max_attempts(
    gateway, billing_config, notifier, event_logger, invalidator, sleeper
):
    store = FlakyStore(failures=5)
    processor = _processor_with(store, gateway, billing_config, notifier, event_logger, invalidator, sleeper)

    with pytest.raises(ConflictError):
        processor.process(_checkout(), SIGNATURE)

    assert store.calls == 3
    assert sleeper.delays == [0.1, 0.2]
    assert event_logger.events == []


def test_concurrent_duplicate_is_acknowledged(
    gateway, billing_config, notifier, event_logger, invalidator, sleeper
):
    store = FlakyStore(failures=1, error=DuplicateEventError)
    processor = _processor_with(store, gateway, billing_config, notifier, event_logger, invalidator, sleeper)

    outcome = processor.process(_checkout(), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.DUPLICATE
    assert sleeper.delays == []


def test_failing_side_effect_does_not_undo_commit(processor, store, notifier, make_subscription, seed, caplog):
    seed(make_subscription())

    def _boom(*args, **kwargs):
        raise RuntimeError("mail server down")

    notifier.notify_payment_failure = _boom

    with caplog.at_level(logging.ERROR):
        outcome = processor.process(_invoice("invoice.payment_failed", "evt_fail"), SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    assert store.get_by_organization("org-1").in_grace_period
    assert "Billing side effect failed" in caplog.text


def test_grace_sweep_locks_expired_subscriptions(processor, store, notifier, make_subscription, seed):
    seed(
        make_subscription(
            status=SubscriptionStatus.PAST_DUE,
            access_status=AccessStatus.GRACE_PERIOD,
            grace_period_started_at=NOW - timedelta(days=29),
            grace_period_ends_at=NOW - timedelta(days=1),
        )
    )
    seed(
        make_subscription(
            subscription_id="22222222-2222-2222-2222-222222222222",
            organization_id="org-2",
            provider_subscription_id="sub_2",
            status=SubscriptionStatus.PAST_DUE,
            access_status=AccessStatus.GRACE_PERIOD,
            grace_period_started_at=NOW - timedelta(days=2),
            grace_period_ends_at=NOW + timedelta(days=26),
        )
    )

    outcomes = processor.expire_grace_periods()

    assert [outcome.status for outcome in outcomes] == [WebhookOutcomeStatus.PROCESSED]
    assert store.get_by_organization("org-1").access_status == AccessStatus.LOCKED
    assert store.get_by_organization("org-2").access_status == AccessStatus.GRACE_PERIOD
    assert [subscription.organization_id for subscription in notifier.grace_expired] == ["org-1"]
    assert processor.expire_grace_periods() == []


def test_grace_expiry_before_deadline_records_nothing(processor, store, make_subscription, seed):
    seed(
        make_subscription(
            status=SubscriptionStatus.PAST_DUE,
            access_status=AccessStatus.GRACE_PERIOD,
            grace_period_started_at=NOW,
            grace_period_ends_at=NOW + timedelta(days=28),
        )
    )

    outcome = processor.handle_fact(
        GracePeriodExpired(event_id="grace_expired:early", provider_subscription_id="sub_1")
    )

    assert outcome.status == WebhookOutcomeStatus.IGNORED
    assert outcome.reason == "no_change"
    assert store.list_history("org-1") == []


def test_replayed_payment_failure_keeps_original_grace_window(
    store, gateway, billing_config, notifier, event_logger, invalidator, sleeper, make_subscription, seed
):
    seed(make_subscription())
    now = [NOW]
    processor = WebhookEventProcessor(
        store=store,
        gateway=gateway,
        config=billing_config,
        notifier=notifier,
        event_logger=event_logger,
        entitlement_invalidator=invalidator,
        clock=lambda: now[0],
        sleep=sleeper,
    )
    payload = _invoice("invoice.payment_failed", "evt_fail")

    first = processor.process(payload, SIGNATURE)
    now[0] = NOW + timedelta(days=3)
    replay = processor.process(payload, SIGNATURE)

    assert first.status == WebhookOutcomeStatus.PROCESSED
    assert replay.status == WebhookOutcomeStatus.DUPLICATE
    subscription = store.get_by_organization("org-1")
    assert subscription.grace_period_started_at == NOW
    assert subscription.grace_period_ends_at == NOW + timedelta(days=28)
    assert len(store.list_history("org-1")) == 1
    assert len(notifier.payment_failures) == 1


class StuckOrganizationStore(InMemorySubscriptionStore):
    """Rejects every update to one organization's subscription."""

    def __init__(self, organization_id):
        super().__init__()
        self.organization_id = organization_id

    def save_transition(self, subscription, history_event, *, expected_version):
        if expected_version is not None and subscription.organization_id == self.organization_id:
            raise ConflictError("Subscription was modified concurrently.")
        return super().save_transition(subscription, history_event, expected_version=expected_version)


def test_grace_sweep_continues_past_a_failing_subscription(
    gateway, billing_config, notifier, event_logger, invalidator, sleeper, make_subscription, caplog
):
    store = StuckOrganizationStore("org-1")
    for organization_id, provider_subscription_id, subscription_id in (
        ("org-1", "sub_1", "11111111-1111-1111-1111-111111111111"),
        ("org-2", "sub_2", "22222222-2222-2222-2222-222222222222"),
    ):
        store.save_transition(
            make_subscription(
                subscription_id=subscription_id,
                organization_id=organization_id,
                provider_subscription_id=provider_subscription_id,
                status=SubscriptionStatus.PAST_DUE,
                access_status=AccessStatus.GRACE_PERIOD,
                grace_period_started_at=NOW - timedelta(days=29),
                grace_period_ends_at=NOW - timedelta(days=1),
            ),
            None,
            expected_version=None,
        )
    processor = _processor_with(store, gateway, billing_config, notifier, event_logger, invalidator, sleeper)

    with caplog.at_level(logging.ERROR, logger="orgbilling.app.billing.webhooks"):
        outcomes = processor.expire_grace_periods()

    assert [outcome.status for outcome in outcomes] == [WebhookOutcomeStatus.PROCESSED]
    assert store.get_by_organization("org-2").access_status == AccessStatus.LOCKED
    assert store.get_by_organization("org-1").access_status == AccessStatus.GRACE_PERIOD
    assert [subscription.organization_id for subscription in notifier.grace_expired] == ["org-2"]
    assert "Could not expire grace period for sub_1" in caplog.text
