from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from orgbilling import grace_sweep
from orgbilling.app.billing import AccessStatus, SubscriptionStatus, WebhookOutcome, WebhookOutcomeStatus

from conftest import NOW


def _outcome(status):
    return WebhookOutcome(event_id="grace_expired:1", event_type="grace_period.expired", status=status)


def test_run_grace_sweep_updates_metrics(monkeypatch):
    grace_sweep._reset_metrics_for_testing()
    outcomes = [_outcome(WebhookOutcomeStatus.PROCESSED), _outcome(WebhookOutcomeStatus.DUPLICATE)]
    calls = []

    def fake_expire(now=None):
        calls.append(now)
        return outcomes

    monkeypatch.setattr(
        grace_sweep,
        "get_webhook_processor",
        lambda: SimpleNamespace(expire_grace_periods=fake_expire),
    )

    result = grace_sweep.run_grace_sweep(now=NOW)

    assert result == outcomes
    assert calls == [NOW]
    metrics = grace_sweep.get_grace_sweep_metrics()
    assert metrics["runs"] == 1
    assert metrics["subscriptions_locked"] == 1
    assert metrics["failures"] == 0
    assert metrics["last_run_at"] == NOW.isoformat()
    assert metrics["last_success_at"] == NOW.isoformat()
    assert metrics["last_error"] is None


def test_run_grace_sweep_records_failure(monkeypatch):
    grace_sweep._reset_metrics_for_testing()

    def fake_expire(now=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(
        grace_sweep,
        "get_webhook_processor",
        lambda: SimpleNamespace(expire_grace_periods=fake_expire),
    )

    with pytest.raises(RuntimeError):
        grace_sweep.run_grace_sweep(now=NOW)

    metrics = grace_sweep.get_grace_sweep_metrics()
    assert metrics["failures"] == 1
    assert metrics["last_success_at"] is None
    assert metrics["last_error"] == "RuntimeError: database unavailable"


def test_run_grace_sweep_locks_expired_subscription(monkeypatch, processor, make_subscription, seed, store):
    grace_sweep._reset_metrics_for_testing()
    seed(
        make_subscription(
            status=SubscriptionStatus.PAST_DUE,
            access_status=AccessStatus.GRACE_PERIOD,
            grace_period_started_at=NOW - timedelta(days=29),
            grace_period_ends_at=NOW - timedelta(days=1),
        )
    )
    monkeypatch.setattr(grace_sweep, "get_webhook_processor", lambda: processor)

    grace_sweep.run_grace_sweep(now=NOW)

    assert store.get_by_organization("org-1").access_status == AccessStatus.LOCKED
    assert grace_sweep.get_grace_sweep_metrics()["subscriptions_locked"] == 1


def test_seconds_until_later_today():
    now = datetime(2025, 3, 1, 1, 30, tzinfo=timezone.utc)

    assert grace_sweep._seconds_until(3, now=now) == 90 * 60


def test_seconds_until_rolls_over_to_tomorrow():
    now = datetime(2025, 3, 1, 3, 0, tzinfo=timezone.utc)

    assert grace_sweep._seconds_until(3, now=now) == 24 * 60 * 60


def test_disabled_sweep_does_not_start(monkeypatch):
    monkeypatch.setattr(
        grace_sweep,
        "get_billing_config",
        lambda: SimpleNamespace(grace_sweep_enabled=False, grace_sweep_hour_utc=3),
    )

    grace_sweep.start_grace_sweep_scheduler()

    assert grace_sweep._worker is None
