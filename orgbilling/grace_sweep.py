"""Scheduler that locks subscriptions whose grace period has run out."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Dict, List, Optional

from orgbilling.app.billing import WebhookOutcome, WebhookOutcomeStatus
from orgbilling.app.services.billing import get_billing_config, get_webhook_processor

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_GraceSweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "subscriptions_locked": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def run_grace_sweep(*, now: Optional[datetime] = None) -> List[WebhookOutcome]:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS["runs"]) + 1
        _SWEEP_METRICS["last_run_at"] = current_time

    try:
        outcomes = get_webhook_processor().expire_grace_periods(now=current_time)
    except Exception as exc:
        with _metrics_lock:
            _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS["failures"]) + 1
            _SWEEP_METRICS["last_error"] = f"{type(exc).__name__}: {exc}"
        logger.exception("Grace period sweep failed")
        raise

    locked = sum(1 for outcome in outcomes if outcome.status == WebhookOutcomeStatus.PROCESSED)
    with _metrics_lock:
        _SWEEP_METRICS["subscriptions_locked"] = int(_SWEEP_METRICS["subscriptions_locked"]) + locked
        _SWEEP_METRICS["last_success_at"] = current_time
        _SWEEP_METRICS["last_error"] = None
    logger.info(
        "Grace period sweep completed",
        extra={"candidates": len(outcomes), "subscriptions_locked": locked},
    )
    return outcomes


class _GraceSweepWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="grace-period-sweep")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_grace_sweep()
            except Exception:
                # Logged inside run_grace_sweep; the next run retries.
                pass
            if self._stop_event.wait(self._interval):
                break


def _seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    current = now or datetime.now(timezone.utc)
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return max((target - current).total_seconds(), 0.0)


def start_grace_sweep_scheduler() -> None:
    global _worker

    config = get_billing_config()
    if not config.grace_sweep_enabled:
        logger.info("Grace period sweep disabled")
        return
    with _scheduler_lock:
        if _worker is not None:
            return
        delay = _seconds_until(config.grace_sweep_hour_utc)
        _worker = _GraceSweepWorker(initial_delay=delay, interval=24 * 60 * 60)
        _worker.start()
        logger.info(
            "Grace period sweep scheduler started",
            extra={"initial_delay_seconds": round(delay, 2)},
        )


def shutdown_grace_sweep_scheduler() -> None:
    global _worker

    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Grace period sweep scheduler stopped")


def get_grace_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS["last_run_at"] else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS["last_success_at"] else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "subscriptions_locked": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )
