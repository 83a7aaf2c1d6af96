"""Persistence for subscriptions and billing history."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import ConflictError, DuplicateEventError
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


class SubscriptionStore(Protocol):
    """Persistence operations required by the billing engines."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        ...

    def get_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        ...

    def has_history_event(self, provider_event_id: str) -> bool:
        ...

    def save_transition(
        self,
        subscription: Subscription,
        history_event: Optional[BillingHistoryEvent],
        *,
        expected_version: Optional[int],
    ) -> Subscription:
        """Persist a subscription and its history row atomically.

        ``expected_version`` is ``None`` for a new subscription. Raises
        :class:`ConflictError` when the stored version moved on and
        :class:`DuplicateEventError` when the history row already exists.
        """

    def list_history(
        self,
        organization_id: str,
        *,
        event_type: Optional[BillingEventType] = None,
        limit: int = 25,
    ) -> Sequence[BillingHistoryEvent]:
        ...

    def list_history_for_subscription(
        self,
        provider_subscription_id: str,
        *,
        limit: int = 25,
    ) -> Sequence[BillingHistoryEvent]:
        ...

    def list_expired_grace_periods(self, now: datetime) -> Sequence[Subscription]:
        ...


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_subscription(row: dict) -> Subscription:
    pending = None
    if row.get("pending_downgrade_tier"):
        pending = PendingDowngrade(
            tier=SubscriptionTier(row["pending_downgrade_tier"]),
            effective_date=row["pending_downgrade_effective_date"],
        )
    upgraded_from = row.get("upgraded_from")
    return Subscription(
        subscription_id=str(row["subscription_id"]),
        organization_id=row["organization_id"],
        provider_customer_id=row["provider_customer_id"],
        provider_subscription_id=row["provider_subscription_id"],
        tier=SubscriptionTier(row["tier"]),
        status=SubscriptionStatus(row["status"]),
        billing_interval=BillingInterval(row["billing_interval"]),
        seats_included=int(row["seats_included"]),
        seats_total=int(row["seats_total"]),
        seats_active=int(row.get("seats_active") or 0),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        access_status=AccessStatus(row["access_status"]),
        grace_period_started_at=row.get("grace_period_started_at"),
        grace_period_ends_at=row.get("grace_period_ends_at"),
        pending_downgrade=pending,
        upgraded_from=SubscriptionTier(upgraded_from) if upgraded_from else None,
        upgraded_at=row.get("upgraded_at"),
        upgrade_trigger_feature=row.get("upgrade_trigger_feature"),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_history_event(row: dict) -> BillingHistoryEvent:
    return BillingHistoryEvent(
        organization_id=row["organization_id"],
        subscription_id=row["subscription_id"],
        event_type=BillingEventType(row["event_type"]),
        provider_event_id=row["provider_event_id"],
        status=BillingEventStatus(row["status"]),
        description=row["description"],
        amount=row.get("amount"),
        currency=row.get("currency"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _subscription_params(subscription: Subscription) -> dict:
    pending = subscription.pending_downgrade
    return {
        "subscription_id": subscription.subscription_id,
        "organization_id": subscription.organization_id,
        "provider_customer_id": subscription.provider_customer_id,
        "provider_subscription_id": subscription.provider_subscription_id,
        "tier": subscription.tier.value,
        "status": subscription.status.value,
        "billing_interval": subscription.billing_interval.value,
        "seats_included": subscription.seats_included,
        "seats_total": subscription.seats_total,
        "seats_active": subscription.seats_active,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "access_status": subscription.access_status.value,
        "grace_period_started_at": subscription.grace_period_started_at,
        "grace_period_ends_at": subscription.grace_period_ends_at,
        "pending_downgrade_tier": pending.tier.value if pending else None,
        "pending_downgrade_effective_date": pending.effective_date if pending else None,
        "upgraded_from": subscription.upgraded_from.value if subscription.upgraded_from else None,
        "upgraded_at": subscription.upgraded_at,
        "upgrade_trigger_feature": subscription.upgrade_trigger_feature,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


_SUBSCRIPTION_COLUMNS = (
    "subscription_id",
    "organization_id",
    "provider_customer_id",
    "provider_subscription_id",
    "tier",
    "status",
    "billing_interval",
    "seats_included",
    "seats_total",
    "seats_active",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "access_status",
    "grace_period_started_at",
    "grace_period_ends_at",
    "pending_downgrade_tier",
    "pending_downgrade_effective_date",
    "upgraded_from",
    "upgraded_at",
    "upgrade_trigger_feature",
    "created_at",
    "updated_at",
)

_INSERT_SUBSCRIPTION_SQL = """
    INSERT INTO billing_subscriptions ({columns}, version)
    VALUES ({placeholders}, 1)
    ON CONFLICT DO NOTHING
    RETURNING *
""".format(
    columns=", ".join(_SUBSCRIPTION_COLUMNS),
    placeholders=", ".join(f"%({column})s" for column in _SUBSCRIPTION_COLUMNS),
)

_UPDATE_SUBSCRIPTION_SQL = """
    UPDATE billing_subscriptions
    SET {assignments}, version = version + 1
    WHERE subscription_id = %(subscription_id)s AND version = %(expected_version)s
    RETURNING *
""".format(
    assignments=", ".join(
        f"{column} = %({column})s"
        for column in _SUBSCRIPTION_COLUMNS
        if column not in ("subscription_id", "created_at")
    ),
)


class PostgresSubscriptionStore:
    """Concrete store persisting subscriptions and history in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def _fetch_subscription(self, where: str, value: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT * FROM billing_subscriptions WHERE {where} = %s", (value,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("subscription_id", subscription_id)

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("organization_id", organization_id)

    def get_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("provider_subscription_id", provider_subscription_id)

    def has_history_event(self, provider_event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_history WHERE provider_event_id = %s",
                (provider_event_id,),
            )
            return cursor.fetchone() is not None

    def save_transition(
        self,
        subscription: Subscription,
        history_event: Optional[BillingHistoryEvent],
        *,
        expected_version: Optional[int],
    ) -> Subscription:
        params = _subscription_params(subscription)
        with self._cursor() as cursor:
            if expected_version is None:
                cursor.execute(_INSERT_SUBSCRIPTION_SQL, params)
            else:
                cursor.execute(
                    _UPDATE_SUBSCRIPTION_SQL,
                    {**params, "expected_version": expected_version},
                )
            row = cursor.fetchone()
            if not row:
                raise ConflictError(
                    "Subscription was modified concurrently.",
                    detail={"subscription_id": subscription.subscription_id},
                )

            if history_event is not None:
                cursor.execute(
                    """
                    INSERT INTO billing_history (
                        organization_id,
                        subscription_id,
                        event_type,
                        provider_event_id,
                        status,
                        description,
                        amount,
                        currency,
                        metadata,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (provider_event_id) DO NOTHING
                    """,
                    (
                        history_event.organization_id,
                        history_event.subscription_id,
                        history_event.event_type.value,
                        history_event.provider_event_id,
                        history_event.status.value,
                        history_event.description,
                        history_event.amount,
                        history_event.currency,
                        psycopg2.extras.Json(history_event.metadata),
                        history_event.created_at,
                    ),
                )
                if cursor.rowcount == 0:
                    # Raising rolls back the subscription write above.
                    raise DuplicateEventError(
                        "Billing event already recorded.",
                        detail={"provider_event_id": history_event.provider_event_id},
                    )
            return _row_to_subscription(row)

    def list_history(
        self,
        organization_id: str,
        *,
        event_type: Optional[BillingEventType] = None,
        limit: int = 25,
    ) -> List[BillingHistoryEvent]:
        query = "SELECT * FROM billing_history WHERE organization_id = %s"
        params: list = [organization_id]
        if event_type is not None:
            query += " AND event_type = %s"
            params.append(event_type.value)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall() or []
            return [_row_to_history_event(row) for row in rows]

    def list_history_for_subscription(
        self,
        provider_subscription_id: str,
        *,
        limit: int = 25,
    ) -> List[BillingHistoryEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM billing_history
                WHERE subscription_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (provider_subscription_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_history_event(row) for row in rows]

    def list_expired_grace_periods(self, now: datetime) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM billing_subscriptions
                WHERE access_status = %s AND grace_period_ends_at <= %s
                ORDER BY grace_period_ends_at
                """,
                (AccessStatus.GRACE_PERIOD.value, now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]


class InMemorySubscriptionStore:
    """Thread-safe in-memory store suitable for tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._history: List[BillingHistoryEvent] = []
        self._event_ids: set = set()

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.organization_id == organization_id:
                    return subscription
            return None

    def get_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.provider_subscription_id == provider_subscription_id:
                    return subscription
            return None

    def has_history_event(self, provider_event_id: str) -> bool:
        with self._lock:
            return provider_event_id in self._event_ids

    def save_transition(
        self,
        subscription: Subscription,
        history_event: Optional[BillingHistoryEvent],
        *,
        expected_version: Optional[int],
    ) -> Subscription:
        with self._lock:
            stored = self._subscriptions.get(subscription.subscription_id)
            if expected_version is None:
                clash = stored is not None or any(
                    existing.organization_id == subscription.organization_id
                    or existing.provider_subscription_id == subscription.provider_subscription_id
                    for existing in self._subscriptions.values()
                )
                if clash:
                    raise ConflictError(
                        "Subscription already exists.",
                        detail={"organization_id": subscription.organization_id},
                    )
                new_version = 1
            else:
                if stored is None or stored.version != expected_version:
                    raise ConflictError(
                        "Subscription was modified concurrently.",
                        detail={"subscription_id": subscription.subscription_id},
                    )
                new_version = expected_version + 1

            if history_event is not None and history_event.provider_event_id in self._event_ids:
                raise DuplicateEventError(
                    "Billing event already recorded.",
                    detail={"provider_event_id": history_event.provider_event_id},
                )

            saved = subscription.model_copy(update={"version": new_version})
            self._subscriptions[saved.subscription_id] = saved
            if history_event is not None:
                self._history.append(history_event)
                self._event_ids.add(history_event.provider_event_id)
            return saved

    def list_history(
        self,
        organization_id: str,
        *,
        event_type: Optional[BillingEventType] = None,
        limit: int = 25,
    ) -> List[BillingHistoryEvent]:
        with self._lock:
            rows = [
                event
                for event in self._history
                if event.organization_id == organization_id
                and (event_type is None or event.event_type == event_type)
            ]
        return _newest_first(rows)[:limit]

    def list_history_for_subscription(
        self,
        provider_subscription_id: str,
        *,
        limit: int = 25,
    ) -> List[BillingHistoryEvent]:
        with self._lock:
            rows = [event for event in self._history if event.subscription_id == provider_subscription_id]
        return _newest_first(rows)[:limit]

    def list_expired_grace_periods(self, now: datetime) -> List[Subscription]:
        with self._lock:
            expired = [
                subscription
                for subscription in self._subscriptions.values()
                if subscription.access_status == AccessStatus.GRACE_PERIOD
                and subscription.grace_period_ends_at is not None
                and subscription.grace_period_ends_at <= now
            ]
        return sorted(expired, key=lambda subscription: subscription.grace_period_ends_at)

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()
            self._history.clear()
            self._event_ids.clear()


def _newest_first(rows: List[BillingHistoryEvent]) -> List[BillingHistoryEvent]:
    # Later inserts sort first among rows sharing a timestamp.
    indexed = list(enumerate(rows))
    indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
    return [row for _, row in indexed]


__all__ = [
    "InMemorySubscriptionStore",
    "PostgresSubscriptionStore",
    "SubscriptionStore",
    "managed_connection",
]
