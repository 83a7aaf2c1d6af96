"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from ... import app_context
from ..billing import (
    AuthenticationError,
    BillingError,
    BillingEventType,
    NotFoundError,
    SeatChangeDirection,
    ValidationError,
)
from ..schemas.billing import (
    BillingHistoryItem,
    BillingHistoryResponse,
    SeatApplyResponse,
    SeatChangeRequest,
    SeatPreviewResponse,
    SubscriptionResponse,
    WebhookAcknowledgement,
)
from ..services.billing import get_seat_engine, get_subscription_store, get_webhook_processor

logger = logging.getLogger(__name__)

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")

ROLE_PERMISSIONS = {
    "seats:add": frozenset({"owner", "admin"}),
    "seats:remove": frozenset({"owner"}),
    "billing:view": frozenset({"owner", "admin"}),
}


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _require_permission(user: Any, permission: str) -> None:
    if getattr(user, "role", None) not in ROLE_PERMISSIONS[permission]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "access_denied", "message": "You do not have permission to manage billing."},
        )


def _seat_permission(mode: SeatChangeDirection) -> str:
    return "seats:add" if mode == SeatChangeDirection.ADD else "seats:remove"


router = APIRouter(prefix="/api/billing", tags=["billing"])
webhook_router = APIRouter(tags=["billing"])


@webhook_router.post("/webhooks/billing", response_model=WebhookAcknowledgement)
async def receive_billing_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAcknowledgement:
    # Signatures cover the exact bytes, so read the body before any parsing.
    payload = await request.body()
    processor = get_webhook_processor()
    try:
        outcome = await run_in_threadpool(processor.process, payload, stripe_signature)
    except (AuthenticationError, ValidationError) as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Billing webhook processing failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "webhook_processing_failed", "message": "Webhook handler failed."},
        ) from exc
    return WebhookAcknowledgement.from_outcome(outcome)


@router.post("/seats/preview", response_model=SeatPreviewResponse)
def preview_seat_change(
    payload: SeatChangeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SeatPreviewResponse:
    _require_permission(current_user, _seat_permission(payload.mode))
    engine = get_seat_engine()
    try:
        preview = engine.preview_seat_change(
            str(current_user.organization_id),
            payload.mode,
            payload.seats,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SeatPreviewResponse.from_preview(preview)


@router.post("/seats/apply", response_model=SeatApplyResponse)
def apply_seat_change(
    payload: SeatChangeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SeatApplyResponse:
    _require_permission(current_user, _seat_permission(payload.mode))
    engine = get_seat_engine()
    try:
        result = engine.apply_seat_change(
            str(current_user.organization_id),
            payload.mode,
            payload.seats,
            actor_id=str(current_user.id),
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SeatApplyResponse.from_result(result)


@router.get("/subscription", response_model=SubscriptionResponse)
def get_subscription(
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    _require_permission(current_user, "billing:view")
    organization_id = str(current_user.organization_id)
    subscription = get_subscription_store().get_by_organization(organization_id)
    if subscription is None:
        raise NotFoundError("Subscription not found.").to_http_exception()
    usage = get_seat_engine().seat_usage(organization_id)
    return SubscriptionResponse.from_subscription(subscription, usage)


@router.get("/history", response_model=BillingHistoryResponse)
def list_billing_history(
    limit: int = Query(25, ge=1, le=100),
    event_type: Optional[BillingEventType] = Query(None, alias="eventType"),
    *,
    current_user=Depends(_get_current_user),
) -> BillingHistoryResponse:
    _require_permission(current_user, "billing:view")
    events = get_subscription_store().list_history(
        str(current_user.organization_id),
        event_type=event_type,
        limit=limit,
    )
    return BillingHistoryResponse(events=[BillingHistoryItem.from_event(event) for event in events])


__all__ = ["ROLE_PERMISSIONS", "router", "webhook_router"]
