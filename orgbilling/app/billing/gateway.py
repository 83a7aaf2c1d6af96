"""Billing gateway abstraction and the Stripe implementation."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

import stripe

from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    ExternalServiceError,
    GatewayTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PRORATION_BEHAVIOR = "create_prorations"


class BillingGateway(Protocol):
    """Operations the billing subsystem needs from the payment provider.

    Every call returns plain dictionaries shaped like the provider's API
    objects. Implementations raise :class:`ExternalServiceError` (or
    :class:`GatewayTimeoutError`) on provider failures.
    """

    def retrieve_subscription(self, provider_subscription_id: str) -> Dict[str, Any]:
        ...

    def update_subscription(
        self,
        provider_subscription_id: str,
        *,
        items: Sequence[Mapping[str, Any]],
        proration_behavior: str = PRORATION_BEHAVIOR,
    ) -> Dict[str, Any]:
        ...

    def create_preview_invoice(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        items: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        ...

    def list_invoices(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        status: str,
        limit: int = 1,
    ) -> List[Dict[str, Any]]:
        ...

    def create_invoice(self, *, customer_id: str, subscription_id: str) -> Dict[str, Any]:
        ...

    def finalize_invoice(self, invoice_id: str) -> Dict[str, Any]:
        ...

    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        ...

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        ...


def _to_plain(value: Any) -> Dict[str, Any]:
    if isinstance(value, stripe.StripeObject):
        return json.loads(str(value))
    return dict(value)


@contextmanager
def _provider_call(operation: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except stripe.APIConnectionError as exc:
        logger.warning(
            "Billing provider call timed out",
            extra={"operation": operation, "error": str(exc), **context},
        )
        raise GatewayTimeoutError(
            "The billing provider did not respond in time. Please try again.",
            detail={"operation": operation},
        ) from exc
    except (stripe.RateLimitError, stripe.APIError) as exc:
        logger.warning(
            "Billing provider temporarily unavailable",
            extra={"operation": operation, "error": str(exc), **context},
        )
        raise ExternalServiceError(
            "The billing provider is temporarily unavailable. Please try again.",
            detail={"operation": operation},
        ) from exc
    except stripe.AuthenticationError as exc:
        logger.error(
            "Billing provider rejected credentials",
            extra={"operation": operation, **context},
        )
        raise ConfigurationError("Billing provider credentials are invalid.") from exc
    except stripe.StripeError as exc:
        logger.error(
            "Billing provider request failed",
            extra={"operation": operation, "error": str(exc), **context},
        )
        raise ExternalServiceError(
            "The billing provider rejected the request.",
            detail={"operation": operation},
            retryable=False,
        ) from exc


@dataclass(slots=True)
class StripeBillingGateway:
    """:class:`BillingGateway` backed by the ``stripe`` client library."""

    api_key: str
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                "Stripe secret key is not configured.",
                detail={"setting": "STRIPE_SECRET_KEY"},
            )
        stripe.default_http_client = stripe.new_default_http_client(timeout=self.timeout_seconds)
        # A timed out write must not be replayed behind our back; the seat
        # engine reconciles instead.
        stripe.max_network_retries = 0

    def retrieve_subscription(self, provider_subscription_id: str) -> Dict[str, Any]:
        with _provider_call("retrieve_subscription", subscription_id=provider_subscription_id):
            subscription = stripe.Subscription.retrieve(
                provider_subscription_id,
                api_key=self.api_key,
                expand=["items.data.price", "schedule"],
            )
        return _to_plain(subscription)

    def update_subscription(
        self,
        provider_subscription_id: str,
        *,
        items: Sequence[Mapping[str, Any]],
        proration_behavior: str = PRORATION_BEHAVIOR,
    ) -> Dict[str, Any]:
        with _provider_call("update_subscription", subscription_id=provider_subscription_id):
            subscription = stripe.Subscription.modify(
                provider_subscription_id,
                api_key=self.api_key,
                items=[dict(item) for item in items],
                proration_behavior=proration_behavior,
            )
        return _to_plain(subscription)

    def create_preview_invoice(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        items: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        with _provider_call("create_preview_invoice", subscription_id=subscription_id):
            invoice = stripe.Invoice.create_preview(
                api_key=self.api_key,
                customer=customer_id,
                subscription=subscription_id,
                subscription_details={
                    "items": [dict(item) for item in items],
                    "proration_behavior": PRORATION_BEHAVIOR,
                },
            )
        return _to_plain(invoice)

    def list_invoices(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        status: str,
        limit: int = 1,
    ) -> List[Dict[str, Any]]:
        with _provider_call("list_invoices", subscription_id=subscription_id):
            invoices = stripe.Invoice.list(
                api_key=self.api_key,
                customer=customer_id,
                subscription=subscription_id,
                status=status,
                limit=limit,
            )
        return [_to_plain(invoice) for invoice in invoices.data]

    def create_invoice(self, *, customer_id: str, subscription_id: str) -> Dict[str, Any]:
        with _provider_call("create_invoice", subscription_id=subscription_id):
            invoice = stripe.Invoice.create(
                api_key=self.api_key,
                customer=customer_id,
                subscription=subscription_id,
                collection_method="charge_automatically",
                auto_advance=False,
            )
        return _to_plain(invoice)

    def finalize_invoice(self, invoice_id: str) -> Dict[str, Any]:
        with _provider_call("finalize_invoice", invoice_id=invoice_id):
            invoice = stripe.Invoice.finalize_invoice(
                invoice_id, api_key=self.api_key, auto_advance=False
            )
        return _to_plain(invoice)

    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        with _provider_call("pay_invoice", invoice_id=invoice_id):
            invoice = stripe.Invoice.pay(invoice_id, api_key=self.api_key)
        return _to_plain(invoice)

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError("Invalid webhook signature.") from exc
        except UnicodeDecodeError as exc:
            raise ValidationError("Webhook payload is not valid UTF-8.") from exc
        return decode_payload(payload)


def decode_payload(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationError("Webhook payload is not valid JSON.") from exc
    if not isinstance(event, dict):
        raise ValidationError("Malformed webhook payload.")
    return event


def find_item(provider_subscription: Mapping[str, Any], price_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the subscription item billed at ``price_id``, if any."""

    if not price_id:
        return None
    for item in (provider_subscription.get("items") or {}).get("data") or []:
        price = item.get("price") or {}
        item_price = price.get("id") if isinstance(price, Mapping) else price
        if item_price == price_id:
            return item
    return None


def build_seat_items(
    provider_subscription: Mapping[str, Any],
    *,
    base_price_id: str,
    seat_price_id: str,
    additional_seats: int,
) -> List[Dict[str, Any]]:
    """Build the item list that sets the additional-seat quantity.

    The base plan item is kept as is; the additional-seat item is updated in
    place when present and added otherwise.
    """

    base_item = find_item(provider_subscription, base_price_id)
    if base_item is None:
        raise ExternalServiceError(
            "Unable to locate the base plan on the billing subscription.",
            retryable=False,
        )

    items: List[Dict[str, Any]] = [
        {"id": base_item["id"], "quantity": base_item.get("quantity") or 1}
    ]
    seat_item = find_item(provider_subscription, seat_price_id)
    if seat_item is not None:
        items.append({"id": seat_item["id"], "quantity": additional_seats})
    else:
        items.append({"price": seat_price_id, "quantity": additional_seats})
    return items


def additional_seat_quantity(provider_subscription: Mapping[str, Any], seat_price_id: str) -> int:
    seat_item = find_item(provider_subscription, seat_price_id)
    if seat_item is None:
        return 0
    return int(seat_item.get("quantity") or 0)


def settle_subscription_invoice(
    gateway: BillingGateway,
    *,
    customer_id: str,
    subscription_id: str,
) -> Optional[Dict[str, Any]]:
    """Collect outstanding prorations for a subscription immediately.

    Reuses an open invoice, then a draft one, and creates an invoice only when
    neither exists. Drafts are finalized and open invoices charged.
    """

    invoice: Optional[Dict[str, Any]] = None
    for status in ("open", "draft"):
        found = gateway.list_invoices(
            customer_id=customer_id, subscription_id=subscription_id, status=status, limit=1
        )
        if found:
            invoice = found[0]
            break

    if invoice is None:
        invoice = gateway.create_invoice(customer_id=customer_id, subscription_id=subscription_id)
    if not invoice:
        return None

    if invoice.get("status") == "draft":
        invoice = gateway.finalize_invoice(invoice["id"])

    if invoice.get("status") == "open" and invoice.get("collection_method") == "charge_automatically":
        invoice = gateway.pay_invoice(invoice["id"])
    return invoice


__all__ = [
    "BillingGateway",
    "PRORATION_BEHAVIOR",
    "StripeBillingGateway",
    "additional_seat_quantity",
    "build_seat_items",
    "decode_payload",
    "find_item",
    "settle_subscription_invoice",
]
