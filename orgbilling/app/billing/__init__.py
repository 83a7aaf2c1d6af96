"""Billing domain package: subscription lifecycle, webhooks and seat management."""

from .access import effective_tier, has_feature, require_access
from .catalog import DEFAULT_CATALOG, TierCatalog, TierDefinition, can_access_tier
from .collaborators import (
    BillingEventLogger,
    BillingNotifier,
    EntitlementInvalidator,
    MemberDirectory,
)
from .config import BillingConfig, PriceIds, load_billing_config
from .exceptions import (
    AccessDeniedError,
    AuthenticationError,
    BillingError,
    ConfigurationError,
    ConflictError,
    DuplicateEventError,
    ExternalServiceError,
    GatewayTimeoutError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from .gateway import BillingGateway, StripeBillingGateway
from .models import (
    AccessStatus,
    BillingEventStatus,
    BillingEventType,
    BillingHistoryEvent,
    BillingInterval,
    PendingDowngrade,
    SeatChangeDirection,
    SeatChangePreview,
    SeatChangeResult,
    SeatPreviewLine,
    SeatUsage,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from .repository import InMemorySubscriptionStore, PostgresSubscriptionStore, SubscriptionStore
from .seats import SeatAdjustmentEngine
from .state_machine import SubscriptionStateMachine, Transition, derive_access_status
from .webhooks import WebhookEventProcessor, WebhookOutcome, WebhookOutcomeStatus

__all__ = [
    "AccessDeniedError",
    "AccessStatus",
    "AuthenticationError",
    "BillingConfig",
    "BillingError",
    "BillingEventLogger",
    "BillingEventStatus",
    "BillingEventType",
    "BillingGateway",
    "BillingHistoryEvent",
    "BillingInterval",
    "BillingNotifier",
    "ConfigurationError",
    "ConflictError",
    "DEFAULT_CATALOG",
    "DuplicateEventError",
    "EntitlementInvalidator",
    "ExternalServiceError",
    "GatewayTimeoutError",
    "InMemorySubscriptionStore",
    "InvariantViolation",
    "MemberDirectory",
    "NotFoundError",
    "PendingDowngrade",
    "PostgresSubscriptionStore",
    "PriceIds",
    "SeatAdjustmentEngine",
    "SeatChangeDirection",
    "SeatChangePreview",
    "SeatChangeResult",
    "SeatPreviewLine",
    "SeatUsage",
    "StripeBillingGateway",
    "Subscription",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "SubscriptionStore",
    "SubscriptionTier",
    "TierCatalog",
    "TierDefinition",
    "Transition",
    "ValidationError",
    "WebhookEventProcessor",
    "WebhookOutcome",
    "WebhookOutcomeStatus",
    "can_access_tier",
    "derive_access_status",
    "effective_tier",
    "has_feature",
    "load_billing_config",
    "require_access",
]
