"""Error taxonomy for the billing subsystem."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base class for billing failures surfaced to callers.

    ``message`` is always safe to show to end users; provider details stay in
    the logs.
    """

    message: str
    detail: Optional[Mapping[str, Any]] = None
    code: str = field(default="")

    default_code: ClassVar[str] = "billing_error"
    status_code: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __post_init__(self) -> None:
        if not self.code:
            self.code = self.default_code
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            payload.update(self.detail)
        object.__setattr__(self, "_payload", payload)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class AuthenticationError(BillingError):
    """Webhook signature missing or invalid; the payload is never processed."""

    default_code: ClassVar[str] = "authentication_failed"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST


@dataclass
class ValidationError(BillingError):
    """Request violates a billing rule; the message names the rule."""

    default_code: ClassVar[str] = "validation_failed"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST


@dataclass
class NotFoundError(BillingError):
    """Subscription or organization is absent."""

    default_code: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = status.HTTP_404_NOT_FOUND


@dataclass
class AccessDeniedError(BillingError):
    """Caller's role or the organization's access status forbids the action."""

    default_code: ClassVar[str] = "access_denied"
    status_code: ClassVar[int] = status.HTTP_403_FORBIDDEN


@dataclass
class ExternalServiceError(BillingError):
    """Billing gateway timed out or failed."""

    retryable: bool = True

    default_code: ClassVar[str] = "billing_provider_unavailable"
    status_code: ClassVar[int] = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class GatewayTimeoutError(ExternalServiceError):
    """Billing gateway did not answer in time; the call may have been applied."""

    default_code: ClassVar[str] = "billing_provider_timeout"


@dataclass
class ConflictError(BillingError):
    """Optimistic concurrency check failed on a subscription write."""

    default_code: ClassVar[str] = "conflict"
    status_code: ClassVar[int] = status.HTTP_409_CONFLICT


@dataclass
class DuplicateEventError(ConflictError):
    """A history row with the same provider event id already exists."""

    default_code: ClassVar[str] = "duplicate_event"


@dataclass
class InvariantViolation(BillingError):
    """Computed subscription state breaks a data-model invariant."""

    default_code: ClassVar[str] = "invariant_violation"


@dataclass
class ConfigurationError(BillingError):
    """Billing configuration is missing or inconsistent."""

    default_code: ClassVar[str] = "configuration_error"


__all__ = [
    "AccessDeniedError",
    "AuthenticationError",
    "BillingError",
    "ConfigurationError",
    "ConflictError",
    "DuplicateEventError",
    "ExternalServiceError",
    "GatewayTimeoutError",
    "InvariantViolation",
    "NotFoundError",
    "ValidationError",
]
