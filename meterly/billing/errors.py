"""
Error taxonomy for the metering core.

Every failure the core raises is a MeteringError tagged with one ErrorKind,
a stable machine-readable code, and a structured details payload. The HTTP
layer maps kinds to status codes; callers match on kind/code, never on
message text.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UPSTREAM = "upstream"  # Retryable: store or provider unavailable


HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UPSTREAM: 503,
}


class MeteringError(Exception):
    """Base exception for metering core errors."""

    kind: ErrorKind = ErrorKind.UPSTREAM
    code: str = "METERING_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.UPSTREAM

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# NotFound


class OrgNotFoundError(MeteringError):
    """No organization for the given external reference."""

    kind = ErrorKind.NOT_FOUND
    code = "ORG_NOT_FOUND"


class NoActiveSubscriptionError(MeteringError):
    """Organization has no subscription in trialing or active status."""

    kind = ErrorKind.NOT_FOUND
    code = "NO_ACTIVE_SUBSCRIPTION"


class CounterNotFoundError(MeteringError):
    """No usage counter seeded for the current period. Callers must deny."""

    kind = ErrorKind.NOT_FOUND
    code = "COUNTER_NOT_FOUND"


# Validation


class InvalidQuantityError(MeteringError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_QUANTITY"


class InvalidOrgReferenceError(MeteringError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_ORG_REFERENCE"


class InvalidPlanCodeError(MeteringError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_PLAN_CODE"


class InvalidIdempotencyKeyError(MeteringError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_IDEMPOTENCY_KEY"


class InvalidMetricError(MeteringError):
    kind = ErrorKind.VALIDATION
    code = "INVALID_METRIC"


class WebhookSignatureError(MeteringError):
    """Webhook payload could not be verified or parsed."""

    kind = ErrorKind.VALIDATION
    code = "INVALID_WEBHOOK_SIGNATURE"


class InvalidWebhookPayloadError(MeteringError):
    """Verified webhook whose payload is missing fields the adapter needs."""

    kind = ErrorKind.VALIDATION
    code = "INVALID_WEBHOOK_PAYLOAD"


# Conflict


class InvalidTransitionError(MeteringError):
    """Subscription status transition not permitted by the lifecycle."""

    kind = ErrorKind.CONFLICT
    code = "INVALID_TRANSITION"


class IdempotencyKeyConflictError(MeteringError):
    """Idempotency key already used for a different organization or metric."""

    kind = ErrorKind.CONFLICT
    code = "IDEMPOTENCY_KEY_CONFLICT"


class ActiveSubscriptionExistsError(MeteringError):
    kind = ErrorKind.CONFLICT
    code = "ACTIVE_SUBSCRIPTION_EXISTS"


class BillingCustomerConflictError(MeteringError):
    """Billing customer reference already linked to another organization."""

    kind = ErrorKind.CONFLICT
    code = "BILLING_CUSTOMER_CONFLICT"


# Upstream


class StoreUnavailableError(MeteringError):
    """Durable store failed; never degrade to allow."""

    kind = ErrorKind.UPSTREAM
    code = "STORE_UNAVAILABLE"


class BillingProviderError(MeteringError):
    """Billing provider API failed or its circuit breaker is open."""

    kind = ErrorKind.UPSTREAM
    code = "BILLING_PROVIDER_UNAVAILABLE"
