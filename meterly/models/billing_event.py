"""
Normalized billing events and the webhook convergence ledger record.

Provider adapters (see billing.stripe_events) turn raw webhooks into
BillingEvent; the convergence processor only ever sees this shape.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from meterly.models.subscription import PlanCode, SubscriptionStatus
from meterly.models.timestamps import ensure_utc_optional


class BillingEventType(str, Enum):
    """Normalized billing event types."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"


class WebhookOutcome(str, Enum):
    """How a recorded webhook event was handled."""

    APPLIED = "applied"
    IGNORED = "ignored"  # Nothing to do (unknown subscription, no-op, stale period)
    REJECTED = "rejected"  # InvalidTransition; state preserved


class BillingEvent(BaseModel):
    """
    Billing event normalized from an external provider.

    Timestamps are tz-aware UTC; naive values are treated as UTC.
    """

    external_event_id: str = Field(..., min_length=1, max_length=255)
    type: BillingEventType
    subscription_ref: str = Field(..., min_length=1, max_length=255)
    customer_ref: str = Field(..., min_length=1, max_length=255)

    period_start: datetime | None = Field(default=None)
    period_end: datetime | None = Field(default=None)
    status: SubscriptionStatus | None = Field(default=None)
    plan_code: PlanCode | None = Field(default=None)
    trial_end: datetime | None = Field(default=None)

    # Identity-provider org id, when the provider carries it in metadata.
    # Used only to create an organization on first webhook arrival.
    external_org_ref: str | None = Field(default=None, max_length=128)

    @field_validator("period_start", "period_end", "trial_end")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return ensure_utc_optional(v)

    @model_validator(mode="after")
    def validate_period(self) -> "BillingEvent":
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("period_start and period_end must be given together")
        if self.period_start and self.period_end and self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self

    @property
    def has_period(self) -> bool:
        return self.period_start is not None and self.period_end is not None


class WebhookEventRecord(BaseModel):
    """Row of the webhook convergence ledger."""

    external_event_id: str
    event_type: str
    outcome: WebhookOutcome
    detail: str | None = Field(default=None)
    applied_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ConvergenceResult(BaseModel):
    """Result returned to webhook deliverers."""

    converged: bool
    outcome: WebhookOutcome | None = Field(default=None)
    replayed: bool = Field(default=False)
