"""
Subscription data models and the subscription status state machine.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from meterly.billing.errors import InvalidTransitionError
from meterly.models.timestamps import ensure_utc_optional


class PlanCode(str, Enum):
    """Plan codes; each maps to a fixed per-period quota (see billing.plans)."""

    TRIAL = "trial"  # 30 calls/period, 14 day trial
    STARTER = "starter"  # 60 calls/period
    GROWTH = "growth"  # 300 calls/period
    PRO = "pro"  # 1500 calls/period


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"  # Terminal


# Statuses that make a subscription "the active subscription" of its org
ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Permitted status transitions. Self-transitions are handled as no-ops by
# callers and are deliberately absent here.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.CANCELED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Check whether current -> target is a permitted status transition."""
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is permitted."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"invalid transition {current.value} -> {target.value}",
            current=current.value,
            target=target.value,
        )


class Subscription(BaseModel):
    """
    Subscription of one organization to one plan.

    Never hard-deleted; cancellation is a status.
    """

    subscription_id: str
    org_id: str
    billing_subscription_ref: str = Field(..., min_length=1, max_length=255)
    plan_code: PlanCode
    status: SubscriptionStatus

    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = Field(default=None)
    canceled_at: datetime | None = Field(default=None)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("current_period_start", "current_period_end", "trial_end", "canceled_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return ensure_utc_optional(v)

    @property
    def is_active(self) -> bool:
        """True when this is the organization's active subscription."""
        return self.status in ACTIVE_STATUSES

    def is_in_trial(self, now: datetime | None = None) -> bool:
        """Check if the trial window is still open."""
        if self.status != SubscriptionStatus.TRIALING or self.trial_end is None:
            return False
        return (now or datetime.now(UTC)) < self.trial_end


class SubscriptionCreate(BaseModel):
    """Schema for provisioning a subscription locally."""

    external_ref: str = Field(..., min_length=1, max_length=128)
    plan_code: PlanCode
    billing_subscription_ref: str = Field(..., min_length=1, max_length=255)
    current_period_start: datetime
    current_period_end: datetime
    status: SubscriptionStatus | None = Field(
        default=None, description="Defaults to trialing for trial plans, active otherwise"
    )
    trial_end: datetime | None = Field(default=None)

    @field_validator("current_period_start", "current_period_end", "trial_end")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are UTC."""
        return ensure_utc_optional(v)

    @model_validator(mode="after")
    def validate_period(self) -> "SubscriptionCreate":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self


class SubscriptionUpdate(BaseModel):
    """Fields the convergence processor may overwrite."""

    status: SubscriptionStatus | None = Field(default=None)
    plan_code: PlanCode | None = Field(default=None)
    current_period_start: datetime | None = Field(default=None)
    current_period_end: datetime | None = Field(default=None)
    trial_end: datetime | None = Field(default=None)
    canceled_at: datetime | None = Field(default=None)
