"""
Data models for the metering core.
"""

from meterly.models.billing_event import (
    BillingEvent,
    BillingEventType,
    ConvergenceResult,
    WebhookEventRecord,
    WebhookOutcome,
)
from meterly.models.organization import Organization, OrganizationCreate
from meterly.models.subscription import (
    PlanCode,
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
    SubscriptionUpdate,
)
from meterly.models.usage import (
    CounterSnapshot,
    Entitlements,
    QuotaDecision,
    UsageCounter,
    UsageEvent,
    UsageSnapshot,
)

__all__ = [
    "BillingEvent",
    "BillingEventType",
    "ConvergenceResult",
    "CounterSnapshot",
    "Entitlements",
    "Organization",
    "OrganizationCreate",
    "PlanCode",
    "QuotaDecision",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionStatus",
    "SubscriptionUpdate",
    "UsageCounter",
    "UsageEvent",
    "UsageSnapshot",
    "WebhookEventRecord",
    "WebhookOutcome",
]
