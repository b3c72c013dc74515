"""
Stripe API client used by provisioning.

Customer and subscription creation go through the Stripe circuit breaker and
retry on connection errors. Stripe failures surface as BillingProviderError
(Upstream kind, retryable).
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import stripe

from meterly.billing.errors import BillingProviderError
from meterly.billing.plans import plan_limits
from meterly.billing.stripe_events import map_stripe_status
from meterly.config import StripeConfig
from meterly.models.organization import Organization
from meterly.models.subscription import PlanCode, SubscriptionStatus
from meterly.observability.metrics import track_billing_provider_call
from meterly.resilience.circuit_breakers import with_retry, with_stripe_circuit_breaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSubscription:
    """Subscription as created at the billing provider."""

    subscription_ref: str
    customer_ref: str
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime
    trial_end: datetime | None


@with_stripe_circuit_breaker
@with_retry(max_attempts=3, exceptions=(stripe.APIConnectionError, stripe.RateLimitError))
def _create_customer(**params):
    return stripe.Customer.create(**params)


@with_stripe_circuit_breaker
@with_retry(max_attempts=3, exceptions=(stripe.APIConnectionError, stripe.RateLimitError))
def _create_subscription(**params):
    return stripe.Subscription.create(**params)


def _utc(epoch_seconds) -> datetime:
    return datetime.fromtimestamp(int(epoch_seconds), UTC)


def _field(obj, name: str):
    return getattr(obj, name, None)


def _period_of(subscription) -> tuple[int | None, int | None]:
    start = _field(subscription, "current_period_start")
    end = _field(subscription, "current_period_end")
    if start is None or end is None:
        items = _field(_field(subscription, "items"), "data") or []
        if items:
            start = _field(items[0], "current_period_start")
            end = _field(items[0], "current_period_end")
    return start, end


class StripeBillingClient:
    """
    Stripe integration for provisioning.

    Handles:
    - Customer creation (idempotent per organization)
    - Subscription creation with plan price and trial
    """

    def __init__(self, config: StripeConfig):
        """
        Initialize Stripe client.

        Args:
            config: Stripe configuration
        """
        self.config = config

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe client initialized")
        else:
            logger.warning("Stripe API key not configured - provider provisioning disabled")

    @property
    def is_enabled(self) -> bool:
        """Check if Stripe is properly configured."""
        return self.config.is_configured

    def _require_enabled(self) -> None:
        if not self.is_enabled:
            raise BillingProviderError("Stripe not configured")

    async def ensure_customer(self, organization: Organization) -> str:
        """
        Return the organization's Stripe customer id, creating one if needed.

        Returns:
            Stripe customer ID (cus_xxx)

        Raises:
            BillingProviderError: Stripe unavailable or rejected the request
        """
        if organization.billing_customer_ref:
            return organization.billing_customer_ref

        self._require_enabled()
        try:
            customer = _create_customer(
                name=organization.name,
                metadata={"org_id": organization.org_id, "org_ref": organization.external_ref},
                idempotency_key=f"customer-{organization.org_id}",
            )
        except stripe.StripeError as e:
            track_billing_provider_call("customer.create", False)
            logger.error(
                "Failed to create Stripe customer",
                extra={"org_id": organization.org_id, "error": str(e)},
            )
            raise BillingProviderError(
                "Failed to create Stripe customer", org_id=organization.org_id
            ) from e

        track_billing_provider_call("customer.create", True)
        logger.info(
            "Created Stripe customer",
            extra={"org_id": organization.org_id, "stripe_customer_id": customer.id},
        )
        return customer.id

    async def create_subscription(
        self, organization: Organization, customer_ref: str, plan_code: PlanCode
    ) -> ProviderSubscription:
        """
        Create a Stripe subscription for the plan's configured price.

        Trial plans get trial_period_days from the plan catalog.

        Raises:
            BillingProviderError: Missing price id, Stripe unavailable or
                the subscription came back without a usable status/period
        """
        self._require_enabled()

        price_id = self.config.price_id_for(plan_code.value)
        if not price_id:
            raise BillingProviderError(
                f"No Stripe price configured for plan {plan_code.value}",
                plan_code=plan_code.value,
            )

        params = {
            "customer": customer_ref,
            "items": [{"price": price_id}],
            "metadata": {
                "org_id": organization.org_id,
                "org_ref": organization.external_ref,
                "plan_code": plan_code.value,
            },
        }
        plan = plan_limits(plan_code)
        if plan.has_trial:
            params["trial_period_days"] = plan.trial_days

        try:
            subscription = _create_subscription(**params)
        except stripe.StripeError as e:
            track_billing_provider_call("subscription.create", False)
            logger.error(
                "Failed to create Stripe subscription",
                extra={
                    "org_id": organization.org_id,
                    "plan_code": plan_code.value,
                    "error": str(e),
                },
            )
            raise BillingProviderError(
                "Failed to create Stripe subscription",
                org_id=organization.org_id,
                plan_code=plan_code.value,
            ) from e

        track_billing_provider_call("subscription.create", True)

        status = map_stripe_status(_field(subscription, "status"))
        start, end = _period_of(subscription)
        if status is None or start is None or end is None:
            raise BillingProviderError(
                "Stripe subscription missing status or period",
                subscription_ref=subscription.id,
            )

        trial_end = _field(subscription, "trial_end")
        logger.info(
            "Created Stripe subscription",
            extra={
                "org_id": organization.org_id,
                "subscription_ref": subscription.id,
                "status": status.value,
            },
        )
        return ProviderSubscription(
            subscription_ref=subscription.id,
            customer_ref=customer_ref,
            status=status,
            period_start=_utc(start),
            period_end=_utc(end),
            trial_end=_utc(trial_end) if trial_end else None,
        )
