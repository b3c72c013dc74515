"""
Tests for the Stripe client used by provisioning.

Stripe API calls are mocked; no network access.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from meterly.billing.errors import BillingProviderError
from meterly.billing.stripe_client import StripeBillingClient
from meterly.config import StripeConfig
from meterly.models.organization import Organization
from meterly.models.subscription import PlanCode, SubscriptionStatus
from meterly.resilience import BillingProviderCircuitOpenError, get_stripe_breaker

PERIOD_START_TS = 1760097600
PERIOD_END_TS = 1762776000


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(
        api_key="sk_test_123",
        price_trial="price_trial",
        price_starter="price_starter",
    )


@pytest.fixture
def client(stripe_config) -> StripeBillingClient:
    return StripeBillingClient(stripe_config)


@pytest.fixture
def organization() -> Organization:
    return Organization(org_id="org_internal", external_ref="org_acme", name="Acme")


def _stripe_subscription(status: str = "active", trial_end=None):
    return SimpleNamespace(
        id="sub_stripe",
        status=status,
        current_period_start=PERIOD_START_TS,
        current_period_end=PERIOD_END_TS,
        trial_end=trial_end,
    )


@pytest.mark.asyncio
async def test_existing_customer_ref_is_reused(client, organization):
    organization.billing_customer_ref = "cus_existing"

    with patch("stripe.Customer.create") as create:
        assert await client.ensure_customer(organization) == "cus_existing"

    create.assert_not_called()


@pytest.mark.asyncio
async def test_customer_created_with_idempotency_key(client, organization):
    with patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_new")) as create:
        customer_ref = await client.ensure_customer(organization)

    assert customer_ref == "cus_new"
    kwargs = create.call_args.kwargs
    assert kwargs["idempotency_key"] == "customer-org_internal"
    assert kwargs["metadata"]["org_ref"] == "org_acme"


@pytest.mark.asyncio
async def test_trial_subscription_gets_trial_days(client, organization):
    with patch(
        "stripe.Subscription.create",
        return_value=_stripe_subscription("trialing", trial_end=PERIOD_START_TS + 14 * 86400),
    ) as create:
        created = await client.create_subscription(organization, "cus_new", PlanCode.TRIAL)

    kwargs = create.call_args.kwargs
    assert kwargs["items"] == [{"price": "price_trial"}]
    assert kwargs["trial_period_days"] == 14
    assert kwargs["metadata"]["plan_code"] == "trial"
    assert created.status == SubscriptionStatus.TRIALING
    assert created.trial_end is not None
    assert int(created.period_start.timestamp()) == PERIOD_START_TS


@pytest.mark.asyncio
async def test_missing_price_id(client, organization):
    with pytest.raises(BillingProviderError):
        await client.create_subscription(organization, "cus_new", PlanCode.PRO)


@pytest.mark.asyncio
async def test_stripe_error_becomes_billing_provider_error(client, organization):
    with patch("stripe.Customer.create", side_effect=stripe.APIError("boom")):
        with pytest.raises(BillingProviderError) as exc_info:
            await client.ensure_customer(organization)

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_breaker_opens_after_repeated_failures(client, organization):
    with patch("stripe.Customer.create", side_effect=stripe.APIError("down")) as create:
        for _ in range(3):
            with pytest.raises(BillingProviderError):
                await client.ensure_customer(organization)

        with pytest.raises(BillingProviderCircuitOpenError):
            await client.ensure_customer(organization)

    assert get_stripe_breaker().current_state == "open"
    assert create.call_count == 3


@pytest.mark.asyncio
async def test_unconfigured_client_refuses(organization):
    client = StripeBillingClient(StripeConfig(api_key=""))

    assert client.is_enabled is False
    with pytest.raises(BillingProviderError):
        await client.ensure_customer(organization)
