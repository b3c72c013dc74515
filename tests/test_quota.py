"""
Tests for quota evaluation.

Tests:
- Allow while remaining > 0, deny at used == included
- Missing counter denies (distinct from an exhausted one)
- Checks never mutate state
- Resolution failures
"""

import uuid

import pytest
from conftest import PERIOD_END, provision_org

from meterly.billing.errors import (
    CounterNotFoundError,
    InvalidOrgReferenceError,
    NoActiveSubscriptionError,
    OrgNotFoundError,
)
from meterly.billing.quota import REASON_COUNTER_MISSING, REASON_QUOTA_EXCEEDED
from meterly.models.organization import OrganizationCreate
from meterly.models.subscription import PlanCode, SubscriptionStatus


async def _record(recorder, quantity: int, external_ref: str = "org_acme"):
    return await recorder.record_usage(
        external_ref, "api_call", quantity, idempotency_key=f"req_{uuid.uuid4().hex}"
    )


@pytest.mark.asyncio
async def test_fresh_period_allows_full_quota(starter_org, evaluator):
    decision = await evaluator.check_quota("org_acme")

    assert decision.allow is True
    assert decision.remaining == 60
    assert decision.period_key == "2025-10"
    assert decision.retry_at is None


@pytest.mark.asyncio
async def test_starter_plan_allows_60th_then_denies(starter_org, evaluator, recorder):
    """59 used allows one more; recording it exhausts the period."""
    await _record(recorder, 59)

    decision = await evaluator.check_quota("org_acme")
    assert decision.allow is True
    assert decision.remaining == 1

    snapshot = await _record(recorder, 1)
    assert snapshot.used == 60
    assert snapshot.remaining == 0

    decision = await evaluator.check_quota("org_acme")
    assert decision.allow is False
    assert decision.remaining == 0
    assert decision.reason == REASON_QUOTA_EXCEEDED
    assert decision.retry_at == PERIOD_END


@pytest.mark.asyncio
async def test_overage_still_denies_with_zero_remaining(starter_org, evaluator, recorder):
    await _record(recorder, 75)

    decision = await evaluator.check_quota("org_acme")

    assert decision.allow is False
    assert decision.remaining == 0


@pytest.mark.asyncio
async def test_check_is_read_only(db, starter_org, evaluator):
    organization, _ = starter_org

    for _ in range(5):
        await evaluator.check_quota("org_acme")

    counter = await db.get_counter(organization.org_id, "api_call", "2025-10")
    assert counter.used == 0


@pytest.mark.asyncio
async def test_missing_counter_raises_counter_not_found(provisioner, evaluator):
    """A metric never seeded this period is missing, not zero."""
    await provision_org(provisioner)

    with pytest.raises(CounterNotFoundError) as exc_info:
        await evaluator.check_quota("org_acme", metric="export")

    assert exc_info.value.details["period_key"] == "2025-10"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_missing_counter_denies_through_decide(db, provisioner, evaluator):
    organization, _ = await provision_org(provisioner)

    decision = await evaluator.decide("org_acme", metric="export")

    assert decision.allow is False
    assert decision.remaining == 0
    assert decision.reason == REASON_COUNTER_MISSING
    assert decision.retry_at == PERIOD_END
    # Denying never creates the missing counter
    assert await db.get_counter(organization.org_id, "export", "2025-10") is None


@pytest.mark.asyncio
async def test_unknown_org(evaluator):
    with pytest.raises(OrgNotFoundError):
        await evaluator.check_quota("org_nobody")


@pytest.mark.asyncio
async def test_malformed_org_reference(evaluator):
    with pytest.raises(InvalidOrgReferenceError):
        await evaluator.check_quota("org with spaces")


@pytest.mark.asyncio
async def test_org_without_active_subscription(provisioner, evaluator):
    await provisioner.ensure_organization(OrganizationCreate(external_ref="org_idle"))

    with pytest.raises(NoActiveSubscriptionError):
        await evaluator.check_quota("org_idle")


@pytest.mark.asyncio
async def test_past_due_subscription_is_not_active(provisioner, evaluator):
    await provision_org(provisioner, status=SubscriptionStatus.PAST_DUE)

    with pytest.raises(NoActiveSubscriptionError):
        await evaluator.check_quota("org_acme")


@pytest.mark.asyncio
async def test_trialing_subscription_gets_trial_quota(provisioner, evaluator):
    await provision_org(provisioner, plan_code=PlanCode.TRIAL)

    decision = await evaluator.check_quota("org_acme")

    assert decision.allow is True
    assert decision.remaining == 30
