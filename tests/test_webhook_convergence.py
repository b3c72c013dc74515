"""
Tests for webhook convergence.

Tests:
- Each event id is applied at most once
- Status lifecycle (valid, invalid and self transitions)
- Period rollover seeds a fresh counter; stale periods never move backwards
- First sighting of a subscription creates it (and its organization)
- A trial converting within its starting month takes the paid ceiling
- Concurrent deliveries of one event id apply once
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest
from conftest import (
    NEXT_PERIOD_END,
    NEXT_PERIOD_START,
    PERIOD_END,
    PERIOD_START,
    TEST_TIMEZONE,
    provision_org,
)

from meterly.billing.errors import InvalidTransitionError
from meterly.billing.webhooks import WebhookConvergenceProcessor
from meterly.models.billing_event import BillingEvent, BillingEventType, WebhookOutcome
from meterly.models.subscription import PlanCode, SubscriptionStatus, check_transition
from meterly.storage.database import MeteringDatabase


def _event(event_id: str, event_type: BillingEventType, **fields) -> BillingEvent:
    fields.setdefault("subscription_ref", "sub_org_acme")
    fields.setdefault("customer_ref", "cus_org_acme")
    return BillingEvent(external_event_id=event_id, type=event_type, **fields)


async def _audit_actions(db) -> list[str]:
    with db.reader() as tx:
        rows = tx.conn.execute("SELECT action FROM audit_log ORDER BY id").fetchall()
    return [row["action"] for row in rows]


@pytest.mark.asyncio
async def test_payment_failed_moves_active_to_past_due(db, starter_org, processor):
    result = await processor.process(_event("evt_1", BillingEventType.PAYMENT_FAILED))

    assert result.converged is True
    assert result.outcome == WebhookOutcome.APPLIED
    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
async def test_replayed_event_is_not_applied_twice(db, starter_org, processor, recorder):
    """A replayed rollover must not seed or reset anything a second time."""
    organization, _ = starter_org
    rollover = _event(
        "evt_roll",
        BillingEventType.SUBSCRIPTION_UPDATED,
        period_start=NEXT_PERIOD_START,
        period_end=NEXT_PERIOD_END,
        status=SubscriptionStatus.ACTIVE,
    )

    first = await processor.process(rollover)
    await recorder.record_usage("org_acme", "api_call", 5, "req_after_roll")
    second = await processor.process(rollover)

    assert first.replayed is False
    assert second.converged is True
    assert second.replayed is True
    assert second.outcome == WebhookOutcome.APPLIED
    counter = await db.get_counter(organization.org_id, "api_call", "2025-11")
    assert counter.used == 5


@pytest.mark.asyncio
async def test_invalid_transition_rejected_and_recorded(db, starter_org, processor):
    """past_due from canceled is not a lifecycle edge; state is preserved."""
    await processor.process(_event("evt_cancel", BillingEventType.SUBSCRIPTION_CANCELED))

    result = await processor.process(_event("evt_fail", BillingEventType.PAYMENT_FAILED))

    assert result.converged is True
    assert result.outcome == WebhookOutcome.REJECTED
    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.status == SubscriptionStatus.CANCELED
    assert subscription.canceled_at is not None
    record = await db.get_webhook_event("evt_fail")
    assert record.outcome == WebhookOutcome.REJECTED
    assert "canceled -> past_due" in record.detail


@pytest.mark.asyncio
async def test_past_due_recovers_to_active(db, starter_org, processor):
    await processor.process(_event("evt_fail", BillingEventType.PAYMENT_FAILED))
    result = await processor.process(_event("evt_paid", BillingEventType.PAYMENT_SUCCEEDED))

    assert result.outcome == WebhookOutcome.APPLIED
    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_self_transition_without_changes_is_ignored(db, starter_org, processor):
    result = await processor.process(_event("evt_noop", BillingEventType.PAYMENT_SUCCEEDED))

    assert result.outcome == WebhookOutcome.IGNORED
    assert (await db.get_webhook_event("evt_noop")).detail == "no change"


@pytest.mark.asyncio
async def test_trial_to_active_rolls_period_with_fresh_counter(
    db, provisioner, processor, evaluator, recorder
):
    """Payment after the trial activates the plan in a new period with used = 0."""
    organization, _ = await provision_org(provisioner, plan_code=PlanCode.TRIAL)
    await recorder.record_usage("org_acme", "api_call", 30, "req_trial")
    assert (await evaluator.check_quota("org_acme")).allow is False

    result = await processor.process(
        _event(
            "evt_upgrade",
            BillingEventType.PAYMENT_SUCCEEDED,
            period_start=NEXT_PERIOD_START,
            period_end=NEXT_PERIOD_END,
            plan_code=PlanCode.STARTER,
        )
    )

    assert result.outcome == WebhookOutcome.APPLIED
    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.plan_code == PlanCode.STARTER

    decision = await evaluator.check_quota("org_acme")
    assert decision.allow is True
    assert decision.period_key == "2025-11"
    assert decision.remaining == 60

    fresh = await db.get_counter(organization.org_id, "api_call", "2025-11")
    assert fresh.used == 0
    old = await db.get_counter(organization.org_id, "api_call", "2025-10")
    assert old.used == 30


@pytest.mark.asyncio
async def test_usage_before_rollover_event_stays_in_current_period(
    db, starter_org, recorder
):
    """Recording after wall-clock period end still lands in the stored period."""
    organization, _ = starter_org
    late = PERIOD_END + timedelta(hours=1)

    snapshot = await recorder.record_usage("org_acme", "api_call", 1, "req_late", occurred_at=late)

    assert snapshot.period_key == "2025-10"
    assert await db.get_counter(organization.org_id, "api_call", "2025-11") is None


@pytest.mark.asyncio
async def test_stale_period_event_is_ignored(db, starter_org, processor):
    await processor.process(
        _event(
            "evt_new",
            BillingEventType.SUBSCRIPTION_UPDATED,
            period_start=NEXT_PERIOD_START,
            period_end=NEXT_PERIOD_END,
        )
    )

    result = await processor.process(
        _event(
            "evt_old",
            BillingEventType.SUBSCRIPTION_UPDATED,
            period_start=PERIOD_START,
            period_end=PERIOD_END,
        )
    )

    assert result.outcome == WebhookOutcome.IGNORED
    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.current_period_start == NEXT_PERIOD_START


@pytest.mark.asyncio
async def test_stale_period_still_applies_status_change(db, starter_org, processor):
    await processor.process(
        _event(
            "evt_new",
            BillingEventType.SUBSCRIPTION_UPDATED,
            period_start=NEXT_PERIOD_START,
            period_end=NEXT_PERIOD_END,
        )
    )

    result = await processor.process(
        _event(
            "evt_old_fail",
            BillingEventType.PAYMENT_FAILED,
            period_start=PERIOD_START,
            period_end=PERIOD_END,
        )
    )

    assert result.outcome == WebhookOutcome.APPLIED
    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert subscription.current_period_start == NEXT_PERIOD_START


@pytest.mark.asyncio
async def test_plan_change_keeps_current_counter(db, starter_org, processor):
    organization, _ = starter_org

    await processor.process(
        _event("evt_plan", BillingEventType.SUBSCRIPTION_UPDATED, plan_code=PlanCode.GROWTH)
    )

    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.plan_code == PlanCode.GROWTH
    counter = await db.get_counter(organization.org_id, "api_call", "2025-10")
    assert counter.included == 60


@pytest.mark.asyncio
async def test_unknown_subscription_payment_is_ignored(processor):
    result = await processor.process(
        _event("evt_orphan", BillingEventType.PAYMENT_FAILED, subscription_ref="sub_unknown")
    )

    assert result.converged is True
    assert result.outcome == WebhookOutcome.IGNORED


@pytest.mark.asyncio
async def test_created_event_for_unknown_customer_creates_org(db, processor, evaluator):
    result = await processor.process(
        _event(
            "evt_created",
            BillingEventType.SUBSCRIPTION_CREATED,
            subscription_ref="sub_new",
            customer_ref="cus_new",
            period_start=PERIOD_START,
            period_end=PERIOD_END,
            plan_code=PlanCode.PRO,
            status=SubscriptionStatus.ACTIVE,
            external_org_ref="org_new",
        )
    )

    assert result.outcome == WebhookOutcome.APPLIED
    organization = await db.get_organization_by_external_ref("org_new")
    assert organization.billing_customer_ref == "cus_new"
    assert (await evaluator.check_quota("org_new")).remaining == 1500
    assert "organization.created" in await _audit_actions(db)


@pytest.mark.asyncio
async def test_created_event_without_org_reference_is_ignored(db, processor):
    result = await processor.process(
        _event(
            "evt_anon",
            BillingEventType.SUBSCRIPTION_CREATED,
            subscription_ref="sub_anon",
            customer_ref="cus_anon",
            period_start=PERIOD_START,
            period_end=PERIOD_END,
            plan_code=PlanCode.STARTER,
        )
    )

    assert result.outcome == WebhookOutcome.IGNORED
    assert await db.get_subscription_by_ref("sub_anon") is None


@pytest.mark.asyncio
async def test_new_active_subscription_supersedes_old(db, starter_org, processor):
    organization, old = starter_org

    await processor.process(
        _event(
            "evt_replace",
            BillingEventType.SUBSCRIPTION_CREATED,
            subscription_ref="sub_replacement",
            period_start=PERIOD_START,
            period_end=PERIOD_END,
            plan_code=PlanCode.PRO,
            status=SubscriptionStatus.ACTIVE,
        )
    )

    assert (await db.get_subscription_by_ref(old.billing_subscription_ref)).status == (
        SubscriptionStatus.CANCELED
    )
    active = await db.get_active_subscription(organization.org_id)
    assert active.billing_subscription_ref == "sub_replacement"
    assert "subscription.superseded" in await _audit_actions(db)


@pytest.mark.asyncio
async def test_naive_event_timestamps_are_utc(db, starter_org, processor):
    naive_start = datetime(2025, 11, 10, 12, 0)
    naive_end = datetime(2025, 12, 10, 12, 0)

    await processor.process(
        _event(
            "evt_naive",
            BillingEventType.SUBSCRIPTION_UPDATED,
            period_start=naive_start,
            period_end=naive_end,
        )
    )

    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.current_period_start == naive_start.replace(tzinfo=UTC)


def test_mixed_naive_and_aware_period_bounds_are_accepted():
    event = _event(
        "evt_mixed",
        BillingEventType.SUBSCRIPTION_UPDATED,
        period_start=datetime(2025, 11, 10, 12, 0),
        period_end=datetime(2025, 12, 10, 12, 0, tzinfo=UTC),
        trial_end=datetime(2025, 11, 24, 12, 0),
    )

    assert event.period_start == datetime(2025, 11, 10, 12, 0, tzinfo=UTC)
    assert event.trial_end.tzinfo is not None


@pytest.mark.asyncio
async def test_naive_trial_end_equal_to_stored_is_no_change(db, provisioner, processor):
    _, subscription = await provision_org(provisioner, plan_code=PlanCode.TRIAL)
    naive_trial_end = subscription.trial_end.astimezone(UTC).replace(tzinfo=None)

    result = await processor.process(
        _event(
            "evt_same_trial_end",
            BillingEventType.SUBSCRIPTION_UPDATED,
            trial_end=naive_trial_end,
        )
    )

    assert result.outcome == WebhookOutcome.IGNORED
    assert (await db.get_webhook_event("evt_same_trial_end")).detail == "no change"


@pytest.mark.asyncio
async def test_trial_converting_within_its_month_takes_paid_ceiling(
    db, provisioner, processor, evaluator, recorder
):
    """Trial and paid period share a key: used carries over, included becomes the plan's."""
    trial_start = datetime(2025, 10, 2, 12, 0, tzinfo=UTC)
    paid_start = datetime(2025, 10, 16, 12, 0, tzinfo=UTC)
    paid_end = datetime(2025, 11, 16, 12, 0, tzinfo=UTC)
    organization, _ = await provision_org(
        provisioner,
        plan_code=PlanCode.TRIAL,
        period_start=trial_start,
        period_end=paid_start,
    )
    await recorder.record_usage("org_acme", "api_call", 30, "req_trial_month")
    assert (await evaluator.decide("org_acme")).allow is False

    result = await processor.process(
        _event(
            "evt_convert_same_month",
            BillingEventType.PAYMENT_SUCCEEDED,
            period_start=paid_start,
            period_end=paid_end,
            plan_code=PlanCode.STARTER,
        )
    )

    assert result.outcome == WebhookOutcome.APPLIED
    decision = await evaluator.decide("org_acme")
    assert decision.allow is True
    assert decision.period_key == "2025-10"
    assert decision.remaining == 30

    counter = await db.get_counter(organization.org_id, "api_call", "2025-10")
    assert counter.included == 60
    assert counter.used == 30
    assert counter.period_start == paid_start
    assert counter.period_end == paid_end


@pytest.mark.slow
@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_event_apply_once(db, starter_org):
    """Deliveries released together on separate connections converge to one application."""
    organization, _ = starter_org
    workers = 6
    barrier = threading.Barrier(workers)
    event = _event(
        "evt_concurrent_rollover",
        BillingEventType.PAYMENT_SUCCEEDED,
        period_start=NEXT_PERIOD_START,
        period_end=NEXT_PERIOD_END,
    )

    def deliver(_: int):
        worker_db = MeteringDatabase(db_path=str(db.db_path), busy_timeout_seconds=10.0)
        worker_processor = WebhookConvergenceProcessor(worker_db, timezone=TEST_TIMEZONE)

        async def run():
            try:
                return await worker_processor.process(event)
            finally:
                await worker_db.close()

        barrier.wait()
        return asyncio.run(run())

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(deliver, range(workers)))

    assert all(r.converged for r in results)
    assert sum(not r.replayed for r in results) == 1
    assert {r.outcome for r in results} == {WebhookOutcome.APPLIED}

    subscription = await db.get_subscription_by_ref("sub_org_acme")
    assert subscription.current_period_start == NEXT_PERIOD_START
    fresh = await db.get_counter(organization.org_id, "api_call", "2025-11")
    assert fresh.used == 0
    assert fresh.included == 60


@pytest.mark.parametrize(
    "current,target",
    [
        (SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.TRIALING),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING),
    ],
)
def test_check_transition_rejects_lifecycle_violations(current, target):
    with pytest.raises(InvalidTransitionError) as exc_info:
        check_transition(current, target)
    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {"current": current.value, "target": target.value}


def test_check_transition_allows_recovery_from_past_due():
    check_transition(SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE)
