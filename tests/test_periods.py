"""
Tests for billing period derivation.

Tests:
- Period key formatting in the reference timezone
- Derivation from current_period_start, never wall-clock time
- Naive timestamps treated as UTC
"""

from datetime import UTC, datetime, timedelta, timezone

from meterly.billing.periods import (
    PeriodBounds,
    ensure_utc,
    period_bounds,
    period_key,
)
from meterly.models.subscription import PlanCode, Subscription, SubscriptionStatus


def _subscription(start: datetime, end: datetime) -> Subscription:
    return Subscription(
        subscription_id="subs_1",
        org_id="org_1",
        billing_subscription_ref="sub_1",
        plan_code=PlanCode.STARTER,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start,
        current_period_end=end,
    )


def test_period_key_format():
    assert period_key(datetime(2025, 10, 15, 12, 0, tzinfo=UTC)) == "2025-10"


def test_period_key_uses_reference_timezone():
    """Early hours of the 1st in UTC are still the previous month in Los Angeles."""
    moment = datetime(2025, 11, 1, 3, 0, tzinfo=UTC)

    assert period_key(moment, "America/Los_Angeles") == "2025-10"
    assert period_key(moment, "UTC") == "2025-11"


def test_period_key_independent_of_input_offset():
    """The same instant expressed in different offsets maps to one key."""
    utc_moment = datetime(2025, 3, 1, 6, 0, tzinfo=UTC)
    tokyo_moment = utc_moment.astimezone(timezone(timedelta(hours=9)))

    assert period_key(utc_moment) == period_key(tokyo_moment)


def test_naive_timestamps_are_utc():
    naive = datetime(2025, 1, 1, 0, 0)

    assert ensure_utc(naive) == datetime(2025, 1, 1, 0, 0, tzinfo=UTC)
    assert period_key(naive, "UTC") == "2025-01"


def test_year_boundary():
    assert period_key(datetime(2025, 12, 31, 23, 0, tzinfo=UTC), "UTC") == "2025-12"
    assert period_key(datetime(2026, 1, 1, 0, 0, tzinfo=UTC), "UTC") == "2026-01"


def test_period_bounds_follow_subscription_not_now():
    """A subscription whose period ended long ago still reports that period."""
    start = datetime(2020, 5, 10, tzinfo=UTC)
    end = datetime(2020, 6, 10, tzinfo=UTC)

    bounds = period_bounds(_subscription(start, end), "UTC")

    assert bounds == PeriodBounds(period_key="2020-05", start=start, end=end)
    assert bounds.contains(datetime(2020, 5, 20, tzinfo=UTC))
    assert not bounds.contains(end)
