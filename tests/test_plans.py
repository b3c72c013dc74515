"""Tests for the plan catalog."""

import pytest

from meterly.billing.errors import InvalidPlanCodeError
from meterly.billing.plans import PLAN_CATALOG, plan_limits
from meterly.models.subscription import PlanCode


@pytest.mark.parametrize(
    "plan_code,included",
    [("trial", 30), ("starter", 60), ("growth", 300), ("pro", 1500)],
)
def test_included_quota_per_plan(plan_code, included):
    assert plan_limits(plan_code).included == included


def test_only_trial_plan_has_trial():
    assert plan_limits(PlanCode.TRIAL).has_trial
    assert not any(
        limits.has_trial for code, limits in PLAN_CATALOG.items() if code != PlanCode.TRIAL
    )


def test_unknown_plan_code_rejected():
    with pytest.raises(InvalidPlanCodeError) as exc_info:
        plan_limits("enterprise")

    assert exc_info.value.status_code == 400
    assert exc_info.value.details["plan_code"] == "enterprise"
