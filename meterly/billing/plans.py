"""
Plan catalog.

Static table mapping each plan code to its per-period quota and trial length.
The included ceiling is copied onto a counter when the counter is seeded, so
changing this table never alters a period already in progress.
"""

from dataclasses import dataclass

from meterly.billing.errors import InvalidPlanCodeError
from meterly.models.subscription import PlanCode


@dataclass(frozen=True)
class PlanLimits:
    """Quota and trial configuration for one plan."""

    plan_code: PlanCode
    included: int
    trial_days: int

    @property
    def has_trial(self) -> bool:
        return self.trial_days > 0


PLAN_CATALOG: dict[PlanCode, PlanLimits] = {
    PlanCode.TRIAL: PlanLimits(PlanCode.TRIAL, included=30, trial_days=14),
    PlanCode.STARTER: PlanLimits(PlanCode.STARTER, included=60, trial_days=0),
    PlanCode.GROWTH: PlanLimits(PlanCode.GROWTH, included=300, trial_days=0),
    PlanCode.PRO: PlanLimits(PlanCode.PRO, included=1500, trial_days=0),
}


def parse_plan_code(plan_code: str | PlanCode) -> PlanCode:
    """Parse a plan code, raising InvalidPlanCodeError for unknown values."""
    try:
        return PlanCode(plan_code)
    except ValueError:
        raise InvalidPlanCodeError(
            f"Invalid plan code: {plan_code}. Must be one of: "
            f"{', '.join(code.value for code in PlanCode)}",
            plan_code=str(plan_code),
        ) from None


def plan_limits(plan_code: str | PlanCode) -> PlanLimits:
    """
    Look up the limits for a plan.

    Args:
        plan_code: Plan code (trial, starter, growth, pro)

    Returns:
        PlanLimits with the included per-period quota

    Raises:
        InvalidPlanCodeError: Unknown plan code
    """
    return PLAN_CATALOG[parse_plan_code(plan_code)]
