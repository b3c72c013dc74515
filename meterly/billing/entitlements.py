"""
Entitlements reader: plan, quota and consumption for the current period.
"""

import logging

from meterly.billing.periods import DEFAULT_TIMEZONE
from meterly.billing.plans import plan_limits
from meterly.billing.resolution import resolve_billing_context
from meterly.billing.usage_ledger import UsageLedger, validate_metric
from meterly.models.usage import Entitlements
from meterly.storage.database import MeteringDatabase

logger = logging.getLogger(__name__)


class EntitlementsReader:
    """Read-only view; never creates a counter."""

    def __init__(
        self,
        db: MeteringDatabase,
        timezone: str = DEFAULT_TIMEZONE,
        ledger: UsageLedger | None = None,
    ):
        self.db = db
        self.ledger = ledger or UsageLedger(db)
        self.timezone = timezone

    async def get_entitlements(self, external_ref: str, metric: str = "api_call") -> Entitlements:
        """
        Report the organization's plan and current-period consumption.

        A period that was never seeded reports zeros for included, used and
        remaining, matching the quota evaluator which denies in that case.

        Raises:
            OrgNotFoundError: Unknown organization
            NoActiveSubscriptionError: No trialing/active subscription
        """
        validate_metric(metric)

        with self.db.reader() as tx:
            context = resolve_billing_context(tx, external_ref, self.timezone)
            counter = self.ledger.read_in(tx, context.org_id, metric, context.period_key)

        # Plan lookup validates the stored code even when no counter exists
        plan = plan_limits(context.subscription.plan_code)

        if counter is None:
            logger.debug(
                "Entitlements requested for unseeded period",
                extra={"org_id": context.org_id, "period_key": context.period_key},
            )
            return Entitlements(
                plan_code=plan.plan_code.value,
                included=0,
                used=0,
                remaining=0,
                period_key=context.period_key,
            )

        return Entitlements(
            plan_code=plan.plan_code.value,
            included=counter.included,
            used=counter.used,
            remaining=counter.remaining,
            period_key=context.period_key,
        )
