"""
Quota evaluation.

Answers "may this organization perform one more metered action now?" from
the durable counter of its current period. Evaluation is read-only: it never
creates a counter and never increments one.

A check and a later record are not atomic with each other; a burst of
concurrent checks may all see room and the following records may push the
counter past its ceiling. Recording never denies, so the overage is counted.
"""

import logging

from meterly.billing.errors import CounterNotFoundError
from meterly.billing.periods import DEFAULT_TIMEZONE
from meterly.billing.resolution import resolve_billing_context
from meterly.billing.usage_ledger import UsageLedger, validate_metric
from meterly.models.usage import QuotaDecision
from meterly.observability.metrics import track_quota_decision
from meterly.storage.database import MeteringDatabase

logger = logging.getLogger(__name__)

REASON_QUOTA_EXCEEDED = "quota_exceeded"
REASON_COUNTER_MISSING = "counter_missing"


class QuotaEvaluator:
    """Allow/deny decisions against the current period's counter."""

    def __init__(
        self,
        db: MeteringDatabase,
        timezone: str = DEFAULT_TIMEZONE,
        ledger: UsageLedger | None = None,
    ):
        """
        Initialize quota evaluator.

        Args:
            db: Metering store
            timezone: Application timezone for period keys
            ledger: Counter reads (defaults to a ledger on db)
        """
        self.db = db
        self.ledger = ledger or UsageLedger(db)
        self.timezone = timezone

    async def check_quota(self, external_ref: str, metric: str = "api_call") -> QuotaDecision:
        """
        Evaluate quota for an organization.

        Args:
            external_ref: Identity-provider organization reference
            metric: Metric to check

        Returns:
            QuotaDecision: allow is True iff included - used > 0. Denied
            decisions report remaining 0 and retry_at at the period end.

        Raises:
            OrgNotFoundError: Unknown organization
            NoActiveSubscriptionError: No trialing/active subscription
            CounterNotFoundError: Current period was never seeded (deny)
            StoreUnavailableError: Store failure (never degrades to allow)
        """
        validate_metric(metric)

        with self.db.reader() as tx:
            context = resolve_billing_context(tx, external_ref, self.timezone)
            counter = self.ledger.read_in(tx, context.org_id, metric, context.period_key)

        if counter is None:
            logger.warning(
                "Quota check without seeded counter",
                extra={
                    "org_id": context.org_id,
                    "metric": metric,
                    "period_key": context.period_key,
                },
            )
            raise CounterNotFoundError(
                "Usage counter not seeded for current period",
                org_id=context.org_id,
                metric=metric,
                period_key=context.period_key,
                retry_at=context.bounds.end.isoformat(),
            )

        allow = not counter.is_exhausted

        decision = QuotaDecision(
            allow=allow,
            remaining=counter.remaining if allow else 0,
            period_key=context.period_key,
            retry_at=None if allow else context.bounds.end,
            reason=None if allow else REASON_QUOTA_EXCEEDED,
        )

        track_quota_decision(metric, "allowed" if allow else REASON_QUOTA_EXCEEDED)
        if not allow:
            logger.info(
                "Quota exceeded",
                extra={
                    "org_id": context.org_id,
                    "metric": metric,
                    "period_key": context.period_key,
                    "used": counter.used,
                    "included": counter.included,
                },
            )
        return decision

    async def decide(self, external_ref: str, metric: str = "api_call") -> QuotaDecision:
        """
        Like check_quota, but a missing counter becomes a denial.

        HTTP callers use this so both denial causes map to 429.
        """
        try:
            return await self.check_quota(external_ref, metric)
        except CounterNotFoundError as e:
            track_quota_decision(metric, REASON_COUNTER_MISSING)
            retry_at = e.details.get("retry_at")
            return QuotaDecision(
                allow=False,
                remaining=0,
                period_key=e.details.get("period_key"),
                retry_at=retry_at,
                reason=REASON_COUNTER_MISSING,
            )
