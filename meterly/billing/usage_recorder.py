"""
Usage recording with exactly-once semantics.

Each submission carries a caller-supplied idempotency key. The key lookup,
counter seed, increment and idempotency record all run in one write
transaction, so:
- a retried submission returns the snapshot stored by the first one
- two concurrent submissions with the same key apply exactly one increment
- an abandoned submission leaves neither the increment nor the record
"""

import logging
from datetime import UTC, datetime

from meterly.billing.errors import IdempotencyKeyConflictError, InvalidIdempotencyKeyError
from meterly.billing.periods import DEFAULT_TIMEZONE, ensure_utc
from meterly.billing.plans import plan_limits
from meterly.billing.resolution import check_org_reference, resolve_billing_context
from meterly.billing.usage_ledger import UsageLedger, validate_metric, validate_quantity
from meterly.models.usage import UsageEvent, UsageSnapshot
from meterly.observability.metrics import track_usage_recorded, track_usage_replay
from meterly.storage.database import MeteringDatabase
from meterly.storage.transaction import StoreTransaction

logger = logging.getLogger(__name__)


class UsageRecorder:
    """
    Record metered usage against the current period's counter.

    Recording never denies: usage that already happened is always counted,
    and overage shows up as remaining == 0.
    """

    def __init__(
        self,
        db: MeteringDatabase,
        timezone: str = DEFAULT_TIMEZONE,
        idempotency_key_max_length: int = 255,
        ledger: UsageLedger | None = None,
    ):
        """
        Initialize usage recorder.

        Args:
            db: Metering store
            timezone: Application timezone for period keys
            idempotency_key_max_length: Longest accepted idempotency key
            ledger: Counter operations (defaults to a ledger on db)
        """
        self.db = db
        self.ledger = ledger or UsageLedger(db)
        self.timezone = timezone
        self.idempotency_key_max_length = idempotency_key_max_length

    def _validate_key(self, idempotency_key: str) -> str:
        if (
            not isinstance(idempotency_key, str)
            or not idempotency_key.strip()
            or len(idempotency_key) > self.idempotency_key_max_length
        ):
            raise InvalidIdempotencyKeyError(
                f"Idempotency key must be 1-{self.idempotency_key_max_length} characters"
            )
        return idempotency_key

    async def record_usage(
        self,
        external_ref: str,
        metric: str,
        quantity: int,
        idempotency_key: str,
        occurred_at: datetime | None = None,
    ) -> UsageSnapshot:
        """
        Record usage exactly once per idempotency key.

        Args:
            external_ref: Identity-provider organization reference
            metric: Metric name (e.g. "api_call")
            quantity: Positive units consumed
            idempotency_key: Caller token, unique per logical submission
            occurred_at: When the usage happened (defaults to now). Attribution
                always follows the subscription's current period.

        Returns:
            UsageSnapshot: period_key, used and remaining after the increment,
            or the snapshot stored by the first submission of this key

        Raises:
            InvalidQuantityError / InvalidMetricError / InvalidIdempotencyKeyError
            InvalidOrgReferenceError: Malformed organization reference
            OrgNotFoundError / NoActiveSubscriptionError
            IdempotencyKeyConflictError: Key already used by another
                organization or metric
            StoreUnavailableError: Store failure (nothing is written)
        """
        validate_quantity(quantity)
        validate_metric(metric)
        self._validate_key(idempotency_key)
        check_org_reference(external_ref)
        occurred_at = ensure_utc(occurred_at or datetime.now(UTC))

        with self.db.transaction() as tx:
            replay = self._find_replay(tx, idempotency_key, external_ref, metric)
            if replay is not None:
                snapshot, plan_code, exhausted = replay, None, False
            else:
                context = resolve_billing_context(tx, external_ref, self.timezone)
                plan = plan_limits(context.subscription.plan_code)

                if not context.bounds.contains(occurred_at):
                    logger.info(
                        "Usage occurred outside the current period",
                        extra={
                            "org_id": context.org_id,
                            "period_key": context.period_key,
                            "occurred_at": occurred_at.isoformat(),
                        },
                    )
                counter = self.ledger.increment_in(
                    tx, context.org_id, metric, context.bounds, quantity, plan.included
                )
                snapshot = UsageSnapshot(
                    period_key=context.period_key,
                    used=counter.used,
                    remaining=counter.remaining,
                )
                tx.insert_usage_event(
                    UsageEvent(
                        idempotency_key=idempotency_key,
                        org_id=context.org_id,
                        metric=metric,
                        period_key=context.period_key,
                        quantity=quantity,
                        occurred_at=occurred_at,
                        result=snapshot,
                    )
                )
                plan_code, exhausted = plan.plan_code.value, counter.remaining == 0

        if replay is not None:
            track_usage_replay(metric)
            logger.info(
                "Usage submission replayed",
                extra={"idempotency_key": idempotency_key, "period_key": snapshot.period_key},
            )
            return snapshot

        track_usage_recorded(metric, plan_code, quantity, exhausted)
        logger.info(
            "Usage recorded",
            extra={
                "org_id": context.org_id,
                "metric": metric,
                "quantity": quantity,
                "period_key": snapshot.period_key,
                "used": snapshot.used,
                "remaining": snapshot.remaining,
            },
        )
        return snapshot

    def _find_replay(
        self, tx: StoreTransaction, idempotency_key: str, external_ref: str, metric: str
    ) -> UsageSnapshot | None:
        """Return the stored snapshot when this key was already recorded."""
        existing = tx.get_usage_event(idempotency_key)
        if existing is None:
            return None

        organization = tx.get_organization_by_external_ref(external_ref)
        if organization is None or organization.org_id != existing.org_id:
            raise IdempotencyKeyConflictError(
                "Idempotency key already used by another organization",
                idempotency_key=idempotency_key,
            )
        if existing.metric != metric:
            raise IdempotencyKeyConflictError(
                "Idempotency key already used for another metric",
                idempotency_key=idempotency_key,
                metric=existing.metric,
            )
        return existing.result
