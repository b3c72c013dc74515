"""
Usage ledger: durable per-(organization, metric, period) counters.

Counters only grow. Seeding is insert-if-absent and never resets an existing
counter; increments are single-statement updates inside a write transaction,
so concurrent submissions can never lose an update.

Every counter read and write in the service goes through UsageLedger. The
`*_in` methods run inside a caller's transaction so the recorder, the
webhook processor and provisioning can commit counter changes together with
their own rows; the async methods are the standalone units of work.
"""

import logging

from meterly.billing.errors import InvalidMetricError, InvalidQuantityError
from meterly.billing.periods import PeriodBounds
from meterly.models.usage import CounterSnapshot, UsageCounter
from meterly.observability.metrics import track_counter_seeded
from meterly.storage.database import MeteringDatabase
from meterly.storage.transaction import StoreTransaction

logger = logging.getLogger(__name__)

MAX_METRIC_LENGTH = 64


def validate_quantity(quantity: int) -> int:
    """Quantities are positive integers; bools are rejected too."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(
            "Quantity must be a positive integer", quantity=repr(quantity)
        )
    return quantity


def validate_metric(metric: str) -> str:
    if not isinstance(metric, str) or not metric or len(metric) > MAX_METRIC_LENGTH:
        raise InvalidMetricError(
            f"Metric must be 1-{MAX_METRIC_LENGTH} characters", metric=repr(metric)[:80]
        )
    return metric


class UsageLedger:
    """
    Counter operations against the metering store.

    Each public async method is one atomic unit of work.
    """

    def __init__(self, db: MeteringDatabase):
        self.db = db

    # ------------------------------------------------------------------
    # Inside a caller's transaction
    # ------------------------------------------------------------------

    def read_in(
        self, tx: StoreTransaction, org_id: str, metric: str, period_key: str
    ) -> UsageCounter | None:
        return tx.get_counter(org_id, metric, period_key)

    def seed_in(
        self,
        tx: StoreTransaction,
        org_id: str,
        metric: str,
        bounds: PeriodBounds,
        included: int,
        source: str,
    ) -> tuple[UsageCounter, bool]:
        """Insert-if-absent; an existing counter is returned untouched."""
        counter, created = tx.seed_counter(org_id, metric, bounds, included)
        if created:
            self._seeded(counter, source)
        return counter, created

    def refresh_in(
        self,
        tx: StoreTransaction,
        org_id: str,
        metric: str,
        bounds: PeriodBounds,
        included: int,
        source: str,
    ) -> tuple[UsageCounter, bool]:
        """
        Make the counter of a (new) current period reflect the current plan.

        Used on period rollover and activation. A fresh key gets a fresh
        counter. When the new period renders to the same key as the old one
        (a trial converting within its starting month), the existing row takes
        the new ceiling and bounds and keeps its used value.
        """
        counter, created = tx.refresh_counter(org_id, metric, bounds, included)
        if created:
            self._seeded(counter, source)
        else:
            logger.info(
                "Usage counter refreshed for current period",
                extra={
                    "org_id": org_id,
                    "metric": metric,
                    "period_key": counter.period_key,
                    "included": counter.included,
                    "used": counter.used,
                },
            )
        return counter, created

    def increment_in(
        self,
        tx: StoreTransaction,
        org_id: str,
        metric: str,
        bounds: PeriodBounds,
        quantity: int,
        included_ceiling: int,
    ) -> CounterSnapshot:
        """
        Seed-if-absent then add quantity.

        The cap is not enforced here: recording after the fact always counts, and
        overage shows up as remaining == 0.
        """
        validate_quantity(quantity)
        tx.seed_counter(org_id, metric, bounds, included_ceiling)
        counter = tx.add_usage(org_id, metric, bounds.period_key, quantity)
        return counter.snapshot()

    def _seeded(self, counter: UsageCounter, source: str) -> None:
        track_counter_seeded(source)
        logger.info(
            "Usage counter seeded",
            extra={
                "org_id": counter.org_id,
                "metric": counter.metric,
                "period_key": counter.period_key,
                "included": counter.included,
                "source": source,
            },
        )

    # ------------------------------------------------------------------
    # Standalone operations
    # ------------------------------------------------------------------

    async def get_counter(self, org_id: str, metric: str, period_key: str) -> UsageCounter | None:
        """Point read. A missing counter is returned as None, never as zero."""
        with self.db.reader() as tx:
            return self.read_in(tx, org_id, metric, period_key)

    async def seed_counter(
        self, org_id: str, metric: str, bounds: PeriodBounds, included: int
    ) -> tuple[UsageCounter, bool]:
        """
        Create the counter for a period if it does not exist.

        Returns:
            (counter, created): created is False when an existing counter was
            found; its used value is left untouched.
        """
        validate_metric(metric)
        with self.db.transaction() as tx:
            return self.seed_in(tx, org_id, metric, bounds, included, source="ledger")

    async def increment_if_room(
        self,
        org_id: str,
        metric: str,
        bounds: PeriodBounds,
        quantity: int,
        included_ceiling: int,
    ) -> CounterSnapshot:
        """
        Atomically add quantity, creating the counter with the given ceiling if absent.

        Args:
            org_id: Internal organization id
            metric: Metric name (e.g. "api_call")
            bounds: Period the usage is attributed to
            quantity: Positive units to add
            included_ceiling: Plan quota used only when the counter is created

        Returns:
            CounterSnapshot with used, included and remaining after the add

        Raises:
            InvalidQuantityError: quantity is not a positive integer
            StoreUnavailableError: store failure (nothing is written)
        """
        validate_quantity(quantity)
        validate_metric(metric)
        with self.db.transaction() as tx:
            return self.increment_in(tx, org_id, metric, bounds, quantity, included_ceiling)
