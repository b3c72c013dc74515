"""
Usage metering data models.

UsageCounter is the durable per-(organization, metric, period) row.
UsageEvent is the idempotency record committed alongside each increment.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class UsageCounter(BaseModel):
    """
    Usage counter for one (organization, metric, period).

    `used` only ever grows. A new period gets a new counter.
    """

    org_id: str
    metric: str
    period_key: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    included: int = Field(..., ge=0, description="Quota ceiling copied from the plan")
    used: int = Field(default=0, ge=0)
    period_start: datetime
    period_end: datetime

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def remaining(self) -> int:
        """Remaining quota, never negative."""
        return max(0, self.included - self.used)

    @property
    def is_exhausted(self) -> bool:
        return self.included - self.used <= 0

    def snapshot(self) -> "CounterSnapshot":
        return CounterSnapshot(used=self.used, included=self.included, remaining=self.remaining)


class CounterSnapshot(BaseModel):
    """Counter state observed at the moment of a committed increment."""

    used: int = Field(..., ge=0)
    included: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)


class UsageSnapshot(BaseModel):
    """Result of recording usage. Replays of an idempotency key return it unchanged."""

    period_key: str
    used: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)


class UsageEvent(BaseModel):
    """Idempotency record: one row per caller-supplied idempotency key."""

    idempotency_key: str
    org_id: str
    metric: str
    period_key: str
    quantity: int = Field(..., gt=0)
    occurred_at: datetime
    result: UsageSnapshot
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class QuotaDecision(BaseModel):
    """
    Outcome of a quota check.

    Denial is a normal outcome: remaining is 0 and retry_at points at the end
    of the period whose quota is exhausted (or missing).
    """

    allow: bool
    remaining: int = Field(..., ge=0)
    period_key: str | None = Field(default=None)
    retry_at: datetime | None = Field(default=None)
    reason: str | None = Field(default=None, description="quota_exceeded | counter_missing")

    def retry_after_seconds(self, now: datetime | None = None) -> int:
        """Seconds until retry_at, at least 1 (used for the Retry-After header)."""
        if self.retry_at is None:
            return 3600
        delta = (self.retry_at - (now or datetime.now(UTC))).total_seconds()
        return max(1, int(delta))


class Entitlements(BaseModel):
    """Read-only view of plan, quota and consumption for the current period."""

    plan_code: str
    included: int = Field(..., ge=0)
    used: int = Field(..., ge=0)
    remaining: int
    period_key: str
