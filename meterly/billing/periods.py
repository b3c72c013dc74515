"""
Billing period derivation.

The period key is always computed from the subscription's
current_period_start, never from wall-clock time. A usage request that lands
just after a rollover but before the rollover webhook converges is therefore
still attributed to the period the subscription says is current.

Keys are rendered in one application-wide timezone so clients in different
zones cannot disagree about which month a period belongs to.
"""

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

from meterly.models.subscription import Subscription
from meterly.models.timestamps import ensure_utc

DEFAULT_TIMEZONE = "America/Los_Angeles"


@dataclass(frozen=True)
class PeriodBounds:
    """Canonical key and UTC boundaries of one billing period."""

    period_key: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end


@lru_cache(maxsize=16)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def period_key(period_start: datetime, timezone: str = DEFAULT_TIMEZONE) -> str:
    """
    Format a period start as its canonical YYYY-MM key.

    Args:
        period_start: Subscription current_period_start
        timezone: Application reference timezone (IANA name)

    Returns:
        Period key, e.g. "2025-10"
    """
    local = ensure_utc(period_start).astimezone(_zone(timezone))
    return f"{local.year:04d}-{local.month:02d}"


def period_bounds(subscription: Subscription, timezone: str = DEFAULT_TIMEZONE) -> PeriodBounds:
    """Derive the current period of a subscription."""
    return PeriodBounds(
        period_key=period_key(subscription.current_period_start, timezone),
        start=ensure_utc(subscription.current_period_start),
        end=ensure_utc(subscription.current_period_end),
    )
