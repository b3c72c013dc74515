"""Timestamp normalization shared by models and period derivation."""

from datetime import UTC, datetime


def ensure_utc(moment: datetime) -> datetime:
    """Return an aware UTC datetime; naive input is interpreted as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def ensure_utc_optional(moment: datetime | None) -> datetime | None:
    return None if moment is None else ensure_utc(moment)
