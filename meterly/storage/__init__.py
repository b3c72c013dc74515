"""
Storage layer for organizations, subscriptions and usage counters.

Uses SQLite for bootstrapping (free, embedded).
Migration path to PostgreSQL for production scale.
"""

from meterly.storage.database import MeteringDatabase, get_metering_db, set_metering_db
from meterly.storage.transaction import StoreTransaction

__all__ = ["MeteringDatabase", "StoreTransaction", "get_metering_db", "set_metering_db"]
