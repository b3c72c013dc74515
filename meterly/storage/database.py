"""
Metering store using SQLite (bootstrap) → PostgreSQL (production).

Holds organizations, subscriptions, usage counters, the usage idempotency
ledger and the webhook convergence ledger.

Consistency:
- Every mutation runs inside BEGIN IMMEDIATE, which takes the database write
  lock up front, so a check-then-write sequence (idempotency lookup, event
  ledger lookup) cannot interleave with another writer, in this process or
  another one sharing the file
- Counter increments are single-statement `used = used + ?` updates
- A trigger rejects any update that would lower `used`
- Any exception inside a transaction rolls the whole unit back

Performance:
- WAL journal so readers never block the writer
- Composite primary key on (org_id, metric, period_key) for point reads
"""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from meterly.billing.errors import MeteringError, StoreUnavailableError
from meterly.models.billing_event import WebhookEventRecord
from meterly.models.organization import Organization
from meterly.models.subscription import Subscription
from meterly.models.usage import UsageCounter, UsageEvent
from meterly.storage.transaction import StoreTransaction

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS organizations (
        org_id TEXT PRIMARY KEY,
        external_ref TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        billing_customer_ref TEXT UNIQUE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        subscription_id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        billing_subscription_ref TEXT NOT NULL UNIQUE,
        plan_code TEXT NOT NULL,
        status TEXT NOT NULL,
        current_period_start TEXT NOT NULL,
        current_period_end TEXT NOT NULL,
        trial_end TEXT,
        canceled_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        FOREIGN KEY (org_id) REFERENCES organizations(org_id)
            ON DELETE CASCADE,
        CHECK (plan_code IN ('trial', 'starter', 'growth', 'pro')),
        CHECK (status IN ('trialing', 'active', 'past_due', 'canceled'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_counters (
        org_id TEXT NOT NULL,
        metric TEXT NOT NULL,
        period_key TEXT NOT NULL,
        included INTEGER NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        PRIMARY KEY (org_id, metric, period_key),
        FOREIGN KEY (org_id) REFERENCES organizations(org_id)
            ON DELETE CASCADE,
        CHECK (used >= 0),
        CHECK (included >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_events (
        idempotency_key TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        metric TEXT NOT NULL,
        period_key TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        occurred_at TEXT NOT NULL,
        result_used INTEGER NOT NULL,
        result_remaining INTEGER NOT NULL,
        recorded_at TEXT NOT NULL,

        FOREIGN KEY (org_id) REFERENCES organizations(org_id)
            ON DELETE CASCADE,
        CHECK (quantity > 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        external_event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        outcome TEXT NOT NULL,
        detail TEXT,
        applied_at TEXT NOT NULL,

        CHECK (outcome IN ('applied', 'ignored', 'rejected'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        org_id TEXT,
        action TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        resource_id TEXT,
        details TEXT,

        FOREIGN KEY (org_id) REFERENCES organizations(org_id)
            ON DELETE SET NULL
    )
    """,
    # At most one trialing/active subscription per organization
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_one_active
        ON subscriptions(org_id) WHERE status IN ('active', 'trialing')
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_usage_counters_used_monotonic
    BEFORE UPDATE OF used ON usage_counters
    WHEN NEW.used < OLD.used
    BEGIN
        SELECT RAISE(ABORT, 'usage_counters.used may only increase');
    END
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_org ON subscriptions(org_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_status ON subscriptions(status)",
    "CREATE INDEX IF NOT EXISTS idx_usage_counters_org ON usage_counters(org_id)",
    "CREATE INDEX IF NOT EXISTS idx_usage_events_org ON usage_events(org_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_org ON audit_log(org_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)",
)


class MeteringDatabase:
    """
    Durable store for the metering core.

    Uses SQLite for bootstrapping (free, embedded). Each instance owns one
    connection guarded by a lock; separate instances (workers) pointing at
    the same file serialize writes through SQLite's write lock.
    """

    def __init__(self, db_path: str = "./data/metering.db", busy_timeout_seconds: float = 30.0):
        """
        Initialize metering database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits for the write lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing metering database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_seconds)
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()
            logger.info("Metering database initialized successfully")
            self._initialized = True

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreUnavailableError(
                "Failed to initialize metering database", error=str(e)
            ) from e
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            # isolation_level=None: transactions are managed explicitly below
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_seconds,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    async def close(self) -> None:
        """Close the connection. The instance reconnects lazily if used again."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """
        Open a write transaction.

        Yields a StoreTransaction bound to the connection. The unit commits
        when the block exits normally and rolls back on any exception, so
        partial work is never visible.

        Raises:
            StoreUnavailableError: Store locked past the busy timeout, disk
                errors, or a corrupt database
        """
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                logger.error("Failed to open transaction", extra={"error": str(e)})
                raise StoreUnavailableError("Metering store unavailable", error=str(e)) from e

            try:
                yield StoreTransaction(conn)
            except BaseException as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error) and not isinstance(exc, sqlite3.IntegrityError):
                    logger.error("Transaction failed", extra={"error": str(exc)})
                    raise StoreUnavailableError(
                        "Metering store unavailable", error=str(exc)
                    ) from exc
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    logger.error("Failed to commit transaction", extra={"error": str(e)})
                    raise StoreUnavailableError(
                        "Metering store unavailable", error=str(e)
                    ) from e

    @contextmanager
    def reader(self) -> Iterator[StoreTransaction]:
        """Run read-only statements outside an explicit transaction."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield StoreTransaction(conn)
            except MeteringError:
                raise
            except sqlite3.Error as e:
                logger.error("Read failed", extra={"error": str(e)})
                raise StoreUnavailableError("Metering store unavailable", error=str(e)) from e

    async def ping(self) -> bool:
        """Check the store answers a trivial query (readiness probe)."""
        try:
            with self.reader() as tx:
                tx.conn.execute("SELECT 1").fetchone()
            return True
        except StoreUnavailableError:
            return False

    # Read helpers. Each runs a single point read with no side effects.

    async def get_organization_by_external_ref(self, external_ref: str) -> Organization | None:
        with self.reader() as tx:
            return tx.get_organization_by_external_ref(external_ref)

    async def get_organization(self, org_id: str) -> Organization | None:
        with self.reader() as tx:
            return tx.get_organization(org_id)

    async def get_active_subscription(self, org_id: str) -> Subscription | None:
        with self.reader() as tx:
            return tx.get_active_subscription(org_id)

    async def get_subscription_by_ref(self, billing_subscription_ref: str) -> Subscription | None:
        with self.reader() as tx:
            return tx.get_subscription_by_ref(billing_subscription_ref)

    async def get_counter(self, org_id: str, metric: str, period_key: str) -> UsageCounter | None:
        with self.reader() as tx:
            return tx.get_counter(org_id, metric, period_key)

    async def list_counters(self, org_id: str) -> list[UsageCounter]:
        with self.reader() as tx:
            return tx.list_counters(org_id)

    async def get_usage_event(self, idempotency_key: str) -> UsageEvent | None:
        with self.reader() as tx:
            return tx.get_usage_event(idempotency_key)

    async def get_webhook_event(self, external_event_id: str) -> WebhookEventRecord | None:
        with self.reader() as tx:
            return tx.get_webhook_event(external_event_id)


# Global database instance
_metering_db: MeteringDatabase | None = None


def get_metering_db() -> MeteringDatabase:
    """
    Get global metering database instance (singleton).

    Returns:
        MeteringDatabase: Database configured from settings
    """
    global _metering_db
    if _metering_db is None:
        from meterly.config import get_settings

        settings = get_settings()
        _metering_db = MeteringDatabase(
            db_path=settings.storage.db_path,
            busy_timeout_seconds=settings.storage.busy_timeout_seconds,
        )
    return _metering_db


def set_metering_db(db: MeteringDatabase | None) -> None:
    """Replace the global instance (application startup and tests)."""
    global _metering_db
    _metering_db = db
