"""
Row-level store operations executed inside one unit of work.

StoreTransaction methods are synchronous: they run while the owning
MeteringDatabase holds its connection lock, and inside BEGIN IMMEDIATE when
obtained from MeteringDatabase.transaction(). Callers compose them freely;
the unit commits or rolls back as a whole.
"""

import json
import sqlite3
import uuid
from datetime import UTC, datetime

from meterly.billing.errors import ActiveSubscriptionExistsError, BillingCustomerConflictError
from meterly.billing.periods import PeriodBounds, ensure_utc
from meterly.models.billing_event import WebhookEventRecord, WebhookOutcome
from meterly.models.organization import Organization
from meterly.models.subscription import (
    PlanCode,
    Subscription,
    SubscriptionStatus,
    SubscriptionUpdate,
)
from meterly.models.usage import UsageCounter, UsageEvent, UsageSnapshot


def _ts(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    """Generate an internal identifier, e.g. org_3f2a...."""
    return f"{prefix}_{uuid.uuid4().hex}"


def _row_to_organization(row: sqlite3.Row) -> Organization:
    return Organization(
        org_id=row["org_id"],
        external_ref=row["external_ref"],
        name=row["name"],
        billing_customer_ref=row["billing_customer_ref"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        org_id=row["org_id"],
        billing_subscription_ref=row["billing_subscription_ref"],
        plan_code=PlanCode(row["plan_code"]),
        status=SubscriptionStatus(row["status"]),
        current_period_start=_parse_ts(row["current_period_start"]),
        current_period_end=_parse_ts(row["current_period_end"]),
        trial_end=_parse_ts(row["trial_end"]),
        canceled_at=_parse_ts(row["canceled_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_counter(row: sqlite3.Row) -> UsageCounter:
    return UsageCounter(
        org_id=row["org_id"],
        metric=row["metric"],
        period_key=row["period_key"],
        included=row["included"],
        used=row["used"],
        period_start=_parse_ts(row["period_start"]),
        period_end=_parse_ts(row["period_end"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_usage_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        idempotency_key=row["idempotency_key"],
        org_id=row["org_id"],
        metric=row["metric"],
        period_key=row["period_key"],
        quantity=row["quantity"],
        occurred_at=_parse_ts(row["occurred_at"]),
        result=UsageSnapshot(
            period_key=row["period_key"],
            used=row["result_used"],
            remaining=row["result_remaining"],
        ),
        recorded_at=_parse_ts(row["recorded_at"]),
    )


class StoreTransaction:
    """Typed row operations over one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def get_organization(self, org_id: str) -> Organization | None:
        row = self.conn.execute(
            "SELECT * FROM organizations WHERE org_id = ?", (org_id,)
        ).fetchone()
        return _row_to_organization(row) if row else None

    def get_organization_by_external_ref(self, external_ref: str) -> Organization | None:
        row = self.conn.execute(
            "SELECT * FROM organizations WHERE external_ref = ?", (external_ref,)
        ).fetchone()
        return _row_to_organization(row) if row else None

    def get_organization_by_billing_ref(self, billing_customer_ref: str) -> Organization | None:
        row = self.conn.execute(
            "SELECT * FROM organizations WHERE billing_customer_ref = ?",
            (billing_customer_ref,),
        ).fetchone()
        return _row_to_organization(row) if row else None

    def ensure_organization(
        self,
        external_ref: str,
        name: str,
        billing_customer_ref: str | None = None,
    ) -> tuple[Organization, bool]:
        """
        Create the organization if absent.

        Returns:
            (organization, created) - created is False when it already existed
        """
        if billing_customer_ref:
            self._check_billing_ref_free(billing_customer_ref, external_ref=external_ref)

        now = _now()
        cursor = self.conn.execute(
            """
            INSERT INTO organizations (
                org_id, external_ref, name, billing_customer_ref, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(external_ref) DO NOTHING
            """,
            (new_id("org"), external_ref, name, billing_customer_ref, now, now),
        )
        created = cursor.rowcount > 0
        organization = self.get_organization_by_external_ref(external_ref)

        if not created and billing_customer_ref and organization.billing_customer_ref is None:
            organization = self.set_billing_customer_ref(organization.org_id, billing_customer_ref)

        return organization, created

    def set_billing_customer_ref(self, org_id: str, billing_customer_ref: str) -> Organization:
        self._check_billing_ref_free(billing_customer_ref, org_id=org_id)
        self.conn.execute(
            """
            UPDATE organizations
            SET billing_customer_ref = ?,
                updated_at = ?
            WHERE org_id = ?
            """,
            (billing_customer_ref, _now(), org_id),
        )
        return self.get_organization(org_id)

    def _check_billing_ref_free(
        self,
        billing_customer_ref: str,
        external_ref: str | None = None,
        org_id: str | None = None,
    ) -> None:
        owner = self.get_organization_by_billing_ref(billing_customer_ref)
        if owner is None or owner.external_ref == external_ref or owner.org_id == org_id:
            return
        raise BillingCustomerConflictError(
            "Billing customer already linked to another organization",
            billing_customer_ref=billing_customer_ref,
        )

    def delete_organization(self, org_id: str) -> bool:
        """Hard delete (administrative reset). Cascades to dependent rows."""
        cursor = self.conn.execute("DELETE FROM organizations WHERE org_id = ?", (org_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription_by_ref(self, billing_subscription_ref: str) -> Subscription | None:
        row = self.conn.execute(
            "SELECT * FROM subscriptions WHERE billing_subscription_ref = ?",
            (billing_subscription_ref,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def get_active_subscription(self, org_id: str) -> Subscription | None:
        row = self.conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE org_id = ? AND status IN ('active', 'trialing')
            """,
            (org_id,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def insert_subscription(
        self,
        org_id: str,
        billing_subscription_ref: str,
        plan_code: PlanCode,
        status: SubscriptionStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        trial_end: datetime | None = None,
    ) -> Subscription:
        """
        Insert a subscription row.

        Raises:
            ActiveSubscriptionExistsError: status is trialing/active and the
                organization already has an active subscription
        """
        now = _now()
        try:
            self.conn.execute(
                """
                INSERT INTO subscriptions (
                    subscription_id, org_id, billing_subscription_ref, plan_code, status,
                    current_period_start, current_period_end, trial_end, canceled_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id("sub"),
                    org_id,
                    billing_subscription_ref,
                    plan_code.value,
                    status.value,
                    _ts(current_period_start),
                    _ts(current_period_end),
                    _ts(trial_end),
                    now if status == SubscriptionStatus.CANCELED else None,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as e:
            if "idx_subscriptions_one_active" in str(e) or "subscriptions.org_id" in str(e):
                raise ActiveSubscriptionExistsError(
                    "Organization already has an active subscription", org_id=org_id
                ) from e
            raise
        return self.get_subscription_by_ref(billing_subscription_ref)

    def update_subscription(self, subscription_id: str, update: SubscriptionUpdate) -> Subscription:
        """Overwrite only the provided fields."""
        updates = []
        params: list = []

        if update.status is not None:
            updates.append("status = ?")
            params.append(update.status.value)
        if update.plan_code is not None:
            updates.append("plan_code = ?")
            params.append(update.plan_code.value)
        if update.current_period_start is not None:
            updates.append("current_period_start = ?")
            params.append(_ts(update.current_period_start))
        if update.current_period_end is not None:
            updates.append("current_period_end = ?")
            params.append(_ts(update.current_period_end))
        if update.trial_end is not None:
            updates.append("trial_end = ?")
            params.append(_ts(update.trial_end))
        if update.canceled_at is not None:
            updates.append("canceled_at = ?")
            params.append(_ts(update.canceled_at))

        if updates:
            updates.append("updated_at = ?")
            params.append(_now())
            params.append(subscription_id)
            self.conn.execute(
                f"UPDATE subscriptions SET {', '.join(updates)} WHERE subscription_id = ?",
                params,
            )

        row = self.conn.execute(
            "SELECT * FROM subscriptions WHERE subscription_id = ?", (subscription_id,)
        ).fetchone()
        return _row_to_subscription(row)

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def get_counter(self, org_id: str, metric: str, period_key: str) -> UsageCounter | None:
        row = self.conn.execute(
            """
            SELECT * FROM usage_counters
            WHERE org_id = ? AND metric = ? AND period_key = ?
            """,
            (org_id, metric, period_key),
        ).fetchone()
        return _row_to_counter(row) if row else None

    def list_counters(self, org_id: str) -> list[UsageCounter]:
        rows = self.conn.execute(
            "SELECT * FROM usage_counters WHERE org_id = ? ORDER BY period_key DESC, metric",
            (org_id,),
        ).fetchall()
        return [_row_to_counter(row) for row in rows]

    def seed_counter(
        self, org_id: str, metric: str, bounds: PeriodBounds, included: int
    ) -> tuple[UsageCounter, bool]:
        """
        Create the counter if absent; never touches an existing one.

        Returns:
            (counter, created)
        """
        now = _now()
        cursor = self.conn.execute(
            """
            INSERT INTO usage_counters (
                org_id, metric, period_key, included, used,
                period_start, period_end, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
            ON CONFLICT(org_id, metric, period_key) DO NOTHING
            """,
            (
                org_id,
                metric,
                bounds.period_key,
                included,
                _ts(bounds.start),
                _ts(bounds.end),
                now,
                now,
            ),
        )
        return self.get_counter(org_id, metric, bounds.period_key), cursor.rowcount > 0

    def refresh_counter(
        self, org_id: str, metric: str, bounds: PeriodBounds, included: int
    ) -> tuple[UsageCounter, bool]:
        """
        Create the counter, or move an existing one to the given ceiling and bounds.

        used is never written here, so consumption already counted under the
        same period key survives a same-month rollover.

        Returns:
            (counter, created)
        """
        existed = self.get_counter(org_id, metric, bounds.period_key) is not None
        now = _now()
        self.conn.execute(
            """
            INSERT INTO usage_counters (
                org_id, metric, period_key, included, used,
                period_start, period_end, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
            ON CONFLICT(org_id, metric, period_key) DO UPDATE SET
                included = excluded.included,
                period_start = excluded.period_start,
                period_end = excluded.period_end,
                updated_at = excluded.updated_at
            """,
            (
                org_id,
                metric,
                bounds.period_key,
                included,
                _ts(bounds.start),
                _ts(bounds.end),
                now,
                now,
            ),
        )
        return self.get_counter(org_id, metric, bounds.period_key), not existed

    def add_usage(self, org_id: str, metric: str, period_key: str, quantity: int) -> UsageCounter:
        """
        Atomically add quantity to an existing counter.

        Single-statement update: concurrent adds are never lost.
        """
        cursor = self.conn.execute(
            """
            UPDATE usage_counters
            SET used = used + ?,
                updated_at = ?
            WHERE org_id = ? AND metric = ? AND period_key = ?
            """,
            (quantity, _now(), org_id, metric, period_key),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"usage counter missing: {org_id}/{metric}/{period_key}")
        return self.get_counter(org_id, metric, period_key)

    # ------------------------------------------------------------------
    # Usage idempotency ledger
    # ------------------------------------------------------------------

    def get_usage_event(self, idempotency_key: str) -> UsageEvent | None:
        row = self.conn.execute(
            "SELECT * FROM usage_events WHERE idempotency_key = ?", (idempotency_key,)
        ).fetchone()
        return _row_to_usage_event(row) if row else None

    def insert_usage_event(self, event: UsageEvent) -> None:
        self.conn.execute(
            """
            INSERT INTO usage_events (
                idempotency_key, org_id, metric, period_key, quantity,
                occurred_at, result_used, result_remaining, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.idempotency_key,
                event.org_id,
                event.metric,
                event.period_key,
                event.quantity,
                _ts(event.occurred_at),
                event.result.used,
                event.result.remaining,
                _ts(event.recorded_at),
            ),
        )

    # ------------------------------------------------------------------
    # Webhook convergence ledger
    # ------------------------------------------------------------------

    def get_webhook_event(self, external_event_id: str) -> WebhookEventRecord | None:
        row = self.conn.execute(
            "SELECT * FROM webhook_events WHERE external_event_id = ?", (external_event_id,)
        ).fetchone()
        if not row:
            return None
        return WebhookEventRecord(
            external_event_id=row["external_event_id"],
            event_type=row["event_type"],
            outcome=WebhookOutcome(row["outcome"]),
            detail=row["detail"],
            applied_at=_parse_ts(row["applied_at"]),
        )

    def record_webhook_event(self, record: WebhookEventRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO webhook_events (
                external_event_id, event_type, outcome, detail, applied_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                record.external_event_id,
                record.event_type,
                record.outcome.value,
                record.detail,
                _ts(record.applied_at),
            ),
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_audit(
        self,
        action: str,
        resource_type: str,
        org_id: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        """Append an audit row (compliance: track administrative mutations)."""
        self.conn.execute(
            """
            INSERT INTO audit_log (
                timestamp, org_id, action, resource_type, resource_id, details
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                _now(),
                org_id,
                action,
                resource_type,
                resource_id,
                json.dumps(details, default=str) if details else None,
            ),
        )
