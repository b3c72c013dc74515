"""
Billing event convergence.

Applies normalized billing events (see models.billing_event) to local
organization/subscription state:
- subscription.created / subscription.updated / subscription.canceled
- payment.succeeded / payment.failed

Each event is applied in one write transaction together with its row in the
webhook ledger. A ledger hit returns immediately without side effects, so a
provider retrying the same delivery any number of times converges to the
state of applying it once. Failures roll back both the state change and the
ledger row, leaving the event free to be redelivered.

This processor is the only writer of period rollover after provisioning.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from meterly.billing.errors import InvalidTransitionError
from meterly.billing.periods import DEFAULT_TIMEZONE, ensure_utc, period_bounds
from meterly.billing.plans import plan_limits
from meterly.billing.usage_ledger import UsageLedger
from meterly.models.billing_event import (
    BillingEvent,
    BillingEventType,
    ConvergenceResult,
    WebhookEventRecord,
    WebhookOutcome,
)
from meterly.models.subscription import (
    ACTIVE_STATUSES,
    Subscription,
    SubscriptionStatus,
    SubscriptionUpdate,
    check_transition,
)
from meterly.observability.metrics import track_webhook_event
from meterly.storage.database import MeteringDatabase
from meterly.storage.transaction import StoreTransaction

logger = logging.getLogger(__name__)

DEFAULT_METRIC = "api_call"

# Status implied by event type when the event does not carry one
_STATUS_BY_EVENT_TYPE = {
    BillingEventType.PAYMENT_SUCCEEDED: SubscriptionStatus.ACTIVE,
    BillingEventType.PAYMENT_FAILED: SubscriptionStatus.PAST_DUE,
    BillingEventType.SUBSCRIPTION_CANCELED: SubscriptionStatus.CANCELED,
}


@dataclass
class _Applied:
    outcome: WebhookOutcome
    detail: str
    org_id: str | None = None


def target_status(event: BillingEvent) -> SubscriptionStatus | None:
    """Status an event asks for, or None when it does not ask for a change."""
    implied = _STATUS_BY_EVENT_TYPE.get(event.type)
    if implied is not None:
        return implied
    return event.status


class WebhookConvergenceProcessor:
    """
    Idempotent application of billing events.

    Invalid status transitions are recorded as rejected and reported as
    converged: the provider's ordering is not guaranteed, and redelivering an
    event that can never apply would only loop.
    """

    def __init__(
        self,
        db: MeteringDatabase,
        timezone: str = DEFAULT_TIMEZONE,
        metrics: tuple[str, ...] = (DEFAULT_METRIC,),
        ledger: UsageLedger | None = None,
    ):
        """
        Initialize convergence processor.

        Args:
            db: Metering store
            timezone: Application timezone for period keys
            metrics: Metrics whose counters are seeded on period rollover
            ledger: Counter operations (defaults to a ledger on db)
        """
        self.db = db
        self.ledger = ledger or UsageLedger(db)
        self.timezone = timezone
        self.metrics = metrics

    async def process(self, event: BillingEvent) -> ConvergenceResult:
        """
        Apply one event exactly once.

        Returns:
            ConvergenceResult: converged is True whenever the event is in the
            ledger after this call (applied now or earlier)

        Raises:
            StoreUnavailableError: Store failure; nothing was applied or
                recorded, the event should be redelivered
        """
        with self.db.transaction() as tx:
            existing = tx.get_webhook_event(event.external_event_id)
            if existing is None:
                applied = self._apply(tx, event)
                tx.record_webhook_event(
                    WebhookEventRecord(
                        external_event_id=event.external_event_id,
                        event_type=event.type.value,
                        outcome=applied.outcome,
                        detail=applied.detail,
                    )
                )

        if existing is not None:
            logger.info(
                "Billing event already processed (idempotent)",
                extra={
                    "event_id": event.external_event_id,
                    "event_type": event.type.value,
                    "outcome": existing.outcome.value,
                },
            )
            track_webhook_event(event.type.value, "replayed")
            return ConvergenceResult(converged=True, outcome=existing.outcome, replayed=True)

        track_webhook_event(event.type.value, applied.outcome.value)
        log = logger.warning if applied.outcome == WebhookOutcome.REJECTED else logger.info
        log(
            "Billing event processed",
            extra={
                "event_id": event.external_event_id,
                "event_type": event.type.value,
                "subscription_ref": event.subscription_ref,
                "org_id": applied.org_id,
                "outcome": applied.outcome.value,
                "detail": applied.detail,
            },
        )
        return ConvergenceResult(converged=True, outcome=applied.outcome)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def _apply(self, tx: StoreTransaction, event: BillingEvent) -> _Applied:
        subscription = tx.get_subscription_by_ref(event.subscription_ref)
        if subscription is None:
            return self._create_subscription(tx, event)
        return self._update_subscription(tx, subscription, event)

    def _create_subscription(self, tx: StoreTransaction, event: BillingEvent) -> _Applied:
        """First sighting of a subscription reference."""
        if event.type not in (
            BillingEventType.SUBSCRIPTION_CREATED,
            BillingEventType.SUBSCRIPTION_UPDATED,
        ):
            return _Applied(WebhookOutcome.IGNORED, "unknown subscription")

        if event.plan_code is None or not event.has_period:
            return _Applied(WebhookOutcome.IGNORED, "event lacks plan or period")

        organization = tx.get_organization_by_billing_ref(event.customer_ref)
        if organization is None:
            if not event.external_org_ref:
                return _Applied(WebhookOutcome.IGNORED, "unknown customer")
            organization, created = tx.ensure_organization(
                event.external_org_ref,
                f"Organization {event.external_org_ref}",
                billing_customer_ref=event.customer_ref,
            )
            if created:
                tx.log_audit(
                    "organization.created",
                    "organization",
                    org_id=organization.org_id,
                    resource_id=organization.org_id,
                    details={"source": "webhook", "event_id": event.external_event_id},
                )

        plan = plan_limits(event.plan_code)
        status = event.status or (
            SubscriptionStatus.TRIALING if plan.has_trial else SubscriptionStatus.ACTIVE
        )

        if status in ACTIVE_STATUSES:
            self._supersede_active(tx, organization.org_id, event)

        subscription = tx.insert_subscription(
            org_id=organization.org_id,
            billing_subscription_ref=event.subscription_ref,
            plan_code=plan.plan_code,
            status=status,
            current_period_start=event.period_start,
            current_period_end=event.period_end,
            trial_end=event.trial_end,
        )
        if subscription.is_active:
            self._seed_period(tx, subscription)

        return _Applied(
            WebhookOutcome.APPLIED,
            f"subscription created ({status.value})",
            org_id=organization.org_id,
        )

    def _update_subscription(
        self, tx: StoreTransaction, subscription: Subscription, event: BillingEvent
    ) -> _Applied:
        org_id = subscription.org_id
        current = subscription.status
        target = target_status(event)

        if target is not None and target != current:
            try:
                check_transition(current, target)
            except InvalidTransitionError as e:
                return _Applied(WebhookOutcome.REJECTED, e.message, org_id=org_id)

        update = SubscriptionUpdate()
        changes = []

        if target is not None and target != current:
            update.status = target
            changes.append(f"{current.value} -> {target.value}")
            if target == SubscriptionStatus.CANCELED:
                update.canceled_at = datetime.now(UTC)

        rolled_over = False
        if event.has_period:
            stored_start = ensure_utc(subscription.current_period_start)
            event_start = ensure_utc(event.period_start)
            if event_start < stored_start:
                # Out-of-order delivery of an older period; periods never move backwards
                if not changes:
                    return _Applied(WebhookOutcome.IGNORED, "stale period", org_id=org_id)
            elif event_start > stored_start:
                update.current_period_start = event.period_start
                update.current_period_end = event.period_end
                rolled_over = True
                changes.append("period rollover")
            elif ensure_utc(event.period_end) != ensure_utc(subscription.current_period_end):
                update.current_period_end = event.period_end
                changes.append("period end adjusted")

        if event.plan_code is not None and event.plan_code != subscription.plan_code:
            update.plan_code = event.plan_code
            changes.append(f"plan {subscription.plan_code.value} -> {event.plan_code.value}")

        if event.trial_end is not None and event.trial_end != subscription.trial_end:
            update.trial_end = event.trial_end
            changes.append("trial end")

        if not changes:
            return _Applied(WebhookOutcome.IGNORED, "no change", org_id=org_id)

        becomes_active = (
            update.status in ACTIVE_STATUSES and current not in ACTIVE_STATUSES
        )
        if becomes_active:
            self._supersede_active(tx, org_id, event, keep_subscription_id=subscription.subscription_id)

        updated = tx.update_subscription(subscription.subscription_id, update)
        if updated.is_active and (rolled_over or becomes_active):
            self._seed_period(tx, updated)

        return _Applied(WebhookOutcome.APPLIED, ", ".join(changes), org_id=org_id)

    def _supersede_active(
        self,
        tx: StoreTransaction,
        org_id: str,
        event: BillingEvent,
        keep_subscription_id: str | None = None,
    ) -> None:
        """Cancel the organization's current active subscription, if any."""
        active = tx.get_active_subscription(org_id)
        if active is None or active.subscription_id == keep_subscription_id:
            return

        tx.update_subscription(
            active.subscription_id,
            SubscriptionUpdate(
                status=SubscriptionStatus.CANCELED, canceled_at=datetime.now(UTC)
            ),
        )
        tx.log_audit(
            "subscription.superseded",
            "subscription",
            org_id=org_id,
            resource_id=active.subscription_id,
            details={
                "superseded_by": event.subscription_ref,
                "event_id": event.external_event_id,
            },
        )
        logger.warning(
            "Active subscription superseded by billing event",
            extra={
                "org_id": org_id,
                "superseded": active.billing_subscription_ref,
                "superseded_by": event.subscription_ref,
            },
        )

    def _seed_period(self, tx: StoreTransaction, subscription: Subscription) -> None:
        """
        Bring the current period's counters in line with the subscription's plan.

        A new period key gets a counter with used = 0. A period that renders to
        the key already in use (same-month rollover) keeps used and takes the
        current plan's ceiling.
        """
        bounds = period_bounds(subscription, self.timezone)
        included = plan_limits(subscription.plan_code).included
        for metric in self.metrics:
            self.ledger.refresh_in(
                tx, subscription.org_id, metric, bounds, included, source="webhook"
            )
