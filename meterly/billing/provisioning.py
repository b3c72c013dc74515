"""
Organization and subscription provisioning.

Administrative entry points that create the local records the metering core
reads: organizations, the first subscription of an organization, and the
usage counter of its current period. Every operation is one atomic unit.
"""

import logging
from dataclasses import dataclass

from meterly.billing.errors import (
    ActiveSubscriptionExistsError,
    BillingProviderError,
    OrgNotFoundError,
)
from meterly.billing.periods import DEFAULT_TIMEZONE, period_bounds
from meterly.billing.plans import plan_limits
from meterly.billing.resolution import check_org_reference, resolve_billing_context
from meterly.billing.stripe_client import StripeBillingClient
from meterly.billing.usage_ledger import UsageLedger, validate_metric
from meterly.models.organization import Organization, OrganizationCreate
from meterly.models.subscription import (
    ACTIVE_STATUSES,
    PlanCode,
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
)
from meterly.storage.database import MeteringDatabase
from meterly.storage.transaction import StoreTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeedResult:
    """Outcome of seeding the current period's counter."""

    period_key: str
    remaining: int
    created: bool


class SubscriptionProvisioner:
    """
    Provisioning service.

    Responsibilities:
    - Ensure an organization exists for an identity-provider reference
    - Persist a subscription after the billing provider created it
    - Seed the current period's usage counter
    - Administrative reset of an organization
    """

    def __init__(
        self,
        db: MeteringDatabase,
        timezone: str = DEFAULT_TIMEZONE,
        default_metric: str = "api_call",
        billing_client: StripeBillingClient | None = None,
        ledger: UsageLedger | None = None,
    ):
        """
        Initialize provisioner.

        Args:
            db: Metering store
            timezone: Application timezone for period keys
            default_metric: Metric seeded alongside new subscriptions
            billing_client: Stripe client (optional; provider-side creation
                is unavailable without it)
            ledger: Counter operations (defaults to a ledger on db)
        """
        self.db = db
        self.ledger = ledger or UsageLedger(db)
        self.timezone = timezone
        self.default_metric = default_metric
        self.billing_client = billing_client

    async def ensure_organization(self, request: OrganizationCreate) -> tuple[Organization, bool]:
        """
        Create the organization if it does not exist.

        Returns:
            (organization, created)
        """
        with self.db.transaction() as tx:
            organization, created = tx.ensure_organization(
                request.external_ref,
                request.display_name(),
                billing_customer_ref=request.billing_customer_ref,
            )
            if created:
                tx.log_audit(
                    "organization.created",
                    "organization",
                    org_id=organization.org_id,
                    resource_id=organization.org_id,
                    details={"external_ref": request.external_ref},
                )

        if created:
            logger.info(
                "Organization created",
                extra={"org_id": organization.org_id, "external_ref": request.external_ref},
            )
        return organization, created

    async def provision_subscription(self, request: SubscriptionCreate) -> Subscription:
        """
        Persist a subscription created at the billing provider and seed its counter.

        Args:
            request: Subscription details; status defaults to trialing for
                plans with a trial, active otherwise

        Returns:
            Subscription: The stored subscription

        Raises:
            OrgNotFoundError: Organization was never provisioned
            ActiveSubscriptionExistsError: Organization already has an active
                subscription, or the subscription reference is already known
        """
        check_org_reference(request.external_ref)
        plan = plan_limits(request.plan_code)
        status = request.status or (
            SubscriptionStatus.TRIALING if plan.has_trial else SubscriptionStatus.ACTIVE
        )

        with self.db.transaction() as tx:
            organization = tx.get_organization_by_external_ref(request.external_ref)
            if organization is None:
                raise OrgNotFoundError("Organization not found", external_ref=request.external_ref)

            if tx.get_subscription_by_ref(request.billing_subscription_ref) is not None:
                raise ActiveSubscriptionExistsError(
                    "Subscription reference already provisioned",
                    subscription_ref=request.billing_subscription_ref,
                )

            if status in ACTIVE_STATUSES and tx.get_active_subscription(organization.org_id):
                raise ActiveSubscriptionExistsError(
                    "Organization already has an active subscription",
                    org_id=organization.org_id,
                )

            subscription = tx.insert_subscription(
                org_id=organization.org_id,
                billing_subscription_ref=request.billing_subscription_ref,
                plan_code=plan.plan_code,
                status=status,
                current_period_start=request.current_period_start,
                current_period_end=request.current_period_end,
                trial_end=request.trial_end,
            )
            seeded = self._seed_in(tx, subscription) if subscription.is_active else None
            tx.log_audit(
                "subscription.provisioned",
                "subscription",
                org_id=organization.org_id,
                resource_id=subscription.subscription_id,
                details={"plan_code": plan.plan_code.value, "status": status.value},
            )

        logger.info(
            "Subscription provisioned",
            extra={
                "org_id": organization.org_id,
                "subscription_ref": subscription.billing_subscription_ref,
                "plan_code": plan.plan_code.value,
                "status": status.value,
                "period_key": seeded.period_key if seeded else None,
            },
        )
        return subscription

    async def provision_with_billing_provider(
        self, external_ref: str, plan_code: PlanCode
    ) -> Subscription:
        """
        Create the customer and subscription at Stripe, then persist locally.

        The local record is only written after the provider call succeeds.

        Raises:
            BillingProviderError: Stripe unavailable, not configured, or
                rejected the request
            OrgNotFoundError / ActiveSubscriptionExistsError
        """
        if self.billing_client is None:
            raise BillingProviderError("Billing provider not configured")

        check_org_reference(external_ref)
        organization = await self.db.get_organization_by_external_ref(external_ref)
        if organization is None:
            raise OrgNotFoundError("Organization not found", external_ref=external_ref)
        if await self.db.get_active_subscription(organization.org_id):
            raise ActiveSubscriptionExistsError(
                "Organization already has an active subscription", org_id=organization.org_id
            )

        customer_ref = await self.billing_client.ensure_customer(organization)
        if organization.billing_customer_ref is None:
            with self.db.transaction() as tx:
                tx.set_billing_customer_ref(organization.org_id, customer_ref)

        created = await self.billing_client.create_subscription(
            organization, customer_ref, plan_code
        )
        return await self.provision_subscription(
            SubscriptionCreate(
                external_ref=external_ref,
                plan_code=plan_code,
                billing_subscription_ref=created.subscription_ref,
                current_period_start=created.period_start,
                current_period_end=created.period_end,
                status=created.status,
                trial_end=created.trial_end,
            )
        )

    async def seed_usage_counter(self, external_ref: str, metric: str | None = None) -> SeedResult:
        """
        Seed the current period's counter for the organization's active subscription.

        Upsert-style: an existing counter is returned unchanged (used preserved).

        Raises:
            OrgNotFoundError / NoActiveSubscriptionError
        """
        metric = validate_metric(metric or self.default_metric)
        with self.db.transaction() as tx:
            context = resolve_billing_context(tx, external_ref, self.timezone)
            included = plan_limits(context.subscription.plan_code).included
            counter, created = self.ledger.seed_in(
                tx, context.org_id, metric, context.bounds, included, source="provisioning"
            )

        logger.info(
            "Usage counter seed requested",
            extra={
                "org_id": context.org_id,
                "metric": metric,
                "period_key": counter.period_key,
                "created": created,
                "remaining": counter.remaining,
            },
        )
        return SeedResult(period_key=counter.period_key, remaining=counter.remaining, created=created)

    async def reset_organization(self, external_ref: str) -> bool:
        """
        Delete an organization and everything it owns (administrative reset).

        Returns:
            bool: False when the organization did not exist
        """
        check_org_reference(external_ref)
        with self.db.transaction() as tx:
            organization = tx.get_organization_by_external_ref(external_ref)
            if organization is None:
                return False
            tx.delete_organization(organization.org_id)
            tx.log_audit(
                "organization.reset",
                "organization",
                resource_id=organization.org_id,
                details={"external_ref": external_ref},
            )

        logger.warning(
            "Organization reset",
            extra={"org_id": organization.org_id, "external_ref": external_ref},
        )
        return True

    def _seed_in(self, tx: StoreTransaction, subscription: Subscription) -> SeedResult:
        """Counter for a newly provisioned subscription, at its plan's ceiling."""
        bounds = period_bounds(subscription, self.timezone)
        included = plan_limits(subscription.plan_code).included
        counter, created = self.ledger.refresh_in(
            tx, subscription.org_id, self.default_metric, bounds, included, source="provisioning"
        )
        return SeedResult(period_key=counter.period_key, remaining=counter.remaining, created=created)
