"""
Organization -> active subscription -> current period resolution.

Shared by the quota evaluator, usage recorder and entitlements reader so all
three attribute a request to the same period.
"""

from dataclasses import dataclass

from meterly.billing.errors import (
    InvalidOrgReferenceError,
    NoActiveSubscriptionError,
    OrgNotFoundError,
)
from meterly.billing.periods import PeriodBounds, period_bounds
from meterly.models.organization import Organization, validate_external_ref
from meterly.models.subscription import Subscription
from meterly.storage.transaction import StoreTransaction


@dataclass(frozen=True)
class BillingContext:
    organization: Organization
    subscription: Subscription
    bounds: PeriodBounds

    @property
    def org_id(self) -> str:
        return self.organization.org_id

    @property
    def period_key(self) -> str:
        return self.bounds.period_key


def check_org_reference(external_ref: str) -> str:
    """Validate an external organization reference (InvalidOrgReferenceError)."""
    try:
        return validate_external_ref(external_ref)
    except ValueError as e:
        raise InvalidOrgReferenceError(str(e), external_ref=external_ref[:128]) from None


def resolve_billing_context(
    tx: StoreTransaction, external_ref: str, timezone: str
) -> BillingContext:
    """
    Resolve the organization, its active subscription and current period.

    Raises:
        InvalidOrgReferenceError: Malformed reference
        OrgNotFoundError: Unknown organization
        NoActiveSubscriptionError: No trialing/active subscription
    """
    check_org_reference(external_ref)

    organization = tx.get_organization_by_external_ref(external_ref)
    if organization is None:
        raise OrgNotFoundError("Organization not found", external_ref=external_ref)

    subscription = tx.get_active_subscription(organization.org_id)
    if subscription is None:
        raise NoActiveSubscriptionError(
            "Organization has no active subscription", org_id=organization.org_id
        )

    return BillingContext(
        organization=organization,
        subscription=subscription,
        bounds=period_bounds(subscription, timezone),
    )
