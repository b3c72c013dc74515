"""
Administrative provisioning endpoints.

All endpoints require X-Admin-Key. Mutations are audit-logged by the
provisioner in the same transaction as the change.
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from meterly.auth import verify_admin_key
from meterly.billing.errors import OrgNotFoundError
from meterly.models.organization import Organization, OrganizationCreate
from meterly.models.subscription import PlanCode, Subscription, SubscriptionCreate
from meterly.services import MeteringServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_key)],
)


class ProviderSubscriptionRequest(BaseModel):
    """Create the subscription at the billing provider, then locally."""

    external_ref: str = Field(..., min_length=1, max_length=128)
    plan_code: PlanCode


class SeedCounterRequest(BaseModel):
    external_ref: str = Field(..., min_length=1, max_length=128)
    metric: str | None = Field(default=None)


class SeedCounterResponse(BaseModel):
    period_key: str
    remaining: int
    created: bool


@router.post("/organizations", response_model=Organization)
async def ensure_organization(
    request: OrganizationCreate,
    response: Response,
    services: MeteringServices = Depends(get_services),
) -> Organization:
    """
    Ensure an organization exists.

    Returns 201 when created, 200 when it already existed.
    """
    organization, created = await services.provisioner.ensure_organization(request)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return organization


@router.post(
    "/subscriptions",
    response_model=Subscription,
    status_code=status.HTTP_201_CREATED,
)
async def provision_subscription(
    request: SubscriptionCreate,
    services: MeteringServices = Depends(get_services),
) -> Subscription:
    """
    Provision a subscription from provider data already known to the caller.

    Raises:
        404: Organization not found
        409: Organization already has an active subscription
    """
    return await services.provisioner.provision_subscription(request)


@router.post(
    "/subscriptions/provider",
    response_model=Subscription,
    status_code=status.HTTP_201_CREATED,
)
async def provision_provider_subscription(
    request: ProviderSubscriptionRequest,
    services: MeteringServices = Depends(get_services),
) -> Subscription:
    """Create customer and subscription at Stripe, then persist and seed locally."""
    return await services.provisioner.provision_with_billing_provider(
        request.external_ref, request.plan_code
    )


@router.post("/usage/seed", response_model=SeedCounterResponse)
async def seed_usage_counter(
    request: SeedCounterRequest,
    services: MeteringServices = Depends(get_services),
) -> SeedCounterResponse:
    """Seed the current period's counter; an existing counter keeps its usage."""
    result = await services.provisioner.seed_usage_counter(request.external_ref, request.metric)
    return SeedCounterResponse(
        period_key=result.period_key,
        remaining=result.remaining,
        created=result.created,
    )


@router.delete("/organizations/{external_ref}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_organization(
    external_ref: str,
    services: MeteringServices = Depends(get_services),
) -> Response:
    """Delete an organization with its subscriptions, counters and ledgers."""
    deleted = await services.provisioner.reset_organization(external_ref)
    if not deleted:
        raise OrgNotFoundError("Organization not found", external_ref=external_ref)

    logger.info("Organization reset", extra={"external_ref": external_ref})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
