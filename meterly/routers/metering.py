"""
Metering API endpoints.

- POST /api/v1/quota/check: read-only allow/deny before a metered action
- POST /api/v1/usage/record: idempotent usage recording after the action
- GET /api/v1/entitlements: plan, quota and consumption for the caller

The caller is identified by X-Org-Id (see meterly.auth). Denial is a normal
outcome answered with 429 and Retry-After, never an error.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from meterly.auth import ensure_same_org, get_caller_org_ref
from meterly.billing.errors import InvalidIdempotencyKeyError
from meterly.models.usage import Entitlements, UsageSnapshot
from meterly.rate_limits import limiter, quota_check_limit, usage_record_limit
from meterly.services import MeteringServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Metering"])


# Request/response models
class QuotaCheckRequest(BaseModel):
    org_id: str = Field(..., min_length=1, max_length=128)
    metric: str | None = Field(default=None, description="Defaults to the configured metric")


class QuotaCheckResponse(BaseModel):
    allow: bool
    remaining: int


class UsageRecordRequest(BaseModel):
    """
    Usage report for one completed metered action.

    request_id is the idempotency key; the Idempotency-Key header may be sent
    instead.
    """

    org_id: str = Field(..., min_length=1, max_length=128)
    metric: str | None = Field(default=None)
    quantity: int
    occurred_at: datetime | None = Field(default=None)
    request_id: str | None = Field(default=None)


@router.post(
    "/quota/check",
    response_model=QuotaCheckResponse,
    responses={429: {"model": QuotaCheckResponse, "description": "Quota exhausted"}},
)
@limiter.limit(quota_check_limit)
async def check_quota(
    request: Request,
    body: QuotaCheckRequest,
    caller_org_ref: str = Depends(get_caller_org_ref),
    services: MeteringServices = Depends(get_services),
):
    """
    Check whether the caller may perform one more metered action.

    Never mutates state. A denied check returns 429 with Retry-After set to the
    seconds remaining in the period and X-Quota-Reset to the period end.
    """
    ensure_same_org(body.org_id, caller_org_ref)
    metric = body.metric or services.default_metric

    decision = await services.quota.decide(body.org_id, metric)
    if decision.allow:
        return QuotaCheckResponse(allow=True, remaining=decision.remaining)

    headers = {"Retry-After": str(decision.retry_after_seconds())}
    if decision.retry_at is not None:
        headers["X-Quota-Reset"] = decision.retry_at.isoformat()
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"allow": False, "remaining": 0},
        headers=headers,
    )


@router.post("/usage/record", response_model=UsageSnapshot)
@limiter.limit(usage_record_limit)
async def record_usage(
    request: Request,
    body: UsageRecordRequest,
    caller_org_ref: str = Depends(get_caller_org_ref),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    services: MeteringServices = Depends(get_services),
) -> UsageSnapshot:
    """
    Record usage for a completed action.

    Resubmitting the same request_id returns the original snapshot without
    counting again. Raises 400 when no idempotency key is supplied.
    """
    ensure_same_org(body.org_id, caller_org_ref)
    key = body.request_id or idempotency_key
    if not key:
        raise InvalidIdempotencyKeyError(
            "Provide request_id in the body or an Idempotency-Key header"
        )

    return await services.recorder.record_usage(
        external_ref=body.org_id,
        metric=body.metric or services.default_metric,
        quantity=body.quantity,
        idempotency_key=key,
        occurred_at=body.occurred_at,
    )


@router.get("/entitlements", response_model=Entitlements)
async def get_entitlements(
    metric: str | None = Query(default=None),
    caller_org_ref: str = Depends(get_caller_org_ref),
    services: MeteringServices = Depends(get_services),
) -> Entitlements:
    """Plan, included quota, usage and remaining for the caller's current period."""
    return await services.entitlements.get_entitlements(
        caller_org_ref, metric or services.default_metric
    )
