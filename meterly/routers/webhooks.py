"""
Billing webhook intake.

- POST /api/v1/webhooks/stripe: signed Stripe deliveries, verified and
  normalized before convergence
- POST /api/v1/webhooks/events: already-normalized events (admin only), for
  replays and non-Stripe providers

Both answer {"converged": true} once the event is in the ledger, including
redeliveries. Store failures answer 503 so the provider retries.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError

from meterly.auth import verify_admin_key
from meterly.billing.errors import InvalidWebhookPayloadError
from meterly.models.billing_event import BillingEvent, ConvergenceResult
from meterly.observability.logging import OperationContext
from meterly.observability.metrics import track_webhook_event
from meterly.services import MeteringServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=ConvergenceResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    services: MeteringServices = Depends(get_services),
) -> ConvergenceResult:
    """
    Receive a Stripe webhook.

    Event types the metering core does not track are acknowledged without
    being recorded.

    Raises:
        400: Signature invalid or payload malformed
        503: Store unavailable (Stripe will redeliver)
    """
    payload = await request.body()
    raw_event = services.stripe_events.verify(payload, stripe_signature)

    try:
        event = services.stripe_events.normalize(raw_event)
    except (KeyError, TypeError, ValidationError) as e:
        logger.warning(
            "Malformed Stripe event",
            extra={"event_id": raw_event.get("id"), "event_type": raw_event.get("type")},
        )
        raise InvalidWebhookPayloadError(
            "Stripe event is missing required fields", event_id=raw_event.get("id")
        ) from e

    if event is None:
        track_webhook_event(raw_event["type"], "unhandled")
        return ConvergenceResult(converged=True)

    with OperationContext("webhook_convergence", event_id=event.external_event_id):
        return await services.webhooks.process(event)


@router.post(
    "/events",
    response_model=ConvergenceResult,
    dependencies=[Depends(verify_admin_key)],
)
async def normalized_event(
    event: BillingEvent,
    services: MeteringServices = Depends(get_services),
) -> ConvergenceResult:
    """Apply a normalized billing event (admin only)."""
    with OperationContext("webhook_convergence", event_id=event.external_event_id):
        return await services.webhooks.process(event)
