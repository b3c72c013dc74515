"""
Stripe webhook adapter.

Verifies Stripe-Signature headers and normalizes Stripe events into
BillingEvent, the only shape the convergence processor understands:
- customer.subscription.created -> subscription.created
- customer.subscription.updated -> subscription.updated
- customer.subscription.deleted -> subscription.canceled
- invoice.payment_succeeded -> payment.succeeded
- invoice.payment_failed -> payment.failed
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

import stripe

from meterly.billing.errors import WebhookSignatureError
from meterly.config import StripeConfig
from meterly.models.billing_event import BillingEvent, BillingEventType
from meterly.models.subscription import PlanCode, SubscriptionStatus

logger = logging.getLogger(__name__)

_EVENT_TYPES = {
    "customer.subscription.created": BillingEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_CANCELED,
    "invoice.payment_succeeded": BillingEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventType.PAYMENT_FAILED,
}

# Stripe statuses without a local counterpart collapse to canceled
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_stripe_status(stripe_status: str | None) -> SubscriptionStatus | None:
    """Map a Stripe subscription status; unknown values (e.g. paused) map to None."""
    if stripe_status is None:
        return None
    return STRIPE_STATUS_MAP.get(stripe_status)


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _ref(value: Any) -> str | None:
    """Stripe references arrive either as ids or as expanded objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _subscription_period(subscription: dict) -> tuple[datetime | None, datetime | None]:
    """
    Current period of a subscription object.

    Newer API versions moved the period onto subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return _timestamp(start), _timestamp(end)


def _plan_code(metadata: dict | None) -> PlanCode | None:
    raw = (metadata or {}).get("plan_code") or (metadata or {}).get("planCode")
    if raw is None:
        return None
    try:
        return PlanCode(raw)
    except ValueError:
        logger.warning("Unknown plan_code in Stripe metadata", extra={"plan_code": raw})
        return None


class StripeEventNormalizer:
    """Signature verification and normalization of Stripe webhooks."""

    def __init__(self, config: StripeConfig):
        """
        Initialize normalizer.

        Args:
            config: Stripe configuration (for webhook secret)
        """
        self.config = config

    def verify(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify the Stripe-Signature header and parse the payload.

        Returns:
            dict: Parsed event

        Raises:
            WebhookSignatureError: Missing secret, missing/invalid signature,
                or a payload that is not a Stripe event
        """
        if not self.config.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        except ValueError:
            raise WebhookSignatureError("Invalid payload") from None
        except stripe.SignatureVerificationError:
            raise WebhookSignatureError("Invalid signature") from None

        event = json.loads(payload)
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise WebhookSignatureError("Invalid payload")
        return event

    def normalize(self, event: dict) -> BillingEvent | None:
        """
        Normalize a verified Stripe event.

        Returns:
            BillingEvent, or None for event types the core does not track
        """
        event_type = _EVENT_TYPES.get(event["type"])
        if event_type is None:
            logger.info(
                "Unhandled Stripe event type",
                extra={"event_type": event["type"], "event_id": event["id"]},
            )
            return None

        obj = event["data"]["object"]
        if event["type"].startswith("invoice."):
            return self._normalize_invoice(event, event_type, obj)
        return self._normalize_subscription(event, event_type, obj)

    def _normalize_subscription(
        self, event: dict, event_type: BillingEventType, subscription: dict
    ) -> BillingEvent:
        period_start, period_end = _subscription_period(subscription)
        metadata = subscription.get("metadata") or {}

        return BillingEvent(
            external_event_id=event["id"],
            type=event_type,
            subscription_ref=subscription["id"],
            customer_ref=_ref(subscription["customer"]),
            period_start=period_start,
            period_end=period_end,
            status=map_stripe_status(subscription.get("status")),
            plan_code=_plan_code(metadata),
            trial_end=_timestamp(subscription.get("trial_end")),
            external_org_ref=metadata.get("org_ref") or metadata.get("orgId"),
        )

    def _normalize_invoice(
        self, event: dict, event_type: BillingEventType, invoice: dict
    ) -> BillingEvent | None:
        subscription_ref = _ref(invoice.get("subscription"))
        if subscription_ref is None:
            # Newer API versions nest the subscription under parent details
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_ref = _ref(details.get("subscription"))

        if subscription_ref is None:
            logger.info(
                "Invoice event without subscription ignored",
                extra={"event_id": event["id"], "invoice_id": invoice.get("id")},
            )
            return None

        # The zero-amount invoice issued when a trial starts is not a payment
        # after the trial, so it must not promote trialing -> active
        if (
            event_type == BillingEventType.PAYMENT_SUCCEEDED
            and invoice.get("billing_reason") == "subscription_create"
            and not invoice.get("amount_paid")
        ):
            logger.info(
                "Trial-start invoice ignored",
                extra={"event_id": event["id"], "subscription_ref": subscription_ref},
            )
            return None

        return BillingEvent(
            external_event_id=event["id"],
            type=event_type,
            subscription_ref=subscription_ref,
            customer_ref=_ref(invoice["customer"]),
        )
