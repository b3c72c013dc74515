"""
Tests for the Stripe webhook adapter.

Tests:
- Stripe-Signature verification (valid, tampered, expired, missing)
- Normalization of subscription and invoice events
- Status mapping
"""

import time

import pytest
from conftest import WEBHOOK_SECRET, sign_stripe_payload, stripe_event

from meterly.billing.errors import WebhookSignatureError
from meterly.billing.stripe_events import StripeEventNormalizer, map_stripe_status
from meterly.config import StripeConfig
from meterly.models.billing_event import BillingEventType
from meterly.models.subscription import PlanCode, SubscriptionStatus

PERIOD_START_TS = 1760097600  # 2025-10-10T12:00:00Z
PERIOD_END_TS = 1762776000  # 2025-11-10T12:00:00Z


@pytest.fixture
def normalizer() -> StripeEventNormalizer:
    return StripeEventNormalizer(StripeConfig(webhook_secret=WEBHOOK_SECRET))


def _subscription_object(**overrides) -> dict:
    obj = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "current_period_start": PERIOD_START_TS,
        "current_period_end": PERIOD_END_TS,
        "trial_end": None,
        "metadata": {"plan_code": "starter", "org_ref": "org_acme"},
    }
    obj.update(overrides)
    return obj


class TestSignatureVerification:
    def test_valid_signature(self, normalizer):
        payload = stripe_event("evt_1", "customer.subscription.updated", _subscription_object())

        event = normalizer.verify(payload, sign_stripe_payload(payload))

        assert event["id"] == "evt_1"
        assert event["type"] == "customer.subscription.updated"

    def test_tampered_payload_rejected(self, normalizer):
        payload = stripe_event("evt_1", "customer.subscription.updated", _subscription_object())
        signature = sign_stripe_payload(payload)
        tampered = payload.replace(b"starter", b"pro")

        with pytest.raises(WebhookSignatureError):
            normalizer.verify(tampered, signature)

    def test_wrong_secret_rejected(self, normalizer):
        payload = stripe_event("evt_1", "customer.subscription.updated", _subscription_object())

        with pytest.raises(WebhookSignatureError):
            normalizer.verify(payload, sign_stripe_payload(payload, secret="whsec_other"))

    def test_expired_timestamp_rejected(self, normalizer):
        payload = stripe_event("evt_1", "customer.subscription.updated", _subscription_object())
        old = int(time.time()) - 3600

        with pytest.raises(WebhookSignatureError):
            normalizer.verify(payload, sign_stripe_payload(payload, timestamp=old))

    def test_missing_signature_rejected(self, normalizer):
        payload = stripe_event("evt_1", "customer.subscription.updated", _subscription_object())

        with pytest.raises(WebhookSignatureError):
            normalizer.verify(payload, None)

    def test_unconfigured_secret_rejects_everything(self):
        normalizer = StripeEventNormalizer(StripeConfig(webhook_secret=""))
        payload = stripe_event("evt_1", "customer.subscription.updated", _subscription_object())

        with pytest.raises(WebhookSignatureError):
            normalizer.verify(payload, sign_stripe_payload(payload))

    def test_error_maps_to_400(self, normalizer):
        with pytest.raises(WebhookSignatureError) as exc_info:
            normalizer.verify(b"{}", "t=1,v1=deadbeef")

        assert exc_info.value.status_code == 400


class TestNormalization:
    def test_subscription_updated(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_sub",
                "type": "customer.subscription.updated",
                "data": {"object": _subscription_object()},
            }
        )

        assert event.type == BillingEventType.SUBSCRIPTION_UPDATED
        assert event.subscription_ref == "sub_123"
        assert event.customer_ref == "cus_123"
        assert event.status == SubscriptionStatus.ACTIVE
        assert event.plan_code == PlanCode.STARTER
        assert event.external_org_ref == "org_acme"
        assert int(event.period_start.timestamp()) == PERIOD_START_TS
        assert int(event.period_end.timestamp()) == PERIOD_END_TS

    def test_period_read_from_subscription_items(self, normalizer):
        obj = _subscription_object(current_period_start=None, current_period_end=None)
        obj["items"] = {
            "data": [
                {"current_period_start": PERIOD_START_TS, "current_period_end": PERIOD_END_TS}
            ]
        }

        event = normalizer.normalize(
            {"id": "evt_items", "type": "customer.subscription.created", "data": {"object": obj}}
        )

        assert event.has_period
        assert int(event.period_start.timestamp()) == PERIOD_START_TS

    def test_subscription_deleted_is_cancellation(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_del",
                "type": "customer.subscription.deleted",
                "data": {"object": _subscription_object(status="canceled")},
            }
        )

        assert event.type == BillingEventType.SUBSCRIPTION_CANCELED

    def test_expanded_customer_object(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_exp",
                "type": "customer.subscription.updated",
                "data": {"object": _subscription_object(customer={"id": "cus_expanded"})},
            }
        )

        assert event.customer_ref == "cus_expanded"

    def test_unknown_plan_metadata_becomes_none(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_plan",
                "type": "customer.subscription.updated",
                "data": {"object": _subscription_object(metadata={"plan_code": "enterprise"})},
            }
        )

        assert event.plan_code is None

    def test_invoice_payment_failed(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_inv",
                "type": "invoice.payment_failed",
                "data": {
                    "object": {
                        "id": "in_1",
                        "customer": "cus_123",
                        "subscription": "sub_123",
                        "billing_reason": "subscription_cycle",
                        "amount_paid": 0,
                    }
                },
            }
        )

        assert event.type == BillingEventType.PAYMENT_FAILED
        assert event.subscription_ref == "sub_123"

    def test_invoice_subscription_under_parent_details(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_inv2",
                "type": "invoice.payment_succeeded",
                "data": {
                    "object": {
                        "id": "in_2",
                        "customer": "cus_123",
                        "parent": {"subscription_details": {"subscription": "sub_456"}},
                        "billing_reason": "subscription_cycle",
                        "amount_paid": 1900,
                    }
                },
            }
        )

        assert event.subscription_ref == "sub_456"

    def test_trial_start_invoice_is_skipped(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "evt_trial_inv",
                "type": "invoice.payment_succeeded",
                "data": {
                    "object": {
                        "id": "in_3",
                        "customer": "cus_123",
                        "subscription": "sub_123",
                        "billing_reason": "subscription_create",
                        "amount_paid": 0,
                    }
                },
            }
        )

        assert event is None

    def test_unhandled_type_returns_none(self, normalizer):
        assert normalizer.normalize(
            {"id": "evt_x", "type": "customer.created", "data": {"object": {}}}
        ) is None


@pytest.mark.parametrize(
    "stripe_status,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.TRIALING),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("unpaid", SubscriptionStatus.CANCELED),
        ("incomplete", SubscriptionStatus.CANCELED),
        ("incomplete_expired", SubscriptionStatus.CANCELED),
        ("paused", None),
        (None, None),
    ],
)
def test_map_stripe_status(stripe_status, expected):
    assert map_stripe_status(stripe_status) == expected
