"""
Service wiring.

One MeteringServices bundle per process, built at application startup from
settings and the metering store, and handed to route handlers through
get_services().
"""

from dataclasses import dataclass

from fastapi import HTTPException, status

from meterly.billing.entitlements import EntitlementsReader
from meterly.billing.provisioning import SubscriptionProvisioner
from meterly.billing.quota import QuotaEvaluator
from meterly.billing.stripe_client import StripeBillingClient
from meterly.billing.stripe_events import StripeEventNormalizer
from meterly.billing.usage_ledger import UsageLedger
from meterly.billing.usage_recorder import UsageRecorder
from meterly.billing.webhooks import WebhookConvergenceProcessor
from meterly.config import Settings
from meterly.storage.database import MeteringDatabase


@dataclass
class MeteringServices:
    db: MeteringDatabase
    quota: QuotaEvaluator
    entitlements: EntitlementsReader
    recorder: UsageRecorder
    webhooks: WebhookConvergenceProcessor
    provisioner: SubscriptionProvisioner
    stripe_events: StripeEventNormalizer
    default_metric: str


def build_services(settings: Settings, db: MeteringDatabase) -> MeteringServices:
    """Construct every service against one store and one configuration."""
    timezone = settings.billing.timezone
    default_metric = settings.billing.default_metric
    billing_client = StripeBillingClient(settings.stripe) if settings.stripe.is_configured else None
    ledger = UsageLedger(db)

    return MeteringServices(
        db=db,
        quota=QuotaEvaluator(db, timezone=timezone, ledger=ledger),
        entitlements=EntitlementsReader(db, timezone=timezone, ledger=ledger),
        recorder=UsageRecorder(
            db,
            timezone=timezone,
            idempotency_key_max_length=settings.billing.idempotency_key_max_length,
            ledger=ledger,
        ),
        webhooks=WebhookConvergenceProcessor(
            db, timezone=timezone, metrics=(default_metric,), ledger=ledger
        ),
        provisioner=SubscriptionProvisioner(
            db,
            timezone=timezone,
            default_metric=default_metric,
            billing_client=billing_client,
            ledger=ledger,
        ),
        stripe_events=StripeEventNormalizer(settings.stripe),
        default_metric=default_metric,
    )


# Global service bundle (set in the application lifespan)
_services: MeteringServices | None = None


def set_services(services: MeteringServices | None) -> None:
    global _services
    _services = services


def get_services() -> MeteringServices:
    """
    FastAPI dependency returning the service bundle.

    Raises:
        HTTPException 503: Application has not finished starting
    """
    if _services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Metering services not initialized",
        )
    return _services
