"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Temporary SQLite metering stores
- Provisioned organizations with a seeded current period
- Test settings (admin key, webhook secret, store path)
- FastAPI test client
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from meterly.billing.provisioning import SubscriptionProvisioner
from meterly.billing.quota import QuotaEvaluator
from meterly.billing.usage_recorder import UsageRecorder
from meterly.billing.webhooks import WebhookConvergenceProcessor
from meterly.config import reset_settings
from meterly.models.organization import OrganizationCreate
from meterly.models.subscription import PlanCode, SubscriptionCreate, SubscriptionStatus
from meterly.resilience import reset_all_breakers
from meterly.storage.database import MeteringDatabase, set_metering_db

TEST_TIMEZONE = "America/Los_Angeles"
ADMIN_KEY = "test-admin-key-0123456789abcdef0123456789"
WEBHOOK_SECRET = "whsec_test_secret_0123456789"

# Mid-month timestamps keep period keys independent of the reference timezone
PERIOD_START = datetime(2025, 10, 10, 12, 0, tzinfo=UTC)
PERIOD_END = datetime(2025, 11, 10, 12, 0, tzinfo=UTC)
NEXT_PERIOD_START = PERIOD_END
NEXT_PERIOD_END = datetime(2025, 12, 10, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Point settings at a temp store and known secrets for every test."""
    monkeypatch.setenv("STORAGE_DB_PATH", str(tmp_path / "app.db"))
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_API_KEY", "")
    monkeypatch.setenv("BILLING_TIMEZONE", TEST_TIMEZONE)
    reset_settings()
    reset_all_breakers()
    yield
    reset_settings()
    set_metering_db(None)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh metering store in a temp directory."""
    database = MeteringDatabase(db_path=str(tmp_path / "metering.db"), busy_timeout_seconds=5.0)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def provisioner(db) -> SubscriptionProvisioner:
    return SubscriptionProvisioner(db, timezone=TEST_TIMEZONE)


@pytest.fixture
def evaluator(db) -> QuotaEvaluator:
    return QuotaEvaluator(db, timezone=TEST_TIMEZONE)


@pytest.fixture
def recorder(db) -> UsageRecorder:
    return UsageRecorder(db, timezone=TEST_TIMEZONE)


@pytest.fixture
def processor(db) -> WebhookConvergenceProcessor:
    return WebhookConvergenceProcessor(db, timezone=TEST_TIMEZONE)


async def provision_org(
    provisioner: SubscriptionProvisioner,
    external_ref: str = "org_acme",
    plan_code: PlanCode = PlanCode.STARTER,
    status: SubscriptionStatus | None = None,
    subscription_ref: str | None = None,
    customer_ref: str | None = None,
    period_start: datetime = PERIOD_START,
    period_end: datetime = PERIOD_END,
):
    """Create an organization with a subscription; active ones get a seeded counter."""
    organization, _ = await provisioner.ensure_organization(
        OrganizationCreate(
            external_ref=external_ref,
            name="Acme",
            billing_customer_ref=customer_ref or f"cus_{external_ref}",
        )
    )
    subscription = await provisioner.provision_subscription(
        SubscriptionCreate(
            external_ref=external_ref,
            plan_code=plan_code,
            billing_subscription_ref=subscription_ref or f"sub_{external_ref}",
            current_period_start=period_start,
            current_period_end=period_end,
            status=status,
            trial_end=period_start + timedelta(days=14) if plan_code == PlanCode.TRIAL else None,
        )
    )
    return organization, subscription


@pytest_asyncio.fixture
async def starter_org(provisioner):
    """Organization on the starter plan (60 included) with the period seeded."""
    return await provision_org(provisioner)


def sign_stripe_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header: v1 is HMAC-SHA256 of "{t}.{payload}"."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "api_version": "2024-06-20",
            "created": int(time.time()),
            "data": {"object": obj},
        }
    ).encode()


@pytest.fixture
def client():
    """Test client with the application lifespan running against the temp store."""
    from meterly.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
