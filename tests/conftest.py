"""
Pytest configuration and fixtures for testing
"""
import dataclasses
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta

# Settings are read at import time; keep tests off Redis and away from the limiter
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from crud.user import UserRepository
from database import Base
from services.billing_gateway import SetupIntentResult
from services.entitlements import Trialing
from services.errors import GatewayUnavailable
from services.reconciliation_service import ReconciliationService

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = "whsec_test_secret"
NOW = datetime(2026, 3, 1, 12, 0, 0)

# One shared connection so every session sees the same in-memory database
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

# Create test session factory
TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest.fixture
async def test_db():
    """
    Fixture that provides an isolated, in-memory SQLite database connection for each test.

    This fixture:
    - Creates all tables before the test runs
    - Yields a clean AsyncSession for the test
    - Drops all tables after the test completes
    """
    async with test_engine.begin() as conn:
        # Import models to ensure they're registered with Base
        from database_models import User, ProcessedWebhookEvent  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def file_session_factory(tmp_path):
    """
    Session factory over a SQLite file, for tests that need two sessions
    with independent transactions against the same rows.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    async with engine.begin() as conn:
        from database_models import User, ProcessedWebhookEvent  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


class FakeClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeBillingGateway:
    """
    In-memory stand-in for StripeBillingGateway with the same async methods.

    ``fail`` makes every call raise GatewayUnavailable, the way the real
    client reports timeouts and Stripe errors. ``calls`` records each call.
    """

    def __init__(self):
        self.subscriptions = {}
        self.setup_intents = {}
        self.fail = False
        self.calls = []
        self.price_ids = {"pro_monthly": "price_monthly", "pro_yearly": "price_yearly"}
        self._next_id = 0

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail:
            raise GatewayUnavailable(f"Timed out trying to {name}")

    def called(self, name) -> bool:
        return any(call[0] == name for call in self.calls)

    async def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise GatewayUnavailable(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def cancel_at_period_end(self, subscription_id):
        self._record("cancel_at_period_end", subscription_id)
        subscription = self.subscriptions.get(subscription_id)
        if subscription is not None:
            subscription = dataclasses.replace(subscription, cancel_at_period_end=True)
            self.subscriptions[subscription_id] = subscription
        return subscription

    async def create_checkout_session(self, email, plan, lookup_key, signup_type="subscription",
                                      origin=None, feature=None):
        self._record("create_checkout_session", email, plan, lookup_key, signup_type)
        return f"https://checkout.test/{signup_type}/{lookup_key}"

    async def create_trial_setup_intent(self, lookup_key, email, name=None):
        self._record("create_trial_setup_intent", lookup_key, email)
        return f"seti_secret_{lookup_key}"

    async def retrieve_setup_intent(self, setup_intent_id):
        self._record("retrieve_setup_intent", setup_intent_id)
        return self.setup_intents[setup_intent_id]

    async def create_trial_subscription(self, customer_id, payment_method_id, lookup_key):
        self._record("create_trial_subscription", customer_id, payment_method_id, lookup_key)
        self._next_id += 1
        subscription = Trialing(
            subscription_id=f"sub_trial_{self._next_id}",
            customer_id=customer_id,
            lookup_key=lookup_key,
        )
        self.subscriptions[subscription.subscription_id] = subscription
        return subscription

    async def create_billing_portal_session(self, customer_id):
        self._record("create_billing_portal_session", customer_id)
        return f"https://billing.test/portal/{customer_id}"

    def add_setup_intent(self, setup_intent_id, lookup_key, customer_id="cus_card", status="succeeded"):
        self.setup_intents[setup_intent_id] = SetupIntentResult(
            setup_intent_id=setup_intent_id,
            status=status,
            customer_id=customer_id,
            payment_method_id="pm_card",
            lookup_key=lookup_key,
            purpose="trial_signup",
        )


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


def subscription_object(subscription_id, status, customer_id="cus_1", interval="month",
                        period_start=NOW, period_end=NOW + timedelta(days=30), user_id=None,
                        cancel_at_period_end=False):
    """A Stripe subscription as it appears in webhook payloads."""
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer_id,
        "current_period_start": int((period_start - datetime(1970, 1, 1)).total_seconds()),
        "current_period_end": int((period_end - datetime(1970, 1, 1)).total_seconds()),
        "items": {"data": [{"price": {"id": f"price_{interval}ly", "recurring": {"interval": interval}}}]},
        "metadata": {},
        "cancel_at_period_end": cancel_at_period_end,
    }
    if user_id is not None:
        obj["metadata"]["userId"] = user_id
    return obj


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeBillingGateway()


@pytest.fixture
def user_repo(test_db):
    return UserRepository(test_db)


@pytest.fixture
def service(test_db, user_repo, gateway, clock):
    return ReconciliationService(test_db, user_repo, gateway, clock=clock)


@pytest.fixture
async def new_user(user_repo, test_db):
    user, _ = await user_repo.get_or_create_user("uid-alice", "alice@example.com")
    await test_db.commit()
    return user
