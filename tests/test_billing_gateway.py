"""
Tests for the Stripe gateway client: object conversion, timeouts and error mapping
"""
import time
from datetime import datetime

import pytest
import stripe

from services.billing_gateway import StripeBillingGateway, setup_intent_result, to_external_subscription
from services.entitlements import Active, Canceled, Incomplete, PastDue, Trialing
from services.errors import GatewayUnavailable, MalformedEvent
from tests.conftest import subscription_object


def test_active_subscription_conversion():
    subscription = to_external_subscription(subscription_object("sub_1", "active", user_id="uid-alice"))

    assert isinstance(subscription, Active)
    assert subscription.subscription_id == "sub_1"
    assert subscription.customer_id == "cus_1"
    assert subscription.interval == "month"
    assert subscription.lookup_key == "uid-alice"
    assert subscription.current_period_end == datetime(2026, 3, 31, 12, 0, 0)


@pytest.mark.parametrize("status, variant", [
    ("trialing", Trialing),
    ("canceled", Canceled),
    ("past_due", PastDue),
    ("unpaid", PastDue),
    ("incomplete_expired", Incomplete),
])
def test_status_variants(status, variant):
    assert type(to_external_subscription(subscription_object("sub_1", status))) is variant


def test_cancel_at_period_end_is_carried():
    obj = subscription_object("sub_1", "active", cancel_at_period_end=True)

    subscription = to_external_subscription(obj)

    assert isinstance(subscription, Active)
    assert subscription.cancel_at_period_end is True
    assert subscription.winding_down is True
    assert to_external_subscription(subscription_object("sub_1", "active")).winding_down is False


def test_unknown_status_is_malformed():
    with pytest.raises(MalformedEvent):
        to_external_subscription(subscription_object("sub_1", "mystery"))


def test_missing_id_is_malformed():
    with pytest.raises(MalformedEvent):
        to_external_subscription({"status": "active"})


def test_interval_from_configured_price_id():
    obj = subscription_object("sub_1", "active")
    obj["items"]["data"][0]["price"] = {"id": "price_y"}

    subscription = to_external_subscription(obj, {"pro_monthly": "price_m", "pro_yearly": "price_y"})

    assert subscription.interval == "year"
    assert subscription.paid_tier == "pro_yearly"


def test_period_read_from_subscription_item():
    obj = subscription_object("sub_1", "active")
    item = obj["items"]["data"][0]
    item["current_period_start"] = obj.pop("current_period_start")
    item["current_period_end"] = obj.pop("current_period_end")

    subscription = to_external_subscription(obj)

    assert subscription.current_period_end == datetime(2026, 3, 31, 12, 0, 0)


def test_expanded_customer_object():
    obj = subscription_object("sub_1", "active")
    obj["customer"] = {"id": "cus_expanded", "object": "customer"}
    assert to_external_subscription(obj).customer_id == "cus_expanded"


def test_setup_intent_conversion():
    result = setup_intent_result({
        "id": "seti_1",
        "status": "succeeded",
        "customer": "cus_1",
        "payment_method": {"id": "pm_1"},
        "metadata": {"userId": "uid-alice", "purpose": "trial_signup"},
    })

    assert result.succeeded is True
    assert result.payment_method_id == "pm_1"
    assert result.lookup_key == "uid-alice"
    assert result.purpose == "trial_signup"


@pytest.mark.asyncio
async def test_missing_api_key_is_unavailable():
    gateway = StripeBillingGateway(api_key="")
    with pytest.raises(GatewayUnavailable):
        await gateway.retrieve_subscription("sub_1")


@pytest.mark.asyncio
async def test_slow_gateway_times_out(monkeypatch):
    def slow_retrieve(subscription_id, **kwargs):
        time.sleep(0.5)
        return subscription_object(subscription_id, "active")

    monkeypatch.setattr(stripe.Subscription, "retrieve", slow_retrieve)
    gateway = StripeBillingGateway(api_key="sk_test_123", timeout_seconds=0.05)

    with pytest.raises(GatewayUnavailable):
        await gateway.retrieve_subscription("sub_1")


@pytest.mark.asyncio
async def test_stripe_errors_become_unavailable(monkeypatch):
    def failing_retrieve(subscription_id, **kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.Subscription, "retrieve", failing_retrieve)
    gateway = StripeBillingGateway(api_key="sk_test_123")

    with pytest.raises(GatewayUnavailable):
        await gateway.retrieve_subscription("sub_1")


@pytest.mark.asyncio
async def test_retrieve_passes_api_key_and_converts(monkeypatch):
    seen = {}

    def fake_retrieve(subscription_id, **kwargs):
        seen.update(kwargs, subscription_id=subscription_id)
        return subscription_object(subscription_id, "active", interval="year")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)
    gateway = StripeBillingGateway(api_key="sk_test_123")

    subscription = await gateway.retrieve_subscription("sub_1")

    assert seen == {"subscription_id": "sub_1", "api_key": "sk_test_123"}
    assert isinstance(subscription, Active)
    assert subscription.paid_tier == "pro_yearly"


@pytest.mark.asyncio
async def test_unconfigured_price_is_unavailable():
    gateway = StripeBillingGateway(api_key="sk_test_123", price_ids={"pro_monthly": None})
    with pytest.raises(GatewayUnavailable):
        await gateway.create_checkout_session("a@example.com", "pro_monthly", "uid-alice")


@pytest.mark.asyncio
async def test_unknown_plan_is_rejected():
    gateway = StripeBillingGateway(api_key="sk_test_123")
    with pytest.raises(ValueError):
        await gateway.create_checkout_session("a@example.com", "platinum", "uid-alice")
