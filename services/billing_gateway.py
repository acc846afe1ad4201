"""
Billing Gateway - thin Stripe client for subscriptions, checkout and trials.

Every call is bounded by a timeout and every failure (network, auth, 4xx
from Stripe, timeout) surfaces as GatewayUnavailable. Stripe objects are
converted into ExternalSubscription variants as soon as they come back.
"""

import asyncio
import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe

from config.settings import settings
from services.entitlements import (
    Active,
    Canceled,
    Incomplete,
    PastDue,
    Trialing,
    TRIAL_DAYS,
)
from services.errors import GatewayUnavailable, MalformedEvent

logger = logging.getLogger(__name__)

if not settings.stripe_secret_key:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

PLAN_PRO_MONTHLY = "pro_monthly"
PLAN_PRO_YEARLY = "pro_yearly"
PLAN_INTERVALS = {
    PLAN_PRO_MONTHLY: "month",
    PLAN_PRO_YEARLY: "year",
}

_STATUS_VARIANTS = {
    "active": Active,
    "trialing": Trialing,
    "canceled": Canceled,
    "past_due": PastDue,
    "unpaid": PastDue,
    "paused": PastDue,
    "incomplete": Incomplete,
    "incomplete_expired": Incomplete,
}


@dataclass(frozen=True)
class SetupIntentResult:
    setup_intent_id: str
    status: str
    customer_id: Optional[str]
    payment_method_id: Optional[str]
    lookup_key: Optional[str] = None
    purpose: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


def _plain(obj):
    """Stripe objects and webhook payload dicts both end up as mappings."""
    if obj is None or isinstance(obj, Mapping):
        return obj
    return obj.to_dict()


def _object_id(value) -> Optional[str]:
    """Stripe fields like ``customer`` are either an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _plain(value).get("id")


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _first_item(data: Mapping) -> Mapping:
    items = data.get("items") or {}
    entries = items.get("data") or []
    return entries[0] if entries else {}


def to_external_subscription(raw, price_ids: Optional[Mapping] = None):
    """
    Convert a Stripe subscription (API object or webhook payload dict)
    into an ExternalSubscription variant.

    Args:
        raw: Stripe Subscription or the ``data.object`` of a subscription event
        price_ids: plan name -> price id, used when a price has no recurring interval

    Raises:
        MalformedEvent: if the object has no id or an unknown status
    """
    data = _plain(raw)
    if not data or not data.get("id"):
        raise MalformedEvent("Subscription object without an id")

    variant = _STATUS_VARIANTS.get(data.get("status"))
    if variant is None:
        raise MalformedEvent(f"Unknown subscription status: {data.get('status')!r}")

    item = _first_item(data)
    price = item.get("price") or {}
    price_id = price.get("id")
    interval = (price.get("recurring") or {}).get("interval")
    if interval is None and price_id and price_ids:
        for plan, plan_price_id in price_ids.items():
            if plan_price_id == price_id:
                interval = PLAN_INTERVALS.get(plan)

    # Newer API versions report the billing period on the item
    period_start = data.get("current_period_start") or item.get("current_period_start")
    period_end = data.get("current_period_end") or item.get("current_period_end")
    if variant is Canceled and data.get("ended_at"):
        period_end = data.get("ended_at")

    metadata = data.get("metadata") or {}
    return variant(
        subscription_id=data["id"],
        customer_id=_object_id(data.get("customer")),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        interval=interval,
        price_id=price_id,
        lookup_key=metadata.get("userId"),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
    )


class StripeBillingGateway:
    """
    Async facade over the Stripe API.
    """

    def __init__(self, api_key: Optional[str] = None, timeout_seconds: Optional[float] = None,
                 price_ids: Optional[dict] = None, trial_days: int = TRIAL_DAYS):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.price_ids = price_ids if price_ids is not None else {
            PLAN_PRO_MONTHLY: settings.stripe_price_pro_monthly,
            PLAN_PRO_YEARLY: settings.stripe_price_pro_yearly,
        }
        self.trial_days = trial_days

    async def _call(self, operation: str, fn, *args, **kwargs):
        if not self.api_key:
            logger.error(f"STRIPE_SECRET_KEY is not set. Cannot {operation}.")
            raise GatewayUnavailable(f"STRIPE_SECRET_KEY is not set. Cannot {operation}.")

        call = functools.partial(fn, *args, api_key=self.api_key, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe call timed out after {self.timeout_seconds}s: {operation}")
            raise GatewayUnavailable(f"Timed out trying to {operation}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed ({operation}): {e}")
            raise GatewayUnavailable(f"Failed to {operation}: {e}") from e

    def _price_id(self, plan: str) -> str:
        if plan not in PLAN_INTERVALS:
            raise ValueError(f"Invalid plan: {plan}")
        price_id = self.price_ids.get(plan)
        if not price_id:
            logger.error(f"No Stripe price configured for plan {plan}")
            raise GatewayUnavailable(f"No Stripe price configured for plan {plan}")
        return price_id

    async def retrieve_subscription(self, subscription_id: str):
        subscription = await self._call(
            "retrieve subscription", stripe.Subscription.retrieve, subscription_id
        )
        return to_external_subscription(subscription, self.price_ids)

    async def cancel_at_period_end(self, subscription_id: str):
        subscription = await self._call(
            "cancel subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        return to_external_subscription(subscription, self.price_ids)

    async def create_checkout_session(self, email: str, plan: str, lookup_key: str,
                                      signup_type: str = "subscription", origin: Optional[str] = None,
                                      feature: Optional[str] = None) -> str:
        """
        Create a Stripe Checkout session in subscription mode.

        The lookup key and plan travel as metadata; the webhook reads them
        back to associate the completed checkout with a user.

        Returns:
            Checkout session URL
        """
        price_id = self._price_id(plan)
        frontend_url = origin or settings.frontend_url or "http://localhost:5173"
        metadata = {"userId": lookup_key, "plan": plan, "signupType": signup_type}
        params = {}
        if signup_type == "trial":
            metadata["feature"] = feature or "general"
            params["subscription_data"] = {
                "trial_period_days": self.trial_days,
                "metadata": dict(metadata),
            }
        else:
            params["subscription_data"] = {"metadata": dict(metadata)}

        session = await self._call(
            "create checkout session",
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            mode="subscription",
            customer_email=email,
            line_items=[{"price": price_id, "quantity": 1}],
            metadata=metadata,
            success_url=f"{frontend_url}/?upgrade=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend_url}/pricing?upgrade=cancelled",
            **params,
        )
        return session.url

    async def _get_or_create_customer(self, email: str, name: Optional[str], lookup_key: str) -> str:
        customers = await self._call("list customers", stripe.Customer.list, email=email, limit=1)
        if customers.data:
            return customers.data[0].id
        customer = await self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            name=name or email,
            metadata={"userId": lookup_key},
        )
        return customer.id

    async def create_trial_setup_intent(self, lookup_key: str, email: str, name: Optional[str] = None) -> str:
        """
        Create a SetupIntent that collects a card for a trial.

        Returns:
            The SetupIntent client secret
        """
        customer_id = await self._get_or_create_customer(email, name, lookup_key)
        setup_intent = await self._call(
            "create setup intent",
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata={"userId": lookup_key, "purpose": "trial_signup"},
        )
        return setup_intent.client_secret

    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntentResult:
        setup_intent = _plain(await self._call(
            "retrieve setup intent", stripe.SetupIntent.retrieve, setup_intent_id
        ))
        return setup_intent_result(setup_intent)

    async def create_trial_subscription(self, customer_id: str, payment_method_id: Optional[str],
                                        lookup_key: str):
        params = {}
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        subscription = await self._call(
            "create trial subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": self._price_id(PLAN_PRO_MONTHLY)}],
            trial_period_days=self.trial_days,
            metadata={"userId": lookup_key, "signupType": "trial"},
            **params,
        )
        return to_external_subscription(subscription, self.price_ids)

    async def create_billing_portal_session(self, customer_id: str) -> str:
        frontend_url = settings.frontend_url or "http://localhost:5173"
        portal_session = await self._call(
            "create billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{frontend_url}/settings",
        )
        return portal_session.url


def setup_intent_result(raw) -> SetupIntentResult:
    data = _plain(raw)
    if not data or not data.get("id"):
        raise MalformedEvent("SetupIntent object without an id")
    metadata = data.get("metadata") or {}
    return SetupIntentResult(
        setup_intent_id=data["id"],
        status=data.get("status") or "",
        customer_id=_object_id(data.get("customer")),
        payment_method_id=_object_id(data.get("payment_method")),
        lookup_key=metadata.get("userId"),
        purpose=metadata.get("purpose"),
    )


def get_billing_gateway() -> StripeBillingGateway:
    """FastAPI dependency; tests override it with a fake gateway."""
    return StripeBillingGateway()
