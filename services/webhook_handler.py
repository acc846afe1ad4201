"""
Webhook Ingestion Handler for billing gateway events.

Raw request bytes are verified against the shared signing secret before
anything is parsed. Unverified requests are rejected with no side effects;
verified events are always acknowledged so the gateway stops retrying, even
when processing them fails.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import stripe
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crud.webhook_event import WebhookEventRepository
from services.billing_gateway import setup_intent_result, to_external_subscription
from services.errors import (
    EntitlementError,
    GatewayUnavailable,
    MalformedEvent,
    SignatureVerificationFailed,
    StaleEntitlementWrite,
)
from services.reconciliation_service import ReconciliationService, SubscriptionEvent

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

STATE_UNVERIFIED = "unverified"
STATE_VERIFIED = "verified"
STATE_PROCESSED = "processed"
STATE_REJECTED = "rejected"

EVENT_SUBSCRIPTION_CREATED = "subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "subscription.deleted"
EVENT_CHECKOUT_COMPLETED = "checkout.completed"
EVENT_SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"

SUBSCRIPTION_EVENTS = frozenset({
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_DELETED,
})

# Stripe event names -> internal names
EVENT_ALIASES = {
    "customer.subscription.created": EVENT_SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EVENT_SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EVENT_SUBSCRIPTION_DELETED,
    "checkout.session.completed": EVENT_CHECKOUT_COMPLETED,
}

# Failures a redelivery could fix are not recorded as processed
_TRANSIENT_ERRORS = (GatewayUnavailable, StaleEntitlementWrite)


@dataclass
class WebhookOutcome:
    state: str
    status_code: int
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    detail: Optional[str] = None
    ok: bool = False

    def to_dict(self) -> dict:
        content = {"ok": self.ok, "received": self.state != STATE_REJECTED}
        if self.event_type:
            content["event_type"] = self.event_type
        if self.detail:
            content["detail"] = self.detail
        return content


def normalize_event_type(event_type: Optional[str]) -> Optional[str]:
    if event_type is None:
        return None
    return EVENT_ALIASES.get(event_type, event_type)


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str],
                     tolerance: int = 300) -> None:
    """
    Check a Stripe-style ``t=...,v1=...`` signature over the raw body.

    Raises:
        SignatureVerificationFailed
    """
    if not secret:
        raise SignatureVerificationFailed("Webhook secret not configured")
    if not signature:
        raise SignatureVerificationFailed("Missing signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureVerificationFailed("Payload is not valid UTF-8") from e
    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationFailed(str(e)) from e


class WebhookIngestionHandler:
    """
    unverified -> verified -> processed | rejected
    """

    def __init__(self, db: AsyncSession, service: ReconciliationService, secret: Optional[str],
                 tolerance: int = 300, price_ids: Optional[dict] = None):
        self.db = db
        self.service = service
        self.events = WebhookEventRepository(db)
        self.secret = secret
        self.tolerance = tolerance
        self.price_ids = price_ids

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        state = STATE_UNVERIFIED
        try:
            verify_signature(payload, signature, self.secret, self.tolerance)
        except SignatureVerificationFailed as e:
            security_logger.warning(f"Webhook rejected in state {state}: {e}")
            return WebhookOutcome(STATE_REJECTED, 400, detail=str(e))

        state = STATE_VERIFIED
        try:
            event = json.loads(payload)
        except ValueError:
            logger.error("Verified webhook payload is not valid JSON; acknowledging without processing")
            return WebhookOutcome(STATE_PROCESSED, 200, detail="malformed event")

        if not isinstance(event, dict):
            logger.error("Verified webhook payload is not a JSON object; acknowledging without processing")
            return WebhookOutcome(STATE_PROCESSED, 200, detail="malformed event")

        event_id = event.get("id")
        event_type = normalize_event_type(event.get("type"))
        logger.info(f"Webhook {event_id} verified: {event.get('type')}")

        if event_id and await self.events.has_processed_event(event_id):
            logger.info(f"Webhook {event_id} already processed; acknowledging duplicate")
            return WebhookOutcome(STATE_PROCESSED, 200, event_type, event_id, "duplicate", ok=True)

        ok = False
        record = True
        try:
            detail = await self._dispatch(event_type, event, event_id)
            ok = True
        except MalformedEvent as e:
            logger.error(f"Webhook {event_id} ({event_type}) malformed: {e}")
            detail = "malformed event"
        except _TRANSIENT_ERRORS as e:
            # Acknowledged with 200, so the gateway will not retry on its own
            logger.error(
                f"RECONCILE_REQUIRED: webhook {event_id} ({event_type}) not applied and not recorded; "
                f"resend it from the dashboard once the cause clears: {e}"
            )
            detail = "processing failed"
            record = False
        except EntitlementError as e:
            logger.warning(f"Webhook {event_id} ({event_type}) not applied: {e}")
            detail = e.code
        except Exception as e:
            logger.error(
                f"RECONCILE_REQUIRED: error processing webhook {event_id} ({event_type}): {e}", exc_info=True
            )
            await self.db.rollback()
            detail = "processing failed"
            record = False

        if record and event_id:
            try:
                await self.events.record_processed_event(event_id, event_type or "unknown", detail)
            except IntegrityError:
                # A concurrent delivery of the same event committed first, with the same changes
                await self.db.rollback()
                logger.info(f"Webhook {event_id} recorded by a concurrent delivery; acknowledging duplicate")
                return WebhookOutcome(STATE_PROCESSED, 200, event_type, event_id, "duplicate", ok=True)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"RECONCILE_REQUIRED: could not record webhook {event_id}, changes rolled back: {e}")
                return WebhookOutcome(STATE_PROCESSED, 200, event_type, event_id, "processing failed")

        return WebhookOutcome(STATE_PROCESSED, 200, event_type, event_id, detail, ok=ok)

    async def _dispatch(self, event_type: Optional[str], event: dict, event_id: Optional[str]) -> str:
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not event_type or not isinstance(obj, dict):
            raise MalformedEvent("Event without type or data.object")

        metadata = obj.get("metadata") or {}

        if event_type in SUBSCRIPTION_EVENTS:
            subscription = to_external_subscription(obj, self.price_ids)
            changed = await self.service.apply_subscription_event(
                SubscriptionEvent(subscription=subscription, event_id=event_id, tier_hint=metadata.get("plan"))
            )
            return "applied" if changed else "unchanged"

        if event_type == EVENT_CHECKOUT_COMPLETED:
            signup_type = metadata.get("signupType")
            lookup_key = metadata.get("userId")
            if signup_type not in ("trial", "subscription"):
                return "ignored"
            if not lookup_key:
                raise MalformedEvent("Checkout session without a user lookup key")
            customer_id = obj.get("customer")
            subscription_id = obj.get("subscription")
            if isinstance(customer_id, dict):
                customer_id = customer_id.get("id")
            if isinstance(subscription_id, dict):
                subscription_id = subscription_id.get("id")

            if signup_type == "trial":
                await self.service.grant_trial_for_checkout(lookup_key, customer_id, subscription_id)
                return "trial granted"

            if not subscription_id:
                raise MalformedEvent("Subscription checkout without a subscription id")
            changed = await self.service.reconcile_checkout_subscription(
                subscription_id, lookup_key, metadata.get("plan"), event_id
            )
            return "applied" if changed else "unchanged"

        if event_type == EVENT_SETUP_INTENT_SUCCEEDED:
            setup_intent = setup_intent_result(obj)
            if setup_intent.purpose != "trial_signup":
                return "ignored"
            if not setup_intent.lookup_key:
                raise MalformedEvent("Trial setup intent without a user lookup key")
            await self.service.complete_verified_trial_setup(setup_intent)
            return "trial granted"

        logger.info(f"Unhandled event type {event.get('type')}")
        return "ignored"
