"""
Billing Router - API endpoints for Stripe billing integration
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.utils.responses import success_response, error_response
from crud.user import Found
from routers.deps import get_reconciliation_service, get_webhook_handler
from services.billing_gateway import PLAN_INTERVALS
from services.errors import TrialNotEligible, UserNotFound
from services.reconciliation_service import ReconciliationService
from services.webhook_handler import WebhookIngestionHandler

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CheckoutRequest(BaseModel):
    userId: str
    plan: str


class TrialSessionRequest(BaseModel):
    userId: str
    feature: Optional[str] = None


class SetupIntentRequest(BaseModel):
    userId: str
    email: str
    name: Optional[str] = None


class CompleteTrialSetupRequest(BaseModel):
    userId: str
    setupIntentId: str


class PortalRequest(BaseModel):
    userId: str


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    handler: WebhookIngestionHandler = Depends(get_webhook_handler),
):
    """
    Handle Stripe webhook events with signature verification.

    The body is read as raw bytes and verified before it is parsed.
    Rejected signatures get a 400; every verified event gets a 200 so
    Stripe does not retry, even when processing it failed.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    outcome = await handler.handle(payload, signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict())


async def _lookup(service: ReconciliationService, lookup_key: str):
    result = await service.user_repo.find_user(lookup_key)
    if not isinstance(result, Found):
        raise UserNotFound(lookup_key)
    return result.user


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Create a Stripe Checkout session for a paid plan.
    The user's lookup key and plan travel as metadata to the webhook.
    """
    if body.plan not in PLAN_INTERVALS:
        return error_response("invalid_plan", status=400, message="Invalid plan selected")

    user = await _lookup(service, body.userId)
    url = await service.gateway.create_checkout_session(
        user.email, body.plan, body.userId, "subscription", request.headers.get("origin")
    )
    return success_response({"url": url})


@billing_router.post("/create-trial-session")
async def create_trial_session(
    body: TrialSessionRequest,
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Create a Stripe Checkout session with a trial period.
    The trial itself is only granted when the verified webhook arrives.
    """
    user = await _lookup(service, body.userId)
    eligibility = await service.check_trial_eligibility(user.id)
    if not eligibility.eligible:
        logger.warning(f"Trial checkout refused for user {user.id}: {eligibility.reason}")
        raise TrialNotEligible(eligibility.reason, user.id)

    url = await service.gateway.create_checkout_session(
        user.email, "pro_monthly", body.userId, "trial", request.headers.get("origin"), body.feature
    )
    return success_response({"url": url})


@billing_router.post("/create-trial-setup-intent")
async def create_trial_setup_intent(
    body: SetupIntentRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Collect a card for a trial through a Stripe SetupIntent."""
    if not EMAIL_PATTERN.match(body.email):
        return error_response("invalid_email", status=400, message="Invalid email format")

    await _lookup(service, body.userId)
    client_secret = await service.gateway.create_trial_setup_intent(body.userId, body.email, body.name)
    return success_response({"clientSecret": client_secret})


@billing_router.post("/complete-trial-setup")
async def complete_trial_setup(
    body: CompleteTrialSetupRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Finish a card-first trial once the SetupIntent has succeeded."""
    user = await service.complete_trial_setup(body.userId, body.setupIntentId)
    entitlement = await service.get_status(user.id)
    return success_response(entitlement.to_dict(), message="Trial activated successfully")


@billing_router.post("/portal")
async def create_billing_portal_session(
    body: PortalRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Create a Stripe Billing Portal session for a user with a Stripe customer."""
    user = await _lookup(service, body.userId)
    if not user.external_customer_id:
        return error_response("no_customer", status=400, message="No billing account for this user")
    url = await service.gateway.create_billing_portal_session(user.external_customer_id)
    return success_response({"url": url})
