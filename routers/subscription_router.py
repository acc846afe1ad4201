"""
Subscription and trial status endpoints.

All entitlement changes go through the ReconciliationService; these routes
only translate HTTP into service calls.
"""

import logging

from fastapi import APIRouter, Depends

from backend.utils.responses import success_response
from routers.deps import get_reconciliation_service
from services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

subscription_router = APIRouter(prefix="/api", tags=["subscription"])


@subscription_router.get("/subscription-status/{lookup_key}")
async def subscription_status(
    lookup_key: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    entitlement = await service.get_status(lookup_key)
    return success_response(entitlement.to_dict())


@subscription_router.get("/trial-status/{lookup_key}")
async def trial_status(
    lookup_key: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    entitlement = await service.get_status(lookup_key)
    data = entitlement.to_dict()
    return success_response({
        **data["trial"],
        "hasProAccess": entitlement.has_pro_access,
        "tier": entitlement.tier,
    })


@subscription_router.get("/trial-eligibility/{lookup_key}")
async def trial_eligibility(
    lookup_key: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.check_trial_eligibility(lookup_key)
    return success_response(result.to_dict())


@subscription_router.post("/start-trial/{lookup_key}")
async def start_trial(
    lookup_key: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Start a trial without a card. Refused with 400 and a reason when the
    eligibility guard says no.
    """
    user = await service.start_trial(lookup_key)
    entitlement = await service.get_status(user.id)
    return success_response(entitlement.to_dict(), message="Trial started")


@subscription_router.post("/expire-trial/{lookup_key}")
async def expire_trial(
    lookup_key: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    user = await service.expire_trial(lookup_key)
    entitlement = await service.get_status(user.id)
    return success_response(entitlement.to_dict(), message="Trial expired")


@subscription_router.post("/cancel-subscription/{lookup_key}")
async def cancel_subscription(
    lookup_key: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.cancel_subscription(lookup_key)
    return success_response(result.to_dict(), message=result.message)
