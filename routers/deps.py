"""
Dependency wiring shared by the entitlement routers.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.user import UserRepository
from database import get_db
from services.billing_gateway import get_billing_gateway
from services.eligibility import TrialRegrantPolicy
from services.reconciliation_service import ReconciliationService
from services.webhook_handler import WebhookIngestionHandler


def build_reconciliation_service(db: AsyncSession, gateway) -> ReconciliationService:
    return ReconciliationService(
        db,
        UserRepository(db),
        gateway,
        trial_days=settings.trial_days,
        regrant_policy=TrialRegrantPolicy(settings.trial_regrant_after_days),
        max_attempts=settings.reconcile_max_attempts,
    )


async def get_reconciliation_service(
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_billing_gateway),
) -> ReconciliationService:
    return build_reconciliation_service(db, gateway)


def get_webhook_secret():
    return settings.stripe_webhook_secret


async def get_webhook_handler(
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_billing_gateway),
    secret=Depends(get_webhook_secret),
) -> WebhookIngestionHandler:
    return WebhookIngestionHandler(
        db,
        build_reconciliation_service(db, gateway),
        secret,
        tolerance=settings.webhook_tolerance_seconds,
        price_ids=getattr(gateway, "price_ids", None),
    )
