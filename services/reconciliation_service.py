"""
Reconciliation Service - the only writer of user entitlement state.

Merges what the database says with what the billing gateway says, runs the
resolver, and persists corrections. Trial grants from every path (explicit
API call, checkout webhook, card setup) go through ``_grant_trial`` and the
eligibility guard; there is no other way to set the trial fields.
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.user import Found, UserRepository
from database_models import User
from services.eligibility import EligibilityResult, TrialRegrantPolicy, check_eligibility
from services.entitlements import (
    PAID_TIERS,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_FREE,
    STATUS_TRIALING,
    TIER_FREE,
    TIER_TRIAL,
    TRIAL_DAYS,
    Active,
    EffectiveEntitlement,
    ExternalSubscription,
    Trialing,
    entitlement_changes,
    is_trial_active,
    resolve,
    utcnow,
)
from services.errors import (
    EntitlementError,
    GatewayUnavailable,
    StaleEntitlementWrite,
    TrialNotEligible,
    UserNotFound,
)

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


@dataclass(frozen=True)
class SubscriptionEvent:
    """
    A gateway subscription change, already verified and normalized.

    ``tier_hint`` is the plan recorded when the checkout was created; it is
    only consulted when the verified subscription carries no billing interval.
    """
    subscription: ExternalSubscription
    event_id: Optional[str] = None
    tier_hint: Optional[str] = None


@dataclass(frozen=True)
class CancellationResult:
    canceled: bool
    immediate: bool
    gateway_synced: bool
    access_until: Optional[datetime]
    message: str

    def to_dict(self) -> dict:
        return {
            "canceled": self.canceled,
            "immediate": self.immediate,
            "gatewaySynced": self.gateway_synced,
            "accessUntil": self.access_until.isoformat() if self.access_until else None,
            "message": self.message,
        }


class ReconciliationService:
    """
    Orchestrates the gateway client, the user store and the resolver.
    """

    def __init__(self, db: AsyncSession, user_repo: UserRepository, gateway,
                 clock: Callable[[], datetime] = utcnow, trial_days: int = TRIAL_DAYS,
                 regrant_policy: Optional[TrialRegrantPolicy] = None, max_attempts: int = 3):
        """
        Args:
            db: AsyncSession the repository writes through
            user_repo: UserRepository bound to the same session
            gateway: billing gateway client (StripeBillingGateway or a test fake)
            clock: returns the current naive UTC time
            trial_days: length of a granted trial window
            regrant_policy: when a used trial may be granted again
            max_attempts: retries after a concurrent write to the same user
        """
        self.db = db
        self.user_repo = user_repo
        self.gateway = gateway
        self.clock = clock
        self.trial_days = trial_days
        self.regrant_policy = regrant_policy or TrialRegrantPolicy()
        self.max_attempts = max(1, max_attempts)

    async def _require_user(self, lookup_key) -> User:
        result = await self.user_repo.find_user(lookup_key)
        if not isinstance(result, Found):
            raise UserNotFound(lookup_key)
        return result.user

    async def _mutate(self, user: User, compute: Callable[[User], dict]):
        """
        Apply ``compute(user)`` as one versioned write.

        If another writer changed the row in between, the session is rolled
        back, the user re-read and the changes recomputed from fresh state.

        Returns:
            Tuple of (user, changed)
        """
        user_id = user.id
        for attempt in range(1, self.max_attempts + 1):
            changes = compute(user)
            if not changes:
                return user, False
            try:
                await self.user_repo.apply_entitlement_changes(user, changes)
                return user, True
            except StaleEntitlementWrite:
                logger.warning(f"Concurrent entitlement update for user {user_id} (attempt {attempt}); retrying")
                await self.db.rollback()
                user = await self.user_repo.reload(user)
        raise StaleEntitlementWrite(user_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self, lookup_key) -> EffectiveEntitlement:
        """
        Resolve the user's entitlement, checking the gateway when the user is
        persisted as free but holds a subscription id. Gateway failures fall
        back to persisted state; the database is written only on change.
        """
        user = await self._require_user(lookup_key)
        now = self.clock()

        external = None
        if (user.subscription_tier or TIER_FREE) == TIER_FREE and user.external_subscription_id:
            try:
                external = await self.gateway.retrieve_subscription(user.external_subscription_id)
            except EntitlementError as e:
                logger.warning(
                    f"Could not verify subscription {user.external_subscription_id} for user {user.id}, "
                    f"using persisted state: {e}"
                )

        entitlement = resolve(user, external, now)
        if not entitlement.auto_upgraded:
            return entitlement

        def upgrade(current: User) -> dict:
            resolved = resolve(current, external, now)
            return entitlement_changes(current, resolved) if resolved.auto_upgraded else {}

        user, changed = await self._mutate(user, upgrade)
        if changed:
            logger.info(
                f"Auto-upgraded user {user.id} to {user.subscription_tier}/{user.subscription_status} "
                f"from verified subscription {external.subscription_id}"
            )
        return dataclasses.replace(resolve(user, None, now), auto_upgraded=changed)

    # ------------------------------------------------------------------
    # Trials
    # ------------------------------------------------------------------

    async def check_trial_eligibility(self, lookup_key) -> EligibilityResult:
        user = await self._require_user(lookup_key)
        return check_eligibility(user, self.clock(), self.regrant_policy)

    def _check_guard(self, user: User, now: datetime, source: str) -> None:
        result = check_eligibility(user, now, self.regrant_policy)
        if not result.eligible:
            security_logger.warning(
                f"TRIAL BLOCKED ({source}): {result.reason} for user {user.id}"
            )
            raise TrialNotEligible(result.reason, user.id)

    async def _grant_trial(self, user: User, source: str, extra: Optional[dict] = None) -> User:
        now = self.clock()
        self._check_guard(user, now, source)

        def grant(current: User) -> dict:
            # Re-checked on every attempt: a retry sees the other writer's state
            self._check_guard(current, now, source)
            changes = {
                "trial_start_date": now,
                "trial_end_date": now + timedelta(days=self.trial_days),
                "trial_count": (current.trial_count or 0) + 1,
                "has_used_trial": True,
                "subscription_tier": TIER_TRIAL,
                "subscription_status": STATUS_TRIALING,
            }
            changes.update(extra or {})
            return changes

        user, _ = await self._mutate(user, grant)
        logger.info(f"Trial activated for user {user.id} via {source} (trial #{user.trial_count})")
        return user

    async def start_trial(self, lookup_key) -> User:
        """
        Start a trial for a user after the eligibility guard approves it.

        Raises:
            UserNotFound, TrialNotEligible
        """
        user = await self._require_user(lookup_key)
        return await self._grant_trial(user, "api")

    async def grant_trial_for_checkout(self, lookup_key, customer_id: Optional[str] = None,
                                       subscription_id: Optional[str] = None) -> User:
        """Grant the trial bought through a completed trial checkout."""
        user = await self._require_user(lookup_key)
        extra = {}
        if customer_id:
            extra["external_customer_id"] = customer_id
        if subscription_id:
            extra["external_subscription_id"] = subscription_id
        return await self._grant_trial(user, "checkout", extra)

    async def complete_trial_setup(self, lookup_key, setup_intent_id: str) -> User:
        """
        Finish a card-first trial signup.

        The setup intent is verified with the gateway, the guard is checked
        before any gateway subscription is created, then the trial is granted.
        """
        setup_intent = await self.gateway.retrieve_setup_intent(setup_intent_id)
        return await self.complete_verified_trial_setup(setup_intent, lookup_key)

    async def complete_verified_trial_setup(self, setup_intent, lookup_key=None) -> User:
        """Same as ``complete_trial_setup`` for a setup intent already verified by signature."""
        if not setup_intent.succeeded:
            raise TrialNotEligible("payment method setup not completed")
        if lookup_key is None:
            lookup_key = setup_intent.lookup_key
        elif setup_intent.lookup_key and str(setup_intent.lookup_key) != str(lookup_key):
            security_logger.warning(
                f"TRIAL BLOCKED (setup_intent): intent {setup_intent.setup_intent_id} "
                f"belongs to {setup_intent.lookup_key}, requested by {lookup_key}"
            )
            raise TrialNotEligible("setup intent belongs to another user")
        if not setup_intent.customer_id:
            raise TrialNotEligible("setup intent has no customer")

        user = await self._require_user(lookup_key)
        self._check_guard(user, self.clock(), "setup_intent")

        subscription = await self.gateway.create_trial_subscription(
            setup_intent.customer_id, setup_intent.payment_method_id, str(lookup_key)
        )
        try:
            return await self._grant_trial(user, "setup_intent", {
                "external_customer_id": setup_intent.customer_id,
                "external_subscription_id": subscription.subscription_id,
            })
        except TrialNotEligible:
            logger.error(
                f"RECONCILE_REQUIRED: trial subscription {subscription.subscription_id} created "
                f"for user {user.id} but the trial grant was refused"
            )
            raise

    async def expire_trial(self, lookup_key) -> User:
        """End a user's trial now. Never grants or extends access; no-op for paying users."""
        user = await self._require_user(lookup_key)
        now = self.clock()

        def expire(current: User) -> dict:
            if current.subscription_tier in PAID_TIERS and current.subscription_status == STATUS_ACTIVE:
                return {}
            changes = {}
            if current.subscription_tier != TIER_FREE:
                changes["subscription_tier"] = TIER_FREE
            if current.subscription_status != STATUS_FREE:
                changes["subscription_status"] = STATUS_FREE
            if is_trial_active(current, now):
                changes["trial_end_date"] = now
            return changes

        user, changed = await self._mutate(user, expire)
        if changed:
            logger.info(f"Trial expired for user {user.id}")
        return user

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    async def _locate_user(self, subscription: ExternalSubscription) -> Optional[User]:
        user = await self.user_repo.get_user_by_external_subscription_id(subscription.subscription_id)
        if user is None and subscription.customer_id:
            user = await self.user_repo.get_user_by_external_customer_id(subscription.customer_id)
        if user is None and subscription.lookup_key:
            result = await self.user_repo.find_user(subscription.lookup_key)
            if isinstance(result, Found):
                user = result.user
        return user

    def _event_changes(self, user: User, event: SubscriptionEvent) -> dict:
        subscription = event.subscription
        live = isinstance(subscription, (Active, Trialing))
        current_id = user.external_subscription_id

        if current_id and current_id != subscription.subscription_id and not live:
            # A superseded subscription winding down must not touch the current one
            return {}

        wanted = {}
        if isinstance(subscription, Active):
            tier = subscription.paid_tier
            if subscription.interval is None and event.tier_hint in PAID_TIERS:
                tier = event.tier_hint
            wanted["subscription_tier"] = tier
            wanted["subscription_status"] = STATUS_CANCELED if subscription.winding_down else STATUS_ACTIVE
        elif isinstance(subscription, Trialing) and subscription.winding_down:
            # The echo of a cancelled trial must not bring the trial tier back
            wanted["subscription_status"] = STATUS_CANCELED
        elif isinstance(subscription, Trialing):
            wanted["subscription_tier"] = TIER_TRIAL
            wanted["subscription_status"] = STATUS_TRIALING
        else:
            wanted["subscription_status"] = subscription.status

        if subscription.current_period_end is not None:
            wanted["subscription_current_period_end"] = subscription.current_period_end
        if current_id != subscription.subscription_id:
            wanted["external_subscription_id"] = subscription.subscription_id
        if subscription.customer_id and user.external_customer_id != subscription.customer_id:
            if user.external_customer_id is None or current_id != subscription.subscription_id:
                wanted["external_customer_id"] = subscription.customer_id

        return {key: value for key, value in wanted.items() if getattr(user, key) != value}

    async def apply_subscription_event(self, event: SubscriptionEvent) -> bool:
        """
        Persist a verified subscription change. Safe to apply repeatedly: an
        event that matches the stored state produces no write.

        Returns:
            True if the user row changed

        Raises:
            UserNotFound: no user owns the subscription, customer or lookup key
        """
        subscription = event.subscription
        user = await self._locate_user(subscription)
        if user is None:
            raise UserNotFound(subscription.lookup_key or subscription.subscription_id)

        user, changed = await self._mutate(user, lambda current: self._event_changes(current, event))
        if changed:
            logger.info(
                f"Subscription {subscription.subscription_id} applied to user {user.id}: "
                f"{user.subscription_tier}/{user.subscription_status}"
            )
        else:
            logger.info(f"Subscription {subscription.subscription_id} already reflected for user {user.id}")
        return changed

    async def reconcile_checkout_subscription(self, subscription_id: str, lookup_key=None,
                                              tier_hint: Optional[str] = None,
                                              event_id: Optional[str] = None) -> bool:
        """
        Apply a paid checkout. The plan in the checkout metadata is never
        trusted on its own: the subscription is re-read from the gateway.
        """
        subscription = await self.gateway.retrieve_subscription(subscription_id)
        if subscription.lookup_key is None and lookup_key is not None:
            subscription = dataclasses.replace(subscription, lookup_key=str(lookup_key))
        return await self.apply_subscription_event(
            SubscriptionEvent(subscription=subscription, event_id=event_id, tier_hint=tier_hint)
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_subscription(self, lookup_key) -> CancellationResult:
        """
        Cancel a user's plan.

        A trial without a paid plan ends immediately. A paid plan is cancelled
        at period end with the gateway and keeps access until then. If the
        gateway cannot be reached the local cancellation still happens and the
        mismatch is logged for manual reconciliation.
        """
        user = await self._require_user(lookup_key)
        now = self.clock()
        paid = user.subscription_tier in PAID_TIERS
        trial_only = not paid and (user.subscription_tier == TIER_TRIAL or is_trial_active(user, now))

        if not paid and not trial_only:
            return CancellationResult(False, False, True, None, "No active subscription to cancel")

        if paid and user.subscription_status == STATUS_CANCELED:
            return CancellationResult(
                True, False, True, user.subscription_current_period_end,
                "Subscription is already set to cancel at the end of the current period",
            )

        gateway_synced = True
        if user.external_subscription_id:
            try:
                await self.gateway.cancel_at_period_end(user.external_subscription_id)
            except GatewayUnavailable as e:
                gateway_synced = False
                logger.error(
                    f"RECONCILE_REQUIRED: subscription {user.external_subscription_id} for user {user.id} "
                    f"cancelled locally but not at the gateway: {e}"
                )

        if paid:
            def cancel_paid(current: User) -> dict:
                if current.subscription_status == STATUS_CANCELED:
                    return {}
                return {"subscription_status": STATUS_CANCELED}

            user, _ = await self._mutate(user, cancel_paid)
            logger.info(f"Subscription cancelled at period end for user {user.id}")
            return CancellationResult(
                True, False, gateway_synced, user.subscription_current_period_end,
                "Subscription will be cancelled at the end of the current period",
            )

        def cancel_trial(current: User) -> dict:
            changes = {
                "subscription_tier": TIER_FREE,
                "subscription_status": STATUS_CANCELED,
            }
            if is_trial_active(current, now):
                changes["trial_end_date"] = now
            return {key: value for key, value in changes.items() if getattr(current, key) != value}

        user, _ = await self._mutate(user, cancel_trial)
        logger.info(f"Trial cancelled for user {user.id}")
        return CancellationResult(True, True, gateway_synced, None, "Trial cancelled")
