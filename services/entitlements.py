"""
Entitlement resolution: tiers, statuses, and the pure resolver that turns a
persisted user plus an optional verified gateway subscription into the
effective access a user has right now.

Nothing in this module performs I/O.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import ClassVar, Optional


TRIAL_DAYS = 3

TIER_FREE = "free"
TIER_TRIAL = "trial"
TIER_PRO_MONTHLY = "pro_monthly"
TIER_PRO_YEARLY = "pro_yearly"

PAID_TIERS = frozenset({TIER_PRO_MONTHLY, TIER_PRO_YEARLY})
TIERS = frozenset({TIER_FREE, TIER_TRIAL}) | PAID_TIERS

STATUS_NONE = "none"
STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_CANCELED = "canceled"
STATUS_FREE = "free"
STATUS_PAST_DUE = "past_due"
STATUS_INCOMPLETE = "incomplete"

# A billing period at least this long is treated as a yearly plan
_YEARLY_PERIOD = timedelta(days=300)


def utcnow() -> datetime:
    """Naive UTC now; all persisted timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ExternalSubscription:
    """
    A subscription as verified with the billing gateway.

    Only the concrete variants below are ever constructed; internal logic
    dispatches on the variant type and never on raw gateway status strings.
    """
    subscription_id: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    interval: Optional[str] = None
    price_id: Optional[str] = None
    lookup_key: Optional[str] = None
    # Customer cancelled; the subscription stays live until the period ends
    cancel_at_period_end: bool = False

    status: ClassVar[str] = STATUS_NONE

    @property
    def winding_down(self) -> bool:
        return self.cancel_at_period_end and self.status in (STATUS_ACTIVE, STATUS_TRIALING)

    @property
    def paid_tier(self) -> str:
        if self.interval == "year":
            return TIER_PRO_YEARLY
        if self.interval == "month":
            return TIER_PRO_MONTHLY
        if self.current_period_start and self.current_period_end:
            if self.current_period_end - self.current_period_start >= _YEARLY_PERIOD:
                return TIER_PRO_YEARLY
        return TIER_PRO_MONTHLY


class Active(ExternalSubscription):
    status = STATUS_ACTIVE


class Trialing(ExternalSubscription):
    status = STATUS_TRIALING


class Canceled(ExternalSubscription):
    status = STATUS_CANCELED


class PastDue(ExternalSubscription):
    status = STATUS_PAST_DUE


class Incomplete(ExternalSubscription):
    status = STATUS_INCOMPLETE


@dataclass(frozen=True)
class EffectiveEntitlement:
    tier: str
    status: str
    has_pro_access: bool
    trial_active: bool
    trial_days_remaining: int
    current_period_end: Optional[datetime] = None
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    auto_upgraded: bool = False

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "status": self.status,
            "hasProAccess": self.has_pro_access,
            "trialDaysRemaining": self.trial_days_remaining,
            "currentPeriodEnd": _isoformat(self.current_period_end),
            "autoUpgraded": self.auto_upgraded,
            "trial": {
                "isActive": self.trial_active,
                "daysRemaining": self.trial_days_remaining,
                "startDate": _isoformat(self.trial_start_date),
                "endDate": _isoformat(self.trial_end_date),
            },
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def is_trial_active(user, now: Optional[datetime] = None) -> bool:
    if user.trial_start_date is None or user.trial_end_date is None:
        return False
    now = now or utcnow()
    return now < user.trial_end_date


def trial_days_remaining(user, now: Optional[datetime] = None) -> int:
    if not is_trial_active(user, now):
        return 0
    now = now or utcnow()
    remaining = (user.trial_end_date - now).total_seconds()
    return max(0, math.ceil(remaining / 86400))


def has_pro_access(tier: str, status: str, current_period_end: Optional[datetime],
                   trial_active: bool, now: datetime) -> bool:
    if trial_active:
        return True
    if tier not in PAID_TIERS:
        return False
    if status == STATUS_ACTIVE:
        return True
    # Cancelled at period end: access runs until the paid period is over
    if status == STATUS_CANCELED and current_period_end is not None:
        return now < current_period_end
    return False


def resolve(user, external: Optional[ExternalSubscription] = None,
            now: Optional[datetime] = None) -> EffectiveEntitlement:
    """
    Compute the effective entitlement for a user.

    Args:
        user: persisted User record
        external: subscription freshly verified with the gateway, if any
        now: evaluation time (naive UTC), defaults to the current time

    Returns:
        EffectiveEntitlement; ``auto_upgraded`` is True only when the verified
        subscription changed the persisted tier or status.
    """
    now = now or utcnow()
    trial_active = is_trial_active(user, now)

    persisted_tier = user.subscription_tier or TIER_FREE
    persisted_status = user.subscription_status or STATUS_NONE
    tier = persisted_tier
    status = persisted_status
    period_end = user.subscription_current_period_end
    auto_upgraded = False

    if external is not None:
        if isinstance(external, Active):
            # Paid through the period even when set to cancel at its end
            tier = external.paid_tier
            status = STATUS_CANCELED if external.winding_down else STATUS_ACTIVE
        elif isinstance(external, Trialing) and not external.winding_down:
            tier = TIER_TRIAL
            status = STATUS_TRIALING
        elif isinstance(external, Trialing):
            status = STATUS_CANCELED
        else:
            # Canceled, past due, incomplete: never an upgrade
            status = external.status
        if external.current_period_end is not None:
            period_end = external.current_period_end
        elevating = isinstance(external, Active) or (
            isinstance(external, Trialing) and not external.winding_down
        )
        auto_upgraded = elevating and (tier, status) != (persisted_tier, persisted_status)

    return EffectiveEntitlement(
        tier=tier,
        status=status,
        has_pro_access=has_pro_access(tier, status, period_end, trial_active, now),
        trial_active=trial_active,
        trial_days_remaining=trial_days_remaining(user, now),
        current_period_end=period_end,
        trial_start_date=user.trial_start_date,
        trial_end_date=user.trial_end_date,
        auto_upgraded=auto_upgraded,
    )


def entitlement_changes(user, entitlement: EffectiveEntitlement) -> dict:
    """Persisted fields that differ from a resolved entitlement."""
    wanted = {
        "subscription_tier": entitlement.tier,
        "subscription_status": entitlement.status,
        "subscription_current_period_end": entitlement.current_period_end,
    }
    return {key: value for key, value in wanted.items() if getattr(user, key) != value}
