"""
Trial eligibility guard.

Every code path that grants a trial asks this module first; the
ReconciliationService is the only caller that acts on the answer.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from services.entitlements import (
    PAID_TIERS,
    STATUS_ACTIVE,
    is_trial_active,
    utcnow,
)

REASON_TRIAL_USED = "trial already used"
REASON_SUBSCRIBED = "already subscribed"
REASON_TRIAL_ACTIVE = "trial already active"


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"eligible": self.eligible}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class TrialRegrantPolicy:
    """
    When a user who already had a trial may have another one.

    ``after_days`` of None disables re-grants entirely. Otherwise the
    previous trial window must have ended at least that many days ago.
    """
    after_days: Optional[int] = None

    def permits(self, user, now: datetime) -> bool:
        if self.after_days is None or user.trial_end_date is None:
            return False
        return now >= user.trial_end_date + timedelta(days=self.after_days)


def check_eligibility(user, now: Optional[datetime] = None,
                      policy: Optional[TrialRegrantPolicy] = None) -> EligibilityResult:
    """
    Rules are evaluated in order and the first failing rule wins:
    a used trial (without a re-grant), an active paid subscription,
    a trial window that is still open.
    """
    now = now or utcnow()
    policy = policy or TrialRegrantPolicy()

    if (user.has_used_trial or (user.trial_count or 0) > 0) and not policy.permits(user, now):
        return EligibilityResult(False, REASON_TRIAL_USED)

    if user.subscription_status == STATUS_ACTIVE and user.subscription_tier in PAID_TIERS:
        return EligibilityResult(False, REASON_SUBSCRIBED)

    if is_trial_active(user, now):
        return EligibilityResult(False, REASON_TRIAL_ACTIVE)

    return EligibilityResult(True)
