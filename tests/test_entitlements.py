"""
Unit tests for the entitlement resolver
"""
from datetime import timedelta
from types import SimpleNamespace

from services.entitlements import (
    Active,
    Canceled,
    PastDue,
    Trialing,
    entitlement_changes,
    has_pro_access,
    is_trial_active,
    resolve,
    trial_days_remaining,
)
from tests.conftest import NOW


def make_user(**overrides):
    fields = {
        "subscription_tier": "free",
        "subscription_status": "none",
        "subscription_current_period_end": None,
        "trial_start_date": None,
        "trial_end_date": None,
        "has_used_trial": False,
        "trial_count": 0,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_free_user_has_no_access():
    entitlement = resolve(make_user(), None, NOW)

    assert entitlement.tier == "free"
    assert entitlement.status == "none"
    assert entitlement.has_pro_access is False
    assert entitlement.trial_active is False
    assert entitlement.trial_days_remaining == 0
    assert entitlement.auto_upgraded is False


def test_active_trial_window_grants_access():
    user = make_user(
        subscription_tier="trial",
        subscription_status="trialing",
        trial_start_date=NOW - timedelta(days=1),
        trial_end_date=NOW + timedelta(days=2),
    )
    entitlement = resolve(user, None, NOW)

    assert entitlement.has_pro_access is True
    assert entitlement.trial_active is True
    assert entitlement.trial_days_remaining == 2


def test_trial_days_remaining_rounds_up_partial_days():
    user = make_user(trial_start_date=NOW, trial_end_date=NOW + timedelta(days=1, hours=1))
    assert trial_days_remaining(user, NOW) == 2


def test_trial_ends_exactly_at_end_date():
    user = make_user(trial_start_date=NOW - timedelta(days=3), trial_end_date=NOW)
    assert is_trial_active(user, NOW) is False
    assert trial_days_remaining(user, NOW) == 0


def test_trial_tier_without_window_has_no_access():
    user = make_user(subscription_tier="trial", subscription_status="trialing")
    assert resolve(user, None, NOW).has_pro_access is False


def test_verified_active_subscription_upgrades_free_user():
    external = Active(subscription_id="sub_1", interval="month", current_period_end=NOW + timedelta(days=30))
    entitlement = resolve(make_user(), external, NOW)

    assert entitlement.tier == "pro_monthly"
    assert entitlement.status == "active"
    assert entitlement.has_pro_access is True
    assert entitlement.current_period_end == NOW + timedelta(days=30)
    assert entitlement.auto_upgraded is True


def test_yearly_interval_maps_to_yearly_tier():
    external = Active(subscription_id="sub_1", interval="year")
    assert resolve(make_user(), external, NOW).tier == "pro_yearly"


def test_period_length_decides_tier_without_interval():
    external = Active(
        subscription_id="sub_1",
        current_period_start=NOW,
        current_period_end=NOW + timedelta(days=365),
    )
    assert external.paid_tier == "pro_yearly"


def test_matching_external_state_is_not_an_upgrade():
    user = make_user(subscription_tier="pro_monthly", subscription_status="active")
    external = Active(subscription_id="sub_1", interval="month")
    assert resolve(user, external, NOW).auto_upgraded is False


def test_subscription_set_to_cancel_resolves_as_canceled():
    user = make_user(subscription_tier="pro_monthly", subscription_status="canceled",
                     subscription_current_period_end=NOW + timedelta(days=10))
    external = Active(subscription_id="sub_1", interval="month",
                      current_period_end=NOW + timedelta(days=10), cancel_at_period_end=True)

    entitlement = resolve(user, external, NOW)

    assert external.winding_down is True
    assert entitlement.tier == "pro_monthly"
    assert entitlement.status == "canceled"
    assert entitlement.has_pro_access is True
    assert entitlement.auto_upgraded is False
    assert resolve(user, external, NOW + timedelta(days=11)).has_pro_access is False


def test_cancelled_trial_at_gateway_never_upgrades():
    user = make_user(subscription_status="canceled")
    entitlement = resolve(user, Trialing(subscription_id="sub_1", cancel_at_period_end=True), NOW)

    assert entitlement.tier == "free"
    assert entitlement.status == "canceled"
    assert entitlement.auto_upgraded is False


def test_canceled_external_never_upgrades():
    external = Canceled(subscription_id="sub_1", interval="month")
    entitlement = resolve(make_user(), external, NOW)

    assert entitlement.tier == "free"
    assert entitlement.status == "canceled"
    assert entitlement.has_pro_access is False
    assert entitlement.auto_upgraded is False


def test_past_due_paid_user_loses_access():
    user = make_user(subscription_tier="pro_monthly", subscription_status="active")
    entitlement = resolve(user, PastDue(subscription_id="sub_1"), NOW)

    assert entitlement.status == "past_due"
    assert entitlement.has_pro_access is False


def test_external_trialing_does_not_create_a_trial_window():
    entitlement = resolve(make_user(), Trialing(subscription_id="sub_1"), NOW)

    assert entitlement.tier == "trial"
    assert entitlement.trial_active is False
    assert entitlement.has_pro_access is False


def test_canceled_paid_plan_keeps_access_until_period_end():
    period_end = NOW + timedelta(days=10)
    assert has_pro_access("pro_monthly", "canceled", period_end, False, NOW + timedelta(days=5)) is True
    assert has_pro_access("pro_monthly", "canceled", period_end, False, NOW + timedelta(days=15)) is False
    assert has_pro_access("pro_monthly", "canceled", None, False, NOW) is False


def test_entitlement_changes_lists_only_differing_fields():
    user = make_user(subscription_status="active")
    external = Active(subscription_id="sub_1", interval="month")
    changes = entitlement_changes(user, resolve(user, external, NOW))

    assert changes == {"subscription_tier": "pro_monthly"}


def test_to_dict_shape():
    user = make_user(trial_start_date=NOW, trial_end_date=NOW + timedelta(days=3))
    data = resolve(user, None, NOW).to_dict()

    assert data["hasProAccess"] is True
    assert data["trial"]["isActive"] is True
    assert data["trial"]["daysRemaining"] == 3
    assert data["trial"]["endDate"] == (NOW + timedelta(days=3)).isoformat()
    assert data["currentPeriodEnd"] is None
