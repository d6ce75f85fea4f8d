from __future__ import annotations

from datetime import datetime, timedelta, timezone

from certlab.enums import SubscriptionPlan
from certlab.services.subscription_validator import apply_corrections, validate_subscription_state

NOW = datetime(2026, 4, 1, 12, tzinfo=timezone.utc)


def test_valid_state_has_no_corrections():
    result = validate_subscription_state(
        {
            "plan": "pro",
            "status": "active",
            "cancel_at_period_end": False,
            "current_period_start": NOW - timedelta(days=1),
            "current_period_end": NOW + timedelta(days=29),
        },
        now=NOW,
    )
    assert result.is_valid
    assert result.normalized_plan is SubscriptionPlan.pro
    assert result.errors == []
    assert result.corrections == {}


def test_plan_is_normalized():
    result = validate_subscription_state({"plan": "PRO", "status": "active"}, now=NOW)
    assert result.is_valid
    assert result.corrections == {"plan": "pro"}

    result = validate_subscription_state({"plan": "gold", "status": "active"}, now=NOW)
    assert result.normalized_plan is SubscriptionPlan.free
    assert result.corrections["plan"] == "free"
    assert result.warnings


def test_missing_plan_defaults_to_free():
    result = validate_subscription_state({}, now=NOW)
    assert result.is_valid
    assert result.normalized_plan is SubscriptionPlan.free
    assert result.corrections == {"plan": "free"}


def test_unknown_status_is_an_error():
    result = validate_subscription_state({"plan": "pro", "status": "paused"}, now=NOW)
    assert not result.is_valid
    assert result.errors


def test_cancel_flag_forces_canceling_and_expiry():
    period_end = NOW + timedelta(days=10)
    result = validate_subscription_state(
        {
            "plan": "pro",
            "status": "active",
            "cancel_at_period_end": True,
            "current_period_end": period_end,
        },
        now=NOW,
    )
    assert result.is_valid
    assert result.corrections["status"] == "canceling"
    assert result.corrections["expires_at"] == period_end.isoformat()


def test_cancel_flag_with_terminal_status_is_kept():
    result = validate_subscription_state(
        {"plan": "pro", "status": "canceled", "cancel_at_period_end": True, "expires_at": NOW},
        now=NOW,
    )
    assert "status" not in result.corrections
    assert "expires_at" not in result.corrections


def test_period_order_and_future_cancellation():
    result = validate_subscription_state(
        {
            "plan": "pro",
            "status": "active",
            "current_period_start": NOW,
            "current_period_end": NOW - timedelta(days=1),
            "canceled_at": (NOW + timedelta(days=2)).isoformat(),
        },
        now=NOW,
    )
    assert not result.is_valid
    assert any("before" in e for e in result.errors)
    assert any("future" in w for w in result.warnings)


def test_applying_corrections_is_idempotent():
    state = {
        "plan": "Enterprise",
        "status": "active",
        "cancel_at_period_end": True,
        "current_period_end": NOW + timedelta(days=3),
    }
    first = validate_subscription_state(state, now=NOW)
    corrected = apply_corrections(state, first)

    second = validate_subscription_state(corrected, now=NOW)
    assert second.corrections == {}
    assert apply_corrections(corrected, second) == corrected
    assert corrected["plan"] == "enterprise"
    assert corrected["status"] == "canceling"
