"""
Subscription state validation

``validate_subscription_state`` checks a subscription snapshot against the
record invariants and proposes corrections. It is pure and never raises:
whatever it is given, it returns a usable normalized plan. Errors are
reported, not enforced; callers merge ``corrections`` into their copy with
``apply_corrections`` and log the rest.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from certlab.enums import SubscriptionPlan, SubscriptionStatus
from certlab.models import ensure_utc, utc_now
from certlab.services.plans import is_known_plan, normalize_plan_name

logger = logging.getLogger(__name__)

_CANCELLATION_STATUSES = frozenset(
    {
        SubscriptionStatus.canceling.value,
        SubscriptionStatus.canceled.value,
        SubscriptionStatus.expired.value,
    }
)


@dataclass
class ValidationResult:
    is_valid: bool
    normalized_plan: SubscriptionPlan
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    corrections: dict[str, Any] = field(default_factory=dict)


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _status_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, SubscriptionStatus):
        return value.value
    return str(value).strip().lower() or None


def validate_subscription_state(
    state: Mapping[str, Any], *, now: datetime | None = None
) -> ValidationResult:
    """
    Validate and normalize a subscription snapshot.

    Recognized keys: ``plan``, ``status``, ``cancel_at_period_end``,
    ``expires_at``, ``current_period_start``, ``current_period_end``,
    ``canceled_at``. Missing keys are treated as absent.

    Rules:
    - plan is case-folded to free/pro/enterprise; anything else becomes free
      (warning + correction)
    - an unknown status is an error
    - cancel_at_period_end implies a cancellation status; otherwise status
      is corrected to canceling
    - cancel_at_period_end without expires_at takes current_period_end
      (warning + correction)
    - current_period_end before current_period_start is an error
    - canceled_at in the future is a warning only

    Returns:
        ValidationResult; ``is_valid`` is false only when ``errors`` is non-empty
    """
    now = ensure_utc(now) or utc_now()
    errors: list[str] = []
    warnings: list[str] = []
    corrections: dict[str, Any] = {}

    try:
        raw_plan = state.get("plan")
        normalized_plan = normalize_plan_name(raw_plan)
        if raw_plan in (None, ""):
            corrections["plan"] = normalized_plan.value
        elif not is_known_plan(raw_plan):
            warnings.append(f"Unrecognized plan {raw_plan!r}, defaulting to 'free'")
            corrections["plan"] = normalized_plan.value
        elif raw_plan != normalized_plan.value:
            corrections["plan"] = normalized_plan.value

        status = _status_value(state.get("status"))
        if status is not None and status not in SubscriptionStatus._value2member_map_:
            errors.append(f"Unknown subscription status {status!r}")

        cancel_at_period_end = bool(state.get("cancel_at_period_end"))
        if cancel_at_period_end and status not in _CANCELLATION_STATUSES:
            corrections["status"] = SubscriptionStatus.canceling.value

        period_start = _as_datetime(state.get("current_period_start"))
        period_end = _as_datetime(state.get("current_period_end"))
        if cancel_at_period_end and _as_datetime(state.get("expires_at")) is None:
            if period_end is not None:
                corrections["expires_at"] = period_end.isoformat()
                warnings.append("Missing expiration date for canceling subscription, using period end")
            else:
                warnings.append("Missing expiration date for canceling subscription")

        if period_start is not None and period_end is not None and period_end < period_start:
            errors.append("current_period_end is before current_period_start")

        canceled_at = _as_datetime(state.get("canceled_at"))
        if canceled_at is not None and canceled_at > now:
            warnings.append(f"canceled_at {canceled_at.isoformat()} is in the future")
    except Exception as e:  # pragma: no cover
        logger.error("Subscription state validation failed unexpectedly: %s", e)
        return ValidationResult(
            is_valid=False,
            normalized_plan=SubscriptionPlan.free,
            errors=[f"Validation failed: {e}"],
        )

    return ValidationResult(
        is_valid=not errors,
        normalized_plan=normalized_plan,
        errors=errors,
        warnings=warnings,
        corrections=corrections,
    )


def apply_corrections(state: Mapping[str, Any], result: ValidationResult) -> dict[str, Any]:
    """
    Return a copy of ``state`` with the validator's corrections merged in.
    """
    merged = dict(state)
    merged.update(result.corrections)
    return merged
