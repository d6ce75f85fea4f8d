"""
Plan catalog and entitlement builder

The static plan table maps each tier to its display name, marketing
features and numeric limits. Product ids for the paid tiers come from
settings so sandbox and production catalogs can differ.

Entitlements (``User.subscription_benefits``) are always produced by
``build_entitlement`` and written whole; nothing patches individual keys.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from certlab.core.config import settings
from certlab.enums import AnalyticsAccess, SubscriptionPlan
from certlab.models import utc_now

logger = logging.getLogger(__name__)

UNLIMITED = -1

_PLAN_ORDER = {
    SubscriptionPlan.free: 0,
    SubscriptionPlan.pro: 1,
    SubscriptionPlan.enterprise: 2,
}


@dataclass(frozen=True)
class PlanLimits:
    quizzes_per_day: int
    categories_access: tuple[str, ...]
    analytics_access: AnalyticsAccess
    team_members: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "quizzes_per_day": self.quizzes_per_day,
            "categories_access": list(self.categories_access),
            "analytics_access": self.analytics_access.value,
            "team_members": self.team_members,
        }


@dataclass(frozen=True)
class PlanDefinition:
    plan: SubscriptionPlan
    name: str
    features: tuple[str, ...]
    limits: PlanLimits

    @property
    def product_id(self) -> str | None:
        return product_id_for_plan(self.plan)


SUBSCRIPTION_PLANS: dict[SubscriptionPlan, PlanDefinition] = {
    SubscriptionPlan.free: PlanDefinition(
        plan=SubscriptionPlan.free,
        name="Free",
        features=(
            "5 quizzes per day",
            "Basic categories",
            "Basic progress tracking",
        ),
        limits=PlanLimits(
            quizzes_per_day=5,
            categories_access=("basic",),
            analytics_access=AnalyticsAccess.basic,
            team_members=1,
        ),
    ),
    SubscriptionPlan.pro: PlanDefinition(
        plan=SubscriptionPlan.pro,
        name="Pro",
        features=(
            "Unlimited quizzes",
            "All certification categories",
            "Advanced analytics",
            "Study plans and learning materials",
        ),
        limits=PlanLimits(
            quizzes_per_day=UNLIMITED,
            categories_access=("all",),
            analytics_access=AnalyticsAccess.advanced,
            team_members=1,
        ),
    ),
    SubscriptionPlan.enterprise: PlanDefinition(
        plan=SubscriptionPlan.enterprise,
        name="Enterprise",
        features=(
            "Everything in Pro",
            "Team management (up to 50 members)",
            "Enterprise analytics and reporting",
            "Priority support",
        ),
        limits=PlanLimits(
            quizzes_per_day=UNLIMITED,
            categories_access=("all",),
            analytics_access=AnalyticsAccess.enterprise,
            team_members=50,
        ),
    ),
}


def normalize_plan_name(plan: Any) -> SubscriptionPlan:
    """
    Map any input to one of free/pro/enterprise.

    Case and surrounding whitespace are ignored. Empty input maps to free
    silently; anything else unrecognized maps to free with a warning.
    """
    if isinstance(plan, SubscriptionPlan):
        return plan
    if plan is None:
        return SubscriptionPlan.free
    normalized = str(plan).strip().lower()
    if not normalized:
        return SubscriptionPlan.free
    try:
        return SubscriptionPlan(normalized)
    except ValueError:
        logger.warning("Invalid plan name: %r, defaulting to 'free'", plan)
        return SubscriptionPlan.free


def is_known_plan(plan: Any) -> bool:
    if isinstance(plan, SubscriptionPlan):
        return True
    if not isinstance(plan, str):
        return False
    return plan.strip().lower() in SubscriptionPlan._value2member_map_


def format_plan_name_for_display(plan: SubscriptionPlan) -> str:
    return SUBSCRIPTION_PLANS[normalize_plan_name(plan)].name


def is_paid_plan(plan: SubscriptionPlan) -> bool:
    return normalize_plan_name(plan) is not SubscriptionPlan.free


def is_plan_upgrade(current: SubscriptionPlan, new: SubscriptionPlan) -> bool:
    return _PLAN_ORDER[normalize_plan_name(new)] > _PLAN_ORDER[normalize_plan_name(current)]


def get_upgrade_plan(plan: SubscriptionPlan) -> SubscriptionPlan | None:
    plan = normalize_plan_name(plan)
    if plan is SubscriptionPlan.free:
        return SubscriptionPlan.pro
    if plan is SubscriptionPlan.pro:
        return SubscriptionPlan.enterprise
    return None


def get_plan(plan: Any) -> PlanDefinition:
    return SUBSCRIPTION_PLANS[normalize_plan_name(plan)]


def product_id_for_plan(plan: SubscriptionPlan) -> str | None:
    plan = normalize_plan_name(plan)
    if plan is SubscriptionPlan.pro:
        return settings.POLAR_PRO_PRODUCT_ID
    if plan is SubscriptionPlan.enterprise:
        return settings.POLAR_ENTERPRISE_PRODUCT_ID
    return None


def plan_for_product_id(product_id: str | None) -> SubscriptionPlan:
    """
    Derive the tier from a provider product id; unknown products are free.
    """
    if product_id:
        if product_id == settings.POLAR_PRO_PRODUCT_ID:
            return SubscriptionPlan.pro
        if product_id == settings.POLAR_ENTERPRISE_PRODUCT_ID:
            return SubscriptionPlan.enterprise
        logger.warning("Unknown product id %s, treating as free plan", product_id)
    return SubscriptionPlan.free


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_entitlement(
    plan: Any,
    *,
    subscription_id: int | None = None,
    polar_subscription_id: str | None = None,
    cancel_at_period_end: bool = False,
    canceled_at: datetime | None = None,
    ended_at: datetime | None = None,
    current_period_end: datetime | None = None,
    trial_ends_at: datetime | None = None,
    synced_at: datetime | None = None,
) -> dict[str, Any]:
    """
    Build the full entitlement cache for a plan.

    The result replaces ``User.subscription_benefits`` entirely.
    """
    definition = get_plan(plan)
    benefits: dict[str, Any] = {"plan": definition.plan.value}
    benefits.update(definition.limits.as_dict())
    benefits.update(
        {
            "subscription_id": subscription_id,
            "polar_subscription_id": polar_subscription_id,
            "cancel_at_period_end": cancel_at_period_end,
            "canceled_at": _iso(canceled_at),
            "ended_at": _iso(ended_at),
            "current_period_end": _iso(current_period_end),
            "trial_ends_at": _iso(trial_ends_at),
            "last_synced_at": _iso(synced_at or utc_now()),
        }
    )
    return benefits


def free_entitlement(**kwargs: Any) -> dict[str, Any]:
    return build_entitlement(SubscriptionPlan.free, **kwargs)


def list_public_plans() -> list[dict[str, Any]]:
    """
    Plan catalog for the pricing page; product ids are not exposed.
    """
    return [
        {
            "id": definition.plan.value,
            "name": definition.name,
            "features": list(definition.features),
            "limits": definition.limits.as_dict(),
        }
        for definition in SUBSCRIPTION_PLANS.values()
    ]
