"""
API request/response schemas

Pydantic models for the subscription endpoints. These are not database
tables; they only shape the JSON exchanged with the front end.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from certlab.enums import RequestedInterval, SubscriptionPlan, SwitchEffective

# ============================================================
# Common
# ============================================================


class TokenPayload(BaseModel):
    """
    JWT payload; ``sub`` is the user id issued by the auth service.
    """
    sub: str | None = None


class ApiEnvelope(BaseModel):
    """
    Standard response envelope.

    - code: 0 on success, a business error code otherwise
    - message: "success" or the error description
    - data: payload, None on errors

    Example:
        {"code": 0, "message": "success", "data": {...}}
        {"code": 409301, "message": "Failed to acquire lock ...", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# Subscription
# ============================================================


class PlanLimitsData(BaseModel):
    quizzes_per_day: int  # -1 = unlimited
    categories_access: list[str]
    analytics_access: str
    team_members: int


class PlanData(BaseModel):
    id: SubscriptionPlan
    name: str
    features: list[str]
    limits: PlanLimitsData


class SubscriptionStatusData(BaseModel):
    """
    Effective subscription status of the current user.
    """
    is_configured: bool
    is_subscribed: bool
    plan: SubscriptionPlan
    status: str
    cancel_at_period_end: bool = False
    canceled_at: str | None = None
    expires_at: str | None = None
    features: list[str]
    limits: PlanLimitsData
    daily_quiz_count: int = 0
    warning: str | None = None


class SubscriptionData(BaseModel):
    """
    A subscription record as shown to its owner.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    polar_subscription_id: str | None = None
    plan: SubscriptionPlan
    status: str
    billing_interval: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    scheduled_plan: SubscriptionPlan | None = None


class CurrentSubscriptionData(BaseModel):
    subscription: SubscriptionData | None = None
    from_cache: bool
    warning: str | None = None


class CheckoutRequest(BaseModel):
    plan: SubscriptionPlan
    billing_interval: RequestedInterval = RequestedInterval.monthly


class CheckoutData(BaseModel):
    plan: SubscriptionPlan
    upgraded: bool = False
    checkout_url: str | None = None
    session_id: str | None = None
    message: str | None = None
    subscription: SubscriptionData | None = None


class ConfirmData(BaseModel):
    plan: SubscriptionPlan
    billing_interval: str
    activated: bool
    subscription: SubscriptionData | None = None


class CancelRequest(BaseModel):
    immediate: bool = False


class CancelData(BaseModel):
    immediate: bool
    access_until: datetime | None = None
    message: str
    subscription: SubscriptionData


class ResumeData(BaseModel):
    message: str
    subscription: SubscriptionData


class SwitchRequest(BaseModel):
    new_plan: SubscriptionPlan = Field(description="pro or enterprise")
    billing_interval: RequestedInterval = RequestedInterval.monthly
    effective: SwitchEffective = SwitchEffective.immediate


class SwitchData(BaseModel):
    plan: SubscriptionPlan
    billing_interval: str
    effective: SwitchEffective
    effective_date: datetime | None = None
    message: str
    subscription: SubscriptionData


class WebhookAck(BaseModel):
    received: bool = True
    applied: bool = False
    error: str | None = None


class SyncEventData(BaseModel):
    """
    A webhook event of the current user waiting in the retry queue.
    """
    id: str
    event_type: str
    status: str
    attempts: int
    created_at: datetime
    next_retry_at: datetime | None = None
    error: str | None = None
