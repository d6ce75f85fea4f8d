"""
Subscription model
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String
from sqlmodel import Field, SQLModel

from certlab.enums import SubscriptionPlan, SubscriptionStatus

from .base import utc_now


class Subscription(SQLModel, table=True):
    """
    Local copy of a user's billing-provider subscription.

    Rows are upserted by ``polar_subscription_id`` and never hard-deleted;
    canceled/expired rows stay for audit. While a checkout is in flight the
    row holds the checkout session id with status ``pending_checkout``.

    Fields:
    - plan: always a normalized SubscriptionPlan value
    - status: SubscriptionStatus value
    - cancel_at_period_end: cancellation scheduled; implies canceling/canceled
    - meta: free-form JSON, stored in the ``metadata`` column
    """
    __tablename__ = "subscriptions"
    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            String(128), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )

    polar_subscription_id: str | None = Field(
        default=None, sa_column=Column(String(128), unique=True, index=True, nullable=True)
    )
    polar_customer_id: str | None = Field(default=None, max_length=128)
    product_id: str | None = Field(default=None, max_length=128)
    price_id: str | None = Field(default=None, max_length=128)

    plan: SubscriptionPlan = Field(
        default=SubscriptionPlan.free, sa_column=Column(String(16), nullable=False)
    )
    status: SubscriptionStatus = Field(sa_column=Column(String(24), nullable=False))
    billing_interval: str | None = Field(default="month", max_length=16)

    current_period_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    trial_ends_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    canceled_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    ended_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    meta: dict[str, Any] | None = Field(default=None, sa_column=Column("metadata", JSON))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
