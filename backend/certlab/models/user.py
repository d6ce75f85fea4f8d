"""
User model

Only the columns the subscription service reads or writes are mapped here;
profile, progress and quiz tables belong to other services.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, String
from sqlmodel import Field, SQLModel

from .base import utc_now


class User(SQLModel, table=True):
    """
    Platform user.

    Fields:
    - id: auth subject (string id issued by the identity provider)
    - email: required before a checkout can be started
    - polar_customer_id: billing provider customer id, set on first checkout
      or first webhook
    - subscription_benefits: entitlement cache, rebuilt whole on every
      subscription change (see ``certlab.services.plans.build_entitlement``)
    - daily_quiz_count / last_quiz_reset_date: free-tier quota counter
    """
    __tablename__ = "users"
    id: str = Field(sa_column=Column(String(128), primary_key=True))
    email: str | None = Field(default=None, sa_column=Column(String(255), index=True, nullable=True))
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)

    polar_customer_id: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )
    subscription_benefits: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    daily_quiz_count: int = Field(default=0)
    last_quiz_reset_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
