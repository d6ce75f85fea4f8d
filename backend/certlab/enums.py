"""
Enum definitions

Every enum derives from ``str`` and ``Enum`` so values serialize as plain
strings in JSON and in the database.
"""
from enum import Enum
from typing import Any


class SubscriptionPlan(str, Enum):
    """
    Subscription tiers, ordered free < pro < enterprise.
    """
    free = "free"
    pro = "pro"
    enterprise = "enterprise"


class SubscriptionStatus(str, Enum):
    """
    Subscription lifecycle states.

    - active / trialing: live, paid entitlement applies
    - canceling: live, but cancellation is scheduled for period end
    - canceled / expired: terminal, kept for audit
    - pending_checkout: placeholder created when a checkout session starts
    - inactive: synthesized for users with no subscription; never persisted
    """
    active = "active"
    trialing = "trialing"
    canceling = "canceling"
    canceled = "canceled"
    expired = "expired"
    pending_checkout = "pending_checkout"
    inactive = "inactive"


LIVE_STATUSES = frozenset(
    {SubscriptionStatus.active, SubscriptionStatus.trialing, SubscriptionStatus.canceling}
)
PAID_STATUSES = frozenset({SubscriptionStatus.active, SubscriptionStatus.trialing})


def status_value(value: Any) -> str:
    """Stored status string for a status member or a raw column value."""
    return value.value if isinstance(value, SubscriptionStatus) else str(value)


class BillingInterval(str, Enum):
    """
    Provider-side recurring interval.
    """
    month = "month"
    year = "year"


class RequestedInterval(str, Enum):
    """
    Interval names accepted from the front end.
    """
    monthly = "monthly"
    yearly = "yearly"

    def to_billing_interval(self) -> BillingInterval:
        return BillingInterval.year if self is RequestedInterval.yearly else BillingInterval.month


class SwitchEffective(str, Enum):
    """
    When a plan switch takes effect.
    """
    immediate = "immediate"
    at_period_end = "at_period_end"


class AnalyticsAccess(str, Enum):
    basic = "basic"
    advanced = "advanced"
    enterprise = "enterprise"
