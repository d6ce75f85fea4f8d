"""CRUD operations"""
from .subscription import create as create_subscription
from .subscription import get_by_provider_id as get_subscription_by_provider_id
from .subscription import get_by_user_id as get_subscription_by_user_id
from .subscription import get_live_by_user_id as get_live_subscriptions_by_user_id
from .subscription import update as update_subscription
from .subscription import update_by_provider_id as update_subscription_by_provider_id
from .user import get as get_user
from .user import get_by_provider_customer_id as get_user_by_provider_customer_id
from .user import update as update_user

__all__ = [
    "create_subscription",
    "get_subscription_by_provider_id",
    "get_subscription_by_user_id",
    "get_live_subscriptions_by_user_id",
    "update_subscription",
    "update_subscription_by_provider_id",
    "get_user",
    "get_user_by_provider_customer_id",
    "update_user",
]
