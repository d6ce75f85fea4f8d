"""
Database models

- user.py: the user columns owned by this service
- subscription.py: local subscription records
"""
from sqlmodel import SQLModel

from .base import ensure_utc, utc_now
from .subscription import Subscription
from .user import User

__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "User",
    "Subscription",
]
