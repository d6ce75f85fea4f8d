"""
Redis connection

Only needed when subscription locks are coordinated through Redis
(``SUBSCRIPTION_LOCK_BACKEND=redis``). ``lru_cache`` keeps a single client per
process; the connection itself is opened lazily on first command.
"""
from __future__ import annotations

from functools import lru_cache

import redis

from certlab.core.config import settings


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """
    Return the shared Redis client.

    ``decode_responses=True`` so lock values come back as ``str``.
    """
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
    )
