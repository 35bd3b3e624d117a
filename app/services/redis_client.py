"""Shared Redis connection for markers, locks and channel auth counters."""

from functools import lru_cache
from typing import cast

import redis

from app.config import settings


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """Get a Redis client connection."""
    return cast(redis.Redis, redis.from_url(settings.redis_url, decode_responses=True))
