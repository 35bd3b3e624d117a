"""OAuth state management for CSRF protection.

Stores OAuth state tokens in Redis with a short TTL so a callback can only
be completed once, for the inbox that started it.
"""

import json
from datetime import timedelta
from typing import Any, cast

import redis

from app.logging import get_logger
from app.services.redis_client import get_redis_client

logger = get_logger(__name__)

STATE_TTL = timedelta(minutes=10)
STATE_PREFIX = "oauth_state:"


def _loads_dict(value: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def store_oauth_state(state: str, data: dict, client: redis.Redis | None = None) -> None:
    """Store OAuth state with associated data (inbox id, channel kind).

    Raises:
        redis.RedisError: the flow cannot start without a stored state
    """
    client = client if client is not None else get_redis_client()
    try:
        client.setex(f"{STATE_PREFIX}{state}", STATE_TTL, json.dumps(data))
        logger.debug("stored_oauth_state state=%s...", state[:8])
    except redis.RedisError as exc:
        logger.error("failed_to_store_oauth_state error=%s", exc)
        raise


def get_and_delete_oauth_state(
    state: str, client: redis.Redis | None = None
) -> dict[str, Any] | None:
    """Get and delete OAuth state (one-time use).

    Returns:
        The associated data dict, or None if state not found or expired
    """
    client = client if client is not None else get_redis_client()
    key = f"{STATE_PREFIX}{state}"
    try:
        pipe = cast(Any, client.pipeline())
        pipe.get(key)
        pipe.delete(key)
        results = cast(list[object], pipe.execute())
    except redis.RedisError as exc:
        logger.error("failed_to_get_oauth_state error=%s", exc)
        return None

    data = results[0]
    if isinstance(data, str) and data:
        return _loads_dict(data)
    logger.warning("oauth_state_not_found state=%s...", state[:8])
    return None
