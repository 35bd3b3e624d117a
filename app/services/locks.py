"""Redis mutexes: one per contact for webhook processing, one per outgoing message."""

import secrets
from collections.abc import Iterator
from contextlib import contextmanager

import redis

from app.config import settings
from app.logging import get_logger
from app.models.enums import ChannelKind
from app.services.errors import LockNotAcquiredError
from app.services.redis_client import get_redis_client

logger = get_logger(__name__)

# Delete only if the caller still owns the lock.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# Reset the expiry only if the caller still owns the lock.
_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""

_LOCK_PREFIXES = {
    ChannelKind.instagram: "IG_MESSAGE_CREATE_LOCK",
    ChannelKind.facebook: "FB_MESSAGE_CREATE_LOCK",
}


def contact_lock_key(platform: ChannelKind, sender_id: str, account_id: str) -> str:
    return f"{_LOCK_PREFIXES[platform]}::{sender_id}::{account_id}"


def send_lock_key(message_id) -> str:
    return f"OUTBOUND_MESSAGE_SEND_LOCK::{message_id}"


def profile_lookup_budget_seconds() -> int:
    """Worst case for one contact resolution: a token refresh plus every lookup attempt."""
    attempts = max(1, settings.profile_lookup_attempts)
    backoff = sum(2**attempt for attempt in range(attempts - 1))
    return int(
        settings.meta_api_timeout_seconds
        + attempts * settings.profile_lookup_timeout_seconds
        + backoff
    )


def contact_lock_ttl() -> int:
    return settings.contact_lock_ttl_seconds + profile_lookup_budget_seconds()


def acquire(client: redis.Redis, key: str, ttl_seconds: int) -> str | None:
    token = secrets.token_hex(16)
    if client.set(key, token, nx=True, ex=ttl_seconds):
        return token
    return None


def release(client: redis.Redis, key: str, token: str) -> None:
    try:
        client.eval(_RELEASE_SCRIPT, 1, key, token)
    except redis.RedisError as exc:
        logger.warning("redis_lock_release_failed key=%s error=%s", key, exc)


class HeldLock:
    """A lock acquired by this worker."""

    def __init__(self, client: redis.Redis, key: str, token: str, ttl_seconds: int) -> None:
        self.client = client
        self.key = key
        self.token = token
        self.ttl_seconds = ttl_seconds

    def extend(self) -> bool:
        """Restart the expiry; False when the lock lapsed and may belong to someone else."""
        return bool(self.client.eval(_EXTEND_SCRIPT, 1, self.key, self.token, self.ttl_seconds))

    def ensure_held(self) -> None:
        """Raises LockNotAcquiredError when the lock was lost while held."""
        if not self.extend():
            logger.warning("redis_lock_lost key=%s", self.key)
            raise LockNotAcquiredError(f"Lock lost: {self.key}")


@contextmanager
def redis_lock(
    key: str, ttl_seconds: int, client: redis.Redis | None = None
) -> Iterator[HeldLock]:
    """Hold ``key`` for the duration of the block.

    Raises:
        LockNotAcquiredError: when another worker holds the lock
    """
    client = client if client is not None else get_redis_client()
    token = acquire(client, key, ttl_seconds)
    if token is None:
        raise LockNotAcquiredError(f"Lock busy: {key}")
    try:
        yield HeldLock(client, key, token, ttl_seconds)
    finally:
        release(client, key, token)


def contact_lock(
    key: str,
    client: redis.Redis | None = None,
    ttl_seconds: int | None = None,
):
    return redis_lock(key, ttl_seconds or contact_lock_ttl(), client=client)


def send_lock(message_id, client: redis.Redis | None = None):
    return redis_lock(
        send_lock_key(message_id), settings.outbound_send_lock_ttl_seconds, client=client
    )
