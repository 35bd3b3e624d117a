"""Reauthorization state of channels.

A token-invalid answer from the Graph API bumps a Redis error counter for
the channel; once it reaches the configured threshold the channel is flagged
``reauthorization_required`` (column plus a Redis marker for dashboards).
Both ingestion and delivery consult the flag before calling the platform.
A successful OAuth callback clears everything.
"""

import redis
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.channel import Channel
from app.services.errors import ReauthorizationRequiredError
from app.services.events import EventType, publish
from app.services.redis_client import get_redis_client

logger = get_logger(__name__)

AUTHORIZATION_ERROR_COUNT = "AUTHORIZATION_ERROR_COUNT:{kind}_channel:{channel_id}"
REAUTHORIZATION_REQUIRED = "REAUTHORIZATION_REQUIRED:{kind}_channel:{channel_id}"
ERROR_COUNT_TTL_SECONDS = 24 * 60 * 60


def _keys(channel: Channel) -> tuple[str, str]:
    params = {"kind": channel.kind.value, "channel_id": channel.id}
    return AUTHORIZATION_ERROR_COUNT.format(**params), REAUTHORIZATION_REQUIRED.format(**params)


def is_reauthorization_required(channel: Channel) -> bool:
    return bool(channel.reauthorization_required)


def ensure_authorized(channel: Channel) -> None:
    """Raise unless the channel holds real, healthy credentials."""
    if channel.is_temporary:
        raise ReauthorizationRequiredError(
            f"Channel {channel.id} is a placeholder awaiting authorization"
        )
    if not channel.access_token:
        raise ReauthorizationRequiredError(f"Channel {channel.id} has no access token")
    if is_reauthorization_required(channel):
        raise ReauthorizationRequiredError(f"Channel {channel.id} requires reauthorization")


def authorization_error(
    db: Session, channel: Channel, client: redis.Redis | None = None
) -> bool:
    """Record a token-invalid error; return True when the channel got flagged.

    The flag is committed right away so it survives a rollback of the
    surrounding event.
    """
    count_key, required_key = _keys(channel)
    threshold = max(1, settings.reauthorization_error_threshold)
    client = client if client is not None else get_redis_client()
    try:
        count = int(client.incr(count_key))
        client.expire(count_key, ERROR_COUNT_TTL_SECONDS)
    except redis.RedisError as exc:
        logger.warning(
            "channel_auth_error_count_failed channel_id=%s error=%s", channel.id, exc
        )
        count = threshold

    logger.warning(
        "channel_authorization_error channel_id=%s kind=%s count=%s threshold=%s",
        channel.id,
        channel.kind.value,
        count,
        threshold,
    )
    if count < threshold:
        return False

    try:
        client.set(required_key, "1")
    except redis.RedisError as exc:
        logger.warning(
            "channel_reauthorization_marker_failed channel_id=%s error=%s", channel.id, exc
        )
    if not channel.reauthorization_required:
        channel.reauthorization_required = True
        db.commit()
        logger.error(
            "channel_reauthorization_required channel_id=%s kind=%s",
            channel.id,
            channel.kind.value,
        )
        publish(
            EventType.channel_reauthorization_required,
            {"channel_id": str(channel.id), "kind": channel.kind.value},
        )
    return True


def mark_reauthorized(db: Session, channel: Channel, client: redis.Redis | None = None) -> None:
    count_key, required_key = _keys(channel)
    client = client if client is not None else get_redis_client()
    try:
        client.delete(count_key, required_key)
    except redis.RedisError as exc:
        logger.warning(
            "channel_reauthorization_clear_failed channel_id=%s error=%s", channel.id, exc
        )
    channel.reauthorization_required = False
    channel.refresh_error = None
    db.flush()
    logger.info("channel_reauthorized channel_id=%s kind=%s", channel.id, channel.kind.value)
