"""At-most-once processing of inbound platform messages.

Two checks guard every inbound message id:

* processed: a Message with that ``source_id`` already exists in the inbox
* in flight: a short-lived Redis marker says another worker is on it

The marker is set with ``SET NX EX`` so two workers can never both claim the
same id, and it carries a TTL so a crashed worker does not block the id
forever.
"""

from collections.abc import Iterator
from contextlib import contextmanager

import redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.account import Inbox
from app.models.conversation import Message
from app.services.redis_client import get_redis_client

logger = get_logger(__name__)

MARKER_PREFIX = "MESSAGE_SOURCE_KEY"

CLAIMED = "claimed"
DUPLICATE = "duplicate"
IN_FLIGHT = "in_flight"


def marker_key(inbox_id: object, source_id: str) -> str:
    return f"{MARKER_PREFIX}::{inbox_id}::{source_id}"


class IdempotencyGuard:
    def __init__(
        self,
        db: Session,
        inbox: Inbox,
        client: redis.Redis | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self.db = db
        self.inbox = inbox
        self.client = client if client is not None else get_redis_client()
        self.ttl_seconds = ttl_seconds or settings.message_marker_ttl_seconds

    def is_processed(self, source_id: str) -> bool:
        found = self.db.scalar(
            select(Message.id)
            .where(Message.inbox_id == self.inbox.id)
            .where(Message.source_id == source_id)
            .limit(1)
        )
        return found is not None

    def is_in_flight(self, source_id: str) -> bool:
        return bool(self.client.exists(marker_key(self.inbox.id, source_id)))

    def mark_in_flight(self, source_id: str) -> bool:
        """Set the marker; False when another worker already holds it."""
        return bool(
            self.client.set(
                marker_key(self.inbox.id, source_id), "1", nx=True, ex=self.ttl_seconds
            )
        )

    def clear_in_flight(self, source_id: str) -> None:
        try:
            self.client.delete(marker_key(self.inbox.id, source_id))
        except redis.RedisError as exc:
            # The TTL releases the id anyway.
            logger.warning(
                "message_marker_clear_failed inbox_id=%s source_id=%s error=%s",
                self.inbox.id,
                source_id,
                exc,
            )

    @contextmanager
    def claim(self, source_id: str) -> Iterator[str]:
        """Yield ``CLAIMED`` when the caller owns processing of ``source_id``.

        Otherwise yields ``DUPLICATE`` or ``IN_FLIGHT`` and the caller must
        drop the event. The marker is cleared on exit, errors included.

        Example:
            with guard.claim(event.message_id) as claim:
                if claim == CLAIMED:
                    build_message(...)
        """
        if self.is_processed(source_id):
            logger.info(
                "inbound_message_already_processed inbox_id=%s source_id=%s",
                self.inbox.id,
                source_id,
            )
            yield DUPLICATE
            return
        if not self.mark_in_flight(source_id):
            logger.info(
                "inbound_message_in_flight inbox_id=%s source_id=%s",
                self.inbox.id,
                source_id,
            )
            yield IN_FLIGHT
            return
        try:
            yield CLAIMED
        finally:
            self.clear_in_flight(source_id)
