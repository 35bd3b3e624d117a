"""Listener hooks notified after inbox state changes are committed.

Real-time push and outgoing webhook fan-out plug in here. Handlers run
after the database commit, so a failing handler never undoes a stored
message; failures are logged and the remaining handlers still run.

Usage:
    from app.services.events import EventType, get_dispatcher

    get_dispatcher().register_handler(my_handler)
"""

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from app.logging import get_logger

logger = get_logger(__name__)


class EventType(enum.Enum):
    message_created = "message.created"
    message_updated = "message.updated"
    conversation_created = "conversation.created"
    conversation_reopened = "conversation.reopened"
    channel_reauthorization_required = "channel.reauthorization_required"


@dataclass
class Event:
    event_type: EventType
    payload: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    account_id: UUID | None = None
    inbox_id: UUID | None = None
    conversation_id: UUID | None = None


Handler = Callable[[Event], None]


class EventDispatcher:
    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def register_handler(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def dispatch(self, event: Event) -> list[str]:
        """Run every handler; return the names of the ones that failed."""
        failed: list[str] = []
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                name = getattr(handler, "__name__", handler.__class__.__name__)
                logger.exception(
                    "event_handler_failed handler=%s event_type=%s event_id=%s",
                    name,
                    event.event_type.value,
                    event.event_id,
                )
                failed.append(name)
        return failed


_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
    return _dispatcher


def publish(event_type: EventType, payload: dict[str, Any], **context: Any) -> Event:
    event = Event(event_type=event_type, payload=payload, **context)
    get_dispatcher().dispatch(event)
    return event


def message_payload(message) -> dict[str, Any]:
    return {
        "message_id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "inbox_id": str(message.inbox_id),
        "message_type": message.message_type.value,
        "status": message.status.value,
        "content": message.content,
        "content_type": message.content_type.value,
        "source_id": message.source_id,
    }


def publish_message(event_type: EventType, message) -> Event:
    return publish(
        event_type,
        message_payload(message),
        account_id=message.account_id,
        inbox_id=message.inbox_id,
        conversation_id=message.conversation_id,
    )


def publish_conversation(event_type: EventType, conversation) -> Event:
    return publish(
        event_type,
        {
            "conversation_id": str(conversation.id),
            "display_id": conversation.display_id,
            "inbox_id": str(conversation.inbox_id),
            "contact_id": str(conversation.contact_id),
            "status": conversation.status.value,
        },
        account_id=conversation.account_id,
        inbox_id=conversation.inbox_id,
        conversation_id=conversation.id,
    )
