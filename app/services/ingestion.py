"""Inbound webhook pipeline for Instagram and Facebook Messenger.

One webhook entry is processed per Celery task. Each messaging item goes
through the channel lookup, the idempotency guard, contact resolution,
the conversation resolver and the message builder; the contact, the
conversation and the message are committed together or not at all.
Listeners are notified only after the commit.
"""

from dataclasses import dataclass

import redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.metrics import record_webhook_event
from app.models.account import Inbox
from app.models.channel import Channel
from app.models.enums import ChannelKind
from app.schemas.events import InboundEvent
from app.services import channel_auth
from app.services import contacts as contact_service
from app.services import conversations as conversation_service
from app.services import messages as message_service
from app.services.errors import LockNotAcquiredError
from app.services.events import EventType, publish_conversation, publish_message
from app.services.idempotency import CLAIMED, IdempotencyGuard
from app.services.locks import contact_lock, contact_lock_key
from app.services.webhook_normalizer import normalize_entry

logger = get_logger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


@dataclass
class EventResult:
    outcome: str
    source_id: str | None = None
    message_id: str | None = None
    reason: str | None = None


def find_channel(db: Session, platform: ChannelKind, account_external_id: str) -> Channel | None:
    """Find the channel an event is addressed to.

    Instagram events may also belong to a Facebook page channel with a
    linked Instagram business account.
    """
    channel = db.scalar(
        select(Channel)
        .where(Channel.kind == platform)
        .where(Channel.external_account_id == account_external_id)
    )
    if channel is None and platform == ChannelKind.instagram:
        channel = db.scalars(
            select(Channel)
            .where(Channel.kind == ChannelKind.facebook)
            .where(Channel.instagram_id == account_external_id)
        ).first()
    return channel


def _skip(event: InboundEvent, reason: str, **log_fields) -> EventResult:
    extra = " ".join(f"{key}={value}" for key, value in log_fields.items())
    logger.info(
        "inbound_event_skipped platform=%s kind=%s source_id=%s reason=%s %s",
        event.platform.value,
        event.kind,
        event.message_id,
        reason,
        extra,
    )
    return EventResult(OUTCOME_SKIPPED, source_id=event.message_id, reason=reason)


def resolve_inbox(db: Session, event: InboundEvent) -> tuple[Inbox | None, str | None]:
    """Return the inbox the event belongs to, or the reason it cannot be handled."""
    account_external_id = event.account_external_id
    if not account_external_id:
        return None, "missing_account_id"
    channel = find_channel(db, event.platform, account_external_id)
    if channel is None:
        return None, "channel_not_found"
    if channel.is_temporary or not channel.access_token:
        return None, "channel_not_authorized"
    if channel_auth.is_reauthorization_required(channel):
        return None, "reauthorization_required"
    if channel.inbox is None:
        return None, "inbox_not_found"
    return channel.inbox, None


def ingest_message(
    db: Session, inbox: Inbox, event: InboundEvent, client: redis.Redis | None = None
) -> EventResult:
    """Store one inbound (or echoed) message exactly once.

    Raises:
        LockNotAcquiredError: another worker is handling this contact, or the
            lock lapsed before the commit
        redis.RedisError: the marker store is unreachable
    """
    source_id = event.message_id
    contact_external_id = event.contact_external_id
    if not source_id or not contact_external_id:
        logger.warning(
            "inbound_message_missing_identifiers inbox_id=%s source_id=%s contact_id=%s",
            inbox.id,
            source_id,
            contact_external_id,
        )
        return EventResult(OUTCOME_SKIPPED, source_id=source_id, reason="missing_identifiers")
    if not event.has_content and not event.is_unsupported:
        return _skip(event, "empty_message", inbox_id=inbox.id)

    guard = IdempotencyGuard(db, inbox, client=client)
    lock_key = contact_lock_key(event.platform, contact_external_id, event.account_external_id)
    with contact_lock(lock_key, client=client) as lock, guard.claim(source_id) as claim:
        if claim != CLAIMED:
            return EventResult(claim, source_id=source_id)
        try:
            contact_inbox = contact_service.resolve_contact_inbox(db, inbox, event)
            if contact_inbox is None:
                db.rollback()
                return EventResult(OUTCOME_SKIPPED, source_id=source_id, reason="no_contact")
            conversation, change = conversation_service.resolve_conversation(
                db, inbox, contact_inbox
            )
            message = message_service.create_inbound_message(
                db, guard, conversation, contact_inbox, event
            )
            if message is None:
                db.rollback()
                return EventResult(OUTCOME_DUPLICATE, source_id=source_id)
            lock.ensure_held()
            db.commit()
        except Exception:
            db.rollback()
            raise

    if change == conversation_service.CREATED:
        publish_conversation(EventType.conversation_created, conversation)
    elif change == conversation_service.REOPENED:
        publish_conversation(EventType.conversation_reopened, conversation)
    publish_message(EventType.message_created, message)
    return EventResult(OUTCOME_CREATED, source_id=source_id, message_id=str(message.id))


def _apply_message_update(db: Session, inbox: Inbox, event: InboundEvent) -> EventResult:
    if event.kind == "reaction":
        message = message_service.apply_reaction(db, inbox, event)
    else:
        message = message_service.apply_unsend(db, inbox, event)
    if message is None:
        return _skip(event, "target_not_found", inbox_id=inbox.id)
    db.commit()
    publish_message(EventType.message_updated, message)
    return EventResult(OUTCOME_UPDATED, source_id=message.source_id, message_id=str(message.id))


def _apply_receipt(db: Session, inbox: Inbox, event: InboundEvent) -> EventResult:
    # Receipts come from the end user: the sender is the contact.
    contact_inbox = contact_service.find_contact_inbox(db, inbox, event.sender_id or "")
    if contact_inbox is None:
        return _skip(event, "unknown_contact", inbox_id=inbox.id)
    if event.kind == "read":
        message_service.apply_read_receipt(db, inbox, contact_inbox, event)
    else:
        message_service.apply_delivery_receipt(db, inbox, contact_inbox, event)
    db.commit()
    return EventResult(OUTCOME_UPDATED)


def process_event(
    db: Session, event: InboundEvent, client: redis.Redis | None = None
) -> EventResult:
    inbox, reason = resolve_inbox(db, event)
    if inbox is None:
        return _skip(event, reason or "no_inbox", account_id=event.account_external_id)

    if event.kind == "message":
        if event.is_deleted:
            return _apply_message_update(db, inbox, event)
        return ingest_message(db, inbox, event, client=client)
    if event.kind == "reaction":
        return _apply_message_update(db, inbox, event)
    if event.kind in ("read", "delivery"):
        return _apply_receipt(db, inbox, event)
    return _skip(event, "unsupported_event", inbox_id=inbox.id)


def process_entry(
    db: Session, platform: ChannelKind, entry: dict, client: redis.Redis | None = None
) -> list[EventResult]:
    """Process every messaging item of one webhook entry.

    Items already stored are recognised as duplicates, so the whole entry
    can be retried after a lock or Redis failure. Any other failure drops
    only the event that raised it.
    """
    results = []
    for event in normalize_entry(entry, platform):
        try:
            result = process_event(db, event, client=client)
        except (LockNotAcquiredError, redis.RedisError):
            raise
        except Exception:
            db.rollback()
            logger.exception(
                "inbound_event_failed platform=%s kind=%s source_id=%s",
                platform.value,
                event.kind,
                event.message_id,
            )
            result = EventResult(OUTCOME_FAILED, source_id=event.message_id, reason="error")
        record_webhook_event(platform.value, result.outcome)
        results.append(result)
    return results
