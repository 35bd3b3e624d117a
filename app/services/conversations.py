"""Pick or create the conversation an inbound message belongs to.

Both inbox policies (``lock_to_single_conversation`` on or off) reuse the
most recently created conversation of the contact in the inbox, reopening
it when resolved. A new conversation is created only when the contact has
none yet; its ``display_id`` is the account's current maximum plus one,
computed in the same transaction as the insert.
"""

from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.account import Inbox
from app.models.contact import ContactInbox
from app.models.conversation import Conversation
from app.models.enums import ConversationPriority, ConversationStatus

logger = get_logger(__name__)

MAX_CREATE_ATTEMPTS = 3

CREATED = "created"
REOPENED = "reopened"


def latest_conversation(db: Session, inbox: Inbox, contact_id) -> Conversation | None:
    return db.scalar(
        select(Conversation)
        .where(Conversation.account_id == inbox.account_id)
        .where(Conversation.inbox_id == inbox.id)
        .where(Conversation.contact_id == contact_id)
        .order_by(Conversation.created_at.desc(), Conversation.display_id.desc())
        .limit(1)
    )


def next_display_id(db: Session, account_id) -> int:
    current = db.scalar(
        select(func.max(Conversation.display_id)).where(Conversation.account_id == account_id)
    )
    return int(current or 0) + 1


def reopen(conversation: Conversation) -> bool:
    if conversation.status != ConversationStatus.resolved:
        return False
    conversation.status = ConversationStatus.open
    logger.info(
        "conversation_reopened conversation_id=%s display_id=%s",
        conversation.id,
        conversation.display_id,
    )
    return True


def touch(conversation: Conversation, at: datetime | None = None) -> None:
    conversation.last_activity_at = at or datetime.now(UTC)


def create_conversation(
    db: Session, inbox: Inbox, contact_inbox: ContactInbox, additional_attributes: dict | None = None
) -> Conversation:
    """Insert a new open conversation.

    A unique violation on (account_id, display_id) means a concurrent insert
    won; the contact's conversation is re-read, or a fresh id is allocated.
    """
    for attempt in range(MAX_CREATE_ATTEMPTS):
        try:
            with db.begin_nested():
                conversation = Conversation(
                    account_id=inbox.account_id,
                    inbox_id=inbox.id,
                    contact_id=contact_inbox.contact_id,
                    contact_inbox_id=contact_inbox.id,
                    display_id=next_display_id(db, inbox.account_id),
                    status=ConversationStatus.open,
                    priority=ConversationPriority.low,
                    last_activity_at=datetime.now(UTC),
                    additional_attributes=additional_attributes or {},
                )
                db.add(conversation)
                db.flush()
        except IntegrityError:
            logger.info(
                "conversation_display_id_conflict account_id=%s attempt=%d",
                inbox.account_id,
                attempt + 1,
            )
            existing = latest_conversation(db, inbox, contact_inbox.contact_id)
            if existing is not None:
                return existing
            continue
        logger.info(
            "conversation_created conversation_id=%s display_id=%s inbox_id=%s",
            conversation.id,
            conversation.display_id,
            inbox.id,
        )
        return conversation
    raise RuntimeError(f"Could not allocate a display_id for account {inbox.account_id}")


def resolve_conversation(
    db: Session, inbox: Inbox, contact_inbox: ContactInbox
) -> tuple[Conversation, str | None]:
    """Return the conversation to append to and what happened to it.

    The second item is ``CREATED``, ``REOPENED`` or None for a plain reuse.
    """
    conversation = latest_conversation(db, inbox, contact_inbox.contact_id)
    if conversation is None:
        return create_conversation(db, inbox, contact_inbox), CREATED
    if reopen(conversation):
        return conversation, REOPENED
    return conversation, None
