"""Outbound delivery of agent replies to Instagram and Facebook Messenger.

Attachments are sent first, one call each, then the text. The platform id
of the text send (or of the last attachment when there is no text) becomes
the message's ``source_id``, which is how the echo webhook for the same
message is later recognised as already processed.
"""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.metrics import record_outbound_send
from app.models.channel import Channel
from app.models.contact import ContactInbox
from app.models.conversation import Attachment, Message
from app.models.enums import AttachmentFileType, ChannelKind, MessageStatus
from app.services import channel_auth, meta_oauth
from app.services.errors import (
    LockNotAcquiredError,
    MetaApiError,
    ReauthorizationRequiredError,
)
from app.services.events import EventType, publish_message
from app.services.locks import send_lock
from app.services.meta_api import MetaApiClient
from app.services.messages import find_message
from app.services.object_storage import attachment_public_url

logger = get_logger(__name__)

MAX_EXTERNAL_ERROR_LENGTH = 1000

DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"
DELIVERY_SKIPPED = "skipped"
DELIVERY_REAUTHORIZATION_REQUIRED = "reauthorization_required"

SEND_IN_PROGRESS = "send_in_progress"

_SENDABLE_FILE_TYPES = {
    AttachmentFileType.image: "image",
    AttachmentFileType.audio: "audio",
    AttachmentFileType.video: "video",
    AttachmentFileType.file: "file",
}


@dataclass
class DeliveryResult:
    status: str
    source_id: str | None = None
    error: str | None = None


def truncate_error(text: str) -> str:
    if len(text) <= MAX_EXTERNAL_ERROR_LENGTH:
        return text
    return text[: MAX_EXTERNAL_ERROR_LENGTH - 3] + "..."


def precondition_failure(message: Message) -> str | None:
    """Reason the message must not be sent, checked before any network call."""
    if not message.is_outgoing:
        return "not_outgoing"
    if message.private:
        return "private"
    if message.source_id:
        return "already_sent"
    return None


def messaging_type_fields(kind: ChannelKind) -> dict:
    if kind == ChannelKind.instagram and settings.instagram_human_agent_enabled:
        return {"messaging_type": "MESSAGE_TAG", "tag": "HUMAN_AGENT"}
    return {"messaging_type": "RESPONSE"}


def text_payload(kind: ChannelKind, recipient_id: str, text: str) -> dict:
    return {
        "recipient": {"id": recipient_id},
        "message": {"text": text},
        **messaging_type_fields(kind),
    }


def attachment_url(attachment: Attachment) -> str | None:
    if attachment.is_stored:
        return attachment_public_url(attachment.id)
    return attachment.external_url


def attachment_payload(kind: ChannelKind, recipient_id: str, attachment: Attachment) -> dict | None:
    if attachment.file_type == AttachmentFileType.location:
        return None
    url = attachment_url(attachment)
    if not url:
        return None
    return {
        "recipient": {"id": recipient_id},
        "message": {
            "attachment": {
                "type": _SENDABLE_FILE_TYPES.get(attachment.file_type, "file"),
                "payload": {"url": url},
            }
        },
        **messaging_type_fields(kind),
    }


def find_recipient(db: Session, message: Message) -> ContactInbox | None:
    conversation = message.conversation
    return db.scalar(
        select(ContactInbox)
        .where(ContactInbox.contact_id == conversation.contact_id)
        .where(ContactInbox.inbox_id == message.inbox_id)
    )


def _record_source_id(db: Session, message: Message, source_id: str) -> None:
    # The echo webhook may have been stored before the send call returned.
    echo = find_message(db, message.inbox_id, source_id)
    if echo is not None and echo.id != message.id:
        logger.info(
            "outbound_echo_stored_first message_id=%s echo_message_id=%s source_id=%s",
            message.id,
            echo.id,
            source_id,
        )
        db.delete(echo)
        db.flush()
    message.source_id = source_id
    message.status = MessageStatus.sent
    message.external_error = None


def _fail(db: Session, message: Message, channel: Channel, error: str) -> DeliveryResult:
    message.status = MessageStatus.failed
    message.external_error = truncate_error(error)
    db.commit()
    record_outbound_send(channel.kind.value, DELIVERY_FAILED)
    logger.warning(
        "outbound_message_failed message_id=%s channel_id=%s error=%s",
        message.id,
        channel.id,
        message.external_error,
    )
    publish_message(EventType.message_updated, message)
    return DeliveryResult(DELIVERY_FAILED, error=message.external_error)


def _reauthorization_required(db: Session, channel: Channel, message: Message) -> DeliveryResult:
    channel_auth.authorization_error(db, channel)
    record_outbound_send(channel.kind.value, DELIVERY_REAUTHORIZATION_REQUIRED)
    logger.warning(
        "outbound_message_token_invalid message_id=%s channel_id=%s", message.id, channel.id
    )
    return DeliveryResult(DELIVERY_REAUTHORIZATION_REQUIRED)


def deliver_message(db: Session, message: Message) -> DeliveryResult:
    """Send an outgoing agent message through its inbox's channel.

    Safe to call more than once, even concurrently: the send runs under a
    per-message lock, and a message that already has a ``source_id`` is
    never sent again.
    """
    reason = precondition_failure(message)
    if reason:
        logger.info("outbound_message_not_sendable message_id=%s reason=%s", message.id, reason)
        return DeliveryResult(DELIVERY_SKIPPED, error=reason)

    channel = message.inbox.channel
    try:
        channel_auth.ensure_authorized(channel)
    except ReauthorizationRequiredError as exc:
        logger.info(
            "outbound_message_channel_unauthorized message_id=%s error=%s", message.id, exc
        )
        return DeliveryResult(DELIVERY_REAUTHORIZATION_REQUIRED)

    try:
        with send_lock(message.id):
            # Another worker may have sent it between the first check and the lock.
            db.refresh(message)
            reason = precondition_failure(message)
            if reason:
                logger.info(
                    "outbound_message_not_sendable message_id=%s reason=%s", message.id, reason
                )
                return DeliveryResult(DELIVERY_SKIPPED, error=reason)
            return _send(db, message, channel)
    except LockNotAcquiredError:
        logger.info("outbound_message_send_in_progress message_id=%s", message.id)
        return DeliveryResult(DELIVERY_SKIPPED, error=SEND_IN_PROGRESS)


def _send(db: Session, message: Message, channel: Channel) -> DeliveryResult:
    recipient = find_recipient(db, message)
    if recipient is None:
        return _fail(db, message, channel, "Recipient not found for this conversation")

    access_token = meta_oauth.get_access_token(db, channel)
    if not access_token:
        if channel_auth.is_reauthorization_required(channel):
            return DeliveryResult(DELIVERY_REAUTHORIZATION_REQUIRED)
        return _fail(db, message, channel, "No valid access token for this channel")

    client = MetaApiClient(channel.kind, access_token)
    account_id = channel.external_account_id
    sent_id: str | None = None
    last_error: str | None = None

    for attachment in message.attachments:
        payload = attachment_payload(channel.kind, recipient.source_id, attachment)
        if payload is None:
            logger.info(
                "outbound_attachment_skipped message_id=%s attachment_id=%s type=%s",
                message.id,
                attachment.id,
                attachment.file_type.value,
            )
            continue
        try:
            response = client.send_message(account_id, payload)
        except MetaApiError as exc:
            if exc.is_token_invalid:
                return _reauthorization_required(db, channel, message)
            last_error = exc.describe()
            logger.warning(
                "outbound_attachment_failed message_id=%s attachment_id=%s error=%s",
                message.id,
                attachment.id,
                last_error,
            )
            continue
        sent_id = response.get("message_id") or sent_id

    if message.content:
        try:
            response = client.send_message(
                account_id, text_payload(channel.kind, recipient.source_id, message.content)
            )
        except MetaApiError as exc:
            if exc.is_token_invalid:
                return _reauthorization_required(db, channel, message)
            return _fail(db, message, channel, exc.describe())
        sent_id = response.get("message_id")
        if not sent_id:
            return _fail(db, message, channel, "Send response carried no message_id")

    if not sent_id:
        return _fail(db, message, channel, last_error or "No attachment could be sent")

    _record_source_id(db, message, sent_id)
    db.commit()
    record_outbound_send(channel.kind.value, DELIVERY_SENT)
    logger.info(
        "outbound_message_sent message_id=%s channel_id=%s source_id=%s",
        message.id,
        channel.id,
        sent_id,
    )
    publish_message(EventType.message_updated, message)
    return DeliveryResult(DELIVERY_SENT, source_id=sent_id)
