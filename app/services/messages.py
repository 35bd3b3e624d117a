"""Message and attachment persistence for both directions.

Inbound messages keep pointing at the platform CDN for their attachments.
Agent replies upload their files to the blob store first so the send API
can be given a URL we control.
"""

import io
import mimetypes
from dataclasses import dataclass
from datetime import UTC, datetime

from PIL import Image, UnidentifiedImageError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.account import Inbox
from app.models.channel import as_utc
from app.models.contact import ContactInbox
from app.models.conversation import Attachment, Conversation, Message
from app.models.enums import (
    AttachmentFileType,
    MessageContentType,
    MessageStatus,
    MessageType,
    SenderType,
)
from app.schemas.events import AttachmentDescriptor, InboundEvent
from app.services import conversations as conversation_service
from app.services.idempotency import IdempotencyGuard
from app.services.object_storage import (
    ObjectStorageError,
    S3StorageService,
    attachment_key,
    get_s3_storage,
    safe_filename,
)

logger = get_logger(__name__)

DELETED_MESSAGE_CONTENT = "This message was deleted"

PLATFORM_FILE_TYPES: dict[str, AttachmentFileType] = {
    "image": AttachmentFileType.image,
    "audio": AttachmentFileType.audio,
    "video": AttachmentFileType.video,
    "file": AttachmentFileType.file,
    "location": AttachmentFileType.location,
    "fallback": AttachmentFileType.fallback,
    "share": AttachmentFileType.share,
    "story_mention": AttachmentFileType.story_mention,
    "ig_reel": AttachmentFileType.ig_reel,
    "reel": AttachmentFileType.ig_reel,
    "contact": AttachmentFileType.contact,
}
SKIPPED_PLATFORM_TYPES = frozenset({"template", "unsupported_type"})

_CONTENT_TYPES: dict[AttachmentFileType, MessageContentType] = {
    AttachmentFileType.image: MessageContentType.image,
    AttachmentFileType.video: MessageContentType.video,
    AttachmentFileType.audio: MessageContentType.audio,
    AttachmentFileType.file: MessageContentType.file,
    AttachmentFileType.location: MessageContentType.location,
}

# Outgoing statuses a receipt may still advance.
_UNREAD_STATUSES = (MessageStatus.sent, MessageStatus.delivered)


@dataclass
class UploadedFile:
    filename: str | None
    content_type: str | None
    data: bytes


def file_type_for(platform_type: str | None) -> AttachmentFileType:
    return PLATFORM_FILE_TYPES.get((platform_type or "").lower(), AttachmentFileType.file)


def content_type_for_file_type(file_type: AttachmentFileType | None) -> MessageContentType:
    if file_type is None:
        return MessageContentType.text
    return _CONTENT_TYPES.get(file_type, MessageContentType.file)


def content_type_for(event: InboundEvent) -> MessageContentType:
    if event.text:
        return MessageContentType.text
    for descriptor in event.attachments:
        if descriptor.type in SKIPPED_PLATFORM_TYPES:
            continue
        return content_type_for_file_type(file_type_for(descriptor.type))
    return MessageContentType.text


def find_message(db: Session, inbox_id, source_id: str | None) -> Message | None:
    if not source_id:
        return None
    return db.scalar(
        select(Message).where(Message.inbox_id == inbox_id).where(Message.source_id == source_id)
    )


def build_attachment(message: Message, descriptor: AttachmentDescriptor) -> Attachment | None:
    """Map one platform descriptor onto an Attachment row (not yet added)."""
    if descriptor.type in SKIPPED_PLATFORM_TYPES:
        logger.info(
            "inbound_attachment_skipped message_id=%s type=%s", message.id, descriptor.type
        )
        return None
    file_type = file_type_for(descriptor.type)
    attachment = Attachment(
        message_id=message.id,
        account_id=message.account_id,
        file_type=file_type,
    )
    if file_type == AttachmentFileType.location:
        attachment.coordinates_lat = descriptor.latitude
        attachment.coordinates_long = descriptor.longitude
        attachment.fallback_title = descriptor.title
        attachment.external_url = descriptor.url
    elif file_type == AttachmentFileType.fallback:
        attachment.fallback_title = descriptor.title
        attachment.external_url = descriptor.url
    else:
        attachment.external_url = descriptor.url
    if descriptor.payload:
        attachment.meta = descriptor.payload
    return attachment


def _reply_attributes(db: Session, inbox_id, event: InboundEvent) -> dict:
    if not event.reply_to_mid:
        return {}
    attributes: dict = {"in_reply_to_external_id": event.reply_to_mid}
    replied = find_message(db, inbox_id, event.reply_to_mid)
    if replied is not None:
        attributes["in_reply_to"] = str(replied.id)
    return attributes


def create_inbound_message(
    db: Session,
    guard: IdempotencyGuard,
    conversation: Conversation,
    contact_inbox: ContactInbox,
    event: InboundEvent,
) -> Message | None:
    """Persist the event's message and its attachments.

    Returns None when the message already exists, either found by the final
    ``is_processed`` check or by losing the insert race on
    (inbox_id, source_id). Nothing is committed here.
    """
    inbox_id = conversation.inbox_id
    if event.message_id and guard.is_processed(event.message_id):
        logger.info(
            "inbound_message_duplicate inbox_id=%s source_id=%s", inbox_id, event.message_id
        )
        return None

    content_attributes = _reply_attributes(db, inbox_id, event)
    if event.is_unsupported:
        content_attributes["is_unsupported"] = True
    outgoing = event.is_echo
    created_at = event.timestamp or datetime.now(UTC)

    try:
        with db.begin_nested():
            message = Message(
                account_id=conversation.account_id,
                inbox_id=inbox_id,
                conversation_id=conversation.id,
                message_type=MessageType.outgoing if outgoing else MessageType.incoming,
                status=MessageStatus.sent if outgoing else MessageStatus.delivered,
                content=event.text,
                content_type=content_type_for(event),
                content_attributes=content_attributes,
                source_id=event.message_id,
                sender_type=None if outgoing else SenderType.contact,
                sender_id=None if outgoing else contact_inbox.contact_id,
                created_at=created_at,
            )
            db.add(message)
            db.flush()
    except IntegrityError:
        logger.info(
            "inbound_message_insert_race_lost inbox_id=%s source_id=%s",
            inbox_id,
            event.message_id,
        )
        return None

    for descriptor in event.attachments:
        try:
            with db.begin_nested():
                attachment = build_attachment(message, descriptor)
                if attachment is not None:
                    db.add(attachment)
                    db.flush()
        except (SQLAlchemyError, ValueError):
            logger.exception(
                "inbound_attachment_failed message_id=%s type=%s", message.id, descriptor.type
            )

    conversation_service.touch(conversation, created_at)
    db.flush()
    logger.info(
        "inbound_message_created message_id=%s conversation_id=%s source_id=%s echo=%s",
        message.id,
        conversation.id,
        message.source_id,
        outgoing,
    )
    return message


def image_dimensions(data: bytes) -> tuple[int, int] | None:
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def _file_type_for_mime(mime_type: str | None) -> AttachmentFileType:
    major = (mime_type or "").split("/", 1)[0]
    if major in ("image", "audio", "video"):
        return AttachmentFileType(major)
    return AttachmentFileType.file


def store_upload(
    storage: S3StorageService, message: Message, upload: UploadedFile
) -> Attachment:
    """Upload one agent file and describe it as an Attachment.

    Raises:
        ValueError: the file is empty or over the size limit
        ObjectStorageError: the blob store rejected the upload
    """
    size = len(upload.data)
    if size == 0:
        raise ValueError("Empty upload")
    if size > settings.attachment_max_size_bytes:
        raise ValueError(f"Upload of {size} bytes exceeds the attachment size limit")

    filename = safe_filename(upload.filename)
    mime_type = (
        upload.content_type
        or mimetypes.guess_type(filename)[0]
        or "application/octet-stream"
    )
    key = attachment_key(message.account_id, message.id, filename)
    storage.upload(key, upload.data, mime_type)

    file_type = _file_type_for_mime(mime_type)
    attachment = Attachment(
        message_id=message.id,
        account_id=message.account_id,
        file_type=file_type,
        file_path=key,
        file_name=filename,
        content_type=mime_type,
        file_size=size,
    )
    if file_type == AttachmentFileType.image:
        dimensions = image_dimensions(upload.data)
        if dimensions:
            attachment.width, attachment.height = dimensions
    return attachment


def build_outgoing_message(
    db: Session,
    conversation: Conversation,
    content: str | None,
    *,
    private: bool = False,
    sender_id=None,
    uploads: list[UploadedFile] | None = None,
    storage: S3StorageService | None = None,
) -> Message:
    """Create an agent reply in ``progress`` state, ready to be delivered.

    A failing upload is logged and dropped; the message is kept.
    """
    uploads = uploads or []
    if not content and not uploads:
        raise ValueError("A reply needs content or at least one attachment")

    message = Message(
        account_id=conversation.account_id,
        inbox_id=conversation.inbox_id,
        conversation_id=conversation.id,
        message_type=MessageType.outgoing,
        status=MessageStatus.progress,
        content=content,
        content_type=MessageContentType.text,
        content_attributes={},
        private=private,
        sender_type=SenderType.agent if sender_id else None,
        sender_id=sender_id,
    )
    db.add(message)
    db.flush()

    if uploads:
        storage = storage or get_s3_storage()
    first_file_type = None
    for upload in uploads:
        try:
            attachment = store_upload(storage, message, upload)
        except (ObjectStorageError, ValueError) as exc:
            logger.warning(
                "outgoing_attachment_failed message_id=%s filename=%s error=%s",
                message.id,
                upload.filename,
                exc,
            )
            continue
        message.attachments.append(attachment)
        first_file_type = first_file_type or attachment.file_type

    if not content:
        message.content_type = content_type_for_file_type(first_file_type)
    conversation_service.touch(conversation, message.created_at)
    db.flush()
    logger.info(
        "outgoing_message_created message_id=%s conversation_id=%s attachments=%d private=%s",
        message.id,
        conversation.id,
        len(message.attachments),
        private,
    )
    return message


def apply_unsend(db: Session, inbox: Inbox, event: InboundEvent) -> Message | None:
    message = find_message(db, inbox.id, event.message_id)
    if message is None:
        logger.info(
            "unsend_target_not_found inbox_id=%s source_id=%s", inbox.id, event.message_id
        )
        return None
    message.content = DELETED_MESSAGE_CONTENT
    message.content_type = MessageContentType.text
    message.content_attributes = {**(message.content_attributes or {}), "deleted": True}
    message.attachments.clear()
    db.flush()
    logger.info("message_unsent message_id=%s source_id=%s", message.id, message.source_id)
    return message


def apply_reaction(db: Session, inbox: Inbox, event: InboundEvent) -> Message | None:
    """Record or withdraw a reaction on the message it targets."""
    reaction = event.reaction
    if reaction is None or not reaction.target_mid:
        return None
    message = find_message(db, inbox.id, reaction.target_mid)
    if message is None:
        logger.info(
            "reaction_target_not_found inbox_id=%s source_id=%s", inbox.id, reaction.target_mid
        )
        return None

    attributes = dict(message.content_attributes or {})
    reactions = [
        item for item in attributes.get("reactions") or [] if item.get("sender_id") != event.sender_id
    ]
    if reaction.action != "unreact":
        reactions.append(
            {
                "sender_id": event.sender_id,
                "emoji": reaction.emoji,
                "reaction": reaction.reaction,
                "reacted_at": (event.timestamp or datetime.now(UTC)).isoformat(),
            }
        )
    attributes["reactions"] = reactions
    message.content_attributes = attributes
    db.flush()
    logger.info(
        "message_reaction_applied message_id=%s action=%s", message.id, reaction.action or "react"
    )
    return message


def _watermark(value: int | None) -> datetime | None:
    if value is None:
        return None
    seconds = value / 1000 if value > 1_000_000_000_000 else value
    return datetime.fromtimestamp(seconds, tz=UTC)


def _outgoing_in_latest_conversation(
    db: Session, inbox: Inbox, contact_inbox: ContactInbox, statuses: tuple
) -> list[Message]:
    conversation = conversation_service.latest_conversation(db, inbox, contact_inbox.contact_id)
    if conversation is None:
        return []
    return list(
        db.scalars(
            select(Message)
            .where(Message.conversation_id == conversation.id)
            .where(Message.message_type == MessageType.outgoing)
            .where(Message.status.in_(statuses))
        )
    )


def apply_read_receipt(
    db: Session, inbox: Inbox, contact_inbox: ContactInbox, event: InboundEvent
) -> int:
    """Move outgoing messages created at or before the watermark to read."""
    watermark = _watermark(event.read_watermark)
    if watermark is None:
        return 0
    updated = 0
    for message in _outgoing_in_latest_conversation(db, inbox, contact_inbox, _UNREAD_STATUSES):
        if as_utc(message.created_at) <= watermark:
            message.status = MessageStatus.read
            updated += 1
    db.flush()
    logger.info("read_receipt_applied inbox_id=%s updated=%d", inbox.id, updated)
    return updated


def apply_delivery_receipt(
    db: Session, inbox: Inbox, contact_inbox: ContactInbox, event: InboundEvent
) -> int:
    """Move sent messages listed by mid, or older than the watermark, to delivered."""
    updated = 0
    for mid in event.delivered_mids:
        message = find_message(db, inbox.id, mid)
        if message is not None and message.status == MessageStatus.sent:
            message.status = MessageStatus.delivered
            updated += 1

    db.flush()
    watermark = _watermark(event.delivery_watermark)
    if watermark is not None:
        for message in _outgoing_in_latest_conversation(
            db, inbox, contact_inbox, (MessageStatus.sent,)
        ):
            if as_utc(message.created_at) <= watermark:
                message.status = MessageStatus.delivered
                updated += 1
    db.flush()
    logger.info("delivery_receipt_applied inbox_id=%s updated=%d", inbox.id, updated)
    return updated
