import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.enums import (
    AttachmentFileType,
    ConversationPriority,
    ConversationStatus,
    MessageContentType,
    MessageStatus,
    MessageType,
    SenderType,
)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("account_id", "display_id", name="uq_conversations_account_display_id"),
        Index("ix_conversations_inbox_contact", "inbox_id", "contact_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    inbox_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("inboxes.id"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False
    )
    contact_inbox_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contact_inboxes.id")
    )
    display_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus), default=ConversationStatus.open, nullable=False
    )
    priority: Mapped[ConversationPriority] = mapped_column(
        Enum(ConversationPriority), default=ConversationPriority.low, nullable=False
    )
    assignee_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    additional_attributes: Mapped[dict | None] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    inbox = relationship("Inbox")
    contact = relationship("Contact")
    contact_inbox = relationship("ContactInbox")
    messages = relationship(
        "Message", back_populates="conversation", order_by="Message.created_at"
    )


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("inbox_id", "source_id", name="uq_messages_inbox_source_id"),
        Index("ix_messages_conversation_id", "conversation_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    inbox_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("inboxes.id"), nullable=False
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    message_type: Mapped[MessageType] = mapped_column(
        Enum(MessageType), default=MessageType.incoming, nullable=False
    )
    status: Mapped[MessageStatus] = mapped_column(
        Enum(MessageStatus), default=MessageStatus.progress, nullable=False
    )
    content: Mapped[str | None] = mapped_column(Text)
    content_type: Mapped[MessageContentType] = mapped_column(
        Enum(MessageContentType), default=MessageContentType.text, nullable=False
    )
    content_attributes: Mapped[dict | None] = mapped_column(JSON, default=dict)
    source_id: Mapped[str | None] = mapped_column(String(255))
    private: Mapped[bool] = mapped_column(Boolean, default=False)

    # Polymorphic sender: a Contact for inbound messages, an agent for replies.
    sender_type: Mapped[SenderType | None] = mapped_column(Enum(SenderType))
    sender_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    external_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    conversation = relationship("Conversation", back_populates="messages")
    inbox = relationship("Inbox")
    attachments = relationship(
        "Attachment", back_populates="message", cascade="all, delete-orphan"
    )

    @property
    def is_outgoing(self) -> bool:
        return self.message_type == MessageType.outgoing


class Attachment(Base):
    __tablename__ = "attachments"
    __table_args__ = (Index("ix_attachments_message_id", "message_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    file_type: Mapped[AttachmentFileType] = mapped_column(
        Enum(AttachmentFileType), default=AttachmentFileType.file, nullable=False
    )
    external_url: Mapped[str | None] = mapped_column(Text)

    # Set only for files stored in our own bucket (agent uploads).
    file_path: Mapped[str | None] = mapped_column(String(1024))
    file_name: Mapped[str | None] = mapped_column(String(255))
    content_type: Mapped[str | None] = mapped_column(String(160))
    file_size: Mapped[int | None] = mapped_column(Integer)
    width: Mapped[int | None] = mapped_column(Integer)
    height: Mapped[int | None] = mapped_column(Integer)

    coordinates_lat: Mapped[float | None] = mapped_column(Float)
    coordinates_long: Mapped[float | None] = mapped_column(Float)
    fallback_title: Mapped[str | None] = mapped_column(String(1024))
    meta: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    message = relationship("Message", back_populates="attachments")

    @property
    def is_stored(self) -> bool:
        return bool(self.file_path)
