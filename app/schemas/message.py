from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import (
    AttachmentFileType,
    MessageContentType,
    MessageStatus,
    MessageType,
)


class OutgoingMessageCreate(BaseModel):
    content: str | None = Field(default=None, max_length=20000)
    private: bool = False
    sender_id: UUID | None = None


class AttachmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    file_type: AttachmentFileType
    external_url: str | None = None
    file_name: str | None = None
    content_type: str | None = None
    file_size: int | None = None
    width: int | None = None
    height: int | None = None


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    message_type: MessageType
    status: MessageStatus
    content: str | None = None
    content_type: MessageContentType
    source_id: str | None = None
    private: bool
    external_error: str | None = None
    created_at: datetime
    attachments: list[AttachmentRead] = Field(default_factory=list)
