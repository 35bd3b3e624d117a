from datetime import datetime

from pydantic import BaseModel, Field

from app.models.enums import ChannelKind


class AttachmentDescriptor(BaseModel):
    type: str
    url: str | None = None
    title: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    payload: dict = Field(default_factory=dict)


class Reaction(BaseModel):
    action: str | None = None
    emoji: str | None = None
    reaction: str | None = None
    target_mid: str | None = None


class InboundEvent(BaseModel):
    """One messaging item of a webhook entry, in platform-neutral form."""

    platform: ChannelKind
    kind: str = "unsupported"
    sender_id: str | None = None
    recipient_id: str | None = None
    is_echo: bool = False
    message_id: str | None = None
    text: str | None = None
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    read_watermark: int | None = None
    delivery_watermark: int | None = None
    delivered_mids: list[str] = Field(default_factory=list)
    reply_to_mid: str | None = None
    timestamp: datetime | None = None
    is_deleted: bool = False
    is_unsupported: bool = False
    reaction: Reaction | None = None
    app_id: str | None = None

    @property
    def contact_external_id(self) -> str | None:
        # Echoes replay our own sends: the end user is the recipient.
        return self.recipient_id if self.is_echo else self.sender_id

    @property
    def account_external_id(self) -> str | None:
        return self.sender_id if self.is_echo else self.recipient_id

    @property
    def has_content(self) -> bool:
        return bool(self.text) or bool(self.attachments)
