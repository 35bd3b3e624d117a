from app.models.account import Account, Inbox  # noqa: F401
from app.models.channel import Channel  # noqa: F401
from app.models.contact import Contact, ContactInbox  # noqa: F401
from app.models.conversation import Attachment, Conversation, Message  # noqa: F401
from app.models.enums import (  # noqa: F401
    AttachmentFileType,
    ChannelKind,
    ConversationPriority,
    ConversationStatus,
    MessageContentType,
    MessageStatus,
    MessageType,
    SenderType,
)
