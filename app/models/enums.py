import enum


class ChannelKind(enum.Enum):
    instagram = "instagram"
    facebook = "facebook"


class ConversationStatus(enum.Enum):
    open = "open"
    resolved = "resolved"
    pending = "pending"


class ConversationPriority(enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class MessageType(enum.Enum):
    incoming = "incoming"
    outgoing = "outgoing"
    activity = "activity"


class MessageStatus(enum.Enum):
    progress = "progress"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class MessageContentType(enum.Enum):
    text = "text"
    image = "image"
    video = "video"
    audio = "audio"
    file = "file"
    location = "location"
    contact = "contact"


class SenderType(enum.Enum):
    contact = "contact"
    agent = "agent"


class AttachmentFileType(enum.Enum):
    image = "image"
    audio = "audio"
    video = "video"
    file = "file"
    location = "location"
    fallback = "fallback"
    share = "share"
    story_mention = "story_mention"
    contact = "contact"
    ig_reel = "ig_reel"
