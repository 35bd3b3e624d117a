"""Parse Meta webhook bodies into platform-neutral inbound events.

Instagram and Messenger deliver the same envelope::

    {"object": "instagram" | "page",
     "entry": [{"id": ..., "time": ..., "messaging": [...]}]}

Each messaging item becomes one ``InboundEvent``. Parsing never mutates
state and tolerates missing nested keys; only a body that is not an
envelope at all is rejected.
"""

import hashlib
import hmac
from datetime import datetime, timezone

from app.logging import get_logger
from app.models.enums import ChannelKind
from app.schemas.events import AttachmentDescriptor, InboundEvent, Reaction
from app.services.errors import MalformedPayloadError

logger = get_logger(__name__)

_OBJECT_TO_PLATFORM = {
    "instagram": ChannelKind.instagram,
    "page": ChannelKind.facebook,
}


def _as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value: object) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_float(value: object) -> float | None:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _as_int(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: object) -> datetime | None:
    """Meta sends epoch milliseconds; tolerate seconds too."""
    timestamp = _as_float(value)
    if timestamp is None:
        return None
    if timestamp > 1_000_000_000_000:
        timestamp = timestamp / 1000
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def platform_for_object(object_name: str | None) -> ChannelKind:
    platform = _OBJECT_TO_PLATFORM.get((object_name or "").strip().lower())
    if platform is None:
        raise MalformedPayloadError(f"Unsupported webhook object: {object_name!r}")
    return platform


def split_envelope(body: object) -> tuple[ChannelKind, list[dict]]:
    """Validate the outer envelope and return (platform, entries)."""
    if not isinstance(body, dict):
        raise MalformedPayloadError("Webhook body must be a JSON object")
    platform = platform_for_object(body.get("object"))
    entries = body.get("entry")
    if not isinstance(entries, list):
        raise MalformedPayloadError("Webhook body has no entry list")
    return platform, [entry for entry in entries if isinstance(entry, dict)]


def messaging_items(entry: dict) -> list[dict]:
    items = entry.get("messaging")
    if items is None:
        items = entry.get("standby")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def is_test_entry(entry: dict) -> bool:
    """Entries carrying ``changes`` are field test or comment notifications."""
    return bool(entry.get("changes")) and not messaging_items(entry)


def parse_attachment(raw: object) -> AttachmentDescriptor | None:
    attachment = _as_dict(raw)
    attachment_type = _as_str(attachment.get("type"))
    if not attachment_type:
        return None
    payload = _as_dict(attachment.get("payload"))
    coordinates = _as_dict(payload.get("coordinates"))
    return AttachmentDescriptor(
        type=attachment_type.lower(),
        url=_as_str(payload.get("url")) or _as_str(attachment.get("url")),
        title=_as_str(payload.get("title")) or _as_str(attachment.get("title")),
        latitude=_as_float(coordinates.get("lat")),
        longitude=_as_float(coordinates.get("long")),
        payload=payload,
    )


def _event_kind(item: dict) -> str:
    if "message" in item:
        return "message"
    if "reaction" in item:
        return "reaction"
    if "read" in item:
        return "read"
    if "delivery" in item:
        return "delivery"
    return "unsupported"


def parse_messaging(item: dict, platform: ChannelKind) -> InboundEvent:
    message = _as_dict(item.get("message"))
    read = _as_dict(item.get("read"))
    delivery = _as_dict(item.get("delivery"))
    reply_to = _as_dict(message.get("reply_to"))

    attachments = []
    raw_attachments = message.get("attachments")
    if isinstance(raw_attachments, list):
        for raw in raw_attachments:
            descriptor = parse_attachment(raw)
            if descriptor is not None:
                attachments.append(descriptor)

    reaction = None
    raw_reaction = _as_dict(item.get("reaction"))
    if raw_reaction:
        reaction = Reaction(
            action=_as_str(raw_reaction.get("action")),
            emoji=_as_str(raw_reaction.get("emoji")),
            reaction=_as_str(raw_reaction.get("reaction")),
            target_mid=_as_str(raw_reaction.get("mid")),
        )

    mids = delivery.get("mids")
    return InboundEvent(
        platform=platform,
        kind=_event_kind(item),
        sender_id=_as_str(_as_dict(item.get("sender")).get("id")),
        recipient_id=_as_str(_as_dict(item.get("recipient")).get("id")),
        is_echo=bool(message.get("is_echo")),
        message_id=_as_str(message.get("mid")),
        text=message.get("text") if isinstance(message.get("text"), str) else None,
        attachments=attachments,
        read_watermark=_as_int(read.get("watermark")),
        delivery_watermark=_as_int(delivery.get("watermark")),
        delivered_mids=[str(mid) for mid in mids] if isinstance(mids, list) else [],
        reply_to_mid=_as_str(reply_to.get("mid")),
        timestamp=parse_timestamp(item.get("timestamp")),
        is_deleted=bool(message.get("is_deleted")),
        is_unsupported=bool(message.get("is_unsupported")),
        reaction=reaction,
        app_id=_as_str(message.get("app_id")),
    )


def normalize_entry(entry: dict, platform: ChannelKind) -> list[InboundEvent]:
    if is_test_entry(entry):
        logger.info(
            "meta_webhook_changes_entry_ignored platform=%s entry_id=%s",
            platform.value,
            entry.get("id"),
        )
        return []
    return [parse_messaging(item, platform) for item in messaging_items(entry)]


def normalize(body: object) -> list[InboundEvent]:
    platform, entries = split_envelope(body)
    events: list[InboundEvent] = []
    for entry in entries:
        events.extend(normalize_entry(entry, platform))
    return events


def verify_webhook_signature(
    payload_body: bytes,
    signature_header: str | None,
    app_secret: str,
) -> bool:
    """Verify Meta webhook signature (X-Hub-Signature-256).

    Args:
        payload_body: Raw request body bytes
        signature_header: Value of X-Hub-Signature-256 header
        app_secret: App secret the platform signs with

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header or not signature_header.startswith("sha256="):
        logger.warning("webhook_signature_missing_or_invalid")
        return False

    expected_signature = signature_header[7:]
    computed_signature = hmac.new(
        app_secret.encode(),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    is_valid = hmac.compare_digest(expected_signature, computed_signature)
    if not is_valid:
        logger.warning("webhook_signature_mismatch")
    return is_valid


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
) -> str | None:
    """Answer the GET subscription handshake; None means reject."""
    if mode != "subscribe" or not challenge:
        return None
    if not expected_token or not token:
        return None
    if not hmac.compare_digest(token, expected_token):
        logger.warning("webhook_verify_token_mismatch")
        return None
    return challenge
