"""Contact resolution and profile enrichment for inbound events.

The end user behind an event is identified by the platform-scoped id
(``ContactInbox.source_id``). First contact triggers a profile lookup on
the Graph API; when the platform refuses to share the profile (consent
required, user not found) or is unreachable, the contact is created under a
synthesized ``Unknown (IG: <id>)`` name that later events try to replace.
"""

import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.account import Inbox
from app.models.channel import Channel
from app.models.contact import Contact, ContactInbox
from app.models.enums import ChannelKind
from app.schemas.events import InboundEvent
from app.services import channel_auth, meta_oauth
from app.services.errors import MetaApiError
from app.services.meta_api import MetaApiClient

logger = get_logger(__name__)

_PLATFORM_LABELS = {
    ChannelKind.instagram: "IG",
    ChannelKind.facebook: "FB",
}
_UNKNOWN_PREFIX = "Unknown ("

LOOKUP_OK = "ok"
LOOKUP_CONSENT_REQUIRED = "consent_required"
LOOKUP_NOT_FOUND = "not_found"
LOOKUP_TOKEN_INVALID = "token_invalid"
LOOKUP_UNAVAILABLE = "unavailable"
LOOKUP_SKIPPED = "skipped"


@dataclass
class ProfileLookup:
    status: str
    profile: dict | None = None

    @property
    def found(self) -> bool:
        return self.status == LOOKUP_OK and bool(self.profile)


def unknown_name(platform: ChannelKind, external_id: str) -> str:
    return f"Unknown ({_PLATFORM_LABELS[platform]}: {external_id})"


def is_unknown_name(name: str | None) -> bool:
    return not name or name.startswith(_UNKNOWN_PREFIX)


def fetch_profile(db: Session, channel: Channel, external_id: str) -> ProfileLookup:
    """Look the user up with bounded retries (1s, 2s, 4s ... between attempts)."""
    if channel_auth.is_reauthorization_required(channel):
        return ProfileLookup(LOOKUP_SKIPPED)
    access_token = meta_oauth.get_access_token(db, channel)
    if not access_token:
        return ProfileLookup(LOOKUP_SKIPPED)

    client = MetaApiClient(channel.kind, access_token)
    attempts = max(1, settings.profile_lookup_attempts)
    for attempt in range(attempts):
        try:
            return ProfileLookup(LOOKUP_OK, client.fetch_profile(external_id))
        except MetaApiError as exc:
            if exc.is_consent_required:
                logger.info(
                    "meta_profile_consent_required channel_id=%s user_id=%s",
                    channel.id,
                    external_id,
                )
                return ProfileLookup(LOOKUP_CONSENT_REQUIRED)
            if exc.is_user_not_found:
                logger.info(
                    "meta_profile_user_not_found channel_id=%s user_id=%s",
                    channel.id,
                    external_id,
                )
                return ProfileLookup(LOOKUP_NOT_FOUND)
            if exc.is_token_invalid:
                channel_auth.authorization_error(db, channel)
                return ProfileLookup(LOOKUP_TOKEN_INVALID)
            logger.warning(
                "meta_profile_lookup_failed channel_id=%s user_id=%s attempt=%d "
                "rate_limited=%s error=%s",
                channel.id,
                external_id,
                attempt + 1,
                exc.is_rate_limited,
                exc,
            )
            if attempt + 1 < attempts:
                time.sleep(2**attempt)
    return ProfileLookup(LOOKUP_UNAVAILABLE)


def profile_display_name(platform: ChannelKind, profile: dict) -> str | None:
    if platform == ChannelKind.instagram:
        return profile.get("name") or profile.get("username")
    parts = [profile.get("first_name"), profile.get("last_name")]
    full_name = " ".join(str(part) for part in parts if part)
    return full_name or profile.get("name")


def profile_attributes(platform: ChannelKind, external_id: str, profile: dict) -> dict:
    if platform == ChannelKind.instagram:
        attributes = {
            "social_profiles": {"instagram": profile.get("username")},
            "social_instagram_user_name": profile.get("username"),
            "social_instagram_follower_count": profile.get("follower_count"),
            "social_instagram_is_verified_user": profile.get("is_verified_user"),
            "social_instagram_is_user_follow_business": profile.get("is_user_follow_business"),
            "social_instagram_is_business_follow_user": profile.get("is_business_follow_user"),
        }
    else:
        attributes = {
            "social_profiles": {"facebook": external_id},
            "social_facebook_user_id": external_id,
        }
    return {key: value for key, value in attributes.items() if value is not None}


def apply_profile(contact: Contact, platform: ChannelKind, external_id: str, profile: dict) -> bool:
    """Write profile data onto the contact; return True if anything changed."""
    changed = False
    name = profile_display_name(platform, profile)
    if name and contact.name != name:
        contact.name = name
        changed = True
    avatar = profile.get("profile_pic")
    if avatar and contact.avatar_url != avatar:
        contact.avatar_url = avatar
        changed = True

    current = dict(contact.additional_attributes or {})
    updated = dict(current)
    for key, value in profile_attributes(platform, external_id, profile).items():
        if key == "social_profiles":
            merged = {**(current.get("social_profiles") or {}), **value}
            if merged != current.get("social_profiles"):
                updated["social_profiles"] = merged
        elif current.get(key) != value:
            updated[key] = value
    if updated != current:
        contact.additional_attributes = updated
        changed = True
    return changed


def find_contact_inbox(db: Session, inbox: Inbox, source_id: str) -> ContactInbox | None:
    return db.scalar(
        select(ContactInbox)
        .where(ContactInbox.inbox_id == inbox.id)
        .where(ContactInbox.source_id == source_id)
    )


def create_contact_inbox(
    db: Session,
    inbox: Inbox,
    source_id: str,
    name: str,
    avatar_url: str | None = None,
    attributes: dict | None = None,
) -> ContactInbox:
    """Create Contact and ContactInbox; reuse the winner of a concurrent insert."""
    try:
        with db.begin_nested():
            contact = Contact(
                account_id=inbox.account_id,
                name=name,
                avatar_url=avatar_url,
                additional_attributes=attributes or {},
            )
            db.add(contact)
            db.flush()
            contact_inbox = ContactInbox(
                contact_id=contact.id,
                inbox_id=inbox.id,
                source_id=source_id,
            )
            db.add(contact_inbox)
            db.flush()
    except IntegrityError:
        existing = find_contact_inbox(db, inbox, source_id)
        if existing is None:
            raise
        logger.info(
            "contact_inbox_created_concurrently inbox_id=%s source_id=%s", inbox.id, source_id
        )
        return existing
    logger.info(
        "contact_created contact_id=%s inbox_id=%s source_id=%s",
        contact.id,
        inbox.id,
        source_id,
    )
    return contact_inbox


def _retry_unknown_name(db: Session, inbox: Inbox, contact: Contact, external_id: str) -> None:
    lookup = fetch_profile(db, inbox.channel, external_id)
    if lookup.found and apply_profile(contact, inbox.channel.kind, external_id, lookup.profile):
        db.flush()
        logger.info("contact_profile_enriched contact_id=%s", contact.id)


def resolve_contact_inbox(db: Session, inbox: Inbox, event: InboundEvent) -> ContactInbox | None:
    """Find or create the ContactInbox for the event's end user.

    Returns None (with a warning) when the event carries no usable id.
    """
    external_id = event.contact_external_id
    if not external_id:
        logger.warning(
            "inbound_event_missing_contact_id inbox_id=%s message_id=%s",
            inbox.id,
            event.message_id,
        )
        return None

    contact_inbox = find_contact_inbox(db, inbox, external_id)
    if contact_inbox is not None:
        if is_unknown_name(contact_inbox.contact.name):
            _retry_unknown_name(db, inbox, contact_inbox.contact, external_id)
        return contact_inbox

    lookup = fetch_profile(db, inbox.channel, external_id)
    if lookup.found:
        profile = lookup.profile or {}
        name = profile_display_name(event.platform, profile) or unknown_name(
            event.platform, external_id
        )
        return create_contact_inbox(
            db,
            inbox,
            external_id,
            name,
            avatar_url=profile.get("profile_pic"),
            attributes=profile_attributes(event.platform, external_id, profile),
        )

    logger.info(
        "contact_created_without_profile inbox_id=%s source_id=%s reason=%s",
        inbox.id,
        external_id,
        lookup.status,
    )
    return create_contact_inbox(db, inbox, external_id, unknown_name(event.platform, external_id))
