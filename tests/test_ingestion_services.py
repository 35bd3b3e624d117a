"""End-to-end tests of the inbound webhook pipeline."""

from unittest.mock import patch

import pytest

from app.models.contact import Contact, ContactInbox
from app.models.conversation import Attachment, Conversation, Message
from app.models.enums import (
    AttachmentFileType,
    ChannelKind,
    ConversationStatus,
    MessageContentType,
    MessageStatus,
    MessageType,
)
from app.services import contacts as contact_service
from app.services import delivery, ingestion
from app.services import messages as message_service
from app.services.errors import LockNotAcquiredError, MetaApiError
from app.services.events import EventType, get_dispatcher
from app.services.idempotency import marker_key
from app.services.locks import contact_lock_key
from tests.mocks import INSTAGRAM_ACCOUNT_ID, messaging_item, webhook_entry

CONSENT_REQUIRED = MetaApiError("User consent is required", error_code=230, http_status=400)


def _ingest(db_session, *items, platform=ChannelKind.instagram, account_id=INSTAGRAM_ACCOUNT_ID):
    entry = webhook_entry(account_id, *items)
    return ingestion.process_entry(db_session, platform, entry)


@pytest.fixture()
def no_profile():
    with patch("app.services.meta_api.request_json", side_effect=CONSENT_REQUIRED) as request:
        yield request


@pytest.fixture()
def events():
    received = []
    get_dispatcher().register_handler(received.append)
    return received


def test_first_message_from_unknown_user(db_session, fake_redis, instagram_inbox, no_profile, events):
    [result] = _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "hello"))

    assert result.outcome == ingestion.OUTCOME_CREATED
    contact = db_session.query(Contact).one()
    assert contact.name == "Unknown (IG: u1)"
    contact_inbox = db_session.query(ContactInbox).one()
    assert contact_inbox.source_id == "u1"
    conversation = db_session.query(Conversation).one()
    assert conversation.status == ConversationStatus.open
    assert conversation.display_id == 1
    message = db_session.query(Message).one()
    assert message.message_type == MessageType.incoming
    assert message.content == "hello"
    assert message.conversation_id == conversation.id
    assert [event.event_type for event in events] == [
        EventType.conversation_created,
        EventType.message_created,
    ]
    assert fake_redis.store == {}


def test_second_message_with_image_reuses_conversation(
    db_session, fake_redis, instagram_inbox, no_profile
):
    _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "hello"))
    image = {"type": "image", "payload": {"url": "https://cdn.example/photo.jpg"}}

    [result] = _ingest(
        db_session,
        messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.2", None, attachments=[image]),
    )

    assert result.outcome == ingestion.OUTCOME_CREATED
    assert db_session.query(Conversation).count() == 1
    message = db_session.query(Message).filter_by(source_id="mid.2").one()
    assert message.content is None
    assert message.content_type == MessageContentType.image
    attachment = db_session.query(Attachment).one()
    assert attachment.message_id == message.id
    assert attachment.file_type == AttachmentFileType.image
    assert attachment.external_url == "https://cdn.example/photo.jpg"
    assert attachment.file_path is None


def test_sent_reply_echo_is_dropped(db_session, fake_redis, conversation):
    reply = Message(
        account_id=conversation.account_id,
        inbox_id=conversation.inbox_id,
        conversation_id=conversation.id,
        message_type=MessageType.outgoing,
        status=MessageStatus.progress,
        content="hi",
    )
    db_session.add(reply)
    db_session.commit()
    with patch("app.services.meta_api.request_json", return_value={"message_id": "m123"}):
        delivery.deliver_message(db_session, reply)
    assert (reply.source_id, reply.status) == ("m123", MessageStatus.sent)

    contact_id = conversation.contact_inbox.source_id
    echo = messaging_item(INSTAGRAM_ACCOUNT_ID, contact_id, "m123", "hi", is_echo=True)
    [result] = _ingest(db_session, echo)

    assert result.outcome == "duplicate"
    assert db_session.query(Message).count() == 1


def test_same_message_twice_persists_once(db_session, fake_redis, instagram_inbox, no_profile):
    item = messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.dup", "hello")

    first, second = _ingest(db_session, item, item)

    assert first.outcome == ingestion.OUTCOME_CREATED
    assert second.outcome == "duplicate"
    assert db_session.query(Message).count() == 1
    assert db_session.query(Conversation).count() == 1


def test_duplicate_arriving_mid_processing_is_retried_then_dropped(
    db_session, fake_redis, instagram_inbox, no_profile
):
    item = messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.dup", "hello")
    resolve_contact_inbox = contact_service.resolve_contact_inbox
    rejected = []

    def lookup_while_duplicate_arrives(db, inbox, event):
        try:
            _ingest(db_session, item)
        except LockNotAcquiredError as exc:
            rejected.append(exc)
        return resolve_contact_inbox(db, inbox, event)

    with patch.object(
        contact_service, "resolve_contact_inbox", side_effect=lookup_while_duplicate_arrives
    ):
        [first] = _ingest(db_session, item)

    assert first.outcome == ingestion.OUTCOME_CREATED
    assert len(rejected) == 1

    [retried] = _ingest(db_session, item)

    assert retried.outcome == "duplicate"
    assert db_session.query(Message).count() == 1
    assert db_session.query(Conversation).count() == 1
    assert db_session.query(Contact).count() == 1


def test_message_in_flight_elsewhere_is_dropped(db_session, fake_redis, instagram_inbox, no_profile):
    fake_redis.set(marker_key(instagram_inbox.id, "mid.dup"), "1")

    [result] = _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.dup", "hello"))

    assert result.outcome == "in_flight"
    assert db_session.query(Message).count() == 0
    assert db_session.query(Contact).count() == 0


def test_busy_contact_lock_raises_for_retry(db_session, fake_redis, instagram_inbox):
    fake_redis.set(contact_lock_key(ChannelKind.instagram, "u1", INSTAGRAM_ACCOUNT_ID), "other")

    with pytest.raises(LockNotAcquiredError):
        _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "hello"))

    assert db_session.query(Message).count() == 0


def test_failure_mid_event_leaves_no_partial_rows(db_session, fake_redis, instagram_inbox, no_profile):
    with patch(
        "app.services.ingestion.message_service.create_inbound_message",
        side_effect=RuntimeError("boom"),
    ):
        [result] = _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "hello"))

    assert result.outcome == ingestion.OUTCOME_FAILED
    assert db_session.query(Contact).count() == 0
    assert db_session.query(Conversation).count() == 0
    assert fake_redis.store == {}


def test_failed_event_does_not_drop_rest_of_entry(db_session, fake_redis, instagram_inbox, no_profile):
    create_inbound_message = message_service.create_inbound_message

    def fail_first(db, guard, conversation, contact_inbox, event):
        if event.message_id == "mid.1":
            raise RuntimeError("boom")
        return create_inbound_message(db, guard, conversation, contact_inbox, event)

    with patch.object(message_service, "create_inbound_message", side_effect=fail_first):
        failed, stored = _ingest(
            db_session,
            messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "hello"),
            messaging_item("u2", INSTAGRAM_ACCOUNT_ID, "mid.2", "hi there"),
        )

    assert failed.outcome == ingestion.OUTCOME_FAILED
    assert stored.outcome == ingestion.OUTCOME_CREATED
    assert db_session.query(Message).one().source_id == "mid.2"


def test_lock_lapsing_during_profile_lookup_aborts_event(
    db_session, fake_redis, instagram_inbox, no_profile
):
    lock_key = contact_lock_key(ChannelKind.instagram, "u1", INSTAGRAM_ACCOUNT_ID)
    resolve_contact_inbox = contact_service.resolve_contact_inbox
    item = messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "hello")

    def slow_lookup(db, inbox, event):
        # The lock expired and another worker took it over.
        fake_redis.set(lock_key, "other-worker")
        return resolve_contact_inbox(db, inbox, event)

    with patch.object(contact_service, "resolve_contact_inbox", side_effect=slow_lookup):
        with pytest.raises(LockNotAcquiredError):
            _ingest(db_session, item)

    assert db_session.query(Contact).count() == 0
    assert db_session.query(Conversation).count() == 0
    assert db_session.query(Message).count() == 0
    assert fake_redis.get(lock_key) == "other-worker"
    assert fake_redis.get(marker_key(instagram_inbox.id, "mid.1")) is None

    fake_redis.delete(lock_key)
    [retried] = _ingest(db_session, item)

    assert retried.outcome == ingestion.OUTCOME_CREATED
    assert db_session.query(Conversation).count() == 1


def test_resolved_conversation_reopened(db_session, fake_redis, conversation, events):
    conversation.status = ConversationStatus.resolved
    db_session.commit()
    contact_id = conversation.contact_inbox.source_id

    _ingest(db_session, messaging_item(contact_id, INSTAGRAM_ACCOUNT_ID, "mid.9", "back again"))

    assert conversation.status == ConversationStatus.open
    assert [event.event_type for event in events] == [
        EventType.conversation_reopened,
        EventType.message_created,
    ]


# =============================================================================
# Skips
# =============================================================================


def test_unknown_account_skipped(db_session, fake_redis, instagram_inbox):
    [result] = _ingest(db_session, messaging_item("u1", "someone-else", "mid.1"), account_id="x")

    assert result.outcome == ingestion.OUTCOME_SKIPPED
    assert result.reason == "channel_not_found"


def test_reauthorization_required_channel_skipped(db_session, fake_redis, instagram_inbox):
    instagram_inbox.channel.reauthorization_required = True
    db_session.commit()

    [result] = _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1"))

    assert result.reason == "reauthorization_required"
    assert db_session.query(Message).count() == 0


def test_placeholder_channel_skipped(db_session, fake_redis, instagram_inbox):
    instagram_inbox.channel.external_account_id = "temp_123"
    db_session.commit()

    [result] = _ingest(db_session, messaging_item("u1", "temp_123", "mid.1"), account_id="temp_123")

    assert result.reason == "channel_not_authorized"


def test_missing_identifiers_skipped_without_writes(db_session, fake_redis, instagram_inbox):
    [result] = _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, None, "hello"))

    assert result.reason == "missing_identifiers"
    assert db_session.query(Contact).count() == 0


def test_empty_message_skipped(db_session, fake_redis, instagram_inbox):
    [result] = _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", None))

    assert result.reason == "empty_message"


def test_instagram_event_routed_to_linked_facebook_page(
    db_session, fake_redis, facebook_inbox, no_profile
):
    facebook_inbox.channel.instagram_id = "17841455555"
    db_session.commit()

    [result] = _ingest(
        db_session,
        messaging_item("u1", "17841455555", "mid.1", "hi"),
        account_id="17841455555",
    )

    assert result.outcome == ingestion.OUTCOME_CREATED
    assert db_session.query(Message).one().inbox_id == facebook_inbox.id


# =============================================================================
# Updates and receipts
# =============================================================================


def test_unsend_and_reaction_update_existing_message(
    db_session, fake_redis, instagram_inbox, no_profile, events
):
    _ingest(db_session, messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", "oops"))
    reaction = {
        "sender": {"id": "u1"},
        "recipient": {"id": INSTAGRAM_ACCOUNT_ID},
        "reaction": {"mid": "mid.1", "action": "react", "emoji": "😂"},
    }
    unsend = messaging_item("u1", INSTAGRAM_ACCOUNT_ID, "mid.1", None, is_deleted=True)

    reacted, deleted = _ingest(db_session, reaction, unsend)

    assert reacted.outcome == deleted.outcome == ingestion.OUTCOME_UPDATED
    message = db_session.query(Message).one()
    assert message.content == "This message was deleted"
    assert message.content_attributes["reactions"][0]["emoji"] == "😂"
    assert events[-1].event_type == EventType.message_updated


def test_read_receipt_from_unknown_contact_skipped(db_session, fake_redis, instagram_inbox):
    read = {
        "sender": {"id": "nobody"},
        "recipient": {"id": INSTAGRAM_ACCOUNT_ID},
        "read": {"watermark": 1760000000000},
    }

    [result] = _ingest(db_session, read)

    assert result.reason == "unknown_contact"


def test_delivery_receipt_marks_sent_messages(db_session, fake_redis, conversation):
    reply = Message(
        account_id=conversation.account_id,
        inbox_id=conversation.inbox_id,
        conversation_id=conversation.id,
        message_type=MessageType.outgoing,
        status=MessageStatus.sent,
        content="hi",
        source_id="m123",
    )
    db_session.add(reply)
    db_session.commit()
    receipt = {
        "sender": {"id": conversation.contact_inbox.source_id},
        "recipient": {"id": INSTAGRAM_ACCOUNT_ID},
        "delivery": {"mids": ["m123"]},
    }

    [result] = _ingest(db_session, receipt)

    assert result.outcome == ingestion.OUTCOME_UPDATED
    assert reply.status == MessageStatus.delivered
