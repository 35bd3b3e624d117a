from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from unittest.mock import patch

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.api import attachments as attachments_api
from app.config import settings
from app.db import get_db
from app.errors import register_error_handlers
from app.main import app
from app.models.conversation import Attachment, Message
from app.models.enums import AttachmentFileType, MessageType
from app.services.errors import ReauthorizationRequiredError
from app.services.object_storage import ObjectNotFoundError, StreamResult
from tests.mocks import INSTAGRAM_ACCOUNT_ID, messaging_item, webhook_body, webhook_entry

APP_SECRET = "test-app-secret"


@pytest.fixture()
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def webhook_settings(monkeypatch):
    patched = settings.model_copy(
        update={
            "meta_app_secret": APP_SECRET,
            "instagram_app_secret": None,
            "meta_webhook_verify_token": "verify-me",
            "instagram_webhook_verify_token": None,
        }
    )
    monkeypatch.setattr("app.api.webhooks.settings", patched)
    return patched


def _signed(body: bytes) -> dict:
    digest = hmac.new(APP_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return {"X-Hub-Signature-256": f"sha256={digest}", "Content-Type": "application/json"}


# =============================================================================
# Webhooks
# =============================================================================


def test_subscription_handshake_echoes_challenge(client, webhook_settings):
    response = client.get(
        "/webhooks/instagram",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"},
    )

    assert response.status_code == 200
    assert response.text == "42"


def test_subscription_handshake_rejects_wrong_token(client, webhook_settings):
    response = client.get(
        "/webhooks/facebook",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"},
    )

    assert response.status_code == 403


def test_webhook_entries_enqueued(client, webhook_settings):
    body = json.dumps(
        webhook_body(
            "instagram",
            webhook_entry(INSTAGRAM_ACCOUNT_ID, messaging_item("u1", INSTAGRAM_ACCOUNT_ID)),
            webhook_entry(INSTAGRAM_ACCOUNT_ID, messaging_item("u2", INSTAGRAM_ACCOUNT_ID, "mid.2")),
        )
    ).encode()

    with patch("app.api.webhooks.process_meta_webhook.delay") as mock_delay:
        response = client.post("/webhooks/instagram", content=body, headers=_signed(body))

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "queued": 2}
    assert mock_delay.call_count == 2
    platform, entry = mock_delay.call_args_list[0].args
    assert platform == "instagram"
    assert entry["messaging"][0]["sender"]["id"] == "u1"


def test_page_object_on_instagram_endpoint_routes_by_envelope(client, webhook_settings):
    body = json.dumps(webhook_body("page", webhook_entry("100200300400500"))).encode()

    with patch("app.api.webhooks.process_meta_webhook.delay") as mock_delay:
        response = client.post("/webhooks/instagram", content=body, headers=_signed(body))

    assert response.status_code == 200
    assert mock_delay.call_args.args[0] == "facebook"


def test_webhook_bad_signature_rejected(client, webhook_settings):
    body = json.dumps(webhook_body("page")).encode()

    with patch("app.api.webhooks.process_meta_webhook.delay") as mock_delay:
        response = client.post(
            "/webhooks/facebook",
            content=body,
            headers={"X-Hub-Signature-256": "sha256=deadbeef"},
        )

    assert response.status_code == 401
    mock_delay.assert_not_called()


@pytest.mark.parametrize("body", [b"{not json", b'{"object": "page"}', b'{"object": "x", "entry": []}'])
def test_malformed_webhook_body(client, webhook_settings, body):
    with patch("app.api.webhooks.process_meta_webhook.delay") as mock_delay:
        response = client.post("/webhooks/facebook", content=body, headers=_signed(body))

    assert response.status_code == 422
    assert response.json()["code"] == "malformed_payload"
    mock_delay.assert_not_called()


# =============================================================================
# Outgoing messages
# =============================================================================


def test_create_reply_queues_delivery(client, db_session, conversation):
    with patch("app.api.messages.send_reply.delay") as mock_delay:
        response = client.post(
            f"/api/v1/conversations/{conversation.id}/messages",
            data={"content": "On it!"},
        )

    assert response.status_code == 201
    payload = response.json()
    assert payload["content"] == "On it!"
    assert payload["message_type"] == "outgoing"
    assert payload["status"] == "progress"
    mock_delay.assert_called_once_with(payload["id"])


def test_private_note_is_not_sent(client, db_session, conversation):
    with patch("app.api.messages.send_reply.delay") as mock_delay:
        response = client.post(
            f"/api/v1/conversations/{conversation.id}/messages",
            data={"content": "internal only", "private": "true"},
        )

    assert response.status_code == 201
    assert response.json()["private"] is True
    mock_delay.assert_not_called()


def test_empty_reply_rejected(client, db_session, conversation):
    with patch("app.api.messages.send_reply.delay") as mock_delay:
        response = client.post(f"/api/v1/conversations/{conversation.id}/messages", data={})

    assert response.status_code == 400
    assert db_session.query(Message).count() == 0
    mock_delay.assert_not_called()


def test_reply_to_unknown_conversation(client, db_session):
    response = client.post(
        f"/api/v1/conversations/{uuid.uuid4()}/messages", data={"content": "hi"}
    )

    assert response.status_code == 404


# =============================================================================
# OAuth
# =============================================================================


def test_authorize_returns_url_and_stores_state(client, fake_redis, instagram_inbox, monkeypatch):
    monkeypatch.setattr(
        "app.services.meta_oauth.settings",
        settings.model_copy(
            update={
                "instagram_app_id": "ig-app",
                "instagram_app_secret": "ig-secret",
                "instagram_oauth_redirect_uri": "https://inbox.example/oauth/instagram/callback",
            }
        ),
    )

    response = client.get(
        "/api/v1/oauth/instagram/authorize", params={"inbox_id": str(instagram_inbox.id)}
    )

    assert response.status_code == 200
    payload = response.json()
    assert "client_id=ig-app" in payload["authorization_url"]
    stored = json.loads(fake_redis.get(f"oauth_state:{payload['state']}"))
    assert stored == {"inbox_id": str(instagram_inbox.id), "kind": "instagram"}


def test_authorize_rejects_mismatched_kind(client, fake_redis, instagram_inbox):
    response = client.get(
        "/api/v1/oauth/facebook/authorize", params={"inbox_id": str(instagram_inbox.id)}
    )

    assert response.status_code == 400
    assert response.json()["code"] == "oauth_failed"


def test_callback_with_unknown_state(client, fake_redis):
    response = client.get("/oauth/instagram/callback", params={"code": "c", "state": "forged"})

    assert response.status_code == 400
    assert fake_redis.store == {}


def test_callback_denied_by_user(client, fake_redis):
    response = client.get(
        "/oauth/facebook/callback",
        params={"error": "access_denied", "error_description": "User denied"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "User denied"


# =============================================================================
# Attachments
# =============================================================================


def _attachment(db_session, conversation, **fields):
    message = Message(
        account_id=conversation.account_id,
        inbox_id=conversation.inbox_id,
        conversation_id=conversation.id,
        message_type=MessageType.outgoing,
        content=None,
    )
    db_session.add(message)
    db_session.flush()
    attachment = Attachment(
        message_id=message.id,
        account_id=message.account_id,
        file_type=AttachmentFileType.image,
        **fields,
    )
    db_session.add(attachment)
    db_session.commit()
    return attachment


def test_external_attachment_redirects(db_session, conversation):
    attachment = _attachment(db_session, conversation, external_url="https://cdn.example/a.jpg")

    response = attachments_api.download_attachment(str(attachment.id), db=db_session)

    assert response.status_code == 302
    assert response.headers["location"] == "https://cdn.example/a.jpg"


def test_stored_attachment_streams(db_session, conversation, monkeypatch):
    attachment = _attachment(
        db_session,
        conversation,
        file_path="attachments/a/b/c-photo.png",
        file_name="photo.png",
        content_type="image/png",
    )

    class _Storage:
        def stream(self, key):
            assert key == "attachments/a/b/c-photo.png"
            return StreamResult(iter([b"png"]), "image/png", 3)

    monkeypatch.setattr(attachments_api, "get_s3_storage", lambda: _Storage())

    response = attachments_api.download_attachment(str(attachment.id), db=db_session)

    assert response.media_type == "image/png"
    assert response.headers["content-length"] == "3"
    assert 'filename="photo.png"' in response.headers["content-disposition"]


def test_missing_stored_object_is_404(db_session, conversation, monkeypatch):
    attachment = _attachment(db_session, conversation, file_path="attachments/gone.png")

    class _Storage:
        def stream(self, key):
            raise ObjectNotFoundError(key)

    monkeypatch.setattr(attachments_api, "get_s3_storage", lambda: _Storage())

    with pytest.raises(HTTPException) as exc:
        attachments_api.download_attachment(str(attachment.id), db=db_session)

    assert exc.value.status_code == 404


# =============================================================================
# Service endpoints and error envelope
# =============================================================================


def test_health_and_request_id(client):
    response = client.get("/health", headers={"X-Request-ID": "req-1"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-1"


def test_metrics_endpoint(client):
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_error_envelope_for_domain_and_unhandled_errors():
    test_app = FastAPI()
    register_error_handlers(test_app)

    @test_app.get("/domain")
    def domain_error():
        raise ReauthorizationRequiredError("Channel 1 requires reauthorization")

    @test_app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    test_client = TestClient(test_app, raise_server_exceptions=False)

    domain = test_client.get("/domain", headers={"X-Request-ID": "abc"})
    assert domain.status_code == 409
    assert domain.json() == {
        "code": "reauthorization_required",
        "message": "Channel 1 requires reauthorization",
        "details": None,
        "request_id": "abc",
    }

    crash_response = test_client.get("/crash")
    assert crash_response.status_code == 500
    assert crash_response.json()["code"] == "internal_error"
