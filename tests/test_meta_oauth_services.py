"""Tests for the OAuth token lifecycle and channel reauthorization state."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from app.config import settings
from app.models.channel import Channel
from app.models.enums import ChannelKind
from app.services import channel_auth, meta_oauth, oauth_state
from app.services.errors import MetaApiError, OAuthFlowError, ReauthorizationRequiredError
from app.services.events import EventType, get_dispatcher


@pytest.fixture()
def app_settings(monkeypatch):
    configured = settings.model_copy(
        update={
            "meta_app_id": "fb-app",
            "meta_app_secret": "fb-secret",
            "meta_oauth_redirect_uri": "https://inbox.example/oauth/facebook/callback",
            "instagram_app_id": "ig-app",
            "instagram_app_secret": "ig-secret",
            "instagram_oauth_redirect_uri": "https://inbox.example/oauth/instagram/callback",
        }
    )
    monkeypatch.setattr("app.services.meta_oauth.settings", configured)
    return configured


def _placeholder_channel(db_session, account, kind):
    from app.models.account import Inbox

    channel = Channel(kind=kind, external_account_id="temp_abc123")
    db_session.add(channel)
    db_session.flush()
    inbox = Inbox(account_id=account.id, channel_id=channel.id, name="New")
    db_session.add(inbox)
    db_session.commit()
    return inbox


# =============================================================================
# Authorization URL and state
# =============================================================================


def test_build_instagram_authorization_url(app_settings):
    url = meta_oauth.build_authorization_url(ChannelKind.instagram, "state-1")

    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert url.startswith("https://www.instagram.com/oauth/authorize?")
    assert params["client_id"] == ["ig-app"]
    assert params["state"] == ["state-1"]
    assert "instagram_business_manage_messages" in params["scope"][0]


def test_build_facebook_authorization_url(app_settings):
    url = meta_oauth.build_authorization_url(ChannelKind.facebook, "state-2")

    params = parse_qs(urlparse(url).query)
    assert "/dialog/oauth?" in url
    assert params["client_id"] == ["fb-app"]
    assert "pages_messaging" in params["scope"][0]


def test_build_authorization_url_requires_app_credentials(monkeypatch):
    monkeypatch.setattr(
        "app.services.meta_oauth.settings",
        settings.model_copy(update={"instagram_app_id": None, "instagram_app_secret": None}),
    )

    with pytest.raises(ValueError):
        meta_oauth.build_authorization_url(ChannelKind.instagram, "s")


def test_oauth_state_is_single_use(fake_redis):
    oauth_state.store_oauth_state("abc", {"inbox_id": "1", "kind": "instagram"})

    assert fake_redis.ttl("oauth_state:abc") == 600
    assert oauth_state.get_and_delete_oauth_state("abc") == {"inbox_id": "1", "kind": "instagram"}
    assert oauth_state.get_and_delete_oauth_state("abc") is None


def test_oauth_state_lookup_survives_redis_outage(fake_redis):
    fake_redis.fail = True

    assert oauth_state.get_and_delete_oauth_state("abc") is None


# =============================================================================
# Callbacks
# =============================================================================


def test_instagram_callback_upgrades_placeholder(db_session, fake_redis, account, app_settings):
    inbox = _placeholder_channel(db_session, account, ChannelKind.instagram)
    responses = [
        {"access_token": "short", "user_id": 1},
        {"access_token": "long", "expires_in": 5183944},
        {"id": "app-scoped", "user_id": "17841499999", "username": "acme"},
        {"success": True},
    ]
    with patch("app.services.meta_oauth.request_json", side_effect=responses[:3]) as request, patch(
        "app.services.meta_api.request_json", return_value=responses[3]
    ) as subscribe:
        channel = meta_oauth.complete_instagram_authorization(db_session, inbox, "code-1")

    assert request.call_args_list[0].args[:2] == (
        "POST",
        "https://api.instagram.com/oauth/access_token",
    )
    assert request.call_args_list[1].kwargs["params"]["grant_type"] == "ig_exchange_token"
    subscribe.assert_called_once()
    assert channel.external_account_id == "17841499999"
    assert channel.access_token == "long"
    assert channel.name == "acme"
    assert channel.is_authorized
    assert channel.reauthorization_required is False
    expires_at = channel.expires_at if channel.expires_at.tzinfo else channel.expires_at.replace(tzinfo=UTC)
    assert timedelta(days=59) < expires_at - datetime.now(UTC) <= timedelta(days=60)


def test_default_token_lifetime_applied_when_missing():
    data = meta_oauth._with_expiry({"access_token": "t"})

    remaining = data["expires_at"] - datetime.now(UTC)
    assert timedelta(seconds=5184000 - 5) < remaining <= timedelta(seconds=5184000)


def test_facebook_callback_selects_requested_page(db_session, fake_redis, account, app_settings):
    inbox = _placeholder_channel(db_session, account, ChannelKind.facebook)
    pages = {
        "data": [
            {"id": "111", "name": "Other", "access_token": "other-token"},
            {
                "id": "222",
                "name": "Acme",
                "access_token": "page-token",
                "instagram_business_account": {"id": "17841455555"},
            },
        ]
    }
    responses = [
        {"access_token": "user-token"},
        {"access_token": "long-user-token", "expires_in": 5184000},
        pages,
    ]
    with patch("app.services.meta_oauth.request_json", side_effect=responses) as request, patch(
        "app.services.meta_api.request_json", return_value={"success": True}
    ):
        channel = meta_oauth.complete_facebook_authorization(
            db_session, inbox, "code-2", page_id="222"
        )

    assert request.call_args_list[1].kwargs["params"]["grant_type"] == "fb_exchange_token"
    assert channel.external_account_id == "222"
    assert channel.access_token == "page-token"
    assert channel.instagram_id == "17841455555"
    assert channel.name == "Acme"


def test_facebook_callback_missing_page_fails(db_session, fake_redis, account, app_settings):
    inbox = _placeholder_channel(db_session, account, ChannelKind.facebook)
    responses = [{"access_token": "u"}, {"access_token": "l"}, {"data": []}]
    with patch("app.services.meta_oauth.request_json", side_effect=responses):
        with pytest.raises(OAuthFlowError):
            meta_oauth.complete_facebook_authorization(db_session, inbox, "c", page_id="999")

    assert inbox.channel.is_temporary


def test_callback_rejects_account_connected_elsewhere(
    db_session, fake_redis, account, instagram_inbox, app_settings
):
    inbox = _placeholder_channel(db_session, account, ChannelKind.instagram)
    taken = instagram_inbox.channel.external_account_id
    responses = [{"access_token": "s"}, {"access_token": "l"}, {"user_id": taken}]
    with patch("app.services.meta_oauth.request_json", side_effect=responses):
        with pytest.raises(OAuthFlowError):
            meta_oauth.complete_instagram_authorization(db_session, inbox, "c")


def test_successful_callback_clears_reauthorization(
    db_session, fake_redis, instagram_inbox, app_settings
):
    channel = instagram_inbox.channel
    channel_auth.authorization_error(db_session, channel)
    assert channel.reauthorization_required

    responses = [
        {"access_token": "s"},
        {"access_token": "fresh"},
        {"user_id": channel.external_account_id, "username": "acme_ig"},
    ]
    with patch("app.services.meta_oauth.request_json", side_effect=responses), patch(
        "app.services.meta_api.request_json", return_value={}
    ):
        meta_oauth.complete_instagram_authorization(db_session, instagram_inbox, "c")

    assert channel.reauthorization_required is False
    assert fake_redis.store == {}


# =============================================================================
# Lazy refresh
# =============================================================================


def test_get_access_token_returns_fresh_token_without_refresh(db_session, instagram_inbox):
    with patch("app.services.meta_oauth.request_json") as request:
        token = meta_oauth.get_access_token(db_session, instagram_inbox.channel)

    assert token == "ig-long-lived-token"
    request.assert_not_called()


def test_get_access_token_refreshes_eligible_instagram_token(db_session, instagram_inbox):
    channel = instagram_inbox.channel
    channel.token_issued_at = datetime.now(UTC) - timedelta(days=2)
    channel.expires_at = datetime.now(UTC) + timedelta(days=5)
    db_session.commit()

    with patch(
        "app.services.meta_oauth.request_json",
        return_value={"access_token": "refreshed", "expires_in": 5184000},
    ) as request:
        token = meta_oauth.get_access_token(db_session, channel)

    assert token == "refreshed"
    assert request.call_args.kwargs["params"]["grant_type"] == "ig_refresh_token"
    assert request.call_args.args[1].endswith("/refresh_access_token")


@pytest.mark.parametrize(
    "issued_ago,expires_in",
    [
        (timedelta(hours=2), timedelta(days=5)),  # too young
        (timedelta(days=2), timedelta(days=20)),  # not expiring soon
    ],
)
def test_get_access_token_skips_ineligible_refresh(
    db_session, instagram_inbox, issued_ago, expires_in
):
    channel = instagram_inbox.channel
    channel.token_issued_at = datetime.now(UTC) - issued_ago
    channel.expires_at = datetime.now(UTC) + expires_in
    db_session.commit()

    with patch("app.services.meta_oauth.request_json") as request:
        meta_oauth.get_access_token(db_session, channel)

    request.assert_not_called()


def test_failed_refresh_serves_current_token(db_session, fake_redis, facebook_inbox, app_settings):
    channel = facebook_inbox.channel
    channel.token_issued_at = datetime.now(UTC) - timedelta(days=2)
    channel.expires_at = datetime.now(UTC) + timedelta(days=3)
    db_session.commit()

    with patch(
        "app.services.meta_oauth.request_json",
        side_effect=MetaApiError("unavailable", http_status=500),
    ) as request:
        token = meta_oauth.get_access_token(db_session, channel)

    assert request.call_args.kwargs["params"]["grant_type"] == "fb_exchange_token"
    assert token == "fb-page-token"


def test_expired_and_unauthorized_channels_have_no_token(db_session, instagram_inbox):
    channel = instagram_inbox.channel
    channel.expires_at = datetime.now(UTC) - timedelta(minutes=1)
    assert meta_oauth.get_access_token(db_session, channel) is None

    channel.expires_at = datetime.now(UTC) + timedelta(days=30)
    channel.external_account_id = "temp_1"
    assert meta_oauth.get_access_token(db_session, channel) is None


# =============================================================================
# Reauthorization state
# =============================================================================


def test_authorization_error_flips_channel_at_threshold(db_session, fake_redis, instagram_inbox):
    channel = instagram_inbox.channel
    received = []
    get_dispatcher().register_handler(received.append)

    assert channel_auth.authorization_error(db_session, channel) is True

    assert channel.reauthorization_required is True
    assert channel_auth.is_reauthorization_required(channel)
    assert fake_redis.get(f"AUTHORIZATION_ERROR_COUNT:instagram_channel:{channel.id}") == "1"
    assert fake_redis.get(f"REAUTHORIZATION_REQUIRED:instagram_channel:{channel.id}") == "1"
    assert [event.event_type for event in received] == [
        EventType.channel_reauthorization_required
    ]
    with pytest.raises(ReauthorizationRequiredError):
        channel_auth.ensure_authorized(channel)


def test_authorization_error_below_threshold(db_session, fake_redis, instagram_inbox, monkeypatch):
    monkeypatch.setattr(
        "app.services.channel_auth.settings",
        settings.model_copy(update={"reauthorization_error_threshold": 3}),
    )
    channel = instagram_inbox.channel

    assert channel_auth.authorization_error(db_session, channel) is False
    assert channel_auth.authorization_error(db_session, channel) is False
    assert channel.reauthorization_required is False
    assert channel_auth.authorization_error(db_session, channel) is True


def test_authorization_error_still_flags_when_redis_down(db_session, fake_redis, instagram_inbox):
    fake_redis.fail = True

    assert channel_auth.authorization_error(db_session, instagram_inbox.channel) is True
    assert instagram_inbox.channel.reauthorization_required is True


def test_mark_reauthorized_clears_state(db_session, fake_redis, instagram_inbox):
    channel = instagram_inbox.channel
    channel_auth.authorization_error(db_session, channel)

    channel_auth.mark_reauthorized(db_session, channel)

    assert channel.reauthorization_required is False
    assert fake_redis.store == {}
    channel_auth.ensure_authorized(channel)
