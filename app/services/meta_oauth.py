"""OAuth token lifecycle for Instagram and Facebook channels.

Handles the authorization-code callback for both platforms, persists the
resulting long-lived token on the channel, and hands out access tokens with
a lazy refresh: a token is refreshed on read when it is still valid, at
least a day old and expires within ten days. A failed refresh is logged and
the current (still valid) token is served.

Flows:
    Instagram: code -> short-lived token -> long-lived token (ig_exchange_token)
    Facebook:  code -> user token -> long-lived user token (fb_exchange_token)
               -> page token from /me/accounts
"""

import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.account import Inbox
from app.models.channel import Channel
from app.models.enums import ChannelKind
from app.services import channel_auth
from app.services.errors import MetaApiError, OAuthFlowError
from app.services.meta_api import MetaApiClient, graph_base_url, request_json

logger = get_logger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 5184000  # 60 days
REFRESH_MIN_AGE = timedelta(hours=24)
REFRESH_WINDOW = timedelta(days=10)

META_OAUTH_BASE_URL = "https://www.facebook.com"
INSTAGRAM_AUTHORIZE_URL = "https://www.instagram.com/oauth/authorize"

FACEBOOK_SCOPES = [
    "pages_show_list",
    "pages_messaging",
    "pages_manage_metadata",
    "pages_read_engagement",
    "business_management",
]

INSTAGRAM_SCOPES = [
    "instagram_business_basic",
    "instagram_business_manage_messages",
]


def generate_oauth_state() -> str:
    """Generate a secure random state for OAuth CSRF protection."""
    return secrets.token_urlsafe(32)


def _redirect_uri(kind: ChannelKind, redirect_uri: str | None) -> str:
    uri = redirect_uri or (
        settings.instagram_oauth_redirect_uri
        if kind == ChannelKind.instagram
        else settings.meta_oauth_redirect_uri
    )
    if not uri:
        raise OAuthFlowError(f"No OAuth redirect URI configured for {kind.value}")
    return uri


def build_authorization_url(
    kind: ChannelKind, state: str, redirect_uri: str | None = None
) -> str:
    """Build the URL the admin is redirected to in order to grant access."""
    if kind == ChannelKind.instagram:
        settings.validate_instagram_app_config()
        params = {
            "client_id": settings.instagram_app_id,
            "redirect_uri": _redirect_uri(kind, redirect_uri),
            "response_type": "code",
            "scope": ",".join(INSTAGRAM_SCOPES),
            "state": state,
        }
        return f"{INSTAGRAM_AUTHORIZE_URL}?{urlencode(params)}"

    settings.validate_meta_app_config()
    params = {
        "client_id": settings.meta_app_id,
        "redirect_uri": _redirect_uri(kind, redirect_uri),
        "state": state,
        "scope": ",".join(FACEBOOK_SCOPES),
        "response_type": "code",
    }
    return f"{META_OAUTH_BASE_URL}/{settings.meta_graph_api_version}/dialog/oauth?{urlencode(params)}"


def _with_expiry(data: dict) -> dict:
    try:
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
    except (TypeError, ValueError):
        expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
    data["expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return data


def _require_token(data: dict, step: str) -> str:
    token = data.get("access_token")
    if not token:
        raise OAuthFlowError(f"{step} returned no access token")
    return str(token)


# -- Instagram -------------------------------------------------------------


def exchange_instagram_code(code: str, redirect_uri: str) -> dict:
    """Exchange an authorization code for a short-lived Instagram token."""
    settings.validate_instagram_app_config()
    return request_json(
        "POST",
        f"{settings.instagram_oauth_base_url.rstrip('/')}/oauth/access_token",
        data={
            "client_id": settings.instagram_app_id,
            "client_secret": settings.instagram_app_secret,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code": code,
        },
        max_retries=0,
    )


def exchange_instagram_long_lived(short_lived_token: str) -> dict:
    settings.validate_instagram_app_config()
    data = request_json(
        "GET",
        f"{settings.instagram_graph_base_url.rstrip('/')}/access_token",
        params={
            "grant_type": "ig_exchange_token",
            "client_secret": settings.instagram_app_secret,
            "access_token": short_lived_token,
        },
    )
    return _with_expiry(data)


def refresh_instagram_token(long_lived_token: str) -> dict:
    data = request_json(
        "GET",
        f"{settings.instagram_graph_base_url.rstrip('/')}/refresh_access_token",
        params={"grant_type": "ig_refresh_token", "access_token": long_lived_token},
    )
    return _with_expiry(data)


def fetch_instagram_account(access_token: str) -> dict:
    return request_json(
        "GET",
        f"{graph_base_url(ChannelKind.instagram)}/me",
        params={"fields": "id,user_id,username,name", "access_token": access_token},
    )


# -- Facebook --------------------------------------------------------------


def exchange_facebook_code(code: str, redirect_uri: str) -> dict:
    settings.validate_meta_app_config()
    return request_json(
        "GET",
        f"{graph_base_url(ChannelKind.facebook)}/oauth/access_token",
        params={
            "client_id": settings.meta_app_id,
            "client_secret": settings.meta_app_secret,
            "redirect_uri": redirect_uri,
            "code": code,
        },
        max_retries=0,
    )


def exchange_facebook_long_lived(token: str) -> dict:
    """Exchange a Facebook token for a long-lived one (60 days)."""
    settings.validate_meta_app_config()
    data = request_json(
        "GET",
        f"{graph_base_url(ChannelKind.facebook)}/oauth/access_token",
        params={
            "grant_type": "fb_exchange_token",
            "client_id": settings.meta_app_id,
            "client_secret": settings.meta_app_secret,
            "fb_exchange_token": token,
        },
    )
    return _with_expiry(data)


def fetch_facebook_pages(user_token: str) -> list[dict]:
    data = request_json(
        "GET",
        f"{graph_base_url(ChannelKind.facebook)}/me/accounts",
        params={
            "fields": "id,name,access_token,instagram_business_account",
            "access_token": user_token,
        },
    )
    pages = data.get("data")
    return [page for page in pages if isinstance(page, dict)] if isinstance(pages, list) else []


# -- Persistence -----------------------------------------------------------


def _claim_external_id(db: Session, channel: Channel, external_account_id: str) -> None:
    """Upgrade a placeholder id to the real account id."""
    if channel.external_account_id == external_account_id:
        return
    owner = db.scalar(
        select(Channel)
        .where(Channel.kind == channel.kind)
        .where(Channel.external_account_id == external_account_id)
    )
    if owner is not None and owner.id != channel.id:
        raise OAuthFlowError(
            f"{channel.kind.value} account {external_account_id} is already connected to another inbox"
        )
    logger.info(
        "channel_external_id_updated channel_id=%s from=%s to=%s",
        channel.id,
        channel.external_account_id,
        external_account_id,
    )
    channel.external_account_id = external_account_id


def store_channel_token(
    db: Session,
    channel: Channel,
    access_token: str,
    expires_at: datetime | None,
    *,
    external_account_id: str | None = None,
    name: str | None = None,
    instagram_id: str | None = None,
    scopes: list[str] | None = None,
) -> Channel:
    """Persist freshly granted credentials and clear reauthorization state."""
    if external_account_id:
        _claim_external_id(db, channel, external_account_id)
    now = datetime.now(timezone.utc)
    channel.access_token = access_token
    channel.expires_at = expires_at
    channel.token_issued_at = now
    channel.last_refreshed_at = now
    if name:
        channel.name = name
    if instagram_id:
        channel.instagram_id = instagram_id
    if scopes is not None:
        channel.scopes = scopes
    channel_auth.mark_reauthorized(db, channel)
    db.commit()
    db.refresh(channel)
    return channel


def _subscribe_webhooks(channel: Channel) -> None:
    try:
        MetaApiClient(channel.kind, channel.access_token or "").subscribe_webhooks(
            channel.external_account_id
        )
    except MetaApiError as exc:
        # The channel stays connected; subscription can be retried from the dashboard.
        logger.warning(
            "meta_webhook_subscription_failed channel_id=%s error=%s", channel.id, exc
        )


def complete_instagram_authorization(
    db: Session, inbox: Inbox, code: str, redirect_uri: str | None = None
) -> Channel:
    channel = inbox.channel
    if channel.kind != ChannelKind.instagram:
        raise OAuthFlowError("Inbox is not backed by an Instagram channel")
    uri = _redirect_uri(ChannelKind.instagram, redirect_uri)
    short_lived = _require_token(exchange_instagram_code(code, uri), "Instagram code exchange")
    long_lived = exchange_instagram_long_lived(short_lived)
    access_token = _require_token(long_lived, "Instagram long-lived exchange")
    profile = fetch_instagram_account(access_token)
    account_id = str(profile.get("user_id") or profile.get("id") or "")
    if not account_id:
        raise OAuthFlowError("Instagram profile lookup returned no account id")

    store_channel_token(
        db,
        channel,
        access_token,
        long_lived["expires_at"],
        external_account_id=account_id,
        name=profile.get("username") or profile.get("name"),
        scopes=list(INSTAGRAM_SCOPES),
    )
    _subscribe_webhooks(channel)
    logger.info(
        "instagram_channel_authorized channel_id=%s account_id=%s", channel.id, account_id
    )
    return channel


def complete_facebook_authorization(
    db: Session,
    inbox: Inbox,
    code: str,
    page_id: str | None = None,
    redirect_uri: str | None = None,
) -> Channel:
    channel = inbox.channel
    if channel.kind != ChannelKind.facebook:
        raise OAuthFlowError("Inbox is not backed by a Facebook channel")
    uri = _redirect_uri(ChannelKind.facebook, redirect_uri)
    user_token = _require_token(exchange_facebook_code(code, uri), "Facebook code exchange")
    long_lived = exchange_facebook_long_lived(user_token)
    long_lived_user_token = _require_token(long_lived, "Facebook long-lived exchange")

    wanted_page = page_id or (None if channel.is_temporary else channel.external_account_id)
    pages = fetch_facebook_pages(long_lived_user_token)
    page = next(
        (item for item in pages if not wanted_page or str(item.get("id")) == wanted_page),
        None,
    )
    if page is None or not page.get("access_token"):
        raise OAuthFlowError("Facebook page not found among the pages granted")

    instagram_account = page.get("instagram_business_account")
    store_channel_token(
        db,
        channel,
        str(page["access_token"]),
        long_lived["expires_at"],
        external_account_id=str(page["id"]),
        name=page.get("name"),
        instagram_id=instagram_account.get("id") if isinstance(instagram_account, dict) else None,
        scopes=list(FACEBOOK_SCOPES),
    )
    _subscribe_webhooks(channel)
    logger.info("facebook_channel_authorized channel_id=%s page_id=%s", channel.id, page["id"])
    return channel


# -- Refresh ---------------------------------------------------------------


def refresh_channel_token(db: Session, channel: Channel) -> Channel:
    """Refresh the channel's long-lived token.

    Raises:
        MetaApiError: if the platform refuses the refresh
        OAuthFlowError: if the response carries no token
    """
    if not channel.access_token:
        raise OAuthFlowError("Channel has no access token to refresh")
    if channel.kind == ChannelKind.instagram:
        result = refresh_instagram_token(channel.access_token)
    else:
        result = exchange_facebook_long_lived(channel.access_token)

    now = datetime.now(timezone.utc)
    channel.access_token = _require_token(result, "Token refresh")
    channel.expires_at = result["expires_at"]
    channel.token_issued_at = now
    channel.last_refreshed_at = now
    channel.refresh_error = None
    db.commit()
    logger.info(
        "channel_token_refreshed channel_id=%s kind=%s expires_at=%s",
        channel.id,
        channel.kind.value,
        channel.expires_at,
    )
    return channel


def get_access_token(db: Session, channel: Channel) -> str | None:
    """Return a usable access token, refreshing it lazily when eligible.

    Returns None for placeholder channels, channels awaiting
    reauthorization and expired tokens.
    """
    if not channel.is_authorized:
        logger.info(
            "channel_not_authorized channel_id=%s temporary=%s reauthorization_required=%s",
            channel.id,
            channel.is_temporary,
            channel.reauthorization_required,
        )
        return None
    if channel.is_refresh_eligible(min_age=REFRESH_MIN_AGE, window=REFRESH_WINDOW):
        try:
            refresh_channel_token(db, channel)
        except MetaApiError as exc:
            logger.warning(
                "channel_token_refresh_failed channel_id=%s error=%s", channel.id, exc
            )
            if exc.is_token_invalid and channel_auth.authorization_error(db, channel):
                return None
        except (OAuthFlowError, ValueError) as exc:
            logger.warning(
                "channel_token_refresh_failed channel_id=%s error=%s", channel.id, exc
            )
    if channel.is_token_expired():
        logger.warning("channel_token_expired channel_id=%s", channel.id)
        return None
    return channel.access_token
