"""Graph API client for Instagram and Facebook Messenger channels.

Every call has a bounded timeout; 429 and 5xx responses are retried once
honouring ``Retry-After``. Error envelopes are raised as ``MetaApiError`` so
callers can classify them (token invalid, consent required, ...).
"""

import time

import httpx

from app.config import settings
from app.logging import get_logger
from app.models.enums import ChannelKind
from app.services.errors import MetaApiError

logger = get_logger(__name__)

INSTAGRAM_PROFILE_FIELDS = (
    "name,username,profile_pic,follower_count,"
    "is_user_follow_business,is_business_follow_user,is_verified_user"
)
FACEBOOK_PROFILE_FIELDS = "first_name,last_name,profile_pic"

INSTAGRAM_WEBHOOK_FIELDS = ("messages", "message_reactions", "messaging_seen")
FACEBOOK_WEBHOOK_FIELDS = (
    "messages",
    "messaging_postbacks",
    "message_deliveries",
    "message_reads",
    "message_echoes",
)


def graph_base_url(kind: ChannelKind) -> str:
    if kind == ChannelKind.instagram:
        return f"{settings.instagram_graph_base_url.rstrip('/')}/{settings.instagram_api_version}"
    return settings.meta_graph_base_url.rstrip("/")


def _retry_delay(response: httpx.Response) -> float:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return min(max(0.0, float(retry_after)), 30.0)
        except ValueError:
            return 1.0
    return 1.0


def _decode(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if response.status_code >= 400 or (isinstance(data, dict) and "error" in data):
        raise MetaApiError.from_response_body(data, http_status=response.status_code)
    return data if isinstance(data, dict) else {"data": data}


def request_json(
    method: str,
    url: str,
    *,
    params: dict | None = None,
    json: dict | None = None,
    data: dict | None = None,
    timeout: float | None = None,
    max_retries: int = 1,
) -> dict:
    """Perform one Graph API call and return the decoded JSON body.

    Raises:
        MetaApiError: on an error envelope, non-2xx status or transport failure
    """
    retries = 0
    while True:
        try:
            with httpx.Client(timeout=timeout or settings.meta_api_timeout_seconds) as client:
                response = client.request(method, url, params=params, json=json, data=data)
        except httpx.HTTPError as exc:
            raise MetaApiError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            if retries < max_retries:
                time.sleep(_retry_delay(response))
                retries += 1
                continue
        return _decode(response)


class MetaApiClient:
    """Calls made on behalf of one connected channel."""

    def __init__(self, kind: ChannelKind, access_token: str) -> None:
        self.kind = kind
        self.access_token = access_token
        self.base_url = graph_base_url(kind)

    def fetch_profile(self, user_id: str, timeout: float | None = None) -> dict:
        fields = (
            INSTAGRAM_PROFILE_FIELDS if self.kind == ChannelKind.instagram else FACEBOOK_PROFILE_FIELDS
        )
        return request_json(
            "GET",
            f"{self.base_url}/{user_id}",
            params={"fields": fields, "access_token": self.access_token},
            timeout=timeout or settings.profile_lookup_timeout_seconds,
            max_retries=0,
        )

    def send_message(self, account_id: str, payload: dict) -> dict:
        data = request_json(
            "POST",
            f"{self.base_url}/{account_id}/messages",
            params={"access_token": self.access_token},
            json=payload,
            max_retries=0,
        )
        logger.info(
            "meta_message_sent platform=%s account_id=%s message_id=%s",
            self.kind.value,
            account_id,
            data.get("message_id"),
        )
        return data

    def subscribe_webhooks(self, account_id: str) -> dict:
        fields = (
            INSTAGRAM_WEBHOOK_FIELDS if self.kind == ChannelKind.instagram else FACEBOOK_WEBHOOK_FIELDS
        )
        return request_json(
            "POST",
            f"{self.base_url}/{account_id}/subscribed_apps",
            params={"subscribed_fields": ",".join(fields), "access_token": self.access_token},
        )
