import json

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from app.config import settings
from app.logging import get_logger
from app.metrics import record_webhook_event
from app.models.enums import ChannelKind
from app.schemas.webhook import WebhookAck
from app.services.errors import MalformedPayloadError
from app.services.webhook_normalizer import (
    split_envelope,
    verify_subscription,
    verify_webhook_signature,
)
from app.tasks.webhooks import process_meta_webhook

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _verify_token(kind: ChannelKind) -> str | None:
    if kind == ChannelKind.instagram:
        return settings.instagram_webhook_verify_token or settings.meta_webhook_verify_token
    return settings.meta_webhook_verify_token


def _app_secret(kind: ChannelKind) -> str | None:
    if kind == ChannelKind.instagram:
        return settings.instagram_app_secret or settings.meta_app_secret
    return settings.meta_app_secret


def _handshake(kind: ChannelKind, mode: str | None, token: str | None, challenge: str | None):
    answer = verify_subscription(mode, token, challenge, _verify_token(kind))
    if answer is None:
        logger.warning("meta_webhook_verification_failed kind=%s mode=%s", kind.value, mode)
        raise HTTPException(status_code=403, detail="Webhook verification failed")
    logger.info("meta_webhook_verified kind=%s", kind.value)
    return PlainTextResponse(answer)


async def _receive(kind: ChannelKind, request: Request) -> WebhookAck:
    body = await request.body()
    secret = _app_secret(kind)
    if secret and not verify_webhook_signature(
        body, request.headers.get("X-Hub-Signature-256"), secret
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body or b"null")
    except ValueError as exc:
        raise MalformedPayloadError("Webhook body is not valid JSON") from exc
    platform, entries = split_envelope(payload)

    for entry in entries:
        process_meta_webhook.delay(platform.value, entry)
        record_webhook_event(platform.value, "queued")
    logger.info(
        "meta_webhook_received endpoint=%s platform=%s entries=%d",
        kind.value,
        platform.value,
        len(entries),
    )
    return WebhookAck(queued=len(entries))


@router.get("/instagram", response_class=PlainTextResponse)
def verify_instagram_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    return _handshake(ChannelKind.instagram, mode, token, challenge)


@router.post("/instagram", response_model=WebhookAck)
async def receive_instagram_webhook(request: Request):
    return await _receive(ChannelKind.instagram, request)


@router.get("/facebook", response_class=PlainTextResponse)
def verify_facebook_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    return _handshake(ChannelKind.facebook, mode, token, challenge)


@router.post("/facebook", response_model=WebhookAck)
async def receive_facebook_webhook(request: Request):
    return await _receive(ChannelKind.facebook, request)
