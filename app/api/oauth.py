from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.logging import get_logger
from app.models.account import Inbox
from app.models.enums import ChannelKind
from app.services import meta_oauth
from app.services.common import coerce_uuid, get_or_404
from app.services.errors import OAuthFlowError
from app.services.oauth_state import get_and_delete_oauth_state, store_oauth_state

logger = get_logger(__name__)

router = APIRouter(tags=["oauth"])


def _kind_or_404(kind: str) -> ChannelKind:
    try:
        return ChannelKind(kind)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown channel kind {kind!r}") from exc


@router.get("/api/v1/oauth/{kind}/authorize")
def start_authorization(
    kind: str,
    inbox_id: str = Query(...),
    page_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    channel_kind = _kind_or_404(kind)
    inbox = get_or_404(db, Inbox, inbox_id)
    if inbox.channel.kind != channel_kind:
        raise OAuthFlowError(f"Inbox {inbox.id} is not backed by a {channel_kind.value} channel")

    state = meta_oauth.generate_oauth_state()
    try:
        url = meta_oauth.build_authorization_url(channel_kind, state)
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    data = {"inbox_id": str(inbox.id), "kind": channel_kind.value}
    if page_id:
        data["page_id"] = page_id
    store_oauth_state(state, data)
    logger.info("oauth_authorization_started kind=%s inbox_id=%s", channel_kind.value, inbox.id)
    return {"authorization_url": url, "state": state}


@router.get("/oauth/{kind}/callback")
def oauth_callback(
    kind: str,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    channel_kind = _kind_or_404(kind)
    if error:
        logger.warning(
            "oauth_authorization_denied kind=%s error=%s description=%s",
            channel_kind.value,
            error,
            error_description,
        )
        raise OAuthFlowError(error_description or error)
    if not code or not state:
        raise OAuthFlowError("Missing code or state")

    data = get_and_delete_oauth_state(state)
    if not data or data.get("kind") != channel_kind.value:
        raise OAuthFlowError("Invalid or expired OAuth state")
    inbox = db.get(Inbox, coerce_uuid(data.get("inbox_id")))
    if inbox is None:
        raise OAuthFlowError("Inbox for this authorization no longer exists")

    try:
        if channel_kind == ChannelKind.instagram:
            channel = meta_oauth.complete_instagram_authorization(db, inbox, code)
        else:
            channel = meta_oauth.complete_facebook_authorization(
                db, inbox, code, page_id=data.get("page_id")
            )
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "status": "authorized",
        "inbox_id": str(inbox.id),
        "channel_id": str(channel.id),
        "external_account_id": channel.external_account_id,
        "expires_at": channel.expires_at.isoformat() if channel.expires_at else None,
    }
