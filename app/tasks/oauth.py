"""OAuth token refresh Celery tasks.

Tokens are also refreshed lazily on read; the daily sweep catches channels
that see no traffic before their token runs out.
"""

import time
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select

from app.celery_app import celery_app
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job
from app.models.channel import TEMPORARY_ID_PREFIX, Channel
from app.services import channel_auth, meta_oauth
from app.services.errors import MetaApiError, OAuthFlowError

logger = get_logger(__name__)

EXPIRING_SOON_WINDOW = timedelta(days=10)


def _authorized_channels():
    return (
        select(Channel)
        .where(Channel.access_token.isnot(None))
        .where(Channel.reauthorization_required.is_(False))
        .where(~Channel.external_account_id.startswith(TEMPORARY_ID_PREFIX))
    )


@celery_app.task(name="app.tasks.oauth.refresh_expiring_tokens")
def refresh_expiring_tokens():
    """Refresh every channel whose token is eligible for a refresh.

    Returns:
        Dict with counts of refreshed and failed channels
    """
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    refreshed_count = 0
    error_count = 0

    try:
        threshold = datetime.now(UTC) + EXPIRING_SOON_WINDOW
        candidates = session.scalars(
            _authorized_channels()
            .where(Channel.expires_at.isnot(None))
            .where(Channel.expires_at <= threshold)
        ).all()
        eligible = [
            channel
            for channel in candidates
            if channel.is_refresh_eligible(
                min_age=meta_oauth.REFRESH_MIN_AGE, window=meta_oauth.REFRESH_WINDOW
            )
        ]
        logger.info(
            "oauth_token_refresh_started candidates=%d eligible=%d",
            len(candidates),
            len(eligible),
        )

        for channel in eligible:
            try:
                meta_oauth.refresh_channel_token(session, channel)
                refreshed_count += 1
            except (MetaApiError, OAuthFlowError) as exc:
                error_count += 1
                session.rollback()
                channel.refresh_error = str(exc)[:500]
                session.commit()
                logger.warning(
                    "oauth_token_refresh_failed channel_id=%s error=%s", channel.id, exc
                )
                if isinstance(exc, MetaApiError) and exc.is_token_invalid:
                    channel_auth.authorization_error(session, channel)

        logger.info(
            "oauth_token_refresh_completed refreshed=%d errors=%d",
            refreshed_count,
            error_count,
        )
        return {
            "refreshed": refreshed_count,
            "errors": error_count,
            "total_checked": len(candidates),
        }
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("oauth_token_refresh_task_failed")
        raise
    finally:
        session.close()
        observe_job("oauth_token_refresh", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.oauth.check_token_health")
def check_token_health():
    """Report token health across channels without changing anything.

    Returns:
        Dict with channel counts per health state
    """
    session = SessionLocal()
    try:
        now = datetime.now(UTC)

        def _count(query) -> int:
            return int(session.scalar(select(func.count()).select_from(query.subquery())) or 0)

        authorized = _authorized_channels()
        total = _count(authorized)
        expired = _count(
            authorized.where(Channel.expires_at.isnot(None)).where(Channel.expires_at <= now)
        )
        expiring_soon = _count(
            authorized.where(Channel.expires_at > now).where(
                Channel.expires_at <= now + EXPIRING_SOON_WINDOW
            )
        )
        reauthorization_required = _count(
            select(Channel).where(Channel.reauthorization_required.is_(True))
        )
        has_errors = _count(authorized.where(Channel.refresh_error.isnot(None)))

        result = {
            "total_authorized": total,
            "healthy": max(0, total - expired - expiring_soon),
            "expiring_soon": expiring_soon,
            "expired": expired,
            "reauthorization_required": reauthorization_required,
            "has_refresh_errors": has_errors,
        }
        logger.info(
            "oauth_token_health_check total=%d healthy=%d expiring_soon=%d expired=%d "
            "reauthorization_required=%d errors=%d",
            total,
            result["healthy"],
            expiring_soon,
            expired,
            reauthorization_required,
            has_errors,
        )
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
