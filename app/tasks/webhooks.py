"""Celery tasks for inbound Meta webhooks.

The HTTP endpoint only validates and enqueues; everything that talks to the
database, Redis or the Graph API happens here.
"""

import time

import redis

from app.celery_app import celery_app
from app.config import settings
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job, record_webhook_event
from app.models.enums import ChannelKind
from app.services import ingestion
from app.services.errors import LockNotAcquiredError

logger = get_logger(__name__)


def lock_retry_countdown(retries: int) -> int:
    """1, 2, 4 ... seconds between attempts."""
    return 2 ** min(retries, 6)


@celery_app.task(name="app.tasks.webhooks.process_meta_webhook", bind=True, max_retries=None)
def process_meta_webhook(self, platform: str, entry: dict):
    """Process one webhook entry.

    Retried when another worker holds the contact lock or Redis is down.
    Any other failure is logged and dropped so a poisoned event cannot
    loop forever.
    """
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        results = ingestion.process_entry(session, ChannelKind(platform), entry)
        return [result.outcome for result in results]
    except (LockNotAcquiredError, redis.RedisError) as exc:
        status = "retry"
        retries = self.request.retries
        if retries >= settings.contact_lock_max_retries:
            status = "error"
            record_webhook_event(platform, "failed")
            logger.error(
                "meta_webhook_retries_exhausted platform=%s entry_id=%s error=%s",
                platform,
                entry.get("id"),
                exc,
            )
            return None
        logger.info(
            "meta_webhook_retry platform=%s entry_id=%s attempt=%d error=%s",
            platform,
            entry.get("id"),
            retries + 1,
            exc,
        )
        raise self.retry(exc=exc, countdown=lock_retry_countdown(retries))
    except Exception:
        status = "error"
        record_webhook_event(platform, "failed")
        logger.exception(
            "meta_webhook_processing_failed platform=%s entry_id=%s", platform, entry.get("id")
        )
        return None
    finally:
        session.close()
        observe_job("meta_webhook", status, time.monotonic() - start)
