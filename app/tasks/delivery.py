"""Celery task sending agent replies to the platform."""

import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job
from app.models.conversation import Message
from app.services.common import coerce_uuid
from app.services.delivery import deliver_message

logger = get_logger(__name__)


@celery_app.task(name="app.tasks.delivery.send_reply")
def send_reply(message_id: str):
    """Deliver one outgoing message.

    Redelivery of the task is harmless: a message that already carries a
    ``source_id`` is not sent again.
    """
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        message = session.get(Message, coerce_uuid(message_id))
        if message is None:
            logger.warning("send_reply_message_not_found message_id=%s", message_id)
            return None
        result = deliver_message(session, message)
        status = result.status
        return {"status": result.status, "source_id": result.source_id, "error": result.error}
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("send_reply_failed message_id=%s", message_id)
        raise
    finally:
        session.close()
        observe_job("send_reply", status, time.monotonic() - start)
