from celery import Celery
from celery.signals import worker_process_init

from app.logging import configure_logging
from app.services.scheduler_config import build_beat_schedule, get_celery_config

celery_app = Celery("social_inbox")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])


@worker_process_init.connect
def _configure_worker_logging(**_kwargs) -> None:
    configure_logging()
