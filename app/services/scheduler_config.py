import os
from datetime import timedelta

from app.config import settings
from app.logging import get_logger

logger = get_logger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("scheduler_setting_invalid name=%s value=%s", name, raw)
        return default


def get_celery_config() -> dict:
    config: dict[str, object] = {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": _env_int("CELERY_WORKER_PREFETCH_MULTIPLIER", 4),
        "beat_max_loop_interval": _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5),
        "task_routes": {
            "app.tasks.webhooks.*": {"queue": _env_value("CELERY_WEBHOOK_QUEUE") or "webhooks"},
            "app.tasks.delivery.*": {"queue": _env_value("CELERY_DELIVERY_QUEUE") or "delivery"},
        },
    }
    if _env_bool("CELERY_TASK_ALWAYS_EAGER", False):
        config["task_always_eager"] = True
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}

    # OAuth token refresh - runs daily to proactively refresh expiring tokens
    if _env_bool("OAUTH_TOKEN_REFRESH_ENABLED", True):
        interval = max(_env_int("OAUTH_TOKEN_REFRESH_INTERVAL_SECONDS", 86400), 3600)
        schedule["oauth_token_refresh"] = {
            "task": "app.tasks.oauth.refresh_expiring_tokens",
            "schedule": timedelta(seconds=interval),
        }

    if _env_bool("OAUTH_TOKEN_HEALTH_ENABLED", True):
        interval = max(_env_int("OAUTH_TOKEN_HEALTH_INTERVAL_SECONDS", 3600), 300)
        schedule["oauth_token_health"] = {
            "task": "app.tasks.oauth.check_token_health",
            "schedule": timedelta(seconds=interval),
        }
    return schedule
