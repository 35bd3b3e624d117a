from app.tasks.delivery import send_reply
from app.tasks.oauth import check_token_health, refresh_expiring_tokens
from app.tasks.webhooks import process_meta_webhook

__all__ = [
    "send_reply",
    "check_token_health",
    "refresh_expiring_tokens",
    "process_meta_webhook",
]
