from pydantic import BaseModel


class WebhookAck(BaseModel):
    status: str = "ok"
    queued: int = 0
