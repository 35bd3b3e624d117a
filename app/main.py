import uuid
from time import monotonic

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.attachments import router as attachments_router
from app.api.messages import router as messages_router
from app.api.oauth import router as oauth_router
from app.api.webhooks import router as webhooks_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import REQUEST_COUNT, REQUEST_LATENCY

app = FastAPI(title="social_inbox API")
configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def request_metrics_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    start = monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    labels = {"method": request.method, "path": path, "status": str(response.status_code)}
    REQUEST_COUNT.labels(**labels).inc()
    REQUEST_LATENCY.labels(**labels).observe(monotonic() - start)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


app.include_router(webhooks_router)
app.include_router(oauth_router)
app.include_router(messages_router, prefix="/api/v1")
app.include_router(attachments_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
