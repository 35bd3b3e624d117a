from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

WEBHOOK_EVENTS = Counter(
    "inbox_webhook_events_total",
    "Inbound webhook messaging events by outcome",
    ["platform", "outcome"],
)
OUTBOUND_SENDS = Counter(
    "inbox_outbound_sends_total",
    "Outbound platform sends by outcome",
    ["platform", "outcome"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_webhook_event(platform: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(platform=platform, outcome=outcome).inc()


def record_outbound_send(platform: str, outcome: str) -> None:
    OUTBOUND_SENDS.labels(platform=platform, outcome=outcome).inc()
