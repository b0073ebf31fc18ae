from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "bridge_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "bridge_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_INBOUND_EVENTS_TOTAL = Counter(
    "bridge_inbound_events_total",
    "Inbound chat-platform events by outcome.",
    labelnames=("platform", "outcome"),
)
_WEBHOOK_DELIVERY_ATTEMPTS_TOTAL = Counter(
    "bridge_webhook_delivery_attempts_total",
    "Outbound webhook delivery attempts by outcome.",
    labelnames=("outcome",),
)
_JOBS_TOTAL = Counter(
    "bridge_jobs_total",
    "Background jobs handled by the worker, by outcome.",
    labelnames=("job_type", "outcome"),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )


def observe_inbound_event(*, platform: str, outcome: str) -> None:
    _INBOUND_EVENTS_TOTAL.labels(platform=platform, outcome=outcome).inc()


def observe_webhook_delivery(*, success: bool) -> None:
    _WEBHOOK_DELIVERY_ATTEMPTS_TOTAL.labels(outcome="success" if success else "failure").inc()


def observe_job(*, job_type: str, outcome: str) -> None:
    _JOBS_TOTAL.labels(job_type=job_type, outcome=outcome).inc()
