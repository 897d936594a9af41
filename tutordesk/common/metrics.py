"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
range_loads_total = Counter(
    "range_loads_total",
    "Lesson range loads by outcome (cache_hit, fetched, failed)",
    ["service", "outcome"],
)
stale_range_responses_total = Counter(
    "stale_range_responses_total",
    "Range fetch responses discarded because a newer request was issued",
    ["service"],
)
range_fetch_seconds = Histogram(
    "range_fetch_seconds",
    "Latency of lesson range fetches against the lesson store",
    ["service"],
)
ledger_events_total = Counter(
    "ledger_events_total",
    "Payment events appended to the ledger",
    ["service", "type"],
)
lessons_auto_completed_total = Counter(
    "lessons_auto_completed_total",
    "Lessons completed by the auto-confirm sweep",
    ["service"],
)
notifications_total = Counter(
    "notifications_total",
    "Notification dispatch outcomes",
    ["service", "type", "status"],
)
duplicate_notifications_skipped_total = Counter(
    "duplicate_notifications_skipped_total",
    "Dispatch attempts skipped because the dedupe key already existed",
    ["service", "type"],
)
recipients_deactivated_total = Counter(
    "recipients_deactivated_total",
    "Student chat identities deactivated after a permanent delivery failure",
    ["service"],
)
gateway_send_seconds = Histogram(
    "gateway_send_seconds",
    "Messaging gateway send latency seconds",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
