"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter and latency histogram for the command surface
- Relay counters for publish, forward and dead-letter outcomes
- Forward latency histogram per envelope kind
- Poll cycle counter for the consumer loop

All metrics live in the default prometheus-client registry and are served
from GET /metrics.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "relay_http_requests_total",
    "Command-surface HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "relay_http_request_latency_seconds",
    "Command-surface request latency",
    labelnames=["method", "path"]
)

# result: queued, upload_failed, enqueue_failed
envelopes_published_total = Counter(
    "relay_envelopes_published_total",
    "Envelopes handed to the queue producer",
    labelnames=["kind", "result"]
)

# result: delivered, failed
envelopes_forwarded_total = Counter(
    "relay_envelopes_forwarded_total",
    "Forward attempts to the logging backend",
    labelnames=["kind", "result"]
)

forward_latency_seconds = Histogram(
    "relay_forward_latency_seconds",
    "Time spent fetching blobs and posting to the logging backend",
    labelnames=["kind"],
    buckets=(.05, .1, .25, .5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 45.0)
)

dead_lettered_total = Counter(
    "relay_dead_lettered_total",
    "Malformed queue messages removed after repeated redelivery"
)

# result: empty, processed, error
poll_cycles_total = Counter(
    "relay_poll_cycles_total",
    "Consumer poll cycles",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def _path_label(path: str) -> str:
    """Collapse per-chat history paths into one label value."""
    path = path.split("?")[0]
    if path.startswith("/api/chats/") and path.endswith("/messages"):
        return "/api/chats/{jid}/messages"
    return path


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """Count one command-surface request and observe its latency."""
    label = _path_label(path)
    http_requests_total.labels(method=method, path=label, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=label).observe(latency_seconds)


def record_publish(kind: str, result: str) -> None:
    envelopes_published_total.labels(kind=kind, result=result).inc()


def record_forward(kind: str, delivered: bool, latency_seconds: float) -> None:
    envelopes_forwarded_total.labels(
        kind=kind,
        result="delivered" if delivered else "failed"
    ).inc()
    forward_latency_seconds.labels(kind=kind).observe(latency_seconds)


def record_dead_letter() -> None:
    dead_lettered_total.inc()


def record_poll_cycle(result: str) -> None:
    poll_cycles_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Text exposition of the default registry."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
