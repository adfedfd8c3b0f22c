"""
Prometheus metrics for the ingestion service.

Every metric name carries the ``social_insight_`` namespace:

- http_requests_total{method, path, status} and request_latency_seconds{method, path}
- webhook_requests_total{result}
- messages_ingested_total{direction}
- media_outcomes_total{result}, media_download_seconds and media_stored_bytes_total

Metrics live in the default in-process registry.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

NAMESPACE = "social_insight"

# Download buckets stretch to the default MEDIA_DOWNLOAD_TIMEOUT
DOWNLOAD_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route and status",
    labelnames=["method", "path", "status"],
    namespace=NAMESPACE,
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency",
    labelnames=["method", "path"],
    namespace=NAMESPACE,
)

# result: ok, invalid_json, unreadable_body, error, verified, verification_failed
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook calls by outcome",
    labelnames=["result"],
    namespace=NAMESPACE,
)

# direction: inbound, outbound
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Messages persisted from webhook payloads",
    labelnames=["direction"],
    namespace=NAMESPACE,
)

# result: stored, skipped, download_failed, decrypt_failed, write_failed
media_outcomes_total = Counter(
    "media_outcomes_total",
    "Attachment pipeline outcomes",
    labelnames=["result"],
    namespace=NAMESPACE,
)

media_download_seconds = Histogram(
    "media_download_seconds",
    "Time spent fetching encrypted media blobs",
    buckets=DOWNLOAD_BUCKETS,
    namespace=NAMESPACE,
)

media_stored_bytes_total = Counter(
    "media_stored_bytes_total",
    "Decrypted bytes written to the media root",
    namespace=NAMESPACE,
)


# =============================================================================
# Helper Functions
# =============================================================================

def route_label(path: str) -> str:
    """Collapse per-file and per-conversation paths into one label each."""
    path = path.split("?")[0]
    if path.startswith("/media/"):
        return "/media/{file_path}"
    if path.startswith("/conversations/"):
        return "/conversations/{conversation_id}/messages"
    return path


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    route = route_label(path)
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_message_ingested(is_from_me: bool) -> None:
    messages_ingested_total.labels(direction="outbound" if is_from_me else "inbound").inc()


def record_media_outcome(result: str, size: int = 0) -> None:
    """
    Count one attachment outcome.

    Args:
        result: stored, skipped, download_failed, decrypt_failed or write_failed
        size: bytes written, only meaningful for ``stored``
    """
    media_outcomes_total.labels(result=result).inc()
    if size:
        media_stored_bytes_total.inc(size)


def get_metrics() -> bytes:
    """Render the default registry in Prometheus text format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
