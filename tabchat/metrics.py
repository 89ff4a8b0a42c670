"""
Prometheus metrics for the chat core.

All series live under the ``tabchat_`` namespace:
- http_requests_total / request_latency_seconds, labelled by route template
- messages_sent_total by message_type
- topic_detection_total by outcome
- store_retries_total by collection
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

NAMESPACE = "tabchat"


# =============================================================================
# HTTP
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served",
    labelnames=["method", "path", "status"],
    namespace=NAMESPACE,
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"],
    namespace=NAMESPACE,
)


# =============================================================================
# Chat core
# =============================================================================

messages_sent_total = Counter(
    "messages_sent_total",
    "Messages accepted by the sequencer",
    labelnames=["message_type"],
    namespace=NAMESPACE,
)

# outcome: renamed, skipped_custom_name, skipped_no_fit,
# not_enough_messages, classifier_fallback
topic_detection_total = Counter(
    "topic_detection_total",
    "Topic detection outcomes",
    labelnames=["outcome"],
    namespace=NAMESPACE,
)

store_retries_total = Counter(
    "store_retries_total",
    "Transient store failures retried during document creation",
    labelnames=["collection"],
    namespace=NAMESPACE,
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count one served request and observe its latency.

    Args:
        method: HTTP method
        path: Route template, e.g. /tabs/{tab_id}/messages
        status: Response status code
        latency_seconds: Time spent in the app
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_message_sent(message_type: str) -> None:
    messages_sent_total.labels(message_type=message_type).inc()


def record_topic_outcome(outcome: str) -> None:
    """Record a topic detection outcome."""
    topic_detection_total.labels(outcome=outcome).inc()


def record_store_retry(collection: str) -> None:
    store_retries_total.labels(collection=collection).inc()


def render_metrics() -> tuple[bytes, str]:
    """Current registry in Prometheus text format, with its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
