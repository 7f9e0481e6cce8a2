"""
Prometheus metrics for the despachante service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Outbound reply counter (result)
- Training decision counter (decision)
- Reply suggestion counter (strategy)
- Document ingestion counter (backend)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: stored, group, unparsed, document, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# result: sent, cooldown, gateway_error, disabled
replies_total = Counter(
    "replies_total",
    "Outbound gateway replies by result",
    labelnames=["result"]
)

training_decisions_total = Counter(
    "training_decisions_total",
    "Operator training decisions",
    labelnames=["decision"]
)

suggestions_total = Counter(
    "suggestions_total",
    "Reply suggestions by producing strategy",
    labelnames=["strategy"]
)

# backend: drive, local, falhou
documents_total = Counter(
    "documents_total",
    "Ingested documents by storage backend",
    labelnames=["backend"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_reply_outcome(result: str) -> None:
    replies_total.labels(result=result).inc()


def record_training_decision(decision: str) -> None:
    training_decisions_total.labels(decision=decision).inc()


def record_suggestion(strategy: str) -> None:
    suggestions_total.labels(strategy=strategy).inc()


def record_document(backend: str) -> None:
    documents_total.labels(backend=backend).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
