"""
Prometheus metrics for the Quick Loans API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat message counter (role)
- Store error counter (operation)
- Realtime event counter (table, event)
- Loan status change counter (status)

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

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# role: customer, support
chat_messages_total = Counter(
    "chat_messages_total",
    "Total chat messages stored",
    labelnames=["role"]
)

store_errors_total = Counter(
    "store_errors_total",
    "Total failed store operations",
    labelnames=["operation"]
)

realtime_events_total = Counter(
    "realtime_events_total",
    "Total change notifications published",
    labelnames=["table", "event"]
)

loan_status_changes_total = Counter(
    "loan_status_changes_total",
    "Total loan application status changes",
    labelnames=["status"]
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


def record_chat_message(is_support: bool) -> None:
    chat_messages_total.labels(role="support" if is_support else "customer").inc()


def record_store_error(operation: str) -> None:
    store_errors_total.labels(operation=operation).inc()


def record_realtime_event(table: str, event: str) -> None:
    realtime_events_total.labels(table=table, event=event).inc()


def record_loan_status_change(status: str) -> None:
    loan_status_changes_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
