"""
Prometheus metrics for the digest service.

This module provides:
- HTTP request counter and latency histogram
- Webhook ingestion outcome counter
- Command, schedule, report and generation counters for the tick loop

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from chatdigest.models import CommandType

KNOWN_COMMAND_TYPES = frozenset(kind.value for kind in CommandType)


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, duplicate, invalid_signature, validation_error, dropped
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

commands_total = Counter(
    "commands_total",
    "Queued commands reaching a terminal state",
    labelnames=["type", "status"]
)

schedule_runs_total = Counter(
    "schedule_runs_total",
    "Schedule firings by report outcome",
    labelnames=["outcome"]
)

reports_total = Counter(
    "reports_total",
    "Report generation attempts by outcome",
    labelnames=["outcome"]
)

generation_failures_total = Counter(
    "generation_failures_total",
    "Generation calls that failed for a single credential"
)

tick_errors_total = Counter(
    "tick_errors_total",
    "Unhandled errors caught at the tick loop boundary",
    labelnames=["stage"]
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


def record_command_outcome(command_type: str, status: str) -> None:
    # Unknown types collapse into one label value
    commands_total.labels(
        type=command_type if command_type in KNOWN_COMMAND_TYPES else "UNKNOWN",
        status=status
    ).inc()


def record_schedule_run(outcome: str) -> None:
    schedule_runs_total.labels(outcome=outcome).inc()


def record_report_outcome(outcome: str) -> None:
    reports_total.labels(outcome=outcome).inc()


def record_generation_failure() -> None:
    generation_failures_total.inc()


def record_tick_error(stage: str) -> None:
    tick_errors_total.labels(stage=stage).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
