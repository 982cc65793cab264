"""Monitoring configuration for the application."""
from prometheus_client import Counter, Histogram, start_http_server

# Sync metrics
sync_operations = Counter(
    "flashdrill_sync_operations_total",
    "Total number of pull/push operations against the shared store",
    ["bucket", "outcome"],
)

remote_request_duration = Histogram(
    "flashdrill_remote_request_duration_seconds",
    "Duration of shared store requests in seconds",
    ["method"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0],
)

# Study metrics
rounds_graded = Counter(
    "flashdrill_rounds_graded_total",
    "Total number of graded flash rounds",
    ["policy"],
)

sessions_completed = Counter(
    "flashdrill_sessions_completed_total",
    "Total number of completed study sessions",
    ["account"],
)

# Error metrics
authorization_rejections = Counter(
    "flashdrill_authorization_rejections_total",
    "Total number of rejected writes to shared sets",
    ["action"],
)

local_store_errors = Counter(
    "flashdrill_local_store_errors_total",
    "Total number of swallowed local store failures",
    ["operation"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
