"""Prometheus metrics for the inference agent."""

from contextlib import contextmanager
import time

from prometheus_client import Counter, Histogram, start_http_server

# Public exports
__all__ = [
    "TASKS_COMPLETED",
    "TASKS_FAILED",
    "STAGE_LATENCY",
    "AUDIT_PUBLISH_FAILURES",
    "SUBSCRIBER_RECONNECTS",
    "start_metrics_server",
    "track_stage",
]

TASKS_COMPLETED = Counter(
    "inference_tasks_completed_total",
    "Total number of tasks that reached the reported stage",
)

TASKS_FAILED = Counter(
    "inference_tasks_failed_total",
    "Total number of tasks whose pipeline failed",
)

# Histogram tracking how long each pipeline stage takes.
STAGE_LATENCY = Histogram(
    "inference_stage_latency_seconds",
    "Time spent in each pipeline stage",
    ["stage"],
)

AUDIT_PUBLISH_FAILURES = Counter(
    "inference_audit_publish_failures_total",
    "Audit events that could not be published",
    ["event"],
)

SUBSCRIBER_RECONNECTS = Counter(
    "inference_subscriber_reconnects_total",
    "Failed subscription attempts on the task channel",
)


def start_metrics_server(port: int = 8000) -> None:
    """Start an HTTP server to expose Prometheus metrics."""
    start_http_server(port)


@contextmanager
def track_stage(stage: str):
    """Record the duration of the enclosed block under ``stage``."""
    start_time = time.monotonic()
    try:
        yield
    finally:
        STAGE_LATENCY.labels(stage).observe(time.monotonic() - start_time)
