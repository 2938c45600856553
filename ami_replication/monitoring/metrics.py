"""
Prometheus metrics for replication observability.

Usage:
    from ami_replication.monitoring.metrics import track_step

    with track_step("CopySnapshot"):
        snapshot_id = await call_with_retry(...)

    # Or manually
    EXECUTIONS_TOTAL.labels(outcome="success").inc()
"""

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Route


# =============================================================================
# Metric Definitions
# =============================================================================

EXECUTIONS_TOTAL = Counter(
    "ami_replication_executions_total",
    "Executions that reached a terminal state",
    ["outcome"],
)

STEP_DURATION = Histogram(
    "ami_replication_step_duration_seconds",
    "Duration of state machine steps including retries",
    ["step"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

STEP_TOTAL = Counter(
    "ami_replication_step_total",
    "State machine steps by result",
    ["step", "status"],
)

STEP_RETRIES_TOTAL = Counter(
    "ami_replication_step_retries_total",
    "Retries scheduled by the retry policy",
    ["step", "kind"],
)

POLL_ITERATIONS = Histogram(
    "ami_replication_poll_iterations",
    "Snapshot progress checks per execution",
    buckets=[1, 2, 5, 10, 30, 60, 120, 360, 720],
)

DISPATCH_TOTAL = Counter(
    "ami_replication_dispatch_total",
    "Kickoff dispatch results",
    ["status"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "ami_replication_notification_failures_total",
    "Pipeline notifications dropped after retries",
    ["result"],
)


# =============================================================================
# Tracking Context Managers
# =============================================================================


@contextmanager
def track_step(step: str) -> Generator[None, None, None]:
    """
    Context manager to track step duration and status.

    Usage:
        with track_step("RegisterImage"):
            image_id = await call_with_retry(...)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        STEP_DURATION.labels(step=step).observe(duration)
        STEP_TOTAL.labels(step=step, status=status).inc()


def record_retry(step: str, kind: str) -> None:
    """Record a retry scheduled by the retry policy."""
    STEP_RETRIES_TOTAL.labels(step=step, kind=kind).inc()


def record_execution_outcome(success: bool, poll_count: int) -> None:
    """Record a terminal outcome and the number of checks it took."""
    EXECUTIONS_TOTAL.labels(outcome="success" if success else "failure").inc()
    POLL_ITERATIONS.observe(poll_count)


def record_dispatch(started: bool) -> None:
    """Record a kickoff dispatch result."""
    DISPATCH_TOTAL.labels(status="started" if started else "failed").inc()


def record_notification_failure(result: str) -> None:
    """Record a dropped pipeline notification ("success" or "failure")."""
    NOTIFICATION_FAILURES_TOTAL.labels(result=result).inc()


# =============================================================================
# Metrics Endpoint
# =============================================================================


async def metrics_endpoint(request) -> Response:
    """Prometheus metrics endpoint handler."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


def get_metrics_app() -> Starlette:
    """
    Get a Starlette app for serving metrics.

    Mount this at /metrics in your main app:
        from ami_replication.monitoring.metrics import get_metrics_app
        app.mount("/metrics", get_metrics_app())
    """
    return Starlette(
        routes=[
            Route("/", metrics_endpoint),
        ]
    )
