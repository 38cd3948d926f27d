"""Prometheus metrics for the Indexing Control Center."""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Test run metrics
test_runs_total = Counter(
    "indexing_test_runs_total",
    "Indexing test runs by terminal status",
    ["status", "run_mode"],
)
test_run_duration = Histogram(
    "indexing_test_run_duration_seconds",
    "Wall clock duration of indexing test runs",
    ["status"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200),
)
run_log_write_failures = Counter(
    "indexing_test_log_write_failures_total",
    "Ledger log rows that could not be written",
)

# Indexer metrics
indexer_attempts_total = Counter(
    "indexer_invocation_attempts_total",
    "Indexer Edge Function attempts by outcome",
    ["function", "outcome"],
)

# Unlock & index metrics
unlock_requests_total = Counter(
    "video_unlock_requests_total",
    "Unlock & index requests by outcome",
    ["outcome"],
)
demo_protection_applied = Counter(
    "demo_protection_applied_total",
    "Unlocks reverted to demo posture after indexing",
)
demo_protection_errors = Counter(
    "demo_protection_errors_total",
    "Compensating writes that failed during demo protection",
)


def record_test_run(status: str, run_mode: str, duration_seconds: float) -> None:
    """Record a test run reaching a terminal status."""
    test_runs_total.labels(status=status, run_mode=run_mode).inc()
    test_run_duration.labels(status=status).observe(max(0.0, duration_seconds))


def record_log_write_failure() -> None:
    run_log_write_failures.inc()


def record_indexer_attempt(function_name: str, outcome: str) -> None:
    indexer_attempts_total.labels(function=function_name, outcome=outcome).inc()


def record_unlock(outcome: str, applied_protection: bool, protection_errors: int) -> None:
    """Record an unlock & index call and its demo protection results."""
    unlock_requests_total.labels(outcome=outcome).inc()
    if applied_protection:
        demo_protection_applied.inc()
    if protection_errors:
        demo_protection_errors.inc(protection_errors)


def get_metrics_endpoint():
    """Get FastAPI endpoint for Prometheus metrics."""

    async def metrics_endpoint():
        """Return Prometheus metrics."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    return metrics_endpoint
