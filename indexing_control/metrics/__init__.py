"""Prometheus metrics for the Indexing Control Center."""

from .prometheus import (
    get_metrics_endpoint,
    record_indexer_attempt,
    record_log_write_failure,
    record_test_run,
    record_unlock,
)

__all__ = [
    "get_metrics_endpoint",
    "record_indexer_attempt",
    "record_log_write_failure",
    "record_test_run",
    "record_unlock",
]
