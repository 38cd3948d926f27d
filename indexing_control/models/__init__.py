"""Data models for the Indexing Control Center."""

from .admin import AdminUser
from .test_run import (
    LogLevel,
    RunMetrics,
    RunMode,
    RunState,
    RunStatus,
    StartTestRunRequest,
    TestRunOutcome,
)
from .unlock import QuotaState, UnlockRequest, UnlockResult

__all__ = [
    "AdminUser",
    "LogLevel",
    "QuotaState",
    "RunMetrics",
    "RunMode",
    "RunState",
    "RunStatus",
    "StartTestRunRequest",
    "TestRunOutcome",
    "UnlockRequest",
    "UnlockResult",
]
