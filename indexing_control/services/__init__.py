"""Service layer for the Indexing Control Center."""

from .store import InMemoryStore, StoreClient, StoreError, StoreResult, SupabaseStore
from .indexer_client import IndexerClient, InvocationAttempt, InvocationResult
from .ledger import RunLogSink, TestRunLedger
from .orchestrator import RunContext, TestRunOrchestrator
from .compensator import UnlockAndIndexService, describe_index_trigger_failure
from .fixtures import FixtureCatalog
from .ops_dashboard import IndexingOpsDashboard, OpsSnapshot
from .admin_auth import AdminVerifier

__all__ = [
    "StoreClient",
    "StoreError",
    "StoreResult",
    "InMemoryStore",
    "SupabaseStore",
    "IndexerClient",
    "InvocationAttempt",
    "InvocationResult",
    "RunLogSink",
    "TestRunLedger",
    "RunContext",
    "TestRunOrchestrator",
    "UnlockAndIndexService",
    "describe_index_trigger_failure",
    "FixtureCatalog",
    "IndexingOpsDashboard",
    "OpsSnapshot",
    "AdminVerifier",
]
