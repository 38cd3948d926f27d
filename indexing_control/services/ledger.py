"""Ledger for indexing test runs.

Persists run lifecycle state, append-only structured logs and output
artifacts to ``indexing_test_runs``, ``indexing_test_logs`` and
``indexing_test_outputs``.
"""

from typing import Any, Dict, List, Optional

import structlog

from ..contract import CONTRACT_VERSION
from ..errors import ErrorCode, IndexingError
from ..metrics import record_log_write_failure
from ..models import LogLevel, RunMetrics, RunMode, RunStatus
from .store import StoreClient

logger = structlog.get_logger(__name__)

RUNS_TABLE = "indexing_test_runs"
LOGS_TABLE = "indexing_test_logs"
OUTPUTS_TABLE = "indexing_test_outputs"

RUN_COLUMNS = (
    "id, created_at, updated_at, requested_by_user_id, youtube_url, youtube_video_id, "
    "source_video_id, run_mode, status, indexing_run_id, contract_version, pipeline_version, "
    "error_code, error_message, transcript_count, ocr_count, transcript_source, lane_used, "
    "duration_ms"
)
LOG_COLUMNS = "id, test_run_id, t, level, msg, data"
OUTPUT_COLUMNS = "test_run_id, created_at, transcript_json, ocr_json"

MAX_LIST_LIMIT = 200


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_LIST_LIMIT))


def require_id(value: Optional[str], field_name: str, code: ErrorCode = ErrorCode.RUN_NOT_FOUND) -> str:
    trimmed = value.strip() if isinstance(value, str) else ""
    if not trimmed:
        raise IndexingError(400, code, f"{field_name} is required")
    return trimmed


class RunLogSink:
    """Best-effort side channel for run logs.

    A failed write is counted and reported to the operator log, never raised.
    """

    def __init__(self, store: StoreClient):
        self.store = store
        self.failures = 0

    async def emit(
        self,
        test_run_id: str,
        level: LogLevel,
        msg: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        row: Dict[str, Any] = {
            "test_run_id": test_run_id,
            "level": LogLevel(level).value,
            "msg": msg,
        }
        if data:
            row["data"] = data

        try:
            result = await self.store.insert(LOGS_TABLE, row)
        except Exception as e:
            result = None
            error_message = str(e)
        else:
            error_message = result.error_message

        if result is None or result.error:
            self.failures += 1
            record_log_write_failure()
            logger.error(
                "Failed to append indexing_test_logs row",
                test_run_id=test_run_id,
                msg=msg,
                error=error_message,
            )
            return False
        return True


class TestRunLedger:
    """Lifecycle store for indexing test runs."""

    __test__ = False  # not a pytest test class

    def __init__(self, store: StoreClient, sink: Optional[RunLogSink] = None):
        self.store = store
        self.sink = sink or RunLogSink(store)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    async def create_run(
        self,
        youtube_url: str,
        youtube_video_id: str,
        run_mode: RunMode,
        requested_by_user_id: Optional[str],
        source_video_id: Optional[str] = None,
    ) -> str:
        """Insert a run row in ``processing`` and return its id.

        Raises:
            IndexingError: RUN_CREATE_FAILED when the store rejects the insert
        """
        result = await self.store.insert(
            RUNS_TABLE,
            {
                "requested_by_user_id": requested_by_user_id,
                "youtube_url": youtube_url,
                "youtube_video_id": youtube_video_id,
                "source_video_id": source_video_id,
                "run_mode": RunMode(run_mode).value,
                "contract_version": CONTRACT_VERSION,
                "status": RunStatus.PROCESSING.value,
            },
        )
        run_id = (result.data or {}).get("id") if result.ok else None
        if not run_id:
            raise IndexingError(
                500,
                ErrorCode.RUN_CREATE_FAILED,
                f"Failed to create indexing_test_runs row: {result.error_message or 'unknown'}",
            )
        return str(run_id)

    async def append_log(
        self,
        test_run_id: str,
        level: LogLevel,
        msg: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.sink.emit(test_run_id, level, msg, data)

    async def store_outputs(self, test_run_id: str, transcript_json: Any, ocr_json: Any) -> None:
        """Upsert the run's artifacts; a re-run of the same id replaces them.

        Raises:
            IndexingError: OUTPUTS_STORE_FAILED
        """
        result = await self.store.upsert(
            OUTPUTS_TABLE,
            {
                "test_run_id": test_run_id,
                "transcript_json": transcript_json,
                "ocr_json": ocr_json,
            },
            on_conflict="test_run_id",
        )
        if result.error:
            raise IndexingError(
                500,
                ErrorCode.OUTPUTS_STORE_FAILED,
                f"Failed to store outputs: {result.error_message}",
            )

    async def finalize_success(self, test_run_id: str, metrics: RunMetrics) -> None:
        """Mark the run complete with its metrics and clear error fields.

        Raises:
            IndexingError: RUN_UPDATE_FAILED
        """
        patch = metrics.to_row()
        patch.update(
            {
                "status": RunStatus.COMPLETE.value,
                "error_code": None,
                "error_message": None,
            }
        )
        result = await self.store.update(RUNS_TABLE, patch, {"id": test_run_id})
        if result.error:
            raise IndexingError(
                500,
                ErrorCode.RUN_UPDATE_FAILED,
                f"Failed to update indexing_test_runs row: {result.error_message}",
            )

    async def finalize_failure(self, test_run_id: str, code: ErrorCode, message: str) -> bool:
        """Mark the run failed. Never raises; returns False if the write failed."""
        try:
            result = await self.store.update(
                RUNS_TABLE,
                {
                    "status": RunStatus.FAILED.value,
                    "error_code": ErrorCode(code).value,
                    "error_message": message,
                },
                {"id": test_run_id},
            )
        except Exception as e:
            logger.error("Failed to mark indexing_test_runs row as failed", test_run_id=test_run_id, error=str(e))
            return False

        if result.error:
            logger.error(
                "Failed to mark indexing_test_runs row as failed",
                test_run_id=test_run_id,
                error=result.error_message,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def _read_failed(self, what: str, message: str) -> IndexingError:
        return IndexingError(500, ErrorCode.STORE_READ_FAILED, f"Failed to {what}: {message}")

    async def list_runs(self, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self.store.select(
            RUNS_TABLE,
            columns=RUN_COLUMNS,
            order_by="created_at",
            descending=True,
            limit=clamp_limit(limit),
        )
        if result.error:
            raise self._read_failed("list indexing test runs", result.error_message)
        return result.data or []

    async def get_run(self, test_run_id: str) -> Optional[Dict[str, Any]]:
        run_id = require_id(test_run_id, "run id")
        result = await self.store.select_one(RUNS_TABLE, columns=RUN_COLUMNS, filters={"id": run_id})
        if result.error:
            raise self._read_failed("load indexing test run", result.error_message)
        return result.data

    async def get_outputs(self, test_run_id: str) -> Optional[Dict[str, Any]]:
        run_id = require_id(test_run_id, "testRunId")
        result = await self.store.select_one(
            OUTPUTS_TABLE, columns=OUTPUT_COLUMNS, filters={"test_run_id": run_id}
        )
        if result.error:
            raise self._read_failed("load indexing test outputs", result.error_message)
        return result.data

    async def get_logs(self, test_run_id: str) -> List[Dict[str, Any]]:
        """Logs for a run, oldest first."""
        run_id = require_id(test_run_id, "testRunId")
        result = await self.store.select(
            LOGS_TABLE,
            columns=LOG_COLUMNS,
            filters={"test_run_id": run_id},
            order_by="t",
        )
        if result.error:
            raise self._read_failed("load indexing test logs", result.error_message)
        return result.data or []
