"""Indexing test run orchestration.

Drives one test run end to end as an explicit state machine::

    received -> validated -> run_created -> invoking -> outputs_stored -> finalized
                                  |              |              |
                                  +--------------+--------------+----> failed

Failures before ``run_created`` surface directly with nothing persisted.
Failures after it are recorded on the run row before being re-raised.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import structlog

from ..contract import (
    DURATION_MS_PATHS,
    FAILURE_MESSAGE_PATHS,
    INDEXING_RUN_ID_PATHS,
    LANE_USED_PATHS,
    OCR_PATHS,
    PIPELINE_VERSION_PATHS,
    TEST_RUN_SOURCE,
    TRANSCRIPT_PATHS,
    TRANSCRIPT_SOURCE_PATHS,
)
from ..errors import ErrorCode, IndexingError, status_for_exception
from ..metrics import record_test_run
from ..models import (
    AdminUser,
    LogLevel,
    RunMetrics,
    RunMode,
    RunState,
    RunStatus,
    StartTestRunRequest,
    TestRunOutcome,
)
from ..normalize import (
    as_record,
    count_occurrences,
    default_occurrences_json,
    extract_youtube_video_id,
    is_uuid,
    normalize_integer,
    normalize_string,
    pick_first,
)
from .indexer_client import IndexerClient, InvocationResult
from .ledger import TestRunLedger

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[RunState, FrozenSet[RunState]] = {
    RunState.RECEIVED: frozenset({RunState.VALIDATED}),
    RunState.VALIDATED: frozenset({RunState.RUN_CREATED}),
    RunState.RUN_CREATED: frozenset({RunState.INVOKING, RunState.FAILED}),
    RunState.INVOKING: frozenset({RunState.OUTPUTS_STORED, RunState.FAILED}),
    RunState.OUTPUTS_STORED: frozenset({RunState.FINALIZED, RunState.FAILED}),
    RunState.FINALIZED: frozenset(),
    RunState.FAILED: frozenset(),
}


@dataclass
class RunContext:
    """Mutable state of one test run while it is being orchestrated."""

    caller: AdminUser
    request: StartTestRunRequest
    state: RunState = RunState.RECEIVED
    youtube_url: Optional[str] = None
    youtube_video_id: Optional[str] = None
    requested_by_user_id: Optional[str] = None
    test_run_id: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)

    def advance(self, target: RunState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal test run transition {self.state.value} -> {target.value}")
        self.state = target

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


def summarize_options(options: Dict[str, Any]) -> Dict[str, Any]:
    """Compact view of run options for the ledger."""
    allow_lanes = as_record(options.get("allowLanes")) or {}
    overrides = options.get("ocrRawSegmentsOverride")
    return {
        "explicitReindex": bool(options.get("explicitReindex")),
        "useCacheOnly": bool(options.get("useCacheOnly")),
        "enableOcr": bool(options.get("enableOcr")),
        "chunkMinutes": normalize_integer(options.get("chunkMinutes")),
        "chunkOverlapSeconds": normalize_integer(options.get("chunkOverlapSeconds")),
        "enabledLaneKeys": [lane for lane, enabled in allow_lanes.items() if enabled],
        "ocrRawSegmentsOverrideCount": len(overrides) if isinstance(overrides, list) else 0,
    }


def build_indexer_payloads(
    youtube_url: str,
    youtube_video_id: str,
    source_video_id: Optional[str],
    partner_channel_id: Optional[str],
    run_mode: RunMode,
    requested_by_user_id: Optional[str],
    options: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """Candidate indexer bodies, camelCase first then snake_case."""
    camel: Dict[str, Any] = {
        "youtubeUrl": youtube_url,
        "youtubeVideoId": youtube_video_id,
        "sourceVideoId": source_video_id,
        "options": options,
        "source": TEST_RUN_SOURCE,
        "bypassPayment": True,
        "runMode": run_mode.value,
    }
    snake: Dict[str, Any] = {
        "youtube_url": youtube_url,
        "youtube_video_id": youtube_video_id,
        "source_video_id": source_video_id,
        "options": options,
        "source": TEST_RUN_SOURCE,
        "bypass_payment": True,
        "run_mode": run_mode.value,
    }

    if partner_channel_id:
        camel["partnerChannelId"] = partner_channel_id
        snake["partner_channel_id"] = partner_channel_id

    if requested_by_user_id:
        camel["requestedByUserId"] = requested_by_user_id
        camel["userId"] = requested_by_user_id
        snake["requested_by_user_id"] = requested_by_user_id
        snake["user_id"] = requested_by_user_id

    return [camel, snake]


def build_idempotency_key(youtube_video_id: str, run_mode: RunMode, test_run_id: str) -> str:
    return f"indexing-test:{run_mode.value}:{youtube_video_id}:{test_run_id}"


def indexer_failure_message(result: InvocationResult) -> str:
    body = as_record(result.body)
    for path in FAILURE_MESSAGE_PATHS:
        message = normalize_string(pick_first(body, [path]))
        if message:
            return message
    return f"Indexer call failed with status {result.status}"


def extract_outputs(body: Any, youtube_url: str) -> Tuple[Any, Any]:
    """Transcript and OCR documents from an indexer response, never None."""
    transcript = pick_first(body, TRANSCRIPT_PATHS)
    ocr = pick_first(body, OCR_PATHS)
    if transcript is None:
        transcript = default_occurrences_json(youtube_url)
    if ocr is None:
        ocr = default_occurrences_json(youtube_url)
    return transcript, ocr


def extract_metrics(body: Any, transcript: Any, ocr: Any) -> RunMetrics:
    indexing_run_id = normalize_string(pick_first(body, INDEXING_RUN_ID_PATHS))
    return RunMetrics(
        transcript_count=count_occurrences(transcript),
        ocr_count=count_occurrences(ocr),
        transcript_source=normalize_string(pick_first(body, TRANSCRIPT_SOURCE_PATHS)),
        lane_used=normalize_string(pick_first(body, LANE_USED_PATHS)),
        duration_ms=normalize_integer(pick_first(body, DURATION_MS_PATHS)),
        indexing_run_id=indexing_run_id if is_uuid(indexing_run_id) else None,
        pipeline_version=normalize_string(pick_first(body, PIPELINE_VERSION_PATHS)),
    )


class TestRunOrchestrator:
    """Runs indexing test runs against the remote indexer and ledgers them.

    Collaborators are injected; nothing here reads process configuration.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        ledger: TestRunLedger,
        indexer: IndexerClient,
        indexer_function: str = "index_video",
        personal_indexer_function: str = "index_personal_video",
    ):
        self.ledger = ledger
        self.indexer = indexer
        self.indexer_function = indexer_function
        self.personal_indexer_function = personal_indexer_function

    def function_for(self, run_mode: RunMode) -> str:
        if run_mode == RunMode.PERSONAL:
            return self.personal_indexer_function
        return self.indexer_function

    async def start_test_run(self, caller: AdminUser, request: StartTestRunRequest) -> TestRunOutcome:
        """Run one indexing test end to end.

        Raises:
            IndexingError: carrying ``test_run_id`` once the run row exists
        """
        ctx = RunContext(caller=caller, request=request)
        self.validate(ctx)
        await self.create_run(ctx)

        try:
            result = await self.invoke(ctx)
            transcript, ocr = await self.store_outputs(ctx, result.body)
            metrics = await self.finalize(ctx, result.body, transcript, ocr)
        except IndexingError as e:
            await self.fail(ctx, e.code, e.message, e.status)
            e.test_run_id = ctx.test_run_id
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            status = status_for_exception(e)
            await self.fail(ctx, ErrorCode.UNEXPECTED_ERROR, message, status)
            raise IndexingError(
                status, ErrorCode.UNEXPECTED_ERROR, message, test_run_id=ctx.test_run_id
            ) from e

        await self.report_complete(ctx, metrics)
        return TestRunOutcome(test_run_id=ctx.test_run_id, status=RunStatus.COMPLETE, metrics=metrics)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def validate(self, ctx: RunContext) -> None:
        """received -> validated. Raises before anything is persisted."""
        request = ctx.request
        youtube_url = normalize_string(request.youtube_url)
        if not youtube_url:
            raise IndexingError(400, ErrorCode.YOUTUBE_URL_REQUIRED, "youtubeUrl is required")

        youtube_video_id = extract_youtube_video_id(youtube_url)
        if not youtube_video_id:
            raise IndexingError(400, ErrorCode.INVALID_YOUTUBE_URL, "Unable to extract youtubeVideoId")

        raw_requested_by = normalize_string(request.requested_by_user_id)
        if request.run_mode == RunMode.PERSONAL:
            if not raw_requested_by:
                raise IndexingError(
                    400,
                    ErrorCode.REQUESTED_BY_USER_ID_REQUIRED,
                    "requestedByUserId is required when runMode is personal",
                )
            if not is_uuid(raw_requested_by):
                raise IndexingError(
                    400,
                    ErrorCode.REQUESTED_BY_USER_ID_INVALID,
                    "requestedByUserId must be a valid UUID",
                )
            if raw_requested_by != ctx.caller.id:
                raise IndexingError(
                    403,
                    ErrorCode.REQUESTED_BY_USER_ID_MISMATCH,
                    "requestedByUserId must match the authenticated admin user for personal runs",
                )

        ctx.youtube_url = youtube_url
        ctx.youtube_video_id = youtube_video_id
        ctx.requested_by_user_id = raw_requested_by or ctx.caller.id
        ctx.advance(RunState.VALIDATED)

    async def create_run(self, ctx: RunContext) -> None:
        """validated -> run_created."""
        request = ctx.request
        ctx.test_run_id = await self.ledger.create_run(
            youtube_url=ctx.youtube_url,
            youtube_video_id=ctx.youtube_video_id,
            run_mode=request.run_mode,
            requested_by_user_id=ctx.requested_by_user_id,
            source_video_id=request.source_video_id,
        )
        ctx.advance(RunState.RUN_CREATED)
        logger.info(
            "Indexing test run created",
            test_run_id=ctx.test_run_id,
            youtube_video_id=ctx.youtube_video_id,
            run_mode=request.run_mode.value,
        )

        await self.ledger.append_log(
            ctx.test_run_id,
            LogLevel.INFO,
            "run started",
            {
                "youtubeUrl": ctx.youtube_url,
                "youtubeVideoId": ctx.youtube_video_id,
                "sourceVideoId": request.source_video_id,
                "partnerChannelId": request.partner_channel_id,
                "runMode": request.run_mode.value,
                "requestedByUserId": ctx.requested_by_user_id,
                "options": summarize_options(request.options),
            },
        )

    async def invoke(self, ctx: RunContext) -> InvocationResult:
        """run_created -> invoking. Returns the accepted indexer result."""
        if not self.indexer.is_configured:
            raise IndexingError(
                500,
                ErrorCode.MISSING_ENV,
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for indexer calls",
            )

        ctx.advance(RunState.INVOKING)
        request = ctx.request
        function_name = self.function_for(request.run_mode)
        await self.ledger.append_log(
            ctx.test_run_id,
            LogLevel.INFO,
            "calling indexer",
            {"functionName": function_name, "runMode": request.run_mode.value},
        )

        payloads = build_indexer_payloads(
            youtube_url=ctx.youtube_url,
            youtube_video_id=ctx.youtube_video_id,
            source_video_id=request.source_video_id,
            partner_channel_id=request.partner_channel_id,
            run_mode=request.run_mode,
            requested_by_user_id=(
                ctx.requested_by_user_id if request.run_mode == RunMode.PERSONAL else None
            ),
            options=request.options,
        )
        result = await self.indexer.invoke(
            function_name,
            payloads,
            idempotency_key=build_idempotency_key(
                ctx.youtube_video_id, request.run_mode, ctx.test_run_id
            ),
        )

        await self.ledger.append_log(
            ctx.test_run_id,
            LogLevel.INFO,
            "indexer response received",
            {
                "indexerStatus": result.status,
                "attempts": len(result.attempts),
                "successful": result.ok,
            },
        )

        if not result.ok:
            raise IndexingError(502, ErrorCode.INDEXER_CALL_FAILED, indexer_failure_message(result))
        return result

    async def store_outputs(self, ctx: RunContext, body: Any) -> Tuple[Any, Any]:
        """invoking -> outputs_stored."""
        transcript, ocr = extract_outputs(body, ctx.youtube_url)
        await self.ledger.store_outputs(ctx.test_run_id, transcript, ocr)
        ctx.advance(RunState.OUTPUTS_STORED)

        await self.ledger.append_log(
            ctx.test_run_id,
            LogLevel.INFO,
            "stored outputs",
            {
                "transcriptCount": count_occurrences(transcript),
                "ocrCount": count_occurrences(ocr),
            },
        )
        return transcript, ocr

    async def finalize(self, ctx: RunContext, body: Any, transcript: Any, ocr: Any) -> RunMetrics:
        """outputs_stored -> finalized."""
        metrics = extract_metrics(body, transcript, ocr)
        await self.ledger.finalize_success(ctx.test_run_id, metrics)
        ctx.advance(RunState.FINALIZED)
        return metrics

    async def report_complete(self, ctx: RunContext, metrics: RunMetrics) -> None:
        """Log and count a finalized run. The run row is already complete."""
        await self.ledger.append_log(
            ctx.test_run_id,
            LogLevel.INFO,
            "run complete",
            {"status": RunStatus.COMPLETE.value, "metrics": metrics.to_dict()},
        )
        record_test_run(RunStatus.COMPLETE.value, ctx.request.run_mode.value, ctx.elapsed_seconds)
        logger.info(
            "Indexing test run complete",
            test_run_id=ctx.test_run_id,
            transcript_count=metrics.transcript_count,
            ocr_count=metrics.ocr_count,
        )

    async def fail(self, ctx: RunContext, code: ErrorCode, message: str, status: int) -> None:
        """Any post-creation, non-terminal state -> failed.

        Finalized and already failed runs are left as they are.
        """
        if not TRANSITIONS[ctx.state]:
            return
        ctx.advance(RunState.FAILED)
        logger.error(
            "Indexing test run failed",
            test_run_id=ctx.test_run_id,
            code=ErrorCode(code).value,
            error=message,
        )

        await self.ledger.append_log(
            ctx.test_run_id,
            LogLevel.ERROR,
            "run failed",
            {"errorCode": ErrorCode(code).value, "errorMessage": message, "httpStatus": status},
        )
        await self.ledger.finalize_failure(ctx.test_run_id, code, message)
        record_test_run(RunStatus.FAILED.value, ctx.request.run_mode.value, ctx.elapsed_seconds)
