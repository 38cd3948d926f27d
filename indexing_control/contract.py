"""Indexer response contract, expressed as ordered field-path lists.

The indexer's response shape is a union of known variants. Each list is
consulted in order by ``pick_first``; when the indexer changes shape, add the
new path here and bump ``CONTRACT_VERSION``.
"""

CONTRACT_VERSION = "v1"

TRANSCRIPT_PATHS = (
    "transcript",
    "transcript_json",
    "transcriptJson",
    "outputs.transcript",
    "outputs.transcript_json",
    "outputs.transcriptJson",
)

OCR_PATHS = (
    "ocr",
    "ocr_json",
    "ocrJson",
    "outputs.ocr",
    "outputs.ocr_json",
    "outputs.ocrJson",
)

TRANSCRIPT_SOURCE_PATHS = (
    "metrics.transcript_source",
    "metrics.transcriptSource",
    "transcript_source",
    "transcriptSource",
)

LANE_USED_PATHS = (
    "metrics.lane_used",
    "metrics.laneUsed",
    "lane_used",
    "laneUsed",
    "lane",
)

DURATION_MS_PATHS = (
    "metrics.duration_ms",
    "metrics.durationMs",
    "duration_ms",
    "durationMs",
)

PIPELINE_VERSION_PATHS = (
    "pipeline_version",
    "pipelineVersion",
    "metrics.pipeline_version",
    "metrics.pipelineVersion",
)

INDEXING_RUN_ID_PATHS = (
    "indexing_run_id",
    "indexingRunId",
    "run_id",
    "runId",
    "indexingRun.id",
)

# Fields read, in order, for a human-readable message from a failed response
FAILURE_MESSAGE_PATHS = ("error", "message", "details")

# Lane markers inside indexing_runs.meta
RUN_META_LANE_PATHS = ("lane", "winning_lane", "transcript.lane")

# Source tag attached to indexer requests
TEST_RUN_SOURCE = "admin_testing_center"
UNLOCK_SOURCE = "admin"
