"""Indexing operations dashboard aggregation.

Builds a snapshot of indexing throughput, lane usage and failures from the
``videos`` and ``indexing_runs`` tables. Each section is loaded
independently; a failed query marks that section's error and leaves the
others intact.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from ..contract import RUN_META_LANE_PATHS
from ..normalize import as_record, normalize_string, pick_first
from .store import StoreClient

logger = structlog.get_logger(__name__)

RECENT_RUNS_LIMIT = 25
TRANSCRIPT_RUNS_LIMIT = 5000
FAILED_RUNS_LIMIT = 1000
FAILURE_BREAKDOWN_SIZE = 10
RUN_COLUMNS = "id, video_id, phase, status, error_message, duration_ms, cost_cents, meta, created_at"

KNOWN_FAILURE_CODES = ("NO_CAPTIONS", "PROXY_TIMEOUT", "WHISPER_FAILED")
EXPLICIT_CODE_PATTERN = re.compile(r"\b[A-Z][A-Z0-9_]{2,}\b", re.ASCII)
NON_ALNUM_PATTERN = re.compile(r"[^A-Z0-9]+", re.ASCII)
NO_LANE_DATA_MESSAGE = "Lane data is not present in indexing_runs.meta"


def normalize_error_code(error_message: Optional[str]) -> str:
    """Bucket a free-text failure message into a short code."""
    if not error_message:
        return "UNKNOWN"

    upper = error_message.upper()
    for code in KNOWN_FAILURE_CODES:
        if code in upper or code.replace("_", " ") in upper:
            return code

    explicit = EXPLICIT_CODE_PATTERN.search(upper)
    if explicit:
        return explicit.group(0)

    compact = NON_ALNUM_PATTERN.sub("_", upper).strip("_")[:48]
    return compact or "UNKNOWN"


def extract_lane(meta: Any) -> Optional[str]:
    """Transcript lane recorded in an ``indexing_runs.meta`` document."""
    record = as_record(meta)
    if record is None:
        return None
    return normalize_string(pick_first(record, RUN_META_LANE_PATHS))


@dataclass
class OpsSnapshot:
    total_indexed_videos: Optional[int] = None
    total_indexed_videos_error: Optional[str] = None
    reindexed_videos: Optional[int] = None
    reindexed_videos_error: Optional[str] = None
    failure_breakdown: List[Dict[str, Any]] = field(default_factory=list)
    failure_breakdown_error: Optional[str] = None
    lane_distribution: List[Dict[str, Any]] = field(default_factory=list)
    lane_distribution_error: Optional[str] = None
    recent_runs: List[Dict[str, Any]] = field(default_factory=list)
    recent_runs_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalIndexedVideos": self.total_indexed_videos,
            "totalIndexedVideosError": self.total_indexed_videos_error,
            "reindexedVideos": self.reindexed_videos,
            "reindexedVideosError": self.reindexed_videos_error,
            "failureBreakdown": self.failure_breakdown,
            "failureBreakdownError": self.failure_breakdown_error,
            "laneDistribution": self.lane_distribution,
            "laneDistributionError": self.lane_distribution_error,
            "recentRuns": self.recent_runs,
            "recentRunsError": self.recent_runs_error,
        }


class IndexingOpsDashboard:
    """Read-only aggregation over indexing runs."""

    def __init__(self, store: StoreClient):
        self.store = store

    async def snapshot(self) -> OpsSnapshot:
        snapshot = OpsSnapshot()
        await self._load_indexed_total(snapshot)
        await self._load_recent_runs(snapshot)
        await self._load_lane_stats(snapshot)
        await self._load_failure_breakdown(snapshot)
        return snapshot

    async def _load_indexed_total(self, snapshot: OpsSnapshot) -> None:
        result = await self.store.select(
            "videos", filters={"indexing_status": "complete"}, count=True, head=True
        )
        if result.error:
            snapshot.total_indexed_videos_error = result.error_message
        else:
            snapshot.total_indexed_videos = result.count or 0

    async def _load_recent_runs(self, snapshot: OpsSnapshot) -> None:
        result = await self.store.select(
            "indexing_runs",
            columns=RUN_COLUMNS,
            order_by="created_at",
            descending=True,
            limit=RECENT_RUNS_LIMIT,
        )
        if result.error:
            snapshot.recent_runs_error = result.error_message
        else:
            snapshot.recent_runs = result.data or []

    async def _load_lane_stats(self, snapshot: OpsSnapshot) -> None:
        result = await self.store.select(
            "indexing_runs",
            columns="video_id, meta",
            filters={"phase": "transcript_acquisition", "status": "complete"},
            order_by="created_at",
            descending=True,
            limit=TRANSCRIPT_RUNS_LIMIT,
        )
        if result.error:
            snapshot.reindexed_videos_error = result.error_message
            snapshot.lane_distribution_error = result.error_message
            return

        runs_per_video: Counter = Counter()
        latest_lane: Dict[str, str] = {}
        # Runs arrive newest first, so the first lane seen per video is its latest
        for run in result.data or []:
            video_id = run.get("video_id")
            runs_per_video[video_id] += 1
            if video_id not in latest_lane:
                lane = extract_lane(run.get("meta"))
                if lane:
                    latest_lane[video_id] = lane

        snapshot.reindexed_videos = sum(1 for count in runs_per_video.values() if count > 1)

        lane_counts = Counter(latest_lane.values())
        if not lane_counts:
            snapshot.lane_distribution_error = NO_LANE_DATA_MESSAGE
            return
        snapshot.lane_distribution = [
            {"lane": lane, "count": count}
            for lane, count in sorted(lane_counts.items(), key=lambda item: -item[1])
        ]

    async def _load_failure_breakdown(self, snapshot: OpsSnapshot) -> None:
        result = await self.store.select(
            "indexing_runs",
            columns="error_message",
            filters={"status": "failed"},
            order_by="created_at",
            descending=True,
            limit=FAILED_RUNS_LIMIT,
        )
        if result.error:
            snapshot.failure_breakdown_error = result.error_message
            return

        codes = Counter(normalize_error_code(row.get("error_message")) for row in result.data or [])
        ranked = sorted(codes.items(), key=lambda item: -item[1])[:FAILURE_BREAKDOWN_SIZE]
        snapshot.failure_breakdown = [{"code": code, "count": count} for code, count in ranked]
