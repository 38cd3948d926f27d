"""Regression fixtures promoted from completed test runs."""

from typing import Any, Dict, List, Optional, Union

import structlog

from ..contract import CONTRACT_VERSION
from ..errors import ErrorCode, IndexingError
from ..models import RunMode, StartTestRunRequest
from ..normalize import normalize_string
from .ledger import TestRunLedger, clamp_limit, require_id
from .store import StoreClient

logger = structlog.get_logger(__name__)

FIXTURES_TABLE = "indexing_test_fixtures"
FIXTURE_COLUMNS = (
    "id, created_at, name, youtube_video_id, youtube_url, expected_transcript_json, "
    "expected_ocr_json, contract_version, pipeline_version, notes, tags"
)

# Options used when re-running a fixture against the live indexer
REGRESSION_OPTIONS: Dict[str, Any] = {
    "explicitReindex": True,
    "enableOcr": True,
    "useCacheOnly": False,
    "allowLanes": {"lane1": True, "lane2": True, "lane3": True, "lane4": True},
    "chunkMinutes": 7,
    "chunkOverlapSeconds": 15,
}


def parse_tags(tags: Union[None, str, List[Any]]) -> List[str]:
    """Tags from a list or a comma separated string.

    Blank and repeated tags are dropped; first occurrence order is kept.
    """
    if isinstance(tags, str):
        tags = tags.split(",")
    if not isinstance(tags, list):
        return []
    cleaned = [tag.strip() for tag in tags if isinstance(tag, str) and tag.strip()]
    return list(dict.fromkeys(cleaned))


class FixtureCatalog:
    """Reads and creates rows in ``indexing_test_fixtures``.

    Fixtures are never updated once created.
    """

    def __init__(self, store: StoreClient, ledger: TestRunLedger):
        self.store = store
        self.ledger = ledger

    async def list_fixtures(self, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self.store.select(
            FIXTURES_TABLE,
            columns=FIXTURE_COLUMNS,
            order_by="created_at",
            descending=True,
            limit=clamp_limit(limit),
        )
        if result.error:
            raise IndexingError(
                500,
                ErrorCode.STORE_READ_FAILED,
                f"Failed to list indexing fixtures: {result.error_message}",
            )
        return result.data or []

    async def get_fixture(self, fixture_id: str) -> Optional[Dict[str, Any]]:
        result = await self.store.select_one(
            FIXTURES_TABLE,
            columns=FIXTURE_COLUMNS,
            filters={"id": require_id(fixture_id, "fixture id", ErrorCode.FIXTURE_NOT_FOUND)},
        )
        if result.error:
            raise IndexingError(
                500, ErrorCode.STORE_READ_FAILED, f"Failed to load fixture: {result.error_message}"
            )
        return result.data

    async def create_fixture_from_run(
        self,
        test_run_id: str,
        name: Optional[str],
        notes: Optional[str] = None,
        tags: Union[None, str, List[Any]] = None,
    ) -> Dict[str, Any]:
        """Snapshot a run's outputs as the expected outputs of a new fixture.

        Raises:
            IndexingError: FIXTURE_NAME_REQUIRED, RUN_NOT_FOUND,
                OUTPUTS_NOT_FOUND or FIXTURE_CREATE_FAILED
        """
        fixture_name = normalize_string(name)
        if not fixture_name:
            raise IndexingError(400, ErrorCode.FIXTURE_NAME_REQUIRED, "Fixture name is required.")

        run = await self.ledger.get_run(test_run_id)
        if not run:
            raise IndexingError(404, ErrorCode.RUN_NOT_FOUND, "Run not found")

        outputs = await self.ledger.get_outputs(test_run_id)
        if not outputs:
            raise IndexingError(404, ErrorCode.OUTPUTS_NOT_FOUND, "Run outputs not found")

        result = await self.store.insert(
            FIXTURES_TABLE,
            {
                "name": fixture_name,
                "youtube_video_id": run.get("youtube_video_id"),
                "youtube_url": run.get("youtube_url"),
                "expected_transcript_json": outputs.get("transcript_json"),
                "expected_ocr_json": outputs.get("ocr_json"),
                "contract_version": run.get("contract_version") or CONTRACT_VERSION,
                "pipeline_version": run.get("pipeline_version"),
                "notes": normalize_string(notes),
                "tags": parse_tags(tags),
            },
        )
        if result.error or not result.data:
            raise IndexingError(
                500,
                ErrorCode.FIXTURE_CREATE_FAILED,
                f"Failed to create fixture: {result.error_message or 'unknown error'}",
            )

        logger.info("Fixture created", fixture_id=result.data.get("id"), test_run_id=test_run_id)
        return result.data

    @staticmethod
    def regression_request(fixture: Dict[str, Any]) -> StartTestRunRequest:
        """Test run request that re-indexes a fixture's video from scratch."""
        return StartTestRunRequest(
            youtube_url=fixture.get("youtube_url"),
            run_mode=RunMode.ADMIN_TEST,
            options={
                key: dict(value) if isinstance(value, dict) else value
                for key, value in REGRESSION_OPTIONS.items()
            },
        )
