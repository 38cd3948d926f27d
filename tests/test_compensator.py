"""
Unit Tests for unlock & index with demo protection.

Tests the UnlockAndIndexService:
- Demo posture restored after the indexer officializes a channel
- Quota rejection before any write or indexer call
- makePublic skips compensation
- Compensation failures are collected, not raised
- Operator message for failed index triggers
"""

import json

import httpx
import pytest

from conftest import SUPABASE_URL, IndexerStub
from indexing_control.errors import ErrorCode, IndexingError
from indexing_control.models import UnlockRequest
from indexing_control.services import (
    InMemoryStore,
    SupabaseStore,
    UnlockAndIndexService,
    describe_index_trigger_failure,
)
from indexing_control.services.compensator import (
    CHANNELS_TABLE,
    INDEX_SKIPPED_MESSAGE,
    VIDEOS_TABLE,
    build_unlock_payloads,
    youtube_url_for,
)

VIDEO_ID = "vid-1"
CHANNEL_ID = "chan-1"


def seeded_store(lifecycle="invited", quota=5, used=0, **video_fields) -> InMemoryStore:
    video = {
        "id": VIDEO_ID,
        "external_channel_id": CHANNEL_ID,
        "external_video_id": "dQw4w9WgXcQ",
        "source_url": None,
        "title": "Demo",
        "visibility": "private",
        "listing_state": "draft",
        "is_public": False,
    }
    video.update(video_fields)
    return InMemoryStore(
        {
            VIDEOS_TABLE: [video],
            CHANNELS_TABLE: [
                {
                    "id": CHANNEL_ID,
                    "channel_lifecycle_status": lifecycle,
                    "free_index_quota": quota,
                    "free_indexes_used": used,
                    "officialized_at": None,
                }
            ],
        }
    )


def officializing_indexer(store: InMemoryStore, responses=None) -> IndexerStub:
    """Indexer that publishes the video and officializes its channel as a side effect."""

    def side_effect(request):
        store.patch_rows(
            CHANNELS_TABLE,
            {"channel_lifecycle_status": "official", "officialized_at": "2026-10-17T00:00:00+00:00"},
            {"id": CHANNEL_ID},
        )
        store.patch_rows(
            VIDEOS_TABLE,
            {"visibility": "public", "listing_state": "published", "is_public": True},
            {"id": VIDEO_ID},
        )

    return IndexerStub(responses or [(200, {"indexTriggered": True})], on_call=side_effect)


def make_service(store, stub) -> UnlockAndIndexService:
    return UnlockAndIndexService(store, stub.client())


# ============================================================================
# Demo protection
# ============================================================================

class TestDemoProtection:
    """Compensating writes after the index trigger"""

    @pytest.mark.asyncio
    async def test_channel_reverted_and_video_reprivated(self, admin):
        store = seeded_store()
        stub = officializing_indexer(store)

        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID)
        )

        assert result.index_triggered
        assert result.demo_protection_applied
        assert result.demo_protection_errors == []
        assert result.index_failure_message is None

        channel = store.rows(CHANNELS_TABLE)[0]
        assert channel["channel_lifecycle_status"] == "invited"
        assert channel["officialized_at"] is None

        video = store.rows(VIDEOS_TABLE)[0]
        assert video["visibility"] == "private"
        assert video["listing_state"] == "draft"
        assert video["is_public"] is False
        assert video["admin_unlocked"] is True
        assert video["unlocked_by_user_id"] == admin.id
        assert video["indexing_unlock_reason"] == "admin_demo"

        assert result.video["visibility"] == "private"
        assert result.channel["channel_lifecycle_status"] == "invited"

    @pytest.mark.asyncio
    async def test_compensation_runs_when_trigger_fails(self, admin):
        store = seeded_store()
        stub = officializing_indexer(store, [(500, {"error": "indexer down"})])

        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID)
        )

        assert not result.index_triggered
        assert len(result.index_attempts) == 4
        assert result.index_failure_message == "Index trigger failed (last attempt HTTP 500): indexer down"
        assert store.rows(CHANNELS_TABLE)[0]["channel_lifecycle_status"] == "invited"
        assert store.rows(VIDEOS_TABLE)[0]["is_public"] is False

    @pytest.mark.asyncio
    async def test_official_channel_is_left_alone(self, admin):
        store = seeded_store(lifecycle="official")
        stub = IndexerStub([(200, {})])

        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID)
        )

        assert result.channel is None
        assert store.rows(CHANNELS_TABLE)[0]["channel_lifecycle_status"] == "official"
        assert ("update", CHANNELS_TABLE) not in store.calls

    @pytest.mark.asyncio
    async def test_make_public_skips_compensation(self, admin):
        store = seeded_store()
        stub = officializing_indexer(store)

        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID, make_public=True, reason="admin_manual_publish")
        )

        assert not result.demo_protection_applied
        assert result.channel is None
        video = store.rows(VIDEOS_TABLE)[0]
        assert video["visibility"] == "public"
        assert video["listing_state"] == "published"
        assert store.rows(CHANNELS_TABLE)[0]["channel_lifecycle_status"] == "official"
        assert store.calls.count(("update", VIDEOS_TABLE)) == 1

    @pytest.mark.asyncio
    async def test_compensation_errors_are_collected(self, admin):
        store = seeded_store()

        def break_compensation(request):
            store.inject_error("update", VIDEOS_TABLE, "row locked")
            store.inject_error("update", CHANNELS_TABLE, "permission denied")

        stub = IndexerStub([(200, {})], on_call=break_compensation)
        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID)
        )

        assert result.index_triggered
        assert result.demo_protection_errors == [
            "Failed to restore demo visibility: row locked",
            "Failed to restore invited lifecycle: permission denied",
        ]
        assert result.channel is None
        assert result.video["admin_unlocked"] is True

    @pytest.mark.asyncio
    async def test_unreadable_relock_response_is_collected(self, admin):
        video = {"id": VIDEO_ID, "external_channel_id": CHANNEL_ID, "external_video_id": "dQw4w9WgXcQ"}
        channel = {"id": CHANNEL_ID, "channel_lifecycle_status": "invited"}
        video_patches = []

        def postgrest(request: httpx.Request) -> httpx.Response:
            table = request.url.path.rsplit("/", 1)[-1]
            if request.method == "GET":
                return httpx.Response(200, json=[video if table == VIDEOS_TABLE else channel])
            if table == VIDEOS_TABLE:
                video_patches.append(json.loads(request.content))
                if len(video_patches) == 1:
                    return httpx.Response(200, json=[{**video, "admin_unlocked": True}])
                return httpx.Response(200, text="<html>ok</html>")
            channel_patch = json.loads(request.content)
            return httpx.Response(200, json=[{**channel, **channel_patch}])

        store = SupabaseStore(SUPABASE_URL, "service-key", transport=httpx.MockTransport(postgrest))
        stub = IndexerStub([(200, {})])

        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID)
        )

        assert result.index_triggered
        assert len(video_patches) == 2
        assert len(result.demo_protection_errors) == 1
        assert result.demo_protection_errors[0].startswith("Failed to restore demo visibility: ")
        assert result.channel["channel_lifecycle_status"] == "invited"
        assert result.video["admin_unlocked"] is True


# ============================================================================
# Preconditions
# ============================================================================

class TestUnlockPreconditions:
    """Failures before the unlock write"""

    @pytest.mark.asyncio
    async def test_quota_reached(self, admin):
        store = seeded_store(quota=2, used=2)
        stub = IndexerStub([(200, {})])

        with pytest.raises(IndexingError) as exc_info:
            await make_service(store, stub).unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))

        error = exc_info.value
        assert error.code == ErrorCode.FREE_INDEX_QUOTA_REACHED
        assert error.status == 409
        assert error.to_dict()["quota"] == {"freeIndexQuota": 2, "freeIndexesUsed": 2}
        assert stub.calls == 0
        assert store.write_count == 0

    @pytest.mark.asyncio
    async def test_ignore_quota(self, admin):
        store = seeded_store(quota=2, used=5)
        stub = IndexerStub([(200, {})])

        result = await make_service(store, stub).unlock_and_index_video(
            admin, UnlockRequest(video_id=VIDEO_ID, ignore_quota=True)
        )
        assert result.index_triggered
        assert result.quota.free_indexes_used == 5
        assert result.to_dict()["quotaUpdated"] is False

    @pytest.mark.asyncio
    async def test_default_quota(self, admin):
        store = seeded_store(quota=None, used=None)
        stub = IndexerStub([(200, {})])
        result = await make_service(store, stub).unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))
        assert result.quota.to_dict() == {"freeIndexQuota": 5, "freeIndexesUsed": 0}

    @pytest.mark.asyncio
    async def test_blank_video_id(self, admin):
        stub = IndexerStub([(200, {})])
        with pytest.raises(IndexingError) as exc_info:
            await make_service(InMemoryStore(), stub).unlock_and_index_video(admin, UnlockRequest(video_id="  "))
        assert exc_info.value.code == ErrorCode.VIDEO_ID_REQUIRED

    @pytest.mark.asyncio
    async def test_unknown_video(self, admin):
        stub = IndexerStub([(200, {})])
        with pytest.raises(IndexingError) as exc_info:
            await make_service(seeded_store(), stub).unlock_and_index_video(admin, UnlockRequest(video_id="nope"))
        assert exc_info.value.code == ErrorCode.VIDEO_NOT_FOUND
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_video_without_channel(self, admin):
        store = seeded_store(external_channel_id=None)
        stub = IndexerStub([(200, {})])
        with pytest.raises(IndexingError) as exc_info:
            await make_service(store, stub).unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))
        assert exc_info.value.code == ErrorCode.VIDEO_CHANNEL_MISSING

    @pytest.mark.asyncio
    async def test_unknown_channel(self, admin):
        store = seeded_store(external_channel_id="chan-missing")
        stub = IndexerStub([(200, {})])
        with pytest.raises(IndexingError) as exc_info:
            await make_service(store, stub).unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))
        assert exc_info.value.code == ErrorCode.CHANNEL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unlock_write_failure(self, admin):
        store = seeded_store()
        store.inject_error("update", VIDEOS_TABLE, "timeout")
        stub = IndexerStub([(200, {})])
        with pytest.raises(IndexingError) as exc_info:
            await make_service(store, stub).unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))
        assert exc_info.value.code == ErrorCode.VIDEO_UPDATE_FAILED
        assert stub.calls == 0

    @pytest.mark.asyncio
    async def test_unconfigured_indexer_leaves_video_unlocked(self, admin, unconfigured_indexer):
        store = seeded_store()
        service = UnlockAndIndexService(store, unconfigured_indexer)

        result = await service.unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))

        assert not result.index_triggered
        assert result.to_dict()["error"] == INDEX_SKIPPED_MESSAGE
        assert store.rows(VIDEOS_TABLE)[0]["admin_unlocked"] is True


# ============================================================================
# Payloads
# ============================================================================

class TestUnlockPayloads:
    """Indexer request bodies for unlock"""

    @pytest.mark.asyncio
    async def test_payload_order_and_headers(self, admin):
        store = seeded_store()
        stub = IndexerStub([(500, {})])
        await make_service(store, stub).unlock_and_index_video(admin, UnlockRequest(video_id=VIDEO_ID))

        payloads = stub.payloads()
        assert payloads[0]["youtubeUrl"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
        assert payloads[0]["partnerChannelId"] == CHANNEL_ID
        assert payloads[1] == {"video_id": VIDEO_ID, "bypass_payment": True, "source": "admin"}
        assert stub.requests[0].url.path == "/functions/v1/index_video"

        keys = {request.headers["Idempotency-Key"] for request in stub.requests}
        assert len(keys) == 1
        assert keys.pop().startswith(f"unlock-index:{VIDEO_ID}:")

    def test_without_youtube_url(self):
        payloads = build_unlock_payloads(VIDEO_ID, None, CHANNEL_ID)
        assert len(payloads) == 3
        assert "youtubeUrl" not in payloads[0]

    def test_youtube_url_for(self):
        assert youtube_url_for({"source_url": " https://youtu.be/x "}) == "https://youtu.be/x"
        assert youtube_url_for({"external_video_id": "abc"}) == "https://www.youtube.com/watch?v=abc"
        assert youtube_url_for({}) is None

    def test_request_from_payload(self):
        request = UnlockRequest.from_payload({"makePublic": 1, "reason": "  "}, video_id=" v9 ")
        assert request.video_id == "v9"
        assert request.make_public is True
        assert request.ignore_quota is False
        assert request.reason == "admin_demo"


# ============================================================================
# describe_index_trigger_failure
# ============================================================================

class TestDescribeIndexTriggerFailure:
    """Operator-facing trigger failure messages"""

    def test_not_a_failure(self):
        assert describe_index_trigger_failure({"indexTriggered": True}) is None
        assert describe_index_trigger_failure({}) is None
        assert describe_index_trigger_failure(None) is None

    def test_status_and_combined_message(self):
        message = describe_index_trigger_failure(
            {
                "indexTriggered": False,
                "indexAttempts": [{"status": 400}, {"status": 503}],
                "indexResponse": {"error": "upstream", "details": "timed out"},
            }
        )
        assert message == "Index trigger failed (last attempt HTTP 503): upstream: timed out"

    def test_overlapping_message_and_details(self):
        message = describe_index_trigger_failure(
            {
                "indexTriggered": False,
                "indexResponse": {"message": "quota", "details": "quota exceeded for key"},
            }
        )
        assert message == "Index trigger failed: quota exceeded for key"

    def test_status_only(self):
        message = describe_index_trigger_failure(
            {"indexTriggered": False, "indexAttempts": [{"status": 502}], "indexResponse": "Bad Gateway"}
        )
        assert message == "Index trigger failed (last attempt HTTP 502)."

    def test_nothing_known(self):
        assert describe_index_trigger_failure({"indexTriggered": False}) == "Index trigger failed."
