"""Unlock & index with demo protection.

Unlocking a production video triggers the real indexer. Unless the caller
asked to publish, the video and its channel are put back into their demo
posture afterwards, whether or not the trigger succeeded. Compensating writes
that fail are reported in the result instead of failing the call.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from ..contract import UNLOCK_SOURCE
from ..errors import ErrorCode, IndexingError
from ..metrics import record_unlock
from ..models import AdminUser, QuotaState, UnlockRequest, UnlockResult
from ..models.unlock import DEFAULT_FREE_INDEX_QUOTA
from ..normalize import as_record, normalize_integer, normalize_string
from .indexer_client import IndexerClient, InvocationResult
from .store import StoreClient

logger = structlog.get_logger(__name__)

VIDEOS_TABLE = "videos"
CHANNELS_TABLE = "external_channels"

VIDEO_COLUMNS = (
    "id, external_channel_id, external_video_id, source_url, title, indexing_status, "
    "visibility, listing_state, is_public"
)
CHANNEL_COLUMNS = "id, channel_lifecycle_status, free_index_quota, free_indexes_used"

OFFICIAL_LIFECYCLE = "official"
INVITED_LIFECYCLE = "invited"

INDEX_SKIPPED_MESSAGE = (
    "Video unlocked, but index trigger skipped "
    "(missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY)"
)
QUOTA_REACHED_MESSAGE = (
    "Free index quota reached for this channel. "
    "Use ignoreQuota=true or mark as official/purchased."
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def visibility_patch(make_public: bool) -> Dict[str, Any]:
    if make_public:
        return {"visibility": "public", "listing_state": "published", "is_public": True}
    return {"visibility": "private", "listing_state": "draft", "is_public": False}


def youtube_url_for(video: Dict[str, Any]) -> Optional[str]:
    """Watch URL for a video row, from ``source_url`` or ``external_video_id``."""
    source_url = normalize_string(video.get("source_url"))
    if source_url:
        return source_url
    external_video_id = normalize_string(video.get("external_video_id"))
    if external_video_id:
        return f"https://www.youtube.com/watch?v={external_video_id}"
    return None


def build_unlock_payloads(
    video_id: str,
    youtube_url: Optional[str],
    partner_channel_id: Optional[str],
) -> List[Dict[str, Any]]:
    payloads: List[Dict[str, Any]] = []
    if youtube_url:
        payloads.append(
            {
                "youtubeUrl": youtube_url,
                "partnerChannelId": partner_channel_id,
                "videoId": video_id,
                "bypassPayment": True,
                "source": UNLOCK_SOURCE,
            }
        )
    payloads.extend(
        [
            {"video_id": video_id, "bypass_payment": True, "source": UNLOCK_SOURCE},
            {"videoId": video_id, "bypassPayment": True, "source": UNLOCK_SOURCE},
            {"id": video_id, "bypassPayment": True, "source": UNLOCK_SOURCE},
        ]
    )
    return payloads


def index_was_triggered(result: InvocationResult) -> bool:
    """HTTP success without an explicit ``indexTriggered: false`` in the body."""
    if not result.ok:
        return False
    body = as_record(result.body)
    if body is not None and body.get("indexTriggered") is False:
        return False
    return True


def describe_index_trigger_failure(result: Any) -> Optional[str]:
    """Operator message for an unlock result whose index trigger failed.

    Returns None when the result does not say the trigger failed. Accepts
    the wire form of :class:`UnlockResult`.
    """
    record = as_record(result) or {}
    triggered = record.get("indexTriggered")
    if not isinstance(triggered, bool) or triggered:
        return None

    attempts = record.get("indexAttempts")
    last_status = None
    if isinstance(attempts, list) and attempts:
        last = as_record(attempts[-1]) or {}
        status = last.get("status")
        if isinstance(status, int) and not isinstance(status, bool):
            last_status = status

    response = as_record(record.get("indexResponse")) or {}
    message = normalize_string(response.get("error")) or normalize_string(response.get("message"))
    details = normalize_string(response.get("details"))
    if message and details:
        if details in message or message in details:
            combined = message if len(message) >= len(details) else details
        else:
            combined = f"{message}: {details}"
    else:
        combined = message or details

    if last_status is not None:
        suffix = f": {combined}" if combined else "."
        return f"Index trigger failed (last attempt HTTP {last_status}){suffix}"
    if combined:
        return f"Index trigger failed: {combined}"
    return "Index trigger failed."


class UnlockAndIndexService:
    """Unlocks a production video, triggers indexing and applies demo protection."""

    def __init__(self, store: StoreClient, indexer: IndexerClient, function_name: str = "index_video"):
        self.store = store
        self.indexer = indexer
        self.function_name = function_name

    async def _load_video(self, video_id: str) -> Dict[str, Any]:
        result = await self.store.select_one(VIDEOS_TABLE, columns=VIDEO_COLUMNS, filters={"id": video_id})
        if result.error or not result.data:
            raise IndexingError(
                404,
                ErrorCode.VIDEO_NOT_FOUND,
                "Video not found",
                details={"details": result.error_message or None},
            )
        return result.data

    async def _load_channel(self, channel_id: str) -> Dict[str, Any]:
        result = await self.store.select_one(
            CHANNELS_TABLE, columns=CHANNEL_COLUMNS, filters={"id": channel_id}
        )
        if result.error or not result.data:
            raise IndexingError(
                404,
                ErrorCode.CHANNEL_NOT_FOUND,
                "Channel not found for video",
                details={"details": result.error_message or None},
            )
        return result.data

    @staticmethod
    def quota_for(channel: Dict[str, Any]) -> QuotaState:
        quota = normalize_integer(channel.get("free_index_quota"))
        used = normalize_integer(channel.get("free_indexes_used"))
        return QuotaState(
            free_index_quota=DEFAULT_FREE_INDEX_QUOTA if quota is None else quota,
            free_indexes_used=0 if used is None else used,
        )

    async def unlock_and_index_video(self, caller: AdminUser, request: UnlockRequest) -> UnlockResult:
        """Unlock a video, trigger the indexer and restore the demo posture.

        The quota is only checked here. Consumption happens in the store when
        the video's indexing completes.

        Raises:
            IndexingError: for missing or unknown video/channel, an exhausted
                quota, or a failed unlock write. Nothing is written before the
                quota check passes.
        """
        video_id = request.video_id.strip()
        if not video_id:
            raise IndexingError(400, ErrorCode.VIDEO_ID_REQUIRED, "videoId is required")

        video = await self._load_video(video_id)
        channel_id = normalize_string(video.get("external_channel_id"))
        if not channel_id:
            raise IndexingError(
                400, ErrorCode.VIDEO_CHANNEL_MISSING, "Video is missing external_channel_id"
            )

        channel = await self._load_channel(channel_id)
        quota = self.quota_for(channel)
        channel_was_invited = channel.get("channel_lifecycle_status") != OFFICIAL_LIFECYCLE

        if not request.ignore_quota and quota.exhausted:
            record_unlock("quota_rejected", False, 0)
            raise IndexingError(
                409,
                ErrorCode.FREE_INDEX_QUOTA_REACHED,
                QUOTA_REACHED_MESSAGE,
                details={"quota": quota.to_dict()},
            )

        now = _utc_now()
        unlock_patch = {
            "admin_unlocked": True,
            "indexing_unlock_reason": request.reason,
            "indexing_unlocked_at": now,
            "unlocked_by_user_id": caller.id,
            "updated_at": now,
        }
        unlock_patch.update(visibility_patch(request.make_public))

        updated = await self.store.update(VIDEOS_TABLE, unlock_patch, {"id": video_id})
        if updated.error or not updated.data:
            raise IndexingError(
                500,
                ErrorCode.VIDEO_UPDATE_FAILED,
                "Failed to update video unlock state",
                details={"details": updated.error_message or None},
            )
        logger.info(
            "Video unlocked",
            video_id=video_id,
            make_public=request.make_public,
            reason=request.reason,
            unlocked_by=caller.id,
        )

        if not self.indexer.is_configured:
            logger.warning("Index trigger skipped, indexer not configured", video_id=video_id)
            record_unlock("index_skipped", False, 0)
            return UnlockResult(
                video=updated.data,
                channel=None,
                quota=quota,
                index_triggered=False,
                error=INDEX_SKIPPED_MESSAGE,
            )

        invocation = await self.indexer.invoke(
            self.function_name,
            build_unlock_payloads(video_id, youtube_url_for(video), channel_id),
            idempotency_key=f"unlock-index:{video_id}:{uuid.uuid4().hex}",
        )
        triggered = index_was_triggered(invocation)

        final_video = updated.data
        final_channel = None
        protection_errors: List[str] = []
        if not request.make_public:
            final_video, final_channel = await self._apply_demo_protection(
                video_id, channel_id, channel_was_invited, final_video, protection_errors
            )

        result = UnlockResult(
            video=final_video,
            channel=final_channel,
            quota=quota,
            index_triggered=triggered,
            index_response=invocation.body,
            index_attempts=[attempt.to_dict() for attempt in invocation.attempts],
            demo_protection_applied=not request.make_public,
            demo_protection_errors=protection_errors,
        )
        result.index_failure_message = describe_index_trigger_failure(result.to_dict())

        record_unlock(
            "indexed" if triggered else "index_failed",
            result.demo_protection_applied,
            len(protection_errors),
        )
        if protection_errors:
            logger.warning("Demo protection incomplete", video_id=video_id, errors=protection_errors)
        return result

    async def _apply_demo_protection(
        self,
        video_id: str,
        channel_id: str,
        channel_was_invited: bool,
        video: Dict[str, Any],
        errors: List[str],
    ):
        """Re-private the video and revert the channel to ``invited``.

        Failures are appended to ``errors``. Returns the latest video and
        channel rows.
        """
        patch = visibility_patch(False)
        patch["updated_at"] = _utc_now()
        relocked = await self.store.update(VIDEOS_TABLE, patch, {"id": video_id})
        if relocked.error or not relocked.data:
            errors.append(
                f"Failed to restore demo visibility: {relocked.error_message or 'unknown error'}"
            )
        else:
            video = relocked.data

        channel = None
        if channel_was_invited:
            reverted = await self.store.update(
                CHANNELS_TABLE,
                {
                    "channel_lifecycle_status": INVITED_LIFECYCLE,
                    "officialized_at": None,
                    "updated_at": _utc_now(),
                },
                {"id": channel_id},
            )
            if reverted.error or not reverted.data:
                errors.append(
                    f"Failed to restore invited lifecycle: {reverted.error_message or 'unknown error'}"
                )
            else:
                channel = reverted.data

        return video, channel
