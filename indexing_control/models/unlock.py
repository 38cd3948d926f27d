"""Unlock & index data models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..normalize import as_record, normalize_string

DEFAULT_UNLOCK_REASON = "admin_demo"
DEFAULT_FREE_INDEX_QUOTA = 5


@dataclass
class UnlockRequest:
    """Request to unlock a video and trigger the production indexer."""

    video_id: str = ""
    make_public: bool = False
    ignore_quota: bool = False
    reason: str = DEFAULT_UNLOCK_REASON

    @classmethod
    def from_payload(cls, payload: Any, video_id: Optional[str] = None) -> "UnlockRequest":
        body = as_record(payload) or {}
        raw_video_id = video_id if video_id is not None else body.get("videoId")
        return cls(
            video_id=raw_video_id.strip() if isinstance(raw_video_id, str) else "",
            make_public=bool(body.get("makePublic")),
            ignore_quota=bool(body.get("ignoreQuota")),
            reason=normalize_string(body.get("reason")) or DEFAULT_UNLOCK_REASON,
        )


@dataclass
class QuotaState:
    free_index_quota: int
    free_indexes_used: int

    @property
    def exhausted(self) -> bool:
        return self.free_indexes_used >= self.free_index_quota

    def to_dict(self) -> Dict[str, int]:
        return {
            "freeIndexQuota": self.free_index_quota,
            "freeIndexesUsed": self.free_indexes_used,
        }


@dataclass
class UnlockResult:
    """Outcome of an unlock & index call.

    ``demo_protection_errors`` lists compensating writes that failed; they do
    not fail the call.
    """

    video: Optional[Dict[str, Any]]
    channel: Optional[Dict[str, Any]]
    quota: QuotaState
    index_triggered: bool
    index_response: Any = None
    index_attempts: List[Dict[str, Any]] = field(default_factory=list)
    demo_protection_applied: bool = False
    demo_protection_errors: List[str] = field(default_factory=list)
    index_failure_message: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "video": self.video,
            "channel": self.channel,
            "quota": self.quota.to_dict(),
            # Consumption happens in the store when indexing completes
            "quotaUpdated": False,
            "indexTriggered": self.index_triggered,
            "indexResponse": self.index_response,
            "indexAttempts": self.index_attempts,
            "demoProtectionApplied": self.demo_protection_applied,
            "demoProtectionErrors": self.demo_protection_errors,
            "indexFailureMessage": self.index_failure_message,
        }
        if self.error:
            payload["error"] = self.error
        return payload
