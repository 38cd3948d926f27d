"""Error taxonomy for the Indexing Control Center.

Every failure that reaches a caller carries a stable ``code`` for programmatic
handling and a human-readable message. HTTP-facing callers map failures to a
status with :func:`status_for_exception`.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    INVALID_JSON = "INVALID_JSON"
    YOUTUBE_URL_REQUIRED = "YOUTUBE_URL_REQUIRED"
    INVALID_YOUTUBE_URL = "INVALID_YOUTUBE_URL"
    REQUESTED_BY_USER_ID_REQUIRED = "REQUESTED_BY_USER_ID_REQUIRED"
    REQUESTED_BY_USER_ID_INVALID = "REQUESTED_BY_USER_ID_INVALID"
    REQUESTED_BY_USER_ID_MISMATCH = "REQUESTED_BY_USER_ID_MISMATCH"
    RUN_CREATE_FAILED = "RUN_CREATE_FAILED"
    OUTPUTS_STORE_FAILED = "OUTPUTS_STORE_FAILED"
    RUN_UPDATE_FAILED = "RUN_UPDATE_FAILED"
    INDEXER_CALL_FAILED = "INDEXER_CALL_FAILED"
    MISSING_ENV = "MISSING_ENV"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

    # Unlock & index
    VIDEO_ID_REQUIRED = "VIDEO_ID_REQUIRED"
    VIDEO_NOT_FOUND = "VIDEO_NOT_FOUND"
    VIDEO_CHANNEL_MISSING = "VIDEO_CHANNEL_MISSING"
    CHANNEL_NOT_FOUND = "CHANNEL_NOT_FOUND"
    FREE_INDEX_QUOTA_REACHED = "FREE_INDEX_QUOTA_REACHED"
    VIDEO_UPDATE_FAILED = "VIDEO_UPDATE_FAILED"

    # Read side and fixtures
    RUN_NOT_FOUND = "RUN_NOT_FOUND"
    OUTPUTS_NOT_FOUND = "OUTPUTS_NOT_FOUND"
    FIXTURE_NOT_FOUND = "FIXTURE_NOT_FOUND"
    FIXTURE_NAME_REQUIRED = "FIXTURE_NAME_REQUIRED"
    FIXTURE_CREATE_FAILED = "FIXTURE_CREATE_FAILED"
    STORE_READ_FAILED = "STORE_READ_FAILED"

    # Access
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"


class IndexingError(Exception):
    """Typed failure with an HTTP status class, a stable code and an optional run id."""

    def __init__(
        self,
        status: int,
        code: ErrorCode,
        message: str,
        test_run_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = ErrorCode(code)
        self.message = message
        self.test_run_id = test_run_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.message,
            "code": self.code.value,
            "testRunId": self.test_run_id,
        }
        payload.update(self.details)
        return payload

    def __repr__(self) -> str:
        return f"IndexingError(status={self.status}, code={self.code.value}, message={self.message!r})"


class AuthError(Exception):
    """Raised when a caller cannot be verified as an admin."""


def status_for_exception(exc: BaseException) -> int:
    """Map an exception to an HTTP status.

    Typed errors carry their own status. Anything else is classified from its
    message: authorization wording maps to 403, credential wording to 401.
    """
    if isinstance(exc, IndexingError):
        return exc.status

    message = str(exc)
    if "not an admin" in message:
        return 403
    if "Invalid" in message or "Authorization" in message:
        return 401
    return 500


def code_for_exception(exc: BaseException) -> ErrorCode:
    if isinstance(exc, IndexingError):
        return exc.code
    status = status_for_exception(exc)
    if isinstance(exc, AuthError) and status == 403:
        return ErrorCode.FORBIDDEN
    if isinstance(exc, AuthError) and status == 401:
        return ErrorCode.UNAUTHORIZED
    return ErrorCode.UNEXPECTED_ERROR
