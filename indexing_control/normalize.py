"""Normalization helpers for loosely-shaped indexer and store payloads.

The indexer does not guarantee a response schema (camelCase vs snake_case,
nested vs flat). Lookups go through :func:`pick_first` with ordered path
lists so the instability stays in one place.
"""

import math
import re
from typing import Any, Dict, Iterable, Optional
from urllib.parse import parse_qs, urlparse

YOUTUBE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{11}")
UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}",
    re.IGNORECASE,
)
YOUTUBE_HOSTS = {"youtube.com", "m.youtube.com"}


def as_record(value: Any) -> Optional[Dict[str, Any]]:
    """Return ``value`` if it is a JSON object (not an array), else None."""
    if isinstance(value, dict):
        return value
    return None


def value_at_path(source: Any, path: str) -> Any:
    """Resolve a dotted path through nested objects. Arrays are not traversed."""
    current = source
    for part in path.split("."):
        record = as_record(current)
        if record is None or part not in record:
            return None
        current = record[part]
    return current


def pick_first(source: Any, paths: Iterable[str]) -> Any:
    """Return the first non-null value found along ``paths``.

    Order matters: the first path that resolves wins and values from
    different paths are never merged.
    """
    for path in paths:
        value = value_at_path(source, path)
        if value is not None:
            return value
    return None


def normalize_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_integer(value: Any) -> Optional[int]:
    """Coerce a measured count or duration to a non-negative integer.

    Finite numbers and numeric strings are rounded and clamped at zero.
    Anything unparseable is None, so "unknown" stays distinct from zero.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return max(0, _round_half_up(value))
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return max(0, _round_half_up(parsed))
    return None


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and UUID_PATTERN.fullmatch(value) is not None


def _is_youtube_id(value: Optional[str]) -> bool:
    return bool(value) and YOUTUBE_ID_PATTERN.fullmatch(value) is not None


def extract_youtube_video_id(value: Optional[str]) -> Optional[str]:
    """Normalize a YouTube URL or bare id to the 11-character video id.

    Tries, in order: an exact 11-character token, host-specific URL rules
    (``youtu.be/<id>``, ``youtube.com/watch?v=<id>``, ``/shorts/<id>``,
    ``/embed/<id>``), then any 11-character token in the string.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    if _is_youtube_id(trimmed):
        return trimmed

    try:
        parsed = urlparse(trimmed)
        host = (parsed.hostname or "").lower()
    except ValueError:
        parsed = None
        host = ""
    if host.startswith("www."):
        host = host[4:]

    if parsed is not None and host == "youtu.be":
        segments = [segment for segment in parsed.path.split("/") if segment]
        if segments and _is_youtube_id(segments[0]):
            return segments[0]

    if parsed is not None and host in YOUTUBE_HOSTS:
        v_values = parse_qs(parsed.query).get("v") or []
        if v_values and _is_youtube_id(v_values[0]):
            return v_values[0]

        segments = [segment for segment in parsed.path.split("/") if segment]
        if len(segments) >= 2 and segments[0] in ("shorts", "embed"):
            if _is_youtube_id(segments[1]):
                return segments[1]

    match = YOUTUBE_ID_PATTERN.search(trimmed)
    return match.group(0) if match else None


def count_occurrences(document: Any) -> int:
    """Count occurrences in a transcript or OCR artifact.

    Accepts a bare list, ``{"occurrences": [...]}`` or
    ``{"data": {"occurrences": [...]}}``; anything else counts as zero.
    """
    if not document:
        return 0
    if isinstance(document, list):
        return len(document)

    record = as_record(document)
    if record is None:
        return 0

    occurrences = record.get("occurrences")
    if isinstance(occurrences, list):
        return len(occurrences)

    data = as_record(record.get("data"))
    if data is not None and isinstance(data.get("occurrences"), list):
        return len(data["occurrences"])

    return 0


def default_occurrences_json(youtube_url: str) -> Dict[str, Any]:
    return {"video_url": youtube_url, "occurrences": []}
