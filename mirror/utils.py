"""Utility functions for stash-mirror."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterator, Optional, Sequence

_TZ_SUFFIX = re.compile(r"([+-]\d{2}:\d{2}|Z)$")
_FRACTION = re.compile(r"\.\d+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an upstream RFC3339 timestamp. Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat only takes up to microseconds
    text = re.sub(r"\.(\d{6})\d+", r".\1", text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_timestamp(*values: Optional[str]) -> Optional[str]:
    """Most recent of the given RFC3339 strings, comparing instants, not text."""
    present = [v for v in values if v]
    if not present:
        return None
    return max(present, key=parse_timestamp)


def format_timestamp_for_source(timestamp: str) -> str:
    """Render a timestamp the way the upstream `updated_at` filter expects it.

    The timezone suffix is dropped (upstream compares local wall time) and the
    sub-second part is pinned to .999 so entities updated within the same
    second as the last seen one are not fetched again.

    "2025-12-28T09:47:03-08:00" -> "2025-12-28T09:47:03.999"
    """
    without_tz = _TZ_SUFFIX.sub("", timestamp.strip())
    if _FRACTION.search(without_tz):
        return _FRACTION.sub(".999", without_tz)
    return f"{without_tz}.999"


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def id_sort_key(entity_id: str) -> tuple:
    """Numeric ids order numerically, anything else lexicographically after them."""
    if entity_id.isdigit():
        return (0, int(entity_id), "")
    return (1, 0, entity_id)


def short_error(exc: BaseException, limit: int = 500) -> str:
    message = f"{type(exc).__name__}: {exc}"
    return message if len(message) <= limit else message[: limit - 3] + "..."

