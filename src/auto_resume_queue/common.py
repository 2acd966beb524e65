"""Common helpers shared by queue components."""

from __future__ import annotations

import random
import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def to_iso(value: datetime) -> str:
    """Serialize datetime as ISO string with microsecond precision."""

    return value.isoformat()


def generate_task_id(prefix: str = "task") -> str:
    """Build `<prefix>-<unix seconds>-<4 random digits>` identifier."""

    suffix = random.randint(1000, 9999)  # noqa: S311
    return f"{prefix}-{int(time.time())}-{suffix}"
