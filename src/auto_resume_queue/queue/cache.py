"""Process-local derived index over the queue document.

The cache is never persisted or shared; it is rebuilt whenever the queue file
changes on disk or the cache grows older than the freshness ceiling.
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from auto_resume_queue.queue.models import Task, TaskStatus
from auto_resume_queue.queue.persistence import (
    QueueIntegrityError,
    read_queue_document,
    task_from_record,
)

logger = logging.getLogger(__name__)


class CacheRebuildError(RuntimeError):
    """Queue document could not be turned into a consistent index."""


@dataclass(slots=True)
class CacheStats:
    """Hit/miss counters and current cache state."""

    hits: int
    misses: int
    rebuilds: int
    valid: bool
    age_seconds: float | None
    entries: int

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total


class QueueCache:
    """Index task ids to document positions and pre-aggregate status counts."""

    def __init__(
        self,
        queue_file: Path,
        *,
        max_age_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue_file = queue_file
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._valid = False
        self._signature: tuple[int, int, int] | None = None
        self._built_at: float | None = None
        self._records: list[dict[str, Any]] = []
        self._index: dict[str, int] = {}
        self._status_counts: dict[str, int] = {}
        self._stats_json = "{}"
        self._hits = 0
        self._misses = 0
        self._rebuilds = 0

    def build_cache(self) -> None:
        """Rebuild index and aggregates in one pass over the document."""

        self._valid = False
        signature = self._file_signature()
        if signature is None:
            records: list[Any] = []
        else:
            try:
                records = read_queue_document(self.queue_file).tasks
            except (QueueIntegrityError, OSError) as error:
                raise CacheRebuildError(f"Cannot build cache from {self.queue_file}") from error

        index: dict[str, int] = {}
        counts: Counter[str] = Counter()
        for position, record in enumerate(records):
            if not isinstance(record, dict) or not isinstance(record.get("id"), str):
                raise CacheRebuildError(f"Malformed task record at position {position}")
            task_id = record["id"]
            if task_id in index:
                raise CacheRebuildError(f"Duplicate task id in queue document: {task_id}")
            index[task_id] = position
            counts[str(record.get("status", "unknown"))] += 1

        self._records = records
        self._index = index
        self._status_counts = dict(counts)
        self._stats_json = json.dumps(
            {"total": len(records), **self._status_counts},
            sort_keys=True,
        )
        self._signature = signature
        self._built_at = self._clock()
        self._valid = True
        self._rebuilds += 1
        logger.debug("Cache rebuilt: %d tasks from %s", len(records), self.queue_file)

    def is_cache_valid(self) -> bool:
        """Check validity flag, file signature and age; an invalid result clears the flag."""

        if not self._valid or self._built_at is None:
            return False
        if self._file_signature() != self._signature:
            self._valid = False
            return False
        if self._clock() - self._built_at > self.max_age_seconds:
            self._valid = False
            return False
        return True

    def invalidate(self) -> None:
        self._valid = False

    def refresh_cache_if_needed(self) -> bool:
        """Rebuild when invalid; returns True when a rebuild happened."""

        if self.is_cache_valid():
            self._hits += 1
            return False
        self._misses += 1
        self.build_cache()
        return True

    def get_task_by_id_cached(self, task_id: str) -> Task | None:
        record = self._lookup(task_id)
        return task_from_record(record) if record is not None else None

    def task_exists_cached(self, task_id: str) -> bool:
        return self._lookup(task_id) is not None

    def get_queue_stats_cached(self) -> dict[str, int]:
        """Return `{"total": n, <status>: count, ...}` from the pre-serialized summary."""

        try:
            self.refresh_cache_if_needed()
        except CacheRebuildError:
            logger.warning("Cache rebuild failed, computing stats by direct scan")
            records = self._direct_records()
            counts = Counter(
                str(record.get("status", "unknown"))
                for record in records
                if isinstance(record, dict)
            )
            return {"total": len(records), **counts}
        return json.loads(self._stats_json)

    @property
    def stats_summary_json(self) -> str:
        self.refresh_cache_if_needed()
        return self._stats_json

    def get_tasks_by_status_cached(self, status: TaskStatus) -> list[Task]:
        try:
            self.refresh_cache_if_needed()
            records = self._records
        except CacheRebuildError:
            logger.warning("Cache rebuild failed, filtering by direct scan")
            records = self._direct_records()
        return [
            task_from_record(record)
            for record in records
            if isinstance(record, dict) and record.get("status") == status.value
        ]

    def get_pending_count_cached(self) -> int:
        return self.get_queue_stats_cached().get(TaskStatus.PENDING.value, 0)

    def process_tasks_batch(self, task_ids: Iterable[str]) -> list[Task]:
        """Resolve many ids in one pass; unknown ids are skipped."""

        wanted = list(dict.fromkeys(task_ids))
        try:
            self.refresh_cache_if_needed()
        except CacheRebuildError:
            logger.warning("Cache rebuild failed, resolving batch by direct scan")
            by_id = {
                record.get("id"): record
                for record in reversed(self._direct_records())
                if isinstance(record, dict)
            }
            return [task_from_record(by_id[task_id]) for task_id in wanted if task_id in by_id]
        positions = sorted(
            (self._index[task_id], task_id) for task_id in wanted if task_id in self._index
        )
        return [task_from_record(self._records[position]) for position, _ in positions]

    def get_cache_stats(self) -> CacheStats:
        age = None if self._built_at is None else self._clock() - self._built_at
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            rebuilds=self._rebuilds,
            valid=self._valid,
            age_seconds=age,
            entries=len(self._index),
        )

    def reset_cache_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._rebuilds = 0

    def _lookup(self, task_id: str) -> dict[str, Any] | None:
        try:
            self.refresh_cache_if_needed()
        except CacheRebuildError:
            logger.warning("Cache rebuild failed, looking up %s by direct scan", task_id)
            for record in self._direct_records():
                if isinstance(record, dict) and record.get("id") == task_id:
                    return record
            return None
        position = self._index.get(task_id)
        return self._records[position] if position is not None else None

    def _direct_records(self) -> list[Any]:
        """Records for the fallback scan; an unreadable document stays a CacheRebuildError."""

        if not self.queue_file.exists():
            return []
        try:
            return read_queue_document(self.queue_file).tasks
        except (QueueIntegrityError, OSError) as error:
            raise CacheRebuildError(f"Cannot read queue document {self.queue_file}") from error

    def _file_signature(self) -> tuple[int, int, int] | None:
        """Identity of the current queue file: mtime, size and inode."""

        try:
            stat = self.queue_file.stat()
            return stat.st_mtime_ns, stat.st_size, stat.st_ino
        except FileNotFoundError:
            return None
