"""In-memory queue store: CRUD and state transitions over typed tasks.

`QueueManager` knows nothing about locks or files. Callers load it from the
persisted records, mutate it, and hand `to_records()` back to persistence while
holding the queue lock (see `services.QueueService`).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auto_resume_queue.common import to_iso, utc_now
from auto_resume_queue.queue.models import (
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    TERMINAL_FAILURE_STATUSES,
    QueueStats,
    Task,
    TaskStatus,
    TaskType,
    validate_task_id,
)
from auto_resume_queue.queue.persistence import (
    REQUIRED_TASK_FIELDS,
    QueueIntegrityError,
    task_from_record,
    task_to_record,
)

logger = logging.getLogger(__name__)


class NextTaskFilter(str, Enum):
    """Candidate filter for `get_next_task`."""

    ALL = "all"
    HIGH_PRIORITY = "high_priority"


@dataclass(slots=True)
class RejectedRecord:
    """Persisted record that could not be loaded as a task."""

    label: str
    reason: str
    raw: Any


@dataclass(slots=True)
class IntegrityReport:
    """Entries dropped by `validate_queue_integrity`."""

    removed: list[RejectedRecord] = field(default_factory=list)

    @property
    def fixed(self) -> int:
        return len(self.removed)


class QueueManager:
    """Owns the task map for one process invocation."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_retries = max_retries
        self._now = now
        self._tasks: dict[str, Task] = {}
        self._rejected: list[RejectedRecord] = []

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @property
    def rejected_records(self) -> list[RejectedRecord]:
        return list(self._rejected)

    def load_records(self, records: list[Any]) -> None:
        """Replace in-memory state with persisted records.

        Records that fail validation are kept aside untouched so that saving
        does not silently lose them; `validate_queue_integrity` drops them.
        """

        self._tasks = {}
        self._rejected = []
        for position, raw in enumerate(records):
            label = _record_label(raw, position=position)
            try:
                task = task_from_record(raw)
            except QueueIntegrityError as error:
                logger.warning("Queue record %s is malformed: %s", label, error)
                self._rejected.append(RejectedRecord(label=label, reason=str(error), raw=raw))
                continue
            if task.id in self._tasks:
                self._rejected.append(
                    RejectedRecord(label=label, reason="duplicate task id", raw=raw),
                )
                continue
            self._tasks[task.id] = task

    def to_records(self) -> list[Any]:
        records: list[Any] = [task_to_record(task) for task in self._tasks.values()]
        records.extend(item.raw for item in self._rejected)
        return records

    def add_task(self, data: Task | Mapping[str, Any]) -> Task:
        """Insert a task, or update it in place when the id already exists."""

        task = data if isinstance(data, Task) else _task_from_payload(data, now=self._now())
        validate_task_id(task.id)
        if not isinstance(task.metadata, dict):
            raise ValueError(f"Task {task.id} metadata must be an object")
        if task.id in self._tasks:
            logger.info("Task %s already exists, updating it", task.id)
        else:
            logger.info("Added task %s (type=%s)", task.id, task.type.value)
        task.updated_at = self._now()
        self._tasks[task.id] = task
        return task

    def remove_task(self, task_id: str) -> Task:
        validate_task_id(task_id)
        task = self._tasks.pop(task_id, None)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        logger.info("Removed task %s", task_id)
        return task

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def task_exists(self, task_id: str) -> bool:
        return task_id in self._tasks

    def require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return task

    def update_task_status(self, task_id: str, status: TaskStatus | str) -> Task:
        """Move a task to `status`, stamping lifecycle timestamps in metadata."""

        new_status = _coerce_status(status)
        task = self.require_task(task_id)
        old_status = task.status
        now = self._now()
        task.status = new_status
        task.updated_at = now
        if new_status == TaskStatus.IN_PROGRESS:
            task.metadata.setdefault("started_at", to_iso(now))
        elif new_status == TaskStatus.COMPLETED:
            task.metadata["completed_at"] = to_iso(now)
        elif new_status in TERMINAL_FAILURE_STATUSES:
            task.metadata["failed_at"] = to_iso(now)
        if old_status != new_status:
            logger.info("Task %s status: %s -> %s", task_id, old_status.value, new_status.value)
        return task

    def update_task_priority(self, task_id: str, priority: str) -> Task:
        if not priority.strip():
            raise ValueError("Priority must be a non-empty string")
        task = self.require_task(task_id)
        task.priority = priority.strip()
        task.updated_at = self._now()
        return task

    def get_next_task(self, task_filter: NextTaskFilter | str = NextTaskFilter.ALL) -> Task | None:
        """Oldest pending task (FIFO by created_at, then id) matching the filter."""

        selected = NextTaskFilter(task_filter)
        candidates = [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
            and (selected == NextTaskFilter.ALL or task.priority == PRIORITY_HIGH)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda task: (task.created_at, task.id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        priority: str | None = None,
    ) -> list[Task]:
        tasks = [
            task
            for task in self._tasks.values()
            if (status is None or task.status == status)
            and (task_type is None or task.type == task_type)
            and (priority is None or task.priority == priority)
        ]
        return sorted(tasks, key=lambda task: (task.created_at, task.id))

    def get_queue_stats(self) -> QueueStats:
        by_status = {status.value: 0 for status in TaskStatus}
        durations: list[float] = []
        for task in self._tasks.values():
            by_status[task.status.value] += 1
            if task.status == TaskStatus.COMPLETED:
                duration = _task_duration_seconds(task)
                if duration is not None:
                    durations.append(duration)
        total = len(self._tasks)
        completed = by_status[TaskStatus.COMPLETED.value]
        return QueueStats(
            total=total,
            by_status=by_status,
            completion_rate_percent=(completed * 100 // total) if total else 0,
            average_completion_seconds=int(sum(durations) / len(durations)) if durations else 0,
        )

    def validate_queue_integrity(self) -> IntegrityReport:
        """Drop records that cannot be loaded and tasks whose metadata is not JSON data."""

        report = IntegrityReport(removed=list(self._rejected))
        self._rejected = []
        for task in list(self._tasks.values()):
            try:
                json.dumps(task.metadata)
            except (TypeError, ValueError) as error:
                report.removed.append(
                    RejectedRecord(
                        label=task.id,
                        reason=f"metadata is not serializable: {error}",
                        raw=None,
                    ),
                )
                del self._tasks[task.id]
        for item in report.removed:
            logger.warning("Integrity repair removed %s: %s", item.label, item.reason)
        return report

    def clear_queue(self) -> int:
        count = len(self._tasks)
        self._tasks = {}
        logger.info("Cleared %d tasks from queue", count)
        return count

    def increment_retry_count(self, task_id: str) -> bool:
        """Bump retry counter; returns False once the retry budget is used up."""

        task = self.require_task(task_id)
        task.retry_count += 1
        task.updated_at = self._now()
        logger.info(
            "Task %s retry count incremented: %d/%d",
            task_id,
            task.retry_count,
            self.max_retries,
        )
        return task.retry_count < self.max_retries

    def record_task_error(self, task_id: str, message: str) -> Task:
        task = self.require_task(task_id)
        task.metadata["last_error"] = message
        task.metadata["last_error_time"] = to_iso(self._now())
        logger.error("Task %s error (retry %d): %s", task_id, task.retry_count, message)
        return self.update_task_status(task_id, TaskStatus.FAILED)

    def check_retry_eligibility(self, task_id: str) -> bool:
        task = self.require_task(task_id)
        return task.status in TERMINAL_FAILURE_STATUSES and task.retry_count < self.max_retries

    def create_github_issue_task(
        self,
        issue_number: int,
        *,
        task_id: str | None = None,
        priority: str = PRIORITY_NORMAL,
    ) -> Task:
        return self._create_reference_task(
            TaskType.GITHUB_ISSUE,
            task_id=task_id or f"issue-{issue_number}",
            metadata={"issue_number": issue_number, "command": f"/dev {issue_number}"},
            priority=priority,
        )

    def create_github_pr_task(
        self,
        pr_number: int,
        *,
        task_id: str | None = None,
        priority: str = PRIORITY_NORMAL,
    ) -> Task:
        return self._create_reference_task(
            TaskType.GITHUB_PR,
            task_id=task_id or f"pr-{pr_number}",
            metadata={"pr_number": pr_number, "command": f"/review PR-{pr_number}"},
            priority=priority,
        )

    def _create_reference_task(
        self,
        task_type: TaskType,
        *,
        task_id: str,
        metadata: dict[str, Any],
        priority: str,
    ) -> Task:
        number = next(iter(metadata.values()))
        if not isinstance(number, int) or number <= 0:
            raise ValueError(f"{task_type.value} number must be a positive integer: {number!r}")
        now = self._now()
        return self.add_task(
            Task(
                id=task_id,
                type=task_type,
                status=TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
                priority=priority,
                metadata=metadata,
            ),
        )


def _task_from_payload(data: Mapping[str, Any], *, now: datetime) -> Task:
    missing = [name for name in REQUIRED_TASK_FIELDS if data.get(name) in (None, "")]
    if missing:
        raise ValueError(f"Task data missing required fields: {', '.join(missing)}")
    payload = dict(data)
    if isinstance(payload["created_at"], datetime):
        payload["created_at"] = to_iso(payload["created_at"])
    payload["updated_at"] = to_iso(now)
    return task_from_record(payload)


def _coerce_status(status: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {status}") from error


def _record_label(raw: Any, *, position: int) -> str:
    if isinstance(raw, dict) and isinstance(raw.get("id"), str):
        return raw["id"]
    return f"<record #{position}>"


def _task_duration_seconds(task: Task) -> float | None:
    started = task.metadata.get("started_at")
    completed = task.metadata.get("completed_at")
    if not isinstance(started, str) or not isinstance(completed, str):
        return None
    try:
        delta = datetime.fromisoformat(completed) - datetime.fromisoformat(started)
    except (TypeError, ValueError):
        return None
    return max(0.0, delta.total_seconds())
