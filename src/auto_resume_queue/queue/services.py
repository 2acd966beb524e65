"""Lock-guarded queue operations on top of persistence and the in-memory store."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from auto_resume_queue.common import utc_now
from auto_resume_queue.config import Settings
from auto_resume_queue.queue.cache import QueueCache
from auto_resume_queue.queue.core import QueueManager
from auto_resume_queue.queue.locking import LivenessChecker, LockManager
from auto_resume_queue.queue.models import LockKind, Task, TaskStatus
from auto_resume_queue.queue.persistence import (
    QueueStore,
    read_queue_document,
    task_from_record,
)
from auto_resume_queue.queue.retrier import Retrier

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueueOperation(str, Enum):
    """Every kind of queue mutation; each has a lock policy below."""

    ADD_TASK = "add_task"
    REMOVE_TASK = "remove_task"
    UPDATE_STATUS = "update_status"
    UPDATE_PRIORITY = "update_priority"
    WORKFLOW_UPDATE = "workflow_update"
    BATCH = "batch"
    IMPORT = "import"
    CLEAR_QUEUE = "clear_queue"
    RESTORE = "restore"
    CLEANUP = "cleanup"


class ImportMode(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


@dataclass(frozen=True, slots=True)
class OperationPolicy:
    """Lock timeout plus an optional outer lock serializing one class of operations.

    The document itself is always guarded by the `queue` lock; the outer lock only
    keeps long batch/maintenance runs from interleaving with each other.
    """

    timeout_seconds: float
    outer_lock: LockKind | None = None


OPERATION_POLICIES: dict[QueueOperation, OperationPolicy] = {
    QueueOperation.ADD_TASK: OperationPolicy(timeout_seconds=10),
    QueueOperation.REMOVE_TASK: OperationPolicy(timeout_seconds=10),
    QueueOperation.UPDATE_STATUS: OperationPolicy(timeout_seconds=15),
    QueueOperation.UPDATE_PRIORITY: OperationPolicy(timeout_seconds=15),
    QueueOperation.WORKFLOW_UPDATE: OperationPolicy(timeout_seconds=15),
    QueueOperation.BATCH: OperationPolicy(timeout_seconds=30, outer_lock=LockKind.BATCH),
    QueueOperation.IMPORT: OperationPolicy(timeout_seconds=60, outer_lock=LockKind.BATCH),
    QueueOperation.CLEAR_QUEUE: OperationPolicy(
        timeout_seconds=60,
        outer_lock=LockKind.MAINTENANCE,
    ),
    QueueOperation.RESTORE: OperationPolicy(timeout_seconds=60, outer_lock=LockKind.MAINTENANCE),
    QueueOperation.CLEANUP: OperationPolicy(timeout_seconds=60, outer_lock=LockKind.MAINTENANCE),
}


class QueueService:
    """Serializes read-modify-write cycles of the queue document across processes."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: QueueStore,
        locks: LockManager,
        cache: QueueCache | None = None,
        max_retries: int = 3,
        backup_before_save: bool = True,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.locks = locks
        self.cache = cache or QueueCache(store.queue_file)
        self.max_retries = max_retries
        self.backup_before_save = backup_before_save
        self._now = now

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        liveness: LivenessChecker | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
    ) -> QueueService:
        settings.validate()
        locks = LockManager(
            settings.lock_dir,
            max_age_seconds=settings.lock.max_age_seconds,
            default_timeout_seconds=settings.lock.timeout_seconds,
            retrier=Retrier(
                base_delay_seconds=settings.lock.retry_delay_seconds,
                jitter_seconds=settings.lock.retry_jitter_seconds,
                sleep=sleep,
            ),
            liveness=liveness,
        )
        return cls(
            store=QueueStore(
                settings.queue_file,
                settings.backup_dir,
                pre_save_backups=settings.queue.pre_save_backups,
            ),
            locks=locks,
            cache=QueueCache(settings.queue_file, max_age_seconds=settings.cache.max_age_seconds),
            max_retries=settings.queue.max_retries,
            backup_before_save=settings.queue.backup_before_save,
            now=now,
        )

    def load(self) -> QueueManager:
        """Unlocked snapshot of the persisted queue for read-only use."""

        manager = QueueManager(max_retries=self.max_retries, now=self._now)
        manager.load_records(self.store.load_document().tasks)
        return manager

    def execute(self, operation: QueueOperation, mutation: Callable[[QueueManager], T]) -> T:
        """Run `mutation` against a freshly loaded store under the operation's locks."""

        policy = OPERATION_POLICIES[operation]
        with ExitStack() as stack:
            if policy.outer_lock is not None:
                stack.enter_context(
                    self.locks.hold(
                        policy.outer_lock.value,
                        timeout_seconds=policy.timeout_seconds,
                        operation=operation.value,
                    ),
                )
            stack.enter_context(
                self.locks.hold(
                    LockKind.WRITE.value,
                    timeout_seconds=policy.timeout_seconds,
                    operation=operation.value,
                ),
            )
            manager = self.load()
            result = mutation(manager)
            self.store.save(manager.to_records(), backup_before=self.backup_before_save)
        self.cache.invalidate()
        logger.debug("Queue operation %s committed", operation.value)
        return result

    def add_task(self, data: Task | dict[str, Any]) -> Task:
        return self.execute(QueueOperation.ADD_TASK, lambda manager: manager.add_task(data))

    def remove_task(self, task_id: str) -> Task:
        return self.execute(
            QueueOperation.REMOVE_TASK,
            lambda manager: manager.remove_task(task_id),
        )

    def update_task_status(self, task_id: str, status: TaskStatus | str) -> Task:
        return self.execute(
            QueueOperation.UPDATE_STATUS,
            lambda manager: manager.update_task_status(task_id, status),
        )

    def update_task_priority(self, task_id: str, priority: str) -> Task:
        return self.execute(
            QueueOperation.UPDATE_PRIORITY,
            lambda manager: manager.update_task_priority(task_id, priority),
        )

    def add_tasks(self, tasks: list[Task | dict[str, Any]]) -> list[Task]:
        return self.execute(
            QueueOperation.BATCH,
            lambda manager: [manager.add_task(item) for item in tasks],
        )

    def clear_queue(self) -> int:
        return self.execute(QueueOperation.CLEAR_QUEUE, lambda manager: manager.clear_queue())

    def get_task(self, task_id: str) -> Task | None:
        return self.cache.get_task_by_id_cached(task_id)

    def import_json(self, path: Path, *, mode: ImportMode = ImportMode.MERGE) -> int:
        """Import tasks from an exported document; all records are validated first."""

        tasks = [task_from_record(raw) for raw in read_queue_document(path).tasks]

        def _apply(manager: QueueManager) -> int:
            if mode == ImportMode.REPLACE:
                manager.clear_queue()
            for task in tasks:
                manager.add_task(task)
            return len(tasks)

        imported = self.execute(QueueOperation.IMPORT, _apply)
        logger.info("Imported %d tasks from %s (mode=%s)", imported, path, mode.value)
        return imported

    def restore_backup(self, backup_path: Path) -> None:
        policy = OPERATION_POLICIES[QueueOperation.RESTORE]
        with (
            self.locks.hold(
                LockKind.MAINTENANCE.value,
                timeout_seconds=policy.timeout_seconds,
                operation=QueueOperation.RESTORE.value,
            ),
            self.locks.hold(
                LockKind.WRITE.value,
                timeout_seconds=policy.timeout_seconds,
                operation=QueueOperation.RESTORE.value,
            ),
        ):
            self.store.restore_from_backup(backup_path)
        self.cache.invalidate()
