"""Queue maintenance: retention pruning, sweeps, integrity repair and size limits."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from auto_resume_queue.common import from_iso, to_iso, utc_now
from auto_resume_queue.config import Settings
from auto_resume_queue.queue.core import QueueManager
from auto_resume_queue.queue.models import (
    TERMINAL_FAILURE_STATUSES,
    LockKind,
    Task,
    TaskStatus,
)
from auto_resume_queue.queue.services import (
    OPERATION_POLICIES,
    QueueOperation,
    QueueService,
)

logger = logging.getLogger(__name__)

_REPORT_GLOB = "cleanup-*.json"


@dataclass(slots=True)
class CleanupReport:
    """Per-operation counts for one maintenance run."""

    started_at: datetime
    completed_at: datetime | None = None
    operations: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.operations.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "operations": dict(self.operations),
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CleanupReport:
        completed = payload.get("completed_at")
        operations = payload.get("operations", {})
        if not isinstance(operations, dict):
            raise ValueError("Cleanup report operations must be an object")
        return cls(
            started_at=from_iso(str(payload["started_at"])),
            completed_at=from_iso(completed) if isinstance(completed, str) else None,
            operations={str(name): int(count) for name, count in operations.items()},
        )


class QueueMaintenance:
    """Runs cleanup operations against one queue directory."""

    def __init__(
        self,
        service: QueueService,
        settings: Settings,
        *,
        now: Callable[[], datetime] = utc_now,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.service = service
        self.settings = settings
        self._now = now
        self._wall_clock = wall_clock

    def cleanup_completed_tasks(self, retention_days: int | None = None) -> int:
        if retention_days is None:
            retention_days = self.settings.cleanup.completed_retention_days
        return self._prune_by_age((TaskStatus.COMPLETED,), retention_days)

    def cleanup_failed_tasks(self, retention_days: int | None = None) -> int:
        if retention_days is None:
            retention_days = self.settings.cleanup.failed_retention_days
        return self._prune_by_age(TERMINAL_FAILURE_STATUSES, retention_days)

    def cleanup_old_backups(self, retention_days: int | None = None) -> int:
        if retention_days is None:
            retention_days = self.settings.cleanup.backup_retention_days
        return self.service.store.cleanup_old_backups(retention_days, now=self._wall_clock())

    def cleanup_stale_locks(self) -> int:
        return len(self.service.locks.cleanup_all_stale_locks())

    def cleanup_temp_files(self, max_age_seconds: int | None = None) -> int:
        """Remove leftover temp files older than the age threshold."""

        max_age = (
            self.settings.cleanup.temp_file_max_age_seconds
            if max_age_seconds is None
            else max_age_seconds
        )
        cutoff = self._wall_clock() - max_age
        candidates: list[Path] = []
        if self.settings.temp_dir.is_dir():
            candidates.extend(self.settings.temp_dir.iterdir())
        if self.settings.queue_dir.is_dir():
            candidates.extend(self.settings.queue_dir.glob("*.tmp*"))
        removed = 0
        for path in candidates:
            if not path.is_file():
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
            logger.debug("Removed temp file %s", path)
        if removed:
            logger.info("Removed %d temp files", removed)
        return removed

    def validate_and_repair_queue(self) -> int:
        report = self.service.execute(
            QueueOperation.CLEANUP,
            lambda manager: manager.validate_queue_integrity(),
        )
        if report.fixed:
            logger.info("Integrity repair fixed %d entries", report.fixed)
        return report.fixed

    def enforce_queue_size_limits(self, max_size: int | None = None) -> int:
        """Drop oldest completed, then oldest failed/timeout tasks above the ceiling."""

        limit = self.settings.queue.max_size if max_size is None else max_size
        if limit <= 0:
            return 0
        return self.service.execute(
            QueueOperation.CLEANUP,
            lambda manager: _trim_to_size(manager, limit),
        )

    def run_full_cleanup(self) -> CleanupReport:
        """Run every maintenance operation under the maintenance lock and save a report."""

        report = CleanupReport(started_at=self._now())
        logger.info("Starting full cleanup in %s", self.settings.queue_dir)
        policy = OPERATION_POLICIES[QueueOperation.CLEANUP]
        with self.service.locks.hold(
            LockKind.MAINTENANCE.value,
            timeout_seconds=policy.timeout_seconds,
            operation=QueueOperation.CLEANUP.value,
        ):
            report.operations["completed_tasks"] = self.cleanup_completed_tasks()
            report.operations["failed_tasks"] = self.cleanup_failed_tasks()
            report.operations["old_backups"] = self.cleanup_old_backups()
            report.operations["stale_locks"] = self.cleanup_stale_locks()
            report.operations["temp_files"] = self.cleanup_temp_files()
            report.operations["integrity_repair"] = self.validate_and_repair_queue()
            report.operations["size_enforcement"] = self.enforce_queue_size_limits()
        report.completed_at = self._now()
        self._save_report(report)
        logger.info("Full cleanup finished: %d items", report.total)
        return report

    def is_auto_cleanup_due(self) -> bool:
        marker = self.settings.cleanup_marker
        try:
            last_run = marker.stat().st_mtime
        except FileNotFoundError:
            return True
        return self._wall_clock() - last_run > self.settings.cleanup.interval_hours * 3_600

    def run_auto_cleanup(self, *, force: bool = False) -> CleanupReport | None:
        """Run full cleanup at most once per interval; returns None when skipped."""

        if not force and not self.is_auto_cleanup_due():
            logger.debug("Automatic cleanup not needed yet")
            return None
        report = self.run_full_cleanup()
        marker = self.settings.cleanup_marker
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(f"{int(self._wall_clock())}\n", "utf-8")
        return report

    def get_cleanup_history(self, limit: int = 10) -> list[CleanupReport]:
        """Saved reports, newest first."""

        reports_dir = self.settings.reports_dir
        if not reports_dir.is_dir():
            return []
        reports: list[CleanupReport] = []
        for path in reports_dir.glob(_REPORT_GLOB):
            try:
                reports.append(CleanupReport.from_dict(json.loads(path.read_text("utf-8"))))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable cleanup report %s", path)
        reports.sort(key=lambda item: item.started_at, reverse=True)
        return reports[: max(0, limit)]

    def _prune_by_age(self, statuses: tuple[TaskStatus, ...], retention_days: int) -> int:
        cutoff = self._now() - timedelta(days=retention_days)

        def _prune(manager: QueueManager) -> int:
            stale = [
                task
                for task in manager.tasks
                if task.status in statuses and task.updated_at < cutoff
            ]
            for task in stale:
                manager.remove_task(task.id)
            return len(stale)

        removed = self.service.execute(QueueOperation.CLEANUP, _prune)
        if removed:
            logger.info(
                "Removed %d %s tasks older than %d days",
                removed,
                "/".join(status.value for status in statuses),
                retention_days,
            )
        return removed

    def _save_report(self, report: CleanupReport) -> Path:
        reports_dir = self.settings.reports_dir
        reports_dir.mkdir(parents=True, exist_ok=True)
        path = reports_dir / f"cleanup-{report.started_at.strftime('%Y%m%d-%H%M%S-%f')}.json"
        path.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True), "utf-8")
        logger.debug("Saved cleanup report %s", path)
        return path


def _trim_to_size(manager: QueueManager, limit: int) -> int:
    excess = len(manager) - limit
    if excess <= 0:
        return 0
    victims: list[Task] = []
    for statuses in ((TaskStatus.COMPLETED,), TERMINAL_FAILURE_STATUSES):
        candidates = sorted(
            (task for task in manager.tasks if task.status in statuses),
            key=lambda task: (task.created_at, task.id),
        )
        victims.extend(candidates[: excess - len(victims)])
        if len(victims) >= excess:
            break
    for task in victims:
        manager.remove_task(task.id)
    if len(victims) < excess:
        logger.warning(
            "Queue still above size limit %d: %d active tasks cannot be removed",
            limit,
            len(manager) - limit,
        )
    logger.info("Size enforcement removed %d tasks (limit %d)", len(victims), limit)
    return len(victims)
