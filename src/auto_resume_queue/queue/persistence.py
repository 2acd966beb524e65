"""JSON document persistence for the task queue.

Records are typed in memory and only turned into plain JSON at this boundary.
Saves go through a temporary file and an atomic ``os.replace`` so readers never
observe a half-written document.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from auto_resume_queue.common import from_iso, to_iso, utc_now
from auto_resume_queue.queue.models import (
    PRIORITY_NORMAL,
    Checkpoint,
    ErrorKind,
    ErrorRecord,
    StepStatus,
    Task,
    TaskStatus,
    TaskType,
    Workflow,
    WorkflowStep,
    WorkflowType,
    validate_task_id,
)

logger = logging.getLogger(__name__)

QUEUE_DOCUMENT_VERSION = "2.0.0"
REQUIRED_TASK_FIELDS = ("id", "type", "status", "created_at")
_BACKUP_GLOB = "backup-*.json"
PRE_SAVE_BACKUP_LABEL = "before-save"


class QueueIntegrityError(ValueError):
    """Raised when a queue document or task record is malformed."""


@dataclass(slots=True)
class QueueDocument:
    """Raw queue document as stored on disk."""

    version: str
    timestamp: str
    tasks: list[dict[str, Any]]


@dataclass(slots=True)
class QueueFileStats:
    """Basic facts about the queue file for status commands."""

    path: Path
    exists: bool
    size_bytes: int
    modified_at: datetime | None
    task_count: int


def task_to_record(task: Task) -> dict[str, Any]:
    """Serialize one task (or workflow) into a JSON-compatible record."""

    record: dict[str, Any] = {
        "id": task.id,
        "type": task.type.value,
        "status": task.status.value,
        "priority": task.priority,
        "created_at": to_iso(task.created_at),
        "updated_at": to_iso(task.updated_at),
        "retry_count": task.retry_count,
        "metadata": task.metadata,
    }
    if isinstance(task, Workflow):
        record.update(
            {
                "workflow_type": task.workflow_type.value,
                "config": task.config,
                "current_step": task.current_step,
                "steps": [_step_to_record(step) for step in task.steps],
                "results": task.results,
                "error_history": [_error_to_record(entry) for entry in task.error_history],
                "checkpoints": [_checkpoint_to_record(item) for item in task.checkpoints],
            },
        )
    return record


def task_from_record(raw: object) -> Task:
    """Deserialize and validate one task record."""

    if not isinstance(raw, dict):
        raise QueueIntegrityError("Task record must be an object")
    missing = [name for name in REQUIRED_TASK_FIELDS if raw.get(name) in (None, "")]
    if missing:
        raise QueueIntegrityError(f"Task record missing required fields: {', '.join(missing)}")

    try:
        task_id = validate_task_id(raw["id"])
    except ValueError as error:
        raise QueueIntegrityError(str(error)) from error
    task_type = _parse_enum(TaskType, raw["type"], field_name="type")
    status = _parse_enum(TaskStatus, raw["status"], field_name="status")
    metadata = raw.get("metadata", {})
    if not isinstance(metadata, dict):
        raise QueueIntegrityError(f"Task {task_id} metadata must be an object")
    priority = raw.get("priority", PRIORITY_NORMAL)
    if not isinstance(priority, str) or not priority:
        raise QueueIntegrityError(f"Task {task_id} priority must be a non-empty string")
    retry_count = raw.get("retry_count", 0)
    if not isinstance(retry_count, int) or retry_count < 0:
        raise QueueIntegrityError(f"Task {task_id} retry_count must be an integer >= 0")
    created_at = _parse_datetime(raw["created_at"], field_name="created_at")
    updated_raw = raw.get("updated_at")
    updated_at = (
        _parse_datetime(updated_raw, field_name="updated_at") if updated_raw else created_at
    )

    common: dict[str, Any] = {
        "id": task_id,
        "type": task_type,
        "status": status,
        "created_at": created_at,
        "updated_at": updated_at,
        "priority": priority,
        "retry_count": retry_count,
        "metadata": metadata,
    }
    if task_type != TaskType.WORKFLOW:
        return Task(**common)
    return _workflow_from_record(raw, common=common)


def _workflow_from_record(raw: dict[str, Any], *, common: dict[str, Any]) -> Workflow:
    task_id = common["id"]
    raw_steps = raw.get("steps", [])
    if not isinstance(raw_steps, list):
        raise QueueIntegrityError(f"Workflow {task_id} steps must be an array")
    steps = [_step_from_record(item, workflow_id=task_id) for item in raw_steps]
    current_step = raw.get("current_step", 0)
    if not isinstance(current_step, int) or not 0 <= current_step <= len(steps):
        raise QueueIntegrityError(
            f"Workflow {task_id} current_step must be within 0..{len(steps)}",
        )
    config = raw.get("config", {})
    results = raw.get("results", {})
    if not isinstance(config, dict) or not isinstance(results, dict):
        raise QueueIntegrityError(f"Workflow {task_id} config and results must be objects")
    raw_errors = raw.get("error_history", [])
    raw_checkpoints = raw.get("checkpoints", [])
    if not isinstance(raw_errors, list) or not isinstance(raw_checkpoints, list):
        raise QueueIntegrityError(
            f"Workflow {task_id} error_history and checkpoints must be arrays",
        )
    return Workflow(
        **common,
        workflow_type=_parse_enum(
            WorkflowType,
            raw.get("workflow_type", WorkflowType.CUSTOM.value),
            field_name="workflow_type",
        ),
        config=config,
        steps=steps,
        current_step=current_step,
        results={str(key): str(value) for key, value in results.items()},
        error_history=[_error_from_record(item) for item in raw_errors],
        checkpoints=[_checkpoint_from_record(item) for item in raw_checkpoints],
    )


def _step_to_record(step: WorkflowStep) -> dict[str, Any]:
    return {
        "phase": step.phase,
        "command": step.command,
        "status": step.status.value,
        "description": step.description,
        "retry_count": step.retry_count,
        "started_at": _optional_iso(step.started_at),
        "completed_at": _optional_iso(step.completed_at),
        "failed_at": _optional_iso(step.failed_at),
    }


def _step_from_record(raw: object, *, workflow_id: str) -> WorkflowStep:
    if not isinstance(raw, dict):
        raise QueueIntegrityError(f"Workflow {workflow_id} step must be an object")
    phase = raw.get("phase")
    command = raw.get("command")
    if not isinstance(phase, str) or not phase or not isinstance(command, str):
        raise QueueIntegrityError(f"Workflow {workflow_id} step requires phase and command")
    return WorkflowStep(
        phase=phase,
        command=command,
        status=_parse_enum(StepStatus, raw.get("status", "pending"), field_name="step.status"),
        description=str(raw.get("description", "")),
        retry_count=int(raw.get("retry_count", 0)),
        started_at=_optional_datetime(raw.get("started_at"), field_name="step.started_at"),
        completed_at=_optional_datetime(raw.get("completed_at"), field_name="step.completed_at"),
        failed_at=_optional_datetime(raw.get("failed_at"), field_name="step.failed_at"),
    )


def _error_to_record(entry: ErrorRecord) -> dict[str, Any]:
    return {
        "step_index": entry.step_index,
        "error_kind": entry.error_kind.value,
        "message": entry.message,
        "timestamp": to_iso(entry.timestamp),
        "retry_count": entry.retry_count,
    }


def _error_from_record(raw: object) -> ErrorRecord:
    if not isinstance(raw, dict):
        raise QueueIntegrityError("error_history entry must be an object")
    return ErrorRecord(
        step_index=int(raw.get("step_index", 0)),
        error_kind=_parse_enum(
            ErrorKind,
            raw.get("error_kind", ErrorKind.GENERIC.value),
            field_name="error_kind",
        ),
        message=str(raw.get("message", "")),
        timestamp=_parse_datetime(raw.get("timestamp"), field_name="error.timestamp"),
        retry_count=int(raw.get("retry_count", 0)),
    )


def _checkpoint_to_record(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "checkpoint_id": checkpoint.checkpoint_id,
        "workflow_id": checkpoint.workflow_id,
        "created_at": to_iso(checkpoint.created_at),
        "reason": checkpoint.reason,
        "workflow_state": checkpoint.workflow_state,
    }


def _checkpoint_from_record(raw: object) -> Checkpoint:
    if not isinstance(raw, dict) or not isinstance(raw.get("workflow_state"), dict):
        raise QueueIntegrityError("checkpoint must be an object with workflow_state")
    return Checkpoint(
        checkpoint_id=str(raw.get("checkpoint_id", "")),
        workflow_id=str(raw.get("workflow_id", "")),
        created_at=_parse_datetime(raw.get("created_at"), field_name="checkpoint.created_at"),
        reason=str(raw.get("reason", "")),
        workflow_state=raw["workflow_state"],
    )


def _parse_enum(enum_type: type, value: object, *, field_name: str):
    try:
        return enum_type(value)
    except ValueError as error:
        raise QueueIntegrityError(f"Unsupported {field_name}: {value!r}") from error


def _parse_datetime(value: object, *, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise QueueIntegrityError(f"{field_name} must be an ISO timestamp string")
    try:
        return from_iso(value)
    except ValueError as error:
        raise QueueIntegrityError(f"Invalid {field_name}: {value!r}") from error


def _optional_datetime(value: object, *, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    return _parse_datetime(value, field_name=field_name)


def _optional_iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


class QueueStore:
    """Reads and writes the single JSON document backing one queue."""

    def __init__(self, queue_file: Path, backup_dir: Path, *, pre_save_backups: int = 5) -> None:
        self.queue_file = queue_file
        self.backup_dir = backup_dir
        self.pre_save_backups = pre_save_backups

    def ensure_directories(self) -> None:
        self.queue_file.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def load_document(self) -> QueueDocument:
        """Load queue document; a missing file reads as an empty queue.

        Nothing is written here; the file appears on the first locked save.
        """

        if not self.queue_file.exists():
            logger.debug("Queue file not found, using empty queue: %s", self.queue_file)
            return QueueDocument(
                version=QUEUE_DOCUMENT_VERSION,
                timestamp=to_iso(utc_now()),
                tasks=[],
            )
        return _read_document(self.queue_file)

    def save(self, records: list[dict[str, Any]], *, backup_before: bool = False) -> None:
        """Persist task records atomically, optionally snapshotting the previous file."""

        self.ensure_directories()
        if backup_before and self.queue_file.exists():
            self._snapshot_before_save()
        payload = {
            "version": QUEUE_DOCUMENT_VERSION,
            "timestamp": to_iso(utc_now()),
            "tasks": records,
        }
        temp_path = self.queue_file.with_name(f"{self.queue_file.name}.tmp.{os.getpid()}")
        try:
            temp_path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
                "utf-8",
            )
            os.replace(temp_path, self.queue_file)
        finally:
            temp_path.unlink(missing_ok=True)
        logger.debug("Saved %d tasks to %s", len(records), self.queue_file)

    def _snapshot_before_save(self) -> None:
        """Back up the current file under a rotating name, keeping the newest few."""

        stamp = utc_now().strftime("%Y%m%d-%H%M%S-%f")
        self.create_backup(suffix=f"{PRE_SAVE_BACKUP_LABEL}-{stamp}")
        snapshots = sorted(self.backup_dir.glob(f"backup-{PRE_SAVE_BACKUP_LABEL}-*.json"))
        for outdated in snapshots[: max(0, len(snapshots) - self.pre_save_backups)]:
            outdated.unlink(missing_ok=True)
            logger.debug("Rotated out pre-save backup: %s", outdated)

    def create_backup(self, suffix: str | None = None) -> Path | None:
        """Copy the current queue file into the backup directory."""

        if not self.queue_file.exists():
            logger.warning("No queue file to back up: %s", self.queue_file)
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = suffix or utc_now().strftime("%Y%m%d-%H%M%S-%f")
        backup_path = self.backup_dir / f"backup-{stamp}.json"
        shutil.copy2(self.queue_file, backup_path)
        logger.debug("Created queue backup: %s", backup_path)
        return backup_path

    def restore_from_backup(self, backup_path: Path) -> None:
        """Replace the queue file with a validated backup, keeping a pre-restore snapshot."""

        if not backup_path.exists():
            raise FileNotFoundError(f"Backup file not found: {backup_path}")
        _read_document(backup_path)
        self.create_backup(suffix=f"pre-restore-{utc_now().strftime('%Y%m%d-%H%M%S-%f')}")
        self.ensure_directories()
        shutil.copyfile(backup_path, self.queue_file)
        logger.info("Restored queue from backup: %s", backup_path)

    def list_backups(self) -> list[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(_BACKUP_GLOB))

    def cleanup_old_backups(self, retention_days: int, *, now: float | None = None) -> int:
        """Delete backup snapshots older than retention window and return how many."""

        cutoff = (now if now is not None else time.time()) - retention_days * 86_400
        removed = 0
        for backup_path in self.list_backups():
            if backup_path.stat().st_mtime < cutoff:
                backup_path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Removed %d backups older than %d days", removed, retention_days)
        return removed

    def export_json(self, path: Path) -> int:
        """Write the current document to an external file and return task count."""

        document = self.load_document()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(
                {
                    "version": document.version,
                    "timestamp": document.timestamp,
                    "tasks": document.tasks,
                },
                ensure_ascii=False,
                indent=2,
                sort_keys=True,
            ),
            "utf-8",
        )
        return len(document.tasks)

    def file_stats(self) -> QueueFileStats:
        if not self.queue_file.exists():
            return QueueFileStats(
                path=self.queue_file,
                exists=False,
                size_bytes=0,
                modified_at=None,
                task_count=0,
            )
        stat = self.queue_file.stat()
        document = _read_document(self.queue_file)
        return QueueFileStats(
            path=self.queue_file,
            exists=True,
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            task_count=len(document.tasks),
        )


def read_queue_document(path: Path) -> QueueDocument:
    """Read and validate a queue-shaped JSON document (used for imports)."""

    return _read_document(path)


def _read_document(path: Path) -> QueueDocument:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise QueueIntegrityError(f"Invalid JSON in queue file: {path}") from error
    if not isinstance(payload, dict):
        raise QueueIntegrityError(f"Expected JSON object in {path}")
    tasks = payload.get("tasks", [])
    if not isinstance(tasks, list):
        raise QueueIntegrityError(f"Queue document tasks must be an array: {path}")
    return QueueDocument(
        version=str(payload.get("version", QUEUE_DOCUMENT_VERSION)),
        timestamp=str(payload.get("timestamp", "")),
        tasks=tasks,
    )
