"""Controllers for queue, lock, cleanup and workflow CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from auto_resume_queue.common import to_iso
from auto_resume_queue.config import Settings
from auto_resume_queue.queue.cleanup import QueueMaintenance
from auto_resume_queue.queue.models import (
    LockKind,
    Task,
    TaskStatus,
    TaskType,
)
from auto_resume_queue.queue.services import ImportMode, QueueOperation, QueueService
from auto_resume_queue.queue.workflow import WorkflowEngine


@dataclass(slots=True)
class QueueDirCommand:
    """CLI inputs for commands that only need the queue directory."""

    queue_dir: Path | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI inputs for task listing."""

    queue_dir: Path | None
    status: str | None
    task_type: str | None
    limit: int


@dataclass(slots=True)
class QueueAddIssueCommand:
    queue_dir: Path | None
    issue_number: int
    priority: str


@dataclass(slots=True)
class QueueTaskCommand:
    """CLI inputs for commands addressing one task."""

    queue_dir: Path | None
    task_id: str


@dataclass(slots=True)
class QueueFileCommand:
    """CLI inputs for backup restore and export."""

    queue_dir: Path | None
    path: Path


@dataclass(slots=True)
class QueueImportCommand:
    queue_dir: Path | None
    path: Path
    mode: str


@dataclass(slots=True)
class LockCommand:
    """CLI inputs for single-lock commands."""

    queue_dir: Path | None
    resource: str


@dataclass(slots=True)
class CleanupRunCommand:
    queue_dir: Path | None
    force: bool


@dataclass(slots=True)
class CleanupHistoryCommand:
    queue_dir: Path | None
    limit: int


@dataclass(slots=True)
class WorkflowCreateIssueMergeCommand:
    queue_dir: Path | None
    issue_id: str


@dataclass(slots=True)
class WorkflowCommand:
    """CLI inputs for commands addressing one workflow."""

    queue_dir: Path | None
    workflow_id: str


@dataclass(slots=True)
class WorkflowListCommand:
    queue_dir: Path | None
    status: str | None


@dataclass(slots=True)
class WorkflowResumeCommand:
    queue_dir: Path | None
    workflow_id: str
    from_step: int | None


class QueueCliController:
    """Coordinates queue command execution."""

    def status(self, command: QueueDirCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        file_stats = service.store.file_stats()
        manager = service.load()
        stats = manager.get_queue_stats()
        next_task = manager.get_next_task()
        lines = [
            "Queue file: "
            f"path={file_stats.path} exists={'yes' if file_stats.exists else 'no'} "
            f"size_bytes={file_stats.size_bytes} "
            f"modified_at={to_iso(file_stats.modified_at) if file_stats.modified_at else '-'}",
            "Tasks: "
            f"total={stats.total} "
            + " ".join(f"{status.value}={stats.count(status)}" for status in TaskStatus),
            "Completion: "
            f"rate={stats.completion_rate_percent}% "
            f"avg_seconds={stats.average_completion_seconds}",
            f"Next task: {next_task.id if next_task is not None else '-'}",
        ]
        rejected = manager.rejected_records
        if rejected:
            lines.append(f"Malformed records awaiting repair: {len(rejected)}")
        return lines

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        status = _parse_status(command.status)
        task_type = _parse_task_type(command.task_type)
        tasks = service.load().list_tasks(status=status, task_type=task_type)
        if not tasks:
            return ["No tasks found."]
        return [_format_task(task) for task in tasks[: command.limit]]

    def add_issue(self, command: QueueAddIssueCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        task = service.execute(
            QueueOperation.ADD_TASK,
            lambda manager: manager.create_github_issue_task(
                command.issue_number,
                priority=command.priority,
            ),
        )
        return [f"Task queued: {task.id} (issue #{command.issue_number})"]

    def remove(self, command: QueueTaskCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        service.remove_task(command.task_id)
        return [f"Task removed: {command.task_id}"]

    def backup(self, command: QueueDirCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        path = service.store.create_backup()
        if path is None:
            return ["Nothing to back up: queue file does not exist."]
        return [f"Backup created: {path}"]

    def restore(self, command: QueueFileCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        service.restore_backup(command.path)
        return [f"Queue restored from: {command.path}"]

    def backups(self, command: QueueDirCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        paths = service.store.list_backups()
        if not paths:
            return ["No backups found."]
        return [f"{path.name} size_bytes={path.stat().st_size}" for path in reversed(paths)]

    def export(self, command: QueueFileCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        count = service.store.export_json(command.path)
        return [f"Exported {count} tasks to {command.path}"]

    def import_tasks(self, command: QueueImportCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        count = service.import_json(command.path, mode=ImportMode(command.mode))
        return [f"Imported {count} tasks from {command.path} (mode={command.mode})"]


class LockCliController:
    """Coordinates lock inspection and recovery commands."""

    def status(self, command: QueueDirCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        locks = service.locks.list_locks()
        if not locks:
            return ["No locks held."]
        lines = []
        for info in locks:
            age = service.locks.lock_age_seconds(info)
            lines.append(
                f"{info.resource}: pid={info.pid if info.pid is not None else '-'} "
                f"host={info.hostname or '-'} user={info.user or '-'} "
                f"operation={info.operation or '-'} "
                f"age={f'{age:.1f}s' if age is not None else '-'}",
            )
        return lines

    def diagnose(self, command: LockCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        return service.locks.diagnose(command.resource).render_lines()

    def force_unlock(self, command: LockCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        if service.locks.force_unlock(command.resource):
            return [f"Lock removed: {command.resource}"]
        return [f"Lock not held: {command.resource}"]

    def cleanup(self, command: QueueDirCommand) -> list[str]:
        _, service = _service(command.queue_dir)
        reclaimed = service.locks.cleanup_all_stale_locks()
        if not reclaimed:
            return ["No stale locks found."]
        return [f"Stale locks reclaimed: {', '.join(reclaimed)}"]


class MaintenanceCliController:
    """Coordinates cleanup command execution."""

    def run(self, command: CleanupRunCommand) -> list[str]:
        settings, service = _service(command.queue_dir)
        report = QueueMaintenance(service, settings).run_auto_cleanup(force=command.force)
        if report is None:
            return [
                "Cleanup skipped: last run is within "
                f"{settings.cleanup.interval_hours}h. Use --force to run now.",
            ]
        lines = [f"Cleanup completed: total={report.total}"]
        lines.extend(f"  {name}={count}" for name, count in report.operations.items())
        return lines

    def history(self, command: CleanupHistoryCommand) -> list[str]:
        settings, service = _service(command.queue_dir)
        reports = QueueMaintenance(service, settings).get_cleanup_history(command.limit)
        if not reports:
            return ["No cleanup reports found."]
        return [
            f"{to_iso(report.started_at)} total={report.total} "
            + " ".join(f"{name}={count}" for name, count in report.operations.items())
            for report in reports
        ]


class WorkflowCliController:
    """Coordinates workflow management commands (execution needs a session driver)."""

    def create_issue_merge(self, command: WorkflowCreateIssueMergeCommand) -> list[str]:
        engine = _engine(command.queue_dir)
        workflow = engine.create_issue_merge_workflow(command.issue_id)
        lines = [f"Workflow created: {workflow.id}"]
        lines.extend(
            f"  {index}. {step.phase}: {step.command}"
            for index, step in enumerate(workflow.steps, start=1)
        )
        return lines

    def status(self, command: WorkflowCommand) -> list[str]:
        engine = _engine(command.queue_dir)
        detailed = engine.get_workflow_detailed_status(command.workflow_id)
        return json.dumps(detailed, indent=2, sort_keys=True).splitlines()

    def list_workflows(self, command: WorkflowListCommand) -> list[str]:
        engine = _engine(command.queue_dir)
        workflows = engine.list_workflows(status=_parse_status(command.status))
        if not workflows:
            return ["No workflows found."]
        return [
            f"{workflow.id} type={workflow.workflow_type.value} status={workflow.status.value} "
            f"step={workflow.current_step}/{len(workflow.steps)} "
            f"errors={len(workflow.error_history)}"
            for workflow in workflows
        ]

    def pause(self, command: WorkflowCommand) -> list[str]:
        _engine(command.queue_dir).pause_workflow(command.workflow_id)
        return [f"Workflow paused: {command.workflow_id}"]

    def resume(self, command: WorkflowResumeCommand) -> list[str]:
        engine = _engine(command.queue_dir)
        if command.from_step is None:
            engine.resume_workflow(command.workflow_id)
            return [f"Workflow resumed: {command.workflow_id}"]
        engine.resume_workflow_from_step(command.workflow_id, command.from_step)
        return [f"Workflow resumed from step {command.from_step}: {command.workflow_id}"]

    def cancel(self, command: WorkflowCommand) -> list[str]:
        _engine(command.queue_dir).cancel_workflow(command.workflow_id)
        return [f"Workflow cancelled: {command.workflow_id}"]


LOCK_RESOURCES = tuple(kind.value for kind in LockKind)


def _service(queue_dir: Path | None) -> tuple[Settings, QueueService]:
    settings = Settings.from_env(queue_dir=queue_dir)
    return settings, QueueService.from_settings(settings)


def _engine(queue_dir: Path | None) -> WorkflowEngine:
    settings, service = _service(queue_dir)
    return WorkflowEngine.from_settings(settings, service=service)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _parse_task_type(value: str | None) -> TaskType | None:
    if value is None:
        return None
    try:
        return TaskType(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task type: {value!r}") from error


def _format_task(task: Task) -> str:
    return (
        f"{task.id} type={task.type.value} status={task.status.value} "
        f"priority={task.priority} retries={task.retry_count} "
        f"created_at={to_iso(task.created_at)}"
    )
