"""CLI entrypoint for auto-resume-queue."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from auto_resume_queue import __version__
from auto_resume_queue.queue.controllers import (
    LOCK_RESOURCES,
    CleanupHistoryCommand,
    CleanupRunCommand,
    LockCliController,
    LockCommand,
    MaintenanceCliController,
    QueueAddIssueCommand,
    QueueCliController,
    QueueDirCommand,
    QueueFileCommand,
    QueueImportCommand,
    QueueListCommand,
    QueueTaskCommand,
    WorkflowCliController,
    WorkflowCommand,
    WorkflowCreateIssueMergeCommand,
    WorkflowListCommand,
    WorkflowResumeCommand,
)
from auto_resume_queue.queue.models import TaskStatus, TaskType
from auto_resume_queue.queue.services import ImportMode

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
LOCK_CONTROLLER = LockCliController()
MAINTENANCE_CONTROLLER = MaintenanceCliController()
WORKFLOW_CONTROLLER = WorkflowCliController()

queue_dir_option = click.option(
    "--queue-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Queue directory. Defaults to AUTO_RESUME_QUEUE_DIR or `queue`.",
)
resource_option = click.option(
    "--resource",
    type=click.Choice(LOCK_RESOURCES),
    default="queue",
    show_default=True,
    help="Lock resource name.",
)


@click.group()
@click.version_option(version=__version__, prog_name="auto-resume-queue")
def auto_resume_queue() -> None:
    """Persistent task queue with locking, workflows and maintenance."""


@auto_resume_queue.group()
def queue() -> None:
    """Queue inspection and editing commands."""


@queue.command("status")
@queue_dir_option
def queue_status(queue_dir: Path | None) -> None:
    """Show queue file facts and per-status counts."""

    _emit(lambda: QUEUE_CONTROLLER.status(QueueDirCommand(queue_dir=queue_dir)))


@queue.command("list")
@queue_dir_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only tasks with this status.",
)
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType]),
    default=None,
    help="Only tasks of this type.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def queue_list(
    queue_dir: Path | None,
    status: str | None,
    task_type: str | None,
    limit: int,
) -> None:
    """List tasks, oldest first."""

    _emit(
        lambda: QUEUE_CONTROLLER.list_tasks(
            QueueListCommand(
                queue_dir=queue_dir,
                status=status,
                task_type=task_type,
                limit=limit,
            ),
        ),
    )


@queue.command("add-issue")
@queue_dir_option
@click.argument("issue_number", type=click.IntRange(min=1))
@click.option("--priority", default="normal", show_default=True, help="Task priority.")
def queue_add_issue(queue_dir: Path | None, issue_number: int, priority: str) -> None:
    """Queue a GitHub issue task."""

    _emit(
        lambda: QUEUE_CONTROLLER.add_issue(
            QueueAddIssueCommand(
                queue_dir=queue_dir,
                issue_number=issue_number,
                priority=priority,
            ),
        ),
    )


@queue.command("remove")
@queue_dir_option
@click.argument("task_id")
def queue_remove(queue_dir: Path | None, task_id: str) -> None:
    """Remove one task by id."""

    _emit(lambda: QUEUE_CONTROLLER.remove(QueueTaskCommand(queue_dir=queue_dir, task_id=task_id)))


@queue.command("backup")
@queue_dir_option
def queue_backup(queue_dir: Path | None) -> None:
    """Snapshot the queue file into the backups directory."""

    _emit(lambda: QUEUE_CONTROLLER.backup(QueueDirCommand(queue_dir=queue_dir)))


@queue.command("restore")
@queue_dir_option
@click.argument("backup_path", type=click.Path(dir_okay=False, path_type=Path))
def queue_restore(queue_dir: Path | None, backup_path: Path) -> None:
    """Replace the queue file with a backup (the current file is backed up first)."""

    _emit(
        lambda: QUEUE_CONTROLLER.restore(QueueFileCommand(queue_dir=queue_dir, path=backup_path)),
    )


@queue.command("backups")
@queue_dir_option
def queue_backups(queue_dir: Path | None) -> None:
    """List backups, newest first."""

    _emit(lambda: QUEUE_CONTROLLER.backups(QueueDirCommand(queue_dir=queue_dir)))


@queue.command("export")
@queue_dir_option
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
def queue_export(queue_dir: Path | None, path: Path) -> None:
    """Export the queue document to a JSON file."""

    _emit(lambda: QUEUE_CONTROLLER.export(QueueFileCommand(queue_dir=queue_dir, path=path)))


@queue.command("import")
@queue_dir_option
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ImportMode]),
    default=ImportMode.MERGE.value,
    show_default=True,
    help="`merge` upserts by id, `replace` clears the queue first.",
)
def queue_import(queue_dir: Path | None, path: Path, mode: str) -> None:
    """Import tasks from an exported JSON file."""

    _emit(
        lambda: QUEUE_CONTROLLER.import_tasks(
            QueueImportCommand(queue_dir=queue_dir, path=path, mode=mode),
        ),
    )


@auto_resume_queue.group()
def lock() -> None:
    """Lock inspection and recovery commands."""


@lock.command("status")
@queue_dir_option
def lock_status(queue_dir: Path | None) -> None:
    """List held locks with owner details."""

    _emit(lambda: LOCK_CONTROLLER.status(QueueDirCommand(queue_dir=queue_dir)))


@lock.command("diagnose")
@queue_dir_option
@resource_option
def lock_diagnose(queue_dir: Path | None, resource: str) -> None:
    """Show everything known about one lock."""

    _emit(lambda: LOCK_CONTROLLER.diagnose(LockCommand(queue_dir=queue_dir, resource=resource)))


@lock.command("force-unlock")
@queue_dir_option
@resource_option
def lock_force_unlock(queue_dir: Path | None, resource: str) -> None:
    """Remove a lock regardless of its owner."""

    _emit(
        lambda: LOCK_CONTROLLER.force_unlock(LockCommand(queue_dir=queue_dir, resource=resource)),
    )


@lock.command("cleanup")
@queue_dir_option
def lock_cleanup(queue_dir: Path | None) -> None:
    """Reclaim locks whose owner is dead or which are too old."""

    _emit(lambda: LOCK_CONTROLLER.cleanup(QueueDirCommand(queue_dir=queue_dir)))


@auto_resume_queue.group()
def cleanup() -> None:
    """Maintenance commands."""


@cleanup.command("run")
@queue_dir_option
@click.option("--force", is_flag=True, help="Run even if the last cleanup is recent.")
def cleanup_run(queue_dir: Path | None, force: bool) -> None:
    """Run retention, sweeps, integrity repair and size enforcement."""

    _emit(lambda: MAINTENANCE_CONTROLLER.run(CleanupRunCommand(queue_dir=queue_dir, force=force)))


@cleanup.command("history")
@queue_dir_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=10,
    show_default=True,
    help="How many reports to show.",
)
def cleanup_history(queue_dir: Path | None, limit: int) -> None:
    """Show saved cleanup reports, newest first."""

    _emit(
        lambda: MAINTENANCE_CONTROLLER.history(
            CleanupHistoryCommand(queue_dir=queue_dir, limit=limit),
        ),
    )


@auto_resume_queue.group()
def workflow() -> None:
    """Workflow management commands."""


@workflow.command("create-issue-merge")
@queue_dir_option
@click.argument("issue_id")
def workflow_create_issue_merge(queue_dir: Path | None, issue_id: str) -> None:
    """Queue a develop, clear, review and merge workflow for an issue."""

    _emit(
        lambda: WORKFLOW_CONTROLLER.create_issue_merge(
            WorkflowCreateIssueMergeCommand(queue_dir=queue_dir, issue_id=issue_id),
        ),
    )


@workflow.command("status")
@queue_dir_option
@click.argument("workflow_id")
def workflow_status(queue_dir: Path | None, workflow_id: str) -> None:
    """Show progress, timing and errors of one workflow."""

    _emit(
        lambda: WORKFLOW_CONTROLLER.status(
            WorkflowCommand(queue_dir=queue_dir, workflow_id=workflow_id),
        ),
    )


@workflow.command("list")
@queue_dir_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only workflows with this status.",
)
def workflow_list(queue_dir: Path | None, status: str | None) -> None:
    """List workflows, oldest first."""

    _emit(
        lambda: WORKFLOW_CONTROLLER.list_workflows(
            WorkflowListCommand(queue_dir=queue_dir, status=status),
        ),
    )


@workflow.command("pause")
@queue_dir_option
@click.argument("workflow_id")
def workflow_pause(queue_dir: Path | None, workflow_id: str) -> None:
    """Stop a workflow before its next step."""

    _emit(
        lambda: WORKFLOW_CONTROLLER.pause(
            WorkflowCommand(queue_dir=queue_dir, workflow_id=workflow_id),
        ),
    )


@workflow.command("resume")
@queue_dir_option
@click.argument("workflow_id")
@click.option(
    "--from-step",
    type=click.IntRange(min=0),
    default=None,
    help="Restart at this zero-based step; earlier steps are marked completed.",
)
def workflow_resume(queue_dir: Path | None, workflow_id: str, from_step: int | None) -> None:
    """Make a paused or failed workflow pending again."""

    _emit(
        lambda: WORKFLOW_CONTROLLER.resume(
            WorkflowResumeCommand(
                queue_dir=queue_dir,
                workflow_id=workflow_id,
                from_step=from_step,
            ),
        ),
    )


@workflow.command("cancel")
@queue_dir_option
@click.argument("workflow_id")
def workflow_cancel(queue_dir: Path | None, workflow_id: str) -> None:
    """Mark a workflow failed with a cancellation reason."""

    _emit(
        lambda: WORKFLOW_CONTROLLER.cancel(
            WorkflowCommand(queue_dir=queue_dir, workflow_id=workflow_id),
        ),
    )


def _emit(run: Callable[[], list[str]]) -> None:
    try:
        lines = run()
    except (ValueError, RuntimeError, FileNotFoundError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_resume_queue()
