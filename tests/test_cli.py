from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from auto_resume_queue import __version__
from auto_resume_queue.main import auto_resume_queue

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Queue, Lock, Cleanup and Workflow Commands"),
]


def _invoke(queue_dir: Path, *args: str):
    runner = CliRunner()
    group, command, *rest = args
    return runner.invoke(auto_resume_queue, [group, command, "--queue-dir", str(queue_dir), *rest])


def test_version_option() -> None:
    result = CliRunner().invoke(auto_resume_queue, ["--version"])

    assert result.exit_code == 0
    assert f"auto-resume-queue, version {__version__}" in result.output


def test_queue_add_list_status_and_remove(tmp_path: Path) -> None:
    queue_dir = tmp_path / "queue"

    added = _invoke(queue_dir, "queue", "add-issue", "123", "--priority", "high")
    assert added.exit_code == 0, added.output
    assert "Task queued: issue-123 (issue #123)" in added.output

    listed = _invoke(queue_dir, "queue", "list", "--status", "pending")
    assert listed.exit_code == 0, listed.output
    assert "issue-123 type=github_issue status=pending priority=high" in listed.output

    status = _invoke(queue_dir, "queue", "status")
    assert status.exit_code == 0, status.output
    assert "total=1" in status.output
    assert "Next task: issue-123" in status.output

    removed = _invoke(queue_dir, "queue", "remove", "issue-123")
    assert removed.exit_code == 0, removed.output
    assert "Task removed: issue-123" in removed.output
    assert "No tasks found." in _invoke(queue_dir, "queue", "list").output


def test_errors_map_to_exit_code_one(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "queue", "queue", "remove", "ghost")

    assert result.exit_code == 1
    assert "Task not found: ghost" in result.output


def test_backup_export_import_and_restore(tmp_path: Path) -> None:
    queue_dir = tmp_path / "queue"
    _invoke(queue_dir, "queue", "add-issue", "1")

    backup = _invoke(queue_dir, "queue", "backup")
    assert backup.exit_code == 0, backup.output
    backup_path = next((queue_dir / "backups").glob("backup-*.json"))

    export_path = tmp_path / "export.json"
    exported = _invoke(queue_dir, "queue", "export", str(export_path))
    assert "Exported 1 tasks" in exported.output

    other_dir = tmp_path / "other"
    imported = _invoke(other_dir, "queue", "import", str(export_path), "--mode", "replace")
    assert imported.exit_code == 0, imported.output
    assert "Imported 1 tasks" in imported.output

    _invoke(queue_dir, "queue", "add-issue", "2")
    restored = _invoke(queue_dir, "queue", "restore", str(backup_path))
    assert restored.exit_code == 0, restored.output
    assert "issue-2" not in _invoke(queue_dir, "queue", "list").output
    assert backup_path.name in _invoke(queue_dir, "queue", "backups").output


def test_lock_commands(tmp_path: Path) -> None:
    queue_dir = tmp_path / "queue"

    assert "No locks held." in _invoke(queue_dir, "lock", "status").output
    assert "not held" in _invoke(queue_dir, "lock", "diagnose", "--resource", "batch").output
    assert "Lock not held: queue" in _invoke(queue_dir, "lock", "force-unlock").output
    assert "No stale locks found." in _invoke(queue_dir, "lock", "cleanup").output

    lock_dir = queue_dir / "locks" / "queue.lock.d"
    lock_dir.mkdir(parents=True)
    (lock_dir / "pid").write_text("1\n", "utf-8")
    (lock_dir / "hostname").write_text("remote-host\n", "utf-8")

    status = _invoke(queue_dir, "lock", "status")
    assert "queue: pid=1 host=remote-host" in status.output
    assert "Lock removed: queue" in _invoke(queue_dir, "lock", "force-unlock").output
    assert not lock_dir.exists()


def test_cleanup_run_and_history(tmp_path: Path) -> None:
    queue_dir = tmp_path / "queue"

    first = _invoke(queue_dir, "cleanup", "run")
    assert first.exit_code == 0, first.output
    assert "Cleanup completed: total=0" in first.output
    assert "completed_tasks=0" in first.output

    assert "Cleanup skipped" in _invoke(queue_dir, "cleanup", "run").output
    assert "Cleanup completed" in _invoke(queue_dir, "cleanup", "run", "--force").output

    history = _invoke(queue_dir, "cleanup", "history", "--limit", "5")
    assert history.exit_code == 0, history.output
    assert len([line for line in history.output.splitlines() if "total=0" in line]) == 2


def test_workflow_lifecycle_commands(tmp_path: Path) -> None:
    queue_dir = tmp_path / "queue"

    created = _invoke(queue_dir, "workflow", "create-issue-merge", "77")
    assert created.exit_code == 0, created.output
    workflow_id = created.output.splitlines()[0].removeprefix("Workflow created: ")
    assert "3. review: /review PR-77" in created.output

    status = _invoke(queue_dir, "workflow", "status", workflow_id)
    assert status.exit_code == 0, status.output
    detail = json.loads(status.output)
    assert detail["status"] == "pending"
    assert detail["progress"]["total_steps"] == 4

    assert "Workflow paused" in _invoke(queue_dir, "workflow", "pause", workflow_id).output
    listed = _invoke(queue_dir, "workflow", "list", "--status", "paused")
    assert f"{workflow_id} type=issue-merge status=paused step=0/4" in listed.output
    assert "Workflow resumed" in _invoke(queue_dir, "workflow", "resume", workflow_id).output

    rewound = _invoke(queue_dir, "workflow", "resume", workflow_id, "--from-step", "2")
    assert f"Workflow resumed from step 2: {workflow_id}" in rewound.output

    assert "Workflow cancelled" in _invoke(queue_dir, "workflow", "cancel", workflow_id).output
    again = _invoke(queue_dir, "workflow", "resume", workflow_id)
    assert again.exit_code == 1
    assert "is not paused" in again.output
