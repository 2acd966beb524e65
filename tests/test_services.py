from __future__ import annotations

import json
import multiprocessing
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from auto_resume_queue.config import Settings
from auto_resume_queue.queue.models import TaskStatus
from auto_resume_queue.queue.persistence import QueueIntegrityError, task_to_record
from auto_resume_queue.queue.services import ImportMode, QueueOperation, QueueService
from tests.conftest import BASE_TIME, make_task

pytestmark = [
    allure.epic("Queue Core"),
    allure.feature("Locked Operations"),
]


def test_execute_holds_queue_lock_during_mutation(service: QueueService) -> None:
    seen: list[bool] = []

    def _mutation(manager) -> None:
        seen.append(service.locks.is_held_by_current_process("queue"))
        seen.append(service.locks.is_held_by_current_process("batch"))
        manager.add_task(make_task("t1"))

    service.execute(QueueOperation.ADD_TASK, _mutation)

    assert seen == [True, False]
    assert service.locks.list_locks() == []
    assert service.load().task_exists("t1")


def test_batch_operation_takes_outer_lock_first(service: QueueService) -> None:
    seen: list[bool] = []

    def _mutation(manager) -> None:
        seen.append(service.locks.is_held_by_current_process("batch"))
        seen.append(service.locks.is_held_by_current_process("queue"))

    service.execute(QueueOperation.BATCH, _mutation)

    assert seen == [True, True]


def test_failed_mutation_releases_lock_and_writes_nothing(service: QueueService) -> None:
    service.add_task(make_task("keep"))
    before = service.store.queue_file.read_text("utf-8")

    def _mutation(manager) -> None:
        manager.add_task(make_task("lost"))
        raise RuntimeError("mutation failed")

    with pytest.raises(RuntimeError, match="mutation failed"):
        service.execute(QueueOperation.ADD_TASK, _mutation)

    assert service.store.queue_file.read_text("utf-8") == before
    assert service.locks.list_locks() == []


def test_writes_keep_backup_of_previous_document(service: QueueService) -> None:
    service.add_task(make_task("first"))
    assert service.store.list_backups() == []

    service.add_task(make_task("second"))

    backups = service.store.list_backups()
    assert len(backups) == 1
    assert [item["id"] for item in json.loads(backups[0].read_text("utf-8"))["tasks"]] == [
        "first",
    ]


def test_repeated_status_updates_keep_a_bounded_backup_set(service: QueueService) -> None:
    service.add_task(make_task("busy"))

    for status in [TaskStatus.IN_PROGRESS, TaskStatus.PENDING] * 10:
        service.update_task_status("busy", status)

    backups = service.store.list_backups()
    assert len(backups) == service.store.pre_save_backups == 5
    assert all(path.name.startswith("backup-before-save-") for path in backups)


def test_creation_order_within_one_second_survives_reload(service: QueueService) -> None:
    service.add_task(make_task("zzz-first", created_at=BASE_TIME + timedelta(milliseconds=100)))
    service.add_task(make_task("aaa-second", created_at=BASE_TIME + timedelta(milliseconds=900)))

    reloaded = service.load()

    assert reloaded.get_task("zzz-first").created_at == BASE_TIME + timedelta(milliseconds=100)
    assert reloaded.get_next_task().id == "zzz-first"


def test_cached_reads_follow_locked_writes(service: QueueService) -> None:
    assert service.get_task("t1") is None

    service.add_task(make_task("t1"))
    service.update_task_status("t1", TaskStatus.COMPLETED)

    assert service.get_task("t1").status == TaskStatus.COMPLETED


def test_import_merge_and_replace(service: QueueService, tmp_path) -> None:
    service.add_tasks([make_task("existing"), make_task("shared")])
    source = tmp_path / "import.json"
    source.write_text(
        json.dumps(
            {
                "version": "2.0.0",
                "timestamp": "2026-03-01T12:00:00+00:00",
                "tasks": [
                    task_to_record(make_task("shared", status=TaskStatus.FAILED)),
                    task_to_record(make_task("new")),
                ],
            },
        ),
        "utf-8",
    )

    assert service.import_json(source) == 2
    merged = service.load()
    assert sorted(task.id for task in merged.tasks) == ["existing", "new", "shared"]
    assert merged.get_task("shared").status == TaskStatus.FAILED

    service.import_json(source, mode=ImportMode.REPLACE)
    assert sorted(task.id for task in service.load().tasks) == ["new", "shared"]


def test_import_rejects_invalid_records_before_touching_queue(
    service: QueueService,
    tmp_path,
) -> None:
    service.add_task(make_task("keep"))
    source = tmp_path / "bad.json"
    source.write_text(json.dumps({"tasks": [{"id": "x"}]}), "utf-8")

    with pytest.raises(QueueIntegrityError):
        service.import_json(source, mode=ImportMode.REPLACE)

    assert [task.id for task in service.load().tasks] == ["keep"]


def test_restore_backup_replaces_document(service: QueueService) -> None:
    service.add_task(make_task("original"))
    backup = service.store.create_backup(suffix="manual")
    service.remove_task("original")
    service.add_task(make_task("later"))

    service.restore_backup(backup)

    assert [task.id for task in service.load().tasks] == ["original"]
    assert service.get_task("later") is None
    assert service.locks.list_locks() == []


def test_remove_unknown_task_propagates(service: QueueService) -> None:
    with pytest.raises(RuntimeError, match="Task not found"):
        service.remove_task("nope")


def test_clear_queue_counts_removed_tasks(service: QueueService) -> None:
    service.add_tasks([make_task("a"), make_task("b")])

    assert service.clear_queue() == 2
    assert len(service.load()) == 0


def test_concurrent_processes_keep_every_added_task(tmp_path) -> None:
    context = multiprocessing.get_context("spawn")
    workers = [
        context.Process(target=_add_tasks_worker, args=(str(tmp_path / "queue"), number))
        for number in range(3)
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)

    assert [worker.exitcode for worker in workers] == [0, 0, 0]
    service = QueueService.from_settings(Settings(queue_dir=tmp_path / "queue"))
    assert len(service.load()) == 3 * _TASKS_PER_WORKER


_TASKS_PER_WORKER = 5


def _add_tasks_worker(queue_dir: str, number: int) -> None:
    service = QueueService.from_settings(Settings(queue_dir=Path(queue_dir)))
    for index in range(_TASKS_PER_WORKER):
        service.add_task(make_task(f"w{number}-{index}"))
