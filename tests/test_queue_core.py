from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from auto_resume_queue.common import generate_task_id, to_iso
from auto_resume_queue.queue.core import NextTaskFilter, QueueManager
from auto_resume_queue.queue.models import (
    PRIORITY_HIGH,
    TaskStatus,
    TaskType,
    validate_task_id,
)
from auto_resume_queue.queue.persistence import task_to_record
from tests.conftest import BASE_TIME, FakeClock, make_task

pytestmark = [
    allure.epic("Queue Core"),
    allure.feature("Task Store"),
]


def _manager(clock: FakeClock | None = None) -> QueueManager:
    return QueueManager(now=clock or FakeClock())


def test_round_trip_through_records_preserves_tasks() -> None:
    manager = _manager()
    manager.add_task(make_task("a", created_at=BASE_TIME))
    manager.add_task(make_task("b", created_at=BASE_TIME + timedelta(minutes=1)))

    reloaded = _manager()
    reloaded.load_records(manager.to_records())

    assert [task.id for task in reloaded.list_tasks()] == ["a", "b"]
    assert reloaded.get_task("a") == manager.get_task("a")


def test_add_task_upserts_existing_id() -> None:
    manager = _manager()
    manager.add_task(make_task("same"))

    manager.add_task(make_task("same", priority=PRIORITY_HIGH))

    assert len(manager) == 1
    assert manager.get_task("same").priority == PRIORITY_HIGH


def test_add_task_from_mapping_requires_fields() -> None:
    manager = _manager()

    with pytest.raises(ValueError, match="missing required fields: status"):
        manager.add_task({"id": "x", "type": "custom", "created_at": to_iso(BASE_TIME)})


def test_add_task_from_mapping_builds_typed_task() -> None:
    manager = _manager()

    task = manager.add_task(
        {
            "id": "from-map",
            "type": "custom",
            "status": "pending",
            "created_at": BASE_TIME,
            "metadata": {"note": "hi"},
        },
    )

    assert task.type == TaskType.CUSTOM
    assert task.metadata == {"note": "hi"}


def test_remove_unknown_task_raises() -> None:
    with pytest.raises(RuntimeError, match="Task not found: ghost"):
        _manager().remove_task("ghost")


def test_get_next_task_is_fifo_by_creation_time_with_id_tiebreak() -> None:
    manager = _manager()
    manager.add_task(make_task("c", created_at=BASE_TIME))
    manager.add_task(make_task("b", created_at=BASE_TIME))
    manager.add_task(make_task("a", created_at=BASE_TIME + timedelta(seconds=1)))
    manager.add_task(make_task("old-done", status=TaskStatus.COMPLETED, created_at=BASE_TIME))

    assert manager.get_next_task().id == "b"


def test_get_next_task_high_priority_filter() -> None:
    manager = _manager()
    manager.add_task(make_task("normal", created_at=BASE_TIME))
    manager.add_task(
        make_task("urgent", created_at=BASE_TIME + timedelta(hours=1), priority=PRIORITY_HIGH),
    )

    assert manager.get_next_task(NextTaskFilter.HIGH_PRIORITY).id == "urgent"
    assert _manager().get_next_task() is None


def test_queue_stats_after_completing_a_task() -> None:
    clock = FakeClock()
    manager = _manager(clock)
    for task_id in ("t1", "t2", "t3"):
        manager.add_task(make_task(task_id))

    manager.update_task_status("t2", TaskStatus.IN_PROGRESS)
    clock.advance(seconds=90)
    manager.update_task_status("t2", TaskStatus.COMPLETED)

    stats = manager.get_queue_stats()
    assert stats.total == 3
    assert stats.count(TaskStatus.PENDING) == 2
    assert stats.count(TaskStatus.COMPLETED) == 1
    assert stats.completion_rate_percent == 33
    assert stats.average_completion_seconds == 90
    task = manager.get_task("t2")
    assert task.metadata["completed_at"] == to_iso(clock())


def test_update_status_rejects_unknown_status() -> None:
    manager = _manager()
    manager.add_task(make_task("t"))

    with pytest.raises(ValueError, match="Unsupported task status"):
        manager.update_task_status("t", "exploded")


def test_malformed_records_are_kept_until_integrity_repair() -> None:
    good = task_to_record(make_task("good"))
    records = [good, {"id": "bad", "type": "nope"}, "not-a-record", dict(good)]
    manager = _manager()

    manager.load_records(records)

    assert [task.id for task in manager.tasks] == ["good"]
    assert len(manager.rejected_records) == 3
    assert len(manager.to_records()) == 4

    report = manager.validate_queue_integrity()

    assert report.fixed == 3
    assert {item.label for item in report.removed} == {"bad", "<record #2>", "good"}
    assert len(manager.to_records()) == 1


def test_integrity_repair_drops_unserializable_metadata() -> None:
    manager = _manager()
    task = make_task("weird")
    task.metadata["handle"] = object()
    manager._tasks[task.id] = task

    report = manager.validate_queue_integrity()

    assert report.fixed == 1
    assert manager.task_exists("weird") is False


def test_retry_accounting() -> None:
    manager = QueueManager(max_retries=2, now=FakeClock())
    manager.add_task(make_task("flaky"))

    manager.record_task_error("flaky", "boom")

    assert manager.get_task("flaky").status == TaskStatus.FAILED
    assert manager.get_task("flaky").metadata["last_error"] == "boom"
    assert manager.check_retry_eligibility("flaky") is True
    assert manager.increment_retry_count("flaky") is True
    assert manager.increment_retry_count("flaky") is False
    assert manager.check_retry_eligibility("flaky") is False


def test_github_task_constructors() -> None:
    manager = _manager()

    issue = manager.create_github_issue_task(123)
    pr = manager.create_github_pr_task(7)

    assert issue.id == "issue-123"
    assert issue.type == TaskType.GITHUB_ISSUE
    assert issue.metadata == {"issue_number": 123, "command": "/dev 123"}
    assert pr.id == "pr-7"
    with pytest.raises(ValueError, match="positive integer"):
        manager.create_github_issue_task(0)


def test_list_tasks_filters_combine() -> None:
    manager = _manager()
    manager.add_task(make_task("i1", task_type=TaskType.GITHUB_ISSUE))
    manager.add_task(make_task("i2", task_type=TaskType.GITHUB_ISSUE, status=TaskStatus.FAILED))
    manager.add_task(make_task("c1"))

    issues = manager.list_tasks(task_type=TaskType.GITHUB_ISSUE, status=TaskStatus.PENDING)

    assert [task.id for task in issues] == ["i1"]


def test_clear_queue_and_priority_update() -> None:
    manager = _manager()
    manager.add_task(make_task("x"))
    manager.update_task_priority("x", " high ")
    assert manager.get_task("x").priority == "high"

    assert manager.clear_queue() == 1
    assert len(manager) == 0


@pytest.mark.parametrize("task_id", ["", "has space", "slash/id", "x" * 101])
def test_validate_task_id_rejects_unsafe_values(task_id: str) -> None:
    with pytest.raises(ValueError):
        validate_task_id(task_id)


def test_generate_task_id_shape() -> None:
    task_id = generate_task_id("workflow")

    prefix, timestamp, suffix = task_id.split("-")
    assert prefix == "workflow"
    assert timestamp.isdigit()
    assert 1000 <= int(suffix) <= 9999
    assert validate_task_id(task_id) == task_id


def test_high_priority_filter_never_returns_normal_task() -> None:
    manager = _manager()
    manager.add_task(
        {
            "id": "t1",
            "type": "custom",
            "status": "pending",
            "created_at": BASE_TIME,
            "priority": "normal",
        },
    )
    for task_id in ("t2", "t3"):
        manager.add_task(make_task(task_id, priority=PRIORITY_HIGH))

    assert manager.get_next_task("high_priority").id in {"t2", "t3"}
