from __future__ import annotations

import json

import allure
import pytest

from auto_resume_queue.queue.cache import CacheRebuildError, QueueCache
from auto_resume_queue.queue.models import TaskStatus
from auto_resume_queue.queue.persistence import QueueStore, task_to_record
from tests.conftest import make_task

pytestmark = [
    allure.epic("Cache Layer"),
    allure.feature("Coherence"),
]


class _Clock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _seed(tmp_path, *tasks) -> QueueStore:
    store = QueueStore(tmp_path / "task-queue.json", tmp_path / "backups")
    store.save([task_to_record(task) for task in tasks])
    return store


def test_lookups_hit_cache_until_file_changes(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"), make_task("b", status=TaskStatus.COMPLETED))
    cache = QueueCache(store.queue_file)

    assert cache.get_task_by_id_cached("a").id == "a"
    assert cache.task_exists_cached("b") is True
    assert cache.task_exists_cached("zzz") is False

    stats = cache.get_cache_stats()
    assert stats.rebuilds == 1
    assert stats.misses == 1
    assert stats.hits == 2
    assert stats.entries == 2


def test_external_write_is_visible_on_next_read(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"))
    cache = QueueCache(store.queue_file)
    assert cache.task_exists_cached("new") is False

    store.save([task_to_record(make_task("a")), task_to_record(make_task("new"))])

    assert cache.task_exists_cached("new") is True
    assert cache.get_cache_stats().rebuilds == 2


def test_cache_expires_after_max_age(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"))
    clock = _Clock()
    cache = QueueCache(store.queue_file, max_age_seconds=300, clock=clock)
    cache.refresh_cache_if_needed()

    clock.value += 301

    assert cache.is_cache_valid() is False
    assert cache.refresh_cache_if_needed() is True


def test_stats_and_status_filters(tmp_path) -> None:
    store = _seed(
        tmp_path,
        make_task("p1"),
        make_task("p2"),
        make_task("done", status=TaskStatus.COMPLETED),
    )
    cache = QueueCache(store.queue_file)

    assert cache.get_queue_stats_cached() == {"total": 3, "pending": 2, "completed": 1}
    assert json.loads(cache.stats_summary_json)["total"] == 3
    assert cache.get_pending_count_cached() == 2
    pending = cache.get_tasks_by_status_cached(TaskStatus.PENDING)
    assert sorted(task.id for task in pending) == ["p1", "p2"]


def test_batch_lookup_skips_unknown_ids_and_keeps_document_order(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"), make_task("b"), make_task("c"))
    cache = QueueCache(store.queue_file)

    tasks = cache.process_tasks_batch(["c", "missing", "a", "c"])

    assert [task.id for task in tasks] == ["a", "c"]


def test_duplicate_ids_fall_back_to_direct_scan(tmp_path) -> None:
    store = _seed(tmp_path)
    record = task_to_record(make_task("dup"))
    store.queue_file.write_text(
        json.dumps({"version": "2.0.0", "timestamp": "", "tasks": [record, record]}),
        "utf-8",
    )
    cache = QueueCache(store.queue_file)

    assert cache.get_task_by_id_cached("dup").id == "dup"
    assert cache.get_queue_stats_cached() == {"total": 2, "pending": 2}
    assert cache.get_cache_stats().valid is False


def test_unreadable_document_surfaces_as_rebuild_error(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"))
    store.queue_file.write_text("{not json", "utf-8")
    cache = QueueCache(store.queue_file)

    with pytest.raises(CacheRebuildError, match="Cannot read queue document"):
        cache.get_task_by_id_cached("a")
    with pytest.raises(CacheRebuildError):
        cache.get_queue_stats_cached()
    with pytest.raises(CacheRebuildError):
        cache.process_tasks_batch(["a"])


def test_missing_queue_file_is_an_empty_index(tmp_path) -> None:
    cache = QueueCache(tmp_path / "absent.json")

    assert cache.get_task_by_id_cached("x") is None
    assert cache.get_queue_stats_cached() == {"total": 0}


def test_reset_cache_stats(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"))
    cache = QueueCache(store.queue_file)
    cache.task_exists_cached("a")

    cache.reset_cache_stats()

    stats = cache.get_cache_stats()
    assert (stats.hits, stats.misses, stats.rebuilds) == (0, 0, 0)
    assert stats.hit_ratio == 0.0


def test_file_change_invalidates_once_and_rebuild_matches_direct_scan(tmp_path) -> None:
    store = _seed(tmp_path, make_task("a"))
    cache = QueueCache(store.queue_file)
    cache.refresh_cache_if_needed()
    store.save(
        [
            task_to_record(make_task("a", status=TaskStatus.COMPLETED)),
            task_to_record(make_task("b")),
        ],
    )

    assert cache.is_cache_valid() is False
    assert cache.refresh_cache_if_needed() is True
    assert cache.is_cache_valid() is True
    assert cache.get_queue_stats_cached() == {"total": 2, "completed": 1, "pending": 1}
