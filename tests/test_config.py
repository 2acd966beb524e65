from __future__ import annotations

from pathlib import Path

import allure
import pytest

from auto_resume_queue.config import LockSettings, QueueSettings, Settings

pytestmark = [
    allure.epic("Queue Core"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults() -> None:
    settings = Settings.from_env()

    assert settings.queue_dir == Path("queue")
    assert settings.queue_file == Path("queue/task-queue.json")
    assert settings.lock.max_age_seconds == 300
    assert settings.workflow.max_step_retries == 3
    assert settings.workflow.max_workflow_retries == 5
    assert settings.cleanup.completed_retention_days == 7
    assert settings.cleanup.failed_retention_days == 14
    assert settings.queue.backup_before_save is True


def test_from_env_reads_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("AUTO_RESUME_QUEUE_DIR", str(tmp_path / "q"))
    monkeypatch.setenv("AUTO_RESUME_QUEUE_MAX_SIZE", "100")
    monkeypatch.setenv("AUTO_RESUME_LOCK_MAX_AGE_SECONDS", "600")
    monkeypatch.setenv("AUTO_RESUME_BACKUP_BEFORE_SAVE", "off")
    monkeypatch.setenv("AUTO_RESUME_WORKFLOW_USAGE_LIMIT_COOLDOWN_SECONDS", "60")

    settings = Settings.from_env()

    assert settings.queue_dir == tmp_path / "q"
    assert settings.queue.max_size == 100
    assert settings.lock.max_age_seconds == 600
    assert settings.queue.backup_before_save is False
    assert settings.workflow.usage_limit_cooldown_seconds == 60
    assert settings.lock_dir == tmp_path / "q" / "locks"
    assert settings.cleanup_marker == tmp_path / "q" / ".last_cleanup"


def test_explicit_queue_dir_wins_over_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("AUTO_RESUME_QUEUE_DIR", str(tmp_path / "env"))

    settings = Settings.from_env(queue_dir=tmp_path / "cli")

    assert settings.queue_dir == tmp_path / "cli"


def test_invalid_boolean_names_variable(monkeypatch) -> None:
    monkeypatch.setenv("AUTO_RESUME_BACKUP_BEFORE_SAVE", "maybe")

    with pytest.raises(ValueError, match="AUTO_RESUME_BACKUP_BEFORE_SAVE"):
        Settings.from_env()


def test_validate_rejects_negative_size_limit() -> None:
    settings = Settings(queue=QueueSettings(max_size=-1))

    with pytest.raises(ValueError, match="AUTO_RESUME_QUEUE_MAX_SIZE"):
        settings.validate()


def test_validate_rejects_non_positive_lock_timeout() -> None:
    settings = Settings(lock=LockSettings(timeout_seconds=0))

    with pytest.raises(ValueError, match="AUTO_RESUME_LOCK_TIMEOUT_SECONDS"):
        settings.validate()


def test_pre_save_backup_count_from_env_and_validated(monkeypatch) -> None:
    assert Settings.from_env().queue.pre_save_backups == 5
    monkeypatch.setenv("AUTO_RESUME_PRE_SAVE_BACKUPS", "0")

    with pytest.raises(ValueError, match="AUTO_RESUME_PRE_SAVE_BACKUPS"):
        Settings.from_env().validate()
