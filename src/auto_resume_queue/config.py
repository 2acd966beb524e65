"""Runtime configuration for the task queue, locking and workflow engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

QUEUE_FILE_NAME = "task-queue.json"
DEFAULT_QUEUE_DIR = Path("queue")


@dataclass(slots=True)
class QueueSettings:
    """Queue document and retry budget settings."""

    max_size: int = 0
    max_retries: int = 3
    backup_before_save: bool = True
    pre_save_backups: int = 5


@dataclass(slots=True)
class LockSettings:
    """Lock acquisition and staleness settings."""

    timeout_seconds: float = 30.0
    max_age_seconds: float = 300.0
    retry_delay_seconds: float = 0.5
    retry_jitter_seconds: float = 0.25


@dataclass(slots=True)
class CacheSettings:
    """Process-local cache settings."""

    max_age_seconds: float = 300.0


@dataclass(slots=True)
class WorkflowSettings:
    """Workflow retry policy settings."""

    max_step_retries: int = 3
    max_workflow_retries: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    backoff_jitter_seconds: float = 3.0
    usage_limit_cooldown_seconds: float = 300.0
    step_delay_seconds: float = 5.0


@dataclass(slots=True)
class CleanupSettings:
    """Retention and maintenance schedule settings."""

    completed_retention_days: int = 7
    failed_retention_days: int = 14
    backup_retention_days: int = 30
    interval_hours: int = 24
    temp_file_max_age_seconds: int = 3_600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    queue_dir: Path = DEFAULT_QUEUE_DIR
    queue: QueueSettings = field(default_factory=QueueSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)

    @property
    def queue_file(self) -> Path:
        return self.queue_dir / QUEUE_FILE_NAME

    @property
    def backup_dir(self) -> Path:
        return self.queue_dir / "backups"

    @property
    def lock_dir(self) -> Path:
        return self.queue_dir / "locks"

    @property
    def reports_dir(self) -> Path:
        return self.queue_dir / "reports"

    @property
    def temp_dir(self) -> Path:
        return self.queue_dir / "tmp"

    @property
    def cleanup_marker(self) -> Path:
        return self.queue_dir / ".last_cleanup"

    @classmethod
    def from_env(cls, queue_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited for local runs."""

        return cls(
            queue_dir=queue_dir or Path(os.getenv("AUTO_RESUME_QUEUE_DIR", "queue")),
            queue=QueueSettings(
                max_size=int(os.getenv("AUTO_RESUME_QUEUE_MAX_SIZE", "0")),
                max_retries=int(os.getenv("AUTO_RESUME_MAX_RETRIES", "3")),
                backup_before_save=_env_bool("AUTO_RESUME_BACKUP_BEFORE_SAVE", default=True),
                pre_save_backups=int(os.getenv("AUTO_RESUME_PRE_SAVE_BACKUPS", "5")),
            ),
            lock=LockSettings(
                timeout_seconds=float(os.getenv("AUTO_RESUME_LOCK_TIMEOUT_SECONDS", "30")),
                max_age_seconds=float(os.getenv("AUTO_RESUME_LOCK_MAX_AGE_SECONDS", "300")),
                retry_delay_seconds=float(
                    os.getenv("AUTO_RESUME_LOCK_RETRY_DELAY_SECONDS", "0.5"),
                ),
                retry_jitter_seconds=float(
                    os.getenv("AUTO_RESUME_LOCK_RETRY_JITTER_SECONDS", "0.25"),
                ),
            ),
            cache=CacheSettings(
                max_age_seconds=float(os.getenv("AUTO_RESUME_CACHE_MAX_AGE_SECONDS", "300")),
            ),
            workflow=WorkflowSettings(
                max_step_retries=int(os.getenv("AUTO_RESUME_WORKFLOW_MAX_STEP_RETRIES", "3")),
                max_workflow_retries=int(os.getenv("AUTO_RESUME_WORKFLOW_MAX_RETRIES", "5")),
                backoff_base_seconds=float(
                    os.getenv("AUTO_RESUME_WORKFLOW_BACKOFF_BASE_SECONDS", "5"),
                ),
                backoff_max_seconds=float(
                    os.getenv("AUTO_RESUME_WORKFLOW_BACKOFF_MAX_SECONDS", "300"),
                ),
                backoff_jitter_seconds=float(
                    os.getenv("AUTO_RESUME_WORKFLOW_BACKOFF_JITTER_SECONDS", "3"),
                ),
                usage_limit_cooldown_seconds=float(
                    os.getenv("AUTO_RESUME_WORKFLOW_USAGE_LIMIT_COOLDOWN_SECONDS", "300"),
                ),
                step_delay_seconds=float(
                    os.getenv("AUTO_RESUME_WORKFLOW_STEP_DELAY_SECONDS", "5"),
                ),
            ),
            cleanup=CleanupSettings(
                completed_retention_days=int(
                    os.getenv("AUTO_RESUME_CLEANUP_COMPLETED_DAYS", "7"),
                ),
                failed_retention_days=int(os.getenv("AUTO_RESUME_CLEANUP_FAILED_DAYS", "14")),
                backup_retention_days=int(
                    os.getenv("AUTO_RESUME_BACKUP_RETENTION_DAYS", "30"),
                ),
                interval_hours=int(os.getenv("AUTO_RESUME_CLEANUP_INTERVAL_HOURS", "24")),
                temp_file_max_age_seconds=int(
                    os.getenv("AUTO_RESUME_TEMP_FILE_MAX_AGE_SECONDS", "3600"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values that would break queue invariants."""

        if self.queue.max_size < 0:
            raise ValueError("AUTO_RESUME_QUEUE_MAX_SIZE must be >= 0.")
        if self.queue.max_retries < 0:
            raise ValueError("AUTO_RESUME_MAX_RETRIES must be >= 0.")
        if self.queue.pre_save_backups < 1:
            raise ValueError("AUTO_RESUME_PRE_SAVE_BACKUPS must be >= 1.")
        if self.lock.timeout_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.lock.max_age_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_MAX_AGE_SECONDS must be > 0.")
        if self.lock.retry_delay_seconds < 0 or self.lock.retry_jitter_seconds < 0:
            raise ValueError(
                "AUTO_RESUME_LOCK_RETRY_DELAY_SECONDS and "
                "AUTO_RESUME_LOCK_RETRY_JITTER_SECONDS must be >= 0.",
            )
        if self.cache.max_age_seconds <= 0:
            raise ValueError("AUTO_RESUME_CACHE_MAX_AGE_SECONDS must be > 0.")
        if self.workflow.max_step_retries < 0:
            raise ValueError("AUTO_RESUME_WORKFLOW_MAX_STEP_RETRIES must be >= 0.")
        if self.workflow.max_workflow_retries < 0:
            raise ValueError("AUTO_RESUME_WORKFLOW_MAX_RETRIES must be >= 0.")
        if self.workflow.usage_limit_cooldown_seconds < 0:
            raise ValueError("AUTO_RESUME_WORKFLOW_USAGE_LIMIT_COOLDOWN_SECONDS must be >= 0.")
        for name, value in (
            ("AUTO_RESUME_CLEANUP_COMPLETED_DAYS", self.cleanup.completed_retention_days),
            ("AUTO_RESUME_CLEANUP_FAILED_DAYS", self.cleanup.failed_retention_days),
            ("AUTO_RESUME_BACKUP_RETENTION_DAYS", self.cleanup.backup_retention_days),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        if self.cleanup.interval_hours <= 0:
            raise ValueError("AUTO_RESUME_CLEANUP_INTERVAL_HOURS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
