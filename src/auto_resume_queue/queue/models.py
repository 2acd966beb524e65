"""Typed records for queued tasks, workflows and locks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"


class TaskType(str, Enum):
    """Kind of queued work."""

    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"
    CUSTOM = "custom"
    WORKFLOW = "workflow"


class TaskStatus(str, Enum):
    """Lifecycle status of one task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    PAUSED = "paused"


TERMINAL_FAILURE_STATUSES = (TaskStatus.FAILED, TaskStatus.TIMEOUT)


class StepStatus(str, Enum):
    """Lifecycle status of one workflow step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_STEP_STATUS_RANK = {
    StepStatus.PENDING: 0,
    StepStatus.IN_PROGRESS: 1,
    StepStatus.COMPLETED: 2,
    StepStatus.FAILED: 2,
}


class WorkflowType(str, Enum):
    """Supported workflow shapes."""

    ISSUE_MERGE = "issue-merge"
    CUSTOM = "custom"


class ErrorKind(str, Enum):
    """Workflow failure classes driving recovery policy."""

    NETWORK = "network_error"
    SESSION = "session_error"
    AUTH = "auth_error"
    SYNTAX = "syntax_error"
    USAGE_LIMIT = "usage_limit_error"
    TIMEOUT = "timeout_error"
    GENERIC = "generic_error"

    @property
    def recoverable(self) -> bool:
        return self not in (ErrorKind.AUTH, ErrorKind.SYNTAX)


class LockKind(str, Enum):
    """Typed lock resources guarding different classes of queue operations."""

    WRITE = "queue"
    BATCH = "batch"
    MAINTENANCE = "maintenance"
    CONFIG = "config"


@dataclass(slots=True)
class Task:
    """One unit of queued work."""

    id: str
    type: TaskType
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    priority: str = PRIORITY_NORMAL
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkflowStep:
    """One phase of a workflow with its own retry counter."""

    phase: str
    command: str
    status: StepStatus = StepStatus.PENDING
    description: str = ""
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    def advance(self, status: StepStatus) -> None:
        """Move step forward; statuses never move backwards during execution."""

        if _STEP_STATUS_RANK[status] < _STEP_STATUS_RANK[self.status]:
            raise ValueError(
                f"Step {self.phase} cannot move from {self.status.value} to {status.value}",
            )
        if self.status in (StepStatus.COMPLETED, StepStatus.FAILED) and status != self.status:
            raise ValueError(f"Step {self.phase} is already {self.status.value}")
        self.status = status


@dataclass(slots=True)
class ErrorRecord:
    """Append-only workflow failure entry."""

    step_index: int
    error_kind: ErrorKind
    message: str
    timestamp: datetime
    retry_count: int


@dataclass(slots=True)
class Checkpoint:
    """Full workflow snapshot taken at a notable execution point."""

    checkpoint_id: str
    workflow_id: str
    created_at: datetime
    reason: str
    workflow_state: dict[str, Any]


@dataclass(slots=True)
class Workflow(Task):
    """Task whose execution is an ordered sequence of steps."""

    workflow_type: WorkflowType = WorkflowType.CUSTOM
    config: dict[str, Any] = field(default_factory=dict)
    steps: list[WorkflowStep] = field(default_factory=list)
    current_step: int = 0
    results: dict[str, str] = field(default_factory=dict)
    error_history: list[ErrorRecord] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.current_step >= len(self.steps)


@dataclass(slots=True)
class QueueStats:
    """Aggregated queue counters for operator-facing status."""

    total: int
    by_status: dict[str, int]
    completion_rate_percent: int = 0
    average_completion_seconds: int = 0

    def count(self, status: TaskStatus) -> int:
        return self.by_status.get(status.value, 0)


@dataclass(slots=True)
class LockInfo:
    """Owner fields recorded inside one lock directory."""

    resource: str
    path: str
    pid: int | None
    timestamp: datetime | None
    hostname: str | None
    user: str | None
    operation: str | None


TASK_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
TASK_ID_MAX_LENGTH = 100


def validate_task_id(task_id: object) -> str:
    """Return task id when it uses the safe character set, raise otherwise."""

    if not isinstance(task_id, str) or not task_id:
        raise ValueError("Task id must be a non-empty string")
    if len(task_id) > TASK_ID_MAX_LENGTH:
        raise ValueError(f"Task id too long (max {TASK_ID_MAX_LENGTH} characters): {task_id}")
    if not TASK_ID_PATTERN.fullmatch(task_id):
        raise ValueError(f"Invalid task id format: {task_id!r}")
    return task_id
