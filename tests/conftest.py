"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from auto_resume_queue.config import LockSettings, Settings, WorkflowSettings
from auto_resume_queue.queue.models import PRIORITY_NORMAL, Task, TaskStatus, TaskType
from auto_resume_queue.queue.services import QueueService
from auto_resume_queue.queue.workflow import (
    CompletionStatus,
    StepContext,
    StepExecution,
    StepExecutionStatus,
)

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeLivenessChecker:
    """Liveness checker answering from a fixed set of live pids."""

    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive = {os.getpid()} if alive is None else set(alive)
        self.checked: list[int] = []

    def is_alive(self, pid: int) -> bool:
        self.checked.append(pid)
        return pid in self.alive


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    """Controllable UTC clock for `now=` constructor arguments."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeSession:
    """Scripted session driver: queued outcomes per phase, success when exhausted."""

    def __init__(
        self,
        script: dict[str, list[StepExecution]] | None = None,
        monitor: dict[str, list[CompletionStatus]] | None = None,
        on_execute: Callable[[StepContext], None] | None = None,
    ) -> None:
        self.script = {phase: list(items) for phase, items in (script or {}).items()}
        self.monitor = {phase: list(items) for phase, items in (monitor or {}).items()}
        self.on_execute = on_execute
        self.commands: list[str] = []
        self.contexts: list[StepContext] = []
        self.monitored: list[tuple[str, float]] = []

    def execute_step(self, command: str, phase: str, context: StepContext) -> StepExecution:
        self.commands.append(command)
        self.contexts.append(context)
        if self.on_execute is not None:
            self.on_execute(context)
        outcomes = self.script.get(phase)
        if outcomes:
            return outcomes.pop(0)
        return StepExecution(status=StepExecutionStatus.COMPLETED)

    def monitor_completion(
        self,
        phase: str,
        context: StepContext,
        timeout_seconds: float,
    ) -> CompletionStatus:
        self.monitored.append((phase, timeout_seconds))
        outcomes = self.monitor.get(phase)
        if outcomes:
            return outcomes.pop(0)
        return CompletionStatus.COMPLETED


def failed(output: str) -> StepExecution:
    return StepExecution(status=StepExecutionStatus.FAILED, output=output)


def make_task(
    task_id: str,
    *,
    status: TaskStatus = TaskStatus.PENDING,
    created_at: datetime = BASE_TIME,
    updated_at: datetime | None = None,
    priority: str = PRIORITY_NORMAL,
    task_type: TaskType = TaskType.CUSTOM,
) -> Task:
    return Task(
        id=task_id,
        type=task_type,
        status=status,
        created_at=created_at,
        updated_at=updated_at or created_at,
        priority=priority,
    )


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        queue_dir=tmp_path / "queue",
        lock=LockSettings(
            timeout_seconds=2.0,
            retry_delay_seconds=0.01,
            retry_jitter_seconds=0.0,
        ),
        workflow=WorkflowSettings(backoff_jitter_seconds=0.0),
    )


@pytest.fixture()
def liveness() -> FakeLivenessChecker:
    return FakeLivenessChecker()


@pytest.fixture()
def service(settings: Settings, liveness: FakeLivenessChecker) -> QueueService:
    return QueueService.from_settings(settings, liveness=liveness)


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("AUTO_RESUME_"):
            monkeypatch.delenv(name, raising=False)
