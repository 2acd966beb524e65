"""Multi-step workflow execution with error-kind specific recovery.

A workflow is a queued task whose steps are executed one at a time through an
external session driver. Every state change is persisted under the queue lock,
but the lock is never held while a step runs, so other processes can pause or
cancel a workflow mid-flight; the engine notices before starting the next step.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol, TypeVar

from auto_resume_queue.common import generate_task_id, to_iso, utc_now
from auto_resume_queue.config import Settings
from auto_resume_queue.queue.core import QueueManager
from auto_resume_queue.queue.failure_classifier import (
    WorkflowFailureClassification,
    classify_workflow_failure,
)
from auto_resume_queue.queue.models import (
    PRIORITY_NORMAL,
    Checkpoint,
    ErrorKind,
    ErrorRecord,
    StepStatus,
    TaskStatus,
    TaskType,
    Workflow,
    WorkflowStep,
    WorkflowType,
)
from auto_resume_queue.queue.persistence import task_to_record
from auto_resume_queue.queue.retrier import BackoffMode, Retrier
from auto_resume_queue.queue.services import QueueOperation, QueueService

logger = logging.getLogger(__name__)

T = TypeVar("T")

PHASE_TIMEOUTS_SECONDS: dict[str, float] = {
    "develop": 600,
    "clear": 30,
    "review": 480,
    "merge": 300,
}
DEFAULT_PHASE_TIMEOUT_SECONDS = 180.0
TIMEOUT_BACKOFF_FACTOR = 3.0
PRE_EXECUTION_CHECKPOINT = "pre_execution"
CANCELLATION_REASON = "user_cancelled"


class StepExecutionStatus(str, Enum):
    """Immediate outcome reported by the session driver."""

    COMPLETED = "completed"
    FAILED = "failed"
    RUNNING = "running"


class CompletionStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class StepContext:
    """What the session driver knows about the step it executes."""

    workflow_id: str
    step_index: int
    phase: str
    command: str
    attempt: int
    config: dict[str, Any]


@dataclass(slots=True)
class StepExecution:
    """Session driver result; `output` feeds error classification on failure."""

    status: StepExecutionStatus
    output: str = ""


class SessionError(RuntimeError):
    """Raised by session drivers when a command could not be delivered."""


class SessionDriver(Protocol):
    """External collaborator that runs commands in an interactive session."""

    def execute_step(self, command: str, phase: str, context: StepContext) -> StepExecution: ...

    def monitor_completion(
        self,
        phase: str,
        context: StepContext,
        timeout_seconds: float,
    ) -> CompletionStatus: ...


@dataclass(slots=True)
class WorkflowRunSummary:
    """Counters for one `execute_workflow` call."""

    workflow_id: str
    status: TaskStatus
    steps_completed: int = 0
    retries: int = 0
    errors: int = 0


@dataclass(slots=True)
class WorkflowStatusView:
    workflow_id: str
    workflow_type: str
    status: str
    current_step: int
    total_steps: int
    progress_percent: float


class _Decision(str, Enum):
    RETRY = "retry"
    COOLDOWN = "cooldown"
    FAIL = "fail"


@dataclass(slots=True)
class _FailureOutcome:
    decision: _Decision
    retry_number: int
    factor: float = 1.0


def phase_timeout_seconds(phase: str, overrides: dict[str, float] | None = None) -> float:
    """Monitoring timeout for a phase; unknown phases use the generic timeout."""

    table = {**PHASE_TIMEOUTS_SECONDS, **(overrides or {})}
    return float(table.get(phase, DEFAULT_PHASE_TIMEOUT_SECONDS))


def build_issue_merge_steps(issue_id: str) -> list[WorkflowStep]:
    return [
        WorkflowStep(
            phase="develop",
            command=f"/dev {issue_id}",
            description=f"Develop feature for issue {issue_id}",
        ),
        WorkflowStep(
            phase="clear",
            command="/clear",
            description="Clear context for clean review",
        ),
        WorkflowStep(
            phase="review",
            command=f"/review PR-{issue_id}",
            description=f"Review PR for issue {issue_id}",
        ),
        WorkflowStep(
            phase="merge",
            command=f"/dev merge-pr {issue_id} --focus-main",
            description="Merge PR with main functionality focus",
        ),
    ]


def build_custom_steps(config: dict[str, Any]) -> list[WorkflowStep]:
    raw_steps = config.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValueError("Custom workflow requires a non-empty steps list in config")
    steps: list[WorkflowStep] = []
    for position, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raise ValueError(f"Custom workflow step #{position} must be an object")
        phase = raw.get("phase")
        command = raw.get("command")
        if not isinstance(phase, str) or not phase.strip():
            raise ValueError(f"Custom workflow step #{position} requires a phase")
        if not isinstance(command, str) or not command.strip():
            raise ValueError(f"Custom workflow step #{position} requires a command")
        steps.append(
            WorkflowStep(
                phase=phase.strip(),
                command=command.strip(),
                description=str(raw.get("description", "")),
            ),
        )
    return steps


class WorkflowEngine:
    """Creates, executes and manages workflow tasks stored in the queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        service: QueueService,
        session: SessionDriver | None = None,
        max_step_retries: int = 3,
        max_workflow_retries: int = 5,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        backoff_jitter_seconds: float = 3.0,
        usage_limit_cooldown_seconds: float = 300.0,
        step_delay_seconds: float = 5.0,
        phase_timeouts: dict[str, float] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.service = service
        self.session = session
        self.max_workflow_retries = max_workflow_retries
        self.usage_limit_cooldown_seconds = usage_limit_cooldown_seconds
        self.step_delay_seconds = step_delay_seconds
        self.phase_timeouts = phase_timeouts or {}
        self._sleep = sleep
        self._now = now
        self._retrier = Retrier(
            base_delay_seconds=backoff_base_seconds,
            max_attempts=max_step_retries,
            max_delay_seconds=backoff_max_seconds,
            jitter_seconds=backoff_jitter_seconds,
            min_delay_seconds=1.0,
            mode=BackoffMode.LINEAR,
            sleep=sleep,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        service: QueueService,
        session: SessionDriver | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> WorkflowEngine:
        workflow = settings.workflow
        return cls(
            service=service,
            session=session,
            max_step_retries=workflow.max_step_retries,
            max_workflow_retries=workflow.max_workflow_retries,
            backoff_base_seconds=workflow.backoff_base_seconds,
            backoff_max_seconds=workflow.backoff_max_seconds,
            backoff_jitter_seconds=workflow.backoff_jitter_seconds,
            usage_limit_cooldown_seconds=workflow.usage_limit_cooldown_seconds,
            step_delay_seconds=workflow.step_delay_seconds,
            sleep=sleep,
        )

    def create_workflow(
        self,
        workflow_type: WorkflowType | str,
        config: dict[str, Any],
        *,
        workflow_id: str | None = None,
    ) -> Workflow:
        """Build steps for the workflow type and enqueue the workflow as pending."""

        kind = WorkflowType(workflow_type)
        config = dict(config)
        if kind == WorkflowType.ISSUE_MERGE:
            issue_id = config.get("issue_id")
            if issue_id in (None, ""):
                raise ValueError("Issue ID is required for issue-merge workflow")
            config["issue_id"] = str(issue_id)
            steps = build_issue_merge_steps(str(issue_id))
        else:
            steps = build_custom_steps(config)
        now = self._now()
        workflow = Workflow(
            id=workflow_id or generate_task_id("workflow"),
            type=TaskType.WORKFLOW,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            priority=str(config.get("priority", PRIORITY_NORMAL)),
            workflow_type=kind,
            config=config,
            steps=steps,
        )

        def _insert(manager: QueueManager) -> Workflow:
            if workflow_id and manager.task_exists(workflow.id):
                raise ValueError(f"Workflow already exists: {workflow.id}")
            while manager.task_exists(workflow.id):
                logger.debug("Generated workflow id %s is taken, drawing another", workflow.id)
                workflow.id = generate_task_id("workflow")
            manager.add_task(workflow)
            return workflow

        self.service.execute(QueueOperation.ADD_TASK, _insert)
        logger.info(
            "Created workflow %s (%s) with %d steps",
            workflow.id,
            kind.value,
            len(steps),
        )
        return workflow

    def create_issue_merge_workflow(self, issue_id: str | int) -> Workflow:
        return self.create_workflow(WorkflowType.ISSUE_MERGE, {"issue_id": issue_id})

    def execute_workflow(self, workflow_id: str) -> WorkflowRunSummary:
        """Run remaining steps until completion, failure, pause or cancellation."""

        session = self.session
        if session is None:
            raise RuntimeError("Workflow execution requires a session driver")
        workflow = self._mutate(workflow_id, self._begin_execution)
        summary = WorkflowRunSummary(workflow_id=workflow_id, status=workflow.status)
        if workflow.status != TaskStatus.IN_PROGRESS:
            return summary

        while True:
            workflow = self.get_workflow(workflow_id)
            if workflow.status != TaskStatus.IN_PROGRESS:
                logger.info(
                    "Workflow %s stopped before step %d (status=%s)",
                    workflow_id,
                    workflow.current_step,
                    workflow.status.value,
                )
                summary.status = workflow.status
                return summary
            if workflow.is_finished:
                break

            index = workflow.current_step
            workflow = self._mutate(workflow_id, lambda wf: self._start_step(wf, index))
            step = workflow.steps[index]
            logger.info(
                "Executing workflow %s step %d/%d: %s",
                workflow_id,
                index + 1,
                len(workflow.steps),
                step.phase,
            )
            error_message = self._run_step(session, workflow, index)
            if error_message is None:
                self._mutate(workflow_id, lambda wf: self._complete_step(wf, index))
                summary.steps_completed += 1
                if index + 1 < len(workflow.steps) and self.step_delay_seconds > 0:
                    self._sleep(self.step_delay_seconds)
                continue

            summary.errors += 1
            classification = classify_workflow_failure(error_message)
            outcome = self._mutate(
                workflow_id,
                lambda wf: self._handle_step_failure(wf, index, classification, error_message),
            )
            if outcome.decision == _Decision.FAIL:
                summary.status = TaskStatus.FAILED
                return summary
            summary.retries += 1
            if outcome.decision == _Decision.COOLDOWN:
                logger.info(
                    "Workflow %s usage limit cooldown: %.0fs",
                    workflow_id,
                    self.usage_limit_cooldown_seconds,
                )
                self._retrier.wait(
                    retry_number=outcome.retry_number,
                    cooldown_seconds=self.usage_limit_cooldown_seconds,
                )
            else:
                self._retrier.wait(retry_number=outcome.retry_number, factor=outcome.factor)

        workflow = self._mutate(workflow_id, self._finish_execution)
        summary.status = workflow.status
        logger.info("Workflow %s finished with status %s", workflow_id, workflow.status.value)
        return summary

    def resume_workflow_from_step(self, workflow_id: str, step_index: int) -> Workflow:
        """Mark earlier steps completed, reset the rest, and make the workflow pending."""

        def _rewind(workflow: Workflow) -> Workflow:
            if not 0 <= step_index < len(workflow.steps):
                raise ValueError(
                    f"Step index {step_index} out of range for workflow {workflow.id} "
                    f"({len(workflow.steps)} steps)",
                )
            now = self._now()
            for position, step in enumerate(workflow.steps):
                if position < step_index:
                    step.status = StepStatus.COMPLETED
                    step.completed_at = step.completed_at or now
                    step.failed_at = None
                    workflow.results[str(position)] = workflow.results.get(
                        str(position),
                        "skipped",
                    )
                else:
                    step.status = StepStatus.PENDING
                    step.retry_count = 0
                    step.started_at = None
                    step.completed_at = None
                    step.failed_at = None
                    workflow.results.pop(str(position), None)
            workflow.current_step = step_index
            workflow.retry_count = 0
            workflow.status = TaskStatus.PENDING
            self._mark_resumed(workflow, now)
            return workflow

        workflow = self._mutate(workflow_id, _rewind)
        logger.info("Workflow %s rewound to step %d", workflow_id, step_index)
        return workflow

    def pause_workflow(self, workflow_id: str) -> Workflow:
        def _pause(workflow: Workflow) -> Workflow:
            if workflow.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                raise ValueError(
                    f"Cannot pause workflow {workflow.id} in status {workflow.status.value}",
                )
            workflow.status = TaskStatus.PAUSED
            workflow.metadata["paused_at"] = to_iso(self._now())
            workflow.updated_at = self._now()
            return workflow

        workflow = self._mutate(workflow_id, _pause)
        logger.info("Paused workflow %s", workflow_id)
        return workflow

    def resume_workflow(self, workflow_id: str) -> Workflow:
        def _resume(workflow: Workflow) -> Workflow:
            if workflow.status != TaskStatus.PAUSED:
                raise ValueError(f"Workflow {workflow.id} is not paused")
            workflow.status = TaskStatus.PENDING
            self._mark_resumed(workflow, self._now())
            return workflow

        workflow = self._mutate(workflow_id, _resume)
        logger.info("Resumed workflow %s", workflow_id)
        return workflow

    def cancel_workflow(self, workflow_id: str) -> Workflow:
        def _cancel(workflow: Workflow) -> Workflow:
            if workflow.status == TaskStatus.COMPLETED:
                raise ValueError(f"Workflow {workflow.id} is already completed")
            now = self._now()
            workflow.status = TaskStatus.FAILED
            workflow.metadata["cancelled_at"] = to_iso(now)
            workflow.metadata["cancellation_reason"] = CANCELLATION_REASON
            workflow.updated_at = now
            return workflow

        workflow = self._mutate(workflow_id, _cancel)
        logger.info("Cancelled workflow %s", workflow_id)
        return workflow

    def create_workflow_checkpoint(
        self,
        workflow_id: str,
        reason: str = "manual_checkpoint",
    ) -> str:
        checkpoint = self._mutate(workflow_id, lambda wf: self._add_checkpoint(wf, reason))
        logger.info(
            "Created workflow checkpoint %s (reason: %s)",
            checkpoint.checkpoint_id,
            reason,
        )
        return checkpoint.checkpoint_id

    def get_workflow(self, workflow_id: str) -> Workflow:
        return _require_workflow(self.service.load(), workflow_id)

    def get_workflow_status(self, workflow_id: str) -> WorkflowStatusView:
        workflow = self.get_workflow(workflow_id)
        total = len(workflow.steps)
        return WorkflowStatusView(
            workflow_id=workflow.id,
            workflow_type=workflow.workflow_type.value,
            status=workflow.status.value,
            current_step=workflow.current_step,
            total_steps=total,
            progress_percent=round(workflow.current_step * 100 / total, 2) if total else 0.0,
        )

    def get_workflow_detailed_status(self, workflow_id: str) -> dict[str, Any]:
        """Status plus timing estimate, current step and error summary."""

        workflow = self.get_workflow(workflow_id)
        view = self.get_workflow_status(workflow_id)
        now = self._now()
        elapsed = max(0, int((now - workflow.created_at).total_seconds()))
        estimated_completion: str | None = None
        if workflow.status == TaskStatus.IN_PROGRESS and workflow.current_step > 0:
            per_step = elapsed / workflow.current_step
            remaining = per_step * (view.total_steps - workflow.current_step)
            estimated_completion = to_iso(now + timedelta(seconds=remaining))
        current_step_info = None
        if not workflow.is_finished:
            step = workflow.steps[workflow.current_step]
            current_step_info = {
                "phase": step.phase,
                "command": step.command,
                "status": step.status.value,
                "retry_count": step.retry_count,
            }
        return {
            "workflow_id": workflow.id,
            "workflow_type": view.workflow_type,
            "status": view.status,
            "progress": {
                "current_step": view.current_step,
                "total_steps": view.total_steps,
                "percentage": view.progress_percent,
                "current_step_info": current_step_info,
            },
            "timing": {
                "created_at": to_iso(workflow.created_at),
                "updated_at": to_iso(workflow.updated_at),
                "elapsed_seconds": elapsed,
                "estimated_completion": estimated_completion,
            },
            "errors": {
                "count": len(workflow.error_history),
                "last_error": workflow.metadata.get("last_error"),
            },
        }

    def list_workflows(self, status: TaskStatus | None = None) -> list[Workflow]:
        tasks = self.service.load().list_tasks(task_type=TaskType.WORKFLOW, status=status)
        return [task for task in tasks if isinstance(task, Workflow)]

    def _mutate(self, workflow_id: str, change: Callable[[Workflow], T]) -> T:
        return self.service.execute(
            QueueOperation.WORKFLOW_UPDATE,
            lambda manager: change(_require_workflow(manager, workflow_id)),
        )

    def _begin_execution(self, workflow: Workflow) -> Workflow:
        if workflow.status in (TaskStatus.COMPLETED, TaskStatus.PAUSED):
            return workflow
        if workflow.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            raise RuntimeError(
                f"Workflow {workflow.id} is {workflow.status.value}; "
                "resume it from a step before executing",
            )
        self._add_checkpoint(workflow, PRE_EXECUTION_CHECKPOINT)
        workflow.status = TaskStatus.IN_PROGRESS
        workflow.metadata.setdefault("started_at", to_iso(self._now()))
        workflow.updated_at = self._now()
        return workflow

    def _finish_execution(self, workflow: Workflow) -> Workflow:
        if workflow.status == TaskStatus.IN_PROGRESS and workflow.is_finished:
            now = self._now()
            workflow.status = TaskStatus.COMPLETED
            workflow.metadata["completed_at"] = to_iso(now)
            workflow.updated_at = now
        return workflow

    def _start_step(self, workflow: Workflow, index: int) -> Workflow:
        step = workflow.steps[index]
        if step.status == StepStatus.PENDING:
            step.advance(StepStatus.IN_PROGRESS)
        step.started_at = step.started_at or self._now()
        workflow.updated_at = self._now()
        return workflow

    def _complete_step(self, workflow: Workflow, index: int) -> Workflow:
        now = self._now()
        step = workflow.steps[index]
        step.advance(StepStatus.COMPLETED)
        step.completed_at = now
        workflow.results[str(index)] = "success"
        workflow.current_step = max(workflow.current_step, index + 1)
        workflow.updated_at = now
        logger.info("Workflow %s step completed: %s", workflow.id, step.phase)
        return workflow

    def _handle_step_failure(
        self,
        workflow: Workflow,
        index: int,
        classification: WorkflowFailureClassification,
        message: str,
    ) -> _FailureOutcome:
        """Append the failure to history and decide between retry, cooldown and failure."""

        now = self._now()
        step = workflow.steps[index]
        kind = classification.error_kind
        workflow.error_history.append(
            ErrorRecord(
                step_index=index,
                error_kind=kind,
                message=message,
                timestamp=now,
                retry_count=step.retry_count,
            ),
        )
        workflow.metadata["last_error"] = {
            "error_kind": kind.value,
            "step_index": index,
            "timestamp": to_iso(now),
        }
        workflow.updated_at = now
        logger.warning(
            "Workflow %s phase %s failed: %s (%s)",
            workflow.id,
            step.phase,
            kind.value,
            message[:200],
        )

        if not classification.recoverable:
            logger.error("Workflow %s non-recoverable error: %s", workflow.id, kind.value)
            return self._fail(workflow, step, now)
        if workflow.retry_count >= self.max_workflow_retries:
            logger.error(
                "Workflow %s exhausted workflow retry budget (%d)",
                workflow.id,
                self.max_workflow_retries,
            )
            return self._fail(workflow, step, now)
        if kind == ErrorKind.USAGE_LIMIT:
            workflow.retry_count += 1
            return _FailureOutcome(decision=_Decision.COOLDOWN, retry_number=step.retry_count)
        if not self._retrier.can_retry(step.retry_count):
            logger.error(
                "Workflow %s step %s exhausted retries (%d)",
                workflow.id,
                step.phase,
                step.retry_count,
            )
            return self._fail(workflow, step, now)
        step.retry_count += 1
        workflow.retry_count += 1
        return _FailureOutcome(
            decision=_Decision.RETRY,
            retry_number=step.retry_count,
            factor=TIMEOUT_BACKOFF_FACTOR if kind == ErrorKind.TIMEOUT else 1.0,
        )

    def _fail(self, workflow: Workflow, step: WorkflowStep, now: datetime) -> _FailureOutcome:
        step.advance(StepStatus.FAILED)
        step.failed_at = now
        workflow.status = TaskStatus.FAILED
        workflow.metadata["failed_at"] = to_iso(now)
        return _FailureOutcome(decision=_Decision.FAIL, retry_number=step.retry_count)

    def _run_step(
        self,
        session: SessionDriver,
        workflow: Workflow,
        index: int,
    ) -> str | None:
        """Execute one step through the session; returns failure text or None."""

        step = workflow.steps[index]
        context = StepContext(
            workflow_id=workflow.id,
            step_index=index,
            phase=step.phase,
            command=step.command,
            attempt=step.retry_count + 1,
            config=workflow.config,
        )
        try:
            execution = session.execute_step(step.command, step.phase, context)
        except SessionError as error:
            return str(error) or "Session error"
        if execution.status == StepExecutionStatus.FAILED:
            return execution.output or f"Step {step.phase} failed without output"
        if execution.status == StepExecutionStatus.COMPLETED:
            return None
        timeout = phase_timeout_seconds(step.phase, self.phase_timeouts)
        completion = session.monitor_completion(step.phase, context, timeout)
        if completion == CompletionStatus.COMPLETED:
            return None
        return f"Phase {step.phase} timed out after {timeout:g}s"

    def _add_checkpoint(self, workflow: Workflow, reason: str) -> Checkpoint:
        state = task_to_record(workflow)
        state["checkpoints"] = []
        checkpoint = Checkpoint(
            checkpoint_id=generate_task_id("checkpoint"),
            workflow_id=workflow.id,
            created_at=self._now(),
            reason=reason,
            workflow_state=state,
        )
        workflow.checkpoints.append(checkpoint)
        return checkpoint

    def _mark_resumed(self, workflow: Workflow, now: datetime) -> None:
        workflow.metadata["resumed_at"] = to_iso(now)
        workflow.metadata["resumed_count"] = int(workflow.metadata.get("resumed_count", 0)) + 1
        workflow.updated_at = now


def _require_workflow(manager: QueueManager, workflow_id: str) -> Workflow:
    task = manager.get_task(workflow_id)
    if not isinstance(task, Workflow):
        raise RuntimeError(f"Workflow not found: {workflow_id}")
    return task
