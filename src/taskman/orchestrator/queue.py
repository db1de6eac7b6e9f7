"""Task state machine and bounded-concurrency scheduler."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import fields, replace
from datetime import timedelta

from taskman.orchestrator.backend.base import SpawnAdapter, SpawnRequest
from taskman.orchestrator.errors import (
    InvalidTransitionError,
    RetryLimitExceededError,
    SpawnError,
    TaskValidationError,
)
from taskman.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    RUNNING_STATUSES,
    TERMINAL_STATUSES,
    CompletionResult,
    CycleSummary,
    ErrorKind,
    QueueConfig,
    QueueStats,
    SweepSummary,
    TaskCreate,
    TaskDiagnostic,
    TaskKind,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from taskman.orchestrator.progress import ProgressChannel
from taskman.orchestrator.repository import TaskRepository
from taskman.orchestrator.workdir import ProjectWorkspaces

logger = logging.getLogger(__name__)

CompletionListener = Callable[[TaskView], bool]

PIPELINE_AGENT_ID = "pipeline"
_CANCELLABLE = frozenset(
    {TaskStatus.CREATED, TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.PROCESSING},
)


class TaskQueue:
    """Owns all scheduler state: the task store, the sweep guard and listeners.

    Worker completion is never awaited. It is observed through the progress
    channel poller or an explicit `on_task_complete` / `on_task_error` call.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        spawn_adapter: SpawnAdapter,
        progress_channel: ProgressChannel,
        workspaces: ProjectWorkspaces,
        config: QueueConfig | None = None,
        default_agent: str | None = None,
        known_agents: Collection[str] | None = None,
    ) -> None:
        self.repository = repository
        self.spawn_adapter = spawn_adapter
        self.progress_channel = progress_channel
        self.workspaces = workspaces
        self.config = config or QueueConfig()
        self.config.validate()
        self.default_agent = default_agent
        self.known_agents = frozenset(known_agents) if known_agents else frozenset()
        self.clock = repository.clock
        self._sweep_in_progress = False
        self._listeners: list[CompletionListener] = []

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweep_in_progress

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Register a callback run after every completion and failure signal."""

        self._listeners.append(listener)

    def get_task(self, task_id: str) -> TaskView:
        return self.repository.require_task(task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        project_id: str | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        return self.repository.list_tasks(status=status, project_id=project_id, limit=limit)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Validate and persist a new task in `created` status."""

        title = payload.title.strip() if isinstance(payload.title, str) else ""
        if not title:
            raise TaskValidationError("Task title must be non-empty.")
        if not payload.project_id or not payload.project_id.strip():
            raise TaskValidationError("Task project_id must be non-empty.")
        try:
            priority = TaskPriority(payload.priority)
        except ValueError as error:
            raise TaskValidationError(f"Unknown task priority: {payload.priority}") from error
        try:
            kind = TaskKind(payload.kind)
        except ValueError as error:
            raise TaskValidationError(f"Unknown task kind: {payload.kind}") from error

        agent_id = self.resolve_agent(payload.agent_id, kind=kind)
        max_retries = (
            payload.max_retries if payload.max_retries is not None else self.config.max_retries
        )
        if max_retries < 0:
            raise TaskValidationError("max_retries must be >= 0.")
        timeout_minutes = (
            payload.timeout_minutes
            if payload.timeout_minutes is not None
            else self.config.default_timeout_minutes
        )
        if timeout_minutes < 1:
            raise TaskValidationError("timeout_minutes must be >= 1.")

        task = self.repository.insert_task(
            project_id=payload.project_id,
            title=title,
            description=payload.description,
            agent_id=agent_id,
            priority=priority,
            max_retries=max_retries,
            timeout_minutes=timeout_minutes,
            kind=kind,
            metadata=payload.metadata,
            task_id=payload.task_id,
        )
        logger.info(
            "Task %s created (project=%s agent=%s priority=%s)",
            task.task_id,
            task.project_id,
            task.agent_id,
            task.priority.value,
        )
        if payload.auto_start:
            return self.start_task(task.task_id)
        return task

    def start_task(self, task_id: str) -> TaskView:
        """Queue a created task, or retry a failed one.

        Tasks already pending or beyond are returned unchanged.
        """

        while True:
            task = self.repository.require_task(task_id)
            if task.kind == TaskKind.PIPELINE:
                raise InvalidTransitionError(
                    f"Pipeline task {task_id} is started by its pipeline runner.",
                )
            if task.status == TaskStatus.CREATED:
                updated = self.repository.transition(
                    task_id,
                    from_statuses={TaskStatus.CREATED},
                    to_status=TaskStatus.PENDING,
                    message="Task queued",
                )
            elif task.status == TaskStatus.FAILED:
                updated = self._retry(task)
            else:
                return task
            if updated is not None:
                logger.info("Task %s -> %s", task_id, updated.status.value)
                return updated

    def _retry(self, task: TaskView) -> TaskView | None:
        if task.retry_count >= task.max_retries:
            raise RetryLimitExceededError(
                f"Task {task.task_id} exhausted its retries "
                f"({task.retry_count}/{task.max_retries}).",
            )
        updated = self.repository.transition(
            task.task_id,
            from_statuses={TaskStatus.FAILED},
            to_status=TaskStatus.PENDING,
            message=f"Retry {task.retry_count + 1}/{task.max_retries}",
            clear_error_kind=True,
            reset_progress_updates=True,
            retry_count=task.retry_count + 1,
            progress=0,
            current_step=None,
            result=None,
            error=None,
            artifacts=[],
            missing_artifacts=[],
            assigned_worker=None,
            started_at=None,
            completed_at=None,
        )
        if updated is not None:
            self.progress_channel.clear(task.task_id, attempt=task.retry_count)
        return updated

    def cancel_task(self, task_id: str, *, reason: str | None = None) -> TaskView:
        """Cancel a task that has not finished; the worker process is not killed."""

        task = self.repository.require_task(task_id)
        if task.status == TaskStatus.CANCELLED:
            return task
        if task.status not in _CANCELLABLE:
            raise InvalidTransitionError(
                f"Task {task_id} cannot be cancelled from status={task.status.value}",
            )
        updated = self.repository.transition(
            task_id,
            from_statuses=_CANCELLABLE,
            to_status=TaskStatus.CANCELLED,
            message=reason or "Task cancelled",
            completed_at=self.clock(),
        )
        if updated is None:
            return self.cancel_task(task_id, reason=reason)
        logger.info("Task %s cancelled", task_id)
        self._notify_listeners(updated)
        return updated

    def restart_task(self, task_id: str, *, reason: str | None = None) -> TaskView:
        """Fail a stuck running task and queue it again in one step.

        The retry limit is checked first, so an exhausted task keeps running.
        Failed tasks are retried as by ``start_task``. Completion listeners are
        not notified: the task never rests in ``failed``.
        """

        while True:
            task = self.repository.require_task(task_id)
            if task.kind == TaskKind.PIPELINE:
                raise InvalidTransitionError(
                    f"Pipeline task {task_id} is restarted through its steps.",
                )
            if task.status == TaskStatus.FAILED:
                updated = self._retry(task)
            elif task.status in RUNNING_STATUSES:
                if task.retry_count >= task.max_retries:
                    raise RetryLimitExceededError(
                        f"Task {task_id} exhausted its retries "
                        f"({task.retry_count}/{task.max_retries}).",
                    )
                error = reason or "Restarted by operator"
                failed = self.repository.transition(
                    task_id,
                    from_statuses=RUNNING_STATUSES,
                    to_status=TaskStatus.FAILED,
                    message=error,
                    error_kind=ErrorKind.WORKER_REPORTED_FAILURE,
                    error=error,
                    completed_at=self.clock(),
                )
                if failed is None:
                    continue
                updated = self._retry(failed)
            else:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot be restarted from status={task.status.value}",
                )
            if updated is not None:
                logger.info("Task %s restarted (retry %s)", task_id, updated.retry_count)
                return updated

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        message: str | None = None,
        **extra: object,
    ) -> TaskView:
        """Low-level validated transition; always appends to status history."""

        while True:
            task = self.repository.require_task(task_id)
            if status not in ALLOWED_TRANSITIONS[task.status]:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {task.status.value} to {status.value}",
                )
            if (
                task.status == TaskStatus.CREATED
                and status == TaskStatus.ACTIVE
                and task.kind != TaskKind.PIPELINE
            ):
                raise InvalidTransitionError(
                    f"Task {task_id} must be queued before it can become active",
                )
            if status == TaskStatus.PROCESSING and task.started_at is None:
                extra.setdefault("started_at", self.clock())
            if status in TERMINAL_STATUSES:
                extra.setdefault("completed_at", self.clock())
            updated = self.repository.transition(
                task_id,
                from_statuses={task.status},
                to_status=status,
                message=message,
                **extra,
            )
            if updated is not None:
                return updated

    def update_progress(self, task_id: str, percentage: int, message: str) -> TaskView | None:
        """Record a progress report for a running task.

        Lower percentages than the current one and reports for tasks that are
        not running are ignored and return None.
        """

        if isinstance(percentage, bool) or not 0 <= percentage <= 100:  # noqa: PLR2004
            raise TaskValidationError("percentage must be an integer in 0..100.")
        return self.repository.record_progress(
            task_id,
            statuses=RUNNING_STATUSES,
            percentage=percentage,
            message=message,
        )

    def process_queue(self) -> SweepSummary:
        """Dispatch pending tasks into free concurrency slots."""

        if self._sweep_in_progress:
            logger.debug("Sweep already in progress; skipping")
            return SweepSummary(skipped=True)
        self._sweep_in_progress = True
        try:
            summary = SweepSummary()
            available = self.config.max_concurrent_tasks - self.repository.count_running()
            summary.available_slots = max(0, available)
            if available <= 0:
                return summary
            for task in self.repository.list_pending(limit=available):
                self._dispatch(task, summary)
            if summary.dispatched or summary.spawn_failures:
                logger.info(
                    "Sweep dispatched=%s spawn_failures=%s requeued=%s",
                    len(summary.dispatched),
                    len(summary.spawn_failures),
                    len(summary.requeued),
                )
            return summary
        finally:
            self._sweep_in_progress = False

    def _dispatch(self, task: TaskView, summary: SweepSummary) -> None:
        active = self.repository.transition(
            task.task_id,
            from_statuses={TaskStatus.PENDING},
            to_status=TaskStatus.ACTIVE,
            message="Dispatching worker",
        )
        if active is None:
            return

        try:
            self.progress_channel.clear(task.task_id, attempt=active.retry_count)
            request = SpawnRequest(
                task_id=task.task_id,
                agent_id=task.agent_id,
                instructions=build_instructions(active),
                working_directory=self.workspaces.ensure(task.project_id),
                timeout_minutes=task.timeout_minutes,
                progress_ref=self.progress_channel.location(
                    task.task_id,
                    attempt=active.retry_count,
                ),
            )
            handle = self.spawn_adapter.spawn(request)
        except SpawnError as error:
            self._record_spawn_failure(active, error, summary)
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Spawn adapter crashed for task %s", task.task_id)
            self._record_spawn_failure(
                active,
                SpawnError(f"Worker launch crashed: {error}", transient=False),
                summary,
            )
            return

        processing = self.repository.transition(
            task.task_id,
            from_statuses={TaskStatus.ACTIVE},
            to_status=TaskStatus.PROCESSING,
            message=f"Worker {handle.worker_handle} started",
            assigned_worker=handle.worker_handle,
            started_at=self.clock(),
        )
        if processing is None:
            logger.warning(
                "Task %s left active state while its worker %s was starting",
                task.task_id,
                handle.worker_handle,
            )
            return
        summary.dispatched.append(task.task_id)
        logger.info("Task %s dispatched to %s", task.task_id, handle.worker_handle)

    def _record_spawn_failure(
        self,
        task: TaskView,
        error: SpawnError,
        summary: SweepSummary,
    ) -> None:
        summary.spawn_failures.append(task.task_id)
        logger.warning("Task %s spawn failed: %s", task.task_id, error)
        failed = self.repository.transition(
            task.task_id,
            from_statuses={TaskStatus.ACTIVE},
            to_status=TaskStatus.FAILED,
            message=f"Spawn failed: {error}",
            error_kind=ErrorKind.SPAWN_FAILURE,
            error=str(error),
            completed_at=self.clock(),
        )
        if failed is None:
            return
        if error.transient and failed.retry_count < failed.max_retries:
            requeued = self.repository.transition(
                task.task_id,
                from_statuses={TaskStatus.FAILED},
                to_status=TaskStatus.PENDING,
                message=(
                    f"Requeued after transient spawn failure "
                    f"(retry {failed.retry_count + 1}/{failed.max_retries})"
                ),
                retry_count=failed.retry_count + 1,
                completed_at=None,
            )
            if requeued is not None:
                summary.requeued.append(task.task_id)
                return
        self._notify_listeners(failed)

    def check_timeouts(self) -> list[str]:
        """Fail processing tasks running longer than their timeout."""

        now = self.clock()
        timed_out: list[str] = []
        for task in self.repository.list_tasks(status=TaskStatus.PROCESSING):
            if task.started_at is None:
                continue
            if now - task.started_at <= timedelta(minutes=task.timeout_minutes):
                continue
            message = f"Task timed out after {task.timeout_minutes} minutes"
            failed = self.repository.transition(
                task.task_id,
                from_statuses={TaskStatus.PROCESSING},
                to_status=TaskStatus.FAILED,
                message=message,
                error_kind=ErrorKind.TIMEOUT,
                error=message,
                completed_at=now,
            )
            if failed is None:
                continue
            logger.warning("Task %s timed out (worker=%s)", task.task_id, task.assigned_worker)
            timed_out.append(task.task_id)
            self._notify_listeners(failed)
        return timed_out

    def poll_progress(self, task_id: str | None = None) -> CycleSummary:
        """Read progress snapshots of running tasks and apply them."""

        summary = CycleSummary()
        if task_id is not None:
            tasks: Iterable[TaskView] = [self.repository.require_task(task_id)]
        else:
            tasks = self.repository.list_running()
        for task in tasks:
            if task.status not in RUNNING_STATUSES:
                continue
            snapshot = self.progress_channel.read(task.task_id, attempt=task.retry_count)
            if snapshot is None:
                continue
            if snapshot.failed:
                error = snapshot.message or f"Worker exited with code {snapshot.exit_code}"
                failed = self._fail(task.task_id, error, ErrorKind.WORKER_REPORTED_FAILURE)
                if failed is not None:
                    summary.failed.append(task.task_id)
            elif snapshot.finished:
                completion = self.on_task_complete(task.task_id, result=snapshot.message)
                if completion.applied:
                    summary.completed.append(task.task_id)
            elif (
                self.update_progress(task.task_id, snapshot.percentage, snapshot.message)
                is not None
            ):
                summary.progress_updates += 1
        return summary

    def run_cycle(self) -> CycleSummary:
        """One processing tick: timeouts, then progress poll, then dispatch."""

        timed_out = self.check_timeouts()
        summary = self.poll_progress()
        summary.timed_out = timed_out
        summary.sweep = self.process_queue()
        return summary

    def on_task_complete(
        self,
        task_id: str,
        result: str | None = None,
        artifacts: Iterable[str] = (),
    ) -> CompletionResult:
        """Complete a running task; repeat calls are no-ops that still notify listeners."""

        claimed = list(dict.fromkeys(str(item) for item in artifacts))
        while True:
            task = self.repository.require_task(task_id)
            if task.status in TERMINAL_STATUSES:
                logger.info(
                    "Task %s already %s; re-running completion checks",
                    task_id,
                    task.status.value,
                )
                advanced = self._notify_listeners(task)
                return CompletionResult(
                    task=task,
                    applied=False,
                    verified_artifacts=list(task.artifacts),
                    missing_artifacts=list(task.missing_artifacts),
                    pipeline_advanced=advanced,
                )
            if task.status not in RUNNING_STATUSES:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot complete from status={task.status.value}",
                )

            verified, missing = self._verify_artifacts(task, claimed)
            if missing:
                logger.warning(
                    "Task %s claimed missing artifacts: %s",
                    task_id,
                    ", ".join(missing),
                )
            completed = self.repository.transition(
                task_id,
                from_statuses=RUNNING_STATUSES,
                to_status=TaskStatus.COMPLETED,
                message="Task completed",
                result=result,
                artifacts=verified,
                missing_artifacts=missing,
                progress=100,
                completed_at=self.clock(),
            )
            if completed is None:
                continue
            logger.info("Task %s completed (%s artifacts)", task_id, len(verified))
            advanced = self._notify_listeners(completed)
            return CompletionResult(
                task=completed,
                applied=True,
                verified_artifacts=verified,
                missing_artifacts=missing,
                pipeline_advanced=advanced,
            )

    def on_task_error(
        self,
        task_id: str,
        error: str,
        *,
        error_kind: ErrorKind = ErrorKind.WORKER_REPORTED_FAILURE,
    ) -> TaskView:
        """Fail a running task; already finished tasks are returned unchanged."""

        while True:
            task = self.repository.require_task(task_id)
            if task.status in TERMINAL_STATUSES:
                self._notify_listeners(task)
                return task
            if task.status not in RUNNING_STATUSES:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot fail from status={task.status.value}",
                )
            failed = self._fail(task_id, error, error_kind)
            if failed is not None:
                return failed

    def _fail(self, task_id: str, error: str, error_kind: ErrorKind) -> TaskView | None:
        failed = self.repository.transition(
            task_id,
            from_statuses=RUNNING_STATUSES,
            to_status=TaskStatus.FAILED,
            message=error,
            error_kind=error_kind,
            error=error,
            completed_at=self.clock(),
        )
        if failed is None:
            return None
        logger.warning("Task %s failed (%s): %s", task_id, error_kind.value, error)
        self._notify_listeners(failed)
        return failed

    def configure(self, **changes: int) -> QueueConfig:
        """Apply validated config changes; they take effect on the next sweep."""

        known = {item.name for item in fields(QueueConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown queue config fields: {', '.join(unknown)}")
        updated = replace(self.config, **changes)
        updated.validate()
        self.config = updated
        logger.info("Queue config updated: %s", changes)
        return updated

    def get_stats(self) -> QueueStats:
        by_status = self.repository.count_by_status()
        return QueueStats(
            total=sum(by_status.values()),
            by_status=by_status,
            running_now=self.repository.count_running(),
            max_concurrent=self.config.max_concurrent_tasks,
            sweep_in_progress=self._sweep_in_progress,
        )

    def diagnose_task(self, task_id: str) -> TaskDiagnostic:
        """Derived stuck-task view; never changes task state."""

        task = self.repository.require_task(task_id)
        processing_minutes: int | None = None
        if task.status == TaskStatus.PROCESSING and task.started_at is not None:
            elapsed = self.clock() - task.started_at
            processing_minutes = int(elapsed.total_seconds() // 60)
        snapshot = self.progress_channel.read(task_id, attempt=task.retry_count)
        return TaskDiagnostic(
            task_id=task.task_id,
            status=task.status,
            assigned_worker=task.assigned_worker,
            progress=task.progress,
            current_step=task.current_step,
            processing_minutes=processing_minutes,
            is_stuck=(
                processing_minutes is not None
                and processing_minutes > self.config.stuck_after_minutes
            ),
            last_update=task.status_history[-1] if task.status_history else None,
            snapshot_percentage=snapshot.percentage if snapshot is not None else None,
            snapshot_message=snapshot.message if snapshot is not None else None,
        )

    def resolve_agent(
        self,
        agent_id: str | None,
        *,
        kind: TaskKind = TaskKind.STANDARD,
    ) -> str:
        """Agent id a task would run with; raises `TaskValidationError` if unknown."""

        if kind == TaskKind.PIPELINE:
            return agent_id or PIPELINE_AGENT_ID
        resolved = agent_id or self.default_agent
        if not resolved:
            raise TaskValidationError("Task agent_id is required (no default agent configured).")
        if self.known_agents and resolved not in self.known_agents:
            raise TaskValidationError(f"Unknown agent: {resolved}")
        return resolved

    def _verify_artifacts(
        self,
        task: TaskView,
        artifacts: list[str],
    ) -> tuple[list[str], list[str]]:
        verified: list[str] = []
        missing: list[str] = []
        for artifact in artifacts:
            if self.workspaces.resolve_artifact(task.project_id, artifact).exists():
                verified.append(artifact)
            else:
                missing.append(artifact)
        return verified, missing

    def _notify_listeners(self, task: TaskView) -> bool:
        advanced = False
        for listener in list(self._listeners):
            advanced = listener(task) or advanced
        return advanced


def build_instructions(task: TaskView) -> str:
    """Instruction payload handed to the worker."""

    lines = [f"# {task.title}", ""]
    if task.description:
        lines.extend([task.description.strip(), ""])
    lines.extend(
        [
            f"Task ID: {task.task_id}",
            f"Project: {task.project_id}",
            "",
            "When you are done, list every file you produced so the orchestrator can "
            "verify it.",
        ],
    )
    return "\n".join(lines)
