"""Dependency-ordered multi-step pipelines built on top of the task queue.

A pipeline is a parent task of kind `pipeline` plus a persisted run document
holding the step graph and a `step id -> status` map. The parent is never
dispatched. Each step fans out to `count` child tasks through the worker
pool; children carry `parentTaskId` and `stepId` in their metadata. When all
children of a running step are terminal the step resolves and every pending
step whose dependencies are all completed is claimed and dispatched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from taskman.orchestrator.errors import (
    InvalidTransitionError,
    MalformedPipelineGraphError,
    RetryLimitExceededError,
    TaskValidationError,
)
from taskman.orchestrator.models import (
    TERMINAL_STATUSES,
    PipelineConfig,
    PipelineRunView,
    PipelineStatusView,
    PipelineStep,
    StepFailurePolicy,
    StepStatus,
    TaskCreate,
    TaskKind,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from taskman.orchestrator.queue import PIPELINE_AGENT_ID, TaskQueue
from taskman.orchestrator.shared_context import SHARED_CONTEXT_FILENAME, SharedContextDocument
from taskman.orchestrator.worker_pool import WorkerPool, WorkerSpec
from taskman.orchestrator.workdir import ProjectWorkspaces

logger = logging.getLogger(__name__)

PARENT_KEY = "parentTaskId"


def validate_pipeline_steps(steps: Sequence[PipelineStep]) -> list[PipelineStep]:
    """Return the steps in a dependency-respecting order or raise on a malformed graph.

    Ties are broken by declaration order, so the result is deterministic.
    """

    if not steps:
        raise MalformedPipelineGraphError("Pipeline must have at least one step")
    by_id: dict[str, PipelineStep] = {}
    for step in steps:
        if step.id in by_id:
            raise MalformedPipelineGraphError(f"Duplicate pipeline step id: {step.id}")
        if isinstance(step.count, bool) or step.count < 1:
            raise MalformedPipelineGraphError(
                f"Step {step.id} count must be >= 1, got {step.count}",
            )
        by_id[step.id] = step
    for step in steps:
        for dependency in step.depends_on:
            if dependency == step.id:
                raise MalformedPipelineGraphError(f"Step {step.id} depends on itself")
            if dependency not in by_id:
                raise MalformedPipelineGraphError(
                    f"Step {step.id} depends on unknown step {dependency}",
                )

    remaining = {step.id: set(step.depends_on) for step in steps}
    ordered: list[PipelineStep] = []
    while remaining:
        ready = [step for step in steps if remaining.get(step.id) == set()]
        if not ready:
            raise MalformedPipelineGraphError(
                f"Pipeline steps form a cycle: {', '.join(sorted(remaining))}",
            )
        for step in ready:
            ordered.append(step)
            del remaining[step.id]
            for dependencies in remaining.values():
                dependencies.discard(step.id)
    return ordered


def ready_steps(run: PipelineRunView) -> list[PipelineStep]:
    """Pending steps whose dependencies have all completed, in declaration order."""

    return [
        step
        for step in run.steps
        if run.step_status.get(step.id) == StepStatus.PENDING
        and all(run.step_status.get(dep) == StepStatus.COMPLETED for dep in step.depends_on)
    ]


def resolve_step_status(policy: StepFailurePolicy, children: Iterable[TaskView]) -> StepStatus:
    statuses = [child.status for child in children]
    if policy == StepFailurePolicy.LENIENT:
        completed = any(status == TaskStatus.COMPLETED for status in statuses)
    else:
        completed = all(status == TaskStatus.COMPLETED for status in statuses)
    return StepStatus.COMPLETED if completed else StepStatus.FAILED


class PipelineRunner:
    """Creates pipelines and advances them as their child tasks finish."""

    def __init__(
        self,
        *,
        queue: TaskQueue,
        worker_pool: WorkerPool,
        workspaces: ProjectWorkspaces,
    ) -> None:
        self.queue = queue
        self.repository = queue.repository
        self.worker_pool = worker_pool
        self.workspaces = workspaces
        queue.add_completion_listener(self._on_task_finished)

    def context_path(self, *, project_id: str, parent_task_id: str) -> Path:
        return (
            self.workspaces.path(project_id)
            / ".pipelines"
            / parent_task_id
            / SHARED_CONTEXT_FILENAME
        )

    def create_pipeline_task(
        self,
        *,
        project_id: str,
        title: str,
        description: str,
        config: PipelineConfig,
        agent_id: str | None = None,
    ) -> TaskView:
        """Validate the step graph, persist the parent task and run, then start it.

        `agent_id` is used for steps that do not name their own agent.
        """

        validate_pipeline_steps(config.steps)
        for step in config.steps:
            self.queue.resolve_agent(step.agent_id or agent_id)

        parent = self.queue.create_task(
            TaskCreate(
                project_id=project_id,
                title=f"[Pipeline] {title}",
                description=description,
                agent_id=agent_id,
                priority=TaskPriority.HIGH,
                kind=TaskKind.PIPELINE,
                metadata={"templateId": config.template_id},
            ),
        )
        context_path: Path | None = None
        if config.shared_context:
            context_path = self.context_path(
                project_id=project_id,
                parent_task_id=parent.task_id,
            )
            SharedContextDocument(context_path, clock=self.queue.clock).create(
                pipeline_id=config.template_id,
                task_id=parent.task_id,
                steps=config.steps,
            )
        self.repository.insert_pipeline_run(
            parent_task_id=parent.task_id,
            project_id=project_id,
            template_id=config.template_id,
            failure_policy=config.failure_policy,
            steps=list(config.steps),
            shared_context_path=str(context_path) if context_path is not None else None,
        )
        logger.info(
            "Pipeline %s created (template=%s steps=%s policy=%s)",
            parent.task_id,
            config.template_id,
            len(config.steps),
            config.failure_policy.value,
        )
        return self.start_pipeline(parent.task_id)

    def start_pipeline(self, parent_task_id: str) -> TaskView:
        """Activate the parent and dispatch every root step."""

        self._require_run(parent_task_id)
        parent = self.queue.get_task(parent_task_id)
        if parent.status == TaskStatus.CREATED:
            parent = self.queue.update_task_status(
                parent_task_id,
                TaskStatus.ACTIVE,
                "Pipeline started",
            )
        elif parent.status != TaskStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Pipeline {parent_task_id} cannot start from status={parent.status.value}",
            )
        self._dispatch_ready_steps(parent_task_id)
        return self.queue.get_task(parent_task_id)

    def check_step_completion(self, project_id: str, parent_task_id: str, step_id: str) -> bool:
        """Resolve a finished step and dispatch whatever it unblocked.

        Returns whether anything advanced: the step resolved to completed, a
        step was dispatched, or the pipeline itself completed.
        """

        run = self._require_run(parent_task_id)
        if run.project_id != project_id:
            raise TaskValidationError(
                f"Pipeline {parent_task_id} belongs to project {run.project_id}",
            )
        step = run.step(step_id)
        if step is None:
            raise TaskValidationError(f"Pipeline {parent_task_id} has no step {step_id}")

        advanced = self._resolve_step(run, step)
        run = self._require_run(parent_task_id)
        if run.step_status.get(step_id) == StepStatus.COMPLETED:
            advanced = bool(self._dispatch_ready_steps(parent_task_id)) or advanced
        return self._complete_if_done(parent_task_id) or advanced

    def get_pipeline_status(self, parent_task_id: str) -> PipelineStatusView:
        run = self._require_run(parent_task_id)
        parent = self.queue.get_task(parent_task_id)
        statuses = [run.step_status.get(step.id, StepStatus.PENDING) for step in run.steps]
        if all(status == StepStatus.COMPLETED for status in statuses):
            overall = StepStatus.COMPLETED.value
        elif StepStatus.FAILED in statuses:
            overall = StepStatus.FAILED.value
        elif StepStatus.RUNNING in statuses:
            overall = StepStatus.RUNNING.value
        else:
            overall = StepStatus.PENDING.value
        if parent.status == TaskStatus.CANCELLED:
            overall = TaskStatus.CANCELLED.value

        for preferred in (StepStatus.FAILED, StepStatus.RUNNING, StepStatus.PENDING):
            if preferred in statuses:
                current_index = statuses.index(preferred)
                break
        else:
            current_index = len(run.steps) - 1
        return PipelineStatusView(
            parent_task_id=parent_task_id,
            step=current_index + 1,
            total_steps=len(run.steps),
            current_step_name=run.steps[current_index].name,
            status=overall,
            step_status=dict(run.step_status),
        )

    def post_message(
        self,
        parent_task_id: str,
        *,
        sender: str,
        recipient: str,
        message: str,
        step_id: str,
    ) -> bool:
        return self._context(parent_task_id).add_message(
            sender=sender,
            recipient=recipient,
            message=message,
            step_id=step_id,
        )

    def add_step_output(self, parent_task_id: str, step_id: str, output: str) -> bool:
        return self._context(parent_task_id).add_step_output(step_id, output)

    def retry_step(self, parent_task_id: str, step_id: str) -> list[TaskView]:
        """Retry the failed children of a failed step and put the step back to running.

        Cancelled children cannot be restarted, so a strict step holding one is
        rejected instead of being left running with nothing in flight.
        """

        run = self._require_run(parent_task_id)
        if run.step_status.get(step_id) != StepStatus.FAILED:
            raise InvalidTransitionError(
                f"Step {step_id} of pipeline {parent_task_id} has not failed",
            )
        children = self.step_children(parent_task_id, step_id)
        failed = [child for child in children if child.status == TaskStatus.FAILED]
        cancelled = [child.task_id for child in children if child.status == TaskStatus.CANCELLED]
        if cancelled and run.failure_policy == StepFailurePolicy.STRICT:
            raise InvalidTransitionError(
                f"Step {step_id} has cancelled tasks that cannot be retried: "
                f"{', '.join(cancelled)}",
            )
        if not failed:
            raise InvalidTransitionError(f"Step {step_id} has no failed tasks to retry")
        exhausted = [child.task_id for child in failed if child.retry_count >= child.max_retries]
        if exhausted:
            raise RetryLimitExceededError(
                f"Step {step_id} has tasks without retries left: {', '.join(exhausted)}",
            )
        while True:
            run = self._require_run(parent_task_id)
            if run.step_status.get(step_id) != StepStatus.FAILED:
                raise InvalidTransitionError(
                    f"Step {step_id} of pipeline {parent_task_id} has not failed",
                )
            step_status = dict(run.step_status)
            step_status[step_id] = StepStatus.RUNNING
            updated = self.repository.update_pipeline_run(
                parent_task_id,
                expected_revision=run.revision,
                step_status=step_status,
            )
            if updated is not None:
                break

        context = self._context_or_none(updated)
        if context is not None:
            context.update_step_status(step_id, StepStatus.RUNNING)
        step = updated.step(step_id)
        self.repository.update_fields(
            parent_task_id,
            statuses={TaskStatus.ACTIVE},
            current_step=f"Retrying step {step.name if step is not None else step_id}",
        )
        retried = [self.queue.start_task(child.task_id) for child in failed]
        logger.info(
            "Pipeline %s retrying step %s (%s tasks)",
            parent_task_id,
            step_id,
            len(retried),
        )
        self.queue.process_queue()
        self.check_step_completion(updated.project_id, parent_task_id, step_id)
        return self.repository.get_tasks(task.task_id for task in retried)

    def step_children(self, parent_task_id: str, step_id: str) -> list[TaskView]:
        children = self.repository.list_children(parent_task_id=parent_task_id, key=PARENT_KEY)
        return sorted(
            (child for child in children if child.step_id == step_id),
            key=lambda task: int(task.metadata.get("agentIndex", 0)),
        )

    def _resolve_step(self, run: PipelineRunView, step: PipelineStep) -> bool:
        while True:
            if run.step_status.get(step.id) != StepStatus.RUNNING:
                return False
            children = self.step_children(run.parent_task_id, step.id)
            if len(children) < step.count or any(
                child.status not in TERMINAL_STATUSES for child in children
            ):
                return False
            resolved = resolve_step_status(run.failure_policy, children)
            step_status = dict(run.step_status)
            step_status[step.id] = resolved
            updated = self.repository.update_pipeline_run(
                run.parent_task_id,
                expected_revision=run.revision,
                step_status=step_status,
            )
            if updated is not None:
                break
            run = self._require_run(run.parent_task_id)

        completed = sum(1 for child in children if child.status == TaskStatus.COMPLETED)
        summary = f"{completed}/{len(children)} agents completed"
        context = self._context_or_none(updated)
        if context is not None:
            context.update_step_status(step.id, resolved, summary=summary)
            for child in children:
                for artifact in child.artifacts:
                    context.add_step_output(step.id, artifact)
        if resolved == StepStatus.FAILED:
            logger.warning(
                "Pipeline %s step %s failed (%s); dependent steps will not run",
                run.parent_task_id,
                step.id,
                summary,
            )
            self.repository.update_fields(
                run.parent_task_id,
                statuses={TaskStatus.ACTIVE},
                current_step=f"Step {step.name} failed",
            )
            return False
        logger.info("Pipeline %s step %s completed (%s)", run.parent_task_id, step.id, summary)
        return True

    def _dispatch_ready_steps(self, parent_task_id: str) -> list[str]:
        """Claim ready steps with a revision check, then fan each one out."""

        dispatched: list[str] = []
        while True:
            parent = self.queue.get_task(parent_task_id)
            if parent.status != TaskStatus.ACTIVE:
                return dispatched
            run = self._require_run(parent_task_id)
            ready = ready_steps(run)
            if not ready:
                return dispatched
            step_status = dict(run.step_status)
            for step in ready:
                step_status[step.id] = StepStatus.RUNNING
            claimed = self.repository.update_pipeline_run(
                parent_task_id,
                expected_revision=run.revision,
                step_status=step_status,
            )
            if claimed is None:
                continue
            for step in ready:
                self._dispatch_step(claimed, parent, step)
                dispatched.append(step.id)

    def _dispatch_step(self, run: PipelineRunView, parent: TaskView, step: PipelineStep) -> None:
        step_index = next(index for index, item in enumerate(run.steps) if item.id == step.id)
        context = self._context_or_none(run)
        if context is not None:
            context.update_step_status(step.id, StepStatus.RUNNING)
            context.set_current_step(step_index)
        self.repository.update_fields(
            parent.task_id,
            statuses={TaskStatus.ACTIVE},
            current_step=f"Step {step_index + 1}/{len(run.steps)}: {step.name}",
        )

        fallback_agent = parent.agent_id if parent.agent_id != PIPELINE_AGENT_ID else None
        description = _step_description(
            step,
            parent_task_id=parent.task_id,
            step_index=step_index,
            context_path=context.path if context is not None else None,
        )
        specs = [
            WorkerSpec(
                title=step.name if step.count == 1 else f"{step.name} ({index}/{step.count})",
                description=description,
                agent_id=step.agent_id or fallback_agent,
                metadata={
                    PARENT_KEY: parent.task_id,
                    "stepId": step.id,
                    "stepIndex": step_index,
                    "agentIndex": index,
                },
            )
            for index in range(1, step.count + 1)
        ]
        children = self.worker_pool.fan_out(
            project_id=run.project_id,
            specs=specs,
            context=context,
            context_step_id=step.id,
        )
        child_ids = [child.task_id for child in children]
        while True:
            current = self._require_run(parent.task_id)
            step_agents = {key: list(value) for key, value in current.step_agents.items()}
            step_agents[step.id] = child_ids
            if (
                self.repository.update_pipeline_run(
                    parent.task_id,
                    expected_revision=current.revision,
                    step_agents=step_agents,
                )
                is not None
            ):
                break
        logger.info(
            "Pipeline %s dispatched step %s with %s agents",
            parent.task_id,
            step.id,
            len(child_ids),
        )

    def _complete_if_done(self, parent_task_id: str) -> bool:
        run = self._require_run(parent_task_id)
        if any(run.step_status.get(step.id) != StepStatus.COMPLETED for step in run.steps):
            return False
        parent = self.queue.get_task(parent_task_id)
        if parent.status in TERMINAL_STATUSES:
            return False
        children = self.repository.list_children(parent_task_id=parent_task_id, key=PARENT_KEY)
        artifacts = [artifact for child in children for artifact in child.artifacts]
        completion = self.queue.on_task_complete(
            parent_task_id,
            result=(
                f"Pipeline completed successfully: {len(run.steps)} steps, "
                f"{len(children)} agent tasks"
            ),
            artifacts=artifacts,
        )
        if completion.applied:
            logger.info("Pipeline %s completed", parent_task_id)
        return completion.applied

    def _on_task_finished(self, task: TaskView) -> bool:
        if task.kind == TaskKind.PIPELINE:
            if task.status == TaskStatus.CANCELLED:
                self._cancel_children(task)
            return False
        parent_task_id = task.parent_task_id
        step_id = task.step_id
        if parent_task_id is None or step_id is None:
            return False
        run = self.repository.get_pipeline_run(parent_task_id)
        if run is None:
            logger.warning("Task %s references unknown pipeline %s", task.task_id, parent_task_id)
            return False
        context = self._context_or_none(run)
        if context is not None:
            context.update_agent(
                step_id,
                task_id=task.task_id,
                progress=task.progress,
                status=task.status.value,
            )
        return self.check_step_completion(task.project_id, parent_task_id, step_id)

    def _cancel_children(self, parent: TaskView) -> None:
        children = self.repository.list_children(parent_task_id=parent.task_id, key=PARENT_KEY)
        for child in children:
            if child.status in TERMINAL_STATUSES:
                continue
            self.queue.cancel_task(child.task_id, reason=f"Pipeline {parent.task_id} cancelled")

    def _require_run(self, parent_task_id: str) -> PipelineRunView:
        run = self.repository.get_pipeline_run(parent_task_id)
        if run is None:
            raise TaskValidationError(f"Task {parent_task_id} is not a pipeline")
        return run

    def _context(self, parent_task_id: str) -> SharedContextDocument:
        context = self._context_or_none(self._require_run(parent_task_id))
        if context is None:
            raise InvalidTransitionError(f"Pipeline {parent_task_id} has no shared context")
        return context

    def _context_or_none(self, run: PipelineRunView) -> SharedContextDocument | None:
        if run.shared_context_path is None:
            return None
        return SharedContextDocument(Path(run.shared_context_path), clock=self.queue.clock)


def _step_description(
    step: PipelineStep,
    *,
    parent_task_id: str,
    step_index: int,
    context_path: Path | None,
) -> str:
    lines = [
        f"## Pipeline Step {step_index + 1}: {step.name}",
        "",
        f"**Type:** {step.type.value}",
        f"**Step ID:** {step.id}",
        f"**Instructions:** {step.instructions}",
    ]
    if step.depends_on:
        lines.extend(["", f"**Depends on:** {', '.join(step.depends_on)}"])
    lines.extend(["", f"**Parent Task:** {parent_task_id}"])
    if context_path is not None:
        lines.extend(
            [
                "",
                "## Important",
                f"1. Read {context_path} for current pipeline status",
                f"2. Update your progress in {context_path.name}",
                f"3. Communicate with other agents via {context_path.name}",
                "4. When complete, report completion",
            ],
        )
    if step.output_files:
        lines.extend(["", "**Expected Outputs:**"])
        lines.extend(f"- {name}" for name in step.output_files)
    lines.extend(["", f"Parent Task: {parent_task_id}", f"Step ID: {step.id}"])
    return "\n".join(lines)
