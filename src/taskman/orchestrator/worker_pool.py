"""Fan one logical task out to several parallel worker tasks."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskman.orchestrator.errors import InvalidTransitionError, TaskValidationError
from taskman.orchestrator.models import (
    TERMINAL_STATUSES,
    PipelineStep,
    StepStatus,
    StepType,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
    WorkDistribution,
    WorkerAssignment,
    WorkerPoolCompletion,
    WorkerPoolMerge,
    WorkerRole,
)
from taskman.orchestrator.queue import TaskQueue
from taskman.orchestrator.shared_context import SHARED_CONTEXT_FILENAME, SharedContextDocument
from taskman.orchestrator.workdir import ProjectWorkspaces

logger = logging.getLogger(__name__)

POOL_STEP_ID = "worker-pool"
MAX_POOL_WORKERS = 10
POOL_PARENT_KEY = "poolParentId"


@dataclass(slots=True)
class WorkerSpec:
    """One child task to create during a fan-out."""

    title: str
    description: str
    agent_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    start: bool = True


class WorkerPool:
    """Creates child tasks, tracks their completion and merges their output."""

    def __init__(self, *, queue: TaskQueue, workspaces: ProjectWorkspaces) -> None:
        self.queue = queue
        self.workspaces = workspaces
        queue.add_completion_listener(self._on_task_finished)

    def context_path(self, *, project_id: str, parent_task_id: str) -> Path:
        return (
            self.workspaces.path(project_id) / ".pools" / parent_task_id / SHARED_CONTEXT_FILENAME
        )

    def fan_out(
        self,
        *,
        project_id: str,
        specs: Sequence[WorkerSpec],
        context: SharedContextDocument | None = None,
        context_step_id: str | None = None,
        priority: TaskPriority = TaskPriority.HIGH,
    ) -> list[TaskView]:
        """Create one task per spec, start the startable ones, then run a sweep."""

        tasks: list[TaskView] = []
        for spec in specs:
            task = self.queue.create_task(
                TaskCreate(
                    project_id=project_id,
                    title=spec.title,
                    description=spec.description,
                    agent_id=spec.agent_id,
                    priority=priority,
                    metadata=spec.metadata,
                ),
            )
            if context is not None and context_step_id is not None:
                context.add_agent(context_step_id, agent_id=task.agent_id, task_id=task.task_id)
            if spec.start:
                task = self.queue.start_task(task.task_id)
            tasks.append(task)
        self.queue.process_queue()
        return self.queue.repository.get_tasks(task.task_id for task in tasks)

    def create_worker_pool(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        project_id: str,
        worker_count: int,
        strategy: WorkDistribution | str,
        instructions: str,
        scope_items: Sequence[str] | None = None,
    ) -> list[WorkerAssignment]:
        """Split one task across `worker_count` child tasks."""

        if isinstance(worker_count, bool) or not 1 <= worker_count <= MAX_POOL_WORKERS:
            raise TaskValidationError(
                f"worker_count must be between 1 and {MAX_POOL_WORKERS}, got {worker_count}",
            )
        try:
            distribution = WorkDistribution(strategy)
        except ValueError as error:
            raise TaskValidationError(f"Unknown work distribution: {strategy}") from error
        parent = self.queue.get_task(task_id)
        if parent.project_id != project_id:
            raise TaskValidationError(
                f"Task {task_id} belongs to project {parent.project_id}, not {project_id}",
            )
        if self.queue.repository.list_children(parent_task_id=task_id, key=POOL_PARENT_KEY):
            raise InvalidTransitionError(f"Task {task_id} already has a worker pool")

        scopes = generate_work_scopes(distribution, worker_count, scope_items)
        context = SharedContextDocument(
            self.context_path(project_id=project_id, parent_task_id=task_id),
            clock=self.queue.clock,
        )
        context.create(
            pipeline_id=POOL_STEP_ID,
            task_id=task_id,
            steps=[
                PipelineStep(
                    id=POOL_STEP_ID,
                    name="Worker Pool",
                    type=StepType.WORKER,
                    count=worker_count,
                    instructions=instructions,
                ),
            ],
        )
        context.update_step_status(POOL_STEP_ID, StepStatus.RUNNING)
        self.queue.repository.update_fields(
            task_id,
            statuses=set(TaskStatus),
            description=(
                f"{parent.description}\n\n"
                f"[Worker Pool] {worker_count} workers in {distribution.value} mode"
            ).strip(),
        )

        specs: list[WorkerSpec] = []
        for index, (scope, role) in enumerate(scopes, start=1):
            specs.append(
                WorkerSpec(
                    title=f"Worker {index}/{worker_count}: {parent.title}",
                    description=_worker_description(
                        parent=parent,
                        worker_index=index,
                        worker_count=worker_count,
                        scope=scope,
                        distribution=distribution,
                        role=role,
                        instructions=instructions,
                        context_path=context.path,
                    ),
                    agent_id=parent.agent_id,
                    metadata={
                        POOL_PARENT_KEY: task_id,
                        "workerIndex": index,
                        "workerCount": worker_count,
                        "strategy": distribution.value,
                        "role": role.value,
                        "scope": scope,
                    },
                    start=role != WorkerRole.REVIEWER,
                ),
            )
        tasks = self.fan_out(
            project_id=project_id,
            specs=specs,
            context=context,
            context_step_id=POOL_STEP_ID,
        )
        logger.info(
            "Worker pool for %s: %s workers (%s)",
            task_id,
            worker_count,
            distribution.value,
        )
        return [
            WorkerAssignment(
                worker_index=index,
                task_id=task.task_id,
                scope=scope,
                role=role,
                instructions=instructions,
            )
            for index, (task, (scope, role)) in enumerate(zip(tasks, scopes, strict=True), start=1)
        ]

    def check_worker_pool_completion(self, project_id: str, task_id: str) -> WorkerPoolCompletion:
        """Complete when every worker is finished; failures do not block completion."""

        workers = self._workers(project_id=project_id, parent_task_id=task_id)
        all_workers = [worker.task_id for worker in workers]
        completed = [w.task_id for w in workers if w.status == TaskStatus.COMPLETED]
        failed = [
            w.task_id for w in workers if w.status in {TaskStatus.FAILED, TaskStatus.CANCELLED}
        ]
        return WorkerPoolCompletion(
            complete=bool(workers) and all(w.status in TERMINAL_STATUSES for w in workers),
            all_workers=all_workers,
            completed_workers=completed,
            failed_workers=failed,
        )

    def merge_worker_outputs(self, project_id: str, task_id: str) -> WorkerPoolMerge:
        """Concatenate worker results and artifacts; only valid once the pool is complete."""

        completion = self.check_worker_pool_completion(project_id, task_id)
        if not completion.complete:
            raise InvalidTransitionError(
                f"Worker pool for {task_id} is not complete "
                f"({len(completion.completed_workers) + len(completion.failed_workers)}"
                f"/{len(completion.all_workers)} finished)",
            )
        workers = self._workers(project_id=project_id, parent_task_id=task_id)
        context = SharedContextDocument(
            self.context_path(project_id=project_id, parent_task_id=task_id),
            clock=self.queue.clock,
        ).read()

        lines = [
            "# Worker Pool Results",
            "",
            f"**Task:** {task_id}",
            f"**Workers:** {len(workers)}",
            f"**Completed:** {len(completion.completed_workers)}",
            f"**Failed:** {len(completion.failed_workers)}",
            "",
            "## Worker Outputs",
        ]
        artifacts: list[str] = []
        for worker in workers:
            index = worker.metadata.get("workerIndex", "?")
            lines.extend(
                [
                    "",
                    f"### Worker {index} ({worker.agent_id})",
                    f"- Status: {worker.status.value}",
                    f"- Scope: {worker.metadata.get('scope', '')}",
                ],
            )
            if worker.result:
                lines.extend(["", worker.result.strip()])
            if worker.error:
                lines.append(f"- Error: {worker.error}")
            for artifact in worker.artifacts:
                lines.append(f"- Artifact: {artifact}")
                if artifact not in artifacts:
                    artifacts.append(artifact)

        pool_step = context.step(POOL_STEP_ID) if context is not None else None
        if pool_step is not None and pool_step.outputs:
            lines.extend(["", "## Outputs"])
            lines.extend(f"- {output}" for output in pool_step.outputs)
        if context is not None and context.messages:
            lines.extend(["", "## Messages"])
            lines.extend(
                f"[{message.sender} -> {message.recipient}]: {message.message}"
                for message in context.messages
            )
        return WorkerPoolMerge(report="\n".join(lines) + "\n", artifacts=artifacts)

    def _workers(self, *, project_id: str, parent_task_id: str) -> list[TaskView]:
        children = self.queue.repository.list_children(
            parent_task_id=parent_task_id,
            key=POOL_PARENT_KEY,
        )
        workers = [child for child in children if child.project_id == project_id]
        return sorted(workers, key=lambda task: int(task.metadata.get("workerIndex", 0)))

    def _on_task_finished(self, task: TaskView) -> bool:
        parent_task_id = task.pool_parent_id
        if parent_task_id is None:
            return False
        context = SharedContextDocument(
            self.context_path(project_id=task.project_id, parent_task_id=parent_task_id),
            clock=self.queue.clock,
        )
        context.update_agent(
            POOL_STEP_ID,
            task_id=task.task_id,
            progress=task.progress,
            status=task.status.value,
        )

        advanced = False
        if task.metadata.get("role") == WorkerRole.PRIMARY.value:
            advanced = self._release_reviewers(task)

        completion = self.check_worker_pool_completion(task.project_id, parent_task_id)
        if completion.complete:
            status = StepStatus.COMPLETED if completion.completed_workers else StepStatus.FAILED
            context.update_step_status(
                POOL_STEP_ID,
                status,
                summary=(
                    f"{len(completion.completed_workers)}/{len(completion.all_workers)} "
                    "workers completed"
                ),
            )
        return advanced

    def _release_reviewers(self, primary: TaskView) -> bool:
        reviewers = [
            worker
            for worker in self._workers(
                project_id=primary.project_id,
                parent_task_id=str(primary.pool_parent_id),
            )
            if worker.metadata.get("role") == WorkerRole.REVIEWER.value
            and worker.status == TaskStatus.CREATED
        ]
        if not reviewers:
            return False
        if primary.status == TaskStatus.COMPLETED:
            for reviewer in reviewers:
                self.queue.start_task(reviewer.task_id)
            logger.info(
                "Primary %s completed; releasing %s reviewers",
                primary.task_id,
                len(reviewers),
            )
            self.queue.process_queue()
            return True
        for reviewer in reviewers:
            self.queue.cancel_task(
                reviewer.task_id,
                reason=f"Primary worker {primary.task_id} {primary.status.value}",
            )
        return False


def generate_work_scopes(
    distribution: WorkDistribution,
    count: int,
    scope_items: Sequence[str] | None = None,
) -> list[tuple[str, WorkerRole]]:
    """Scope text and role for each worker, in worker order."""

    if distribution == WorkDistribution.SPLIT:
        if scope_items:
            return [
                (", ".join(chunk) if chunk else "No items assigned", WorkerRole.PART)
                for chunk in split_items(scope_items, count)
            ]
        return [
            (f"Part {index}/{count}: Work on assigned portion", WorkerRole.PART)
            for index in range(1, count + 1)
        ]
    if distribution == WorkDistribution.COLLABORATIVE:
        return [("Collaborative work with coordination", WorkerRole.COLLABORATOR)] * count
    scopes = [("Primary: Implement the solution", WorkerRole.PRIMARY)]
    scopes.extend(
        (f"Reviewer {index}: Review and suggest improvements", WorkerRole.REVIEWER)
        for index in range(1, count)
    )
    return scopes


def split_items(items: Sequence[str], count: int) -> list[list[str]]:
    """Contiguous, disjoint slices whose sizes differ by at most one."""

    base, extra = divmod(len(items), count)
    chunks: list[list[str]] = []
    start = 0
    for index in range(count):
        size = base + (1 if index < extra else 0)
        chunks.append(list(items[start : start + size]))
        start += size
    return chunks


def _worker_description(  # noqa: PLR0913
    *,
    parent: TaskView,
    worker_index: int,
    worker_count: int,
    scope: str,
    distribution: WorkDistribution,
    role: WorkerRole,
    instructions: str,
    context_path: Path,
) -> str:
    lines = [
        f"## Worker {worker_index} of {worker_count}",
        "",
        f"**Parent Task:** {parent.title}",
        f"**Strategy:** {distribution.value}",
        f"**Your Scope:** {scope}",
        "",
        "## Instructions",
        instructions or parent.description,
        "",
        "## Worker Pool Guidelines",
        f"1. You are part of a {worker_count}-person team working on this task",
        f"2. Read {context_path} to see what others are doing",
        "3. Update your progress regularly",
    ]
    if distribution == WorkDistribution.COLLABORATIVE:
        lines.extend(
            [
                f"4. Coordinate with other workers through {context_path.name}",
                "5. Avoid duplicate work by checking what others have done",
            ],
        )
    elif distribution == WorkDistribution.SPLIT:
        lines.extend(
            [
                "4. Focus on your assigned portion only",
                "5. Your work will be merged with others at the end",
            ],
        )
    elif role == WorkerRole.PRIMARY:
        lines.extend(["4. You are the PRIMARY implementer", "5. Others will review your work"])
    else:
        lines.extend(
            [
                "4. You are a REVIEWER",
                "5. Check the primary implementer's work and suggest improvements",
            ],
        )
    lines.extend(
        [
            "",
            f"Parent Task: {parent.task_id}",
            f"Worker Index: {worker_index}",
            f"Total Workers: {worker_count}",
        ],
    )
    return "\n".join(lines)
