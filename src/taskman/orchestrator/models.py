"""Domain models for the task queue, worker pools and pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    CREATED = "created"
    PENDING = "pending"
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
RUNNING_STATUSES = frozenset({TaskStatus.ACTIVE, TaskStatus.PROCESSING})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.CREATED: frozenset({TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.CANCELLED}),
    TaskStatus.PENDING: frozenset({TaskStatus.ACTIVE, TaskStatus.CANCELLED}),
    TaskStatus.ACTIVE: frozenset(
        {
            TaskStatus.PROCESSING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        },
    ),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskPriority(str, Enum):
    """Ordering hint among pending tasks; never preempts running work."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Sort key, lower dispatches first."""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskKind(str, Enum):
    """Dispatchable work vs. pipeline bookkeeping record."""

    STANDARD = "standard"
    PIPELINE = "pipeline"


class ErrorKind(str, Enum):
    """Failure classes recorded on a failed task."""

    SPAWN_FAILURE = "spawn_failure"
    TIMEOUT = "timeout"
    WORKER_REPORTED_FAILURE = "worker_reported_failure"


@dataclass(slots=True)
class StatusChange:
    """One append-only status history entry."""

    status: TaskStatus
    timestamp: datetime
    message: str | None = None


@dataclass(slots=True)
class ProgressUpdate:
    """One recorded progress report."""

    percentage: int
    message: str
    timestamp: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    project_id: str
    title: str
    description: str = ""
    agent_id: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    max_retries: int | None = None
    timeout_minutes: int | None = None
    auto_start: bool = False
    metadata: dict[str, Any] | None = None
    kind: TaskKind = TaskKind.STANDARD
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task document."""

    task_id: str
    project_id: str
    kind: TaskKind
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    agent_id: str
    assigned_worker: str | None
    result: str | None
    error: str | None
    error_kind: ErrorKind | None
    artifacts: list[str]
    missing_artifacts: list[str]
    status_history: list[StatusChange]
    progress: int
    progress_updates: list[ProgressUpdate]
    current_step: str | None
    metadata: dict[str, Any]
    retry_count: int
    max_retries: int
    timeout_minutes: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def parent_task_id(self) -> str | None:
        value = self.metadata.get("parentTaskId")
        return str(value) if value is not None else None

    @property
    def step_id(self) -> str | None:
        value = self.metadata.get("stepId")
        return str(value) if value is not None else None

    @property
    def pool_parent_id(self) -> str | None:
        value = self.metadata.get("poolParentId")
        return str(value) if value is not None else None


@dataclass(slots=True)
class QueueConfig:
    """Tunable scheduler settings, applied on the next sweep."""

    max_concurrent_tasks: int = 3
    default_timeout_minutes: int = 30
    max_retries: int = 3
    processing_interval_ms: int = 5_000
    stuck_after_minutes: int = 5

    def validate(self) -> None:
        """Raise ValueError on out-of-range values."""

        if self.max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be >= 1.")
        if self.default_timeout_minutes < 1:
            raise ValueError("default_timeout_minutes must be >= 1.")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        if self.processing_interval_ms < 100:
            raise ValueError("processing_interval_ms must be >= 100.")
        if self.stuck_after_minutes < 1:
            raise ValueError("stuck_after_minutes must be >= 1.")


@dataclass(slots=True)
class SweepSummary:
    """Counters of one scheduling sweep."""

    skipped: bool = False
    available_slots: int = 0
    dispatched: list[str] = field(default_factory=list)
    spawn_failures: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CycleSummary:
    """Counters of one timeout + poll + dispatch cycle."""

    timed_out: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    progress_updates: int = 0
    sweep: SweepSummary = field(default_factory=SweepSummary)


@dataclass(slots=True)
class CompletionResult:
    """Outcome of a completion call, including artifact verification."""

    task: TaskView
    applied: bool
    verified_artifacts: list[str] = field(default_factory=list)
    missing_artifacts: list[str] = field(default_factory=list)
    pipeline_advanced: bool = False


@dataclass(slots=True)
class QueueStats:
    """Queue health snapshot."""

    total: int
    by_status: dict[TaskStatus, int]
    running_now: int
    max_concurrent: int
    sweep_in_progress: bool


@dataclass(slots=True)
class TaskDiagnostic:
    """Derived stuck-task view; never changes task state."""

    task_id: str
    status: TaskStatus
    assigned_worker: str | None
    progress: int
    current_step: str | None
    processing_minutes: int | None
    is_stuck: bool
    last_update: StatusChange | None
    snapshot_percentage: int | None = None
    snapshot_message: str | None = None


class StepType(str, Enum):
    """Informational step role; does not change scheduling."""

    EVALUATOR = "evaluator"
    WORKER = "worker"
    INTEGRATOR = "integrator"
    REVIEWER = "reviewer"
    TESTER = "tester"
    CUSTOM = "custom"


class StepStatus(str, Enum):
    """Pipeline-level step state."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepFailurePolicy(str, Enum):
    """How a step with mixed completed/failed children resolves."""

    STRICT = "strict"
    LENIENT = "lenient"


_STEP_FIELDS = {
    "id": "id",
    "name": "name",
    "type": "type",
    "agentId": "agent_id",
    "agent_id": "agent_id",
    "count": "count",
    "dependsOn": "depends_on",
    "depends_on": "depends_on",
    "instructions": "instructions",
    "outputFiles": "output_files",
    "output_files": "output_files",
}


@dataclass(frozen=True, slots=True)
class PipelineStep:
    """Immutable step template."""

    id: str
    name: str
    type: StepType = StepType.CUSTOM
    agent_id: str | None = None
    count: int = 1
    depends_on: tuple[str, ...] = ()
    instructions: str = ""
    output_files: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PipelineStep:
        """Build a step from a JSON object, rejecting unknown fields."""

        unknown = sorted(key for key in raw if key not in _STEP_FIELDS)
        if unknown:
            raise ValueError(f"Unknown pipeline step fields: {', '.join(unknown)}")
        values = {_STEP_FIELDS[key]: value for key, value in raw.items()}
        step_id = values.get("id")
        if not isinstance(step_id, str) or not step_id.strip():
            raise ValueError("pipeline step id must be a non-empty string")
        count = values.get("count", 1)
        if isinstance(count, bool) or not isinstance(count, int):
            raise TypeError(f"pipeline step {step_id!r} count must be an integer")
        return cls(
            id=step_id,
            name=str(values.get("name") or step_id),
            type=StepType(values.get("type", StepType.CUSTOM.value)),
            agent_id=values.get("agent_id"),
            count=count,
            depends_on=tuple(str(dep) for dep in values.get("depends_on") or ()),
            instructions=str(values.get("instructions", "")),
            output_files=tuple(str(name) for name in values.get("output_files") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "agentId": self.agent_id,
            "count": self.count,
            "dependsOn": list(self.depends_on),
            "instructions": self.instructions,
            "outputFiles": list(self.output_files),
        }


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Pipeline definition submitted at creation time."""

    template_id: str
    steps: tuple[PipelineStep, ...]
    shared_context: bool = True
    failure_policy: StepFailurePolicy = StepFailurePolicy.STRICT


@dataclass(slots=True)
class PipelineRunView:
    """Persisted pipeline run document."""

    parent_task_id: str
    project_id: str
    template_id: str
    failure_policy: StepFailurePolicy
    steps: list[PipelineStep]
    step_status: dict[str, StepStatus]
    step_agents: dict[str, list[str]]
    shared_context_path: str | None
    revision: int
    created_at: datetime
    updated_at: datetime

    def step(self, step_id: str) -> PipelineStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


@dataclass(slots=True)
class PipelineStatusView:
    """Pipeline progress summary."""

    parent_task_id: str
    step: int
    total_steps: int
    current_step_name: str
    status: str
    step_status: dict[str, StepStatus]


class WorkDistribution(str, Enum):
    """How a worker pool divides one task."""

    SPLIT = "split"
    COLLABORATIVE = "collaborative"
    REVIEW = "review"


class WorkerRole(str, Enum):
    """Role of one worker inside a pool."""

    PART = "part"
    COLLABORATOR = "collaborator"
    PRIMARY = "primary"
    REVIEWER = "reviewer"


@dataclass(slots=True)
class WorkerAssignment:
    """One spawned pool worker."""

    worker_index: int
    task_id: str
    scope: str
    role: WorkerRole
    instructions: str


@dataclass(slots=True)
class WorkerPoolCompletion:
    """Pool completion check result."""

    complete: bool
    all_workers: list[str]
    completed_workers: list[str]
    failed_workers: list[str]


@dataclass(slots=True)
class WorkerPoolMerge:
    """Merged result of a finished pool."""

    report: str
    artifacts: list[str]
