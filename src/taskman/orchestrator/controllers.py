"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path

from taskman.config import Settings
from taskman.orchestrator.models import (
    PipelineConfig,
    PipelineStep,
    StepFailurePolicy,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
    WorkDistribution,
)
from taskman.orchestrator.processor import QueueProcessor
from taskman.orchestrator.services import open_services
from taskman.orchestrator.templates import config_from_template, get_pipeline_templates


@dataclass(slots=True)
class QueueRunCommand:
    """CLI input for the processing loop."""

    db_path: Path | None
    max_cycles: int | None
    until_idle: bool
    max_concurrent_tasks: int | None = None
    processing_interval_ms: int | None = None


@dataclass(slots=True)
class QueueCommand:
    """CLI input for one-shot queue operations."""

    db_path: Path | None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    project_id: str
    title: str
    description: str
    agent: str | None
    priority: str
    max_retries: int | None
    timeout_minutes: int | None
    start: bool


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    project_id: str | None
    limit: int


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for inspect/start/cancel/restart operations."""

    db_path: Path | None
    task_id: str
    reason: str | None = None


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for an external completion signal."""

    db_path: Path | None
    task_id: str
    result: str | None
    artifacts: tuple[str, ...]


@dataclass(slots=True)
class TaskFailCommand:
    """CLI input for an external failure signal."""

    db_path: Path | None
    task_id: str
    error: str


@dataclass(slots=True)
class TaskProgressCommand:
    """CLI input for a progress report."""

    db_path: Path | None
    task_id: str
    percentage: int
    message: str


@dataclass(slots=True)
class PipelineCreateCommand:
    """CLI input for pipeline creation from a template or a steps file."""

    db_path: Path | None
    project_id: str
    title: str
    description: str
    template_id: str | None
    steps_file: Path | None
    agent: str | None
    failure_policy: str
    shared_context: bool


@dataclass(slots=True)
class PipelineStepCommand:
    """CLI input for pipeline status and step retry."""

    db_path: Path | None
    task_id: str
    step_id: str | None = None


@dataclass(slots=True)
class PoolCreateCommand:
    """CLI input for worker pool creation."""

    db_path: Path | None
    project_id: str
    task_id: str
    workers: int
    strategy: str
    instructions: str
    scope_items: tuple[str, ...]


@dataclass(slots=True)
class PoolCommand:
    """CLI input for worker pool status and merge."""

    db_path: Path | None
    project_id: str
    task_id: str
    output_path: Path | None = None


class TaskmanCliController:
    """Coordinates queue, task, pipeline and pool CLI operations."""

    def run_queue(self, command: QueueRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            overrides = {
                name: value
                for name, value in (
                    ("max_concurrent_tasks", command.max_concurrent_tasks),
                    ("processing_interval_ms", command.processing_interval_ms),
                )
                if value is not None
            }
            if overrides:
                services.queue.configure(**overrides)
            summary = QueueProcessor(services.queue).run_loop(
                max_cycles=command.max_cycles,
                until_idle=command.until_idle,
            )
        return [
            "Processor summary: "
            f"cycles={summary.cycles} dispatched={summary.dispatched} "
            f"completed={summary.completed} failed={summary.failed} "
            f"timed_out={summary.timed_out} errors={summary.errors}",
        ]

    def sweep(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            cycle = services.queue.run_cycle()
        sweep = cycle.sweep
        return [
            "Cycle: "
            f"timed_out={len(cycle.timed_out)} completed={len(cycle.completed)} "
            f"failed={len(cycle.failed)} progress_updates={cycle.progress_updates}",
            "Sweep: "
            f"available_slots={sweep.available_slots} dispatched={len(sweep.dispatched)} "
            f"spawn_failures={len(sweep.spawn_failures)} requeued={len(sweep.requeued)}",
            *(f"  dispatched {task_id}" for task_id in sweep.dispatched),
            *(f"  spawn failed {task_id}" for task_id in sweep.spawn_failures),
        ]

    def stats(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            stats = services.queue.get_stats()
        lines = [
            f"Tasks: total={stats.total}",
            f"Running: {stats.running_now}/{stats.max_concurrent}",
        ]
        lines.extend(
            f"  {status.value}: {count}" for status, count in stats.by_status.items()
        )
        return lines

    def show_config(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        orchestrator = settings.orchestrator
        lines = [f"DB: {settings.db_path}"]
        lines.extend(f"{name}: {value}" for name, value in asdict(settings.queue).items())
        lines.extend(
            [
                f"projects_root: {orchestrator.projects_root}",
                f"workdir_root: {orchestrator.workdir_root}",
                f"progress_dir: {orchestrator.progress_dir}",
                f"default_agent: {orchestrator.default_agent}",
                "agents:",
            ],
        )
        lines.extend(
            f"  {agent}: {template}"
            for agent, template in sorted(orchestrator.agent_commands.items())
        )
        return lines

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.queue.create_task(
                TaskCreate(
                    project_id=command.project_id,
                    title=command.title,
                    description=command.description,
                    agent_id=command.agent,
                    priority=TaskPriority(command.priority),
                    max_retries=command.max_retries,
                    timeout_minutes=command.timeout_minutes,
                    auto_start=command.start,
                ),
            )
        return [
            "Task created: "
            f"task_id={task.task_id} agent={task.agent_id} "
            f"priority={task.priority.value} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            tasks = services.queue.list_tasks(
                status=TaskStatus(command.status) if command.status else None,
                project_id=command.project_id,
                limit=command.limit,
            )
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def inspect_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.queue.get_task(command.task_id)
            diagnostic = services.queue.diagnose_task(command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Project: {task.project_id}",
            f"Kind: {task.kind.value}",
            f"Agent: {task.agent_id}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Progress: {task.progress}% ({task.current_step or '-'})",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Timeout: {task.timeout_minutes} min",
            f"Worker: {task.assigned_worker or '-'}",
            f"Error: {task.error or '-'}",
            f"Error kind: {task.error_kind.value if task.error_kind else '-'}",
            f"Result: {task.result or '-'}",
            f"Artifacts: {', '.join(task.artifacts) or '-'}",
            f"Missing artifacts: {', '.join(task.missing_artifacts) or '-'}",
        ]
        if diagnostic.processing_minutes is not None:
            lines.append(
                f"Processing for {diagnostic.processing_minutes} min"
                f"{' (stuck)' if diagnostic.is_stuck else ''}",
            )
        if diagnostic.snapshot_percentage is not None:
            lines.append(
                f"Last snapshot: {diagnostic.snapshot_percentage}% "
                f"{diagnostic.snapshot_message or ''}".rstrip(),
            )
        lines.append("History:")
        lines.extend(
            f"  {entry.timestamp.isoformat()} {entry.status.value} {entry.message or ''}".rstrip()
            for entry in task.status_history
        )
        return lines

    def start_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.queue.start_task(command.task_id)
        return [f"Task {task.task_id}: status={task.status.value} retries={task.retry_count}"]

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.queue.cancel_task(command.task_id, reason=command.reason)
        return [f"Task cancelled: {task.task_id}"]

    def restart_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.queue.restart_task(command.task_id, reason=command.reason)
        return [f"Task {task.task_id}: status={task.status.value} retries={task.retry_count}"]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            completion = services.queue.on_task_complete(
                command.task_id,
                result=command.result,
                artifacts=command.artifacts,
            )
        lines = [
            f"Task {completion.task.task_id}: status={completion.task.status.value} "
            f"applied={completion.applied} pipeline_advanced={completion.pipeline_advanced}",
        ]
        if completion.missing_artifacts:
            lines.append(f"Missing artifacts: {', '.join(completion.missing_artifacts)}")
        return lines

    def fail_task(self, command: TaskFailCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.queue.on_task_error(command.task_id, command.error)
        return [f"Task {task.task_id}: status={task.status.value}"]

    def report_progress(self, command: TaskProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            updated = services.queue.update_progress(
                command.task_id,
                command.percentage,
                command.message,
            )
        if updated is None:
            return [f"Progress ignored for task {command.task_id}"]
        return [f"Task {updated.task_id}: progress={updated.progress}%"]

    def list_templates(self) -> list[str]:
        lines: list[str] = []
        for template in get_pipeline_templates():
            lines.append(f"{template.id}: {template.name} - {template.description}")
            for step in template.steps:
                depends = f" after {', '.join(step.depends_on)}" if step.depends_on else ""
                lines.append(f"  {step.id} ({step.type.value} x{step.count}){depends}")
        return lines

    def create_pipeline(self, command: PipelineCreateCommand) -> list[str]:
        config = _pipeline_config(command)
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            parent = services.pipelines.create_pipeline_task(
                project_id=command.project_id,
                title=command.title,
                description=command.description,
                config=config,
                agent_id=command.agent,
            )
            status = services.pipelines.get_pipeline_status(parent.task_id)
        return [
            f"Pipeline created: task_id={parent.task_id} template={config.template_id} "
            f"steps={status.total_steps}",
            *(f"  {step_id}: {value.value}" for step_id, value in status.step_status.items()),
        ]

    def pipeline_status(self, command: PipelineStepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            status = services.pipelines.get_pipeline_status(command.task_id)
        return [
            f"Pipeline {status.parent_task_id}: {status.status} "
            f"step {status.step}/{status.total_steps} ({status.current_step_name})",
            *(f"  {step_id}: {value.value}" for step_id, value in status.step_status.items()),
        ]

    def retry_pipeline_step(self, command: PipelineStepCommand) -> list[str]:
        if command.step_id is None:
            raise ValueError("step id is required")
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            retried = services.pipelines.retry_step(command.task_id, command.step_id)
        return [f"Step {command.step_id} retried: {len(retried)} tasks re-queued"]

    def create_pool(self, command: PoolCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            assignments = services.worker_pool.create_worker_pool(
                task_id=command.task_id,
                project_id=command.project_id,
                worker_count=command.workers,
                strategy=WorkDistribution(command.strategy),
                instructions=command.instructions,
                scope_items=command.scope_items or None,
            )
        return [
            f"Worker pool for {command.task_id}: {len(assignments)} workers",
            *(
                f"  {item.worker_index}. {item.task_id} [{item.role.value}] {item.scope}"
                for item in assignments
            ),
        ]

    def pool_status(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            completion = services.worker_pool.check_worker_pool_completion(
                command.project_id,
                command.task_id,
            )
        return [
            f"Worker pool {command.task_id}: complete={completion.complete}",
            f"Workers: {len(completion.all_workers)}",
            f"Completed: {len(completion.completed_workers)}",
            f"Failed: {len(completion.failed_workers)}",
        ]

    def merge_pool(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            merged = services.worker_pool.merge_worker_outputs(
                command.project_id,
                command.task_id,
            )
        if command.output_path is not None:
            command.output_path.parent.mkdir(parents=True, exist_ok=True)
            command.output_path.write_text(merged.report, "utf-8")
            return [f"Merged report written: {command.output_path}"]
        return merged.report.splitlines()


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} status={task.status.value} priority={task.priority.value} "
        f"agent={task.agent_id} progress={task.progress}% "
        f"created_at={task.created_at.isoformat()} title={task.title}"
    )


def _pipeline_config(command: PipelineCreateCommand) -> PipelineConfig:
    policy = StepFailurePolicy(command.failure_policy)
    if command.steps_file is None:
        return config_from_template(
            command.template_id or "simple",
            shared_context=command.shared_context,
            failure_policy=policy,
        )
    payload = json.loads(command.steps_file.read_text("utf-8"))
    raw_steps = payload.get("steps") if isinstance(payload, dict) else payload
    if not isinstance(raw_steps, list) or not all(isinstance(item, dict) for item in raw_steps):
        raise ValueError(f"{command.steps_file} must hold a list of step objects")
    return PipelineConfig(
        template_id=command.template_id or "custom",
        steps=tuple(PipelineStep.from_dict(item) for item in raw_steps),
        shared_context=command.shared_context,
        failure_policy=policy,
    )
