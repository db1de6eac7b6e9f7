"""CLI entrypoint for taskman."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskman import __version__
from taskman.orchestrator.controllers import (
    PipelineCreateCommand,
    PipelineStepCommand,
    PoolCommand,
    PoolCreateCommand,
    QueueCommand,
    QueueRunCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskFailCommand,
    TaskListCommand,
    TaskmanCliController,
    TaskMutateCommand,
    TaskProgressCommand,
)
from taskman.orchestrator.errors import OrchestratorError
from taskman.orchestrator.models import (
    StepFailurePolicy,
    TaskPriority,
    TaskStatus,
    WorkDistribution,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskmanCliController()
CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
task_id_option = click.option("--task-id", required=True, help="Task id.")
project_option = click.option("--project", "project_id", required=True, help="Project id.")


@click.group()
@click.version_option(version=__version__, prog_name="taskman")
def taskman() -> None:
    """Task orchestrator CLI."""


@taskman.group()
def queue() -> None:
    """Scheduler loop and queue inspection."""


@queue.command("run")
@db_path_option
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processing cycles.",
)
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Stop once nothing is pending or running.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Override TASKMAN_MAX_CONCURRENT_TASKS for this run.",
)
@click.option(
    "--interval-ms",
    type=click.IntRange(min=100),
    default=None,
    help="Override TASKMAN_PROCESSING_INTERVAL_MS for this run.",
)
def queue_run(
    db_path: Path | None,
    max_cycles: int | None,
    until_idle: bool,
    max_concurrent: int | None,
    interval_ms: int | None,
) -> None:
    """Run the processing loop: timeouts, progress poll, dispatch."""

    _run(
        CONTROLLER.run_queue,
        QueueRunCommand(
            db_path=db_path,
            max_cycles=max_cycles,
            until_idle=until_idle,
            max_concurrent_tasks=max_concurrent,
            processing_interval_ms=interval_ms,
        ),
    )


@queue.command("sweep")
@db_path_option
def queue_sweep(db_path: Path | None) -> None:
    """Run one processing cycle and exit."""

    _run(CONTROLLER.sweep, QueueCommand(db_path=db_path))


@queue.command("stats")
@db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show task counts per status and slot usage."""

    _run(CONTROLLER.stats, QueueCommand(db_path=db_path))


@queue.command("config")
@db_path_option
def queue_config(db_path: Path | None) -> None:
    """Show the effective queue configuration."""

    _run(CONTROLLER.show_config, QueueCommand(db_path=db_path))


@taskman.group()
def task() -> None:
    """Task lifecycle commands."""


@task.command("create")
@db_path_option
@project_option
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description handed to the worker.")
@click.option("--agent", default=None, help="Agent id; defaults to TASKMAN_DEFAULT_AGENT.")
@click.option(
    "--priority",
    type=click.Choice([item.value for item in TaskPriority], case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
    help="Dispatch priority.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Maximum retries.")
@click.option(
    "--timeout-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Processing timeout.",
)
@click.option("--start/--no-start", default=False, show_default=True, help="Queue immediately.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    title: str,
    description: str,
    agent: str | None,
    priority: str,
    max_retries: int | None,
    timeout_minutes: int | None,
    start: bool,
) -> None:
    """Create a task in `created` status."""

    _run(
        CONTROLLER.create_task,
        TaskCreateCommand(
            db_path=db_path,
            project_id=project_id,
            title=title,
            description=description,
            agent=agent,
            priority=priority.lower(),
            max_retries=max_retries,
            timeout_minutes=timeout_minutes,
            start=start,
        ),
    )


@task.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--project", "project_id", default=None, help="Optional project filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(
    db_path: Path | None,
    status: str | None,
    project_id: str | None,
    limit: int,
) -> None:
    """List tasks in creation order."""

    _run(
        CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            status=status.lower() if status is not None else None,
            project_id=project_id,
            limit=limit,
        ),
    )


@task.command("inspect")
@db_path_option
@task_id_option
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its status history and stuck diagnosis."""

    _run(CONTROLLER.inspect_task, TaskMutateCommand(db_path=db_path, task_id=task_id))


@task.command("start")
@db_path_option
@task_id_option
def task_start(db_path: Path | None, task_id: str) -> None:
    """Queue a created task or retry a failed one."""

    _run(CONTROLLER.start_task, TaskMutateCommand(db_path=db_path, task_id=task_id))


@task.command("cancel")
@db_path_option
@task_id_option
@click.option("--reason", default=None, help="Recorded in the status history.")
def task_cancel(db_path: Path | None, task_id: str, reason: str | None) -> None:
    """Cancel a task that has not finished."""

    _run(
        CONTROLLER.cancel_task,
        TaskMutateCommand(db_path=db_path, task_id=task_id, reason=reason),
    )


@task.command("restart")
@db_path_option
@task_id_option
@click.option("--reason", default=None, help="Recorded as the failure of the stuck attempt.")
def task_restart(db_path: Path | None, task_id: str, reason: str | None) -> None:
    """Fail a stuck running task and queue it for another attempt."""

    _run(
        CONTROLLER.restart_task,
        TaskMutateCommand(db_path=db_path, task_id=task_id, reason=reason),
    )


@task.command("complete")
@db_path_option
@task_id_option
@click.option("--result", default=None, help="Result summary.")
@click.option(
    "--artifact",
    "artifacts",
    multiple=True,
    help="Produced file, relative to the project workspace. Can be repeated.",
)
def task_complete(
    db_path: Path | None,
    task_id: str,
    result: str | None,
    artifacts: tuple[str, ...],
) -> None:
    """Signal completion of a running task."""

    _run(
        CONTROLLER.complete_task,
        TaskCompleteCommand(
            db_path=db_path,
            task_id=task_id,
            result=result,
            artifacts=artifacts,
        ),
    )


@task.command("fail")
@db_path_option
@task_id_option
@click.option("--error", required=True, help="Error message.")
def task_fail(db_path: Path | None, task_id: str, error: str) -> None:
    """Signal failure of a running task."""

    _run(CONTROLLER.fail_task, TaskFailCommand(db_path=db_path, task_id=task_id, error=error))


@task.command("progress")
@db_path_option
@task_id_option
@click.option("--percentage", type=click.IntRange(min=0, max=100), required=True)
@click.option("--message", default="", help="Current step description.")
def task_progress(db_path: Path | None, task_id: str, percentage: int, message: str) -> None:
    """Report progress of a running task."""

    _run(
        CONTROLLER.report_progress,
        TaskProgressCommand(
            db_path=db_path,
            task_id=task_id,
            percentage=percentage,
            message=message,
        ),
    )


@taskman.group()
def pipeline() -> None:
    """Multi-step pipelines."""


@pipeline.command("templates")
def pipeline_templates() -> None:
    """List built-in pipeline templates."""

    _emit_lines(CONTROLLER.list_templates())


@pipeline.command("create")
@db_path_option
@project_option
@click.option("--title", required=True, help="Pipeline title.")
@click.option("--description", default="", help="Pipeline description.")
@click.option("--template", "template_id", default=None, help="Template id (default: simple).")
@click.option(
    "--steps-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with a list of steps; overrides the template steps.",
)
@click.option("--agent", default=None, help="Agent for steps that do not name one.")
@click.option(
    "--failure-policy",
    type=click.Choice([item.value for item in StepFailurePolicy], case_sensitive=False),
    default=StepFailurePolicy.STRICT.value,
    show_default=True,
    help="How a step with failed children resolves.",
)
@click.option(
    "--shared-context/--no-shared-context",
    default=True,
    show_default=True,
    help="Write a SHARED_CONTEXT.md coordination document.",
)
def pipeline_create(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    title: str,
    description: str,
    template_id: str | None,
    steps_file: Path | None,
    agent: str | None,
    failure_policy: str,
    shared_context: bool,
) -> None:
    """Create a pipeline and dispatch its root steps."""

    _run(
        CONTROLLER.create_pipeline,
        PipelineCreateCommand(
            db_path=db_path,
            project_id=project_id,
            title=title,
            description=description,
            template_id=template_id,
            steps_file=steps_file,
            agent=agent,
            failure_policy=failure_policy.lower(),
            shared_context=shared_context,
        ),
    )


@pipeline.command("status")
@db_path_option
@task_id_option
def pipeline_status(db_path: Path | None, task_id: str) -> None:
    """Show pipeline step progress."""

    _run(CONTROLLER.pipeline_status, PipelineStepCommand(db_path=db_path, task_id=task_id))


@pipeline.command("retry-step")
@db_path_option
@task_id_option
@click.option("--step", "step_id", required=True, help="Failed step id.")
def pipeline_retry_step(db_path: Path | None, task_id: str, step_id: str) -> None:
    """Retry the failed tasks of a failed step."""

    _run(
        CONTROLLER.retry_pipeline_step,
        PipelineStepCommand(db_path=db_path, task_id=task_id, step_id=step_id),
    )


@taskman.group()
def pool() -> None:
    """Worker pools."""


@pool.command("create")
@db_path_option
@project_option
@task_id_option
@click.option("--workers", type=click.IntRange(min=1, max=10), default=2, show_default=True)
@click.option(
    "--strategy",
    type=click.Choice([item.value for item in WorkDistribution], case_sensitive=False),
    default=WorkDistribution.SPLIT.value,
    show_default=True,
    help="How the work is divided.",
)
@click.option("--instructions", default="", help="Instructions for every worker.")
@click.option(
    "--scope-item",
    "scope_items",
    multiple=True,
    help="Work item to partition across split workers. Can be repeated.",
)
def pool_create(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    task_id: str,
    workers: int,
    strategy: str,
    instructions: str,
    scope_items: tuple[str, ...],
) -> None:
    """Split one task across parallel worker tasks."""

    _run(
        CONTROLLER.create_pool,
        PoolCreateCommand(
            db_path=db_path,
            project_id=project_id,
            task_id=task_id,
            workers=workers,
            strategy=strategy.lower(),
            instructions=instructions,
            scope_items=scope_items,
        ),
    )


@pool.command("status")
@db_path_option
@project_option
@task_id_option
def pool_status(db_path: Path | None, project_id: str, task_id: str) -> None:
    """Show worker pool completion."""

    _run(
        CONTROLLER.pool_status,
        PoolCommand(db_path=db_path, project_id=project_id, task_id=task_id),
    )


@pool.command("merge")
@db_path_option
@project_option
@task_id_option
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the merged report here instead of printing it.",
)
def pool_merge(
    db_path: Path | None,
    project_id: str,
    task_id: str,
    output_path: Path | None,
) -> None:
    """Merge the outputs of a completed worker pool."""

    _run(
        CONTROLLER.merge_pool,
        PoolCommand(
            db_path=db_path,
            project_id=project_id,
            task_id=task_id,
            output_path=output_path,
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskman()
