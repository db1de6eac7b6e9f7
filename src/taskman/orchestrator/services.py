"""Wiring of the orchestrator components from settings."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from taskman.config import Settings
from taskman.orchestrator.backend import CliSpawnAdapter, SpawnAdapter
from taskman.orchestrator.pipeline import PipelineRunner
from taskman.orchestrator.progress import FileProgressChannel
from taskman.orchestrator.queue import TaskQueue
from taskman.orchestrator.repository import TaskRepository
from taskman.orchestrator.workdir import ProjectWorkspaces, TaskWorkdirManager
from taskman.orchestrator.worker_pool import WorkerPool


@dataclass(slots=True)
class OrchestratorServices:
    """One queue with its pool and pipeline runner attached as listeners."""

    repository: TaskRepository
    queue: TaskQueue
    worker_pool: WorkerPool
    pipelines: PipelineRunner


def build_services(
    *,
    repository: TaskRepository,
    settings: Settings,
    spawn_adapter: SpawnAdapter | None = None,
) -> OrchestratorServices:
    orchestrator = settings.orchestrator
    workspaces = ProjectWorkspaces(orchestrator.projects_root)
    adapter = spawn_adapter or CliSpawnAdapter(
        workdir_manager=TaskWorkdirManager(orchestrator.workdir_root),
        agent_commands=orchestrator.agent_commands,
        graceful_shutdown_seconds=orchestrator.graceful_shutdown_seconds,
    )
    queue = TaskQueue(
        repository=repository,
        spawn_adapter=adapter,
        progress_channel=FileProgressChannel(orchestrator.progress_dir),
        workspaces=workspaces,
        config=settings.queue,
        default_agent=orchestrator.default_agent,
        known_agents=orchestrator.agent_commands.keys(),
    )
    worker_pool = WorkerPool(queue=queue, workspaces=workspaces)
    pipelines = PipelineRunner(queue=queue, worker_pool=worker_pool, workspaces=workspaces)
    return OrchestratorServices(
        repository=repository,
        queue=queue,
        worker_pool=worker_pool,
        pipelines=pipelines,
    )


@contextmanager
def open_services(
    settings: Settings,
    *,
    spawn_adapter: SpawnAdapter | None = None,
) -> Iterator[OrchestratorServices]:
    """Open the task store, create the schema and yield wired services."""

    settings.validate()
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield build_services(
            repository=repository,
            settings=settings,
            spawn_adapter=spawn_adapter,
        )
    finally:
        repository.close()
