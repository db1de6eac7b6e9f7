"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskman.orchestrator.backend.base import SpawnHandle, SpawnRequest
from taskman.orchestrator.errors import SpawnError
from taskman.orchestrator.models import QueueConfig, TaskCreate, TaskView
from taskman.orchestrator.pipeline import PipelineRunner
from taskman.orchestrator.progress import FileProgressChannel
from taskman.orchestrator.queue import TaskQueue
from taskman.orchestrator.repository import TaskRepository
from taskman.orchestrator.workdir import ProjectWorkspaces
from taskman.orchestrator.worker_pool import WorkerPool

KNOWN_AGENTS = ("echo", "writer", "reviewer")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeSpawnAdapter:
    """Records spawn requests; fails for configured agents or queued errors."""

    def __init__(self) -> None:
        self.requests: list[SpawnRequest] = []
        self.agent_errors: dict[str, SpawnError] = {}
        self.next_errors: list[Exception] = []

    @property
    def spawned_ids(self) -> list[str]:
        return [request.task_id for request in self.requests]

    def spawn(self, request: SpawnRequest) -> SpawnHandle:
        self.requests.append(request)
        if self.next_errors:
            raise self.next_errors.pop(0)
        error = self.agent_errors.get(request.agent_id)
        if error is not None:
            raise error
        return SpawnHandle(
            worker_handle=f"{request.agent_id}:{len(self.requests)}",
            progress_channel_ref=request.progress_ref,
            pid=10_000 + len(self.requests),
        )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "tasks.db", clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def spawner() -> FakeSpawnAdapter:
    return FakeSpawnAdapter()


@pytest.fixture()
def workspaces(tmp_path: Path) -> ProjectWorkspaces:
    return ProjectWorkspaces(tmp_path / "projects")


@pytest.fixture()
def progress_channel(tmp_path: Path) -> FileProgressChannel:
    return FileProgressChannel(tmp_path / "progress")


@pytest.fixture()
def queue_config() -> QueueConfig:
    return QueueConfig(max_concurrent_tasks=3, default_timeout_minutes=30, max_retries=2)


@pytest.fixture()
def queue(
    repository: TaskRepository,
    spawner: FakeSpawnAdapter,
    progress_channel: FileProgressChannel,
    workspaces: ProjectWorkspaces,
    queue_config: QueueConfig,
) -> TaskQueue:
    return TaskQueue(
        repository=repository,
        spawn_adapter=spawner,
        progress_channel=progress_channel,
        workspaces=workspaces,
        config=queue_config,
        default_agent="echo",
        known_agents=KNOWN_AGENTS,
    )


@pytest.fixture()
def worker_pool(queue: TaskQueue, workspaces: ProjectWorkspaces) -> WorkerPool:
    return WorkerPool(queue=queue, workspaces=workspaces)


@pytest.fixture()
def pipelines(
    queue: TaskQueue,
    worker_pool: WorkerPool,
    workspaces: ProjectWorkspaces,
) -> PipelineRunner:
    return PipelineRunner(queue=queue, worker_pool=worker_pool, workspaces=workspaces)


@pytest.fixture()
def make_task(queue: TaskQueue, clock: FakeClock) -> Callable[..., TaskView]:
    """Create a task one second after the previous one so creation order is stable."""

    def _make(title: str = "Task", *, project_id: str = "proj", **fields: object) -> TaskView:
        clock.advance(seconds=1)
        return queue.create_task(TaskCreate(project_id=project_id, title=title, **fields))

    return _make
