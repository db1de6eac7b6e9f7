"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Callable, Collection, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, SQLModel, col, select

from taskman.orchestrator.errors import TaskNotFoundError
from taskman.orchestrator.models import (
    RUNNING_STATUSES,
    ErrorKind,
    PipelineRunView,
    PipelineStep,
    ProgressUpdate,
    StatusChange,
    StepFailurePolicy,
    StepStatus,
    TaskKind,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from taskman.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskman.storage.sqlmodel_models import PipelineRunRecord, TaskRecord

_JSON_FIELDS = {
    "artifacts": "artifacts_json",
    "missing_artifacts": "missing_artifacts_json",
    "metadata": "metadata_json",
}
_DATETIME_FIELDS = {"started_at", "completed_at"}
_PLAIN_FIELDS = {
    "title",
    "description",
    "agent_id",
    "assigned_worker",
    "result",
    "error",
    "progress",
    "current_step",
    "retry_count",
    "max_retries",
    "timeout_minutes",
}


class TaskRepository:
    """Task and pipeline-run persistence facade.

    Every mutation re-reads the whole document, applies the change and writes it
    back guarded by a compare-and-set on the previous status (tasks) or revision
    (pipeline runs). A lost race re-reads and re-evaluates, so callers only ever
    observe transitions that were valid against the committed state.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables and indexes when missing."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine)

    def insert_task(  # noqa: PLR0913
        self,
        *,
        project_id: str,
        title: str,
        description: str,
        agent_id: str,
        priority: TaskPriority,
        max_retries: int,
        timeout_minutes: int,
        kind: TaskKind = TaskKind.STANDARD,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> TaskView:
        """Create a task in `created` status."""

        now = self.clock()
        history = [StatusChange(status=TaskStatus.CREATED, timestamp=now, message="Task created")]
        with Session(self.engine) as session:
            row = TaskRecord(
                task_id=task_id or str(uuid4()),
                project_id=project_id,
                kind=kind.value,
                title=title,
                description=description,
                status=TaskStatus.CREATED.value,
                priority=priority.value,
                priority_rank=priority.rank,
                agent_id=agent_id,
                metadata_json=_dump_json(metadata or {}),
                status_history_json=_dump_history(history),
                max_retries=max_retries,
                timeout_minutes=timeout_minutes,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        """Return the task or raise `TaskNotFoundError`."""

        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        project_id: str | None = None,
        kind: TaskKind | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in creation order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(TaskRecord).order_by(
                col(TaskRecord.created_at).asc(),
                col(TaskRecord.task_id).asc(),
            )
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            if project_id is not None:
                statement = statement.where(TaskRecord.project_id == project_id)
            if kind is not None:
                statement = statement.where(TaskRecord.kind == kind.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_running(self) -> list[TaskView]:
        """Dispatchable tasks currently holding a concurrency slot."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    col(TaskRecord.status).in_([status.value for status in RUNNING_STATUSES]),
                    TaskRecord.kind == TaskKind.STANDARD.value,
                )
                .order_by(col(TaskRecord.started_at).asc(), col(TaskRecord.task_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_running(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(TaskRecord)
                .where(
                    col(TaskRecord.status).in_([status.value for status in RUNNING_STATUSES]),
                    TaskRecord.kind == TaskKind.STANDARD.value,
                ),
            ).one()

    def list_pending(self, *, limit: int) -> list[TaskView]:
        """Pending dispatchable tasks by priority, then creation time, then id."""

        if limit <= 0:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    TaskRecord.status == TaskStatus.PENDING.value,
                    TaskRecord.kind == TaskKind.STANDARD.value,
                )
                .order_by(
                    col(TaskRecord.priority_rank).asc(),
                    col(TaskRecord.created_at).asc(),
                    col(TaskRecord.task_id).asc(),
                )
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_by_status(self) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord.status, func.count()).group_by(TaskRecord.status),
            ).all()
        counts = dict.fromkeys(TaskStatus, 0)
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def list_children(self, *, parent_task_id: str, key: str = "parentTaskId") -> list[TaskView]:
        """Tasks whose metadata links them to `parent_task_id` under `key`."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    func.json_extract(TaskRecord.metadata_json, f"$.{key}") == parent_task_id,
                )
                .order_by(col(TaskRecord.created_at).asc(), col(TaskRecord.task_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_tasks(self, task_ids: Iterable[str]) -> list[TaskView]:
        """Tasks by id, in the given order; unknown ids are skipped."""

        wanted = list(task_ids)
        if not wanted:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord).where(col(TaskRecord.task_id).in_(wanted)),
            ).all()
        by_id = {row.task_id: _to_task_view(row) for row in rows}
        return [by_id[task_id] for task_id in wanted if task_id in by_id]

    def transition(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        from_statuses: Collection[TaskStatus],
        to_status: TaskStatus,
        message: str | None = None,
        error_kind: ErrorKind | None = None,
        clear_error_kind: bool = False,
        progress_update: ProgressUpdate | None = None,
        reset_progress_updates: bool = False,
        **changes: Any,
    ) -> TaskView | None:
        """Move a task to `to_status` if it is currently in one of `from_statuses`.

        Appends one status history entry. Returns None when the task is in any
        other status; raises `TaskNotFoundError` for unknown ids.
        """

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                row = session.get(TaskRecord, task_id)
                if row is None:
                    raise TaskNotFoundError(task_id)
                previous = TaskStatus(row.status)
                if previous not in from_statuses:
                    return None

                history = _load_history(row.status_history_json)
                history.append(StatusChange(status=to_status, timestamp=now, message=message))
                values = _encode_changes(changes)
                values.update(
                    status=to_status.value,
                    status_history_json=_dump_history(history),
                    updated_at=to_db_datetime(now),
                )
                if error_kind is not None:
                    values["error_kind"] = error_kind.value
                elif clear_error_kind:
                    values["error_kind"] = None
                updates = (
                    [] if reset_progress_updates else _load_progress(row.progress_updates_json)
                )
                if progress_update is not None:
                    updates.append(progress_update)
                if progress_update is not None or reset_progress_updates:
                    values["progress_updates_json"] = _dump_progress(updates)

                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.task_id) == task_id,
                        col(TaskRecord.status) == previous.value,
                        col(TaskRecord.updated_at) == row.updated_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(row)
                return _to_task_view(row)

    def record_progress(
        self,
        task_id: str,
        *,
        statuses: Collection[TaskStatus],
        percentage: int,
        message: str,
    ) -> TaskView | None:
        """Record a progress update without changing status.

        Progress never decreases: a lower percentage is appended to nothing and
        leaves the task untouched. Returns None when the task is not in one of
        `statuses` or the update was ignored.
        """

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                row = session.get(TaskRecord, task_id)
                if row is None:
                    raise TaskNotFoundError(task_id)
                if TaskStatus(row.status) not in statuses or percentage < row.progress:
                    return None
                if percentage == row.progress and message == row.current_step:
                    return None
                updates = _load_progress(row.progress_updates_json)
                updates.append(
                    ProgressUpdate(percentage=percentage, message=message, timestamp=now),
                )
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.task_id) == task_id,
                        col(TaskRecord.status) == row.status,
                        col(TaskRecord.updated_at) == row.updated_at,
                    )
                    .values(
                        progress=percentage,
                        current_step=message,
                        progress_updates_json=_dump_progress(updates),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(row)
                return _to_task_view(row)

    def update_fields(
        self,
        task_id: str,
        *,
        statuses: Collection[TaskStatus],
        **changes: Any,
    ) -> TaskView | None:
        """Patch non-status fields of a task that is in one of `statuses`."""

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                row = session.get(TaskRecord, task_id)
                if row is None:
                    raise TaskNotFoundError(task_id)
                if TaskStatus(row.status) not in statuses:
                    return None
                values = _encode_changes(changes)
                values["updated_at"] = to_db_datetime(now)
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.task_id) == task_id,
                        col(TaskRecord.status) == row.status,
                        col(TaskRecord.updated_at) == row.updated_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(row)
                return _to_task_view(row)

    def insert_pipeline_run(  # noqa: PLR0913
        self,
        *,
        parent_task_id: str,
        project_id: str,
        template_id: str,
        failure_policy: StepFailurePolicy,
        steps: list[PipelineStep],
        shared_context_path: str | None,
    ) -> PipelineRunView:
        now = self.clock()
        with Session(self.engine) as session:
            row = PipelineRunRecord(
                parent_task_id=parent_task_id,
                project_id=project_id,
                template_id=template_id,
                failure_policy=failure_policy.value,
                steps_json=_dump_json([step.to_dict() for step in steps]),
                step_status_json=_dump_json(
                    {step.id: StepStatus.PENDING.value for step in steps},
                ),
                step_agents_json=_dump_json({step.id: [] for step in steps}),
                shared_context_path=shared_context_path,
                revision=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_pipeline_view(row)

    def get_pipeline_run(self, parent_task_id: str) -> PipelineRunView | None:
        with Session(self.engine) as session:
            row = session.get(PipelineRunRecord, parent_task_id)
            return _to_pipeline_view(row) if row is not None else None

    def update_pipeline_run(
        self,
        parent_task_id: str,
        *,
        expected_revision: int,
        step_status: dict[str, StepStatus] | None = None,
        step_agents: dict[str, list[str]] | None = None,
    ) -> PipelineRunView | None:
        """Write step state if the run is still at `expected_revision`.

        Returns None when another writer got there first; the caller re-reads
        and re-evaluates.
        """

        now = self.clock()
        values: dict[str, Any] = {
            "revision": expected_revision + 1,
            "updated_at": to_db_datetime(now),
        }
        if step_status is not None:
            values["step_status_json"] = _dump_json(
                {step_id: status.value for step_id, status in step_status.items()},
            )
        if step_agents is not None:
            values["step_agents_json"] = _dump_json(step_agents)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineRunRecord)
                .where(
                    col(PipelineRunRecord.parent_task_id) == parent_task_id,
                    col(PipelineRunRecord.revision) == expected_revision,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(PipelineRunRecord, parent_task_id)
            if row is None:
                return None
            session.refresh(row)
            return _to_pipeline_view(row)


def _encode_changes(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if key in _JSON_FIELDS:
            values[_JSON_FIELDS[key]] = _dump_json(value)
        elif key in _DATETIME_FIELDS:
            values[key] = to_db_datetime(value) if value is not None else None
        elif key in _PLAIN_FIELDS:
            values[key] = value
        else:
            raise ValueError(f"Unsupported task field: {key}")
    return values


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_list(raw: str) -> list[Any]:
    parsed = json.loads(raw) if raw else []
    return parsed if isinstance(parsed, list) else []


def _load_json_dict(raw: str) -> dict[str, Any]:
    parsed = json.loads(raw) if raw else {}
    return parsed if isinstance(parsed, dict) else {}


def _dump_history(history: list[StatusChange]) -> str:
    return _dump_json(
        [
            {
                "status": entry.status.value,
                "timestamp": to_utc_aware_datetime(entry.timestamp).isoformat(),
                "message": entry.message,
            }
            for entry in history
        ],
    )


def _load_history(raw: str) -> list[StatusChange]:
    return [
        StatusChange(
            status=TaskStatus(item["status"]),
            timestamp=from_iso(item["timestamp"]),
            message=item.get("message"),
        )
        for item in _load_json_list(raw)
    ]


def _dump_progress(updates: list[ProgressUpdate]) -> str:
    return _dump_json(
        [
            {
                "percentage": update.percentage,
                "message": update.message,
                "timestamp": to_utc_aware_datetime(update.timestamp).isoformat(),
            }
            for update in updates
        ],
    )


def _load_progress(raw: str) -> list[ProgressUpdate]:
    return [
        ProgressUpdate(
            percentage=int(item["percentage"]),
            message=str(item.get("message", "")),
            timestamp=from_iso(item["timestamp"]),
        )
        for item in _load_json_list(raw)
    ]


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        project_id=row.project_id,
        kind=TaskKind(row.kind),
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        agent_id=row.agent_id,
        assigned_worker=row.assigned_worker,
        result=row.result,
        error=row.error,
        error_kind=ErrorKind(row.error_kind) if row.error_kind is not None else None,
        artifacts=[str(item) for item in _load_json_list(row.artifacts_json)],
        missing_artifacts=[str(item) for item in _load_json_list(row.missing_artifacts_json)],
        status_history=_load_history(row.status_history_json),
        progress=row.progress,
        progress_updates=_load_progress(row.progress_updates_json),
        current_step=row.current_step,
        metadata=_load_json_dict(row.metadata_json),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        timeout_minutes=row.timeout_minutes,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_pipeline_view(row: PipelineRunRecord) -> PipelineRunView:
    steps = [PipelineStep.from_dict(item) for item in _load_json_list(row.steps_json)]
    return PipelineRunView(
        parent_task_id=row.parent_task_id,
        project_id=row.project_id,
        template_id=row.template_id,
        failure_policy=StepFailurePolicy(row.failure_policy),
        steps=steps,
        step_status={
            step_id: StepStatus(value)
            for step_id, value in _load_json_dict(row.step_status_json).items()
        },
        step_agents={
            step_id: [str(task_id) for task_id in task_ids]
            for step_id, task_ids in _load_json_dict(row.step_agents_json).items()
        },
        shared_context_path=row.shared_context_path,
        revision=row.revision,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
