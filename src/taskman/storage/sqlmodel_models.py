"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "status", "priority_rank", "created_at", "task_id"),
        Index("idx_tasks_project", "project_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    kind: str = Field(default="standard", index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: str = Field(default="medium")
    priority_rank: int = Field(default=2)
    agent_id: str
    assigned_worker: str | None = None
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    error_kind: str | None = None
    artifacts_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    missing_artifacts_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status_history_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    progress: int = Field(default=0)
    progress_updates_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    current_step: str | None = None
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    timeout_minutes: int = Field(default=30)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineRunRecord(SQLModel, table=True):
    __tablename__ = "pipeline_runs"  # type: ignore[bad-override]

    parent_task_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    template_id: str
    failure_policy: str = Field(default="strict")
    steps_json: str = Field(sa_column=Column(Text, nullable=False))
    step_status_json: str = Field(sa_column=Column(Text, nullable=False))
    step_agents_json: str = Field(sa_column=Column(Text, nullable=False))
    shared_context_path: str | None = None
    revision: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
