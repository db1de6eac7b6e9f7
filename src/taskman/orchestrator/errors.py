"""Exceptions raised synchronously by orchestrator operations."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator errors."""


class TaskValidationError(OrchestratorError, ValueError):
    """Task input rejected before any record was created."""


class TaskNotFoundError(OrchestratorError, LookupError):
    """Task id is unknown to the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(OrchestratorError):
    """Operation is not valid for the task's current status."""


class RetryLimitExceededError(InvalidTransitionError):
    """Failed task has no retries left."""


class MalformedPipelineGraphError(OrchestratorError, ValueError):
    """Pipeline step graph has a cycle, a dangling dependency, or bad steps."""


class SpawnError(OrchestratorError):
    """Worker process could not be launched."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
