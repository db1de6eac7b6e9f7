"""Spawn interface for launching supervised worker processes."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class SpawnRequest:
    """Inputs required to launch one worker attempt."""

    task_id: str
    agent_id: str
    instructions: str
    working_directory: Path
    timeout_minutes: int
    progress_ref: str


@dataclass(slots=True)
class SpawnHandle:
    """Identity of a launched worker."""

    worker_handle: str
    progress_channel_ref: str
    pid: int | None = None


class SpawnAdapter(Protocol):
    """Protocol implemented by worker launchers.

    `spawn` must return once the worker is launched, never after it finishes,
    and raise `SpawnError` synchronously when the launch itself fails.
    """

    def spawn(self, request: SpawnRequest) -> SpawnHandle:
        """Launch a worker and return its handle."""
