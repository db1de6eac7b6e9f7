"""Progress channel between running workers and the queue poller."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from taskman.orchestrator.contracts import load_json, write_text_atomic
from taskman.storage.common import from_epoch_ms, to_epoch_ms

logger = logging.getLogger(__name__)

PROGRESS_SUFFIX = ".progress"


@dataclass(slots=True)
class ProgressSnapshot:
    """Latest progress report written by a worker."""

    percentage: int
    message: str
    timestamp: datetime | None
    exit_code: int | None = None

    @property
    def failed(self) -> bool:
        return self.exit_code is not None and self.exit_code != 0

    @property
    def finished(self) -> bool:
        return not self.failed and (self.exit_code == 0 or self.percentage >= 100)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "percentage": self.percentage,
            "message": self.message,
        }
        if self.timestamp is not None:
            payload["timestamp"] = to_epoch_ms(self.timestamp)
        if self.exit_code is not None:
            payload["exitCode"] = self.exit_code
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProgressSnapshot:
        """Parse a snapshot document; raise ValueError/TypeError when malformed."""

        percentage = payload.get("percentage")
        if isinstance(percentage, bool) or not isinstance(percentage, int | float):
            raise TypeError("percentage must be a number")
        message = payload.get("message", "")
        if not isinstance(message, str):
            raise TypeError("message must be a string")
        raw_timestamp = payload.get("timestamp")
        if raw_timestamp is not None and (
            isinstance(raw_timestamp, bool) or not isinstance(raw_timestamp, int | float)
        ):
            raise TypeError("timestamp must be epoch milliseconds")
        exit_code = payload.get("exitCode")
        if exit_code is not None and (
            isinstance(exit_code, bool) or not isinstance(exit_code, int)
        ):
            raise TypeError("exitCode must be an integer")
        return cls(
            percentage=max(0, min(100, int(percentage))),
            message=message,
            timestamp=from_epoch_ms(raw_timestamp) if raw_timestamp is not None else None,
            exit_code=exit_code,
        )


class ProgressChannel(Protocol):
    """Per-attempt snapshot slot; later writes overwrite earlier ones.

    Every dispatch attempt of a task gets its own slot, so a worker left over
    from an earlier attempt can never report into the current one.
    """

    def write(self, task_id: str, snapshot: ProgressSnapshot, *, attempt: int = 0) -> None:
        """Replace the current snapshot for a task attempt."""

    def read(self, task_id: str, *, attempt: int = 0) -> ProgressSnapshot | None:
        """Return the current snapshot, or None when absent or unreadable."""

    def clear(self, task_id: str, *, attempt: int = 0) -> None:
        """Drop the snapshot for a task attempt."""

    def location(self, task_id: str, *, attempt: int = 0) -> str:
        """Reference handed to the worker so it knows where to write."""


class FileProgressChannel:
    """Snapshots stored as `<root_dir>/<task_id>.progress` JSON files.

    Retries write to `<task_id>.attempt-<n>.progress`.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, task_id: str, *, attempt: int = 0) -> Path:
        if attempt:
            return self.root_dir / f"{task_id}.attempt-{attempt}{PROGRESS_SUFFIX}"
        return self.root_dir / f"{task_id}{PROGRESS_SUFFIX}"

    def location(self, task_id: str, *, attempt: int = 0) -> str:
        return str(self.path_for(task_id, attempt=attempt))

    def write(self, task_id: str, snapshot: ProgressSnapshot, *, attempt: int = 0) -> None:
        write_snapshot(self.path_for(task_id, attempt=attempt), snapshot)

    def read(self, task_id: str, *, attempt: int = 0) -> ProgressSnapshot | None:
        path = self.path_for(task_id, attempt=attempt)
        if not path.exists():
            return None
        try:
            return ProgressSnapshot.from_payload(load_json(path))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable progress snapshot %s: %s", path, exc)
            return None

    def clear(self, task_id: str, *, attempt: int = 0) -> None:
        self.path_for(task_id, attempt=attempt).unlink(missing_ok=True)


def write_snapshot(path: Path, snapshot: ProgressSnapshot) -> None:
    write_text_atomic(path, json.dumps(snapshot.to_payload(), ensure_ascii=False))
