"""File-based contracts between the orchestrator and supervised workers."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class WorkerManifest:
    """Everything the supervising wrapper needs to run one worker attempt."""

    contract_version: int
    task_id: str
    agent: str
    command: str | list[str]
    workdir: str
    working_directory: str
    prompt_path: str
    progress_path: str
    stdout_path: str
    stderr_path: str
    timeout_seconds: int
    graceful_shutdown_seconds: int = 5


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def write_text_atomic(path: Path, text: str) -> None:
    """Replace file content in one step so readers never see a partial write."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_manifest(path: Path, manifest: WorkerManifest) -> None:
    write_json(path, asdict(manifest))


def read_manifest(path: Path) -> WorkerManifest:
    payload = load_json(path)
    command = payload.get("command")
    if not isinstance(command, str) and not (
        isinstance(command, list) and all(isinstance(part, str) for part in command)
    ):
        raise TypeError(f"Manifest command must be a string or a list of strings in {path}")
    return WorkerManifest(
        contract_version=int(payload["contract_version"]),
        task_id=str(payload["task_id"]),
        agent=str(payload["agent"]),
        command=command,
        workdir=str(payload["workdir"]),
        working_directory=str(payload["working_directory"]),
        prompt_path=str(payload["prompt_path"]),
        progress_path=str(payload["progress_path"]),
        stdout_path=str(payload["stdout_path"]),
        stderr_path=str(payload["stderr_path"]),
        timeout_seconds=int(payload["timeout_seconds"]),
        graceful_shutdown_seconds=int(payload.get("graceful_shutdown_seconds", 5)),
    )
