"""Workdir materialization helpers for supervised worker attempts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from taskman.orchestrator.contracts import WorkerManifest, write_manifest


class ProjectWorkspaces:
    """Maps project ids to workspace directories under one root."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path(self, project_id: str) -> Path:
        return self.root_dir / project_id

    def ensure(self, project_id: str) -> Path:
        path = self.path(project_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def resolve_artifact(self, project_id: str, artifact: str) -> Path:
        """Resolve a claimed artifact path; relative paths are workspace-relative."""

        candidate = Path(artifact)
        if candidate.is_absolute():
            return candidate
        return self.path(project_id) / candidate


@dataclass(slots=True)
class MaterializedTask:
    """Materialized file-based attempt paths."""

    manifest_path: Path
    manifest: WorkerManifest


class TaskWorkdirManager:
    """Creates deterministic per-task directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def prompt_path(self, task_id: str) -> Path:
        return self.root_dir / task_id / "input" / "task_prompt.txt"

    def materialize(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        agent: str,
        prompt: str,
        command: str | list[str],
        working_directory: Path,
        progress_path: Path,
        timeout_seconds: int,
        graceful_shutdown_seconds: int = 5,
    ) -> MaterializedTask:
        base_dir = self.root_dir / task_id
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        meta_dir.mkdir(parents=True, exist_ok=True)

        prompt_path = self.prompt_path(task_id)
        prompt_path.write_text(prompt, "utf-8")

        manifest = WorkerManifest(
            contract_version=1,
            task_id=task_id,
            agent=agent,
            command=command,
            workdir=str(base_dir),
            working_directory=str(working_directory),
            prompt_path=str(prompt_path),
            progress_path=str(progress_path),
            stdout_path=str(output_dir / "agent_stdout.log"),
            stderr_path=str(output_dir / "agent_stderr.log"),
            timeout_seconds=timeout_seconds,
            graceful_shutdown_seconds=graceful_shutdown_seconds,
        )
        manifest_path = meta_dir / "task_manifest.json"
        write_manifest(manifest_path, manifest)
        return MaterializedTask(manifest_path=manifest_path, manifest=manifest)
