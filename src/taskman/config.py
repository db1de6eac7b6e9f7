"""Runtime configuration for the task orchestrator."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from taskman.orchestrator.models import QueueConfig

AGENT_COMMAND_PREFIX = "TASKMAN_AGENT_"
AGENT_COMMAND_SUFFIX = "_COMMAND"
ECHO_AGENT = "echo"


def echo_agent_command() -> str:
    """Command template of the bundled demo worker."""

    return (
        f"{shlex.quote(sys.executable)} -m taskman.orchestrator.backend.echo_agent "
        "--prompt-file {prompt_file}"
    )


@dataclass(slots=True)
class OrchestratorSettings:
    """Filesystem layout and worker launch settings."""

    projects_root: Path = Path(".taskman/projects")
    workdir_root: Path = Path(".taskman/workdirs")
    progress_dir: Path = Path(".taskman/progress")
    default_agent: str = ECHO_AGENT
    agent_commands: dict[str, str] = field(default_factory=dict)
    graceful_shutdown_seconds: int = 5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskman.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueConfig = field(default_factory=QueueConfig)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        data_dir = Path(os.getenv("TASKMAN_DATA_DIR", ".taskman"))
        agent_commands = {ECHO_AGENT: echo_agent_command()}
        agent_commands.update(_collect_agent_commands())
        return cls(
            db_path=db_path or Path(os.getenv("TASKMAN_DB_PATH", str(data_dir / "taskman.db"))),
            sqlite_busy_timeout_ms=_env_int("TASKMAN_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            queue=QueueConfig(
                max_concurrent_tasks=_env_int("TASKMAN_MAX_CONCURRENT_TASKS", 3),
                default_timeout_minutes=_env_int("TASKMAN_DEFAULT_TIMEOUT_MINUTES", 30),
                max_retries=_env_int("TASKMAN_MAX_RETRIES", 3),
                processing_interval_ms=_env_int("TASKMAN_PROCESSING_INTERVAL_MS", 5_000),
                stuck_after_minutes=_env_int("TASKMAN_STUCK_AFTER_MINUTES", 5),
            ),
            orchestrator=OrchestratorSettings(
                projects_root=Path(
                    os.getenv("TASKMAN_PROJECTS_ROOT", str(data_dir / "projects")),
                ),
                workdir_root=Path(os.getenv("TASKMAN_WORKDIR_ROOT", str(data_dir / "workdirs"))),
                progress_dir=Path(os.getenv("TASKMAN_PROGRESS_DIR", str(data_dir / "progress"))),
                default_agent=os.getenv("TASKMAN_DEFAULT_AGENT", ECHO_AGENT).strip(),
                agent_commands=agent_commands,
                graceful_shutdown_seconds=_env_int("TASKMAN_GRACEFUL_SHUTDOWN_SECONDS", 5),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the orchestrator cannot run with."""

        self.queue.validate()
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKMAN_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.orchestrator.graceful_shutdown_seconds < 0:
            raise ValueError("TASKMAN_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.orchestrator.default_agent:
            raise ValueError("TASKMAN_DEFAULT_AGENT must be non-empty.")
        if self.orchestrator.default_agent not in self.orchestrator.agent_commands:
            raise ValueError(
                f"Default agent {self.orchestrator.default_agent!r} has no command template. "
                f"Set TASKMAN_AGENT_{self.orchestrator.default_agent.upper()}_COMMAND.",
            )
        for agent, template in self.orchestrator.agent_commands.items():
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    f"Command template for agent {agent!r} must contain "
                    "{prompt} or {prompt_file}.",
                )


def _collect_agent_commands() -> dict[str, str]:
    commands: dict[str, str] = {}
    for name, value in sorted(os.environ.items()):
        if not name.startswith(AGENT_COMMAND_PREFIX) or not name.endswith(AGENT_COMMAND_SUFFIX):
            continue
        agent = name[len(AGENT_COMMAND_PREFIX) : -len(AGENT_COMMAND_SUFFIX)].strip("_").lower()
        if not agent:
            continue
        template = value.strip()
        if not template:
            raise ValueError(f"{name} must be a non-empty command template.")
        commands[agent.replace("_", "-")] = template
    return commands


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
