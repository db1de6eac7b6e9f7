"""Subprocess-based spawn adapter for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import string
import subprocess
import sys
from collections.abc import Mapping
from pathlib import Path

from taskman.orchestrator.backend.base import SpawnHandle, SpawnRequest
from taskman.orchestrator.errors import SpawnError
from taskman.orchestrator.workdir import TaskWorkdirManager

logger = logging.getLogger(__name__)

SUPERVISOR_MODULE = "taskman.orchestrator.backend.supervisor"
_PROMPT_PLACEHOLDERS = ("{prompt}", "{prompt_file}")


class CliSpawnAdapter:
    """Launch per-agent CLI command templates under the supervising wrapper.

    The adapter returns as soon as the wrapper process is started. The wrapper
    owns the agent process from then on: it captures output, enforces the hard
    timeout and writes the terminal progress snapshot with the exit code.
    """

    def __init__(
        self,
        *,
        workdir_manager: TaskWorkdirManager,
        agent_commands: Mapping[str, str],
        python_executable: str | None = None,
        graceful_shutdown_seconds: int = 5,
    ) -> None:
        self.workdir_manager = workdir_manager
        self.agent_commands = dict(agent_commands)
        self.python_executable = python_executable or sys.executable
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._processes: dict[str, subprocess.Popen[bytes]] = {}

    def spawn(self, request: SpawnRequest) -> SpawnHandle:
        command_template = self.agent_commands.get(request.agent_id)
        if command_template is None:
            raise SpawnError(
                f"No command template configured for agent: {request.agent_id}",
                transient=False,
            )

        prompt_file = self.workdir_manager.prompt_path(request.task_id)
        run_args, command_head = _build_run_args(
            command_template=command_template,
            prompt=request.instructions,
            prompt_file=prompt_file,
            agent=request.agent_id,
            task_id=request.task_id,
        )
        if shutil.which(command_head) is None and not Path(command_head).exists():
            raise SpawnError(f"CLI agent command not found: {command_head}", transient=False)

        try:
            request.working_directory.mkdir(parents=True, exist_ok=True)
            materialized = self.workdir_manager.materialize(
                task_id=request.task_id,
                agent=request.agent_id,
                prompt=request.instructions,
                command=run_args,
                working_directory=request.working_directory,
                progress_path=Path(request.progress_ref),
                timeout_seconds=request.timeout_minutes * 60,
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            )
        except OSError as error:
            raise SpawnError(
                f"Could not prepare workdir for task {request.task_id}: {error}",
                transient=True,
            ) from error

        self._reap_finished()
        popen_kwargs: dict[str, object] = {}
        if os.name != "nt":
            popen_kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(  # noqa: S603
                [
                    self.python_executable,
                    "-m",
                    SUPERVISOR_MODULE,
                    "--manifest",
                    str(materialized.manifest_path),
                ],
                cwd=request.working_directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **popen_kwargs,  # type: ignore[arg-type]
            )
        except FileNotFoundError as error:
            raise SpawnError(
                f"Supervisor interpreter not found: {self.python_executable}",
                transient=False,
            ) from error
        except OSError as error:
            raise SpawnError(f"Worker failed to start: {error}", transient=True) from error

        self._processes[request.task_id] = process
        logger.info(
            "Spawned worker pid=%s agent=%s task=%s",
            process.pid,
            request.agent_id,
            request.task_id,
        )
        return SpawnHandle(
            worker_handle=f"{request.agent_id}:{process.pid}",
            progress_channel_ref=request.progress_ref,
            pid=process.pid,
        )

    def _reap_finished(self) -> None:
        for task_id, process in list(self._processes.items()):
            if process.poll() is not None:
                del self._processes[task_id]


def _build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    agent: str,
    task_id: str,
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("CLI agent command template is empty.", transient=False)
    if not any(placeholder in stripped for placeholder in _PROMPT_PLACEHOLDERS):
        raise SpawnError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    values = {
        "prompt": prompt,
        "prompt_file": str(prompt_file),
        "agent": agent,
        "task_id": task_id,
    }
    current_os_name = os_name or os.name
    try:
        if current_os_name == "nt":
            rendered = _render_windows_command_template(template=stripped, values=values).strip()
            if not rendered:
                raise SpawnError(
                    "CLI agent command template rendered empty command.",
                    transient=False,
                )
            command_head = rendered.split(maxsplit=1)[0]
            return rendered, command_head

        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise SpawnError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("CLI agent command template rendered empty command.", transient=False)
    return argv, argv[0]


def _render_windows_command_template(*, template: str, values: dict[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, format_spec, conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        try:
            value = values[field_name]
        except KeyError as error:
            raise KeyError(field_name) from error

        value_text = _apply_string_conversion(value, conversion, format_spec)
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue

        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _apply_string_conversion(
    value: str,
    conversion: str | None,
    format_spec: str | None,
) -> str:
    if conversion == "r":
        converted = repr(value)
    elif conversion == "a":
        converted = ascii(value)
    elif conversion in (None, "", "s"):
        converted = str(value)
    else:
        raise ValueError(f"Unsupported format conversion: !{conversion}")

    if format_spec:
        return format(converted, format_spec)
    return converted


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 1:
            continue
        in_double_quotes = not in_double_quotes
    return in_double_quotes
