"""Supervising wrapper that runs one agent command and reports its outcome.

Launched by `CliSpawnAdapter` as `python -m taskman.orchestrator.backend.supervisor`.
The wrapper writes a start snapshot, runs the agent with output captured to
files, enforces the hard timeout and finally writes a terminal snapshot that
carries the exit code, so the queue poller can complete or fail the task.
"""

from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from taskman.orchestrator.contracts import WorkerManifest, load_json, read_manifest
from taskman.orchestrator.progress import ProgressSnapshot, write_snapshot
from taskman.storage.common import utc_now

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


@dataclass(slots=True)
class SupervisedRun:
    """Outcome of the supervised agent process."""

    exit_code: int
    timed_out: bool
    message: str


class _ShutdownFlag:
    def __init__(self) -> None:
        self.requested = False

    def __call__(self) -> bool:
        return self.requested


def main(argv: list[str] | None = None) -> int:
    """Run the agent described by the manifest and report the result."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--manifest", required=True)
    args = parser.parse_args(argv)

    manifest = read_manifest(Path(args.manifest))
    progress_path = Path(manifest.progress_path)
    write_snapshot(
        progress_path,
        ProgressSnapshot(percentage=0, message="Worker started", timestamp=utc_now()),
    )

    shutdown = _ShutdownFlag()

    def _handler(signum: int, _: object | None) -> None:
        shutdown.requested = True

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)

    outcome = run_manifest(manifest, shutdown_requested=shutdown)
    last = _read_last_snapshot(progress_path)
    write_snapshot(
        progress_path,
        ProgressSnapshot(
            percentage=100 if outcome.exit_code == 0 else (last.percentage if last else 0),
            message=outcome.message,
            timestamp=utc_now(),
            exit_code=outcome.exit_code,
        ),
    )
    return outcome.exit_code


def run_manifest(manifest: WorkerManifest, *, shutdown_requested=None) -> SupervisedRun:
    """Run the manifest command to completion, timeout or shutdown."""

    stdout_path = Path(manifest.stdout_path)
    stderr_path = Path(manifest.stderr_path)
    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    stderr_path.parent.mkdir(parents=True, exist_ok=True)

    env = os.environ.copy()
    env["TASKMAN_TASK_ID"] = manifest.task_id
    env["TASKMAN_AGENT"] = manifest.agent
    env["TASKMAN_PROGRESS_FILE"] = manifest.progress_path
    env["TASKMAN_PROMPT_FILE"] = manifest.prompt_path

    try:
        with (
            stdout_path.open("w", encoding="utf-8") as stdout_handle,
            stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            return _run_subprocess_with_shutdown(
                run_args=manifest.command,
                cwd=manifest.working_directory,
                env=env,
                timeout_seconds=manifest.timeout_seconds,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
                shutdown_requested=shutdown_requested,
                graceful_shutdown_seconds=manifest.graceful_shutdown_seconds,
            )
    except FileNotFoundError:
        head = manifest.command if isinstance(manifest.command, str) else manifest.command[0]
        return SupervisedRun(
            exit_code=NOT_FOUND_EXIT_CODE,
            timed_out=False,
            message=f"Agent command not found: {head}",
        )
    except OSError as error:
        return SupervisedRun(
            exit_code=NOT_FOUND_EXIT_CODE,
            timed_out=False,
            message=f"Agent command failed to start: {error}",
        )


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: str | list[str],
    cwd: str,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested,
    graceful_shutdown_seconds: int | None,
) -> SupervisedRun:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            message = (
                "Worker finished" if returncode == 0 else f"Worker exited with code {returncode}"
            )
            return SupervisedRun(exit_code=returncode, timed_out=False, message=message)

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return SupervisedRun(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                message=f"Worker timed out after {timeout_seconds} seconds",
            )

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return SupervisedRun(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    message="Worker stopped by shutdown request",
                )

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_last_snapshot(path: Path) -> ProgressSnapshot | None:
    try:
        return ProgressSnapshot.from_payload(load_json(path))
    except (OSError, ValueError, TypeError):
        return None


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
