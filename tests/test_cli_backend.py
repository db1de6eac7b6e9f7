from __future__ import annotations

import sys
import time
from pathlib import Path

import allure
import pytest

from taskman.config import echo_agent_command
from taskman.orchestrator.backend.base import SpawnRequest
from taskman.orchestrator.backend.cli_backend import CliSpawnAdapter, _build_run_args
from taskman.orchestrator.backend.echo_agent import main as echo_main
from taskman.orchestrator.backend.supervisor import TIMEOUT_EXIT_CODE, main, run_manifest
from taskman.orchestrator.contracts import WorkerManifest, write_manifest
from taskman.orchestrator.errors import SpawnError
from taskman.orchestrator.models import QueueConfig, TaskCreate, TaskStatus
from taskman.orchestrator.progress import FileProgressChannel
from taskman.orchestrator.queue import TaskQueue
from taskman.orchestrator.repository import TaskRepository
from taskman.orchestrator.workdir import ProjectWorkspaces, TaskWorkdirManager

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Agent Spawning"),
]


def _manifest(tmp_path: Path, command: list[str], *, timeout_seconds: int = 30) -> WorkerManifest:
    prompt_path = tmp_path / "prompt.txt"
    prompt_path.write_text("hello agent", "utf-8")
    return WorkerManifest(
        contract_version=1,
        task_id="t1",
        agent="echo",
        command=command,
        workdir=str(tmp_path),
        working_directory=str(tmp_path),
        prompt_path=str(prompt_path),
        progress_path=str(tmp_path / "t1.progress"),
        stdout_path=str(tmp_path / "out" / "stdout.log"),
        stderr_path=str(tmp_path / "out" / "stderr.log"),
        timeout_seconds=timeout_seconds,
        graceful_shutdown_seconds=1,
    )


def _wait_for(predicate, timeout_seconds: float = 30.0):
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(0.1)
    raise AssertionError("condition not met before timeout")


def test_build_run_args_windows_avoids_nested_quoting_in_quoted_payload() -> None:
    run_args, command_head = _build_run_args(
        command_template='codex exec --task {task_id} "agent={agent}\\n{prompt}"',
        prompt='hello "world"',
        prompt_file=Path("input/prompt.txt"),
        agent="m file",
        task_id="t-1",
        os_name="nt",
    )

    assert isinstance(run_args, str)
    assert command_head == "codex"
    assert run_args == 'codex exec --task t-1 "agent=m file\\nhello \\"world\\""'


def test_build_run_args_windows_quotes_unquoted_placeholder_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="runner --file {prompt_file} --prompt {prompt} --agent {agent}",
        prompt="hello world",
        prompt_file=Path("m file.txt"),
        agent="echo",
        task_id="t-1",
        os_name="nt",
    )

    assert isinstance(run_args, str)
    assert command_head == "runner"
    assert '--file "m file.txt"' in run_args
    assert '--prompt "hello world"' in run_args
    assert "--agent echo" in run_args


def test_build_run_args_posix_splits_quoted_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="claude -p {prompt} --task {task_id}",
        prompt="fix the 'login' bug",
        prompt_file=Path("input/prompt.txt"),
        agent="claude",
        task_id="t-9",
        os_name="posix",
    )

    assert command_head == "claude"
    assert run_args == ["claude", "-p", "fix the 'login' bug", "--task", "t-9"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "template is empty"),
        ("runner --fast", "must include {prompt} or {prompt_file}"),
        ("runner {prompt} {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(SpawnError, match=message) as excinfo:
        _build_run_args(
            command_template=template,
            prompt="x",
            prompt_file=Path("p.txt"),
            agent="echo",
            task_id="t",
            os_name="posix",
        )

    assert excinfo.value.transient is False


def test_spawn_rejects_unknown_agent_and_missing_binary(tmp_path: Path) -> None:
    adapter = CliSpawnAdapter(
        workdir_manager=TaskWorkdirManager(tmp_path / "workdirs"),
        agent_commands={"ghost": "definitely-not-a-real-binary-xyz {prompt_file}"},
    )
    request = SpawnRequest(
        task_id="t1",
        agent_id="nobody",
        instructions="hi",
        working_directory=tmp_path / "work",
        timeout_minutes=1,
        progress_ref=str(tmp_path / "t1.progress"),
    )

    with pytest.raises(SpawnError, match="No command template configured for agent: nobody"):
        adapter.spawn(request)
    request.agent_id = "ghost"
    with pytest.raises(SpawnError, match="command not found") as excinfo:
        adapter.spawn(request)
    assert excinfo.value.transient is False


def test_spawn_reports_unwritable_workdir_as_transient_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "workdirs"
    blocker.write_text("not a directory", "utf-8")
    adapter = CliSpawnAdapter(
        workdir_manager=TaskWorkdirManager(blocker),
        agent_commands={"echo": echo_agent_command()},
    )
    request = SpawnRequest(
        task_id="t1",
        agent_id="echo",
        instructions="hi",
        working_directory=tmp_path / "work",
        timeout_minutes=1,
        progress_ref=str(tmp_path / "t1.progress"),
    )

    with pytest.raises(SpawnError, match="Could not prepare workdir for task t1") as excinfo:
        adapter.spawn(request)

    assert excinfo.value.transient is True


def test_echo_agent_writes_output_and_progress(tmp_path: Path, monkeypatch) -> None:
    prompt = tmp_path / "prompt.txt"
    prompt.write_text("  summarise the repo  ", "utf-8")
    progress = tmp_path / "t1.progress"
    monkeypatch.setenv("TASKMAN_PROGRESS_FILE", str(progress))

    exit_code = echo_main(["--prompt-file", str(prompt), "--output", str(tmp_path / "o.md")])

    assert exit_code == 0
    assert (tmp_path / "o.md").read_text("utf-8") == "summarise the repo\n"
    assert FileProgressChannel(tmp_path).read("t1").percentage == 50


def test_run_manifest_enforces_timeout(tmp_path: Path) -> None:
    manifest = _manifest(
        tmp_path,
        [sys.executable, "-c", "import time; time.sleep(30)"],
        timeout_seconds=1,
    )

    outcome = run_manifest(manifest)

    assert outcome.exit_code == TIMEOUT_EXIT_CODE
    assert outcome.timed_out is True


def test_supervisor_writes_terminal_snapshot(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("signal.signal", lambda *_: None)
    manifest = _manifest(tmp_path, [sys.executable, "-c", "raise SystemExit(3)"])
    manifest_path = tmp_path / "meta" / "manifest.json"
    write_manifest(manifest_path, manifest)

    assert main(["--manifest", str(manifest_path)]) == 3

    snapshot = FileProgressChannel(tmp_path).read("t1")
    assert snapshot.exit_code == 3
    assert snapshot.failed is True
    assert snapshot.message == "Worker exited with code 3"


def test_queue_runs_echo_agent_end_to_end(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "tasks.db")
    repository.init_schema()
    workspaces = ProjectWorkspaces(tmp_path / "projects")
    queue = TaskQueue(
        repository=repository,
        spawn_adapter=CliSpawnAdapter(
            workdir_manager=TaskWorkdirManager(tmp_path / "workdirs"),
            agent_commands={"echo": echo_agent_command()},
        ),
        progress_channel=FileProgressChannel(tmp_path / "progress"),
        workspaces=workspaces,
        config=QueueConfig(processing_interval_ms=100),
        default_agent="echo",
        known_agents=["echo"],
    )
    try:
        task = queue.create_task(
            TaskCreate(project_id="demo", title="Echo me", auto_start=True),
        )
        assert queue.process_queue().dispatched == [task.task_id]

        def _finished():
            queue.run_cycle()
            current = queue.get_task(task.task_id)
            return current if current.is_terminal else None

        finished = _wait_for(_finished)

        assert finished.status == TaskStatus.COMPLETED
        assert finished.result == "Worker finished"
        output = workspaces.path("demo") / "output" / "echo.md"
        assert output.read_text("utf-8").startswith("# Echo me")
    finally:
        repository.close()
