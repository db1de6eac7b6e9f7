from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from taskman.orchestrator.errors import (
    InvalidTransitionError,
    RetryLimitExceededError,
    SpawnError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskman.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    ErrorKind,
    TaskCreate,
    TaskKind,
    TaskPriority,
    TaskStatus,
)
from taskman.orchestrator.progress import ProgressSnapshot, write_snapshot

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Task Queue"),
]


def _statuses(task) -> list[TaskStatus]:
    return [entry.status for entry in task.status_history]


def _dispatch(queue, make_task, title: str = "Task", **fields):
    task = make_task(title, auto_start=True, **fields)
    queue.process_queue()
    return queue.get_task(task.task_id)


def test_create_task_applies_defaults(queue, make_task) -> None:
    task = make_task("Write docs")

    assert task.status == TaskStatus.CREATED
    assert task.agent_id == "echo"
    assert task.priority == TaskPriority.MEDIUM
    assert task.max_retries == 2
    assert task.timeout_minutes == 30
    assert task.retry_count == 0
    assert task.progress == 0
    assert task.kind == TaskKind.STANDARD
    assert _statuses(task) == [TaskStatus.CREATED]


def test_create_task_rejects_blank_title(queue) -> None:
    with pytest.raises(TaskValidationError, match="title must be non-empty"):
        queue.create_task(TaskCreate(project_id="proj", title="   "))

    assert queue.list_tasks() == []


def test_create_task_rejects_unknown_agent(queue) -> None:
    with pytest.raises(TaskValidationError, match="Unknown agent: ghost"):
        queue.create_task(TaskCreate(project_id="proj", title="x", agent_id="ghost"))


def test_create_task_rejects_negative_retries_and_zero_timeout(queue) -> None:
    with pytest.raises(TaskValidationError, match="max_retries"):
        queue.create_task(TaskCreate(project_id="proj", title="x", max_retries=-1))
    with pytest.raises(TaskValidationError, match="timeout_minutes"):
        queue.create_task(TaskCreate(project_id="proj", title="x", timeout_minutes=0))


def test_auto_start_queues_task(make_task) -> None:
    task = make_task("Auto", auto_start=True)

    assert task.status == TaskStatus.PENDING
    assert _statuses(task) == [TaskStatus.CREATED, TaskStatus.PENDING]


def test_start_task_is_noop_for_pending_task(queue, make_task) -> None:
    task = make_task(auto_start=True)

    again = queue.start_task(task.task_id)

    assert again.status == TaskStatus.PENDING
    assert len(again.status_history) == 2


def test_unknown_task_raises_not_found(queue) -> None:
    with pytest.raises(TaskNotFoundError, match="missing"):
        queue.start_task("missing")


def test_process_queue_dispatches_by_priority_then_age(queue, make_task, spawner) -> None:
    queue.configure(max_concurrent_tasks=1)
    low = make_task("low", priority=TaskPriority.LOW, auto_start=True)
    older_high = make_task("high-1", priority=TaskPriority.HIGH, auto_start=True)
    newer_high = make_task("high-2", priority=TaskPriority.HIGH, auto_start=True)
    urgent = make_task("urgent", priority=TaskPriority.URGENT, auto_start=True)

    order = []
    for _ in range(4):
        summary = queue.process_queue()
        order.extend(summary.dispatched)
        queue.on_task_complete(summary.dispatched[0], result="done")

    assert order == [urgent.task_id, older_high.task_id, newer_high.task_id, low.task_id]
    assert spawner.spawned_ids == order


def test_process_queue_respects_concurrency_limit(queue, make_task) -> None:
    tasks = [make_task(f"t{index}", auto_start=True) for index in range(5)]

    summary = queue.process_queue()

    assert summary.available_slots == 3
    assert summary.dispatched == [task.task_id for task in tasks[:3]]
    assert queue.repository.count_running() == 3
    assert queue.process_queue().dispatched == []

    queue.on_task_complete(tasks[0].task_id)
    assert queue.process_queue().dispatched == [tasks[3].task_id]


def test_dispatch_moves_task_to_processing_with_worker_handle(queue, make_task, spawner) -> None:
    task = _dispatch(queue, make_task, "Go")

    assert task.status == TaskStatus.PROCESSING
    assert task.assigned_worker == "echo:1"
    assert task.started_at == datetime(2026, 3, 1, 9, 0, 1, tzinfo=UTC)
    assert _statuses(task) == [
        TaskStatus.CREATED,
        TaskStatus.PENDING,
        TaskStatus.ACTIVE,
        TaskStatus.PROCESSING,
    ]
    request = spawner.requests[0]
    assert request.task_id == task.task_id
    assert request.agent_id == "echo"
    assert request.timeout_minutes == 30
    assert "# Go" in request.instructions
    assert f"Task ID: {task.task_id}" in request.instructions
    assert request.working_directory.is_dir()
    assert request.progress_ref.endswith(f"{task.task_id}.progress")


def test_nested_sweep_is_skipped(queue, make_task, spawner) -> None:
    make_task(auto_start=True)
    nested = []

    def spawn_and_reenter(request):
        nested.append(queue.process_queue())
        return original(request)

    original = spawner.spawn
    spawner.spawn = spawn_and_reenter

    summary = queue.process_queue()

    assert len(summary.dispatched) == 1
    assert nested[0].skipped is True
    assert not queue.sweep_in_progress


def test_transient_spawn_failure_requeues_task(queue, make_task, spawner) -> None:
    task = make_task(auto_start=True)
    spawner.next_errors.append(SpawnError("resource busy", transient=True))

    summary = queue.process_queue()

    assert summary.spawn_failures == [task.task_id]
    assert summary.requeued == [task.task_id]
    requeued = queue.get_task(task.task_id)
    assert requeued.status == TaskStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.error_kind == ErrorKind.SPAWN_FAILURE
    assert _statuses(requeued)[-3:] == [
        TaskStatus.ACTIVE,
        TaskStatus.FAILED,
        TaskStatus.PENDING,
    ]

    assert queue.process_queue().dispatched == [task.task_id]
    assert queue.get_task(task.task_id).status == TaskStatus.PROCESSING


def test_non_transient_spawn_failure_fails_task(queue, make_task, spawner) -> None:
    spawner.agent_errors["writer"] = SpawnError("command not found", transient=False)
    task = make_task(agent_id="writer", auto_start=True)

    summary = queue.process_queue()

    assert summary.requeued == []
    failed = queue.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_kind == ErrorKind.SPAWN_FAILURE
    assert failed.error == "command not found"
    assert failed.retry_count == 0


def test_unexpected_spawn_exception_fails_task_and_frees_slot(
    queue,
    make_task,
    spawner,
) -> None:
    queue.configure(max_concurrent_tasks=1)
    broken = make_task("broken", auto_start=True)
    spawner.next_errors.append(OSError("No space left on device"))

    summary = queue.process_queue()

    assert summary.spawn_failures == [broken.task_id]
    failed = queue.get_task(broken.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_kind == ErrorKind.SPAWN_FAILURE
    assert failed.error == "Worker launch crashed: No space left on device"
    assert failed.completed_at is not None
    assert queue.repository.count_running() == 0
    assert not queue.sweep_in_progress

    following = make_task("following", auto_start=True)
    assert queue.process_queue().dispatched == [following.task_id]


def test_transient_spawn_failure_without_retries_left_stays_failed(
    queue,
    make_task,
    spawner,
) -> None:
    task = make_task(auto_start=True, max_retries=0)
    spawner.next_errors.append(SpawnError("resource busy", transient=True))

    queue.process_queue()

    assert queue.get_task(task.task_id).status == TaskStatus.FAILED


def test_check_timeouts_fails_only_after_timeout_elapsed(queue, make_task, clock) -> None:
    task = _dispatch(queue, make_task, timeout_minutes=60)

    clock.advance(minutes=60)
    assert queue.check_timeouts() == []
    assert queue.get_task(task.task_id).status == TaskStatus.PROCESSING

    clock.advance(minutes=1)
    assert queue.check_timeouts() == [task.task_id]
    failed = queue.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_kind == ErrorKind.TIMEOUT
    assert failed.error == "Task timed out after 60 minutes"


def test_snapshot_from_earlier_attempt_does_not_touch_retry(
    queue,
    make_task,
    spawner,
    progress_channel,
    clock,
) -> None:
    task = _dispatch(queue, make_task, timeout_minutes=1)
    first_ref = spawner.requests[0].progress_ref
    clock.advance(minutes=2)
    assert queue.check_timeouts() == [task.task_id]

    queue.start_task(task.task_id)
    queue.process_queue()
    retried = queue.get_task(task.task_id)
    assert retried.status == TaskStatus.PROCESSING
    assert retried.retry_count == 1
    assert spawner.requests[1].progress_ref != first_ref

    # the first worker was never killed and reports its own timeout late
    write_snapshot(
        Path(first_ref),
        ProgressSnapshot(
            percentage=0,
            message="Worker timed out after 60 seconds",
            timestamp=clock(),
            exit_code=124,
        ),
    )
    assert queue.poll_progress().failed == []
    assert queue.get_task(task.task_id).status == TaskStatus.PROCESSING

    progress_channel.write(
        task.task_id,
        ProgressSnapshot(percentage=100, message="second try", timestamp=clock(), exit_code=0),
        attempt=1,
    )
    assert queue.poll_progress().completed == [task.task_id]
    assert queue.get_task(task.task_id).result == "second try"


def test_update_progress_never_decreases(queue, make_task) -> None:
    task = _dispatch(queue, make_task)

    assert queue.update_progress(task.task_id, 50, "halfway").progress == 50
    assert queue.update_progress(task.task_id, 30, "going back") is None

    current = queue.get_task(task.task_id)
    assert current.progress == 50
    assert current.current_step == "halfway"
    assert [update.percentage for update in current.progress_updates] == [50]


def test_update_progress_ignored_for_tasks_not_running(queue, make_task) -> None:
    task = make_task()

    assert queue.update_progress(task.task_id, 10, "early") is None
    with pytest.raises(TaskValidationError, match="0..100"):
        queue.update_progress(task.task_id, 101, "too much")


def test_poll_progress_applies_snapshots(queue, make_task, progress_channel, clock) -> None:
    running = _dispatch(queue, make_task, "running")
    done = _dispatch(queue, make_task, "done")
    broken = _dispatch(queue, make_task, "broken")
    progress_channel.write(
        running.task_id,
        ProgressSnapshot(percentage=40, message="parsing", timestamp=clock()),
    )
    progress_channel.write(
        done.task_id,
        ProgressSnapshot(percentage=100, message="all good", timestamp=clock(), exit_code=0),
    )
    progress_channel.write(
        broken.task_id,
        ProgressSnapshot(percentage=20, message="crashed", timestamp=clock(), exit_code=3),
    )

    summary = queue.poll_progress()

    assert summary.progress_updates == 1
    assert summary.completed == [done.task_id]
    assert summary.failed == [broken.task_id]
    assert queue.get_task(running.task_id).progress == 40
    completed = queue.get_task(done.task_id)
    assert completed.status == TaskStatus.COMPLETED
    assert completed.result == "all good"
    failed = queue.get_task(broken.task_id)
    assert failed.error_kind == ErrorKind.WORKER_REPORTED_FAILURE
    assert failed.error == "crashed"


def test_poll_progress_ignores_unreadable_snapshot(queue, make_task, progress_channel) -> None:
    task = _dispatch(queue, make_task)
    progress_channel.path_for(task.task_id).parent.mkdir(parents=True, exist_ok=True)
    progress_channel.path_for(task.task_id).write_text("{not json", "utf-8")

    summary = queue.poll_progress()

    assert summary.progress_updates == 0
    assert queue.get_task(task.task_id).status == TaskStatus.PROCESSING


def test_on_task_complete_verifies_artifacts(queue, make_task, workspaces) -> None:
    task = _dispatch(queue, make_task)
    output = workspaces.ensure("proj") / "out" / "report.md"
    output.parent.mkdir(parents=True)
    output.write_text("report", "utf-8")

    completion = queue.on_task_complete(
        task.task_id,
        result="done",
        artifacts=["out/report.md", "out/missing.md", "out/report.md"],
    )

    assert completion.applied is True
    assert completion.verified_artifacts == ["out/report.md"]
    assert completion.missing_artifacts == ["out/missing.md"]
    completed = completion.task
    assert completed.status == TaskStatus.COMPLETED
    assert completed.progress == 100
    assert completed.artifacts == ["out/report.md"]
    assert completed.missing_artifacts == ["out/missing.md"]
    assert completed.completed_at is not None


def test_repeated_completion_is_noop_but_notifies_listeners(queue, make_task) -> None:
    task = _dispatch(queue, make_task)
    seen = []
    queue.add_completion_listener(lambda view: seen.append(view.status) or False)

    first = queue.on_task_complete(task.task_id, result="first")
    second = queue.on_task_complete(task.task_id, result="second")

    assert first.applied is True
    assert second.applied is False
    assert second.task.result == "first"
    assert seen == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
    assert _statuses(second.task).count(TaskStatus.COMPLETED) == 1


def test_completion_before_dispatch_is_rejected(queue, make_task) -> None:
    task = make_task(auto_start=True)

    with pytest.raises(InvalidTransitionError, match="cannot complete"):
        queue.on_task_complete(task.task_id)


def test_on_task_error_and_retry(queue, make_task, progress_channel, clock) -> None:
    task = _dispatch(queue, make_task, max_retries=1)
    progress_channel.write(
        task.task_id,
        ProgressSnapshot(percentage=30, message="partial", timestamp=clock()),
    )
    queue.update_progress(task.task_id, 30, "partial")

    failed = queue.on_task_error(task.task_id, "agent crashed")
    assert failed.status == TaskStatus.FAILED
    assert failed.error_kind == ErrorKind.WORKER_REPORTED_FAILURE

    retried = queue.start_task(task.task_id)
    assert retried.status == TaskStatus.PENDING
    assert retried.retry_count == 1
    assert retried.progress == 0
    assert retried.error is None
    assert retried.error_kind is None
    assert retried.progress_updates == []
    assert progress_channel.read(task.task_id) is None

    queue.process_queue()
    queue.on_task_error(task.task_id, "crashed again")
    with pytest.raises(RetryLimitExceededError, match="exhausted its retries"):
        queue.start_task(task.task_id)
    assert queue.get_task(task.task_id).status == TaskStatus.FAILED


def test_cancel_task_from_each_non_terminal_status(queue, make_task) -> None:
    created = make_task("created")
    pending = make_task("pending", auto_start=True)
    processing = _dispatch(queue, make_task, "processing")

    for task in (created, pending, processing):
        cancelled = queue.cancel_task(task.task_id, reason="operator stop")
        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.status_history[-1].message == "operator stop"
        assert cancelled.completed_at is not None

    assert queue.cancel_task(created.task_id).status == TaskStatus.CANCELLED
    assert queue.repository.count_running() == 0


def test_restart_stuck_task_fails_and_requeues_it(queue, make_task, spawner) -> None:
    task = _dispatch(queue, make_task, max_retries=1)
    seen = []
    queue.add_completion_listener(lambda view: seen.append(view.status) or False)

    restarted = queue.restart_task(task.task_id, reason="worker hung")

    assert restarted.status == TaskStatus.PENDING
    assert restarted.retry_count == 1
    assert restarted.assigned_worker is None
    assert restarted.error is None
    assert _statuses(restarted)[-2:] == [TaskStatus.FAILED, TaskStatus.PENDING]
    assert restarted.status_history[-2].message == "worker hung"
    assert seen == []
    assert queue.repository.count_running() == 0

    queue.process_queue()
    assert len(spawner.requests) == 2
    with pytest.raises(RetryLimitExceededError, match="exhausted its retries"):
        queue.restart_task(task.task_id)
    assert queue.get_task(task.task_id).status == TaskStatus.PROCESSING


def test_restart_rejects_tasks_that_are_not_running_or_failed(queue, make_task) -> None:
    pending = make_task("pending", auto_start=True)
    finished = _dispatch(queue, make_task, "finished")
    queue.on_task_complete(finished.task_id)

    for task in (pending, finished):
        with pytest.raises(InvalidTransitionError, match="cannot be restarted"):
            queue.restart_task(task.task_id)

    failed = _dispatch(queue, make_task, "failed")
    queue.on_task_error(failed.task_id, "boom")
    assert queue.restart_task(failed.task_id).status == TaskStatus.PENDING


def test_cancel_finished_task_is_rejected(queue, make_task) -> None:
    task = _dispatch(queue, make_task)
    queue.on_task_complete(task.task_id)

    with pytest.raises(InvalidTransitionError, match="cannot be cancelled"):
        queue.cancel_task(task.task_id)


def test_update_task_status_validates_transitions(queue, make_task) -> None:
    task = make_task()

    with pytest.raises(InvalidTransitionError, match="queued before"):
        queue.update_task_status(task.task_id, TaskStatus.ACTIVE)
    with pytest.raises(InvalidTransitionError, match="cannot move from created to completed"):
        queue.update_task_status(task.task_id, TaskStatus.COMPLETED)

    queue.update_task_status(task.task_id, TaskStatus.PENDING, "manual")
    queue.update_task_status(task.task_id, TaskStatus.ACTIVE)
    processing = queue.update_task_status(task.task_id, TaskStatus.PROCESSING)
    assert processing.started_at is not None

    done = queue.update_task_status(task.task_id, TaskStatus.COMPLETED, "manual finish")
    assert done.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        queue.update_task_status(task.task_id, TaskStatus.PENDING)


def test_status_history_only_contains_allowed_transitions(
    queue,
    make_task,
    spawner,
    clock,
) -> None:
    spawner.next_errors.append(SpawnError("busy", transient=True))
    first = _dispatch(queue, make_task, "first", timeout_minutes=1)
    second = _dispatch(queue, make_task, "second")
    queue.process_queue()
    clock.advance(minutes=5)
    queue.check_timeouts()
    queue.start_task(first.task_id)
    queue.process_queue()
    queue.on_task_complete(first.task_id)
    queue.cancel_task(second.task_id)

    for task in queue.list_tasks():
        history = _statuses(task)
        assert history[0] == TaskStatus.CREATED
        assert history[-1] == task.status
        for previous, current in zip(history, history[1:], strict=False):
            assert current in ALLOWED_TRANSITIONS[previous], (previous, current)


def test_configure_validates_and_applies_on_next_sweep(queue, make_task) -> None:
    for index in range(4):
        make_task(f"t{index}", auto_start=True)

    with pytest.raises(ValueError, match="max_concurrent_tasks"):
        queue.configure(max_concurrent_tasks=0)
    with pytest.raises(ValueError, match="Unknown queue config fields"):
        queue.configure(bogus=1)
    assert queue.config.max_concurrent_tasks == 3

    queue.configure(max_concurrent_tasks=1)
    assert len(queue.process_queue().dispatched) == 1


def test_get_stats_counts_every_status(queue, make_task) -> None:
    make_task("created")
    make_task("pending", auto_start=True)
    queue.process_queue()

    stats = queue.get_stats()

    assert stats.total == 2
    assert stats.by_status[TaskStatus.CREATED] == 1
    assert stats.by_status[TaskStatus.PROCESSING] == 1
    assert stats.by_status[TaskStatus.CANCELLED] == 0
    assert stats.running_now == 1
    assert stats.max_concurrent == 3
    assert stats.sweep_in_progress is False


def test_diagnose_task_flags_stuck_processing(queue, make_task, clock) -> None:
    task = _dispatch(queue, make_task)

    assert queue.diagnose_task(task.task_id).is_stuck is False

    clock.advance(minutes=6)
    diagnostic = queue.diagnose_task(task.task_id)
    assert diagnostic.is_stuck is True
    assert diagnostic.processing_minutes == 6
    assert diagnostic.assigned_worker == "echo:1"
    assert diagnostic.last_update.status == TaskStatus.PROCESSING
    assert queue.get_task(task.task_id).status == TaskStatus.PROCESSING


def test_pipeline_kind_tasks_are_never_started_or_dispatched(queue) -> None:
    parent = queue.create_task(
        TaskCreate(project_id="proj", title="[Pipeline] p", kind=TaskKind.PIPELINE),
    )

    assert parent.agent_id == "pipeline"
    with pytest.raises(InvalidTransitionError, match="started by its pipeline runner"):
        queue.start_task(parent.task_id)

    queue.update_task_status(parent.task_id, TaskStatus.ACTIVE, "Pipeline started")
    assert queue.repository.count_running() == 0
    assert queue.process_queue().dispatched == []


def test_run_cycle_times_out_polls_and_dispatches(queue, make_task, clock) -> None:
    stale = _dispatch(queue, make_task, "stale", timeout_minutes=1)
    waiting = make_task("waiting", auto_start=True)
    clock.advance(minutes=2)

    summary = queue.run_cycle()

    assert summary.timed_out == [stale.task_id]
    assert waiting.task_id in summary.sweep.dispatched
