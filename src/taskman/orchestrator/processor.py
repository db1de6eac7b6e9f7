"""Periodic processing loop driving `TaskQueue.run_cycle`."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from taskman.orchestrator.models import TaskStatus
from taskman.orchestrator.queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessorRunSummary:
    """Aggregate loop counters for CLI reporting."""

    cycles: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    errors: int = 0


class QueueProcessor:
    """Runs the queue tick every `processing_interval_ms` until stopped."""

    def __init__(self, queue: TaskQueue) -> None:
        self.queue = queue
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_signal_name(self) -> str | None:
        return self._stop_signal_name

    def request_stop(self) -> None:
        self._stop_requested = True

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        until_idle: bool = False,
    ) -> ProcessorRunSummary:
        """Tick until stopped.

        Args:
            max_cycles: Stop after this many ticks (None = unlimited).
            until_idle: Stop once no task is pending, active or processing.
        """

        aggregate = ProcessorRunSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                aggregate.cycles += 1
                try:
                    summary = self.queue.run_cycle()
                except Exception:  # noqa: BLE001
                    aggregate.errors += 1
                    logger.exception("Processing cycle %s failed", aggregate.cycles)
                else:
                    aggregate.dispatched += len(summary.sweep.dispatched)
                    aggregate.completed += len(summary.completed)
                    aggregate.failed += len(summary.failed)
                    aggregate.timed_out += len(summary.timed_out)
                if until_idle and self._is_idle():
                    break
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._sleep_with_stop(self.queue.config.processing_interval_ms / 1000.0)
        logger.info(
            "Processor stopped after %s cycles (dispatched=%s completed=%s failed=%s)",
            aggregate.cycles,
            aggregate.dispatched,
            aggregate.completed,
            aggregate.failed,
        )
        return aggregate

    def _is_idle(self) -> bool:
        counts = self.queue.repository.count_by_status()
        return (
            counts[TaskStatus.PENDING] == 0 and self.queue.repository.count_running() == 0
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current cycle", name)
            self._stop_signal_name = name
            self._stop_requested = True

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Signal handlers not installed outside the main thread")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
