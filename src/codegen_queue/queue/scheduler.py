"""Polling scheduler that feeds claimed jobs to the executor."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from codegen_queue.queue.executor import ExecutionOutcome, ExecutionStatus, JobExecutor
from codegen_queue.queue.models import JobStatus
from codegen_queue.queue.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickResult:
    """Result of one poll-execute cycle."""

    skipped: bool = False
    skip_reason: str | None = None
    recovered: int = 0
    outcome: ExecutionOutcome | None = None

    @property
    def processed(self) -> bool:
        return self.outcome is not None


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    ticks: int = 0
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0
    lost: int = 0
    recovered: int = 0
    skipped_ticks: int = 0
    idle_ticks: int = 0

    def add(self, tick: TickResult) -> None:
        self.ticks += 1
        self.recovered += tick.recovered
        if tick.skipped:
            self.skipped_ticks += 1
            return
        if tick.outcome is None:
            self.idle_ticks += 1
            return
        self.processed += 1
        status = tick.outcome.status
        if status == ExecutionStatus.COMPLETED:
            self.completed += 1
        elif status == ExecutionStatus.RETRIED:
            self.retried += 1
        elif status == ExecutionStatus.FAILED:
            self.failed += 1
        elif status == ExecutionStatus.RELEASED:
            self.released += 1
        else:
            self.lost += 1


class JobScheduler:
    """Claims due jobs on a fixed interval, one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: JobExecutor,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
        stale_after_seconds: float = 300.0,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self, *, signal_name: str | None = None) -> None:
        """Stop claiming new jobs; an in-flight job is released."""

        if signal_name is not None and self._stop_signal_name is None:
            self._stop_signal_name = signal_name
            logger.info("Received %s, stopping scheduler", signal_name)
        self._stop_event.set()

    def tick(self) -> TickResult:
        """Run one cycle: stale sweep, claim, execute.

        Overlapping calls are skipped rather than queued. Store errors are
        logged and reported as a skipped tick.
        """

        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Previous tick still running, skipping")
            return TickResult(skipped=True, skip_reason="tick_in_progress")
        try:
            return self._tick()
        except SQLAlchemyError as error:
            logger.error("Job store unavailable, skipping tick: %s", error)
            return TickResult(skipped=True, skip_reason="store_unavailable")
        finally:
            self._tick_lock.release()

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_ticks: int | None = None,
    ) -> SchedulerRunSummary:
        """Tick until stopped.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_ticks: Stop after this many consecutive ticks without a
                job (None = keep polling).
        """

        summary = SchedulerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self.stop_requested:
                if max_jobs is not None and summary.processed >= max_jobs:
                    break
                tick = self.tick()
                summary.add(tick)
                if tick.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if max_idle_ticks is not None and consecutive_idle >= max_idle_ticks:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        logger.info(
            "Scheduler stopped: processed=%d completed=%d retried=%d failed=%d",
            summary.processed,
            summary.completed,
            summary.retried,
            summary.failed,
        )
        return summary

    def _tick(self) -> TickResult:
        result = TickResult(recovered=self._recover_stale())
        if self.stop_requested:
            return result
        job = self.repository.claim_next(worker_id=self.worker_id)
        if job is None:
            return result
        result.outcome = self.executor.execute(job, stop_requested=lambda: self.stop_requested)
        return result

    def _recover_stale(self) -> int:
        recovered = self.repository.recover_stale_processing(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        for job in recovered:
            if job.status == JobStatus.FAILED:
                self.executor.notify_permanent_failure(job)
        return len(recovered)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(max(0.0, seconds))

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
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
