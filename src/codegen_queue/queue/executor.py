"""Bounded, cancellable execution of one claimed job."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum

from codegen_queue.queue.backoff import BackoffPolicy
from codegen_queue.queue.errors import JobCanceledError, JobTimeoutError
from codegen_queue.queue.failure_classifier import FailureClassification, classify_exception
from codegen_queue.queue.handlers import CancellationToken, JobContext, JobHandler
from codegen_queue.queue.models import FailureClass, JobView
from codegen_queue.queue.repository import JobRepository

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 2000


class ExecutionStatus(str, Enum):
    """What happened to a job after one execution."""

    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    RELEASED = "released"
    LOST = "lost"


@dataclass(slots=True)
class ExecutionOutcome:
    job_id: str
    status: ExecutionStatus
    failure_class: FailureClass | None = None
    error: str | None = None
    retry_in_seconds: float | None = None


class _StopRequested(Exception):
    pass


class JobExecutor:
    """Runs handlers under the job's time budget and records the result.

    The handler runs in its own thread. The executor waits on it in short
    slices so both the deadline and a shutdown request are noticed while the
    handler is still busy; either one cancels the handler's token. A handler
    that ignores its token keeps running in the background but can no longer
    change the job, because the terminal writes are fenced on this worker's
    claim.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        handlers: Mapping[str, JobHandler],
        backoff: BackoffPolicy,
        worker_id: str,
        cancel_poll_seconds: float = 0.1,
    ) -> None:
        self.repository = repository
        self.handlers = dict(handlers)
        self.backoff = backoff
        self.worker_id = worker_id
        self.cancel_poll_seconds = cancel_poll_seconds

    def execute(
        self,
        job: JobView,
        *,
        stop_requested: Callable[[], bool] | None = None,
    ) -> ExecutionOutcome:
        """Execute a job claimed by this worker and persist its next state."""

        handler = self.handlers.get(job.job_type)
        if handler is None:
            return self._fail(
                job,
                handler=None,
                classification=FailureClassification(
                    failure_class=FailureClass.UNKNOWN_JOB_TYPE,
                    matched_rule="unknown_job_type",
                    matched_pattern=None,
                    message=f"No handler registered for job type {job.job_type!r}.",
                ),
            )

        token = CancellationToken()
        logger.info(
            "Executing job %s type=%s attempt=%d/%d",
            job.job_id,
            job.job_type,
            job.attempts + 1,
            job.max_attempts,
        )
        try:
            self._run_bounded(
                handler,
                job=job,
                token=token,
                stop_requested=stop_requested or (lambda: False),
            )
        except _StopRequested:
            released = self.repository.release_claim(
                job.job_id,
                reason="Worker shutdown during execution.",
                worker_id=self.worker_id,
            )
            logger.warning("Released job %s on shutdown", job.job_id)
            return ExecutionOutcome(
                job_id=job.job_id,
                status=ExecutionStatus.RELEASED if released else ExecutionStatus.LOST,
            )
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error)
            if classification.failure_class == FailureClass.UNEXPECTED_ERROR:
                logger.exception("Job %s raised an unexpected error", job.job_id)
            return self._handle_failure(job, handler=handler, classification=classification)

        if not self.repository.mark_completed(job.job_id, worker_id=self.worker_id):
            logger.warning("Job %s completed but its claim was lost", job.job_id)
            return ExecutionOutcome(job_id=job.job_id, status=ExecutionStatus.LOST)
        logger.info("Job %s completed", job.job_id)
        return ExecutionOutcome(job_id=job.job_id, status=ExecutionStatus.COMPLETED)

    def notify_permanent_failure(self, job: JobView) -> None:
        """Run the failure hook for a job failed outside the executor (stale sweep)."""

        handler = self.handlers.get(job.job_type)
        if handler is None:
            return
        self._run_failure_hook(job, handler=handler, error=job.error or "")

    def _run_bounded(
        self,
        handler: JobHandler,
        *,
        job: JobView,
        token: CancellationToken,
        stop_requested: Callable[[], bool],
    ) -> None:
        context = JobContext(job=job, token=token)
        deadline = time.monotonic() + job.timeout_seconds
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"job-{job.job_id[:8]}")
        try:
            future: Future[None] = pool.submit(handler.run, job.payload, context)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    token.cancel("timeout")
                    raise JobTimeoutError(
                        f"Job exceeded its {job.timeout_seconds}s execution budget.",
                    )
                if stop_requested():
                    token.cancel("shutdown")
                    raise _StopRequested
                try:
                    future.result(timeout=min(remaining, self.cancel_poll_seconds))
                except FutureTimeoutError:
                    if future.done():
                        # The handler raised its own TimeoutError.
                        raise
                    continue
                except JobCanceledError:
                    if token.reason == "shutdown":
                        raise _StopRequested from None
                    raise
                return
        finally:
            pool.shutdown(wait=False)

    def _handle_failure(
        self,
        job: JobView,
        *,
        handler: JobHandler,
        classification: FailureClassification,
    ) -> ExecutionOutcome:
        next_attempt = job.attempts + 1
        if not classification.transient or next_attempt >= job.max_attempts:
            return self._fail(job, handler=handler, classification=classification)

        delay = self.backoff.delay(job.attempts)
        error = _truncate(classification.message)
        retried = self.repository.mark_failed_retryable(
            job.job_id,
            error=error,
            next_attempt=next_attempt,
            delay=delay,
            failure_class=classification.failure_class,
            worker_id=self.worker_id,
            details=classification.to_event_details(),
        )
        if not retried:
            logger.warning("Job %s failed but its claim was lost", job.job_id)
            return ExecutionOutcome(
                job_id=job.job_id,
                status=ExecutionStatus.LOST,
                failure_class=classification.failure_class,
                error=error,
            )
        logger.warning(
            "Job %s failed (%s), retry %d/%d in %.1fs: %s",
            job.job_id,
            classification.failure_class.value,
            next_attempt,
            job.max_attempts,
            delay.total_seconds(),
            error,
        )
        return ExecutionOutcome(
            job_id=job.job_id,
            status=ExecutionStatus.RETRIED,
            failure_class=classification.failure_class,
            error=error,
            retry_in_seconds=delay.total_seconds(),
        )

    def _fail(
        self,
        job: JobView,
        *,
        handler: JobHandler | None,
        classification: FailureClassification,
    ) -> ExecutionOutcome:
        error = _truncate(classification.message)
        failed = self.repository.mark_failed_permanent(
            job.job_id,
            error=error,
            failure_class=classification.failure_class,
            worker_id=self.worker_id,
            details=classification.to_event_details(),
        )
        if not failed:
            logger.warning("Job %s failed but its claim was lost", job.job_id)
            return ExecutionOutcome(
                job_id=job.job_id,
                status=ExecutionStatus.LOST,
                failure_class=classification.failure_class,
                error=error,
            )
        logger.error(
            "Job %s failed permanently (%s): %s",
            job.job_id,
            classification.failure_class.value,
            error,
        )
        if handler is not None:
            self._run_failure_hook(job, handler=handler, error=error)
        return ExecutionOutcome(
            job_id=job.job_id,
            status=ExecutionStatus.FAILED,
            failure_class=classification.failure_class,
            error=error,
        )

    def _run_failure_hook(self, job: JobView, *, handler: JobHandler, error: str) -> None:
        try:
            handler.on_permanent_failure(job.payload, error)
        except Exception:
            logger.exception("Failure hook for job %s raised", job.job_id)


def _truncate(message: str, limit: int = MAX_ERROR_CHARS) -> str:
    text = message.strip() or "unknown error"
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
