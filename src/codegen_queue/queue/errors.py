"""Exceptions raised by the job store and job handlers."""

from __future__ import annotations

from codegen_queue.queue.models import FailureClass, JobStatus


class JobNotFoundError(LookupError):
    """Referenced job does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(RuntimeError):
    """Job is not in the state an operation requires."""

    def __init__(self, job_id: str, *, status: JobStatus | str, expected: JobStatus) -> None:
        actual = status.value if isinstance(status, JobStatus) else status
        super().__init__(
            f"Job {job_id} must be {expected.value} for this operation, got {actual}.",
        )
        self.job_id = job_id
        self.status = actual
        self.expected = expected


class JobError(Exception):
    """Classified handler failure; the executor decides retry vs permanent fail."""

    failure_class: FailureClass = FailureClass.UNEXPECTED_ERROR

    def __init__(self, message: str, *, failure_class: FailureClass | None = None) -> None:
        super().__init__(message)
        if failure_class is not None:
            self.failure_class = failure_class

    @property
    def transient(self) -> bool:
        return self.failure_class.retryable


class TransientJobError(JobError):
    failure_class = FailureClass.PROVIDER_TRANSIENT


class PermanentJobError(JobError):
    failure_class = FailureClass.INPUT_CONTRACT_ERROR


class JobCanceledError(Exception):
    """Raised inside a handler once its cancellation token fired."""


class JobTimeoutError(TransientJobError):
    """Handler exceeded the job's execution budget."""

    failure_class = FailureClass.TIMEOUT
