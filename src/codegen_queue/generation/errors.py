"""Domain error for generation client failures."""

from __future__ import annotations

from codegen_queue.queue.models import FailureClass


class GenerationError(Exception):
    """Provider or input failure, classified so callers can decide on retries."""

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass,
        operation: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.failure_class = failure_class
        self.operation = operation
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.failure_class.retryable
