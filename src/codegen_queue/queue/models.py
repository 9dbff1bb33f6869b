"""Domain models for the job queue and its execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Job types with a registered handler."""

    GENERATION = "generation"
    IMPROVEMENT = "improvement"
    VALIDATION = "validation"
    EXPLANATION = "explanation"
    TEST_GENERATION = "test_generation"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    PROVIDER_RESPONSE_INVALID = "provider_response_invalid"
    INPUT_CONTRACT_ERROR = "input_contract_error"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    RECORD_NOT_FOUND = "record_not_found"
    STALE_PROCESSING = "stale_processing"
    UNEXPECTED_ERROR = "unexpected_error"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_FAILURE_CLASSES


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.PROVIDER_TRANSIENT,
        FailureClass.PROVIDER_RATE_LIMITED,
        FailureClass.STALE_PROCESSING,
        FailureClass.UNEXPECTED_ERROR,
    },
)


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_attempts: int = 3
    timeout_seconds: int = 120
    job_id: str | None = None
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for executor, services and CLI."""

    job_id: str
    job_type: str
    payload: dict[str, Any]
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    timeout_seconds: int
    scheduled_for: datetime
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None
    failure_class: FailureClass | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class QueueStats:
    """Job counts by status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            JobStatus.PENDING.value: self.pending,
            JobStatus.PROCESSING.value: self.processing,
            JobStatus.COMPLETED.value: self.completed,
            JobStatus.FAILED.value: self.failed,
        }
