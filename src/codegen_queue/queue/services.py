"""Use-case services for the job queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from codegen_queue.config import QueueSettings
from codegen_queue.queue.models import (
    JobCreate,
    JobDetails,
    JobStatus,
    JobType,
    JobView,
    QueueStats,
)
from codegen_queue.queue.repository import JobRepository
from codegen_queue.records.models import ComponentView, GenerationView
from codegen_queue.records.repository import RecordNotFoundError, ResultRecordRepository

logger = logging.getLogger(__name__)

COMPONENT_JOB_TYPES = frozenset(
    {
        JobType.IMPROVEMENT,
        JobType.VALIDATION,
        JobType.EXPLANATION,
        JobType.TEST_GENERATION,
    },
)


@dataclass(slots=True)
class GenerationRequest:
    """A generation record together with the job that fills it."""

    generation: GenerationView
    job: JobView


class QueueService:
    """Enqueue, inspect and re-queue jobs; create result records for callers."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        records: ResultRecordRepository | None = None,
        settings: QueueSettings | None = None,
    ) -> None:
        self.repository = repository
        self.records = records
        self.settings = settings or QueueSettings()

    def enqueue(  # noqa: PLR0913
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int | None = None,
        timeout_seconds: int | None = None,
    ) -> JobView:
        """Persist a pending job.

        Unknown job types are accepted here and fail on execution, so the
        failure is visible in the failed listing instead of at the call site.
        """

        if job_type not in {member.value for member in JobType}:
            logger.warning("Enqueuing job with unregistered type %r", job_type)
        job = self.repository.enqueue(
            JobCreate(
                job_type=job_type,
                payload=payload,
                priority=priority,
                max_attempts=(
                    self.settings.default_max_attempts if max_attempts is None else max_attempts
                ),
                timeout_seconds=(
                    self.settings.default_timeout_seconds
                    if timeout_seconds is None
                    else timeout_seconds
                ),
            ),
        )
        logger.info("Enqueued job %s type=%s priority=%d", job.job_id, job_type, priority)
        return job

    def stats(self) -> QueueStats:
        return self.repository.stats()

    def list_failed(self, *, limit: int = 100) -> list[JobView]:
        return self.repository.list_failed(limit=limit)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        return self.repository.list_jobs(status=status, limit=limit)

    def get_job_details(self, job_id: str) -> JobDetails | None:
        return self.repository.get_job_details(job_id)

    def retry_job(self, job_id: str) -> JobView:
        """Re-queue a failed job with a fresh attempt budget.

        Raises ``JobNotFoundError`` for unknown ids and ``InvalidJobStateError``
        when the job is not failed.
        """

        job = self.repository.reset_to_pending(job_id)
        logger.info("Job %s re-queued manually", job_id)
        return job

    def request_generation(self, prompt: str, *, priority: int = 0) -> GenerationRequest:
        """Create a pending generation record and enqueue the job that fills it."""

        records = self._require_records()
        if not prompt.strip():
            raise ValueError("Prompt must be a non-empty string.")
        generation = records.create_generation(prompt=prompt)
        job = self.enqueue(
            JobType.GENERATION.value,
            {"result_id": generation.generation_id, "prompt": prompt},
            priority=priority,
        )
        return GenerationRequest(generation=generation, job=job)

    def register_component(self, *, name: str, code: str) -> ComponentView:
        records = self._require_records()
        if not name.strip():
            raise ValueError("Component name must be a non-empty string.")
        return records.create_component(name=name, code=code)

    def request_component_job(
        self,
        job_type: JobType,
        *,
        component_id: str,
        feedback: str | None = None,
        priority: int = 0,
    ) -> JobView:
        """Enqueue improvement, validation, explanation or test generation for a component."""

        if job_type not in COMPONENT_JOB_TYPES:
            raise ValueError(f"{job_type.value} is not a component job type.")
        if job_type == JobType.IMPROVEMENT and not (feedback or "").strip():
            raise ValueError("Improvement jobs require feedback.")
        component = self._require_records().get_component(component_id)
        if component is None:
            raise RecordNotFoundError(f"Component not found: {component_id}")

        payload: dict[str, Any] = {"target_id": component.component_id, "code": component.code}
        if job_type == JobType.IMPROVEMENT:
            payload["feedback"] = feedback
        return self.enqueue(job_type.value, payload, priority=priority)

    def _require_records(self) -> ResultRecordRepository:
        if self.records is None:
            raise RuntimeError("QueueService was created without a result record repository.")
        return self.records
