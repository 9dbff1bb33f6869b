"""Controllers for queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from codegen_queue.config import Settings
from codegen_queue.generation.cache import TtlCache
from codegen_queue.generation.client import GenerationClient
from codegen_queue.generation.provider import AnthropicProvider, GenerationProvider
from codegen_queue.queue.backoff import BackoffPolicy
from codegen_queue.queue.executor import JobExecutor
from codegen_queue.queue.handlers import build_default_handlers
from codegen_queue.queue.models import JobStatus, JobType, JobView
from codegen_queue.queue.repository import JobRepository
from codegen_queue.queue.scheduler import JobScheduler, SchedulerRunSummary
from codegen_queue.queue.services import QueueService
from codegen_queue.records.repository import ResultRecordRepository

ProviderFactory = Callable[[Settings], GenerationProvider]


@dataclass(slots=True)
class EnqueueJobCommand:
    """CLI input for raw job enqueue."""

    db_path: Path | None
    job_type: str
    payload_json: str
    priority: int
    max_attempts: int | None
    timeout_seconds: int | None


@dataclass(slots=True)
class GenerateCommand:
    """CLI input for a generation request."""

    db_path: Path | None
    prompt: str
    priority: int
    run: bool


@dataclass(slots=True)
class AddComponentCommand:
    db_path: Path | None
    name: str
    code: str


@dataclass(slots=True)
class ComponentJobCommand:
    db_path: Path | None
    job_type: str
    component_id: str
    feedback: str | None
    priority: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_ticks: int | None = 1


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class FailedJobsCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobIdCommand:
    """CLI input for single-job commands (inspect, retry)."""

    db_path: Path | None
    job_id: str


class QueueCliController:
    """Glue between CLI options, settings and queue services."""

    def __init__(self, *, provider_factory: ProviderFactory | None = None) -> None:
        self.provider_factory = provider_factory or _anthropic_provider

    def enqueue(self, command: EnqueueJobCommand) -> list[str]:
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object.")

        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            job = _service(settings, repository, records).enqueue(
                command.job_type,
                payload,
                priority=command.priority,
                max_attempts=command.max_attempts,
                timeout_seconds=command.timeout_seconds,
            )
        return [_job_enqueued_line(job)]

    def generate(self, command: GenerateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            request = _service(settings, repository, records).request_generation(
                command.prompt,
                priority=command.priority,
            )
            lines = [
                f"Generation requested: generation_id={request.generation.generation_id}",
                _job_enqueued_line(request.job),
            ]
            if not command.run:
                return lines

            summary = self._scheduler(settings, repository, records).run_loop(max_idle_ticks=1)
            lines.append(_summary_line(summary))
            generation = records.get_generation(request.generation.generation_id)

        if generation is not None:
            lines.append(
                f"Generation status: {generation.status.value} "
                f"tokens_used={generation.tokens_used if generation.tokens_used is not None else '-'}",
            )
            if generation.result:
                lines.append(generation.result)
        return lines

    def add_component(self, command: AddComponentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            component = _service(settings, repository, records).register_component(
                name=command.name,
                code=command.code,
            )
        return [f"Component stored: component_id={component.component_id} name={component.name}"]

    def component_job(self, command: ComponentJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            job = _service(settings, repository, records).request_component_job(
                JobType(command.job_type),
                component_id=command.component_id,
                feedback=command.feedback,
                priority=command.priority,
            )
        return [_job_enqueued_line(job)]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            scheduler = self._scheduler(settings, repository, records)
            if command.once:
                summary = SchedulerRunSummary()
                summary.add(scheduler.tick())
            else:
                summary = scheduler.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_ticks=command.max_idle_ticks,
                )
        return [_summary_line(summary)]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            stats = _service(settings, repository, records).stats()
        lines = [f"Jobs: {stats.total}"]
        lines.extend(f"  {status}: {count}" for status, count in stats.as_dict().items())
        return lines

    def failed(self, command: FailedJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            jobs = _service(settings, repository, records).list_failed(limit=command.limit)
        lines = [f"Failed jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} attempts={job.attempts}/{job.max_attempts} "
                f"failure_class={job.failure_class.value if job.failure_class else '-'} "
                f"error={job.error or '-'}",
            )
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status.strip().lower()) if command.status else None
        with _repositories(settings) as (repository, records):
            jobs = _service(settings, repository, records).list_jobs(
                status=status,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
                f"scheduled_for={job.scheduled_for.isoformat()}",
            )
        return lines

    def inspect(self, command: JobIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            details = _service(settings, repository, records).get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Timeout: {job.timeout_seconds}s",
            f"Scheduled for: {job.scheduled_for.isoformat()}",
            f"Worker: {job.worker_id or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error or '-'}",
            f"Payload: {json.dumps(job.payload, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry(self, command: JobIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (repository, records):
            job = _service(settings, repository, records).retry_job(command.job_id)
        return [f"Job re-queued: {job.job_id} status={job.status.value}"]

    def _scheduler(
        self,
        settings: Settings,
        repository: JobRepository,
        records: ResultRecordRepository,
    ) -> JobScheduler:
        queue = settings.queue
        generation = settings.generation
        client = GenerationClient(
            self.provider_factory(settings),
            settings=generation,
            cache=TtlCache(
                ttl_seconds=generation.cache_ttl_seconds,
                max_entries=generation.cache_max_entries,
                sweep_interval_seconds=generation.cache_sweep_interval_seconds,
            ),
        )
        executor = JobExecutor(
            repository=repository,
            handlers=build_default_handlers(client=client, records=records),
            backoff=BackoffPolicy(
                base_seconds=queue.backoff_base_seconds,
                max_seconds=queue.backoff_max_seconds,
                factor=queue.backoff_factor,
                jitter=queue.backoff_jitter,
            ),
            worker_id=queue.worker_id,
        )
        return JobScheduler(
            repository=repository,
            executor=executor,
            worker_id=queue.worker_id,
            poll_interval_seconds=queue.poll_interval_seconds,
            stale_after_seconds=queue.stale_after_seconds,
        )


def _anthropic_provider(settings: Settings) -> GenerationProvider:
    settings.validate_for_provider()
    return AnthropicProvider(
        api_key=settings.generation.api_key,
        model=settings.generation.model,
        timeout_seconds=settings.generation.request_timeout_seconds,
        max_retries=settings.generation.provider_max_retries,
    )


def _service(
    settings: Settings,
    repository: JobRepository,
    records: ResultRecordRepository,
) -> QueueService:
    return QueueService(repository=repository, records=records, settings=settings.queue)


def _job_enqueued_line(job: JobView) -> str:
    return (
        f"Job enqueued: job_id={job.job_id} type={job.job_type} "
        f"status={job.status.value} priority={job.priority}"
    )


def _summary_line(summary: SchedulerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} completed={summary.completed} "
        f"retried={summary.retried} failed={summary.failed} "
        f"released={summary.released} recovered={summary.recovered} "
        f"skipped_ticks={summary.skipped_ticks}"
    )


@contextmanager
def _repositories(
    settings: Settings,
) -> Iterator[tuple[JobRepository, ResultRecordRepository]]:
    settings.validate()
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    records = ResultRecordRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository, records
    finally:
        records.close()
        repository.close()
