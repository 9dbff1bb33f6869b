from __future__ import annotations

import random
import threading
from collections.abc import Mapping
from typing import Any

import allure
import pytest
from conftest import FakeProvider, backdate_start, make_due
from sqlalchemy.exc import OperationalError

from codegen_queue.generation import GenerationClient, GenerationError
from codegen_queue.queue.backoff import BackoffPolicy
from codegen_queue.queue.executor import ExecutionStatus, JobExecutor
from codegen_queue.queue.handlers import JobContext, JobHandler, build_default_handlers
from codegen_queue.queue.models import FailureClass, JobCreate, JobStatus, JobType
from codegen_queue.queue.repository import JobRepository
from codegen_queue.queue.scheduler import JobScheduler
from codegen_queue.queue.services import QueueService
from codegen_queue.records.models import GenerationStatus
from codegen_queue.records.repository import ResultRecordRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Scheduler"),
]


def _scheduler(
    repository: JobRepository,
    handlers: Mapping[str, JobHandler],
    *,
    stale_after_seconds: float = 300,
) -> JobScheduler:
    executor = JobExecutor(
        repository=repository,
        handlers=handlers,
        backoff=BackoffPolicy(base_seconds=5, max_seconds=60, rng=random.Random(0)),
        worker_id="w1",
        cancel_poll_seconds=0.02,
    )
    return JobScheduler(
        repository=repository,
        executor=executor,
        worker_id="w1",
        poll_interval_seconds=0.0,
        stale_after_seconds=stale_after_seconds,
    )


def _generation_handlers(
    records: ResultRecordRepository,
    provider: FakeProvider,
) -> dict[str, JobHandler]:
    return build_default_handlers(client=GenerationClient(provider), records=records)


def test_generation_survives_two_transient_failures(
    repository: JobRepository,
    records: ResultRecordRepository,
) -> None:
    provider = FakeProvider(
        GenerationError("overloaded", failure_class=FailureClass.PROVIDER_TRANSIENT),
        GenerationError("rate limited", failure_class=FailureClass.PROVIDER_RATE_LIMITED),
        "<Button />",
    )
    scheduler = _scheduler(repository, _generation_handlers(records, provider))
    request = QueueService(repository=repository, records=records).request_generation("a button")
    job_id = request.job.job_id

    statuses = []
    for _ in range(3):
        tick = scheduler.tick()
        assert tick.outcome is not None
        statuses.append(tick.outcome.status)
        make_due(repository, job_id)

    assert statuses == [
        ExecutionStatus.RETRIED,
        ExecutionStatus.RETRIED,
        ExecutionStatus.COMPLETED,
    ]
    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2
    generation = records.get_generation(request.generation.generation_id)
    assert generation is not None
    assert generation.status == GenerationStatus.COMPLETED
    assert generation.result == "<Button />"
    assert generation.tokens_used == 42


def test_exhausted_generation_marks_record_failed(
    repository: JobRepository,
    records: ResultRecordRepository,
) -> None:
    provider = FakeProvider(
        GenerationError("overloaded", failure_class=FailureClass.PROVIDER_TRANSIENT),
        GenerationError("overloaded", failure_class=FailureClass.PROVIDER_TRANSIENT),
        default=None,
    )
    scheduler = _scheduler(repository, _generation_handlers(records, provider))
    generation = records.create_generation(prompt="a button")
    job = repository.enqueue(
        JobCreate(
            job_type=JobType.GENERATION.value,
            payload={"result_id": generation.generation_id, "prompt": "a button"},
            max_attempts=2,
        ),
    )

    assert scheduler.tick().outcome.status == ExecutionStatus.RETRIED  # type: ignore[union-attr]
    make_due(repository, job.job_id)
    assert scheduler.tick().outcome.status == ExecutionStatus.FAILED  # type: ignore[union-attr]

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.attempts == 2
    record = records.get_generation(generation.generation_id)
    assert record is not None
    assert record.status == GenerationStatus.FAILED


def test_idle_tick_reports_no_outcome(repository: JobRepository) -> None:
    tick = _scheduler(repository, {}).tick()

    assert not tick.skipped
    assert tick.outcome is None


def test_overlapping_tick_is_skipped(repository: JobRepository) -> None:
    entered = threading.Event()
    release = threading.Event()

    class BlockingHandler:
        def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
            entered.set()
            release.wait(timeout=5)

        def on_permanent_failure(self, payload: Mapping[str, Any], error: str) -> None:
            return None

    scheduler = _scheduler(repository, {"generation": BlockingHandler()})
    repository.enqueue(JobCreate(job_type="generation"))
    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.tick()))
    worker.start()
    try:
        assert entered.wait(timeout=5)
        overlapping = scheduler.tick()
    finally:
        release.set()
        worker.join(timeout=5)

    assert overlapping.skipped
    assert overlapping.skip_reason == "tick_in_progress"
    assert results[0].outcome.status == ExecutionStatus.COMPLETED


def test_store_failure_skips_tick(repository: JobRepository, monkeypatch) -> None:
    def _locked(*, worker_id: str) -> None:
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    scheduler = _scheduler(repository, {})
    monkeypatch.setattr(repository, "claim_next", _locked)

    tick = scheduler.tick()

    assert tick.skipped
    assert tick.skip_reason == "store_unavailable"
    monkeypatch.undo()
    assert not scheduler.tick().skipped


def test_tick_recovers_stale_jobs_first(
    repository: JobRepository,
    records: ResultRecordRepository,
) -> None:
    generation = records.create_generation(prompt="a button")
    job = repository.enqueue(
        JobCreate(
            job_type=JobType.GENERATION.value,
            payload={"result_id": generation.generation_id, "prompt": "a button"},
            max_attempts=1,
            timeout_seconds=5,
        ),
    )
    assert repository.claim_next(worker_id="crashed-worker") is not None
    backdate_start(repository, job.job_id, seconds=120)
    scheduler = _scheduler(
        repository,
        _generation_handlers(records, FakeProvider(default=None)),
        stale_after_seconds=30,
    )

    tick = scheduler.tick()

    assert tick.recovered == 1
    assert tick.outcome is None
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.failure_class == FailureClass.STALE_PROCESSING
    record = records.get_generation(generation.generation_id)
    assert record is not None
    assert record.status == GenerationStatus.FAILED


def test_run_loop_drains_queue_until_idle(
    repository: JobRepository,
    records: ResultRecordRepository,
) -> None:
    provider = FakeProvider()
    service = QueueService(repository=repository, records=records)
    for prompt in ("a button", "a card", "a modal"):
        service.request_generation(prompt)
    service.enqueue("teleport", {})

    summary = _scheduler(repository, _generation_handlers(records, provider)).run_loop(
        max_idle_ticks=1,
    )

    assert summary.processed == 4
    assert summary.completed == 3
    assert summary.failed == 1
    assert summary.idle_ticks == 1
    assert repository.stats().as_dict() == {
        "pending": 0,
        "processing": 0,
        "completed": 3,
        "failed": 1,
    }


@pytest.mark.parametrize("max_jobs", [1, 2])
def test_run_loop_respects_max_jobs(repository: JobRepository, max_jobs: int) -> None:
    class NoopHandler:
        def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
            return None

        def on_permanent_failure(self, payload: Mapping[str, Any], error: str) -> None:
            return None

    for _ in range(3):
        repository.enqueue(JobCreate(job_type="generation"))

    summary = _scheduler(repository, {"generation": NoopHandler()}).run_loop(max_jobs=max_jobs)

    assert summary.processed == max_jobs
    assert repository.stats().pending == 3 - max_jobs


def test_stop_request_ends_loop_before_claiming(repository: JobRepository) -> None:
    repository.enqueue(JobCreate(job_type="generation"))
    scheduler = _scheduler(repository, {})
    scheduler.request_stop()

    summary = scheduler.run_loop()

    assert summary.ticks == 0
    assert repository.stats().pending == 1
