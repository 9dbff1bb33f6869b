from __future__ import annotations

import allure
import pytest

from codegen_queue.config import QueueSettings
from codegen_queue.queue.errors import InvalidJobStateError, JobNotFoundError
from codegen_queue.queue.models import FailureClass, JobStatus, JobType
from codegen_queue.queue.repository import JobRepository
from codegen_queue.queue.services import QueueService
from codegen_queue.records.models import GenerationStatus
from codegen_queue.records.repository import RecordNotFoundError, ResultRecordRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Queue Service"),
]


@pytest.fixture()
def service(repository: JobRepository, records: ResultRecordRepository) -> QueueService:
    return QueueService(
        repository=repository,
        records=records,
        settings=QueueSettings(default_max_attempts=4, default_timeout_seconds=90),
    )


def test_enqueue_applies_configured_defaults(service: QueueService) -> None:
    job = service.enqueue("generation", {"prompt": "x", "result_id": "r"}, priority=7)

    assert job.status == JobStatus.PENDING
    assert job.priority == 7
    assert job.max_attempts == 4
    assert job.timeout_seconds == 90

    explicit = service.enqueue("generation", {}, max_attempts=1, timeout_seconds=5)
    assert explicit.max_attempts == 1
    assert explicit.timeout_seconds == 5


@pytest.mark.parametrize("overrides", [{"max_attempts": 0}, {"timeout_seconds": 0}])
def test_enqueue_rejects_explicit_zero_limits(
    service: QueueService,
    overrides: dict[str, int],
) -> None:
    with pytest.raises(ValueError):
        service.enqueue("generation", {}, **overrides)
    assert service.stats().total == 0


def test_enqueue_accepts_unregistered_type(service: QueueService) -> None:
    job = service.enqueue("teleport", {})

    assert job.job_type == "teleport"
    assert service.stats().pending == 1


def test_retry_job_errors(service: QueueService) -> None:
    job = service.enqueue("generation", {})

    with pytest.raises(JobNotFoundError):
        service.retry_job("missing")
    with pytest.raises(InvalidJobStateError):
        service.retry_job(job.job_id)


def test_retry_job_resets_failed_job(service: QueueService, repository: JobRepository) -> None:
    job = service.enqueue("generation", {})
    assert repository.claim_next(worker_id="w1") is not None
    assert repository.mark_failed_permanent(
        job.job_id,
        error="bad",
        failure_class=FailureClass.INPUT_CONTRACT_ERROR,
    )
    assert [failed.job_id for failed in service.list_failed()] == [job.job_id]

    retried = service.retry_job(job.job_id)

    assert retried.status == JobStatus.PENDING
    assert retried.attempts == 0
    assert service.list_failed() == []
    details = service.get_job_details(job.job_id)
    assert details is not None
    assert details.events[-1].event_type == "manual_retry"


def test_request_generation_links_record_and_job(service: QueueService) -> None:
    request = service.request_generation("a login form", priority=3)

    assert request.generation.status == GenerationStatus.PENDING
    assert request.generation.prompt == "a login form"
    assert request.job.job_type == JobType.GENERATION.value
    assert request.job.priority == 3
    assert request.job.payload == {
        "result_id": request.generation.generation_id,
        "prompt": "a login form",
    }

    with pytest.raises(ValueError):
        service.request_generation("   ")


def test_request_component_job_builds_payload(service: QueueService) -> None:
    component = service.register_component(name="Button", code="<button />")

    improve = service.request_component_job(
        JobType.IMPROVEMENT,
        component_id=component.component_id,
        feedback="add aria label",
    )
    validate = service.request_component_job(
        JobType.VALIDATION,
        component_id=component.component_id,
    )

    assert improve.payload == {
        "target_id": component.component_id,
        "code": "<button />",
        "feedback": "add aria label",
    }
    assert validate.payload == {"target_id": component.component_id, "code": "<button />"}
    pending = service.list_jobs(status=JobStatus.PENDING)
    assert {job.job_type for job in pending} == {"validation", "improvement"}


def test_request_component_job_rejects_bad_requests(service: QueueService) -> None:
    component = service.register_component(name="Button", code="<button />")

    with pytest.raises(ValueError):
        service.request_component_job(JobType.GENERATION, component_id=component.component_id)
    with pytest.raises(ValueError):
        service.request_component_job(JobType.IMPROVEMENT, component_id=component.component_id)
    with pytest.raises(RecordNotFoundError):
        service.request_component_job(JobType.EXPLANATION, component_id="missing")


def test_record_operations_require_record_repository(repository: JobRepository) -> None:
    service = QueueService(repository=repository)

    with pytest.raises(RuntimeError):
        service.request_generation("a button")
