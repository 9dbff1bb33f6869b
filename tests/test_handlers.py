from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest
from conftest import FakeProvider

from codegen_queue.generation import GenerationClient
from codegen_queue.queue.errors import JobCanceledError, PermanentJobError
from codegen_queue.queue.handlers import (
    CancellationToken,
    JobContext,
    build_default_handlers,
    require_payload_str,
)
from codegen_queue.queue.models import FailureClass, JobStatus, JobType, JobView
from codegen_queue.records.models import GenerationStatus
from codegen_queue.records.repository import ResultRecordRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Handlers"),
]


def _context(job_type: JobType, payload: dict[str, object]) -> JobContext:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    job = JobView(
        job_id="job-1",
        job_type=job_type.value,
        payload=payload,
        status=JobStatus.PROCESSING,
        priority=0,
        attempts=0,
        max_attempts=3,
        timeout_seconds=120,
        scheduled_for=now,
        started_at=now,
        completed_at=None,
        error=None,
        failure_class=None,
        worker_id="w1",
        created_at=now,
        updated_at=now,
    )
    return JobContext(job=job, token=CancellationToken())


def _run(
    records: ResultRecordRepository,
    provider: FakeProvider,
    job_type: JobType,
    payload: dict[str, object],
) -> None:
    handlers = build_default_handlers(client=GenerationClient(provider), records=records)
    handlers[job_type.value].run(payload, _context(job_type, payload))


def test_generation_handler_completes_record(records: ResultRecordRepository) -> None:
    generation = records.create_generation(prompt="a button")

    _run(
        records,
        FakeProvider("<Button />"),
        JobType.GENERATION,
        {"result_id": generation.generation_id, "prompt": "a button"},
    )

    stored = records.get_generation(generation.generation_id)
    assert stored is not None
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.result == "<Button />"
    assert stored.tokens_used == 42
    assert stored.completed_at is not None


def test_cached_rerun_keeps_recorded_token_usage(records: ResultRecordRepository) -> None:
    generation = records.create_generation(prompt="a button")
    payload = {"result_id": generation.generation_id, "prompt": "a button"}
    provider = FakeProvider("<Button />", default=None)
    handler = build_default_handlers(client=GenerationClient(provider), records=records)[
        JobType.GENERATION.value
    ]

    handler.run(payload, _context(JobType.GENERATION, payload))
    handler.run(payload, _context(JobType.GENERATION, payload))

    stored = records.get_generation(generation.generation_id)
    assert stored is not None
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.result == "<Button />"
    assert stored.tokens_used == 42
    assert len(provider.requests) == 1


def test_generation_handler_accepts_camel_case_id(records: ResultRecordRepository) -> None:
    generation = records.create_generation(prompt="a card")

    _run(
        records,
        FakeProvider("<Card />"),
        JobType.GENERATION,
        {"resultId": generation.generation_id, "prompt": "a card"},
    )

    stored = records.get_generation(generation.generation_id)
    assert stored is not None
    assert stored.status == GenerationStatus.COMPLETED


def test_generation_failure_hook_marks_record_failed(records: ResultRecordRepository) -> None:
    generation = records.create_generation(prompt="a button")
    handlers = build_default_handlers(
        client=GenerationClient(FakeProvider(default=None)),
        records=records,
    )

    handlers[JobType.GENERATION.value].on_permanent_failure(
        {"result_id": generation.generation_id},
        "boom",
    )

    stored = records.get_generation(generation.generation_id)
    assert stored is not None
    assert stored.status == GenerationStatus.FAILED


def test_component_handlers_store_results(records: ResultRecordRepository) -> None:
    component = records.create_component(name="Button", code="old")
    target = {"target_id": component.component_id, "code": "old"}

    _run(records, FakeProvider("new"), JobType.IMPROVEMENT, {**target, "feedback": "tidy"})
    _run(
        records,
        FakeProvider('{"valid": false, "issues": ["no alt text"]}'),
        JobType.VALIDATION,
        {"targetId": component.component_id, "code": "new"},
    )
    _run(records, FakeProvider("renders a button"), JobType.EXPLANATION, target)
    _run(records, FakeProvider("it('renders')"), JobType.TEST_GENERATION, target)

    stored = records.get_component(component.component_id)
    assert stored is not None
    assert stored.code == "new"
    assert stored.validation == {"valid": False, "issues": ["no alt text"]}
    assert stored.validated_at is not None
    assert stored.explanation == "renders a button"
    assert stored.tests == "it('renders')"


@pytest.mark.parametrize(
    ("job_type", "payload"),
    [
        (JobType.GENERATION, {"prompt": "a button"}),
        (JobType.GENERATION, {"result_id": 42, "prompt": "a button"}),
        (JobType.IMPROVEMENT, {"target_id": "c1", "code": "x"}),
        (JobType.VALIDATION, {"target_id": "c1", "code": "   "}),
    ],
)
def test_malformed_payload_is_permanent(
    records: ResultRecordRepository,
    job_type: JobType,
    payload: dict[str, object],
) -> None:
    provider = FakeProvider(default=None)

    with pytest.raises(PermanentJobError) as raised:
        _run(records, provider, job_type, payload)

    assert raised.value.failure_class == FailureClass.INPUT_CONTRACT_ERROR
    assert provider.requests == []


def test_missing_record_is_permanent(records: ResultRecordRepository) -> None:
    with pytest.raises(PermanentJobError) as raised:
        _run(
            records,
            FakeProvider("<Button />"),
            JobType.GENERATION,
            {"result_id": "missing", "prompt": "a button"},
        )

    assert raised.value.failure_class == FailureClass.RECORD_NOT_FOUND


def test_canceled_token_stops_before_side_effects(records: ResultRecordRepository) -> None:
    generation = records.create_generation(prompt="a button")
    payload = {"result_id": generation.generation_id, "prompt": "a button"}
    context = _context(JobType.GENERATION, payload)
    context.token.cancel("timeout")
    handlers = build_default_handlers(
        client=GenerationClient(FakeProvider(default=None)),
        records=records,
    )

    with pytest.raises(JobCanceledError):
        handlers[JobType.GENERATION.value].run(payload, context)

    stored = records.get_generation(generation.generation_id)
    assert stored is not None
    assert stored.status == GenerationStatus.PENDING


def test_require_payload_str_prefers_primary_key() -> None:
    assert require_payload_str({"target_id": "a", "targetId": "b"}, "target_id", "targetId") == "a"
    assert require_payload_str({"targetId": "b"}, "target_id", "targetId") == "b"
