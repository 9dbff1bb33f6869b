"""Job handlers: one unit of work per job type."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from codegen_queue.generation.client import GenerationClient
from codegen_queue.queue.errors import JobCanceledError, PermanentJobError
from codegen_queue.queue.models import FailureClass, JobType, JobView
from codegen_queue.records.models import GenerationStatus
from codegen_queue.records.repository import RecordNotFoundError, ResultRecordRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CancellationToken:
    """Cooperative cancellation flag shared between executor and handler."""

    _event: threading.Event = field(default_factory=threading.Event)
    reason: str | None = None

    def cancel(self, reason: str) -> None:
        if self.reason is None:
            self.reason = reason
        self._event.set()

    @property
    def canceled(self) -> bool:
        return self._event.is_set()

    def raise_if_canceled(self) -> None:
        if self._event.is_set():
            raise JobCanceledError(self.reason or "canceled")


@dataclass(slots=True)
class JobContext:
    """Per-execution context handed to a handler."""

    job: JobView
    token: CancellationToken

    def checkpoint(self) -> None:
        """Stop before the next side effect once the execution was canceled."""

        self.token.raise_if_canceled()


class JobHandler(Protocol):
    """Protocol implemented by job handlers."""

    def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
        """Perform the job; raise a classified error on failure."""

    def on_permanent_failure(self, payload: Mapping[str, Any], error: str) -> None:
        """Reflect a permanently failed job in its result record."""


class _RecordHandler:
    def __init__(self, *, client: GenerationClient, records: ResultRecordRepository) -> None:
        self.client = client
        self.records = records

    def on_permanent_failure(self, payload: Mapping[str, Any], error: str) -> None:  # noqa: ARG002
        return None


class GenerationHandler(_RecordHandler):
    """Generate component code for a prompt and store it on the generation record."""

    def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
        result_id = require_payload_str(payload, "result_id", "resultId")
        prompt = require_payload_str(payload, "prompt")
        context.checkpoint()
        result = self.client.generate_component(prompt)
        context.checkpoint()
        if result.cached and self._already_completed(result_id):
            # Usage recorded by the attempt that paid for the result stays.
            logger.info("Generation %s already completed, keeping recorded usage", result_id)
            return
        with _record_errors():
            self.records.complete_generation(
                result_id,
                result=result.code,
                tokens_used=result.tokens_used,
            )

    def _already_completed(self, generation_id: str) -> bool:
        generation = self.records.get_generation(generation_id)
        return generation is not None and generation.status == GenerationStatus.COMPLETED

    def on_permanent_failure(self, payload: Mapping[str, Any], error: str) -> None:
        result_id = payload.get("result_id", payload.get("resultId"))
        if not isinstance(result_id, str) or not result_id:
            return
        try:
            self.records.fail_generation(result_id)
        except RecordNotFoundError:
            logger.warning("Generation %s vanished before failure could be recorded", result_id)
            return
        logger.info("Generation %s marked failed: %s", result_id, error)


class ImprovementHandler(_RecordHandler):
    """Rewrite a component's code according to feedback."""

    def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
        target_id = require_payload_str(payload, "target_id", "targetId")
        code = require_payload_str(payload, "code")
        feedback = require_payload_str(payload, "feedback")
        context.checkpoint()
        improved = self.client.improve_code(code, feedback)
        context.checkpoint()
        with _record_errors():
            self.records.update_component_code(target_id, code=improved)


class ValidationHandler(_RecordHandler):
    """Validate component code and store the verdict alongside the code."""

    def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
        target_id = require_payload_str(payload, "target_id", "targetId")
        code = require_payload_str(payload, "code")
        context.checkpoint()
        report = self.client.validate_component(code)
        context.checkpoint()
        with _record_errors():
            self.records.store_validation(target_id, code=code, validation=report.to_dict())


class ExplanationHandler(_RecordHandler):
    def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
        target_id = require_payload_str(payload, "target_id", "targetId")
        code = require_payload_str(payload, "code")
        context.checkpoint()
        explanation = self.client.explain_code(code)
        context.checkpoint()
        with _record_errors():
            self.records.store_explanation(target_id, explanation=explanation)


class TestGenerationHandler(_RecordHandler):
    __test__ = False

    def run(self, payload: Mapping[str, Any], context: JobContext) -> None:
        target_id = require_payload_str(payload, "target_id", "targetId")
        code = require_payload_str(payload, "code")
        context.checkpoint()
        tests = self.client.generate_tests(code)
        context.checkpoint()
        with _record_errors():
            self.records.store_tests(target_id, tests=tests)


def build_default_handlers(
    *,
    client: GenerationClient,
    records: ResultRecordRepository,
) -> dict[str, JobHandler]:
    """Handler registry keyed by job type value."""

    return {
        JobType.GENERATION.value: GenerationHandler(client=client, records=records),
        JobType.IMPROVEMENT.value: ImprovementHandler(client=client, records=records),
        JobType.VALIDATION.value: ValidationHandler(client=client, records=records),
        JobType.EXPLANATION.value: ExplanationHandler(client=client, records=records),
        JobType.TEST_GENERATION.value: TestGenerationHandler(client=client, records=records),
    }


def require_payload_str(payload: Mapping[str, Any], key: str, *aliases: str) -> str:
    """Read a required non-empty string field; malformed payloads never succeed on retry."""

    for name in (key, *aliases):
        value = payload.get(name)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise PermanentJobError(f"Payload field {name!r} must be a non-empty string.")
        return value
    raise PermanentJobError(f"Payload field {key!r} is required.")


@contextmanager
def _record_errors() -> Iterator[None]:
    """Translate missing result records into permanent job failures."""

    try:
        yield
    except RecordNotFoundError as error:
        raise PermanentJobError(str(error), failure_class=FailureClass.RECORD_NOT_FOUND) from error
