"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from codegen_queue.generation.provider import ProviderReply, ProviderRequest
from codegen_queue.queue.repository import JobRepository
from codegen_queue.records.repository import ResultRecordRepository
from codegen_queue.storage.common import to_db_datetime, utc_now
from codegen_queue.storage.sqlmodel_models import QueueJob


class FakeProvider:
    """Scripted provider: each call pops the next reply or raises the next exception."""

    def __init__(self, *script: str | BaseException, default: str | None = "generated code") -> None:
        self.script: list[str | BaseException] = list(script)
        self.default = default
        self.requests: list[ProviderRequest] = []
        self._lock = threading.Lock()

    def complete(self, request: ProviderRequest) -> ProviderReply:
        with self._lock:
            self.requests.append(request)
            step = self.script.pop(0) if self.script else self.default
        if isinstance(step, BaseException):
            raise step
        if step is None:
            raise AssertionError(f"Unexpected provider call: {request.operation}")
        return ProviderReply(text=step, input_tokens=10, output_tokens=32, model="fake-model")


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def records(db_path: Path, repository: JobRepository) -> Iterator[ResultRecordRepository]:  # noqa: ARG001
    repo = ResultRecordRepository(db_path)
    try:
        yield repo
    finally:
        repo.close()


def make_due(repository: JobRepository, job_id: str) -> None:
    """Pull a scheduled retry forward so the next claim picks it up."""

    with Session(repository.engine) as session:
        session.exec(
            sa_update(QueueJob)
            .where(col(QueueJob.job_id) == job_id)
            .values(scheduled_for=to_db_datetime(utc_now() - timedelta(seconds=1))),
        )
        session.commit()


def backdate_start(repository: JobRepository, job_id: str, *, seconds: float) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(QueueJob)
            .where(col(QueueJob.job_id) == job_id)
            .values(started_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()
