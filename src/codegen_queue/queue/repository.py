"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from codegen_queue.queue.errors import InvalidJobStateError, JobNotFoundError
from codegen_queue.queue.models import (
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    QueueStats,
)
from codegen_queue.storage.alembic_runner import upgrade_head
from codegen_queue.storage.common import (
    build_sqlite_engine,
    from_db_datetime,
    from_db_datetime_or_none,
    new_id,
    to_db_datetime,
    utc_now,
)
from codegen_queue.storage.sqlmodel_models import QueueJob, QueueJobEvent

logger = logging.getLogger(__name__)


class JobRepository:
    """Queue persistence facade.

    Every state transition is one conditional ``UPDATE`` guarded on the
    current status, so concurrent workers (threads or processes sharing the
    database) never apply conflicting transitions. A transition that lost its
    race reports ``False`` instead of overwriting the winner.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path, engine=self.engine)

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        if not isinstance(payload.payload, dict):
            raise ValueError("Job payload must be a JSON object.")
        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}.")
        if payload.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {payload.timeout_seconds}.")

        now = utc_now()
        job_id = payload.job_id or new_id()
        with Session(self.engine) as session:
            row = QueueJob(
                job_id=job_id,
                job_type=payload.job_type,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                attempts=0,
                max_attempts=payload.max_attempts,
                timeout_seconds=payload.timeout_seconds,
                scheduled_for=to_db_datetime(payload.scheduled_for or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "job_type": payload.job_type,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the next due job.

        Picks the highest-priority, earliest-created pending job whose
        ``scheduled_for`` has passed and moves it to processing with a single
        compare-and-set update. Losing the race to another claimer re-selects.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueJob)
                    .where(
                        QueueJob.status == JobStatus.PENDING.value,
                        QueueJob.scheduled_for <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueueJob.priority).desc(),
                        col(QueueJob.created_at).asc(),
                        col(QueueJob.job_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == candidate.job_id,
                        col(QueueJob.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        started_at=to_db_datetime(now),
                        completed_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Lost claim race for job %s, reselecting", candidate.job_id)
                    continue

                claimed = session.exec(
                    select(QueueJob)
                    .where(QueueJob.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempts": claimed.attempts},
                )
                session.commit()
                return _to_job_view(claimed)

    def mark_completed(self, job_id: str, *, worker_id: str | None = None) -> bool:
        """Mark a processing job as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(*_processing_guard(job_id=job_id, worker_id=worker_id))
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    error=None,
                    failure_class=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def mark_failed_retryable(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        error: str,
        next_attempt: int,
        delay: timedelta,
        failure_class: FailureClass,
        worker_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Return a processing job to pending after a transient failure.

        ``next_attempt`` becomes the stored attempt count; it must grow and
        leave at least one attempt, otherwise the update does not apply.
        ``details`` are merged into the ``retry_scheduled`` event.
        """

        if delay < timedelta(0):
            raise ValueError(f"Retry delay must be >= 0, got {delay}.")
        now = utc_now()
        scheduled_for = now + delay
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    *_processing_guard(job_id=job_id, worker_id=worker_id),
                    col(QueueJob.attempts) < next_attempt,
                    col(QueueJob.max_attempts) > next_attempt,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=next_attempt,
                    scheduled_for=to_db_datetime(scheduled_for),
                    error=error,
                    failure_class=failure_class.value,
                    started_at=None,
                    completed_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={
                    **(details or {}),
                    "attempts": next_attempt,
                    "scheduled_for": scheduled_for.isoformat(),
                    "delay_seconds": delay.total_seconds(),
                    "failure_class": failure_class.value,
                    "error": error,
                },
            )
            session.commit()
            return True

    def mark_failed_permanent(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        error: str,
        failure_class: FailureClass,
        worker_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a processing job to failed, consuming one attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(*_processing_guard(job_id=job_id, worker_id=worker_id))
                .values(
                    status=JobStatus.FAILED.value,
                    attempts=_consume_attempt_expression(),
                    error=error,
                    failure_class=failure_class.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.FAILED,
                details={**(details or {}), "failure_class": failure_class.value, "error": error},
            )
            session.commit()
            return True

    def release_claim(self, job_id: str, *, reason: str, worker_id: str | None = None) -> bool:
        """Give a processing job back to the queue without consuming an attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(*_processing_guard(job_id=job_id, worker_id=worker_id))
                .values(
                    status=JobStatus.PENDING.value,
                    scheduled_for=to_db_datetime(now),
                    error=reason,
                    started_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="released",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={"reason": reason},
            )
            session.commit()
            return True

    def recover_stale_processing(self, *, stale_after: timedelta) -> list[JobView]:
        """Requeue jobs stuck in processing beyond their time budget plus ``stale_after``.

        A stale job counts as a transient failure: it consumes an attempt and
        fails permanently when it was on its last one. Returns the recovered
        jobs in their new state.
        """

        now = utc_now()
        recovered: list[JobView] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(QueueJob).where(
                    QueueJob.status == JobStatus.PROCESSING.value,
                    QueueJob.started_at <= to_db_datetime(now - stale_after),
                ),
            ).all()

        for candidate in candidates:
            if candidate.started_at is None:
                continue
            started_at = from_db_datetime(candidate.started_at)
            deadline = started_at + timedelta(seconds=candidate.timeout_seconds) + stale_after
            if deadline > now:
                continue
            view = self._requeue_stale(candidate=candidate, now=now)
            if view is not None:
                recovered.append(view)
        return recovered

    def _requeue_stale(self, *, candidate: QueueJob, now: datetime) -> JobView | None:
        next_attempt = min(candidate.attempts + 1, candidate.max_attempts)
        exhausted = next_attempt >= candidate.max_attempts
        status_to = JobStatus.FAILED if exhausted else JobStatus.PENDING
        started_at = from_db_datetime_or_none(candidate.started_at)
        error = (
            f"Job stayed in processing since {started_at.isoformat() if started_at else '-'} "
            f"without a terminal write (worker={candidate.worker_id or '-'})."
        )
        values: dict[str, Any] = {
            "status": status_to.value,
            "attempts": next_attempt,
            "error": error,
            "failure_class": FailureClass.STALE_PROCESSING.value,
            "worker_id": None,
            "updated_at": to_db_datetime(now),
        }
        if exhausted:
            values["completed_at"] = to_db_datetime(now)
        else:
            values["scheduled_for"] = to_db_datetime(now)
            values["started_at"] = None

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == candidate.job_id,
                    col(QueueJob.status) == JobStatus.PROCESSING.value,
                    col(QueueJob.started_at) == candidate.started_at,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=candidate.job_id,
                event_type="stale_requeued",
                status_from=JobStatus.PROCESSING,
                status_to=status_to,
                details={"attempts": next_attempt, "worker_id": candidate.worker_id},
            )
            session.commit()
            row = session.exec(
                select(QueueJob)
                .where(QueueJob.job_id == candidate.job_id)
                .execution_options(populate_existing=True),
            ).one()
            logger.warning(
                "Recovered stale job %s (worker=%s) -> %s",
                candidate.job_id,
                candidate.worker_id,
                status_to.value,
            )
            return _to_job_view(row)

    def reset_to_pending(self, job_id: str) -> JobView:
        """Manual retry: failed job back to pending with a fresh attempt budget."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != JobStatus.FAILED.value:
                raise InvalidJobStateError(job_id, status=row.status, expected=JobStatus.FAILED)

            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    scheduled_for=to_db_datetime(now),
                    error=None,
                    failure_class=None,
                    started_at=None,
                    completed_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidJobStateError(
                    job_id,
                    status="changed concurrently",
                    expected=JobStatus.FAILED,
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.PENDING,
                details={"previous_attempts": row.attempts},
            )
            session.commit()
            refreshed = session.exec(
                select(QueueJob)
                .where(QueueJob.job_id == job_id)
                .execution_options(populate_existing=True),
            ).one()
            return _to_job_view(refreshed)

    def stats(self) -> QueueStats:
        """Count jobs by status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob.status, func.count()).group_by(QueueJob.status),
            ).all()
        counts = {status: count for status, count in rows}
        return QueueStats(
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
        )

    def list_failed(self, *, limit: int | None = 100) -> list[JobView]:
        """List failed jobs, most recently failed first."""

        with Session(self.engine) as session:
            statement = (
                select(QueueJob)
                .where(QueueJob.status == JobStatus.FAILED.value)
                .order_by(col(QueueJob.completed_at).desc(), col(QueueJob.job_id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(QueueJob).order_by(col(QueueJob.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(QueueJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job with its event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(QueueJobEvent)
                .where(QueueJobEvent.job_id == job_id)
                .order_by(col(QueueJobEvent.created_at).asc(), col(QueueJobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=from_db_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(row), events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _processing_guard(*, job_id: str, worker_id: str | None) -> list[Any]:
    clauses: list[Any] = [
        col(QueueJob.job_id) == job_id,
        col(QueueJob.status) == JobStatus.PROCESSING.value,
    ]
    if worker_id is not None:
        clauses.append(col(QueueJob.worker_id) == worker_id)
    return clauses


def _consume_attempt_expression() -> Any:
    return case(
        (col(QueueJob.attempts) < col(QueueJob.max_attempts), col(QueueJob.attempts) + 1),
        else_=col(QueueJob.max_attempts),
    )


def _to_job_view(row: QueueJob) -> JobView:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        payload=payload if isinstance(payload, dict) else {},
        status=JobStatus(row.status),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        timeout_seconds=row.timeout_seconds,
        scheduled_for=from_db_datetime(row.scheduled_for),
        started_at=from_db_datetime_or_none(row.started_at),
        completed_at=from_db_datetime_or_none(row.completed_at),
        error=row.error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        worker_id=row.worker_id,
        created_at=from_db_datetime(row.created_at),
        updated_at=from_db_datetime(row.updated_at),
    )
