"""SQLModel ORM tables for the job queue and its result records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_jobs_claim", "status", "scheduled_for", "priority", "created_at"),
        Index("idx_queue_jobs_status_completed", "status", "completed_at"),
    )

    job_id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = Field(default=0)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    timeout_seconds: int = Field(default=120)
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJobEvent(SQLModel, table=True):
    __tablename__ = "queue_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Generation(SQLModel, table=True):
    __tablename__ = "generations"  # type: ignore[bad-override]

    generation_id: str = Field(primary_key=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    tokens_used: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Component(SQLModel, table=True):
    __tablename__ = "components"  # type: ignore[bad-override]

    component_id: str = Field(primary_key=True)
    name: str
    code: str = Field(sa_column=Column(Text, nullable=False))
    validation_json: str | None = Field(default=None, sa_column=Column(Text))
    validated_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    explanation: str | None = Field(default=None, sa_column=Column(Text))
    tests: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
