"""Result record persistence owned by the calling subsystem."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from codegen_queue.records.models import ComponentView, GenerationStatus, GenerationView
from codegen_queue.storage.alembic_runner import upgrade_head
from codegen_queue.storage.common import (
    build_sqlite_engine,
    from_db_datetime,
    from_db_datetime_or_none,
    new_id,
    to_db_datetime,
    utc_now,
)
from codegen_queue.storage.sqlmodel_models import Component, Generation


class RecordNotFoundError(LookupError):
    """Referenced generation or component does not exist."""


class ResultRecordRepository:
    """CRUD for generations and components.

    Update methods raise ``RecordNotFoundError`` when the target row is
    missing so handlers can fail the job permanently.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path, engine=self.engine)

    def create_generation(self, *, prompt: str, generation_id: str | None = None) -> GenerationView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Generation(
                generation_id=generation_id or new_id(),
                prompt=prompt,
                status=GenerationStatus.PENDING.value,
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_generation_view(row)

    def get_generation(self, generation_id: str) -> GenerationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Generation).where(Generation.generation_id == generation_id),
            ).one_or_none()
        return _to_generation_view(row) if row is not None else None

    def complete_generation(self, generation_id: str, *, result: str, tokens_used: int) -> None:
        self._update_generation(
            generation_id,
            status=GenerationStatus.COMPLETED.value,
            result=result,
            tokens_used=tokens_used,
            completed_at=to_db_datetime(utc_now()),
        )

    def fail_generation(self, generation_id: str) -> None:
        self._update_generation(
            generation_id,
            status=GenerationStatus.FAILED.value,
            completed_at=to_db_datetime(utc_now()),
        )

    def create_component(
        self,
        *,
        name: str,
        code: str,
        component_id: str | None = None,
    ) -> ComponentView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Component(
                component_id=component_id or new_id(),
                name=name,
                code=code,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_component_view(row)

    def get_component(self, component_id: str) -> ComponentView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Component).where(Component.component_id == component_id),
            ).one_or_none()
        return _to_component_view(row) if row is not None else None

    def update_component_code(self, component_id: str, *, code: str) -> None:
        self._update_component(component_id, code=code)

    def store_validation(
        self,
        component_id: str,
        *,
        code: str,
        validation: dict[str, Any],
    ) -> None:
        now = to_db_datetime(utc_now())
        self._update_component(
            component_id,
            code=code,
            validation_json=json.dumps(validation, ensure_ascii=False, sort_keys=True),
            validated_at=now,
        )

    def store_explanation(self, component_id: str, *, explanation: str) -> None:
        self._update_component(component_id, explanation=explanation)

    def store_tests(self, component_id: str, *, tests: str) -> None:
        self._update_component(component_id, tests=tests)

    def _update_generation(self, generation_id: str, **values: Any) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Generation)
                .where(col(Generation.generation_id) == generation_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RecordNotFoundError(f"Generation not found: {generation_id}")
            session.commit()

    def _update_component(self, component_id: str, **values: Any) -> None:
        values["updated_at"] = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Component)
                .where(col(Component.component_id) == component_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RecordNotFoundError(f"Component not found: {component_id}")
            session.commit()


def _to_generation_view(row: Generation) -> GenerationView:
    return GenerationView(
        generation_id=row.generation_id,
        prompt=row.prompt,
        status=GenerationStatus(row.status),
        result=row.result,
        tokens_used=row.tokens_used,
        created_at=from_db_datetime(row.created_at),
        completed_at=from_db_datetime_or_none(row.completed_at),
    )


def _to_component_view(row: Component) -> ComponentView:
    validation = json.loads(row.validation_json) if row.validation_json else None
    return ComponentView(
        component_id=row.component_id,
        name=row.name,
        code=row.code,
        validation=validation if isinstance(validation, dict) else None,
        validated_at=from_db_datetime_or_none(row.validated_at),
        explanation=row.explanation,
        tests=row.tests,
        created_at=from_db_datetime(row.created_at),
        updated_at=from_db_datetime(row.updated_at),
    )
