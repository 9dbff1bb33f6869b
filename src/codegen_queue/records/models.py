"""Views over generation and component result records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class GenerationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class GenerationView:
    generation_id: str
    prompt: str
    status: GenerationStatus
    result: str | None
    tokens_used: int | None
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class ComponentView:
    component_id: str
    name: str
    code: str
    validation: dict[str, Any] | None
    validated_at: datetime | None
    explanation: str | None
    tests: str | None
    created_at: datetime
    updated_at: datetime
