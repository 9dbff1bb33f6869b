"""Runtime configuration for the job worker and generation client."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class QueueSettings:
    """Job queue, executor and scheduler settings."""

    poll_interval_seconds: float = 1.0
    default_max_attempts: int = 3
    default_timeout_seconds: int = 120
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 900.0
    backoff_factor: float = 2.0
    backoff_jitter: float = 0.5
    stale_after_seconds: int = 300
    worker_id: str = field(default_factory=lambda: _default_worker_id())


@dataclass(slots=True)
class GenerationSettings:
    """Generation client, provider and response cache settings."""

    api_key: str | None = None
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    request_timeout_seconds: float = 60.0
    provider_max_retries: int = 0
    cache_ttl_seconds: float = 3600.0
    cache_max_entries: int = 512
    cache_sweep_interval_seconds: float = 300.0
    generate_max_tokens: int = 8000
    improve_max_tokens: int = 8000
    explain_max_tokens: int = 4000
    tests_max_tokens: int = 6000
    validate_max_tokens: int = 4000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".codegen_queue.db")
    sqlite_busy_timeout_ms: int = 5000
    queue: QueueSettings = field(default_factory=QueueSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CODEGEN_QUEUE_DB_PATH", ".codegen_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CODEGEN_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                poll_interval_seconds=float(
                    os.getenv("CODEGEN_QUEUE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                default_max_attempts=int(os.getenv("CODEGEN_QUEUE_MAX_ATTEMPTS", "3")),
                default_timeout_seconds=int(
                    os.getenv("CODEGEN_QUEUE_JOB_TIMEOUT_SECONDS", "120"),
                ),
                backoff_base_seconds=float(
                    os.getenv("CODEGEN_QUEUE_BACKOFF_BASE_SECONDS", "5.0"),
                ),
                backoff_max_seconds=float(
                    os.getenv("CODEGEN_QUEUE_BACKOFF_MAX_SECONDS", "900.0"),
                ),
                backoff_factor=float(os.getenv("CODEGEN_QUEUE_BACKOFF_FACTOR", "2.0")),
                backoff_jitter=float(os.getenv("CODEGEN_QUEUE_BACKOFF_JITTER", "0.5")),
                stale_after_seconds=int(os.getenv("CODEGEN_QUEUE_STALE_AFTER_SECONDS", "300")),
                worker_id=os.getenv("CODEGEN_QUEUE_WORKER_ID", "").strip() or _default_worker_id(),
            ),
            generation=GenerationSettings(
                api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                model=os.getenv("CODEGEN_QUEUE_MODEL", "claude-sonnet-4-20250514"),
                temperature=float(os.getenv("CODEGEN_QUEUE_TEMPERATURE", "0.7")),
                request_timeout_seconds=float(
                    os.getenv("CODEGEN_QUEUE_REQUEST_TIMEOUT_SECONDS", "60.0"),
                ),
                provider_max_retries=int(os.getenv("CODEGEN_QUEUE_PROVIDER_MAX_RETRIES", "0")),
                cache_ttl_seconds=float(os.getenv("CODEGEN_QUEUE_CACHE_TTL_SECONDS", "3600")),
                cache_max_entries=int(os.getenv("CODEGEN_QUEUE_CACHE_MAX_ENTRIES", "512")),
                cache_sweep_interval_seconds=float(
                    os.getenv("CODEGEN_QUEUE_CACHE_SWEEP_INTERVAL_SECONDS", "300"),
                ),
                generate_max_tokens=int(os.getenv("CODEGEN_QUEUE_GENERATE_MAX_TOKENS", "8000")),
                improve_max_tokens=int(os.getenv("CODEGEN_QUEUE_IMPROVE_MAX_TOKENS", "8000")),
                explain_max_tokens=int(os.getenv("CODEGEN_QUEUE_EXPLAIN_MAX_TOKENS", "4000")),
                tests_max_tokens=int(os.getenv("CODEGEN_QUEUE_TESTS_MAX_TOKENS", "6000")),
                validate_max_tokens=int(os.getenv("CODEGEN_QUEUE_VALIDATE_MAX_TOKENS", "4000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        queue = self.queue
        if queue.poll_interval_seconds <= 0:
            raise ValueError("CODEGEN_QUEUE_POLL_INTERVAL_SECONDS must be > 0.")
        if queue.default_max_attempts < 1:
            raise ValueError("CODEGEN_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if queue.default_timeout_seconds <= 0:
            raise ValueError("CODEGEN_QUEUE_JOB_TIMEOUT_SECONDS must be > 0.")
        if queue.backoff_base_seconds <= 0:
            raise ValueError("CODEGEN_QUEUE_BACKOFF_BASE_SECONDS must be > 0.")
        if queue.backoff_max_seconds < queue.backoff_base_seconds:
            raise ValueError(
                "CODEGEN_QUEUE_BACKOFF_MAX_SECONDS must be >= CODEGEN_QUEUE_BACKOFF_BASE_SECONDS.",
            )
        if not 0 <= queue.backoff_jitter <= 1:
            raise ValueError("CODEGEN_QUEUE_BACKOFF_JITTER must be within [0, 1].")
        if queue.stale_after_seconds <= 0:
            raise ValueError("CODEGEN_QUEUE_STALE_AFTER_SECONDS must be > 0.")

        generation = self.generation
        if generation.cache_ttl_seconds <= 0:
            raise ValueError("CODEGEN_QUEUE_CACHE_TTL_SECONDS must be > 0.")
        if generation.cache_max_entries < 1:
            raise ValueError("CODEGEN_QUEUE_CACHE_MAX_ENTRIES must be >= 1.")
        if generation.request_timeout_seconds <= 0:
            raise ValueError("CODEGEN_QUEUE_REQUEST_TIMEOUT_SECONDS must be > 0.")
        for env_name, budget in (
            ("CODEGEN_QUEUE_GENERATE_MAX_TOKENS", generation.generate_max_tokens),
            ("CODEGEN_QUEUE_IMPROVE_MAX_TOKENS", generation.improve_max_tokens),
            ("CODEGEN_QUEUE_EXPLAIN_MAX_TOKENS", generation.explain_max_tokens),
            ("CODEGEN_QUEUE_TESTS_MAX_TOKENS", generation.tests_max_tokens),
            ("CODEGEN_QUEUE_VALIDATE_MAX_TOKENS", generation.validate_max_tokens),
        ):
            if budget < 1:
                raise ValueError(f"{env_name} must be >= 1.")

    def validate_for_provider(self) -> None:
        """Raise configuration error when the provider cannot be called."""

        self.validate()
        if not self.generation.api_key:
            raise ValueError("ANTHROPIC_API_KEY is required to run the worker.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"
