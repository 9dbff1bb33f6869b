"""CLI entrypoint for codegen-queue."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from codegen_queue import __version__
from codegen_queue.queue.controllers import (
    AddComponentCommand,
    ComponentJobCommand,
    EnqueueJobCommand,
    FailedJobsCommand,
    GenerateCommand,
    JobIdCommand,
    ListJobsCommand,
    QueueCliController,
    StatsCommand,
    WorkerCommand,
)
from codegen_queue.queue.errors import InvalidJobStateError
from codegen_queue.queue.models import JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

C = TypeVar("C")

_JOB_STATUSES = [status.value for status in JobStatus]
_COMPONENT_JOB_TYPES = [
    JobType.IMPROVEMENT.value,
    JobType.VALIDATION.value,
    JobType.EXPLANATION.value,
    JobType.TEST_GENERATION.value,
]


@click.group()
@click.version_option(version=__version__, prog_name="codegen-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def codegen_queue(log_level: str) -> None:
    """Code generation job queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@codegen_queue.command("generate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", required=True, help="Component description.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--run/--no-run",
    default=False,
    show_default=True,
    help="Process the queue until idle and print the result.",
)
def generate(db_path: Path | None, prompt: str, priority: int, run: bool) -> None:
    """Request component generation for a prompt."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.generate,
            GenerateCommand(db_path=db_path, prompt=prompt, priority=priority, run=run),
        ),
    )


@codegen_queue.group()
def component() -> None:
    """Stored component commands."""


@component.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Component name.")
@click.option(
    "--code-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="File with the component source.",
)
def component_add(db_path: Path | None, name: str, code_file: Path) -> None:
    """Store a component so jobs can target it."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.add_component,
            AddComponentCommand(
                db_path=db_path,
                name=name,
                code=code_file.read_text(encoding="utf-8"),
            ),
        ),
    )


@component.command("job")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--component-id", required=True, help="Target component id.")
@click.option(
    "--job-type",
    type=click.Choice(_COMPONENT_JOB_TYPES, case_sensitive=False),
    required=True,
    help="Work to perform on the component.",
)
@click.option("--feedback", default=None, help="Improvement feedback.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def component_job(
    db_path: Path | None,
    component_id: str,
    job_type: str,
    feedback: str | None,
    priority: int,
) -> None:
    """Enqueue improvement, validation, explanation or tests for a component."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.component_job,
            ComponentJobCommand(
                db_path=db_path,
                job_type=job_type.lower(),
                component_id=component_id,
                feedback=feedback,
                priority=priority,
            ),
        ),
    )


@codegen_queue.group()
def jobs() -> None:
    """Job queue and worker commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-type", required=True, help="Job type.")
@click.option("--payload", "payload_json", default="{}", show_default=True, help="JSON payload.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Max execution attempts including first run.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1, max=3600),
    default=None,
    help="Execution timeout per attempt.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    payload_json: str,
    priority: int,
    max_attempts: int | None,
    timeout_seconds: int | None,
) -> None:
    """Enqueue a job with a raw JSON payload."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.enqueue,
            EnqueueJobCommand(
                db_path=db_path,
                job_type=job_type,
                payload_json=payload_json,
                priority=priority,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one tick or keep polling.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Exit the loop after this many empty polls; runs until signaled when omitted.",
)
def jobs_worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_ticks: int | None,
) -> None:
    """Run the job worker."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_ticks=max_idle_ticks,
            ),
        ),
    )


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts by status."""

    _emit_lines(_invoke(QUEUE_CONTROLLER.stats, StatsCommand(db_path=db_path)))


@jobs.command("failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_failed(db_path: Path | None, limit: int) -> None:
    """List failed jobs, most recent first."""

    _emit_lines(
        _invoke(QUEUE_CONTROLLER.failed, FailedJobsCommand(db_path=db_path, limit=limit)),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_JOB_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.list_jobs,
            ListJobsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(_invoke(QUEUE_CONTROLLER.inspect, JobIdCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Manually re-queue a failed job."""

    _emit_lines(_invoke(QUEUE_CONTROLLER.retry, JobIdCommand(db_path=db_path, job_id=job_id)))


def _invoke(handler: Callable[[C], list[str]], command: C) -> list[str]:
    try:
        return handler(command)
    except (ValueError, LookupError, InvalidJobStateError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    codegen_queue()
