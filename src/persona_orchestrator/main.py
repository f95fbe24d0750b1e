"""CLI entrypoint for persona-orchestrator."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from persona_orchestrator import __version__
from persona_orchestrator.config import ENV_PREFIX
from persona_orchestrator.engine.controllers import (
    DbCommand,
    OrchestratorCliController,
    PersonaAddCommand,
    PipelineRefCommand,
    ReviewConfigCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskRefCommand,
    WorkerRunCommand,
    WorkerToggleCommand,
)
from persona_orchestrator.engine.models import EscalationPolicy, TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

CommandT = TypeVar("CommandT")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="persona-orchestrator")
def persona_orchestrator() -> None:
    """Persona task orchestrator CLI."""

    level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=level if isinstance(logging.getLevelName(level), int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@persona_orchestrator.group()
def worker() -> None:
    """Scheduler commands."""


@worker.command("tick")
@_DB_PATH_OPTION
def worker_tick(db_path: Path | None) -> None:
    """Run one scheduler tick: pick and execute at most one backlog task."""

    _emit(ORCHESTRATOR_CONTROLLER.tick, DbCommand(db_path=db_path))


@worker.command("run")
@_DB_PATH_OPTION
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until interrupted).",
)
@click.option(
    "--poll-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Fixed wait between ticks instead of the adaptive cadence.",
)
def worker_run(db_path: Path | None, max_ticks: int | None, poll_seconds: float | None) -> None:
    """Enable the worker and tick on the adaptive cadence until stopped."""

    _emit(
        ORCHESTRATOR_CONTROLLER.run_worker,
        WorkerRunCommand(db_path=db_path, max_ticks=max_ticks, poll_seconds=poll_seconds),
    )


@worker.command("status")
@_DB_PATH_OPTION
def worker_status(db_path: Path | None) -> None:
    """Show persisted worker state."""

    _emit(ORCHESTRATOR_CONTROLLER.worker_status, DbCommand(db_path=db_path))


@worker.command("enable")
@_DB_PATH_OPTION
def worker_enable(db_path: Path | None) -> None:
    """Allow running loops to dispatch tasks."""

    _emit(ORCHESTRATOR_CONTROLLER.toggle_worker, WorkerToggleCommand(db_path=db_path, enabled=True))


@worker.command("disable")
@_DB_PATH_OPTION
def worker_disable(db_path: Path | None) -> None:
    """Pause dispatch in running loops."""

    _emit(
        ORCHESTRATOR_CONTROLLER.toggle_worker,
        WorkerToggleCommand(db_path=db_path, enabled=False),
    )


@persona_orchestrator.group()
def task() -> None:
    """Task board commands."""


@task.command("create")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option("--assignee", default=None, help="Persona id to work the task.")
@click.option("--tag", "tags", multiple=True, help="Task tag. Can be repeated.")
@click.option("--pipeline", "pipeline_id", default=None, help="Pipeline id to run through.")
@click.option("--model", default=None, help="Model override for this task.")
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Execution timeout override.",
)
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    priority: int,
    assignee: str | None,
    tags: tuple[str, ...],
    pipeline_id: str | None,
    model: str | None,
    timeout_seconds: int | None,
) -> None:
    """Create a backlog task."""

    _emit(
        ORCHESTRATOR_CONTROLLER.create_task,
        TaskCreateCommand(
            db_path=db_path,
            title=title,
            description=description,
            priority=priority,
            assignee=assignee,
            tags=tags,
            pipeline_id=pipeline_id,
            model=model,
            timeout_seconds=timeout_seconds,
        ),
    )


@task.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit(
        ORCHESTRATOR_CONTROLLER.list_tasks,
        TaskListCommand(db_path=db_path, status=status, limit=limit),
    )


@task.command("show")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show a task with its pipeline/review position and comments."""

    _emit(ORCHESTRATOR_CONTROLLER.show_task, TaskRefCommand(db_path=db_path, task_id=task_id))


@task.command("resume")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_resume(db_path: Path | None, task_id: str) -> None:
    """Pass a pipeline checkpoint: send a task in review back to the backlog."""

    _emit(ORCHESTRATOR_CONTROLLER.resume_task, TaskRefCommand(db_path=db_path, task_id=task_id))


@persona_orchestrator.group()
def persona() -> None:
    """Persona commands."""


@persona.command("add")
@_DB_PATH_OPTION
@click.argument("persona_id")
@click.option("--name", default=None, help="Display name (defaults to the id).")
@click.option("--prompt", default="", help="System prompt prepended to every task.")
@click.option(
    "--research/--no-research",
    "research_oriented",
    default=False,
    show_default=True,
    help="Always treat this persona's work as research.",
)
@click.option("--model", default=None, help="Model override.")
@click.option("--timeout-seconds", type=click.IntRange(min=1), default=None)
def persona_add(  # noqa: PLR0913
    db_path: Path | None,
    persona_id: str,
    name: str | None,
    prompt: str,
    research_oriented: bool,
    model: str | None,
    timeout_seconds: int | None,
) -> None:
    """Create or update a persona."""

    _emit(
        ORCHESTRATOR_CONTROLLER.add_persona,
        PersonaAddCommand(
            db_path=db_path,
            persona_id=persona_id,
            name=name,
            prompt=prompt,
            research_oriented=research_oriented,
            model=model,
            timeout_seconds=timeout_seconds,
        ),
    )


@persona.command("list")
@_DB_PATH_OPTION
def persona_list(db_path: Path | None) -> None:
    """List personas."""

    _emit(ORCHESTRATOR_CONTROLLER.list_personas, DbCommand(db_path=db_path))


@persona_orchestrator.group()
def pipeline() -> None:
    """Pipeline commands."""


@pipeline.command("seed")
@_DB_PATH_OPTION
def pipeline_seed(db_path: Path | None) -> None:
    """Create the built-in pipeline templates."""

    _emit(ORCHESTRATOR_CONTROLLER.seed_pipelines, DbCommand(db_path=db_path))


@pipeline.command("list")
@_DB_PATH_OPTION
def pipeline_list(db_path: Path | None) -> None:
    """List pipelines with their stages."""

    _emit(ORCHESTRATOR_CONTROLLER.list_pipelines, DbCommand(db_path=db_path))


@pipeline.command("delete")
@_DB_PATH_OPTION
@click.argument("pipeline_id")
def pipeline_delete(db_path: Path | None, pipeline_id: str) -> None:
    """Delete a pipeline; tasks still on it fall back to manual review."""

    _emit(
        ORCHESTRATOR_CONTROLLER.delete_pipeline,
        PipelineRefCommand(db_path=db_path, pipeline_id=pipeline_id),
    )


@persona_orchestrator.group()
def review() -> None:
    """Auto-review commands."""


@review.command("config")
@_DB_PATH_OPTION
@click.option("--enabled/--disabled", default=None, help="Turn auto-review on or off.")
@click.option("--max-cycles", type=click.IntRange(min=1), default=None)
@click.option("--default-reviewer", default=None, help="Persona id used when no tag matches.")
@click.option(
    "--escalation",
    type=click.Choice([policy.value for policy in EscalationPolicy]),
    default=None,
)
@click.option(
    "--reviewer",
    "reviewers",
    multiple=True,
    help="Tag to reviewer mapping as TAG=PERSONA. Can be repeated.",
)
def review_config(  # noqa: PLR0913
    db_path: Path | None,
    enabled: bool | None,
    max_cycles: int | None,
    default_reviewer: str | None,
    escalation: str | None,
    reviewers: tuple[str, ...],
) -> None:
    """Show or update auto-review configuration."""

    _emit(
        ORCHESTRATOR_CONTROLLER.configure_review,
        ReviewConfigCommand(
            db_path=db_path,
            enabled=enabled,
            max_cycles=max_cycles,
            default_reviewer=default_reviewer,
            escalation=escalation,
            reviewers=reviewers,
        ),
    )


@review.command("run")
@_DB_PATH_OPTION
@click.argument("task_id")
def review_run(db_path: Path | None, task_id: str) -> None:
    """Run one auto-review cycle for a task in auto-review."""

    _emit(ORCHESTRATOR_CONTROLLER.run_review, TaskRefCommand(db_path=db_path, task_id=task_id))


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    persona_orchestrator()
