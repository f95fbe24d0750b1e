"""Controllers for orchestration CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from persona_orchestrator.config import Settings
from persona_orchestrator.engine.backend import ExecutionBackend
from persona_orchestrator.engine.models import (
    EscalationPolicy,
    Persona,
    TaskCreate,
    TaskStatus,
    WorkerState,
)
from persona_orchestrator.engine.pipeline import seed_pipeline_templates
from persona_orchestrator.engine.repository import OrchestratorRepository
from persona_orchestrator.engine.services import build_runtime


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the worker loop."""

    db_path: Path | None
    max_ticks: int | None
    poll_seconds: float | None = None


@dataclass(slots=True)
class WorkerToggleCommand:
    db_path: Path | None
    enabled: bool


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    description: str
    priority: int
    assignee: str | None
    tags: tuple[str, ...]
    pipeline_id: str | None
    model: str | None
    timeout_seconds: int | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class PipelineRefCommand:
    db_path: Path | None
    pipeline_id: str


@dataclass(slots=True)
class PersonaAddCommand:
    """CLI input for persona create/update."""

    db_path: Path | None
    persona_id: str
    name: str | None
    prompt: str
    research_oriented: bool
    model: str | None
    timeout_seconds: int | None


@dataclass(slots=True)
class ReviewConfigCommand:
    """CLI input for auto-review configuration; ``None`` fields stay unchanged."""

    db_path: Path | None
    enabled: bool | None
    max_cycles: int | None
    default_reviewer: str | None
    escalation: str | None
    reviewers: tuple[str, ...]


class OrchestratorCliController:
    """Coordinates worker, task, persona, pipeline and review CLI operations."""

    def __init__(self, backend: ExecutionBackend | None = None) -> None:
        self.backend = backend

    def tick(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            runtime = build_runtime(store=repository, settings=settings, backend=self.backend)
            summary = runtime.scheduler.tick()

        if summary.skipped:
            return ["Tick skipped: worker is already running."]
        lines = []
        if summary.error is not None:
            lines.append(f"Tick failed for task {summary.task_id or '-'}: {summary.error}")
        elif summary.result is None:
            lines.append("No assigned backlog tasks.")
        else:
            result = summary.result
            lines.append(
                f"Task {result.task_id} -> {result.status.value} "
                f"(persona={result.persona_id or '-'} "
                f"class={result.work_class.value if result.work_class else '-'})",
            )
            if result.failure is not None:
                lines.append(f"Failure: {result.failure.failure_class.value}")
            if result.review_outcome is not None:
                lines.append(f"Auto-review: {result.review_outcome.value}")
            if result.report_id is not None:
                lines.append(f"Report: {result.report_id}")
        lines.append(f"Workload: {summary.workload} interval={summary.interval}")
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            runtime = build_runtime(store=repository, settings=settings, backend=self.backend)
            runtime.scheduler.set_enabled(True)
            summary = runtime.scheduler.run_loop(
                max_ticks=command.max_ticks,
                poll_seconds=command.poll_seconds,
            )

        return [
            "Worker summary: "
            f"ticks={summary.ticks} dispatched={summary.dispatched} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"idle={summary.idle} skipped={summary.skipped} errors={summary.errors}",
        ]

    def worker_status(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            state = repository.get_worker_state()
        return _worker_state_lines(state)

    def toggle_worker(self, command: WorkerToggleCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            runtime = build_runtime(store=repository, settings=settings, backend=self.backend)
            state = runtime.scheduler.set_enabled(command.enabled)
        return _worker_state_lines(state)

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if command.pipeline_id is not None:
                pipeline = repository.get_pipeline(command.pipeline_id)
                if pipeline is None:
                    raise ValueError(f"Pipeline not found: {command.pipeline_id}")
            task = repository.create_task(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    assignee=command.assignee,
                    tags=command.tags,
                    pipeline_id=command.pipeline_id,
                    model=command.model,
                    timeout_seconds=command.timeout_seconds,
                ),
            )
        return [
            f"task_id={task.task_id} status={task.status.value} "
            f"assignee={task.assignee or '-'} priority={task.priority}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} priority={task.priority} "
                f"assignee={task.assignee or '-'} pipeline={task.pipeline_id or '-'} "
                f"title={task.title}",
            )
        return lines

    def show_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            pipeline_state = repository.get_task_pipeline_state(command.task_id)
            review_state = repository.get_task_review_state(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Assignee: {task.assignee or '-'}",
            f"Tags: {', '.join(task.tags) or '-'}",
            f"Pipeline: {task.pipeline_id or '-'}",
        ]
        if pipeline_state is not None:
            lines.append(
                f"Stage: {pipeline_state.current_stage_id} "
                f"attempts={pipeline_state.stage_attempts.get(pipeline_state.current_stage_id, 0)} "
                f"stuck={'yes' if pipeline_state.is_stuck else 'no'}",
            )
        if review_state is not None:
            lines.append(
                f"Auto-review: cycle={review_state.current_review_cycle} "
                f"reviewer={review_state.reviewer_id} worker={review_state.worker_id}",
            )
        for link in task.links:
            lines.append(f"  link [{link.link_type}] {link.title} {link.url}")
        lines.append(f"Comments: {len(task.comments)}")
        for comment in task.comments:
            first_line = comment.body.splitlines()[0] if comment.body else ""
            lines.append(f"  {comment.created_at.isoformat()} {comment.author}: {first_line}")
        return lines

    def resume_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            runtime = build_runtime(store=repository, settings=settings, backend=self.backend)
            task = runtime.pipeline_engine.resume(command.task_id)
        return [f"Task resumed: {task.task_id} assignee={task.assignee or '-'}"]

    def add_persona(self, command: PersonaAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            persona = repository.upsert_persona(
                Persona(
                    persona_id=command.persona_id,
                    name=command.name or command.persona_id,
                    prompt=command.prompt,
                    research_oriented=command.research_oriented,
                    model=command.model,
                    timeout_seconds=command.timeout_seconds,
                ),
            )
        return [f"Persona saved: {persona.persona_id} ({persona.name})"]

    def list_personas(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            personas = repository.list_personas()
        lines = [f"Personas: {len(personas)}"]
        for persona in personas:
            lines.append(
                f"  {persona.persona_id} name={persona.name} "
                f"research={'yes' if persona.research_oriented else 'no'} "
                f"model={persona.model or '-'} timeout={persona.timeout_seconds or '-'}",
            )
        return lines

    def seed_pipelines(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            created = seed_pipeline_templates(repository)
        if not created:
            return ["Built-in pipelines already present."]
        return [f"Pipeline created: {pipeline.pipeline_id} ({pipeline.name})" for pipeline in created]

    def list_pipelines(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            pipelines = repository.list_pipelines()
        lines = [f"Pipelines: {len(pipelines)}"]
        for pipeline in pipelines:
            stages = " -> ".join(
                f"{stage.stage_id}({stage.persona}{', auto' if stage.auto_advance else ''})"
                for stage in pipeline.stages
            )
            lines.append(f"  {pipeline.pipeline_id} name={pipeline.name} stages={stages}")
        return lines

    def delete_pipeline(self, command: PipelineRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            deleted = repository.delete_pipeline(command.pipeline_id)
        if not deleted:
            raise ValueError(f"Pipeline not found: {command.pipeline_id}")
        return [f"Pipeline deleted: {command.pipeline_id}"]

    def configure_review(self, command: ReviewConfigCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            config = repository.get_auto_review_config()
            if command.enabled is not None:
                config.enabled = command.enabled
            if command.max_cycles is not None:
                config.max_review_cycles = command.max_cycles
            if command.default_reviewer is not None:
                config.default_reviewer_persona = command.default_reviewer
            if command.escalation is not None:
                config.escalation_policy = EscalationPolicy(command.escalation)
            config.task_type_reviewers.update(_parse_reviewers(command.reviewers))
            repository.save_auto_review_config(config)

        lines = [
            f"Auto-review: {'enabled' if config.enabled else 'disabled'}",
            f"Max cycles: {config.max_review_cycles}",
            f"Default reviewer: {config.default_reviewer_persona}",
            f"Escalation: {config.escalation_policy.value}",
        ]
        for tag, persona_id in sorted(config.task_type_reviewers.items()):
            lines.append(f"  {tag} -> {persona_id}")
        return lines

    def run_review(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            runtime = build_runtime(store=repository, settings=settings, backend=self.backend)
            outcome = runtime.review_gate.execute_cycle(command.task_id)
            task = repository.get_task(command.task_id)
        status = task.status.value if task is not None else "-"
        return [f"Review outcome: {outcome.value} status={status}"]


def _worker_state_lines(state: WorkerState) -> list[str]:
    return [
        f"Enabled: {'yes' if state.enabled else 'no'}",
        f"Running: {'yes' if state.is_running else 'no'}",
        f"Interval: {state.interval}",
        f"Workload: {state.workload}",
        f"Last run: {state.last_run.isoformat() if state.last_run else '-'}",
        f"Last task: {state.last_task_id or '-'}",
    ]


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_reviewers(values: tuple[str, ...]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for value in values:
        tag, separator, persona_id = value.partition("=")
        if not separator or not tag.strip() or not persona_id.strip():
            raise ValueError(f"Invalid reviewer mapping {value!r}. Expected TAG=PERSONA.")
        mapping[tag.strip().lower()] = persona_id.strip()
    return mapping


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
