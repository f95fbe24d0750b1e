"""Route one selected task through execution and its post-success path."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from persona_orchestrator.config import ExecutionSettings
from persona_orchestrator.engine.auto_review import AutoReviewGate
from persona_orchestrator.engine.backend import (
    ExecutionBackend,
    ExecutionRequest,
)
from persona_orchestrator.engine.classifier import classify
from persona_orchestrator.engine.failure_classifier import (
    ExecutionFailure,
    classify_exception,
    classify_execution_result,
)
from persona_orchestrator.engine.models import (
    FailureClass,
    Persona,
    ReviewOutcome,
    StageResult,
    TaskStatus,
    TaskUpdate,
    TaskView,
    WorkClass,
)
from persona_orchestrator.engine.pipeline import PipelineEngine
from persona_orchestrator.engine.store import OrchestratorStore
from persona_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

DEVELOPMENT_TOOLS: tuple[str, ...] = ("Read", "Write", "Edit", "Bash", "Glob", "Grep")
RESEARCH_TOOLS: tuple[str, ...] = ("Read", "WebSearch", "WebFetch", "Glob", "Grep")

WORKER_AUTHOR = "Task Worker"
_OUTPUT_COMMENT_LIMIT = 4_000
_SUMMARY_LIMIT = 280
_CONTEXT_COMMENTS = 3


@dataclass(slots=True)
class ExecutionPolicy:
    """Tool set, timeout and model for one session."""

    work_class: WorkClass
    allowed_tools: tuple[str, ...]
    timeout_seconds: int
    model: str | None


@dataclass(slots=True)
class DispatchResult:
    task_id: str
    persona_id: str | None
    status: TaskStatus
    work_class: WorkClass | None = None
    failure: ExecutionFailure | None = None
    review_outcome: ReviewOutcome | None = None
    report_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


def resolve_policy(
    task: TaskView,
    persona: Persona,
    work_class: WorkClass,
    settings: ExecutionSettings,
) -> ExecutionPolicy:
    """Task overrides beat persona overrides, which beat class defaults."""

    if work_class is WorkClass.RESEARCH:
        tools, default_timeout = RESEARCH_TOOLS, settings.research_timeout_seconds
    else:
        tools, default_timeout = DEVELOPMENT_TOOLS, settings.development_timeout_seconds
    return ExecutionPolicy(
        work_class=work_class,
        allowed_tools=tools,
        timeout_seconds=task.timeout_seconds or persona.timeout_seconds or default_timeout,
        model=task.model or persona.model or settings.default_model or None,
    )


def build_task_prompt(task: TaskView, persona: Persona, work_class: WorkClass) -> str:
    sections = []
    if persona.prompt.strip():
        sections.append(persona.prompt.strip())
    sections.append(
        "## Task Details\n"
        f"**Title:** {task.title}\n"
        f"**Description:** {task.description or 'No description'}\n"
        f"**Tags:** {', '.join(task.tags) or 'none'}",
    )
    recent = task.comments[-_CONTEXT_COMMENTS:]
    if recent:
        sections.append(
            "## Recent Comments\n"
            + "\n".join(f"- {comment.author}: {comment.body}" for comment in recent),
        )
    if work_class is WorkClass.RESEARCH:
        sections.append(
            "This is a research task. Investigate with the available search tools and "
            "answer with a markdown report: a one-paragraph summary first, then findings "
            "and sources.",
        )
    else:
        sections.append(
            "Make the required changes in the working directory, then summarize what you "
            "changed and how you verified it.",
        )
    sections.append("Please work on this task and provide your output.")
    return "\n\n".join(sections)


class TaskDispatcher:
    """Execute a task with its persona and hand the result to the right engine."""

    def __init__(
        self,
        store: OrchestratorStore,
        backend: ExecutionBackend,
        *,
        settings: ExecutionSettings,
        pipeline_engine: PipelineEngine | None = None,
        review_gate: AutoReviewGate | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.settings = settings
        self.pipeline_engine = pipeline_engine or PipelineEngine(store)
        self.review_gate = review_gate

    def dispatch(self, task: TaskView) -> DispatchResult:
        persona = self.store.get_persona(task.assignee) if task.assignee else None
        if persona is None:
            failure = ExecutionFailure(
                failure_class=FailureClass.PERSONA_NOT_FOUND,
                summary=f"Persona {task.assignee!r} not found.",
                matched_rule="persona_not_found",
            )
            return self._fail(task, failure, work_class=None, started_at=utc_now())

        work_class = classify(task, persona)
        policy = resolve_policy(task, persona, work_class, self.settings)
        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.IN_PROGRESS))
        logger.info(
            "Dispatching task %s to %s (%s, timeout=%ss)",
            task.task_id,
            persona.persona_id,
            work_class.value,
            policy.timeout_seconds,
        )

        started_at = utc_now()
        try:
            result = self.backend.execute(
                ExecutionRequest(
                    prompt=build_task_prompt(task, persona, work_class),
                    allowed_tools=policy.allowed_tools,
                    timeout_seconds=policy.timeout_seconds,
                    working_dir=self.settings.working_dir,
                    model=policy.model,
                ),
            )
        except Exception as error:  # noqa: BLE001
            failure: ExecutionFailure | None = classify_exception(error)
            output = ""
        else:
            failure = classify_execution_result(
                result,
                transient_exit_codes=self.settings.transient_exit_codes,
            )
            output = result.stdout.strip()

        if failure is not None:
            return self._fail(task, failure, work_class=work_class, started_at=started_at)
        if work_class is WorkClass.RESEARCH:
            return self._complete_research(task, persona, output)
        return self._complete_development(task, persona, output, started_at=started_at)

    def _complete_research(self, task: TaskView, persona: Persona, output: str) -> DispatchResult:
        report = self.store.save_report(
            f"Research: {task.title}",
            output,
            summary=_summarize(output),
            tags=task.tags,
            task_id=task.task_id,
        )
        self.store.add_task_link(
            task.task_id,
            url=f"report://{report.report_id}",
            title=report.title,
            link_type="report",
        )
        self.store.add_task_comment(
            task.task_id,
            author=persona.name,
            body=f"Research report saved: **{report.title}** ({report.report_id})\n\n{report.summary}",
        )
        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.DONE))
        logger.info("Research task %s done, report %s", task.task_id, report.report_id)
        return DispatchResult(
            task_id=task.task_id,
            persona_id=persona.persona_id,
            status=TaskStatus.DONE,
            work_class=WorkClass.RESEARCH,
            report_id=report.report_id,
        )

    def _complete_development(
        self,
        task: TaskView,
        persona: Persona,
        output: str,
        *,
        started_at: datetime,
    ) -> DispatchResult:
        self.store.add_task_comment(
            task.task_id,
            author=persona.name,
            body=f"**Work completed** by {persona.persona_id}\n\n{_truncate(output, _OUTPUT_COMMENT_LIMIT)}",
        )
        result = DispatchResult(
            task_id=task.task_id,
            persona_id=persona.persona_id,
            status=TaskStatus.REVIEW,
            work_class=WorkClass.DEVELOPMENT,
        )

        if task.pipeline_id is not None:
            result.status = self.pipeline_engine.complete_stage(task, output, started_at=started_at)
            return result

        if self.review_gate is not None and self.review_gate.is_enabled():
            if self.review_gate.resume(task) is None:
                self.review_gate.initiate(task, persona.persona_id)
            result.review_outcome = self.review_gate.execute_cycle(task.task_id)
            refreshed = self.store.get_task(task.task_id)
            result.status = refreshed.status if refreshed is not None else TaskStatus.REVIEW
            return result

        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.REVIEW))
        return result

    def _fail(
        self,
        task: TaskView,
        failure: ExecutionFailure,
        *,
        work_class: WorkClass | None,
        started_at: datetime,
    ) -> DispatchResult:
        logger.warning(
            "Task %s failed (%s): %s",
            task.task_id,
            failure.failure_class.value,
            failure.summary,
        )
        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.BACKLOG))
        self.store.add_task_comment(
            task.task_id,
            author=WORKER_AUTHOR,
            body=failure.to_comment(persona_id=task.assignee),
        )
        if task.pipeline_id is not None:
            state = self.pipeline_engine.start(task)
            if state is not None:
                self.pipeline_engine.record_failure(
                    task,
                    state,
                    failure.summary,
                    result=(
                        StageResult.TIMEOUT
                        if failure.failure_class is FailureClass.TIMEOUT
                        else StageResult.FAILURE
                    ),
                    started_at=started_at,
                )
        return DispatchResult(
            task_id=task.task_id,
            persona_id=task.assignee,
            status=TaskStatus.BACKLOG,
            work_class=work_class,
            failure=failure,
        )


def _summarize(output: str) -> str:
    for paragraph in output.split("\n\n"):
        text = " ".join(paragraph.split()).lstrip("# ").strip()
        if text:
            return _truncate(text, _SUMMARY_LIMIT)
    return ""


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."
