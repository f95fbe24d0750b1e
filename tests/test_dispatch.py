from __future__ import annotations

import allure
import pytest

from persona_orchestrator.config import ExecutionSettings
from persona_orchestrator.engine.auto_review import AutoReviewGate
from persona_orchestrator.engine.backend import ExecutionTimeoutError
from persona_orchestrator.engine.dispatch import (
    DEVELOPMENT_TOOLS,
    RESEARCH_TOOLS,
    TaskDispatcher,
    build_task_prompt,
    resolve_policy,
)
from persona_orchestrator.engine.models import (
    FailureClass,
    Persona,
    PipelineStage,
    ReviewOutcome,
    StageResult,
    TaskCreate,
    TaskStatus,
    TaskView,
    WorkClass,
)
from persona_orchestrator.engine.repository import OrchestratorRepository

from conftest import ScriptedBackend

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Dispatch"),
]


def _dispatcher(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    settings: ExecutionSettings,
) -> TaskDispatcher:
    return TaskDispatcher(
        repository,
        backend,
        settings=settings,
        review_gate=AutoReviewGate(repository, backend),
    )


def _reload(repository: OrchestratorRepository, task_id: str) -> TaskView:
    task = repository.get_task(task_id)
    assert task is not None
    return task


def test_policy_prefers_task_then_persona_then_defaults(
    repository: OrchestratorRepository,
    execution_settings: ExecutionSettings,
) -> None:
    task = repository.create_task(TaskCreate(title="x", assignee="p"))
    persona = Persona("p", "P")

    policy = resolve_policy(task, persona, WorkClass.DEVELOPMENT, execution_settings)
    assert policy.allowed_tools == DEVELOPMENT_TOOLS
    assert policy.timeout_seconds == execution_settings.development_timeout_seconds
    assert policy.model == "test-model"

    policy = resolve_policy(task, persona, WorkClass.RESEARCH, execution_settings)
    assert policy.allowed_tools == RESEARCH_TOOLS
    assert policy.timeout_seconds == execution_settings.research_timeout_seconds

    persona = Persona("p", "P", model="opus", timeout_seconds=45)
    policy = resolve_policy(task, persona, WorkClass.DEVELOPMENT, execution_settings)
    assert (policy.timeout_seconds, policy.model) == (45, "opus")

    task = repository.create_task(TaskCreate(title="y", model="haiku", timeout_seconds=30))
    policy = resolve_policy(task, persona, WorkClass.DEVELOPMENT, execution_settings)
    assert (policy.timeout_seconds, policy.model) == (30, "haiku")


def test_prompt_includes_persona_task_and_recent_comments(
    repository: OrchestratorRepository,
) -> None:
    task = repository.create_task(TaskCreate(title="Fix header", tags=("ui",)))
    for index in range(5):
        repository.add_task_comment(task.task_id, author="lead", body=f"note {index}")
    task = _reload(repository, task.task_id)

    prompt = build_task_prompt(task, Persona("d", "D", prompt="You build UIs."), WorkClass.DEVELOPMENT)

    assert prompt.startswith("You build UIs.")
    assert "**Title:** Fix header" in prompt
    assert "**Tags:** ui" in prompt
    assert "note 0" not in prompt
    assert "- lead: note 4" in prompt
    assert prompt.endswith("Please work on this task and provide your output.")


@pytest.mark.usefixtures("personas")
def test_research_task_saves_linked_report_and_finishes(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    task = repository.create_task(
        TaskCreate(title="Compare caching layers", assignee="researcher", tags=("infra",)),
    )
    backend.queue_output("# Caching\n\nRedis wins for our workload.\n\n## Sources\n- docs")

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.succeeded
    assert result.status is TaskStatus.DONE
    assert result.work_class is WorkClass.RESEARCH
    assert backend.requests[0].allowed_tools == RESEARCH_TOOLS

    reloaded = _reload(repository, task.task_id)
    assert reloaded.status is TaskStatus.DONE
    assert [(link.url, link.link_type) for link in reloaded.links] == [
        (f"report://{result.report_id}", "report"),
    ]
    assert result.report_id is not None
    report = repository.get_report(result.report_id)
    assert report is not None
    assert report.title == "Research: Compare caching layers"
    assert report.summary == "Caching"
    assert report.task_id == task.task_id
    assert repository.get_task_review_state(task.task_id) is None


@pytest.mark.usefixtures("personas")
def test_development_task_enters_auto_review_and_is_approved(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    task = repository.create_task(TaskCreate(title="Add login form", assignee="developer"))
    backend.queue_output("Implemented the form.")
    backend.queue_review("APPROVE", confidence=0.95)

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.status is TaskStatus.REVIEW
    assert result.review_outcome is ReviewOutcome.APPROVED
    assert backend.requests[0].allowed_tools == DEVELOPMENT_TOOLS
    assert backend.requests[0].model == "test-model"
    reloaded = _reload(repository, task.task_id)
    assert reloaded.status is TaskStatus.REVIEW
    assert reloaded.comments[0].body.startswith("**Work completed** by developer")
    assert reloaded.comments[1].author == "qa-engineer (AI Reviewer)"


@pytest.mark.usefixtures("personas")
def test_rejected_work_resumes_the_same_review_loop(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    dispatcher = _dispatcher(repository, backend, execution_settings)
    task = repository.create_task(TaskCreate(title="Add login form", assignee="developer"))
    backend.queue_output("First try.")
    backend.queue_review("REJECT", feedback="Missing validation")

    first = dispatcher.dispatch(task)

    assert first.review_outcome is ReviewOutcome.REJECTED
    assert first.status is TaskStatus.BACKLOG

    backend.queue_output("Added validation.")
    backend.queue_review("APPROVE")
    second = dispatcher.dispatch(_reload(repository, task.task_id))

    assert second.review_outcome is ReviewOutcome.APPROVED
    assert "Cycle 1: REJECT" in backend.requests[3].prompt
    assert "This is review cycle 2 of 3." in backend.requests[3].prompt


@pytest.mark.usefixtures("personas", "review_disabled")
def test_development_task_goes_straight_to_review_when_gate_disabled(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    task = repository.create_task(TaskCreate(title="Add login form", assignee="developer"))
    backend.queue_output("Implemented.")

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.status is TaskStatus.REVIEW
    assert result.review_outcome is None
    assert len(backend.requests) == 1


@pytest.mark.usefixtures("personas")
def test_pipeline_task_is_handed_to_pipeline_engine(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    pipeline = repository.create_pipeline(
        name="Build and check",
        stages=[
            PipelineStage("build", "Build", "developer", auto_advance=True),
            PipelineStage("check", "Check", "qa-engineer"),
        ],
    )
    task = repository.create_task(
        TaskCreate(title="Add login form", assignee="developer", pipeline_id=pipeline.pipeline_id),
    )
    backend.queue_output("Built.")

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.status is TaskStatus.BACKLOG
    assert result.review_outcome is None
    reloaded = _reload(repository, task.task_id)
    assert reloaded.assignee == "qa-engineer"
    state = repository.get_task_pipeline_state(task.task_id)
    assert state is not None
    assert state.current_stage_id == "check"


@pytest.mark.usefixtures("personas")
def test_non_zero_exit_returns_task_to_backlog_with_comment(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    task = repository.create_task(TaskCreate(title="Add login form", assignee="developer"))
    backend.queue_output("", exit_code=2, stderr="boom")

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert not result.succeeded
    assert result.failure is not None
    assert result.failure.failure_class is FailureClass.NON_ZERO_EXIT
    reloaded = _reload(repository, task.task_id)
    assert reloaded.status is TaskStatus.BACKLOG
    assert reloaded.comments[-1].body.startswith("**EXECUTION FAILED** (non_zero_exit)")
    assert reloaded.comments[-1].body.endswith("*Persona: developer*")


def test_missing_persona_fails_without_execution(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    task = repository.create_task(TaskCreate(title="Orphan", assignee="ghost"))

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.failure is not None
    assert result.failure.failure_class is FailureClass.PERSONA_NOT_FOUND
    assert backend.requests == []
    assert _reload(repository, task.task_id).status is TaskStatus.BACKLOG


@pytest.mark.usefixtures("personas")
def test_timeout_in_pipeline_records_stage_failure(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    pipeline = repository.create_pipeline(
        name="Single",
        stages=[PipelineStage("build", "Build", "developer", max_retry_attempts=1)],
    )
    task = repository.create_task(
        TaskCreate(title="Slow build", assignee="developer", pipeline_id=pipeline.pipeline_id),
    )
    backend.queue(ExecutionTimeoutError("Execution timed out after 320s", timeout_seconds=320))

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.failure is not None
    assert result.failure.failure_class is FailureClass.TIMEOUT
    state = repository.get_task_pipeline_state(task.task_id)
    assert state is not None
    assert state.stage_attempts["build"] == 1
    assert state.stage_history[-1].result is StageResult.TIMEOUT
    assert state.is_stuck is True
    assert _reload(repository, task.task_id).status is TaskStatus.BACKLOG


@pytest.mark.usefixtures("personas")
def test_unexpected_backend_error_counts_as_pipeline_attempt(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    execution_settings: ExecutionSettings,
) -> None:
    pipeline = repository.create_pipeline(
        name="Single",
        stages=[PipelineStage("build", "Build", "developer", max_retry_attempts=3)],
    )
    task = repository.create_task(
        TaskCreate(title="Flaky build", assignee="developer", pipeline_id=pipeline.pipeline_id),
    )
    backend.queue(ConnectionResetError("agent socket closed"))

    result = _dispatcher(repository, backend, execution_settings).dispatch(task)

    assert result.failure is not None
    assert result.failure.failure_class is FailureClass.UNEXPECTED_ERROR
    assert "ConnectionResetError: agent socket closed" in result.failure.summary
    state = repository.get_task_pipeline_state(task.task_id)
    assert state is not None
    assert state.stage_attempts["build"] == 1
    assert state.stage_history[-1].result is StageResult.FAILURE
    reloaded = _reload(repository, task.task_id)
    assert reloaded.status is TaskStatus.BACKLOG
    assert reloaded.comments[-1].body.startswith("**EXECUTION FAILED** (unexpected_error)")
