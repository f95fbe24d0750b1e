from __future__ import annotations

import allure
import pytest

from persona_orchestrator.engine.auto_review import REVIEW_TOOLS, AutoReviewGate, select_reviewer
from persona_orchestrator.engine.backend import ExecutionTimeoutError
from persona_orchestrator.engine.models import (
    AutoReviewConfig,
    EscalationPolicy,
    Persona,
    ReviewDecision,
    ReviewOutcome,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from persona_orchestrator.engine.repository import OrchestratorRepository

from conftest import ScriptedBackend

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Auto-Review Gate"),
]


def _gate(repository: OrchestratorRepository, backend: ScriptedBackend) -> AutoReviewGate:
    return AutoReviewGate(repository, backend, review_timeout_seconds=180, default_model="m")


def _task_in_review(
    repository: OrchestratorRepository,
    gate: AutoReviewGate,
    *,
    tags: tuple[str, ...] = (),
) -> TaskView:
    task = repository.create_task(
        TaskCreate(title="Add search box", description="Debounced input", assignee="developer", tags=tags),
    )
    gate.initiate(task, "developer")
    return task


def _reload(repository: OrchestratorRepository, task_id: str) -> TaskView:
    task = repository.get_task(task_id)
    assert task is not None
    return task


def test_select_reviewer_prefers_first_mapped_tag() -> None:
    config = AutoReviewConfig()
    task = TaskView(
        task_id="t",
        title="x",
        description="",
        status=TaskStatus.BACKLOG,
        priority=0,
        assignee=None,
        tags=("ui-polish", "security", "bug"),
        pipeline_id=None,
        model=None,
        timeout_seconds=None,
        created_at=None,  # type: ignore[arg-type]
        updated_at=None,  # type: ignore[arg-type]
    )

    assert select_reviewer(task, config) == "security-reviewer"
    task.tags = ("misc",)
    assert select_reviewer(task, config) == "qa-engineer"


@pytest.mark.usefixtures("personas")
def test_initiate_moves_task_to_auto_review(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate, tags=("security",))

    state = repository.get_task_review_state(task.task_id)
    assert state is not None
    assert state.reviewer_id == "security-reviewer"
    assert state.worker_id == "developer"
    assert state.current_review_cycle == 1
    assert state.review_history == []
    assert _reload(repository, task.task_id).status is TaskStatus.AUTO_REVIEW


@pytest.mark.usefixtures("personas")
def test_approval_hands_task_to_human_review(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)
    backend.queue_review("APPROVE", confidence=0.9, feedback="Solid work.")

    outcome = gate.execute_cycle(task.task_id)

    assert outcome is ReviewOutcome.APPROVED
    reloaded = _reload(repository, task.task_id)
    assert reloaded.status is TaskStatus.REVIEW
    assert repository.get_task_review_state(task.task_id) is None

    comment = reloaded.comments[-1]
    assert comment.author == "qa-engineer (AI Reviewer)"
    assert comment.body == (
        "**AUTO-REVIEW CYCLE 1** (APPROVE)\n\nSolid work.\n\n*Confidence: 90% | Reviewer: qa-engineer*"
    )

    request = backend.requests[0]
    assert request.allowed_tools == REVIEW_TOOLS
    assert request.timeout_seconds == 180
    assert "Add search box" in request.prompt
    assert "DECISION: APPROVE or REJECT" in request.prompt


@pytest.mark.usefixtures("personas")
def test_fourth_call_escalates_after_three_rejections(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)

    for cycle in range(1, 4):
        backend.queue_review("REJECT", confidence=0.6, feedback=f"Problem {cycle}")
        assert gate.execute_cycle(task.task_id) is ReviewOutcome.REJECTED
        reloaded = _reload(repository, task.task_id)
        assert reloaded.status is TaskStatus.BACKLOG
        assert reloaded.assignee == "developer"

    state = repository.get_task_review_state(task.task_id)
    assert state is not None
    assert state.current_review_cycle == 4
    assert [attempt.decision for attempt in state.review_history] == [ReviewDecision.REJECT] * 3
    assert "Cycle 1: REJECT (60%) - Problem 1" in backend.requests[2].prompt

    outcome = gate.execute_cycle(task.task_id)

    assert outcome is ReviewOutcome.ESCALATED
    assert len(backend.requests) == 3
    reloaded = _reload(repository, task.task_id)
    assert reloaded.status is TaskStatus.REVIEW
    assert repository.get_task_review_state(task.task_id) is None
    escalation = reloaded.comments[-1]
    assert escalation.author == "Auto-Review System"
    assert "Reached maximum review cycles (3)" in escalation.body
    assert "- Cycle 3: REJECT (60%)" in escalation.body
    assert "*Escalation policy: human-review*" in escalation.body


@pytest.mark.usefixtures("personas")
def test_auto_approve_policy_marks_task_done(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    repository.save_auto_review_config(
        AutoReviewConfig(max_review_cycles=1, escalation_policy=EscalationPolicy.AUTO_APPROVE),
    )
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)
    backend.queue_review("REJECT")

    assert gate.execute_cycle(task.task_id) is ReviewOutcome.REJECTED
    assert gate.execute_cycle(task.task_id) is ReviewOutcome.ESCALATED
    assert _reload(repository, task.task_id).status is TaskStatus.DONE


@pytest.mark.usefixtures("personas")
def test_malformed_reviewer_output_rejects(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)
    backend.queue_output("Looks fine to me")

    assert gate.execute_cycle(task.task_id) is ReviewOutcome.REJECTED

    state = repository.get_task_review_state(task.task_id)
    assert state is not None
    attempt = state.review_history[0]
    assert attempt.confidence == pytest.approx(0.1)
    assert "malformed" in attempt.feedback


@pytest.mark.usefixtures("personas")
def test_reviewer_session_failure_rejects_with_zero_confidence(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)
    backend.queue(ExecutionTimeoutError("too slow", timeout_seconds=180))

    assert gate.execute_cycle(task.task_id) is ReviewOutcome.REJECTED

    state = repository.get_task_review_state(task.task_id)
    assert state is not None
    assert state.review_history[0].confidence == 0.0
    assert state.review_history[0].feedback.startswith("Review session failed:")


def test_unknown_reviewer_persona_rejects_without_execution(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)

    assert gate.execute_cycle(task.task_id) is ReviewOutcome.REJECTED
    assert backend.requests == []
    state = repository.get_task_review_state(task.task_id)
    assert state is not None
    assert "reviewer persona 'qa-engineer' not found" in state.review_history[0].feedback


def test_missing_review_state_reports_escalated(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    gate = _gate(repository, backend)
    task = repository.create_task(TaskCreate(title="No loop"))

    assert gate.execute_cycle(task.task_id) is ReviewOutcome.ESCALATED
    assert gate.execute_cycle("missing") is ReviewOutcome.ESCALATED
    assert _reload(repository, task.task_id).status is TaskStatus.BACKLOG


def test_persona_overrides_review_timeout_and_model(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
) -> None:
    repository.upsert_persona(
        Persona("qa-engineer", "QA", prompt="Be strict.", model="opus", timeout_seconds=60),
    )
    gate = _gate(repository, backend)
    task = _task_in_review(repository, gate)
    backend.queue_review("APPROVE")

    gate.execute_cycle(task.task_id)

    request = backend.requests[0]
    assert request.timeout_seconds == 60
    assert request.model == "opus"
    assert request.prompt.startswith("Be strict.")
