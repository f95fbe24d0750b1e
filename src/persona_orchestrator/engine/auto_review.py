"""Bounded AI review loop that sits between task completion and human review."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from persona_orchestrator.engine.backend import (
    BackendRunError,
    ExecutionBackend,
    ExecutionRequest,
)
from persona_orchestrator.engine.models import (
    AutoReviewConfig,
    EscalationPolicy,
    Persona,
    ReviewAttempt,
    ReviewDecision,
    ReviewOutcome,
    TaskReviewState,
    TaskStatus,
    TaskUpdate,
    TaskView,
)
from persona_orchestrator.engine.review_parser import (
    LineProtocolReviewParser,
    ParsedReview,
    ReviewResponseParser,
)
from persona_orchestrator.engine.store import PersonaStore, ReviewStore, TaskStore
from persona_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

REVIEW_TOOLS: tuple[str, ...] = ("Read", "Glob", "Grep")
ESCALATION_AUTHOR = "Auto-Review System"
_RECENT_COMMENTS = 5


class AutoReviewStore(TaskStore, PersonaStore, ReviewStore, Protocol):
    """Persistence used by the auto-review gate."""


class AutoReviewGate:
    """Run reviewer personas against finished work, at most ``max_review_cycles`` times."""

    def __init__(  # noqa: PLR0913
        self,
        store: AutoReviewStore,
        backend: ExecutionBackend,
        *,
        parser: ReviewResponseParser | None = None,
        review_timeout_seconds: int = 180,
        working_dir: Path | None = None,
        default_model: str | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.parser = parser or LineProtocolReviewParser()
        self.review_timeout_seconds = review_timeout_seconds
        self.working_dir = working_dir
        self.default_model = default_model

    def is_enabled(self) -> bool:
        return self.store.get_auto_review_config().enabled

    def initiate(self, task: TaskView, worker_persona_id: str) -> TaskReviewState:
        """Open a review loop for a task and move it to ``auto-review``."""

        config = self.store.get_auto_review_config()
        reviewer_id = select_reviewer(task, config)
        state = self.store.save_task_review_state(
            TaskReviewState(
                task_id=task.task_id,
                reviewer_id=reviewer_id,
                worker_id=worker_persona_id,
            ),
        )
        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.AUTO_REVIEW))
        logger.info(
            "Auto-review initiated for task %s (reviewer=%s, worker=%s)",
            task.task_id,
            reviewer_id,
            worker_persona_id,
        )
        return state

    def resume(self, task: TaskView) -> TaskReviewState | None:
        """Put a reworked task with an open review loop back into ``auto-review``."""

        state = self.store.get_task_review_state(task.task_id)
        if state is None:
            return None
        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.AUTO_REVIEW))
        return state

    def execute_cycle(self, task_id: str) -> ReviewOutcome:
        """Run one review cycle and apply its verdict to the task."""

        config = self.store.get_auto_review_config()
        task = self.store.get_task(task_id)
        state = self.store.get_task_review_state(task_id)
        if task is None or state is None:
            logger.warning(
                "Auto-review cycle for task %s skipped: %s missing",
                task_id,
                "task" if task is None else "review state",
            )
            return ReviewOutcome.ESCALATED

        if state.current_review_cycle > config.max_review_cycles:
            return self.escalate(task, state, config)

        verdict = self._run_reviewer(task, state, config)
        state.review_history.append(
            ReviewAttempt(
                cycle=state.current_review_cycle,
                reviewer_id=state.reviewer_id,
                decision=verdict.decision,
                feedback=verdict.feedback,
                confidence=verdict.confidence,
                timestamp=utc_now(),
            ),
        )
        cycle = state.current_review_cycle
        state.current_review_cycle += 1
        self.store.save_task_review_state(state)
        self.store.add_task_comment(
            task_id,
            author=f"{state.reviewer_id} (AI Reviewer)",
            body=format_cycle_comment(
                cycle=cycle,
                decision=verdict.decision,
                feedback=verdict.feedback,
                confidence=verdict.confidence,
                reviewer_id=state.reviewer_id,
            ),
        )

        if verdict.decision is ReviewDecision.APPROVE:
            self.store.update_task(task_id, TaskUpdate(status=TaskStatus.REVIEW))
            self.store.delete_task_review_state(task_id)
            logger.info("Task %s approved by %s in cycle %d", task_id, state.reviewer_id, cycle)
            return ReviewOutcome.APPROVED

        self.store.update_task(
            task_id,
            TaskUpdate(status=TaskStatus.BACKLOG, assignee=state.worker_id),
        )
        logger.info("Task %s rejected by %s in cycle %d", task_id, state.reviewer_id, cycle)
        return ReviewOutcome.REJECTED

    def escalate(
        self,
        task: TaskView,
        state: TaskReviewState,
        config: AutoReviewConfig,
    ) -> ReviewOutcome:
        """End the review loop according to the escalation policy."""

        self.store.add_task_comment(
            task.task_id,
            author=ESCALATION_AUTHOR,
            body=format_escalation_comment(state, config),
        )
        status = (
            TaskStatus.DONE
            if config.escalation_policy is EscalationPolicy.AUTO_APPROVE
            else TaskStatus.REVIEW
        )
        self.store.update_task(task.task_id, TaskUpdate(status=status))
        self.store.delete_task_review_state(task.task_id)
        logger.warning(
            "Task %s escalated after %d review cycles (policy=%s)",
            task.task_id,
            len(state.review_history),
            config.escalation_policy.value,
        )
        return ReviewOutcome.ESCALATED

    def _run_reviewer(
        self,
        task: TaskView,
        state: TaskReviewState,
        config: AutoReviewConfig,
    ) -> ParsedReview:
        persona = self.store.get_persona(state.reviewer_id)
        if persona is None:
            return _session_failed(f"reviewer persona {state.reviewer_id!r} not found")

        request = ExecutionRequest(
            prompt=build_review_prompt(task, state, config, persona),
            allowed_tools=REVIEW_TOOLS,
            timeout_seconds=persona.timeout_seconds or self.review_timeout_seconds,
            working_dir=self.working_dir,
            model=persona.model or self.default_model,
        )
        try:
            result = self.backend.execute(request)
        except BackendRunError as error:
            logger.warning("Review session for task %s failed: %s", task.task_id, error)
            return _session_failed(str(error))
        if not result.succeeded:
            detail = result.stderr.strip() or "no output"
            return _session_failed(f"exit code {result.exit_code}: {detail}")
        return self.parser.parse(result.stdout)


def select_reviewer(task: TaskView, config: AutoReviewConfig) -> str:
    """First task tag with a mapped reviewer wins; otherwise the default reviewer."""

    for tag in task.tags:
        reviewer = config.task_type_reviewers.get(tag.lower())
        if reviewer:
            return reviewer
    return config.default_reviewer_persona


def build_review_prompt(
    task: TaskView,
    state: TaskReviewState,
    config: AutoReviewConfig,
    persona: Persona,
) -> str:
    sections = []
    if persona.prompt.strip():
        sections.append(persona.prompt.strip())
    sections.append(
        "## Auto-Review Task\n"
        f"You are reviewing work completed by {state.worker_id}. "
        f"This is review cycle {state.current_review_cycle} of {config.max_review_cycles}.",
    )
    sections.append(
        "## Task Details\n"
        f"**Title:** {task.title}\n"
        f"**Description:** {task.description or 'No description'}\n"
        f"**Tags:** {', '.join(task.tags) or 'none'}",
    )
    if state.review_history:
        lines = [
            f"- Cycle {attempt.cycle}: {attempt.decision.value.upper()} "
            f"({round(attempt.confidence * 100)}%) - {attempt.feedback}"
            for attempt in state.review_history
        ]
        sections.append("## Previous Review Cycles\n" + "\n".join(lines))
    recent = task.comments[-_RECENT_COMMENTS:]
    if recent:
        lines = [f"- {comment.author}: {comment.body}" for comment in recent]
        sections.append("## Recent Comments\n" + "\n".join(lines))
    sections.append(
        "## Review Criteria\n"
        "1. Completeness: does the work address every requirement?\n"
        "2. Quality: is it correct and maintainable?\n"
        "3. Testing: are changes verified?\n"
        "4. Previous feedback: were earlier issues resolved?",
    )
    sections.append(
        "## Response Format\n"
        "Respond with exactly these lines:\n"
        "DECISION: APPROVE or REJECT\n"
        "CONFIDENCE: a number between 0.0 and 1.0\n"
        "FEEDBACK: specific, actionable feedback",
    )
    return "\n\n".join(sections)


def format_cycle_comment(
    *,
    cycle: int,
    decision: ReviewDecision,
    feedback: str,
    confidence: float,
    reviewer_id: str,
) -> str:
    return (
        f"**AUTO-REVIEW CYCLE {cycle}** ({decision.value.upper()})\n\n"
        f"{feedback}\n\n"
        f"*Confidence: {round(confidence * 100)}% | Reviewer: {reviewer_id}*"
    )


def format_escalation_comment(state: TaskReviewState, config: AutoReviewConfig) -> str:
    summary = "\n".join(
        f"- Cycle {attempt.cycle}: {attempt.decision.value.upper()} "
        f"({round(attempt.confidence * 100)}%)"
        for attempt in state.review_history
    )
    return (
        "**AUTO-REVIEW ESCALATION**\n\n"
        f"Reached maximum review cycles ({config.max_review_cycles}) without approval.\n\n"
        f"**Review Summary:**\n{summary or '- no completed cycles'}\n\n"
        f"*Escalation policy: {config.escalation_policy.value}*"
    )


def _session_failed(reason: str) -> ParsedReview:
    return ParsedReview(
        decision=ReviewDecision.REJECT,
        confidence=0.0,
        feedback=f"Review session failed: {reason}",
    )
