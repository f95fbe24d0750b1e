"""Multi-stage pipeline state machine driven by stage completions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from persona_orchestrator.engine.models import (
    PipelineDefinition,
    PipelineStage,
    StageHistoryEntry,
    StageResult,
    TaskPipelineState,
    TaskStatus,
    TaskUpdate,
    TaskView,
)
from persona_orchestrator.engine.store import PipelineStore, TaskStore
from persona_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

PIPELINE_AUTHOR = "Pipeline Engine"


class PipelineEngineStore(TaskStore, PipelineStore, Protocol):
    """Task and pipeline persistence used by the pipeline engine."""


@dataclass(slots=True)
class PipelineTemplate:
    name: str
    description: str
    stages: tuple[PipelineStage, ...]


PIPELINE_TEMPLATES: tuple[PipelineTemplate, ...] = (
    PipelineTemplate(
        name="Standard Development",
        description="Development, QA review and security review.",
        stages=(
            PipelineStage("dev", "Development", "general-developer", auto_advance=True),
            PipelineStage("qa", "QA Review", "qa-engineer", max_retry_attempts=2),
            PipelineStage("security", "Security Review", "security-reviewer", max_retry_attempts=2),
        ),
    ),
    PipelineTemplate(
        name="Documentation Only",
        description="Single writing stage for documentation tasks.",
        stages=(PipelineStage("writing", "Documentation", "tech-writer", auto_advance=True),),
    ),
    PipelineTemplate(
        name="Bug Fix Pipeline",
        description="Debug and fix, then verify with tests.",
        stages=(
            PipelineStage("debug", "Debug & Fix", "bug-fixer", auto_advance=True),
            PipelineStage("test", "Testing", "qa-engineer", max_retry_attempts=2),
        ),
    ),
)


class PipelineEngine:
    """Advance tasks through ordered persona stages.

    Stage success moves the task to the next stage persona. Auto-advancing stages
    put the task straight back into the backlog; the others stop in ``review``
    until a human resumes them. The final stage always ends in ``review``.
    """

    def __init__(self, store: PipelineEngineStore) -> None:
        self.store = store

    def start(self, task: TaskView) -> TaskPipelineState | None:
        """Create pipeline state positioned at the first stage."""

        if task.pipeline_id is None:
            return None
        existing = self.store.get_task_pipeline_state(task.task_id)
        if existing is not None:
            return existing
        pipeline = self.store.get_pipeline(task.pipeline_id)
        if pipeline is None or not pipeline.stages:
            logger.warning(
                "Task %s references unknown pipeline %s",
                task.task_id,
                task.pipeline_id,
            )
            return None
        first = pipeline.stages[0]
        return self.store.update_task_pipeline_state(
            TaskPipelineState(
                task_id=task.task_id,
                pipeline_id=pipeline.pipeline_id,
                current_stage_id=first.stage_id,
                stage_attempts={first.stage_id: 0},
            ),
        )

    def complete_stage(
        self,
        task: TaskView,
        stage_output: str,
        *,
        started_at: datetime | None = None,
    ) -> TaskStatus:
        """Record a successful run of the task's current stage."""

        state = self.start(task)
        if state is None:
            return self._fall_back_to_review(task, reason=f"pipeline {task.pipeline_id} not found")
        return self.advance(task, state, stage_output, started_at=started_at)

    def advance(
        self,
        task: TaskView,
        state: TaskPipelineState,
        stage_output: str,
        *,
        started_at: datetime | None = None,
    ) -> TaskStatus:
        """Move the task past its current stage and return its new status."""

        pipeline = self.store.get_pipeline(state.pipeline_id)
        index = pipeline.stage_index(state.current_stage_id) if pipeline is not None else None
        if pipeline is None or index is None:
            return self._fall_back_to_review(
                task,
                reason=f"stage {state.current_stage_id} of pipeline {state.pipeline_id} not found",
            )

        stage = pipeline.stages[index]
        now = utc_now()
        attempt = state.stage_attempts.get(stage.stage_id, 0) + 1
        state.stage_attempts[stage.stage_id] = attempt
        state.stage_history.append(
            StageHistoryEntry(
                stage_id=stage.stage_id,
                persona=stage.persona,
                started_at=started_at or now,
                completed_at=now,
                result=StageResult.SUCCESS,
                attempt=attempt,
                feedback=stage_output,
            ),
        )

        if index + 1 >= len(pipeline.stages):
            self.store.delete_task_pipeline_state(task.task_id)
            self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.REVIEW))
            self.store.add_task_comment(
                task.task_id,
                author=PIPELINE_AUTHOR,
                body=f"**PIPELINE COMPLETE** ({pipeline.name})\n\n"
                f"Final stage {stage.name} finished; ready for human review.",
            )
            logger.info("Task %s completed pipeline %s", task.task_id, pipeline.pipeline_id)
            return TaskStatus.REVIEW

        next_stage = pipeline.stages[index + 1]
        state.current_stage_id = next_stage.stage_id
        state.stage_attempts[next_stage.stage_id] = 0
        state.is_stuck = False
        state.stuck_reason = None
        self.store.update_task_pipeline_state(state)

        status = TaskStatus.BACKLOG if stage.auto_advance else TaskStatus.REVIEW
        self.store.update_task(
            task.task_id,
            TaskUpdate(status=status, assignee=next_stage.persona),
        )
        checkpoint = "" if stage.auto_advance else " Waiting for human checkpoint."
        self.store.add_task_comment(
            task.task_id,
            author=PIPELINE_AUTHOR,
            body=f"Stage **{stage.name}** complete. Next: **{next_stage.name}** "
            f"({next_stage.persona}).{checkpoint}",
        )
        logger.info(
            "Task %s advanced %s -> %s (%s)",
            task.task_id,
            stage.stage_id,
            next_stage.stage_id,
            status.value,
        )
        return status

    def record_failure(
        self,
        task: TaskView,
        state: TaskPipelineState,
        error: str,
        *,
        result: StageResult = StageResult.FAILURE,
        started_at: datetime | None = None,
    ) -> TaskPipelineState:
        """Count a failed attempt of the current stage and flag it when stuck."""

        pipeline = self.store.get_pipeline(state.pipeline_id)
        stage = _resolve_stage(pipeline, state.current_stage_id)
        now = utc_now()
        attempt = state.stage_attempts.get(state.current_stage_id, 0) + 1
        state.stage_attempts[state.current_stage_id] = attempt
        state.stage_history.append(
            StageHistoryEntry(
                stage_id=state.current_stage_id,
                persona=stage.persona if stage is not None else (task.assignee or ""),
                started_at=started_at or now,
                completed_at=now,
                result=result,
                attempt=attempt,
                feedback=error,
            ),
        )
        if stage is not None and attempt >= stage.max_retry_attempts and not state.is_stuck:
            state.is_stuck = True
            state.stuck_reason = (
                f"Stage {stage.name} failed {attempt} times (max {stage.max_retry_attempts})"
            )
            self.store.add_task_comment(
                task.task_id,
                author=PIPELINE_AUTHOR,
                body=f"**PIPELINE STUCK**\n\n{state.stuck_reason}. Last error: {error}",
            )
            logger.warning("Task %s is stuck: %s", task.task_id, state.stuck_reason)
        return self.store.update_task_pipeline_state(state)

    def resume(self, task_id: str) -> TaskView:
        """Send a task waiting at a human checkpoint back to the backlog."""

        task = self.store.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        state = self.store.get_task_pipeline_state(task_id)
        if state is None:
            raise ValueError(f"Task {task_id} has no active pipeline position.")
        if task.status != TaskStatus.REVIEW:
            raise ValueError(f"Task {task_id} is {task.status.value}, expected review.")
        stage = _resolve_stage(self.store.get_pipeline(state.pipeline_id), state.current_stage_id)
        if stage is None:
            raise ValueError(
                f"Stage {state.current_stage_id} of pipeline {state.pipeline_id} not found.",
            )

        state.is_stuck = False
        state.stuck_reason = None
        self.store.update_task_pipeline_state(state)
        updated = self.store.update_task(
            task_id,
            TaskUpdate(status=TaskStatus.BACKLOG, assignee=stage.persona),
        )
        if updated is None:
            raise RuntimeError(f"Task not found: {task_id}")
        logger.info("Task %s resumed at stage %s", task_id, stage.stage_id)
        return updated

    def _fall_back_to_review(self, task: TaskView, *, reason: str) -> TaskStatus:
        logger.warning("Abandoning pipeline tracking for task %s: %s", task.task_id, reason)
        self.store.delete_task_pipeline_state(task.task_id)
        self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.REVIEW))
        self.store.add_task_comment(
            task.task_id,
            author=PIPELINE_AUTHOR,
            body=f"Pipeline tracking abandoned ({reason}); moved to manual review.",
        )
        return TaskStatus.REVIEW


def seed_pipeline_templates(store: PipelineStore) -> list[PipelineDefinition]:
    """Create built-in pipelines that do not exist yet; returns the created ones."""

    existing = {pipeline.name for pipeline in store.list_pipelines()}
    created: list[PipelineDefinition] = []
    for template in PIPELINE_TEMPLATES:
        if template.name in existing:
            continue
        created.append(
            store.create_pipeline(
                name=template.name,
                description=template.description,
                stages=[
                    PipelineStage(
                        stage_id=stage.stage_id,
                        name=stage.name,
                        persona=stage.persona,
                        auto_advance=stage.auto_advance,
                        max_retry_attempts=stage.max_retry_attempts,
                    )
                    for stage in template.stages
                ],
            ),
        )
    return created


def _resolve_stage(pipeline: PipelineDefinition | None, stage_id: str) -> PipelineStage | None:
    if pipeline is None:
        return None
    index = pipeline.stage_index(stage_id)
    return pipeline.stages[index] if index is not None else None
