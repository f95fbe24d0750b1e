"""Store protocols the engines depend on.

``OrchestratorRepository`` implements all of them; tests may substitute any
object with the same methods.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from persona_orchestrator.engine.models import (
    AutoReviewConfig,
    Comment,
    Link,
    Persona,
    PipelineDefinition,
    PipelineStage,
    ReportView,
    TaskCreate,
    TaskPipelineState,
    TaskReviewState,
    TaskStatus,
    TaskUpdate,
    TaskView,
    WorkerState,
)


class TaskStore(Protocol):
    def get_all_tasks(self) -> list[TaskView]: ...

    def get_task(self, task_id: str) -> TaskView | None: ...

    def create_task(self, payload: TaskCreate) -> TaskView: ...

    def update_task(self, task_id: str, update: TaskUpdate) -> TaskView | None: ...

    def count_tasks(self, statuses: Iterable[TaskStatus]) -> int: ...

    def add_task_comment(self, task_id: str, *, author: str, body: str) -> Comment: ...

    def add_task_link(
        self,
        task_id: str,
        *,
        url: str,
        title: str,
        link_type: str = "reference",
    ) -> Link: ...


class PersonaStore(Protocol):
    def get_persona(self, persona_id: str) -> Persona | None: ...

    def upsert_persona(self, persona: Persona) -> Persona: ...

    def list_personas(self) -> list[Persona]: ...


class PipelineStore(Protocol):
    def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None: ...

    def create_pipeline(
        self,
        *,
        name: str,
        stages: list[PipelineStage],
        description: str = "",
        is_active: bool = True,
        pipeline_id: str | None = None,
    ) -> PipelineDefinition: ...

    def list_pipelines(self) -> list[PipelineDefinition]: ...

    def get_task_pipeline_state(self, task_id: str) -> TaskPipelineState | None: ...

    def update_task_pipeline_state(self, state: TaskPipelineState) -> TaskPipelineState: ...

    def delete_task_pipeline_state(self, task_id: str) -> None: ...


class ReviewStore(Protocol):
    def get_auto_review_config(self) -> AutoReviewConfig: ...

    def save_auto_review_config(self, config: AutoReviewConfig) -> AutoReviewConfig: ...

    def get_task_review_state(self, task_id: str) -> TaskReviewState | None: ...

    def save_task_review_state(self, state: TaskReviewState) -> TaskReviewState: ...

    def delete_task_review_state(self, task_id: str) -> None: ...


class WorkerStateStore(Protocol):
    def get_worker_state(self) -> WorkerState: ...

    def try_acquire_worker_lock(self) -> bool: ...

    def save_worker_state(self, state: WorkerState) -> None: ...


class ReportStore(Protocol):
    def save_report(
        self,
        title: str,
        content: str,
        *,
        summary: str = "",
        tags: tuple[str, ...] = (),
        task_id: str | None = None,
    ) -> ReportView: ...


class OrchestratorStore(
    TaskStore,
    PersonaStore,
    PipelineStore,
    ReviewStore,
    WorkerStateStore,
    ReportStore,
    Protocol,
):
    """Everything the scheduler and its engines persist."""
