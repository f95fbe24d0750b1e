"""Wiring of the scheduler and its engines around one repository."""

from __future__ import annotations

from dataclasses import dataclass

from persona_orchestrator.config import Settings
from persona_orchestrator.engine.auto_review import AutoReviewGate
from persona_orchestrator.engine.backend import CliAgentBackend, ExecutionBackend
from persona_orchestrator.engine.dispatch import TaskDispatcher
from persona_orchestrator.engine.pipeline import PipelineEngine
from persona_orchestrator.engine.scheduler import Scheduler
from persona_orchestrator.engine.store import OrchestratorStore


@dataclass(slots=True)
class OrchestratorRuntime:
    scheduler: Scheduler
    dispatcher: TaskDispatcher
    pipeline_engine: PipelineEngine
    review_gate: AutoReviewGate


def build_runtime(
    *,
    store: OrchestratorStore,
    settings: Settings,
    backend: ExecutionBackend | None = None,
) -> OrchestratorRuntime:
    """Assemble engines; defaults to the CLI agent backend from settings."""

    execution = settings.execution
    resolved_backend = backend or CliAgentBackend(
        execution.command_template,
        default_model=execution.default_model,
    )
    pipeline_engine = PipelineEngine(store)
    review_gate = AutoReviewGate(
        store,
        resolved_backend,
        review_timeout_seconds=execution.review_timeout_seconds,
        working_dir=execution.working_dir,
        default_model=execution.default_model or None,
    )
    dispatcher = TaskDispatcher(
        store,
        resolved_backend,
        settings=execution,
        pipeline_engine=pipeline_engine,
        review_gate=review_gate,
    )
    return OrchestratorRuntime(
        scheduler=Scheduler(store, dispatcher),
        dispatcher=dispatcher,
        pipeline_engine=pipeline_engine,
        review_gate=review_gate,
    )
