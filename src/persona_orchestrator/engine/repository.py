"""Persistence facade for tasks, personas, pipelines, review and worker state."""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from persona_orchestrator.engine.models import (
    AutoReviewConfig,
    Comment,
    EscalationPolicy,
    Link,
    Persona,
    PipelineDefinition,
    PipelineStage,
    ReportView,
    ReviewAttempt,
    ReviewDecision,
    StageHistoryEntry,
    StageResult,
    TaskCreate,
    TaskPipelineState,
    TaskReviewState,
    TaskStatus,
    TaskUpdate,
    TaskView,
    WorkerState,
)
from persona_orchestrator.storage.alembic_runner import upgrade_head
from persona_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    from_iso,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from persona_orchestrator.storage.sqlmodel_models import (
    SINGLETON_ROW_ID,
    AutoReviewConfigRow,
    PersonaRow,
    PipelineRow,
    ReportRow,
    TaskCommentRow,
    TaskLinkRow,
    TaskPipelineStateRow,
    TaskReviewStateRow,
    TaskRow,
    WorkerStateRow,
)

DEFAULT_WORKER_INTERVAL = "*/5 * * * *"


class OrchestratorRepository:
    """Store facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure singleton rows exist."""

        upgrade_head(self.db_path)
        self._ensure_singletons()

    def _ensure_singletons(self) -> None:
        now = to_db_datetime(utc_now())
        defaults = AutoReviewConfig()
        with Session(self.engine) as session:
            if session.get(WorkerStateRow, SINGLETON_ROW_ID) is None:
                session.add(
                    WorkerStateRow(
                        id=SINGLETON_ROW_ID,
                        interval=DEFAULT_WORKER_INTERVAL,
                        updated_at=now,
                    ),
                )
            if session.get(AutoReviewConfigRow, SINGLETON_ROW_ID) is None:
                session.add(
                    AutoReviewConfigRow(
                        id=SINGLETON_ROW_ID,
                        enabled=defaults.enabled,
                        default_reviewer_persona=defaults.default_reviewer_persona,
                        max_review_cycles=defaults.max_review_cycles,
                        task_type_reviewers_json=dump_json(defaults.task_type_reviewers),
                        escalation_policy=defaults.escalation_policy.value,
                        updated_at=now,
                    ),
                )
            session.commit()

    # -- tasks -----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task (backlog unless told otherwise)."""

        now = to_db_datetime(payload.created_at or utc_now())
        task_id = payload.task_id or uuid4().hex[:12]
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                title=payload.title,
                description=payload.description,
                status=payload.status.value,
                priority=payload.priority,
                assignee=payload.assignee,
                tags_json=dump_json(_normalize_tags(payload.tags)),
                pipeline_id=payload.pipeline_id,
                model=payload.model,
                timeout_seconds=payload.timeout_seconds,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row, comments=[], links=[])

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            comments = session.exec(
                select(TaskCommentRow)
                .where(TaskCommentRow.task_id == task_id)
                .order_by(col(TaskCommentRow.id).asc()),
            ).all()
            links = session.exec(
                select(TaskLinkRow)
                .where(TaskLinkRow.task_id == task_id)
                .order_by(col(TaskLinkRow.id).asc()),
            ).all()
            return _to_task_view(
                row,
                comments=[_to_comment(item) for item in comments],
                links=[_to_link(item) for item in links],
            )

    def get_all_tasks(self) -> list[TaskView]:
        """Return every task with comments and links, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow).order_by(col(TaskRow.created_at).asc(), col(TaskRow.task_id).asc()),
            ).all()
            comments: dict[str, list[Comment]] = defaultdict(list)
            for item in session.exec(
                select(TaskCommentRow).order_by(col(TaskCommentRow.id).asc()),
            ).all():
                comments[item.task_id].append(_to_comment(item))
            links: dict[str, list[Link]] = defaultdict(list)
            for item in session.exec(select(TaskLinkRow).order_by(col(TaskLinkRow.id).asc())).all():
                links[item.task_id].append(_to_link(item))
        return [
            _to_task_view(row, comments=comments[row.task_id], links=links[row.task_id])
            for row in rows
        ]

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        """List recent tasks without comments, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row, comments=[], links=[]) for row in rows]

    def count_tasks(self, statuses: Iterable[TaskStatus]) -> int:
        values = [status.value for status in statuses]
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count()).select_from(TaskRow).where(col(TaskRow.status).in_(values)),
            ).one()
        return int(count)

    def update_task(self, task_id: str, update: TaskUpdate) -> TaskView | None:
        """Apply a partial update; returns ``None`` for unknown tasks."""

        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            if update.title is not None:
                row.title = update.title
            if update.description is not None:
                row.description = update.description
            if update.status is not None:
                row.status = update.status.value
            if update.priority is not None:
                row.priority = update.priority
            if update.assignee is not None:
                row.assignee = update.assignee
            if update.tags is not None:
                row.tags_json = dump_json(_normalize_tags(update.tags))
            if update.pipeline_id is not None:
                row.pipeline_id = update.pipeline_id
            if update.model is not None:
                row.model = update.model
            if update.timeout_seconds is not None:
                row.timeout_seconds = update.timeout_seconds
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
        return self.get_task(task_id)

    def add_task_comment(self, task_id: str, *, author: str, body: str) -> Comment:
        now = utc_now()
        with Session(self.engine) as session:
            self._require_task(session=session, task_id=task_id)
            row = TaskCommentRow(
                comment_id=uuid4().hex[:9],
                task_id=task_id,
                author=author,
                body=body,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_comment(row)

    def add_task_link(
        self,
        task_id: str,
        *,
        url: str,
        title: str,
        link_type: str = "reference",
    ) -> Link:
        with Session(self.engine) as session:
            self._require_task(session=session, task_id=task_id)
            row = TaskLinkRow(
                link_id=uuid4().hex[:9],
                task_id=task_id,
                url=url,
                title=title,
                link_type=link_type,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_link(row)

    def _require_task(self, *, session: Session, task_id: str) -> TaskRow:
        row = session.get(TaskRow, task_id)
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    # -- personas --------------------------------------------------------------

    def upsert_persona(self, persona: Persona) -> Persona:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(PersonaRow, persona.persona_id)
            if row is None:
                row = PersonaRow(
                    persona_id=persona.persona_id,
                    name=persona.name,
                    created_at=now,
                    updated_at=now,
                )
            row.name = persona.name
            row.prompt = persona.prompt
            row.research_oriented = persona.research_oriented
            row.model = persona.model
            row.timeout_seconds = persona.timeout_seconds
            row.updated_at = now
            session.add(row)
            session.commit()
        return persona

    def get_persona(self, persona_id: str) -> Persona | None:
        with Session(self.engine) as session:
            row = session.get(PersonaRow, persona_id)
        return _to_persona(row) if row is not None else None

    def list_personas(self) -> list[Persona]:
        with Session(self.engine) as session:
            rows = session.exec(select(PersonaRow).order_by(col(PersonaRow.persona_id))).all()
        return [_to_persona(row) for row in rows]

    # -- pipelines -------------------------------------------------------------

    def create_pipeline(
        self,
        *,
        name: str,
        stages: list[PipelineStage],
        description: str = "",
        is_active: bool = True,
        pipeline_id: str | None = None,
    ) -> PipelineDefinition:
        if not stages:
            raise ValueError("Pipeline must have at least one stage.")
        stage_ids = [stage.stage_id for stage in stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValueError(f"Duplicate stage ids in pipeline {name!r}: {stage_ids}")

        now = to_db_datetime(utc_now())
        resolved_id = pipeline_id or _slugify(name) or uuid4().hex[:12]
        with Session(self.engine) as session:
            row = PipelineRow(
                pipeline_id=resolved_id,
                name=name,
                description=description,
                is_active=is_active,
                stages_json=dump_json([stage.to_dict() for stage in stages]),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_pipeline(row)

    def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        with Session(self.engine) as session:
            row = session.get(PipelineRow, pipeline_id)
        return _to_pipeline(row) if row is not None else None

    def list_pipelines(self) -> list[PipelineDefinition]:
        with Session(self.engine) as session:
            rows = session.exec(select(PipelineRow).order_by(col(PipelineRow.created_at))).all()
        return [_to_pipeline(row) for row in rows]

    def delete_pipeline(self, pipeline_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(PipelineRow, pipeline_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def get_task_pipeline_state(self, task_id: str) -> TaskPipelineState | None:
        with Session(self.engine) as session:
            row = session.get(TaskPipelineStateRow, task_id)
        return _to_pipeline_state(row) if row is not None else None

    def update_task_pipeline_state(self, state: TaskPipelineState) -> TaskPipelineState:
        """Insert or replace the pipeline state of one task."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskPipelineStateRow, state.task_id)
            if row is None:
                row = TaskPipelineStateRow(
                    task_id=state.task_id,
                    pipeline_id=state.pipeline_id,
                    current_stage_id=state.current_stage_id,
                    created_at=to_db_datetime(state.created_at or now),
                    updated_at=to_db_datetime(now),
                )
            row.pipeline_id = state.pipeline_id
            row.current_stage_id = state.current_stage_id
            row.stage_attempts_json = dump_json(dict(state.stage_attempts))
            row.stage_history_json = dump_json(
                [_stage_history_to_dict(entry) for entry in state.stage_history],
            )
            row.is_stuck = state.is_stuck
            row.stuck_reason = state.stuck_reason
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_pipeline_state(row)

    def delete_task_pipeline_state(self, task_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(TaskPipelineStateRow, task_id)
            if row is None:
                return
            session.delete(row)
            session.commit()

    # -- auto-review -----------------------------------------------------------

    def get_auto_review_config(self) -> AutoReviewConfig:
        with Session(self.engine) as session:
            row = session.get(AutoReviewConfigRow, SINGLETON_ROW_ID)
        if row is None:
            return AutoReviewConfig()
        return AutoReviewConfig(
            enabled=row.enabled,
            default_reviewer_persona=row.default_reviewer_persona,
            max_review_cycles=row.max_review_cycles,
            task_type_reviewers={
                str(tag): str(persona)
                for tag, persona in load_json(row.task_type_reviewers_json, {}).items()
            },
            escalation_policy=EscalationPolicy(row.escalation_policy),
        )

    def save_auto_review_config(self, config: AutoReviewConfig) -> AutoReviewConfig:
        if config.max_review_cycles < 1:
            raise ValueError("max_review_cycles must be >= 1.")
        with Session(self.engine) as session:
            row = session.get(AutoReviewConfigRow, SINGLETON_ROW_ID)
            if row is None:
                row = AutoReviewConfigRow(
                    id=SINGLETON_ROW_ID,
                    default_reviewer_persona=config.default_reviewer_persona,
                    escalation_policy=config.escalation_policy.value,
                    updated_at=to_db_datetime(utc_now()),
                )
            row.enabled = config.enabled
            row.default_reviewer_persona = config.default_reviewer_persona
            row.max_review_cycles = config.max_review_cycles
            row.task_type_reviewers_json = dump_json(dict(config.task_type_reviewers))
            row.escalation_policy = config.escalation_policy.value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
        return config

    def get_task_review_state(self, task_id: str) -> TaskReviewState | None:
        with Session(self.engine) as session:
            row = session.get(TaskReviewStateRow, task_id)
        return _to_review_state(row) if row is not None else None

    def save_task_review_state(self, state: TaskReviewState) -> TaskReviewState:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskReviewStateRow, state.task_id)
            if row is None:
                row = TaskReviewStateRow(
                    task_id=state.task_id,
                    reviewer_id=state.reviewer_id,
                    worker_id=state.worker_id,
                    created_at=to_db_datetime(state.created_at or now),
                    updated_at=to_db_datetime(now),
                )
            row.reviewer_id = state.reviewer_id
            row.worker_id = state.worker_id
            row.current_review_cycle = state.current_review_cycle
            row.review_history_json = dump_json(
                [_review_attempt_to_dict(attempt) for attempt in state.review_history],
            )
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_review_state(row)

    def delete_task_review_state(self, task_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(TaskReviewStateRow, task_id)
            if row is None:
                return
            session.delete(row)
            session.commit()

    # -- worker state ----------------------------------------------------------

    def get_worker_state(self) -> WorkerState:
        with Session(self.engine) as session:
            row = session.get(WorkerStateRow, SINGLETON_ROW_ID)
        if row is None:
            return WorkerState()
        return WorkerState(
            enabled=row.enabled,
            interval=row.interval,
            last_run=to_utc_aware_datetime(row.last_run) if row.last_run is not None else None,
            last_task_id=row.last_task_id,
            is_running=row.is_running,
            workload=row.workload,
        )

    def try_acquire_worker_lock(self) -> bool:
        """Atomically flip `is_running` from false to true; False when another tick holds it."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkerStateRow)
                .where(
                    col(WorkerStateRow.id) == SINGLETON_ROW_ID,
                    col(WorkerStateRow.is_running).is_(False),
                )
                .values(is_running=True, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def save_worker_state(self, state: WorkerState) -> None:
        with Session(self.engine) as session:
            row = session.get(WorkerStateRow, SINGLETON_ROW_ID)
            if row is None:
                row = WorkerStateRow(
                    id=SINGLETON_ROW_ID,
                    interval=state.interval,
                    updated_at=to_db_datetime(utc_now()),
                )
            row.enabled = state.enabled
            row.interval = state.interval
            row.last_run = to_db_datetime(state.last_run) if state.last_run is not None else None
            row.last_task_id = state.last_task_id
            row.is_running = state.is_running
            row.workload = state.workload
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    # -- reports ---------------------------------------------------------------

    def save_report(
        self,
        title: str,
        content: str,
        *,
        summary: str = "",
        tags: tuple[str, ...] = (),
        task_id: str | None = None,
    ) -> ReportView:
        """Persist a report under a date-prefixed slug id."""

        now = utc_now()
        slug = _slugify(title) or "report"
        report_id = f"{now.date().isoformat()}-{slug}-{uuid4().hex[:6]}"
        with Session(self.engine) as session:
            row = ReportRow(
                report_id=report_id,
                title=title,
                content=content,
                summary=summary,
                tags_json=dump_json(_normalize_tags(tags)),
                task_id=task_id,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_report(row)

    def get_report(self, report_id: str) -> ReportView | None:
        with Session(self.engine) as session:
            row = session.get(ReportRow, report_id)
        return _to_report(row) if row is not None else None

    def list_reports(self, *, task_id: str | None = None) -> list[ReportView]:
        with Session(self.engine) as session:
            statement = select(ReportRow).order_by(col(ReportRow.created_at).desc())
            if task_id is not None:
                statement = statement.where(ReportRow.task_id == task_id)
            rows = session.exec(statement).all()
        return [_to_report(row) for row in rows]


def _normalize_tags(tags: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        normalized = tag.strip().lower()
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


def _slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: TaskRow, *, comments: list[Comment], links: list[Link]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=row.priority,
        assignee=row.assignee,
        tags=tuple(load_json(row.tags_json, [])),
        pipeline_id=row.pipeline_id,
        model=row.model,
        timeout_seconds=row.timeout_seconds,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        comments=comments,
        links=links,
    )


def _to_comment(row: TaskCommentRow) -> Comment:
    return Comment(
        comment_id=row.comment_id,
        author=row.author,
        body=row.body,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_link(row: TaskLinkRow) -> Link:
    return Link(link_id=row.link_id, url=row.url, title=row.title, link_type=row.link_type)


def _to_persona(row: PersonaRow) -> Persona:
    return Persona(
        persona_id=row.persona_id,
        name=row.name,
        prompt=row.prompt,
        research_oriented=row.research_oriented,
        model=row.model,
        timeout_seconds=row.timeout_seconds,
    )


def _to_pipeline(row: PipelineRow) -> PipelineDefinition:
    return PipelineDefinition(
        pipeline_id=row.pipeline_id,
        name=row.name,
        description=row.description,
        is_active=row.is_active,
        stages=[PipelineStage.from_dict(item) for item in load_json(row.stages_json, [])],
    )


def _stage_history_to_dict(entry: StageHistoryEntry) -> dict[str, Any]:
    return {
        "stage_id": entry.stage_id,
        "persona": entry.persona,
        "started_at": entry.started_at.isoformat(),
        "completed_at": entry.completed_at.isoformat() if entry.completed_at else None,
        "result": entry.result.value,
        "feedback": entry.feedback,
        "attempt": entry.attempt,
        "outputs": list(entry.outputs),
    }


def _stage_history_from_dict(payload: dict[str, Any]) -> StageHistoryEntry:
    completed_at = payload.get("completed_at")
    return StageHistoryEntry(
        stage_id=str(payload["stage_id"]),
        persona=str(payload["persona"]),
        started_at=from_iso(str(payload["started_at"])),
        completed_at=from_iso(str(completed_at)) if completed_at else None,
        result=StageResult(payload["result"]),
        attempt=int(payload["attempt"]),
        feedback=payload.get("feedback"),
        outputs=list(payload.get("outputs") or []),
    )


def _to_pipeline_state(row: TaskPipelineStateRow) -> TaskPipelineState:
    return TaskPipelineState(
        task_id=row.task_id,
        pipeline_id=row.pipeline_id,
        current_stage_id=row.current_stage_id,
        stage_attempts={
            str(key): int(value) for key, value in load_json(row.stage_attempts_json, {}).items()
        },
        stage_history=[
            _stage_history_from_dict(item) for item in load_json(row.stage_history_json, [])
        ],
        is_stuck=row.is_stuck,
        stuck_reason=row.stuck_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _review_attempt_to_dict(attempt: ReviewAttempt) -> dict[str, Any]:
    return {
        "cycle": attempt.cycle,
        "reviewer_id": attempt.reviewer_id,
        "decision": attempt.decision.value,
        "feedback": attempt.feedback,
        "confidence": attempt.confidence,
        "timestamp": attempt.timestamp.isoformat(),
    }


def _to_review_state(row: TaskReviewStateRow) -> TaskReviewState:
    return TaskReviewState(
        task_id=row.task_id,
        reviewer_id=row.reviewer_id,
        worker_id=row.worker_id,
        current_review_cycle=row.current_review_cycle,
        review_history=[
            ReviewAttempt(
                cycle=int(item["cycle"]),
                reviewer_id=str(item["reviewer_id"]),
                decision=ReviewDecision(item["decision"]),
                feedback=str(item.get("feedback") or ""),
                confidence=float(item.get("confidence") or 0.0),
                timestamp=from_iso(str(item["timestamp"])),
            )
            for item in load_json(row.review_history_json, [])
        ],
        created_at=_optional_datetime(row.created_at),
        updated_at=_optional_datetime(row.updated_at),
    )


def _to_report(row: ReportRow) -> ReportView:
    return ReportView(
        report_id=row.report_id,
        title=row.title,
        content=row.content,
        summary=row.summary,
        tags=tuple(load_json(row.tags_json, [])),
        task_id=row.task_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
