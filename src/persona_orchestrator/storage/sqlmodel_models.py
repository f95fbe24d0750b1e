"""SQLModel ORM tables for orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

SINGLETON_ROW_ID = 1


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "created_at"),)

    task_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(index=True)
    priority: int = Field(default=0, index=True)
    assignee: str | None = Field(default=None, index=True)
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    pipeline_id: str | None = Field(default=None, index=True)
    model: str | None = None
    timeout_seconds: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskCommentRow(SQLModel, table=True):
    __tablename__ = "task_comments"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_comments_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    comment_id: str = Field(index=True, unique=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    author: str
    body: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskLinkRow(SQLModel, table=True):
    __tablename__ = "task_links"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    link_id: str = Field(index=True, unique=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    url: str
    title: str
    link_type: str = Field(default="reference")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PersonaRow(SQLModel, table=True):
    __tablename__ = "personas"  # type: ignore[bad-override]

    persona_id: str = Field(primary_key=True)
    name: str
    prompt: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    research_oriented: bool = False
    model: str | None = None
    timeout_seconds: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineRow(SQLModel, table=True):
    __tablename__ = "pipelines"  # type: ignore[bad-override]

    pipeline_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    is_active: bool = True
    stages_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskPipelineStateRow(SQLModel, table=True):
    __tablename__ = "task_pipeline_states"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    pipeline_id: str = Field(index=True)
    current_stage_id: str
    stage_attempts_json: str | None = Field(default=None, sa_column=Column(Text))
    stage_history_json: str | None = Field(default=None, sa_column=Column(Text))
    is_stuck: bool = False
    stuck_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AutoReviewConfigRow(SQLModel, table=True):
    __tablename__ = "auto_review_config"  # type: ignore[bad-override]

    id: int = Field(default=SINGLETON_ROW_ID, primary_key=True)
    enabled: bool = True
    default_reviewer_persona: str
    max_review_cycles: int = 3
    task_type_reviewers_json: str | None = Field(default=None, sa_column=Column(Text))
    escalation_policy: str
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskReviewStateRow(SQLModel, table=True):
    __tablename__ = "task_review_states"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    reviewer_id: str
    worker_id: str
    current_review_cycle: int = 1
    review_history_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerStateRow(SQLModel, table=True):
    __tablename__ = "worker_state"  # type: ignore[bad-override]

    id: int = Field(default=SINGLETON_ROW_ID, primary_key=True)
    enabled: bool = False
    interval: str
    last_run: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_task_id: str | None = None
    is_running: bool = False
    workload: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReportRow(SQLModel, table=True):
    __tablename__ = "reports"  # type: ignore[bad-override]

    report_id: str = Field(primary_key=True)
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    summary: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
