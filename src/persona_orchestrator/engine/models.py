"""Domain models for task orchestration, pipelines and auto-review."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Board columns a task moves through."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in-progress"
    AUTO_REVIEW = "auto-review"
    REVIEW = "review"
    DONE = "done"


ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.BACKLOG, TaskStatus.IN_PROGRESS, TaskStatus.AUTO_REVIEW},
)


class WorkClass(str, Enum):
    """Execution class chosen by the task classifier."""

    RESEARCH = "research"
    DEVELOPMENT = "development"


class FailureClass(str, Enum):
    """Normalized execution failure classes reported in task comments."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    EMPTY_OUTPUT = "empty_output"
    BACKEND_ERROR = "backend_error"
    BACKEND_TRANSIENT = "backend_transient"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    PERSONA_NOT_FOUND = "persona_not_found"
    UNEXPECTED_ERROR = "unexpected_error"


class EscalationPolicy(str, Enum):
    """What happens once the auto-review budget is exhausted."""

    HUMAN_REVIEW = "human-review"
    AUTO_APPROVE = "auto-approve"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ReviewOutcome(str, Enum):
    """Result of one auto-review cycle call."""

    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class StageResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class Comment:
    """Append-only task comment."""

    comment_id: str
    author: str
    body: str
    created_at: datetime


@dataclass(slots=True)
class Link:
    """Link attached to a task (PR, report, reference)."""

    link_id: str
    url: str
    title: str
    link_type: str = "reference"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str = ""
    task_id: str | None = None
    status: TaskStatus = TaskStatus.BACKLOG
    priority: int = 0
    assignee: str | None = None
    tags: tuple[str, ...] = ()
    pipeline_id: str | None = None
    model: str | None = None
    timeout_seconds: int | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class TaskUpdate:
    """Partial task update; ``None`` fields are left untouched."""

    title: str | None = None
    description: str | None = None
    status: TaskStatus | None = None
    priority: int | None = None
    assignee: str | None = None
    tags: tuple[str, ...] | None = None
    pipeline_id: str | None = None
    model: str | None = None
    timeout_seconds: int | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler, engines and CLI."""

    task_id: str
    title: str
    description: str
    status: TaskStatus
    priority: int
    assignee: str | None
    tags: tuple[str, ...]
    pipeline_id: str | None
    model: str | None
    timeout_seconds: int | None
    created_at: datetime
    updated_at: datetime
    comments: list[Comment] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)


@dataclass(slots=True)
class Persona:
    """Named worker profile assignable to a task."""

    persona_id: str
    name: str
    prompt: str = ""
    research_oriented: bool = False
    model: str | None = None
    timeout_seconds: int | None = None


@dataclass(slots=True)
class PipelineStage:
    """One persona-bound step of a pipeline."""

    stage_id: str
    name: str
    persona: str
    auto_advance: bool = False
    max_retry_attempts: int = 3

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.stage_id,
            "name": self.name,
            "persona": self.persona,
            "auto_advance": self.auto_advance,
            "max_retry_attempts": self.max_retry_attempts,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PipelineStage:
        return cls(
            stage_id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            persona=str(payload["persona"]),
            auto_advance=bool(payload.get("auto_advance", False)),
            max_retry_attempts=int(payload.get("max_retry_attempts", 3)),
        )


@dataclass(slots=True)
class PipelineDefinition:
    """Ordered stage list a task can traverse."""

    pipeline_id: str
    name: str
    stages: list[PipelineStage]
    description: str = ""
    is_active: bool = True

    def stage_index(self, stage_id: str) -> int | None:
        for index, stage in enumerate(self.stages):
            if stage.stage_id == stage_id:
                return index
        return None


@dataclass(slots=True)
class StageHistoryEntry:
    """One completed (or failed) stage attempt."""

    stage_id: str
    persona: str
    started_at: datetime
    completed_at: datetime | None
    result: StageResult
    attempt: int
    feedback: str | None = None
    outputs: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class TaskPipelineState:
    """Per-task pipeline position and history."""

    task_id: str
    pipeline_id: str
    current_stage_id: str
    stage_attempts: dict[str, int] = field(default_factory=dict)
    stage_history: list[StageHistoryEntry] = field(default_factory=list)
    is_stuck: bool = False
    stuck_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


DEFAULT_TASK_TYPE_REVIEWERS: dict[str, str] = {
    "bug": "qa-engineer",
    "security": "security-reviewer",
    "documentation": "tech-writer",
    "frontend": "ui-reviewer",
    "backend": "code-reviewer",
}


@dataclass(slots=True)
class AutoReviewConfig:
    """Process-wide auto-review settings."""

    enabled: bool = True
    default_reviewer_persona: str = "qa-engineer"
    max_review_cycles: int = 3
    task_type_reviewers: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_TASK_TYPE_REVIEWERS),
    )
    escalation_policy: EscalationPolicy = EscalationPolicy.HUMAN_REVIEW


@dataclass(slots=True)
class ReviewAttempt:
    """One recorded reviewer verdict."""

    cycle: int
    reviewer_id: str
    decision: ReviewDecision
    feedback: str
    confidence: float
    timestamp: datetime


@dataclass(slots=True)
class TaskReviewState:
    """Auto-review loop state for one task."""

    task_id: str
    reviewer_id: str
    worker_id: str
    current_review_cycle: int = 1
    review_history: list[ReviewAttempt] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class WorkerState:
    """Singleton scheduler state persisted across restarts."""

    enabled: bool = False
    interval: str = "*/5 * * * *"
    last_run: datetime | None = None
    last_task_id: str | None = None
    is_running: bool = False
    workload: int = 0


@dataclass(slots=True)
class ReportView:
    """Stored research report."""

    report_id: str
    title: str
    content: str
    summary: str
    tags: tuple[str, ...]
    task_id: str | None
    created_at: datetime
