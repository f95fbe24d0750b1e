"""Initial orchestration schema: tasks, personas, pipelines, review and worker state."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assignee", sa.String(), nullable=True),
        sa.Column("tags_json", sa.Text(), nullable=True),
        sa.Column("pipeline_id", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_priority", "tasks", ["priority"])
    op.create_index("ix_tasks_assignee", "tasks", ["assignee"])
    op.create_index("ix_tasks_pipeline_id", "tasks", ["pipeline_id"])
    op.create_index("idx_tasks_queue", "tasks", ["status", "priority", "created_at"])

    op.create_table(
        "task_comments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("author", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_comments_comment_id", "task_comments", ["comment_id"], unique=True)
    op.create_index("ix_task_comments_task_id", "task_comments", ["task_id"])
    op.create_index("idx_task_comments_task_time", "task_comments", ["task_id", "created_at"])

    op.create_table(
        "task_links",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("link_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("link_type", sa.String(), nullable=False, server_default="reference"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_links_link_id", "task_links", ["link_id"], unique=True)
    op.create_index("ix_task_links_task_id", "task_links", ["task_id"])

    op.create_table(
        "personas",
        sa.Column("persona_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("research_oriented", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("persona_id"),
    )

    op.create_table(
        "pipelines",
        sa.Column("pipeline_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stages_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("pipeline_id"),
    )
    op.create_index("ix_pipelines_name", "pipelines", ["name"])

    op.create_table(
        "task_pipeline_states",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("pipeline_id", sa.String(), nullable=False),
        sa.Column("current_stage_id", sa.String(), nullable=False),
        sa.Column("stage_attempts_json", sa.Text(), nullable=True),
        sa.Column("stage_history_json", sa.Text(), nullable=True),
        sa.Column("is_stuck", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stuck_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "ix_task_pipeline_states_pipeline_id",
        "task_pipeline_states",
        ["pipeline_id"],
    )

    op.create_table(
        "auto_review_config",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("default_reviewer_persona", sa.String(), nullable=False),
        sa.Column("max_review_cycles", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("task_type_reviewers_json", sa.Text(), nullable=True),
        sa.Column("escalation_policy", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "task_review_states",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("reviewer_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("current_review_cycle", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("review_history_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )

    op.create_table(
        "worker_state",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("interval", sa.String(), nullable=False),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_task_id", sa.String(), nullable=True),
        sa.Column("is_running", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("workload", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "reports",
        sa.Column("report_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("tags_json", sa.Text(), nullable=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("report_id"),
    )
    op.create_index("ix_reports_task_id", "reports", ["task_id"])


def downgrade() -> None:
    op.drop_index("ix_reports_task_id", table_name="reports")
    op.drop_table("reports")
    op.drop_table("worker_state")
    op.drop_table("task_review_states")
    op.drop_table("auto_review_config")
    op.drop_index("ix_task_pipeline_states_pipeline_id", table_name="task_pipeline_states")
    op.drop_table("task_pipeline_states")
    op.drop_index("ix_pipelines_name", table_name="pipelines")
    op.drop_table("pipelines")
    op.drop_table("personas")
    op.drop_index("ix_task_links_task_id", table_name="task_links")
    op.drop_index("ix_task_links_link_id", table_name="task_links")
    op.drop_table("task_links")
    op.drop_index("idx_task_comments_task_time", table_name="task_comments")
    op.drop_index("ix_task_comments_task_id", table_name="task_comments")
    op.drop_index("ix_task_comments_comment_id", table_name="task_comments")
    op.drop_table("task_comments")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_index("ix_tasks_pipeline_id", table_name="tasks")
    op.drop_index("ix_tasks_assignee", table_name="tasks")
    op.drop_index("ix_tasks_priority", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_table("tasks")
