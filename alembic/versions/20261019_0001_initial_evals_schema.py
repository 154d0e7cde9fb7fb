"""Create runs, tasks, task metrics and tool error tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("settings_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_runs_model", "runs", ["model"], unique=False)

    op.create_table(
        "task_metrics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("cost", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_in", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_out", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_context", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cache_writes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cache_reads", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tool_usage_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("language", sa.String(), nullable=False),
        sa.Column("exercise", sa.String(), nullable=False),
        sa.Column("task_metrics_id", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["runs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_metrics_id"], ["task_metrics.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "run_id",
            "language",
            "exercise",
            name="uq_tasks_run_language_exercise",
        ),
    )
    op.create_index("ix_tasks_run_id", "tasks", ["run_id"], unique=False)
    op.create_index("ix_tasks_language", "tasks", ["language"], unique=False)
    op.create_index("ix_tasks_task_metrics_id", "tasks", ["task_metrics_id"], unique=False)

    op.create_table(
        "tool_errors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("tool_name", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tool_errors_task_id", "tool_errors", ["task_id"], unique=False)
    op.create_index("ix_tool_errors_tool_name", "tool_errors", ["tool_name"], unique=False)
    op.create_index(
        "idx_tool_errors_task_time",
        "tool_errors",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_tool_errors_task_time", table_name="tool_errors")
    op.drop_index("ix_tool_errors_tool_name", table_name="tool_errors")
    op.drop_index("ix_tool_errors_task_id", table_name="tool_errors")
    op.drop_table("tool_errors")
    op.drop_index("ix_tasks_task_metrics_id", table_name="tasks")
    op.drop_index("ix_tasks_language", table_name="tasks")
    op.drop_index("ix_tasks_run_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_table("task_metrics")
    op.drop_index("ix_runs_model", table_name="runs")
    op.drop_table("runs")
