"""SQLModel ORM tables for evaluation runs and task telemetry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class EvalRun(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    model: str = Field(index=True)
    description: str | None = None
    settings_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskMetricsRow(SQLModel, table=True):
    __tablename__ = "task_metrics"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    tokens_context: int = 0
    duration: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    tool_usage_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvalTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "run_id",
            "language",
            "exercise",
            name="uq_tasks_run_language_exercise",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(
        sa_column=Column(
            ForeignKey("runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    language: str = Field(index=True)
    exercise: str
    task_metrics_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("task_metrics.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ToolErrorRow(SQLModel, table=True):
    __tablename__ = "tool_errors"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tool_errors_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tool_name: str = Field(index=True)
    error: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
