"""Domain models for evaluation runs, tasks and task telemetry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class RunCreate:
    """Input payload for registering an evaluation run."""

    model: str
    description: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunView:
    """Batch execution whose settings are merged into every task configuration."""

    id: int
    model: str
    description: str | None
    settings: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for adding one exercise to a run."""

    run_id: int
    language: str
    exercise: str


@dataclass(slots=True)
class TaskView:
    """One exercise executed by the orchestrator."""

    id: int
    run_id: int
    language: str
    exercise: str
    task_metrics_id: int | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class TaskUpdate:
    """Partial task update; ``None`` fields are left untouched."""

    task_metrics_id: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(slots=True)
class TaskMetricsWrite:
    """Initial metrics record created when the agent session starts."""

    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    tokens_context: int = 0
    duration: int = 0
    cache_writes: int = 0
    cache_reads: int = 0


@dataclass(slots=True)
class TaskMetricsUpdate:
    """Partial metrics update; ``None`` fields are left untouched.

    Counters carry cumulative totals reported by the agent, so applying an
    update replaces the stored values instead of adding to them.
    """

    cost: float | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    tokens_context: int | None = None
    duration: int | None = None
    cache_writes: int | None = None
    cache_reads: int | None = None
    tool_usage: dict[str, Any] | None = None


@dataclass(slots=True)
class TaskMetricsView:
    """Stored token, cost and tool-usage totals of one task."""

    id: int
    cost: float
    tokens_in: int
    tokens_out: int
    tokens_context: int
    duration: int
    cache_writes: int
    cache_reads: int
    tool_usage: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ToolErrorCreate:
    """Tool failure reported by the agent session."""

    task_id: int
    tool_name: str
    error: str


@dataclass(slots=True)
class ToolErrorView:
    """Stored tool failure."""

    id: int
    task_id: int
    tool_name: str
    error: str
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task with its metrics and tool failures."""

    task: TaskView
    metrics: TaskMetricsView | None
    tool_errors: list[ToolErrorView]
