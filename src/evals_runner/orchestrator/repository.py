"""Persistent repository for evaluation runs, tasks and task telemetry."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from evals_runner.orchestrator.models import (
    RunCreate,
    RunView,
    TaskCreate,
    TaskDetails,
    TaskMetricsUpdate,
    TaskMetricsView,
    TaskMetricsWrite,
    TaskUpdate,
    TaskView,
    ToolErrorCreate,
    ToolErrorView,
)
from evals_runner.storage.alembic_runner import upgrade_head
from evals_runner.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from evals_runner.storage.sqlmodel_models import EvalRun, EvalTask, TaskMetricsRow, ToolErrorRow

_METRIC_COUNTERS = (
    "cost",
    "tokens_in",
    "tokens_out",
    "tokens_context",
    "duration",
    "cache_writes",
    "cache_reads",
)


class EvalsRepository:
    """Run/task persistence facade backed by SQLModel + SQLite.

    Every call opens its own session, so one repository can be shared by
    concurrently running task orchestrators.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_run(self, payload: RunCreate) -> RunView:
        """Register an evaluation run."""

        with Session(self.engine) as session:
            row = EvalRun(
                model=payload.model,
                description=payload.description,
                settings_json=json.dumps(payload.settings, sort_keys=True),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def get_run(self, run_id: int) -> RunView | None:
        with Session(self.engine) as session:
            row = session.get(EvalRun, run_id)
            return _to_run_view(row) if row is not None else None

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Add one exercise to a run."""

        with Session(self.engine) as session:
            if session.get(EvalRun, payload.run_id) is None:
                raise LookupError(f"Run not found: {payload.run_id}")
            row = EvalTask(
                run_id=payload.run_id,
                language=payload.language,
                exercise=payload.exercise,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                raise ValueError(
                    f"Task {payload.language}/{payload.exercise} already exists in run {payload.run_id}.",
                ) from error
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(EvalTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, *, run_id: int) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EvalTask)
                .where(EvalTask.run_id == run_id)
                .order_by(col(EvalTask.language).asc(), col(EvalTask.exercise).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def update_task(self, task_id: int, update: TaskUpdate) -> TaskView:
        """Apply a partial task update."""

        with Session(self.engine) as session:
            row = session.get(EvalTask, task_id)
            if row is None:
                raise LookupError(f"Task not found: {task_id}")
            if update.task_metrics_id is not None:
                row.task_metrics_id = update.task_metrics_id
            if update.started_at is not None:
                row.started_at = to_db_datetime(update.started_at)
            if update.finished_at is not None:
                row.finished_at = to_db_datetime(update.finished_at)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def create_task_metrics(self, payload: TaskMetricsWrite) -> TaskMetricsView:
        """Create a metrics record."""

        now = utc_now()
        with Session(self.engine) as session:
            row = TaskMetricsRow(
                cost=payload.cost,
                tokens_in=payload.tokens_in,
                tokens_out=payload.tokens_out,
                tokens_context=payload.tokens_context,
                duration=payload.duration,
                cache_writes=payload.cache_writes,
                cache_reads=payload.cache_reads,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_metrics_view(row)

    def update_task_metrics(self, metrics_id: int, update: TaskMetricsUpdate) -> TaskMetricsView:
        """Replace the provided counters on a metrics record."""

        with Session(self.engine) as session:
            row = session.get(TaskMetricsRow, metrics_id)
            if row is None:
                raise LookupError(f"Task metrics not found: {metrics_id}")
            for name in _METRIC_COUNTERS:
                value = getattr(update, name)
                if value is not None:
                    setattr(row, name, value)
            if update.tool_usage is not None:
                row.tool_usage_json = json.dumps(update.tool_usage, sort_keys=True)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_metrics_view(row)

    def get_task_metrics(self, metrics_id: int) -> TaskMetricsView | None:
        with Session(self.engine) as session:
            row = session.get(TaskMetricsRow, metrics_id)
            return _to_metrics_view(row) if row is not None else None

    def create_tool_error(self, payload: ToolErrorCreate) -> ToolErrorView:
        """Append one tool failure record."""

        with Session(self.engine) as session:
            row = ToolErrorRow(
                task_id=payload.task_id,
                tool_name=payload.tool_name,
                error=payload.error,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_tool_error_view(row)

    def list_tool_errors(self, *, task_id: int) -> list[ToolErrorView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ToolErrorRow)
                .where(ToolErrorRow.task_id == task_id)
                .order_by(col(ToolErrorRow.id).asc()),
            ).all()
            return [_to_tool_error_view(row) for row in rows]

    def get_task_details(self, task_id: int) -> TaskDetails | None:
        """Load a task together with its metrics and tool failures."""

        task = self.get_task(task_id)
        if task is None:
            return None
        metrics = (
            self.get_task_metrics(task.task_metrics_id)
            if task.task_metrics_id is not None
            else None
        )
        return TaskDetails(
            task=task,
            metrics=metrics,
            tool_errors=self.list_tool_errors(task_id=task_id),
        )


def _load_json_object(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise TypeError("Expected JSON object in stored column")
    return payload


def _to_run_view(row: EvalRun) -> RunView:
    if row.id is None:
        raise RuntimeError("Run row has no id.")
    return RunView(
        id=row.id,
        model=row.model,
        description=row.description,
        settings=_load_json_object(row.settings_json) or {},
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: EvalTask) -> TaskView:
    if row.id is None:
        raise RuntimeError("Task row has no id.")
    return TaskView(
        id=row.id,
        run_id=row.run_id,
        language=row.language,
        exercise=row.exercise,
        task_metrics_id=row.task_metrics_id,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_metrics_view(row: TaskMetricsRow) -> TaskMetricsView:
    if row.id is None:
        raise RuntimeError("Task metrics row has no id.")
    return TaskMetricsView(
        id=row.id,
        cost=row.cost,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        tokens_context=row.tokens_context,
        duration=row.duration,
        cache_writes=row.cache_writes,
        cache_reads=row.cache_reads,
        tool_usage=_load_json_object(row.tool_usage_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_tool_error_view(row: ToolErrorRow) -> ToolErrorView:
    if row.id is None:
        raise RuntimeError("Tool error row has no id.")
    return ToolErrorView(
        id=row.id,
        task_id=row.task_id,
        tool_name=row.tool_name,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
    )
