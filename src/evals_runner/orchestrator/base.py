"""Collaborator interfaces consumed by the task orchestrator."""

from __future__ import annotations

from typing import Any, Protocol

from evals_runner.orchestrator.models import (
    TaskMetricsUpdate,
    TaskMetricsView,
    TaskMetricsWrite,
    TaskUpdate,
    TaskView,
    ToolErrorCreate,
    ToolErrorView,
)


class TaskStore(Protocol):
    """Persistence operations the orchestrator performs while a task runs."""

    def update_task(self, task_id: int, update: TaskUpdate) -> TaskView:
        """Apply a partial task update."""

    def create_task_metrics(self, payload: TaskMetricsWrite) -> TaskMetricsView:
        """Create a metrics record and return it with its id."""

    def update_task_metrics(self, metrics_id: int, update: TaskMetricsUpdate) -> TaskMetricsView:
        """Apply a partial metrics update."""

    def create_tool_error(self, payload: ToolErrorCreate) -> ToolErrorView:
        """Append one tool failure record."""


class EventPublishError(RuntimeError):
    """A task event could not be delivered to the downstream sink."""


class EventPublisher(Protocol):
    """Downstream sink for task events."""

    def publish(self, event: dict[str, Any]) -> None:
        """Deliver one ``{eventName, payload, taskId}`` event."""


class TaskLog(Protocol):
    """Per-task log writer."""

    def info(self, message: str, *args: object) -> None:
        """Write an informational line."""

    def error(self, message: str, *args: object) -> None:
        """Write an error line."""

    def close(self) -> None:
        """Flush and release the underlying log file."""
