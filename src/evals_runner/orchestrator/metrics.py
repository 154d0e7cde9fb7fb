"""Task metrics accumulation from agent-reported cumulative totals."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from evals_runner.orchestrator.base import TaskStore
from evals_runner.orchestrator.models import (
    TaskMetricsUpdate,
    TaskMetricsView,
    TaskMetricsWrite,
    TaskUpdate,
)
from evals_runner.storage.common import utc_now

logger = logging.getLogger(__name__)


def usage_update_from_totals(totals: Mapping[str, Any], *, duration_ms: int) -> TaskMetricsUpdate:
    """Map an agent token-usage payload onto a metrics replacement.

    Counters are cumulative for the whole session, so they overwrite the
    stored values. Cache counters are optional and default to zero.
    """

    return TaskMetricsUpdate(
        cost=float(totals.get("totalCost") or 0.0),
        tokens_in=int(totals.get("totalTokensIn") or 0),
        tokens_out=int(totals.get("totalTokensOut") or 0),
        tokens_context=int(totals.get("contextTokens") or 0),
        duration=duration_ms,
        cache_writes=int(totals.get("totalCacheWrites") or 0),
        cache_reads=int(totals.get("totalCacheReads") or 0),
    )


class MetricsAggregator:
    """Writes the metrics row of one task through the store."""

    def __init__(self, store: TaskStore, *, task_id: int) -> None:
        self._store = store
        self._task_id = task_id

    def start_session(self) -> TaskMetricsView:
        """Create zeroed metrics and link them to the task with a start time."""

        metrics = self._store.create_task_metrics(TaskMetricsWrite())
        self._store.update_task(
            self._task_id,
            TaskUpdate(task_metrics_id=metrics.id, started_at=utc_now()),
        )
        logger.debug("Task %s linked to metrics %s", self._task_id, metrics.id)
        return metrics

    def record_usage(self, metrics_id: int, totals: Any, *, duration_ms: int) -> TaskMetricsView | None:
        if not isinstance(totals, Mapping):
            logger.warning(
                "Task %s: ignoring usage payload of type %s",
                self._task_id,
                type(totals).__name__,
            )
            return None
        return self._store.update_task_metrics(
            metrics_id,
            usage_update_from_totals(totals, duration_ms=duration_ms),
        )

    def record_tool_usage(self, metrics_id: int, tool_usage: Any) -> TaskMetricsView | None:
        if not isinstance(tool_usage, Mapping):
            logger.warning(
                "Task %s: ignoring tool usage of type %s",
                self._task_id,
                type(tool_usage).__name__,
            )
            return None
        return self._store.update_task_metrics(
            metrics_id,
            TaskMetricsUpdate(tool_usage=dict(tool_usage)),
        )
