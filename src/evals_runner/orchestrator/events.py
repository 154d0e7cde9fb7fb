"""Routing of inbound agent events into publish, log and persistence."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from evals_runner.ipc import AgentEventName, Disconnect, InboundMessage, TaskEvent
from evals_runner.orchestrator.base import EventPublisher, EventPublishError, TaskLog, TaskStore
from evals_runner.orchestrator.metrics import MetricsAggregator
from evals_runner.orchestrator.models import TaskUpdate, ToolErrorCreate
from evals_runner.storage.common import utc_now

logger = logging.getLogger(__name__)

BROADCAST_SUPPRESSED = frozenset({AgentEventName.MESSAGE})
LOG_SUPPRESSED = frozenset(
    {AgentEventName.TASK_TOKEN_USAGE_UPDATED, AgentEventName.TASK_ASK_RESPONDED},
)
USAGE_EVENTS = frozenset(
    {AgentEventName.TASK_TOKEN_USAGE_UPDATED, AgentEventName.TASK_COMPLETED},
)
TERMINAL_EVENTS = frozenset({AgentEventName.TASK_ABORTED, AgentEventName.TASK_COMPLETED})


@dataclass(slots=True)
class SessionState:
    """Mutable state of one orchestrator invocation.

    Only the event router and the controller that owns it touch this, and both
    run on the controller thread.
    """

    task_started_at: float
    task_finished_at: datetime | None = None
    task_metrics_id: int | None = None
    remote_task_id: str | None = None
    client_disconnected: bool = False

    @property
    def is_settled(self) -> bool:
        return self.task_finished_at is not None or self.client_disconnected


def _payload_item(payload: list[Any], index: int) -> Any:
    return payload[index] if len(payload) > index else None


def is_partial_message(event: TaskEvent) -> bool:
    first = _payload_item(event.payload, 0)
    if not isinstance(first, dict):
        return False
    message = first.get("message")
    return isinstance(message, dict) and message.get("partial") is True


def should_broadcast(event: TaskEvent) -> bool:
    return event.known_name not in BROADCAST_SUPPRESSED


def should_log(event: TaskEvent) -> bool:
    name = event.known_name
    if name in LOG_SUPPRESSED:
        return False
    return not (name is AgentEventName.MESSAGE and is_partial_message(event))


class EventRouter:
    """Sole consumer of the inbound message channel for one task.

    Each message is fully handled, publish and log included, before the next
    one is taken.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_id: int,
        state: SessionState,
        store: TaskStore,
        publisher: EventPublisher,
        log: TaskLog,
        socket_path: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.task_id = task_id
        self.state = state
        self._store = store
        self._publisher = publisher
        self._log = log
        self._socket_path = socket_path
        self._clock = clock
        self._metrics = MetricsAggregator(store, task_id=task_id)

    def dispatch(self, message: InboundMessage) -> None:
        if isinstance(message, Disconnect):
            self._on_disconnect()
        elif isinstance(message, TaskEvent):
            self._on_task_event(message)

    def mark_finished(self) -> bool:
        """Persist the finish timestamp unless a terminal path already did."""

        if self.state.task_finished_at is not None:
            return False
        finished_at = utc_now()
        self.state.task_finished_at = finished_at
        self._store.update_task(self.task_id, TaskUpdate(finished_at=finished_at))
        return True

    def _on_disconnect(self) -> None:
        self._log.info("disconnected from IPC socket -> %s", self._socket_path)
        self.state.client_disconnected = True

    def _on_task_event(self, event: TaskEvent) -> None:
        if should_broadcast(event):
            self._publish(event)
        if should_log(event):
            self._log.info("%s -> %s", event.event_name, json.dumps(event.payload, default=str))

        name = event.known_name
        if name is None:
            return

        if name is AgentEventName.TASK_STARTED:
            self._on_session_started(event)

        if name is AgentEventName.TASK_TOOL_FAILED:
            self._on_tool_failed(event)

        metrics_id = self.state.task_metrics_id
        if name in USAGE_EVENTS and metrics_id is not None:
            duration_ms = int((self._clock() - self.state.task_started_at) * 1000)
            self._metrics.record_usage(
                metrics_id,
                _payload_item(event.payload, 1),
                duration_ms=duration_ms,
            )

        if name is AgentEventName.TASK_COMPLETED and metrics_id is not None:
            self._metrics.record_tool_usage(metrics_id, _payload_item(event.payload, 2))

        if name in TERMINAL_EVENTS:
            self.mark_finished()

    def _on_session_started(self, event: TaskEvent) -> None:
        remote_task_id = _payload_item(event.payload, 0)
        if self.state.task_metrics_id is not None:
            # Subtasks report their own start; the first session keeps the metrics row.
            logger.info(
                "Task %s: session %s already started; ignoring start of %s",
                self.task_id,
                self.state.remote_task_id,
                remote_task_id,
            )
            return
        metrics = self._metrics.start_session()
        self.state.task_started_at = self._clock()
        self.state.task_metrics_id = metrics.id
        self.state.remote_task_id = str(remote_task_id) if remote_task_id is not None else None

    def _on_tool_failed(self, event: TaskEvent) -> None:
        tool_name = _payload_item(event.payload, 1)
        error = _payload_item(event.payload, 2)
        self._store.create_tool_error(
            ToolErrorCreate(
                task_id=self.task_id,
                tool_name=str(tool_name or ""),
                error=str(error or ""),
            ),
        )

    def _publish(self, event: TaskEvent) -> None:
        try:
            self._publisher.publish({**event.to_wire(), "taskId": self.task_id})
        except EventPublishError as error:
            logger.warning("Task %s: %s event not published: %s", self.task_id, event.event_name, error)
