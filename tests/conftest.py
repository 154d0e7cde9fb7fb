"""Shared test fixtures."""

from __future__ import annotations

import shutil
import sys
import tempfile
from collections.abc import Iterator
from dataclasses import asdict, replace
from datetime import UTC, datetime
from pathlib import Path

import pytest

from evals_runner.orchestrator.base import EventPublishError
from evals_runner.orchestrator.models import (
    TaskMetricsUpdate,
    TaskMetricsView,
    TaskMetricsWrite,
    TaskUpdate,
    TaskView,
    ToolErrorCreate,
    ToolErrorView,
)
from evals_runner.orchestrator.repository import EvalsRepository

FAKE_EDITOR_COMMAND = f"{sys.executable} -m evals_runner.orchestrator.fake_editor"

_FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class RecordingStore:
    """In-memory task store that applies partial updates like the repository."""

    def __init__(self, *, task_id: int = 1, first_metrics_id: int = 42) -> None:
        self.task = TaskView(
            id=task_id,
            run_id=7,
            language="python",
            exercise="two-fer",
            task_metrics_id=None,
            started_at=None,
            finished_at=None,
            created_at=_FIXED_NOW,
        )
        self.metrics: dict[int, TaskMetricsView] = {}
        self.task_updates: list[TaskUpdate] = []
        self.metrics_updates: list[tuple[int, TaskMetricsUpdate]] = []
        self.tool_errors: list[ToolErrorCreate] = []
        self._next_metrics_id = first_metrics_id

    @property
    def finish_updates(self) -> list[TaskUpdate]:
        return [update for update in self.task_updates if update.finished_at is not None]

    def update_task(self, task_id: int, update: TaskUpdate) -> TaskView:
        assert task_id == self.task.id
        self.task_updates.append(update)
        changes = {name: value for name, value in asdict(update).items() if value is not None}
        self.task = replace(self.task, **changes)
        return self.task

    def create_task_metrics(self, payload: TaskMetricsWrite) -> TaskMetricsView:
        metrics_id = self._next_metrics_id
        self._next_metrics_id += 1
        view = TaskMetricsView(
            id=metrics_id,
            **asdict(payload),
            tool_usage=None,
            created_at=_FIXED_NOW,
            updated_at=_FIXED_NOW,
        )
        self.metrics[metrics_id] = view
        return view

    def update_task_metrics(self, metrics_id: int, update: TaskMetricsUpdate) -> TaskMetricsView:
        self.metrics_updates.append((metrics_id, update))
        changes = {name: value for name, value in asdict(update).items() if value is not None}
        self.metrics[metrics_id] = replace(self.metrics[metrics_id], **changes)
        return self.metrics[metrics_id]

    def create_tool_error(self, payload: ToolErrorCreate) -> ToolErrorView:
        self.tool_errors.append(payload)
        return ToolErrorView(
            id=len(self.tool_errors),
            task_id=payload.task_id,
            tool_name=payload.tool_name,
            error=payload.error,
            created_at=_FIXED_NOW,
        )


class RecordingPublisher:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[dict] = []
        self.fail = fail

    def publish(self, event: dict) -> None:
        if self.fail:
            raise EventPublishError("sink unavailable")
        self.events.append(event)

    @property
    def event_names(self) -> list[str]:
        return [event["eventName"] for event in self.events]


class RecordingLog:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []
        self.closed = False

    def info(self, message: str, *args: object) -> None:
        self.lines.append(("info", message % args if args else message))

    def error(self, message: str, *args: object) -> None:
        self.lines.append(("error", message % args if args else message))

    def close(self) -> None:
        self.closed = True

    def messages(self, level: str | None = None) -> list[str]:
        return [text for line_level, text in self.lines if level is None or line_level == level]


@pytest.fixture()
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def task_log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[EvalsRepository]:
    repo = EvalsRepository(tmp_path / "evals.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def exercises_root(tmp_path: Path) -> Path:
    root = tmp_path / "exercises"
    (root / "prompts").mkdir(parents=True)
    (root / "prompts" / "python.md").write_text(
        "Solve the exercise in the current workspace.\n",
        encoding="utf-8",
    )
    (root / "python" / "two-fer").mkdir(parents=True)
    (root / "python" / "two-fer" / "two_fer.py").write_text("", encoding="utf-8")
    return root


@pytest.fixture()
def socket_dir() -> Iterator[Path]:
    """Short directory for Unix sockets; pytest's tmp_path can exceed the path limit."""

    path = Path(tempfile.mkdtemp(prefix="ev-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture()
def fake_editor_command() -> str:
    return FAKE_EDITOR_COMMAND
