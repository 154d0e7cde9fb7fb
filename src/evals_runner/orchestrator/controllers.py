"""Controllers for evaluation runner CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from evals_runner.config import Settings
from evals_runner.ipc import IpcConnectionError
from evals_runner.orchestrator.base import EventPublisher
from evals_runner.orchestrator.exercises import ExerciseCatalog
from evals_runner.orchestrator.launcher import ProcessLaunchError
from evals_runner.orchestrator.lifecycle import TaskOrchestrator
from evals_runner.orchestrator.models import RunCreate, TaskCreate, TaskMetricsView
from evals_runner.orchestrator.publisher import JsonlEventPublisher, RedisEventPublisher
from evals_runner.orchestrator.repository import EvalsRepository
from evals_runner.orchestrator.task_logger import TaskLogger, task_log_path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCreateCommand:
    """CLI input for run registration."""

    db_path: Path | None
    model: str
    description: str | None
    settings: tuple[str, ...]


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for adding an exercise to a run."""

    db_path: Path | None
    run_id: int
    language: str
    exercise: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    run_id: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for one orchestrator invocation."""

    db_path: Path | None
    task_id: int
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TaskRunReport:
    """Task run outcome to render in CLI."""

    lines: list[str]
    success: bool


class EvalsCliController:
    """Coordinates run registration, task inspection and task execution."""

    def create_run(self, command: RunCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            run_settings = parse_setting_pairs(command.settings)
        except ValueError as error:
            return [str(error)]
        with _repository(settings) as repository:
            run = repository.create_run(
                RunCreate(
                    model=command.model,
                    description=command.description,
                    settings={"openRouterModelId": command.model, **run_settings},
                ),
            )
        return [
            f"Run created: run_id={run.id} model={run.model}",
            f"Settings: {json.dumps(run.settings, sort_keys=True)}",
        ]

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        catalog = ExerciseCatalog(settings.exercises_root)
        if command.exercise not in catalog.list_exercises(command.language):
            return [
                f"Exercise not found: {command.language}/{command.exercise} "
                f"under {settings.exercises_root}",
            ]
        with _repository(settings) as repository:
            try:
                task = repository.create_task(
                    TaskCreate(
                        run_id=command.run_id,
                        language=command.language,
                        exercise=command.exercise,
                    ),
                )
            except (LookupError, ValueError) as error:
                return [str(error)]
        return [f"Task added: task_id={task.id} run_id={task.run_id} {task.language}/{task.exercise}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = repository.get_run(command.run_id)
            if run is None:
                return [f"Run not found: {command.run_id}"]
            tasks = repository.list_tasks(run_id=command.run_id)
        if not tasks:
            return [f"No tasks in run {run.id}."]
        lines = [f"Run {run.id} ({run.model}): {len(tasks)} tasks"]
        for task in tasks:
            lines.append(
                f"{task.id} {task.language}/{task.exercise} "
                f"started={_format_time(task.started_at)} finished={_format_time(task.finished_at)}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.id}",
            f"Run: {task.run_id}",
            f"Exercise: {task.language}/{task.exercise}",
            f"Started: {_format_time(task.started_at)}",
            f"Finished: {_format_time(task.finished_at)}",
        ]
        lines.extend(_metrics_lines(details.metrics))
        lines.append(f"Tool errors: {len(details.tool_errors)}")
        for tool_error in details.tool_errors:
            lines.append(
                f"  {tool_error.created_at.isoformat()} {tool_error.tool_name}: {tool_error.error}",
            )
        return lines

    def run_task(self, command: TaskRunCommand) -> TaskRunReport:
        settings = Settings.from_env(db_path=command.db_path)
        if command.timeout_seconds is not None:
            settings.orchestrator.task_timeout_seconds = command.timeout_seconds
        try:
            settings.validate_for_task()
        except ValueError as error:
            return TaskRunReport(lines=[str(error)], success=False)

        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            if task is None:
                return TaskRunReport(lines=[f"Task not found: {command.task_id}"], success=False)
            run = repository.get_run(task.run_id)
            if run is None:
                return TaskRunReport(lines=[f"Run not found: {task.run_id}"], success=False)

            run_logs = settings.logs_root / str(run.id)
            log = TaskLogger(
                task_log_path(
                    settings.logs_root,
                    run_id=run.id,
                    language=task.language,
                    exercise=task.exercise,
                ),
                run_id=run.id,
                task_id=task.id,
                tag=f"{task.language}/{task.exercise}",
            )
            with _publisher(settings, run_id=run.id) as publisher:
                orchestrator = TaskOrchestrator(
                    run=run,
                    task=task,
                    store=repository,
                    publisher=publisher,
                    log=log,
                    catalog=ExerciseCatalog(settings.exercises_root),
                    settings=settings.orchestrator,
                    editor_output_path=run_logs / f"{task.language}-{task.exercise}.editor.log",
                )
                try:
                    result = orchestrator.run()
                except (ProcessLaunchError, IpcConnectionError, LookupError) as error:
                    logger.error("Task %s failed during setup: %s", task.id, error)
                    return TaskRunReport(
                        lines=[f"Task {task.id} failed: {error}", f"Log: {log.path}"],
                        success=False,
                    )
            details = repository.get_task_details(task.id)

        lines = [
            f"Task {result.task_id} {result.outcome.value}: process={result.process_exit.value} "
            f"remote_task_id={result.remote_task_id or '-'}",
            f"Finished: {_format_time(result.finished_at)}",
        ]
        if details is not None:
            lines.extend(_metrics_lines(details.metrics))
            lines.append(f"Tool errors: {len(details.tool_errors)}")
        lines.append(f"Log: {log.path}")
        return TaskRunReport(lines=lines, success=True)


def parse_setting_pairs(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` options; values are JSON when they parse as JSON."""

    parsed: dict[str, Any] = {}
    for pair in pairs:
        key, separator, raw_value = pair.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValueError(f"Invalid setting {pair!r}; expected key=value.")
        try:
            parsed[key] = json.loads(raw_value)
        except json.JSONDecodeError:
            parsed[key] = raw_value
    return parsed


def _metrics_lines(metrics: TaskMetricsView | None) -> list[str]:
    if metrics is None:
        return ["Metrics: -"]
    lines = [
        f"Metrics: cost={metrics.cost:.4f} tokens_in={metrics.tokens_in} "
        f"tokens_out={metrics.tokens_out} context={metrics.tokens_context} "
        f"cache_writes={metrics.cache_writes} cache_reads={metrics.cache_reads} "
        f"duration_ms={metrics.duration}",
    ]
    if metrics.tool_usage:
        lines.append(f"Tool usage: {json.dumps(metrics.tool_usage, sort_keys=True)}")
    return lines


def _format_time(value: Any) -> str:
    return value.isoformat() if value is not None else "-"


@contextmanager
def _publisher(settings: Settings, *, run_id: int) -> Iterator[EventPublisher]:
    if not settings.publish.redis_url:
        yield JsonlEventPublisher(settings.logs_root / str(run_id) / "events.jsonl")
        return
    publisher = RedisEventPublisher.from_url(
        settings.publish.redis_url,
        channel_prefix=settings.publish.channel_prefix,
        run_id=run_id,
    )
    try:
        yield publisher
    finally:
        publisher.close()


@contextmanager
def _repository(settings: Settings) -> Iterator[EvalsRepository]:
    repository = EvalsRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
