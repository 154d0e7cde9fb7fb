"""CLI entrypoint for evals-runner."""

import logging
from pathlib import Path

import rich_click as click

from evals_runner import __version__
from evals_runner.orchestrator.controllers import (
    EvalsCliController,
    RunCreateCommand,
    TaskAddCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskRunCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = EvalsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="evals-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Console log level.",
)
def evals_runner(log_level: str) -> None:
    """Evaluation runner for editor-hosted coding agents."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@evals_runner.group()
def runs() -> None:
    """Evaluation run commands."""


@runs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model", required=True, help="Model id the agent should use.")
@click.option("--description", default=None, help="Free-form run description.")
@click.option(
    "--setting",
    "settings",
    multiple=True,
    help="Agent setting as `key=value` (JSON values allowed). Can be repeated.",
)
def runs_create(
    db_path: Path | None,
    model: str,
    description: str | None,
    settings: tuple[str, ...],
) -> None:
    """Register a run whose settings apply to all of its tasks."""

    _emit_lines(
        CONTROLLER.create_run(
            RunCreateCommand(
                db_path=db_path,
                model=model,
                description=description,
                settings=settings,
            ),
        ),
    )


@evals_runner.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", type=int, required=True, help="Run id.")
@click.option("--language", required=True, help="Exercise language, for example python.")
@click.option("--exercise", required=True, help="Exercise directory name.")
def tasks_add(db_path: Path | None, run_id: int, language: str, exercise: str) -> None:
    """Add one exercise to a run."""

    _emit_lines(
        CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                run_id=run_id,
                language=language,
                exercise=exercise,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", type=int, required=True, help="Run id.")
def tasks_list(db_path: Path | None, run_id: int) -> None:
    """List tasks of a run with their timestamps."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(db_path=db_path, run_id=run_id)))


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: int) -> None:
    """Inspect one task with its metrics and tool errors."""

    _emit_lines(CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@tasks.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Global task timeout; defaults to EVALS_RUNNER_TASK_TIMEOUT_SECONDS.",
)
def tasks_run(db_path: Path | None, task_id: int, timeout_seconds: float | None) -> None:
    """Launch the editor, run the task to completion or timeout, and shut down."""

    report = CONTROLLER.run_task(
        TaskRunCommand(
            db_path=db_path,
            task_id=task_id,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException(f"Task {task_id} did not run.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    evals_runner()
