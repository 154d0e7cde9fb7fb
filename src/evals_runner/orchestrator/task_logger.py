"""Per-task log file."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def task_log_path(logs_root: Path, *, run_id: int, language: str, exercise: str) -> Path:
    return logs_root / str(run_id) / f"{language}-{exercise}.log"


class TaskLogger:
    """Writes one task's lifecycle and event lines to its own file.

    Records also propagate to the ``evals_runner.tasks`` logger hierarchy so a
    console handler configured by the CLI shows them too.
    """

    def __init__(self, path: Path, *, run_id: int, task_id: int, tag: str) -> None:
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger(f"evals_runner.tasks.{run_id}.{task_id}")
        self._logger.setLevel(logging.INFO)
        self._handler: logging.Handler | None = logging.FileHandler(path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._logger.addHandler(self._handler)
        self._tag = tag.replace("%", "%%")

    def info(self, message: str, *args: object) -> None:
        self._logger.info(f"[{self._tag}] {message}", *args)

    def error(self, message: str, *args: object) -> None:
        self._logger.error(f"[{self._tag}] {message}", *args)

    def close(self) -> None:
        handler, self._handler = self._handler, None
        if handler is None:
            return
        handler.flush()
        self._logger.removeHandler(handler)
        handler.close()
