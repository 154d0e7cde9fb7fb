"""Runtime configuration for the evaluation runner."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TASK_TIMEOUT_SECONDS = 5 * 60


@dataclass(slots=True)
class OrchestratorSettings:
    """Editor launch and task lifecycle settings."""

    editor_command: str = "code"
    user_data_dir: str = "/roo/.vscode"
    socket_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    containerized: bool = False
    api_key: str | None = None


@dataclass(slots=True)
class PublishSettings:
    """Downstream event sink settings."""

    redis_url: str = ""
    channel_prefix: str = "evals"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".evals_runner.db")
    exercises_root: Path = Path("evals/exercises")
    logs_root: Path = Path("evals/logs")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    publish: PublishSettings = field(default_factory=PublishSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("EVALS_RUNNER_DB_PATH", ".evals_runner.db")),
            exercises_root=Path(os.getenv("EVALS_RUNNER_EXERCISES_PATH", "evals/exercises")),
            logs_root=Path(os.getenv("EVALS_RUNNER_LOGS_PATH", "evals/logs")),
            orchestrator=OrchestratorSettings(
                editor_command=os.getenv("EVALS_RUNNER_EDITOR_COMMAND", "code").strip() or "code",
                user_data_dir=os.getenv("EVALS_RUNNER_USER_DATA_DIR", "/roo/.vscode"),
                socket_dir=Path(os.getenv("EVALS_RUNNER_SOCKET_DIR", tempfile.gettempdir())),
                task_timeout_seconds=float(
                    os.getenv(
                        "EVALS_RUNNER_TASK_TIMEOUT_SECONDS",
                        str(DEFAULT_TASK_TIMEOUT_SECONDS),
                    ),
                ),
                containerized=_env_bool(
                    "EVALS_RUNNER_CONTAINERIZED",
                    default=is_docker_container(),
                ),
                api_key=os.getenv("OPENROUTER_API_KEY") or None,
            ),
            publish=PublishSettings(
                redis_url=os.getenv("EVALS_RUNNER_REDIS_URL", "").strip(),
                channel_prefix=os.getenv("EVALS_RUNNER_CHANNEL_PREFIX", "evals").strip()
                or "evals",
            ),
        )

    def validate_for_task(self) -> None:
        """Raise configuration error if a task cannot be executed with these settings."""

        if self.orchestrator.task_timeout_seconds <= 0:
            raise ValueError("EVALS_RUNNER_TASK_TIMEOUT_SECONDS must be > 0.")
        if not self.orchestrator.editor_command.strip():
            raise ValueError("EVALS_RUNNER_EDITOR_COMMAND must not be empty.")
        if not self.exercises_root.is_dir():
            raise ValueError(
                f"Exercises directory not found: {self.exercises_root}. "
                "Set EVALS_RUNNER_EXERCISES_PATH.",
            )


def is_docker_container(
    *,
    dockerenv_path: Path = Path("/.dockerenv"),
    cgroup_path: Path = Path("/proc/1/cgroup"),
) -> bool:
    """Best-effort detection of running inside a Docker container."""

    if dockerenv_path.exists():
        return True
    try:
        cgroup = cgroup_path.read_text("utf-8")
    except OSError:
        return False
    return "docker" in cgroup or "containerd" in cgroup


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
