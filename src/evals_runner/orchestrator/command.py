"""Editor command construction for one evaluation task."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path

IPC_SOCKET_ENV_VAR = "ROO_CODE_IPC_SOCKET_PATH"

_HEADLESS_DISPLAY_PREFIX = "xvfb-run --auto-servernum --server-num=1"


@dataclass(slots=True, frozen=True)
class EditorCommand:
    """Shell command plus the environment that points the agent at its socket."""

    command: str
    env: dict[str, str] = field(default_factory=dict)
    socket_path: Path | None = None


def ipc_socket_path(*, socket_dir: Path, run_id: int, task_id: int) -> Path:
    """Per-task socket path so concurrent tasks never share a listener."""

    return socket_dir / f"evals-{run_id}-{task_id}.sock"


def build_editor_command(
    *,
    workspace_path: Path,
    socket_path: Path,
    containerized: bool,
    editor_command: str = "code",
    user_data_dir: str = "/roo/.vscode",
) -> EditorCommand:
    """Build the editor invocation for containerized or interactive execution."""

    workspace = shlex.quote(str(workspace_path))
    if containerized:
        command = (
            f"{_HEADLESS_DISPLAY_PREFIX} {editor_command} --wait --log trace "
            "--disable-workspace-trust --disable-gpu --disable-lcd-text --no-sandbox "
            f"--user-data-dir {shlex.quote(user_data_dir)} "
            f'--password-store="basic" -n {workspace}'
        )
    else:
        command = f"{editor_command} --disable-workspace-trust -n {workspace}"

    return EditorCommand(
        command=command,
        env={IPC_SOCKET_ENV_VAR: str(socket_path)},
        socket_path=socket_path,
    )
