"""Scripted stand-in for the editor, for integration tests and local dry runs.

Serves the IPC socket named by ``ROO_CODE_IPC_SOCKET_PATH`` and replays the
scenario named by ``EVALS_FAKE_EDITOR_SCENARIO`` once a task is started.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from uuid import uuid4

from evals_runner.ipc.messages import AgentEventName, TaskCommand, TaskCommandName, TaskEvent
from evals_runner.ipc.server import IpcServer
from evals_runner.orchestrator.command import IPC_SOCKET_ENV_VAR

logger = logging.getLogger(__name__)

SCENARIOS = ("complete", "abort", "hang", "disconnect", "tool_failure")

USAGE_TOTALS = {
    "totalCost": 0.05,
    "totalTokensIn": 1200,
    "totalTokensOut": 300,
    "contextTokens": 1500,
}
FINAL_TOTALS = {
    "totalCost": 0.12,
    "totalTokensIn": 2400,
    "totalTokensOut": 800,
    "contextTokens": 3200,
    "totalCacheWrites": 10,
    "totalCacheReads": 4,
}
TOOL_USAGE = {
    "read_file": {"attempts": 2, "failures": 0},
    "apply_diff": {"attempts": 1, "failures": 0},
}


class FakeEditor:
    """Plays one scenario for the first started task."""

    def __init__(self, socket_path: Path, *, scenario: str, step_seconds: float) -> None:
        self.scenario = scenario
        self.step_seconds = step_seconds
        self.remote_task_id = f"fake-{uuid4().hex[:12]}"
        self.stopped = threading.Event()
        self.server = IpcServer(socket_path, on_command=self.handle_command)

    def handle_command(self, client_id: str, command: TaskCommand) -> None:
        logger.info("Command %s from %s", command.command_name.value, client_id)
        if command.command_name == TaskCommandName.START_NEW_TASK:
            threading.Thread(target=self._play, daemon=True, name="fake-editor-scenario").start()
        elif command.command_name == TaskCommandName.CANCEL_TASK:
            self._emit(AgentEventName.TASK_ABORTED, [self.remote_task_id])
        elif command.command_name == TaskCommandName.CLOSE_TASK:
            self.stopped.set()

    def _play(self) -> None:
        task_id = self.remote_task_id
        self._emit(AgentEventName.TASK_CREATED, [task_id])
        self._emit(AgentEventName.TASK_STARTED, [task_id])
        self._emit(
            AgentEventName.MESSAGE,
            [{"taskId": task_id, "action": "created", "message": {"text": "Work", "partial": True}}],
        )
        self._emit(
            AgentEventName.MESSAGE,
            [{"taskId": task_id, "action": "updated", "message": {"text": "Working", "partial": False}}],
        )

        if self.scenario == "hang":
            return
        if self.scenario == "disconnect":
            self.stopped.set()
            return
        if self.scenario == "abort":
            self._emit(AgentEventName.TASK_ABORTED, [task_id])
            return
        if self.scenario == "tool_failure":
            self._emit(AgentEventName.TASK_TOOL_FAILED, [task_id, "apply_diff", "parse error"])

        self._emit(AgentEventName.TASK_TOKEN_USAGE_UPDATED, [task_id, USAGE_TOTALS])
        self._emit(AgentEventName.TASK_COMPLETED, [task_id, FINAL_TOTALS, TOOL_USAGE])

    def _emit(self, name: AgentEventName, payload: list) -> None:
        time.sleep(self.step_seconds)
        self.server.broadcast(TaskEvent(event_name=name.value, payload=payload))


def main(argv: list[str] | None = None) -> int:
    """Serve the IPC socket until the task is closed or the process is signalled."""

    parser = argparse.ArgumentParser(description="Scripted fake editor.")
    parser.add_argument("-n", dest="workspace", default=None)
    parser.add_argument("--scenario", default=os.getenv("EVALS_FAKE_EDITOR_SCENARIO", "complete"))
    parser.add_argument(
        "--step-seconds",
        type=float,
        default=float(os.getenv("EVALS_FAKE_EDITOR_STEP_SECONDS", "0.05")),
    )
    parser.add_argument(
        "--max-seconds",
        type=float,
        default=float(os.getenv("EVALS_FAKE_EDITOR_MAX_SECONDS", "120")),
    )
    args, _unknown = parser.parse_known_args(argv)

    if args.scenario not in SCENARIOS:
        parser.error(f"unknown scenario {args.scenario!r}; expected one of {', '.join(SCENARIOS)}")
    socket_path = os.getenv(IPC_SOCKET_ENV_VAR)
    if not socket_path:
        parser.error(f"{IPC_SOCKET_ENV_VAR} is not set")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [fake-editor] %(message)s")
    editor = FakeEditor(Path(socket_path), scenario=args.scenario, step_seconds=args.step_seconds)

    if os.getenv("EVALS_FAKE_EDITOR_IGNORE_SIGTERM", "0") == "1":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    else:
        signal.signal(signal.SIGTERM, lambda *_: editor.stopped.set())

    editor.server.start()
    logger.info("Serving %s (scenario=%s, workspace=%s)", socket_path, args.scenario, args.workspace)
    deadline = time.monotonic() + args.max_seconds
    try:
        while not editor.stopped.wait(0.2):
            if time.monotonic() >= deadline:
                logger.warning("Giving up after %.0fs without a CloseTask", args.max_seconds)
                break
    finally:
        editor.server.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
