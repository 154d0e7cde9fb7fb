"""Editor process launcher with cancellation-aware handle."""

from __future__ import annotations

import logging
import os
import random
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from evals_runner.orchestrator.command import EditorCommand

logger = logging.getLogger(__name__)


class ProcessLaunchError(RuntimeError):
    """The editor process could not be spawned."""


@dataclass(slots=True, frozen=True)
class StartupJitter:
    """Uniform pre-spawn delay that spreads out editor windows of parallel tasks."""

    min_seconds: float = 5.0
    max_seconds: float = 10.0

    def pick(self, rng: random.Random) -> float:
        return rng.uniform(self.min_seconds, self.max_seconds)


class ProcessHandle:
    """Running editor process.

    The process leads its own session so signals reach the shell and the editor
    it started. Setting ``cancel_event`` asks the process to stop with SIGTERM.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        *,
        cancel_event: threading.Event,
        cancel_poll_seconds: float = 0.1,
        output_handle: IO[bytes] | None = None,
    ) -> None:
        self._process = process
        self._cancel_event = cancel_event
        self._cancel_poll_seconds = cancel_poll_seconds
        self._output_handle = output_handle
        self._watcher = threading.Thread(
            target=self._watch_cancel,
            daemon=True,
            name=f"editor-cancel-{process.pid}",
        )
        self._watcher.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.poll()

    def terminate(self, sig: signal.Signals = signal.SIGTERM) -> bool:
        """Send ``sig`` to the process group; returns whether it was delivered."""

        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as error:
            logger.warning("Cannot signal editor process %s: %s", self._process.pid, error)
            return False
        return True

    def kill(self) -> bool:
        return self.terminate(signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit; returns the exit code, or None if still running."""

        try:
            returncode = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._close_output()
        return returncode

    def _watch_cancel(self) -> None:
        while not self._cancel_event.wait(self._cancel_poll_seconds):
            if self._process.poll() is not None:
                return
        if self._process.poll() is None:
            logger.debug("Cancellation requested, sending SIGTERM to %s", self._process.pid)
            self.terminate(signal.SIGTERM)

    def _close_output(self) -> None:
        handle, self._output_handle = self._output_handle, None
        if handle is not None:
            handle.close()


def launch(  # noqa: PLR0913
    command: EditorCommand,
    *,
    cancel_event: threading.Event,
    containerized: bool,
    jitter: StartupJitter | None = None,
    output_path: Path | None = None,
    shell: str = "/bin/bash",
    rng: random.Random | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProcessHandle:
    """Spawn the editor under a shell, wired to the shared cancellation event.

    Raises:
        ProcessLaunchError: the shell could not be started.
    """

    if not containerized:
        delay = (jitter or StartupJitter()).pick(rng or random.Random())  # noqa: S311
        logger.debug("Delaying editor start by %.1fs", delay)
        sleep(delay)

    env = os.environ.copy()
    env.update(command.env)

    output_handle: IO[bytes] | None = None
    if output_path is not None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_handle = output_path.open("ab")

    try:
        process = subprocess.Popen(  # noqa: S602
            command.command,
            shell=True,
            executable=shell,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=output_handle if output_handle is not None else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if output_handle is not None else subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as error:
        if output_handle is not None:
            output_handle.close()
        raise ProcessLaunchError(f"Editor process failed to start: {error}") from error

    return ProcessHandle(process, cancel_event=cancel_event, output_handle=output_handle)
