"""Lifecycle controller that drives one evaluation task end to end."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from evals_runner.config import OrchestratorSettings
from evals_runner.ipc import ConnectPolicy, InboundMessage, IpcClient, IpcConnectionError, connect
from evals_runner.ipc.messages import (
    cancel_task_command,
    close_task_command,
    start_new_task_command,
)
from evals_runner.orchestrator.base import EventPublisher, TaskLog, TaskStore
from evals_runner.orchestrator.command import build_editor_command, ipc_socket_path
from evals_runner.orchestrator.events import EventRouter, SessionState
from evals_runner.orchestrator.exercises import ExerciseCatalog, build_task_configuration
from evals_runner.orchestrator.launcher import (
    ProcessHandle,
    ProcessLaunchError,
    StartupJitter,
    launch,
)
from evals_runner.orchestrator.models import RunView, TaskView
from evals_runner.waiting import wait_for

logger = logging.getLogger(__name__)

ProcessLauncher = Callable[..., ProcessHandle]
Connector = Callable[..., IpcClient]


class SubprocessTimeoutError(TimeoutError):
    """The editor did not exit within the shutdown timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Subprocess timeout after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class LifecyclePhase(str, Enum):
    LAUNCHING = "launching"
    CONNECTING = "connecting"
    RUNNING = "running"
    COMPLETING = "completing"
    CANCELING = "canceling"
    DISCONNECTED_EARLY = "disconnected_early"
    CLOSING_SESSION = "closing_session"
    TERMINATING_PROCESS = "terminating_process"
    DONE = "done"


class TaskOutcome(str, Enum):
    FINISHED = "finished"
    TIMED_OUT = "timed_out"
    DISCONNECTED = "disconnected"


class ProcessExit(str, Enum):
    GRACEFUL = "graceful"
    KILLED = "killed"
    ABANDONED = "abandoned"


@dataclass(slots=True, frozen=True)
class LifecycleTimings:
    """Delays and deadlines of one task invocation, in seconds."""

    startup_jitter: StartupJitter = field(default_factory=StartupJitter)
    settle_seconds: float = 3.0
    connect: ConnectPolicy = field(default_factory=ConnectPolicy)
    completion_poll_seconds: float = 1.0
    task_timeout_seconds: float = 300.0
    cancel_grace_seconds: float = 5.0
    close_settle_seconds: float = 2.0
    shutdown_timeout_seconds: float = 10.0
    kill_reap_seconds: float = 2.0


@dataclass(slots=True)
class TaskRunResult:
    """Summary of one orchestrator invocation.

    ``phases`` is captured once the editor process is handled, so it ends at
    ``TERMINATING_PROCESS``; ``TaskOrchestrator.phase`` reports ``DONE`` after
    ``run()`` returns.
    """

    task_id: int
    outcome: TaskOutcome
    process_exit: ProcessExit
    remote_task_id: str | None
    task_metrics_id: int | None
    finished_at: datetime | None
    phases: list[LifecyclePhase] = field(default_factory=list)


class TaskOrchestrator:
    """Runs one task: launch, connect, start, observe, time-box and tear down.

    All session state is owned by the calling thread. Inbound IPC messages are
    queued by the transport and dispatched here whenever the controller waits.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        run: RunView,
        task: TaskView,
        store: TaskStore,
        publisher: EventPublisher,
        log: TaskLog,
        catalog: ExerciseCatalog,
        settings: OrchestratorSettings,
        timings: LifecycleTimings | None = None,
        editor_output_path: Path | None = None,
        launcher: ProcessLauncher = launch,
        connector: Connector = connect,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.run_view = run
        self.task = task
        self._store = store
        self._publisher = publisher
        self._log = log
        self._catalog = catalog
        self._settings = settings
        self._timings = timings or LifecycleTimings(
            task_timeout_seconds=settings.task_timeout_seconds,
        )
        self._editor_output_path = editor_output_path
        self._launcher = launcher
        self._connector = connector
        self._sleep = sleep
        self._clock = clock
        self._inbox: queue.Queue[InboundMessage] = queue.Queue()
        self._router: EventRouter | None = None
        self.phases: list[LifecyclePhase] = []

    @property
    def phase(self) -> LifecyclePhase | None:
        return self.phases[-1] if self.phases else None

    def run(self) -> TaskRunResult:
        """Execute the task.

        Raises:
            ProcessLaunchError: the editor could not be started.
            IpcConnectionError: the editor never accepted the IPC connection.
        """

        try:
            return self._run()
        finally:
            self._enter(LifecyclePhase.DONE)
            self._log.close()

    def _run(self) -> TaskRunResult:
        task = self.task
        prompt = self._catalog.prompt_for(task.language)
        workspace = self._catalog.workspace_for(task.language, task.exercise)
        socket_path = ipc_socket_path(
            socket_dir=self._settings.socket_dir,
            run_id=task.run_id,
            task_id=task.id,
        )
        command = build_editor_command(
            workspace_path=workspace,
            socket_path=socket_path,
            containerized=self._settings.containerized,
            editor_command=self._settings.editor_command,
            user_data_dir=self._settings.user_data_dir,
        )

        self._enter(LifecyclePhase.LAUNCHING)
        self._log.info("%s", command.command)
        cancel_event = threading.Event()
        try:
            process = self._launcher(
                command,
                cancel_event=cancel_event,
                containerized=self._settings.containerized,
                jitter=self._timings.startup_jitter,
                output_path=self._editor_output_path,
            )
        except ProcessLaunchError as error:
            self._log.error("failed to launch editor: %s", error)
            raise

        try:
            outcome, state = self._drive_session(socket_path, prompt)
        except IpcConnectionError:
            self._log.error("unable to connect to IPC socket -> %s", socket_path)
            raise
        finally:
            process_exit = self._terminate_process(process, cancel_event)

        return TaskRunResult(
            task_id=task.id,
            outcome=outcome,
            process_exit=process_exit,
            remote_task_id=state.remote_task_id,
            task_metrics_id=state.task_metrics_id,
            finished_at=state.task_finished_at,
            phases=list(self.phases),
        )

    def _drive_session(self, socket_path: Path, prompt: str) -> tuple[TaskOutcome, SessionState]:
        # The editor needs time to bring up its IPC listener.
        self._sleep(self._timings.settle_seconds)

        self._enter(LifecyclePhase.CONNECTING)
        client = self._connector(socket_path, inbox=self._inbox, policy=self._timings.connect)

        state = SessionState(task_started_at=self._clock())
        router = EventRouter(
            task_id=self.task.id,
            state=state,
            store=self._store,
            publisher=self._publisher,
            log=self._log,
            socket_path=str(socket_path),
            clock=self._clock,
        )
        self._router = router

        self._enter(LifecyclePhase.RUNNING)
        client.send_command(
            start_new_task_command(
                configuration=build_task_configuration(
                    self.run_view.settings,
                    api_key=self._settings.api_key,
                ),
                text=prompt,
            ),
        )
        settled = wait_for(
            lambda: state.is_settled,
            interval=self._timings.completion_poll_seconds,
            timeout=self._timings.task_timeout_seconds,
            sleep=self._pump_events,
            clock=self._clock,
        )

        if not settled:
            outcome = TaskOutcome.TIMED_OUT
            self._cancel_session(client, state, router)
        elif state.task_finished_at is None:
            outcome = TaskOutcome.DISCONNECTED
            self._enter(LifecyclePhase.DISCONNECTED_EARLY)
            router.mark_finished()
        else:
            outcome = TaskOutcome.FINISHED
            self._enter(LifecyclePhase.COMPLETING)

        self._close_session(client, state)
        return outcome, state

    def _cancel_session(self, client: IpcClient, state: SessionState, router: EventRouter) -> None:
        self._log.error("time limit reached")
        if state.remote_task_id and not state.client_disconnected:
            self._enter(LifecyclePhase.CANCELING)
            self._log.info("cancelling task")
            client.send_command(cancel_task_command(state.remote_task_id))
            self._pump_events(self._timings.cancel_grace_seconds)
        router.mark_finished()

    def _close_session(self, client: IpcClient, state: SessionState) -> None:
        self._enter(LifecyclePhase.CLOSING_SESSION)
        if state.client_disconnected:
            self._log.error("client disconnected before task finished")
        elif state.remote_task_id:
            self._log.info("closing task")
            client.send_command(close_task_command(state.remote_task_id))
            self._pump_events(self._timings.close_settle_seconds)
        client.disconnect()
        self._pump_events(0)

    def _terminate_process(self, process: ProcessHandle, cancel_event: threading.Event) -> ProcessExit:
        self._enter(LifecyclePhase.TERMINATING_PROCESS)
        self._log.info("waiting for subprocess to finish")
        cancel_event.set()
        try:
            self._await_exit(process)
        except SubprocessTimeoutError:
            self._log.error("subprocess did not finish within timeout, force killing")
            return self._kill(process)
        self._log.info("subprocess finished gracefully")
        return ProcessExit.GRACEFUL

    def _await_exit(self, process: ProcessHandle) -> int:
        returncode = process.wait(timeout=self._timings.shutdown_timeout_seconds)
        if returncode is None:
            raise SubprocessTimeoutError(self._timings.shutdown_timeout_seconds)
        return returncode

    def _kill(self, process: ProcessHandle) -> ProcessExit:
        if process.returncode is not None:
            self._log.info("subprocess exited before SIGKILL")
            return ProcessExit.GRACEFUL
        try:
            delivered = process.kill()
        except OSError as error:
            self._log.error("SIGKILL to subprocess failed: %s", error)
            return ProcessExit.ABANDONED
        if not delivered:
            # The group may have gone away between the poll and the signal.
            if process.returncode is not None:
                self._log.info("subprocess exited before SIGKILL")
                return ProcessExit.GRACEFUL
            self._log.error("failed to send SIGKILL to subprocess")
            return ProcessExit.ABANDONED
        self._log.info("SIGKILL sent to subprocess")
        process.wait(timeout=self._timings.kill_reap_seconds)
        return ProcessExit.KILLED

    def _pump_events(self, seconds: float) -> None:
        """Dispatch inbound messages for ``seconds``, then drain what is queued."""

        deadline = self._clock() + seconds
        while True:
            remaining = deadline - self._clock()
            try:
                if remaining > 0:
                    message = self._inbox.get(timeout=remaining)
                else:
                    message = self._inbox.get_nowait()
            except queue.Empty:
                return
            if self._router is not None:
                self._router.dispatch(message)

    def _enter(self, phase: LifecyclePhase) -> None:
        logger.debug("Task %s: %s", self.task.id, phase.value)
        self.phases.append(phase)
