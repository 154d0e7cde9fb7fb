from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from evals_runner.config import OrchestratorSettings
from evals_runner.ipc import (
    AgentEventName,
    ConnectPolicy,
    Disconnect,
    IpcConnectionError,
    TaskCommand,
    TaskCommandName,
    TaskEvent,
    connect,
)
from evals_runner.orchestrator.exercises import DEFAULT_EVAL_SETTINGS, ExerciseCatalog
from evals_runner.orchestrator.launcher import ProcessLaunchError, StartupJitter
from evals_runner.orchestrator.lifecycle import (
    LifecyclePhase,
    LifecycleTimings,
    ProcessExit,
    TaskOrchestrator,
    TaskOutcome,
)
from evals_runner.orchestrator.models import RunView

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Lifecycle Controller"),
]

FAST_TIMINGS = LifecycleTimings(
    startup_jitter=StartupJitter(0.0, 0.0),
    settle_seconds=0.0,
    connect=ConnectPolicy(attempts=5, ready_poll_interval_seconds=0.01, ready_timeout_seconds=0.05),
    completion_poll_seconds=0.01,
    task_timeout_seconds=0.3,
    cancel_grace_seconds=0.05,
    close_settle_seconds=0.01,
    shutdown_timeout_seconds=0.05,
    kill_reap_seconds=0.01,
)

CommandScript = Callable[[TaskCommand, "FakeClient"], None]


class FakeClient:
    def __init__(
        self,
        inbox: queue.Queue,
        *,
        ready: bool = True,
        script: CommandScript | None = None,
    ) -> None:
        self.inbox = inbox
        self.is_ready = ready
        self.script = script
        self.sent: list[TaskCommand] = []
        self.disconnected = False

    def send_command(self, command: TaskCommand) -> bool:
        self.sent.append(command)
        if self.script is not None:
            self.script(command, self)
        return True

    def emit(self, name: AgentEventName, *payload: object) -> None:
        self.inbox.put(TaskEvent(event_name=name.value, payload=list(payload)))

    def drop(self) -> None:
        self.inbox.put(Disconnect())

    def disconnect(self) -> None:
        self.disconnected = True
        self.is_ready = False

    @property
    def sent_names(self) -> list[TaskCommandName]:
        return [command.command_name for command in self.sent]


class FakeProcess:
    def __init__(self, *, exits_on_cancel: bool = True, kill_delivers: bool = True) -> None:
        self.exits_on_cancel = exits_on_cancel
        self.kill_delivers = kill_delivers
        self.cancel_event: threading.Event | None = None
        self.launch_kwargs: dict = {}
        self.command = None
        self.killed = False
        self.kill_calls = 0
        self.wait_error: Exception | None = None
        self.exit_code: int | None = None
        self.exits_during_kill = False

    @property
    def returncode(self) -> int | None:
        if self.killed:
            return -9
        return self.exit_code

    def launch(self, command, **kwargs) -> FakeProcess:
        self.command = command
        self.cancel_event = kwargs["cancel_event"]
        self.launch_kwargs = kwargs
        return self

    def wait(self, timeout: float | None = None) -> int | None:
        if self.wait_error is not None:
            raise self.wait_error
        if self.killed:
            return -9
        if self.exits_on_cancel and self.cancel_event is not None and self.cancel_event.is_set():
            return 0
        return None

    def kill(self) -> bool:
        self.kill_calls += 1
        if self.exits_during_kill:
            self.exit_code = 0
        self.killed = self.kill_delivers
        return self.kill_delivers


class Harness:
    """Builds an orchestrator around scripted fakes."""

    def __init__(self, *, store, publisher, task_log, exercises_root: Path, socket_dir: Path) -> None:
        self.store = store
        self.publisher = publisher
        self.task_log = task_log
        self.process = FakeProcess()
        self.clients: list[FakeClient] = []
        self.ready_on_attempt: int | None = 1
        self.script: CommandScript | None = None
        self.sleeps: list[float] = []
        self.settings = OrchestratorSettings(
            socket_dir=socket_dir,
            containerized=True,
            api_key="sk-test",
        )
        self.catalog = ExerciseCatalog(exercises_root)
        self.run_view = RunView(
            id=7,
            model="anthropic/claude-sonnet",
            description=None,
            settings={"openRouterModelId": "anthropic/claude-sonnet", "mode": "architect"},
            created_at=datetime(2026, 10, 19, tzinfo=UTC),
        )

    @property
    def client(self) -> FakeClient:
        return self.clients[-1]

    def _client_factory(self, socket_path: Path, inbox: queue.Queue) -> FakeClient:
        attempt = len(self.clients) + 1
        ready = self.ready_on_attempt is not None and attempt >= self.ready_on_attempt
        client = FakeClient(inbox, ready=ready, script=self.script)
        self.clients.append(client)
        return client

    def _connector(self, socket_path: Path, *, inbox: queue.Queue, policy: ConnectPolicy):
        return connect(socket_path, inbox=inbox, policy=policy, client_factory=self._client_factory)

    def build(self, timings: LifecycleTimings = FAST_TIMINGS) -> TaskOrchestrator:
        return TaskOrchestrator(
            run=self.run_view,
            task=self.store.task,
            store=self.store,
            publisher=self.publisher,
            log=self.task_log,
            catalog=self.catalog,
            settings=self.settings,
            timings=timings,
            launcher=self.process.launch,
            connector=self._connector,
            sleep=self.sleeps.append,
        )


@pytest.fixture()
def harness(store, publisher, task_log, exercises_root, socket_dir) -> Harness:
    return Harness(
        store=store,
        publisher=publisher,
        task_log=task_log,
        exercises_root=exercises_root,
        socket_dir=socket_dir,
    )


def _complete_session(command: TaskCommand, client: FakeClient) -> None:
    if command.command_name != TaskCommandName.START_NEW_TASK:
        return
    client.emit(AgentEventName.TASK_STARTED, "remote-1")
    client.emit(
        AgentEventName.TASK_TOKEN_USAGE_UPDATED,
        "remote-1",
        {"totalCost": 0.05, "totalTokensIn": 500, "totalTokensOut": 50, "contextTokens": 550},
    )
    client.emit(
        AgentEventName.TASK_COMPLETED,
        "remote-1",
        {"totalCost": 0.12, "totalTokensIn": 900, "totalTokensOut": 120, "contextTokens": 1020},
        {"apply_diff": {"attempts": 3, "failures": 0}},
    )


def test_completed_session_after_second_connect_attempt(harness: Harness) -> None:
    harness.ready_on_attempt = 2
    harness.script = _complete_session

    orchestrator = harness.build()
    result = orchestrator.run()

    assert len(harness.clients) == 2
    assert harness.clients[0].disconnected is True
    assert harness.clients[0].sent == []

    client = harness.client
    assert client.sent_names == [TaskCommandName.START_NEW_TASK, TaskCommandName.CLOSE_TASK]
    assert client.sent[1].data == "remote-1"
    assert client.disconnected is True

    store = harness.store
    assert result.task_metrics_id == 42
    assert store.metrics[42].cost == 0.12
    assert store.metrics[42].tool_usage == {"apply_diff": {"attempts": 3, "failures": 0}}
    assert store.task.finished_at is not None
    assert len(store.finish_updates) == 1

    assert result.outcome == TaskOutcome.FINISHED
    assert result.process_exit == ProcessExit.GRACEFUL
    assert harness.process.cancel_event.is_set()
    assert harness.process.kill_calls == 0
    assert harness.task_log.closed is True
    assert result.phases == [
        LifecyclePhase.LAUNCHING,
        LifecyclePhase.CONNECTING,
        LifecyclePhase.RUNNING,
        LifecyclePhase.COMPLETING,
        LifecyclePhase.CLOSING_SESSION,
        LifecyclePhase.TERMINATING_PROCESS,
    ]
    assert orchestrator.phase == LifecyclePhase.DONE


def test_default_timings_match_runner_constants() -> None:
    policy = ConnectPolicy()
    timings = LifecycleTimings()

    assert (policy.attempts, policy.ready_poll_interval_seconds, policy.ready_timeout_seconds) == (
        5,
        0.25,
        1.0,
    )
    assert timings.connect == policy
    assert (timings.startup_jitter.min_seconds, timings.startup_jitter.max_seconds) == (5.0, 10.0)
    assert timings.settle_seconds == 3.0
    assert timings.completion_poll_seconds == 1.0
    assert timings.task_timeout_seconds == 300.0
    assert timings.cancel_grace_seconds == 5.0
    assert timings.close_settle_seconds == 2.0
    assert timings.shutdown_timeout_seconds == 10.0


def test_orchestrator_takes_global_timeout_from_settings(harness: Harness) -> None:
    harness.settings = replace(harness.settings, task_timeout_seconds=42.0)

    orchestrator = TaskOrchestrator(
        run=harness.run_view,
        task=harness.store.task,
        store=harness.store,
        publisher=harness.publisher,
        log=harness.task_log,
        catalog=harness.catalog,
        settings=harness.settings,
    )

    assert orchestrator._timings == replace(LifecycleTimings(), task_timeout_seconds=42.0)


def test_start_command_carries_merged_configuration_and_prompt(harness: Harness) -> None:
    harness.script = _complete_session

    harness.build().run()

    start = harness.client.sent[0]
    assert start.command_name == TaskCommandName.START_NEW_TASK
    configuration = start.data["configuration"]
    assert configuration["mode"] == "architect"
    assert configuration["apiProvider"] == DEFAULT_EVAL_SETTINGS["apiProvider"]
    assert configuration["openRouterModelId"] == "anthropic/claude-sonnet"
    assert configuration["openRouterApiKey"] == "sk-test"
    assert start.data["text"] == "Solve the exercise in the current workspace.\n"
    assert start.data["newTab"] is True


def test_launch_uses_per_task_socket_and_settle_delay(harness: Harness, socket_dir: Path) -> None:
    harness.script = _complete_session

    harness.build().run()

    command = harness.process.command
    assert command.socket_path == socket_dir / "evals-7-1.sock"
    assert command.env == {"ROO_CODE_IPC_SOCKET_PATH": str(socket_dir / "evals-7-1.sock")}
    assert command.command.startswith("xvfb-run ")
    assert harness.process.launch_kwargs["containerized"] is True
    assert harness.sleeps[0] == FAST_TIMINGS.settle_seconds


def test_timeout_cancels_then_closes_and_sets_finish(harness: Harness) -> None:
    def started_only(command: TaskCommand, client: FakeClient) -> None:
        if command.command_name == TaskCommandName.START_NEW_TASK:
            client.emit(AgentEventName.TASK_STARTED, "remote-9")

    harness.script = started_only

    result = harness.build().run()

    assert harness.client.sent_names == [
        TaskCommandName.START_NEW_TASK,
        TaskCommandName.CANCEL_TASK,
        TaskCommandName.CLOSE_TASK,
    ]
    assert harness.client.sent[1].data == "remote-9"
    assert result.outcome == TaskOutcome.TIMED_OUT
    assert harness.store.task.finished_at is not None
    assert len(harness.store.finish_updates) == 1
    assert "time limit reached" in harness.task_log.messages("error")
    assert LifecyclePhase.CANCELING in result.phases


def test_abort_during_cancel_grace_keeps_single_finish(harness: Harness) -> None:
    def abort_on_cancel(command: TaskCommand, client: FakeClient) -> None:
        if command.command_name == TaskCommandName.START_NEW_TASK:
            client.emit(AgentEventName.TASK_STARTED, "remote-9")
        elif command.command_name == TaskCommandName.CANCEL_TASK:
            client.emit(AgentEventName.TASK_ABORTED, "remote-9")

    harness.script = abort_on_cancel

    result = harness.build().run()

    assert result.outcome == TaskOutcome.TIMED_OUT
    assert harness.publisher.event_names == ["taskStarted", "taskAborted"]
    assert len(harness.store.finish_updates) == 1


def test_timeout_without_remote_session_skips_cancel_and_close(harness: Harness) -> None:
    result = harness.build().run()

    assert harness.client.sent_names == [TaskCommandName.START_NEW_TASK]
    assert harness.client.disconnected is True
    assert result.outcome == TaskOutcome.TIMED_OUT
    assert result.remote_task_id is None
    assert harness.store.metrics == {}
    assert len(harness.store.finish_updates) == 1
    assert "time limit reached" in harness.task_log.messages("error")
    assert LifecyclePhase.CANCELING not in result.phases
    assert result.phases[-2:] == [LifecyclePhase.CLOSING_SESSION, LifecyclePhase.TERMINATING_PROCESS]


def test_disconnect_before_completion_skips_close_and_sets_finish(harness: Harness) -> None:
    def drop_after_start(command: TaskCommand, client: FakeClient) -> None:
        if command.command_name == TaskCommandName.START_NEW_TASK:
            client.emit(AgentEventName.TASK_STARTED, "remote-3")
            client.drop()

    harness.script = drop_after_start

    result = harness.build().run()

    assert TaskCommandName.CLOSE_TASK not in harness.client.sent_names
    assert TaskCommandName.CANCEL_TASK not in harness.client.sent_names
    assert result.outcome == TaskOutcome.DISCONNECTED
    assert harness.store.task.finished_at is not None
    assert len(harness.store.finish_updates) == 1
    assert "client disconnected before task finished" in harness.task_log.messages("error")
    assert LifecyclePhase.DISCONNECTED_EARLY in result.phases


def test_connection_exhaustion_is_fatal_before_any_command(harness: Harness) -> None:
    harness.ready_on_attempt = None

    with pytest.raises(IpcConnectionError):
        harness.build().run()

    assert len(harness.clients) == 5
    assert all(client.sent == [] and client.disconnected for client in harness.clients)
    assert harness.store.metrics == {}
    assert harness.store.task_updates == []
    assert harness.process.cancel_event.is_set()
    assert harness.task_log.closed is True
    assert any("unable to connect" in line for line in harness.task_log.messages("error"))


def test_launch_failure_is_fatal(harness: Harness) -> None:
    def failing_launch(command, **kwargs):
        raise ProcessLaunchError("Editor process failed to start: no such file")

    orchestrator = harness.build()
    orchestrator._launcher = failing_launch

    with pytest.raises(ProcessLaunchError):
        orchestrator.run()

    assert harness.clients == []
    assert harness.store.task_updates == []
    assert harness.task_log.closed is True


def test_unresponsive_process_is_force_killed(harness: Harness) -> None:
    harness.script = _complete_session
    harness.process.exits_on_cancel = False

    result = harness.build().run()

    assert result.process_exit == ProcessExit.KILLED
    assert harness.process.kill_calls == 1
    errors = harness.task_log.messages("error")
    assert "subprocess did not finish within timeout, force killing" in errors
    assert "SIGKILL sent to subprocess" in harness.task_log.messages("info")


def test_undeliverable_kill_is_logged_not_raised(harness: Harness) -> None:
    harness.script = _complete_session
    harness.process.exits_on_cancel = False
    harness.process.kill_delivers = False

    result = harness.build().run()

    assert result.process_exit == ProcessExit.ABANDONED
    assert "failed to send SIGKILL to subprocess" in harness.task_log.messages("error")
    assert harness.store.task.finished_at is not None


def test_exit_after_shutdown_timeout_skips_kill(harness: Harness) -> None:
    harness.script = _complete_session
    harness.process.exits_on_cancel = False
    harness.process.exit_code = 0

    result = harness.build().run()

    assert result.process_exit == ProcessExit.GRACEFUL
    assert harness.process.kill_calls == 0
    assert "subprocess exited before SIGKILL" in harness.task_log.messages("info")


def test_exit_racing_kill_signal_is_graceful(harness: Harness) -> None:
    harness.script = _complete_session
    harness.process.exits_on_cancel = False
    harness.process.kill_delivers = False
    harness.process.exits_during_kill = True

    result = harness.build().run()

    assert result.process_exit == ProcessExit.GRACEFUL
    assert harness.process.kill_calls == 1
    assert "failed to send SIGKILL to subprocess" not in harness.task_log.messages("error")


def test_unexpected_shutdown_error_is_reraised(harness: Harness) -> None:
    harness.script = _complete_session
    harness.process.wait_error = RuntimeError("waitpid failed")

    with pytest.raises(RuntimeError, match="waitpid failed"):
        harness.build().run()

    assert harness.task_log.closed is True


def test_missing_prompt_fails_before_launch(harness: Harness) -> None:
    harness.store.task = replace(harness.store.task, language="cobol")

    with pytest.raises(LookupError, match="cobol"):
        harness.build().run()

    assert harness.process.command is None
