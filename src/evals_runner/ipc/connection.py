"""Bounded-retry connection establishment for the editor IPC socket."""

from __future__ import annotations

import logging
import queue
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from evals_runner.ipc.client import InboundMessage, IpcClient
from evals_runner.waiting import wait_for

logger = logging.getLogger(__name__)


class IpcConnectionError(RuntimeError):
    """The editor never accepted an IPC connection within the retry budget."""

    def __init__(self, socket_path: Path | str, attempts: int) -> None:
        super().__init__(f"Unable to connect to IPC socket {socket_path} after {attempts} attempts.")
        self.socket_path = str(socket_path)
        self.attempts = attempts


@dataclass(slots=True, frozen=True)
class ConnectPolicy:
    """Retry budget and readiness poll for one connection."""

    attempts: int = 5
    ready_poll_interval_seconds: float = 0.25
    ready_timeout_seconds: float = 1.0


ClientFactory = Callable[[Path, "queue.Queue[InboundMessage]"], IpcClient]


def _default_client_factory(socket_path: Path, inbox: queue.Queue[InboundMessage]) -> IpcClient:
    return IpcClient(socket_path, inbox=inbox)


def connect(
    socket_path: Path,
    *,
    inbox: queue.Queue[InboundMessage] | None = None,
    policy: ConnectPolicy | None = None,
    client_factory: ClientFactory = _default_client_factory,
    sleep: Callable[[float], None] | None = None,
) -> IpcClient:
    """Open a ready client, retrying because the socket file may exist before
    the listener accepts connections.

    Raises:
        IpcConnectionError: every attempt failed to become ready.
    """

    policy = policy or ConnectPolicy()
    channel: queue.Queue[InboundMessage] = inbox if inbox is not None else queue.Queue()
    wait_kwargs = {"sleep": sleep} if sleep is not None else {}

    for attempt in range(1, policy.attempts + 1):
        client = client_factory(socket_path, channel)
        ready = wait_for(
            lambda: client.is_ready,
            interval=policy.ready_poll_interval_seconds,
            timeout=policy.ready_timeout_seconds,
            **wait_kwargs,
        )
        if ready:
            logger.info("Connected to IPC socket %s on attempt %d", socket_path, attempt)
            return client
        client.disconnect()
        logger.debug("IPC socket %s not ready (attempt %d/%d)", socket_path, attempt, policy.attempts)
        _discard_pending(channel)

    raise IpcConnectionError(socket_path, policy.attempts)


def _discard_pending(channel: queue.Queue[InboundMessage]) -> None:
    while True:
        try:
            channel.get_nowait()
        except queue.Empty:
            return
