"""IPC channel between the runner and the editor-hosted agent."""

from evals_runner.ipc.client import InboundMessage, IpcClient
from evals_runner.ipc.connection import ConnectPolicy, IpcConnectionError, connect
from evals_runner.ipc.messages import (
    AgentEventName,
    Disconnect,
    IpcProtocolError,
    TaskCommand,
    TaskCommandName,
    TaskEvent,
)

__all__ = [
    "AgentEventName",
    "ConnectPolicy",
    "Disconnect",
    "InboundMessage",
    "IpcClient",
    "IpcConnectionError",
    "IpcProtocolError",
    "TaskCommand",
    "TaskCommandName",
    "TaskEvent",
    "connect",
]
