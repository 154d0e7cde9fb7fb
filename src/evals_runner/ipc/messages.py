"""Wire contracts for the editor IPC socket.

Frames follow the node-ipc JSON transport: every frame is
``{"type": "message", "data": <IpcMessage>}`` encoded as UTF-8 JSON and
terminated by a form feed (``\\f``).
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

FRAME_DELIMITER = b"\f"
ENVELOPE_TYPE = "message"


class IpcProtocolError(ValueError):
    """Raised when a frame cannot be decoded into an IPC message."""


class IpcMessageType(str, Enum):
    CONNECT = "Connect"
    DISCONNECT = "Disconnect"
    ACK = "Ack"
    TASK_COMMAND = "TaskCommand"
    TASK_EVENT = "TaskEvent"


class IpcOrigin(str, Enum):
    CLIENT = "client"
    SERVER = "server"


class TaskCommandName(str, Enum):
    START_NEW_TASK = "StartNewTask"
    CANCEL_TASK = "CancelTask"
    CLOSE_TASK = "CloseTask"


class AgentEventName(str, Enum):
    """Event names emitted by the agent session."""

    MESSAGE = "message"
    TASK_CREATED = "taskCreated"
    TASK_STARTED = "taskStarted"
    TASK_MODE_SWITCHED = "taskModeSwitched"
    TASK_PAUSED = "taskPaused"
    TASK_UNPAUSED = "taskUnpaused"
    TASK_ASK_RESPONDED = "taskAskResponded"
    TASK_ABORTED = "taskAborted"
    TASK_SPAWNED = "taskSpawned"
    TASK_COMPLETED = "taskCompleted"
    TASK_TOKEN_USAGE_UPDATED = "taskTokenUsageUpdated"
    TASK_TOOL_FAILED = "taskToolFailed"


class AckData(BaseModel):
    client_id: str = Field(alias="clientId")
    pid: int
    ppid: int

    model_config = ConfigDict(populate_by_name=True)


class TaskCommand(BaseModel):
    command_name: TaskCommandName = Field(alias="commandName")
    data: Any = None

    model_config = ConfigDict(populate_by_name=True)


class TaskEvent(BaseModel):
    """Event from the agent session; unknown event names pass through as strings."""

    event_name: str = Field(alias="eventName")
    payload: list[Any] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def known_name(self) -> AgentEventName | None:
        try:
            return AgentEventName(self.event_name)
        except ValueError:
            return None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class IpcMessage(BaseModel):
    type: IpcMessageType
    origin: IpcOrigin
    client_id: str | None = Field(default=None, alias="clientId")
    relay_client_id: str | None = Field(default=None, alias="relayClientId")
    data: Any = None

    model_config = ConfigDict(populate_by_name=True)


class Disconnect(BaseModel):
    """Local notification that the server closed the channel."""

    type: Literal[IpcMessageType.DISCONNECT] = IpcMessageType.DISCONNECT


def start_new_task_command(
    *,
    configuration: dict[str, Any],
    text: str,
    new_tab: bool = True,
) -> TaskCommand:
    return TaskCommand(
        command_name=TaskCommandName.START_NEW_TASK,
        data={"configuration": configuration, "text": text, "newTab": new_tab},
    )


def cancel_task_command(remote_task_id: str) -> TaskCommand:
    return TaskCommand(command_name=TaskCommandName.CANCEL_TASK, data=remote_task_id)


def close_task_command(remote_task_id: str) -> TaskCommand:
    return TaskCommand(command_name=TaskCommandName.CLOSE_TASK, data=remote_task_id)


def encode_frame(message: IpcMessage) -> bytes:
    """Serialize one message into a delimited frame."""

    envelope = {
        "type": ENVELOPE_TYPE,
        "data": message.model_dump(mode="json", by_alias=True, exclude_none=True),
    }
    return json.dumps(envelope, ensure_ascii=False).encode("utf-8") + FRAME_DELIMITER


def decode_frame(frame: bytes) -> IpcMessage:
    """Parse one frame (without delimiter) into a message."""

    try:
        envelope = json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise IpcProtocolError(f"Invalid IPC frame: {error}") from error
    if not isinstance(envelope, dict) or envelope.get("type") != ENVELOPE_TYPE:
        raise IpcProtocolError("IPC frame is not a message envelope.")
    try:
        return IpcMessage.model_validate(envelope.get("data"))
    except ValidationError as error:
        raise IpcProtocolError(f"Invalid IPC message: {error}") from error


class FrameBuffer:
    """Accumulates stream chunks and yields complete frames."""

    def __init__(self, *, max_frame_bytes: int = 8_000_000) -> None:
        self._buffer = b""
        self._max_frame_bytes = max_frame_bytes

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer += chunk
        frames: list[bytes] = []
        while FRAME_DELIMITER in self._buffer:
            frame, self._buffer = self._buffer.split(FRAME_DELIMITER, 1)
            if frame.strip():
                frames.append(frame)
        if len(self._buffer) > self._max_frame_bytes:
            self._buffer = b""
            raise IpcProtocolError("IPC frame exceeds size limit.")
        return frames
