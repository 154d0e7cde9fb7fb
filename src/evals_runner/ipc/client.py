"""Unix socket client for the editor IPC channel."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from pathlib import Path

from pydantic import ValidationError

from evals_runner.ipc.messages import (
    AckData,
    Disconnect,
    FrameBuffer,
    IpcMessage,
    IpcMessageType,
    IpcOrigin,
    IpcProtocolError,
    TaskCommand,
    TaskEvent,
    decode_frame,
    encode_frame,
)

logger = logging.getLogger(__name__)

InboundMessage = TaskEvent | Disconnect


class IpcClient:
    """Client side of the editor IPC socket.

    A reader thread decodes inbound frames. The server ``Ack`` marks the
    client ready; task events and the final disconnect notification are
    pushed, in arrival order, onto ``inbox`` for a single consumer.
    """

    def __init__(
        self,
        socket_path: Path | str,
        *,
        inbox: queue.Queue[InboundMessage] | None = None,
        recv_chunk_bytes: int = 65_536,
    ) -> None:
        self.socket_path = str(socket_path)
        self.inbox: queue.Queue[InboundMessage] = inbox if inbox is not None else queue.Queue()
        self.client_id: str | None = None
        self._recv_chunk_bytes = recv_chunk_bytes
        self._ready = threading.Event()
        self._closing = threading.Event()
        self._send_lock = threading.Lock()
        self._socket: socket.socket | None = None
        self._reader: threading.Thread | None = None
        self._open()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def send_command(self, command: TaskCommand) -> bool:
        """Send a task command; returns False when the channel is not writable."""

        sock = self._socket
        if sock is None or not self.is_ready:
            logger.warning("IPC command %s dropped: client not ready", command.command_name.value)
            return False
        message = IpcMessage(
            type=IpcMessageType.TASK_COMMAND,
            origin=IpcOrigin.CLIENT,
            client_id=self.client_id,
            data=command.model_dump(mode="json", by_alias=True),
        )
        try:
            with self._send_lock:
                sock.sendall(encode_frame(message))
        except OSError as error:
            logger.warning("IPC command %s failed: %s", command.command_name.value, error)
            return False
        return True

    def disconnect(self) -> None:
        """Close the socket; no disconnect notification is queued for local closes."""

        self._closing.set()
        self._ready.clear()
        sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2)

    def _open(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self.socket_path)
        except OSError as error:
            logger.debug("IPC connect to %s failed: %s", self.socket_path, error)
            sock.close()
            return
        self._socket = sock
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(sock,),
            daemon=True,
            name="ipc-client-reader",
        )
        self._reader.start()

    def _read_loop(self, sock: socket.socket) -> None:
        frames = FrameBuffer()
        try:
            while not self._closing.is_set():
                chunk = sock.recv(self._recv_chunk_bytes)
                if not chunk:
                    break
                for frame in frames.feed(chunk):
                    self._dispatch_frame(frame)
        except OSError as error:
            if not self._closing.is_set():
                logger.debug("IPC read from %s failed: %s", self.socket_path, error)
        except IpcProtocolError as error:
            logger.warning("IPC stream from %s is corrupt: %s", self.socket_path, error)
        finally:
            self._ready.clear()
            if not self._closing.is_set():
                self.inbox.put(Disconnect())

    def _dispatch_frame(self, frame: bytes) -> None:
        try:
            message = decode_frame(frame)
        except IpcProtocolError as error:
            logger.warning("Skipping IPC frame: %s", error)
            return
        if message.origin != IpcOrigin.SERVER:
            return
        try:
            if message.type == IpcMessageType.ACK:
                ack = AckData.model_validate(message.data)
                self.client_id = ack.client_id
                self._ready.set()
            elif message.type == IpcMessageType.TASK_EVENT:
                self.inbox.put(TaskEvent.model_validate(message.data))
        except ValidationError as error:
            logger.warning("Skipping malformed %s message: %s", message.type.value, error)
