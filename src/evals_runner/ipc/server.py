"""Minimal editor-side IPC server used by the scripted fake editor."""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

from pydantic import ValidationError

from evals_runner.ipc.messages import (
    AckData,
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

CommandHandler = Callable[[str, TaskCommand], None]


class IpcServer:
    """Accepts IPC clients, acknowledges them and relays task events."""

    def __init__(self, socket_path: Path | str, *, on_command: CommandHandler) -> None:
        self.socket_path = Path(socket_path)
        self._on_command = on_command
        self._clients: dict[str, socket.socket] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None

    def start(self) -> None:
        if self.socket_path.exists():
            self.socket_path.unlink()
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(str(self.socket_path))
        listener.listen(8)
        listener.settimeout(0.2)
        self._listener = listener
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            daemon=True,
            name="ipc-server-accept",
        )
        self._accept_thread.start()

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def broadcast(self, event: TaskEvent) -> None:
        with self._lock:
            clients = list(self._clients.items())
        for client_id, conn in clients:
            message = IpcMessage(
                type=IpcMessageType.TASK_EVENT,
                origin=IpcOrigin.SERVER,
                relay_client_id=client_id,
                data=event.to_wire(),
            )
            self._send(client_id, conn, message)

    def close(self) -> None:
        self._stop.set()
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for conn in clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=2)
        if self.socket_path.exists():
            self.socket_path.unlink()

    def _accept_loop(self) -> None:
        listener = self._listener
        while listener is not None and not self._stop.is_set():
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError:
                return
            conn.settimeout(None)
            client_id = uuid4().hex
            with self._lock:
                self._clients[client_id] = conn
            ack = IpcMessage(
                type=IpcMessageType.ACK,
                origin=IpcOrigin.SERVER,
                data=AckData(client_id=client_id, pid=os.getpid(), ppid=os.getppid()).model_dump(
                    by_alias=True,
                ),
            )
            self._send(client_id, conn, ack)
            threading.Thread(
                target=self._client_loop,
                args=(client_id, conn),
                daemon=True,
                name=f"ipc-server-client-{client_id[:8]}",
            ).start()

    def _client_loop(self, client_id: str, conn: socket.socket) -> None:
        frames = FrameBuffer()
        try:
            while not self._stop.is_set():
                chunk = conn.recv(65_536)
                if not chunk:
                    break
                for frame in frames.feed(chunk):
                    self._handle_frame(client_id, frame)
        except (OSError, IpcProtocolError) as error:
            logger.debug("IPC client %s dropped: %s", client_id, error)
        finally:
            with self._lock:
                self._clients.pop(client_id, None)

    def _handle_frame(self, client_id: str, frame: bytes) -> None:
        try:
            message = decode_frame(frame)
            if message.type != IpcMessageType.TASK_COMMAND:
                return
            command = TaskCommand.model_validate(message.data)
        except (IpcProtocolError, ValidationError) as error:
            logger.warning("Skipping IPC command frame: %s", error)
            return
        self._on_command(client_id, command)

    def _send(self, client_id: str, conn: socket.socket, message: IpcMessage) -> None:
        try:
            conn.sendall(encode_frame(message))
        except OSError as error:
            logger.debug("IPC send to %s failed: %s", client_id, error)
            with self._lock:
                self._clients.pop(client_id, None)
