"""Session capability consumed by the executor, and its paramiko adapter."""

from __future__ import annotations

import logging
import re
import threading
from typing import BinaryIO, Optional, Protocol

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST
from paramiko.message import Message

logger = logging.getLogger(__name__)

_CLOSED_MESSAGE = re.compile(
    r"\beof\b"
    r"|closed network connection"
    r"|connection reset by peer"
    r"|broken pipe"
    r"|socket is closed"
    r"|channel (?:is )?closed"
    r"|already closed",
    re.IGNORECASE,
)


class Session(Protocol):
    """A single command's execution context within a connection."""

    def stdout_stream(self) -> BinaryIO: ...
    def stderr_stream(self) -> BinaryIO: ...
    def exec(self, command: str) -> None: ...
    def wait(self) -> int: ...
    def signal(self, name: str) -> None: ...
    def close(self) -> None: ...


class SessionFactory(Protocol):
    def open_session(self) -> Session: ...


def is_closed_error(exc: Optional[BaseException]) -> bool:
    """Return True if ``exc`` only reflects a peer that already tore down."""
    if exc is None:
        return False
    if isinstance(exc, (EOFError, ConnectionResetError, BrokenPipeError)):
        return True
    return _CLOSED_MESSAGE.search(str(exc)) is not None


class ParamikoSession:
    """Session backed by a paramiko ``Channel`` of kind ``session``."""

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self._lock = threading.Lock()
        self._closed = False

    @property
    def channel(self) -> paramiko.Channel:
        return self._channel

    def stdout_stream(self) -> BinaryIO:
        return self._channel.makefile("rb")  # type: ignore[return-value]

    def stderr_stream(self) -> BinaryIO:
        return self._channel.makefile_stderr("rb")  # type: ignore[return-value]

    def exec(self, command: str) -> None:
        self._channel.exec_command(command)

    def wait(self) -> int:
        return self._channel.recv_exit_status()

    def signal(self, name: str) -> None:
        """Send an RFC 4254 ``signal`` request (signal name without ``SIG``)."""
        if self._channel.closed:
            raise paramiko.SSHException("Channel is closed")
        transport = self._channel.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("Channel closed: transport is not active")
        m = Message()
        m.add_byte(cMSG_CHANNEL_REQUEST)
        m.add_int(self._channel.remote_chanid)
        m.add_string("signal")
        m.add_boolean(False)
        m.add_string(name)
        transport._send_user_message(m)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._channel.close()
