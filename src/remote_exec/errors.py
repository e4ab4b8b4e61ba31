"""Error kinds and exceptions shared by the connection manager and executor."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .executor import CommandResult


class ErrorKind(str, Enum):
    """Classification of every failure the core can report."""

    AUTH_KEY_INVALID = "AuthKeyInvalid"
    CONNECT_TIMEOUT = "ConnectTimeout"
    CONNECT_REFUSED = "ConnectRefused"
    HANDSHAKE_FAILED = "HandshakeFailed"
    SESSION_CREATE_FAILED = "SessionCreateFailed"
    COMMAND_START_FAILED = "CommandStartFailed"
    STREAM_READ_FAILED = "StreamReadFailed"
    COMMAND_FAILED = "CommandFailed"
    CANCELLED = "Cancelled"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    CLOSE_FAILED = "CloseFailed"


class RemoteExecError(RuntimeError):
    """Base error carrying an :class:`ErrorKind`."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


class SSHConnectionError(RemoteExecError):
    """Raised when an SSH connection cannot be established or closed."""

    pass


class SessionError(RemoteExecError):
    """Raised when a session cannot be opened on a connection."""

    pass


class CommandError(RemoteExecError):
    """Raised by ``CommandResult.raise_for_status`` for failed results."""

    def __init__(self, result: "CommandResult") -> None:
        assert result.error_kind is not None
        super().__init__(result.error_kind, result.detail)
        self.result = result

    @property
    def exit_status(self) -> Optional[int]:
        return self.result.exit_status
