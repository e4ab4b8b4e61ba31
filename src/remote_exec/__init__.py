"""Remote command execution over SSH with deadlines and cancellation."""

from .errors import CommandError, ErrorKind, RemoteExecError, SessionError, SSHConnectionError
from .executor import CommandExecutor, CommandResult, run_command
from .ssh import Connection, ConnectionConfig, open_connection

__all__ = [
    "CommandError",
    "CommandExecutor",
    "CommandResult",
    "Connection",
    "ConnectionConfig",
    "ErrorKind",
    "RemoteExecError",
    "SSHConnectionError",
    "SessionError",
    "open_connection",
    "run_command",
]

__version__ = "0.1.0"
