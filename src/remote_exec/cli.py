"""Command-line interface for remote-exec."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, replace
from typing import Optional

from .config import AppConfig, load_config
from .errors import ErrorKind, RemoteExecError
from .executor import CommandResult
from .ssh import Connection, open_connection
from .utils.logging import get_logger

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_COMMAND_FAILED = 1
EXIT_CONNECTION_ERROR = 2
EXIT_CLOSE_FAILED = 3
EXIT_DEADLINE = 124
EXIT_CANCELLED = 130

_EXIT_CODES = {
    ErrorKind.DEADLINE_EXCEEDED: EXIT_DEADLINE,
    ErrorKind.CANCELLED: EXIT_CANCELLED,
    ErrorKind.CLOSE_FAILED: EXIT_CLOSE_FAILED,
    ErrorKind.SESSION_CREATE_FAILED: EXIT_CONNECTION_ERROR,
}


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remote-exec",
        description="Run a single command on a remote host over SSH.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument("--host", help="Target host")
    parser.add_argument("--port", type=int, default=None, help="SSH port")
    parser.add_argument("--user", help="SSH username")
    parser.add_argument("--key-path", default=None, help="Path to SSH private key")
    parser.add_argument(
        "--host-key-policy",
        choices=["strict", "tofu", "accept_any"],
        default=None,
        help="Host key verification policy (default: strict)",
    )
    parser.add_argument("--known-hosts", default=None, help="known_hosts file for strict/tofu")
    parser.add_argument(
        "--connect-timeout", type=float, default=None, help="Connection setup timeout in seconds"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    run_parser = subparsers.add_parser("run", help="Execute a command and print its output")
    run_parser.add_argument(
        "--timeout", type=float, default=None, help="Command deadline in seconds"
    )
    run_parser.add_argument("remote_command", nargs=argparse.REMAINDER, help="Command to run")

    subparsers.add_parser("check", help="Connect and verify the host accepts sessions")

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    ssh = config.ssh
    config.ssh = replace(
        ssh,
        host=args.host or ssh.host,
        port=args.port or ssh.port,
        username=args.user or ssh.username,
        key_path=args.key_path or ssh.key_path,
        host_key_policy=args.host_key_policy or ssh.host_key_policy,
        known_hosts_path=args.known_hosts or ssh.known_hosts_path,
        connect_timeout=args.connect_timeout or ssh.connect_timeout,
    )
    return CLIContext(config=config)


def exit_code_for(result: CommandResult) -> int:
    if result.ok:
        return EXIT_OK
    assert result.error_kind is not None
    return _EXIT_CODES.get(result.error_kind, EXIT_COMMAND_FAILED)


def handle_run_command(args: argparse.Namespace, context: CLIContext) -> int:
    """Handle the run subcommand."""
    parts = list(args.remote_command)
    if parts and parts[0] == "--":
        parts = parts[1:]
    if not parts:
        print("No command given", file=sys.stderr)
        return EXIT_COMMAND_FAILED
    command = " ".join(parts)

    executor = context.config.executor.build_executor()
    ssh = context.config.ssh
    connection = open_connection(ssh.to_connection_config(), ssh.build_verifier())
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        result = executor.run(connection, command, timeout=args.timeout, cancel=cancel)
    finally:
        signal.signal(signal.SIGINT, previous)
        close_error = _close_connection(connection)

    if result.output:
        sys.stdout.buffer.write(result.output)
        sys.stdout.flush()
    if not result.ok:
        print(result.detail, file=sys.stderr)
    if close_error is not None:
        print(str(close_error), file=sys.stderr)
        if result.ok:
            return EXIT_CLOSE_FAILED
    return exit_code_for(result)


def handle_check_command(context: CLIContext) -> int:
    """Handle the check subcommand."""
    ssh = context.config.ssh
    connection = open_connection(ssh.to_connection_config(), ssh.build_verifier())
    try:
        connection.validate_connection()
    finally:
        close_error = _close_connection(connection)
    print(f"{ssh.username}@{ssh.host}:{ssh.port} is reachable")
    if close_error is not None:
        print(str(close_error), file=sys.stderr)
        return EXIT_CLOSE_FAILED
    return EXIT_OK


def _close_connection(connection: Connection) -> Optional[RemoteExecError]:
    """Close ``connection``; a close failure never replaces the primary outcome."""
    try:
        connection.close()
    except RemoteExecError as exc:
        logger.warning("%s", exc)
        return exc
    return None


def dispatch_command(args: argparse.Namespace) -> int:
    try:
        context = _build_context(args)
        if args.command == "run":
            return handle_run_command(args, context)
        if args.command == "check":
            return handle_check_command(context)
    except RemoteExecError as exc:
        logger.error("%s", exc)
        print(str(exc), file=sys.stderr)
        return EXIT_CONNECTION_ERROR
    except (ValueError, TypeError, OSError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR
    raise ValueError(f"Unknown command: {args.command}")


def run_cli(argv: Optional[list[str]] = None) -> int:
    get_logger()
    parser = build_parser()
    args = parser.parse_args(argv)
    return dispatch_command(args)
