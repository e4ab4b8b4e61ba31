"""Run one command over an open connection and classify the outcome.

Each :meth:`CommandExecutor.run` call opens a fresh session, attaches both
output streams before starting the command, and then drives three threads:
two drain stdout and stderr to end-of-stream, and a supervisor waits for the
exit status and assembles the outcome once both readers are done; a failed
read ends the wait early as ``StreamReadFailed``. The calling
thread waits for that outcome, for the caller's cancel event, or for the
deadline, whichever comes first. Cancellation and deadline both send a
termination signal to the remote process before returning. The session is
closed on every path; abandoned threads observe the close and exit.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional

from .errors import CommandError, ErrorKind, SessionError
from .ssh.transport import Session, SessionFactory, is_closed_error

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_CHUNK_SIZE = 32768
DEFAULT_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single remote command.

    ``output`` holds the complete stdout bytes when the command succeeded.
    ``stderr`` is only kept on failure, as diagnostic detail.
    """

    command: str
    output: bytes = b""
    error_kind: Optional[ErrorKind] = None
    detail: str = ""
    exit_status: Optional[int] = None
    stderr: bytes = b""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def stdout(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    def raise_for_status(self) -> "CommandResult":
        if not self.ok:
            raise CommandError(self)
        return self

    @classmethod
    def success(cls, command: str, output: bytes, duration: float = 0.0) -> "CommandResult":
        return cls(command=command, output=output, exit_status=0, duration=duration)

    @classmethod
    def failure(
        cls,
        command: str,
        kind: ErrorKind,
        detail: str,
        *,
        exit_status: Optional[int] = None,
        stderr: bytes = b"",
        duration: float = 0.0,
    ) -> "CommandResult":
        return cls(
            command=command,
            error_kind=kind,
            detail=detail,
            exit_status=exit_status,
            stderr=stderr,
            duration=duration,
        )


class _CommandRun:
    """Threads and collected state for one started command."""

    def __init__(
        self,
        session: Session,
        stdout: BinaryIO,
        stderr: BinaryIO,
        chunk_size: int,
    ) -> None:
        self._session = session
        self._streams = {"stdout": stdout, "stderr": stderr}
        self._chunk_size = chunk_size
        self.finished = threading.Event()
        self.data: Dict[str, bytes] = {"stdout": b"", "stderr": b""}
        self.read_errors: Dict[str, BaseException] = {}
        self.exit_status: Optional[int] = None
        self.wait_error: Optional[BaseException] = None

    def start(self) -> None:
        threading.Thread(target=self._supervise, name="remote-exec-wait", daemon=True).start()

    def _supervise(self) -> None:
        readers = [
            threading.Thread(target=self._drain, args=(name,), name=f"remote-exec-{name}", daemon=True)
            for name in self._streams
        ]
        for reader in readers:
            reader.start()
        try:
            self.exit_status = self._session.wait()
        except Exception as exc:
            self.wait_error = exc
        for reader in readers:
            reader.join()
        self.finished.set()

    def _drain(self, name: str) -> None:
        stream = self._streams[name]
        chunks: List[bytes] = []
        try:
            while True:
                chunk = stream.read(self._chunk_size)
                if not chunk:
                    break
                chunks.append(chunk)
        except Exception as exc:
            self.read_errors[name] = exc
        finally:
            self.data[name] = b"".join(chunks)
        if name in self.read_errors:
            # The peer may be blocked writing to the stream nobody reads any more.
            self.finished.set()


class CommandExecutor:
    """Execute single commands on a connection with deadline and cancellation."""

    def __init__(
        self,
        *,
        termination_signal: str = "TERM",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self.termination_signal = termination_signal
        self.chunk_size = chunk_size
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def run(
        self,
        connection: SessionFactory,
        command: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        """Run ``command`` and return exactly one :class:`CommandResult`.

        Args:
            connection: Anything with ``open_session()``, usually a ``Connection``.
            command: Literal command string passed to the remote exec request.
            timeout: Seconds from command start until ``DeadlineExceeded``.
                ``None`` uses ``default_timeout``.
            cancel: Event the caller sets to abort the command.
        """
        if timeout is None:
            timeout = self.default_timeout
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        started = time.monotonic()
        try:
            session = connection.open_session()
        except SessionError as exc:
            return CommandResult.failure(command, exc.kind, exc.message, duration=time.monotonic() - started)
        except Exception as exc:
            return CommandResult.failure(
                command,
                ErrorKind.SESSION_CREATE_FAILED,
                f"failed to create session: {exc}",
                duration=time.monotonic() - started,
            )

        result: Optional[CommandResult] = None
        try:
            result = self._run_in_session(session, command, timeout, cancel, started)
        finally:
            close_error = self._close_session(session)
            if result is not None:
                result = self._merge_close_error(result, close_error)
        return result

    def _run_in_session(
        self,
        session: Session,
        command: str,
        timeout: float,
        cancel: Optional[threading.Event],
        started: float,
    ) -> CommandResult:
        try:
            stdout = session.stdout_stream()
            stderr = session.stderr_stream()
        except Exception as exc:
            return CommandResult.failure(
                command,
                ErrorKind.SESSION_CREATE_FAILED,
                f"failed to attach output streams: {exc}",
                duration=time.monotonic() - started,
            )

        logger.debug("Starting remote command: %s", command)
        try:
            session.exec(command)
        except Exception as exc:
            return CommandResult.failure(
                command,
                ErrorKind.COMMAND_START_FAILED,
                f"failed to start command: {exc}",
                duration=time.monotonic() - started,
            )

        run = _CommandRun(session, stdout, stderr, self.chunk_size)
        run.start()

        terminal = self._await(run, timeout, cancel)
        if terminal is ErrorKind.CANCELLED:
            logger.info("Command cancelled by caller; sending SIG%s", self.termination_signal)
            self._terminate(session)
            return CommandResult.failure(
                command, ErrorKind.CANCELLED, "command cancelled", duration=time.monotonic() - started
            )
        if terminal is ErrorKind.DEADLINE_EXCEEDED:
            logger.warning("Command exceeded %.1fs deadline; sending SIG%s", timeout, self.termination_signal)
            self._terminate(session)
            return CommandResult.failure(
                command,
                ErrorKind.DEADLINE_EXCEEDED,
                f"command did not complete within {timeout}s",
                duration=time.monotonic() - started,
            )
        return self._assemble(command, run, time.monotonic() - started)

    def _await(
        self,
        run: _CommandRun,
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> Optional[ErrorKind]:
        """Return ``None`` on completion, else the terminal kind that fired first."""
        deadline = time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                return ErrorKind.CANCELLED
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return ErrorKind.DEADLINE_EXCEEDED
            if run.finished.wait(min(self.poll_interval, remaining)):
                return None

    def _assemble(self, command: str, run: _CommandRun, duration: float) -> CommandResult:
        stdout = run.data["stdout"]
        stderr = run.data["stderr"]
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        if run.read_errors and run.exit_status is None and run.wait_error is None:
            name, exc = next(iter(run.read_errors.items()))
            return CommandResult.failure(
                command,
                ErrorKind.STREAM_READ_FAILED,
                f"failed to read {name}: {exc}",
                stderr=stderr,
                duration=duration,
            )

        if run.wait_error is not None:
            detail = f"command failed: {run.wait_error}"
            if stderr_text:
                detail = f"{detail}: {stderr_text}"
            return CommandResult.failure(
                command, ErrorKind.COMMAND_FAILED, detail, stderr=stderr, duration=duration
            )

        status = run.exit_status
        if status != 0:
            reason = "no exit status" if status is None or status < 0 else f"exit status {status}"
            detail = f"command failed: {reason}"
            if stderr_text:
                detail = f"{detail}: {stderr_text}"
            for name, exc in run.read_errors.items():
                detail = f"{detail} (failed to read {name}: {exc})"
            return CommandResult.failure(
                command,
                ErrorKind.COMMAND_FAILED,
                detail,
                exit_status=status,
                stderr=stderr,
                duration=duration,
            )

        if run.read_errors:
            name, exc = next(iter(run.read_errors.items()))
            return CommandResult.failure(
                command,
                ErrorKind.STREAM_READ_FAILED,
                f"failed to read {name}: {exc}",
                exit_status=status,
                stderr=stderr,
                duration=duration,
            )

        return CommandResult.success(command, stdout, duration=duration)

    def _terminate(self, session: Session) -> None:
        try:
            session.signal(self.termination_signal)
        except Exception as exc:
            if is_closed_error(exc):
                logger.debug("Session already closed, SIG%s not delivered: %s", self.termination_signal, exc)
            else:
                logger.warning("Error sending SIG%s: %s", self.termination_signal, exc)

    def _close_session(self, session: Session) -> Optional[BaseException]:
        try:
            session.close()
        except Exception as exc:
            if is_closed_error(exc):
                logger.debug("Session already closed by peer: %s", exc)
                return None
            logger.warning("Error closing session: %s", exc)
            return exc
        return None

    @staticmethod
    def _merge_close_error(result: CommandResult, close_error: Optional[BaseException]) -> CommandResult:
        if close_error is None:
            return result
        if result.ok:
            return CommandResult(
                command=result.command,
                output=result.output,
                error_kind=ErrorKind.CLOSE_FAILED,
                detail=f"failed to close session: {close_error}",
                exit_status=result.exit_status,
                duration=result.duration,
            )
        return CommandResult(
            command=result.command,
            output=result.output,
            error_kind=result.error_kind,
            detail=f"{result.detail} (additionally failed to close session: {close_error})",
            exit_status=result.exit_status,
            stderr=result.stderr,
            duration=result.duration,
        )


def run_command(
    connection: SessionFactory,
    command: str,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> CommandResult:
    """Run ``command`` with a default :class:`CommandExecutor`."""
    return CommandExecutor().run(connection, command, timeout=timeout, cancel=cancel)
