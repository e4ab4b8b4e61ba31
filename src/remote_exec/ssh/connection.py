"""Connection management built on Paramiko."""

from __future__ import annotations

import io
import logging
import socket
import threading
import time
from typing import Callable, List, Optional, Type

import paramiko

from ..errors import ErrorKind, SessionError, SSHConnectionError
from .credentials import ConnectionConfig
from .host_keys import HostKeyRejected, HostKeyVerifier
from .transport import ParamikoSession, is_closed_error

logger = logging.getLogger(__name__)

Dialer = Callable[[str, int, float], socket.socket]


def _key_types() -> List[Type[paramiko.PKey]]:
    key_types: List[Type[paramiko.PKey]] = [
        paramiko.RSAKey,
        paramiko.Ed25519Key,
        paramiko.ECDSAKey,
    ]
    # DSSKey was removed in paramiko 4.x
    if hasattr(paramiko, "DSSKey"):
        key_types.append(paramiko.DSSKey)
    return key_types


def load_private_key(key_material: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key text into a paramiko key."""
    last_error: Optional[Exception] = None
    for key_class in _key_types():
        try:
            return key_class.from_private_key(io.StringIO(key_material), password=passphrase)
        except Exception as exc:
            last_error = exc
            continue
    raise SSHConnectionError(
        ErrorKind.AUTH_KEY_INVALID, f"unable to parse private key: {last_error}"
    ) from last_error


def _default_dialer(host: str, port: int, timeout: float) -> socket.socket:
    return socket.create_connection((host, port), timeout=timeout)


def _remaining(deadline: float) -> float:
    return deadline - time.monotonic()


class Connection:
    """One authenticated, multiplexed transport to a single remote host."""

    def __init__(self, config: ConnectionConfig, transport: paramiko.Transport) -> None:
        self.config = config
        self._transport = transport
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Connection {self.config.username}@{self.config.host}:{self.config.port} {state}>"

    @property
    def is_active(self) -> bool:
        if self._closed:
            return False
        try:
            return bool(self._transport.is_active())
        except Exception:
            return False

    def open_session(self) -> ParamikoSession:
        if self._closed:
            raise SessionError(ErrorKind.SESSION_CREATE_FAILED, "connection is closed")
        try:
            channel = self._transport.open_session(timeout=self.config.effective_timeout)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            logger.warning("Failed to open session on %s: %s", self.config.host, exc)
            raise SessionError(
                ErrorKind.SESSION_CREATE_FAILED, f"failed to create session: {exc}"
            ) from exc
        return ParamikoSession(channel)

    def validate_connection(self) -> None:
        """Prove the transport is alive by opening and discarding a session."""
        session = self.open_session()
        try:
            session.close()
        except Exception as exc:
            if not is_closed_error(exc):
                logger.warning("Error closing validation session: %s", exc)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._transport.close()
        except Exception as exc:
            if is_closed_error(exc):
                logger.debug("Transport to %s already torn down: %s", self.config.host, exc)
                return
            raise SSHConnectionError(ErrorKind.CLOSE_FAILED, f"failed to close connection: {exc}") from exc
        logger.info("Closed connection to %s:%s", self.config.host, self.config.port)


def _handshake(
    sock: socket.socket,
    config: ConnectionConfig,
    pkey: paramiko.PKey,
    verifier: HostKeyVerifier,
    deadline: float,
) -> paramiko.Transport:
    transport = paramiko.Transport(sock)
    defaults = (transport.banner_timeout, transport.handshake_timeout, transport.auth_timeout)
    try:
        remaining = _remaining(deadline)
        transport.banner_timeout = remaining
        transport.handshake_timeout = remaining
        transport.start_client(timeout=remaining)

        verifier.verify(config.host, config.port, transport.get_remote_server_key())

        remaining = _remaining(deadline)
        if remaining <= 0:
            raise paramiko.SSHException("handshake deadline exceeded before authentication")
        transport.auth_timeout = remaining
        transport.auth_publickey(config.username, pkey)
    except HostKeyRejected as exc:
        transport.close()
        raise SSHConnectionError(ErrorKind.HANDSHAKE_FAILED, f"host key rejected: {exc}") from exc
    except (paramiko.SSHException, EOFError, OSError) as exc:
        transport.close()
        raise SSHConnectionError(ErrorKind.HANDSHAKE_FAILED, f"SSH handshake failed: {exc}") from exc

    # Later rekeys must not inherit the connect budget.
    transport.banner_timeout, transport.handshake_timeout, transport.auth_timeout = defaults
    return transport


def open_connection(
    config: ConnectionConfig,
    host_key_verifier: HostKeyVerifier,
    *,
    dialer: Optional[Dialer] = None,
) -> Connection:
    """Dial, handshake and authenticate within ``config.timeout`` seconds.

    Raises:
        SSHConnectionError: with kind ``AuthKeyInvalid``, ``ConnectTimeout``,
            ``ConnectRefused`` or ``HandshakeFailed``.
        ValueError: if ``config`` is incomplete.
    """
    config.validate()
    config = config.normalized()
    timeout = config.effective_timeout

    pkey = load_private_key(config.private_key, config.passphrase)

    deadline = time.monotonic() + timeout
    dial = dialer or _default_dialer
    logger.info("Connecting to %s:%s as %s", config.host, config.port, config.username)
    try:
        sock = dial(config.host, config.port, timeout)
    except socket.timeout as exc:
        raise SSHConnectionError(
            ErrorKind.CONNECT_TIMEOUT,
            f"timed out connecting to {config.host}:{config.port} after {timeout}s",
        ) from exc
    except OSError as exc:
        raise SSHConnectionError(
            ErrorKind.CONNECT_REFUSED, f"failed to connect to {config.host}:{config.port}: {exc}"
        ) from exc

    try:
        transport = _handshake(sock, config, pkey, host_key_verifier, deadline)
    except BaseException:
        sock.close()
        raise

    logger.info("Connected to %s:%s", config.host, config.port)
    return Connection(config, transport)
