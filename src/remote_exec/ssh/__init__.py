"""SSH connection management for remote-exec."""

from .connection import Connection, load_private_key, open_connection
from .credentials import DEFAULT_CONNECT_TIMEOUT, ConnectionConfig
from .host_keys import (
    AcceptAnyVerifier,
    HostKeyRejected,
    HostKeyVerifier,
    KnownHostsVerifier,
    TrustOnFirstUseVerifier,
    verifier_from_policy,
)
from .transport import ParamikoSession, Session, SessionFactory, is_closed_error

__all__ = [
    "AcceptAnyVerifier",
    "Connection",
    "ConnectionConfig",
    "DEFAULT_CONNECT_TIMEOUT",
    "HostKeyRejected",
    "HostKeyVerifier",
    "KnownHostsVerifier",
    "ParamikoSession",
    "Session",
    "SessionFactory",
    "TrustOnFirstUseVerifier",
    "is_closed_error",
    "load_private_key",
    "open_connection",
    "verifier_from_policy",
]
