"""Host key verification policies.

The connection manager never picks a policy on its own: callers pass one of
these verifiers (or build one from a policy name with
:func:`verifier_from_policy`).
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional, Protocol

import paramiko

logger = logging.getLogger(__name__)

POLICY_STRICT = "strict"
POLICY_TOFU = "tofu"
POLICY_ACCEPT_ANY = "accept_any"


class HostKeyRejected(Exception):
    """Raised when a server presents a host key the policy does not accept."""

    pass


class HostKeyVerifier(Protocol):
    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None: ...


def known_hosts_name(hostname: str, port: int) -> str:
    """Return the OpenSSH known_hosts entry name for ``hostname:port``."""
    if port == 22:
        return hostname
    return f"[{hostname}]:{port}"


def _fingerprint(key: paramiko.PKey) -> str:
    return f"{key.get_name()} {key.get_fingerprint().hex()}"


class KnownHostsVerifier:
    """Strict verification against a known_hosts database."""

    def __init__(self, host_keys: Optional[paramiko.HostKeys] = None) -> None:
        self.host_keys = host_keys if host_keys is not None else paramiko.HostKeys()

    @classmethod
    def from_file(cls, path: Optional[str] = None) -> "KnownHostsVerifier":
        path = os.path.expanduser(path or "~/.ssh/known_hosts")
        host_keys = paramiko.HostKeys()
        if os.path.exists(path):
            host_keys.load(path)
        else:
            logger.warning("known_hosts file %s does not exist; every host will be rejected", path)
        return cls(host_keys)

    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None:
        name = known_hosts_name(hostname, port)
        known = self.host_keys.lookup(name)
        if not known:
            raise HostKeyRejected(f"host {name} is not in known_hosts ({_fingerprint(key)})")
        if not self.host_keys.check(name, key):
            raise HostKeyRejected(f"host key mismatch for {name} ({_fingerprint(key)})")


class TrustOnFirstUseVerifier:
    """Accept unknown hosts once, then pin the key for this process."""

    def __init__(self, host_keys: Optional[paramiko.HostKeys] = None) -> None:
        self.host_keys = host_keys if host_keys is not None else paramiko.HostKeys()
        self._lock = threading.Lock()

    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None:
        name = known_hosts_name(hostname, port)
        with self._lock:
            if not self.host_keys.lookup(name):
                logger.info("Trusting new host key for %s: %s", name, _fingerprint(key))
                self.host_keys.add(name, key.get_name(), key)
                return
            if not self.host_keys.check(name, key):
                raise HostKeyRejected(f"host key mismatch for {name} ({_fingerprint(key)})")


class AcceptAnyVerifier:
    """Accept every host key. Only meant for tests and throwaway hosts."""

    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None:
        logger.warning(
            "Host key for %s accepted without verification (%s)",
            known_hosts_name(hostname, port),
            _fingerprint(key),
        )


def verifier_from_policy(policy: str, known_hosts_path: Optional[str] = None) -> HostKeyVerifier:
    """Build a verifier from a configuration policy name."""
    normalized = (policy or "").strip().lower()
    if normalized == POLICY_STRICT:
        return KnownHostsVerifier.from_file(known_hosts_path)
    if normalized == POLICY_TOFU:
        if known_hosts_path:
            return TrustOnFirstUseVerifier(KnownHostsVerifier.from_file(known_hosts_path).host_keys)
        return TrustOnFirstUseVerifier()
    if normalized == POLICY_ACCEPT_ANY:
        return AcceptAnyVerifier()
    raise ValueError(
        f"Unknown host key policy {policy!r}; expected one of "
        f"{POLICY_STRICT}, {POLICY_TOFU}, {POLICY_ACCEPT_ANY}"
    )
