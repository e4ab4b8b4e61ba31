"""Configuration loading utilities for remote-exec."""

from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .executor import CommandExecutor
from .ssh.credentials import DEFAULT_CONNECT_TIMEOUT, ConnectionConfig
from .ssh.host_keys import POLICY_STRICT, HostKeyVerifier, verifier_from_policy

_DEFAULT_CONFIG_PATH = Path("config/remote_exec.json")

ENV_PREFIX = "REMOTE_EXEC_"


def _decode_env_value(value: str) -> str:
    """Values prefixed with ``base64:`` are decoded to allow multi-line keys."""
    if value.startswith("base64:"):
        return base64.b64decode(value[7:]).decode("utf-8")
    return value


@dataclass
class SSHSettings:
    """Where and how to connect."""

    host: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    key_path: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    host_key_policy: str = POLICY_STRICT   # strict | tofu | accept_any
    known_hosts_path: Optional[str] = None

    def read_private_key(self) -> str:
        if self.private_key:
            return self.private_key
        if not self.key_path:
            raise ValueError("Either private_key or key_path must be configured")
        return Path(self.key_path).expanduser().read_text(encoding="utf-8")

    def to_connection_config(self) -> ConnectionConfig:
        if not self.host:
            raise ValueError("SSH host is not configured")
        if not self.username:
            raise ValueError("SSH username is not configured")
        return ConnectionConfig(
            host=self.host,
            username=self.username,
            private_key=self.read_private_key(),
            port=self.port,
            timeout=self.connect_timeout,
            passphrase=self.passphrase,
        )

    def build_verifier(self) -> HostKeyVerifier:
        return verifier_from_policy(self.host_key_policy, self.known_hosts_path)


@dataclass
class ExecutorSettings:
    """Per-command execution defaults."""

    command_timeout: float = 30.0
    termination_signal: str = "TERM"
    chunk_size: int = 32768

    def build_executor(self) -> CommandExecutor:
        return CommandExecutor(
            termination_signal=self.termination_signal,
            chunk_size=self.chunk_size,
            default_timeout=self.command_timeout,
        )


@dataclass
class AppConfig:
    """Top-level configuration."""

    ssh: SSHSettings = field(default_factory=SSHSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        ssh_payload = payload.get("ssh", {}) or {}
        executor_payload = payload.get("executor", {}) or {}

        # Keys starting with an underscore are comments
        ssh_payload = {k: v for k, v in ssh_payload.items() if not k.startswith("_")}
        executor_payload = {k: v for k, v in executor_payload.items() if not k.startswith("_")}

        return cls(
            ssh=SSHSettings(**{**SSHSettings().__dict__, **ssh_payload}),
            executor=ExecutorSettings(**{**ExecutorSettings().__dict__, **executor_payload}),
        )


def _apply_env_overrides(config: AppConfig) -> None:
    def env(name: str) -> Optional[str]:
        value = os.getenv(ENV_PREFIX + name)
        return value if value else None

    ssh = config.ssh
    if env("SSH_HOST"):
        ssh.host = env("SSH_HOST")
    if env("SSH_PORT"):
        ssh.port = int(env("SSH_PORT"))  # type: ignore[arg-type]
    if env("SSH_USERNAME"):
        ssh.username = env("SSH_USERNAME")
    if env("SSH_KEY_PATH"):
        ssh.key_path = env("SSH_KEY_PATH")
    if env("SSH_PRIVATE_KEY"):
        ssh.private_key = _decode_env_value(env("SSH_PRIVATE_KEY"))  # type: ignore[arg-type]
    if env("SSH_PASSPHRASE"):
        ssh.passphrase = env("SSH_PASSPHRASE")
    if env("SSH_CONNECT_TIMEOUT"):
        ssh.connect_timeout = float(env("SSH_CONNECT_TIMEOUT"))  # type: ignore[arg-type]
    if env("SSH_HOST_KEY_POLICY"):
        ssh.host_key_policy = env("SSH_HOST_KEY_POLICY")  # type: ignore[assignment]
    if env("SSH_KNOWN_HOSTS"):
        ssh.known_hosts_path = env("SSH_KNOWN_HOSTS")

    executor = config.executor
    if env("COMMAND_TIMEOUT"):
        executor.command_timeout = float(env("COMMAND_TIMEOUT"))  # type: ignore[arg-type]
    if env("TERMINATION_SIGNAL"):
        executor.termination_signal = env("TERMINATION_SIGNAL")  # type: ignore[assignment]


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than the config file, also read
    from a ``.env`` file):
    - REMOTE_EXEC_SSH_HOST / _SSH_PORT / _SSH_USERNAME
    - REMOTE_EXEC_SSH_KEY_PATH or REMOTE_EXEC_SSH_PRIVATE_KEY (``base64:`` allowed)
    - REMOTE_EXEC_SSH_PASSPHRASE
    - REMOTE_EXEC_SSH_CONNECT_TIMEOUT
    - REMOTE_EXEC_SSH_HOST_KEY_POLICY: strict, tofu or accept_any
    - REMOTE_EXEC_SSH_KNOWN_HOSTS: known_hosts file for strict/tofu
    - REMOTE_EXEC_COMMAND_TIMEOUT / REMOTE_EXEC_TERMINATION_SIGNAL
    """
    load_dotenv()

    if path:
        candidate = Path(path)
        if not candidate.is_file():
            raise FileNotFoundError(f"Could not find configuration file: {candidate}")
    else:
        candidate = _DEFAULT_CONFIG_PATH

    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        config = AppConfig.from_dict(data)
    else:
        config = AppConfig()

    _apply_env_overrides(config)
    return config
