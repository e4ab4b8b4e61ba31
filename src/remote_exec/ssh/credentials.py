"""SSH connection settings."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

DEFAULT_CONNECT_TIMEOUT = 30.0


@dataclass(frozen=True)
class ConnectionConfig:
    """Immutable description of one remote endpoint and identity."""

    host: str
    username: str
    private_key: str = field(repr=False)
    port: int = 22
    timeout: Optional[float] = None
    passphrase: Optional[str] = field(default=None, repr=False)

    def validate(self) -> None:
        if not self.host or not self.host.strip():
            raise ValueError("host must be a non-empty string")
        if not self.username:
            raise ValueError("username must be a non-empty string")
        if not self.private_key:
            raise ValueError("private key material is required")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ValueError(f"port must be 1-65535, got {self.port}")

    @property
    def effective_timeout(self) -> float:
        if self.timeout is None or self.timeout <= 0:
            return DEFAULT_CONNECT_TIMEOUT
        return float(self.timeout)

    def normalized(self) -> "ConnectionConfig":
        """Return a copy whose timeout is always a positive number."""
        return replace(self, timeout=self.effective_timeout)
