"""
Exceptions raised by the SSH bridge.

Every failure that reaches a caller is one of these. Underlying paramiko and
socket exceptions are chained via ``__cause__`` (``raise ... from exc``).
"""

from typing import Optional


class SSHError(Exception):
    """Base exception for SSH bridge operations."""


class SSHConnectionError(SSHError):
    """Transport or session failure (not established, dropped, channel lost)."""

    def __str__(self) -> str:
        return f"SSH connection error: {self.args[0] if self.args else ''}"


class SSHAuthenticationError(SSHError):
    """The server rejected the password or key."""

    def __str__(self) -> str:
        return f"Authentication failed: {self.args[0] if self.args else ''}"


class SSHTimeoutError(SSHError):
    """A command or elevation deadline expired.

    Attributes:
        timeout_ms: The deadline that was exceeded, in milliseconds.
    """

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Command timeout after {timeout_ms}ms")


class InvalidParamsError(SSHError):
    """Caller input rejected before any remote call was made."""

    def __str__(self) -> str:
        return f"Invalid parameters: {self.args[0] if self.args else ''}"


class ElevationError(SSHError):
    """The ``su`` handshake could not be completed.

    Attributes:
        buffer: Shell output captured when the failure was detected (may be empty).
    """

    def __init__(self, message: str, buffer: Optional[str] = None):
        self.buffer = buffer or ""
        super().__init__(message)

    def __str__(self) -> str:
        return f"Elevation failed: {self.args[0] if self.args else ''}"


class ConfigError(SSHError):
    """Bad startup configuration."""

    def __str__(self) -> str:
        return f"Configuration error: {self.args[0] if self.args else ''}"


class SSHKeyError(SSHError):
    """Private key material could not be parsed."""

    def __str__(self) -> str:
        return f"SSH key error: {self.args[0] if self.args else ''}"


__all__ = [
    "SSHError",
    "SSHConnectionError",
    "SSHAuthenticationError",
    "SSHTimeoutError",
    "InvalidParamsError",
    "ElevationError",
    "ConfigError",
    "SSHKeyError",
]
