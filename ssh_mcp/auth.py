"""
Authentication strategies run on a freshly started paramiko Transport.

Both strategies are synchronous (paramiko blocks) and are called from the
connection worker thread, after the SSH handshake and before the session is
handed to the rest of the bridge.
"""

from __future__ import annotations

import io
import logging
from typing import Optional

import paramiko

from ssh_mcp.config import ConnectionConfig
from ssh_mcp.errors import SSHAuthenticationError, SSHKeyError

logger = logging.getLogger(__name__)

# Tried in order; each class rejects material of another type with SSHException.
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(material: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse OpenSSH/PEM private key text.

    Raises:
        SSHKeyError: If the material is not a supported key, or is encrypted
            and no (or a wrong) passphrase was given
    """
    errors = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(material), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise SSHKeyError("Private key is encrypted; a passphrase is required") from exc
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise SSHKeyError(f"Failed to parse private key ({'; '.join(errors)})")


class AuthenticationStrategy:
    """Logs a user in on an SSH transport."""

    method = "none"

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        raise NotImplementedError

    def _check(self, transport: paramiko.Transport, what: str) -> None:
        if not transport.is_authenticated():
            raise SSHAuthenticationError(f"{what} authentication rejected")
        logger.info("%s authentication successful", what)


class PasswordAuthentication(AuthenticationStrategy):
    method = "password"

    def __init__(self, password: str):
        self._password = password

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        logger.debug("Attempting password authentication for user '%s'", username)
        try:
            transport.auth_password(username, self._password)
        except paramiko.AuthenticationException as exc:
            raise SSHAuthenticationError(str(exc) or "Password authentication rejected") from exc
        self._check(transport, "Password")


class KeyAuthentication(AuthenticationStrategy):
    method = "publickey"

    def __init__(self, material: str, passphrase: Optional[str] = None):
        self._material = material
        self._passphrase = passphrase
        self._key: Optional[paramiko.PKey] = None

    @property
    def key(self) -> paramiko.PKey:
        if self._key is None:
            self._key = load_private_key(self._material, self._passphrase)
        return self._key

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        logger.debug("Attempting key authentication for user '%s'", username)
        key = self.key
        try:
            transport.auth_publickey(username, key)
        except paramiko.AuthenticationException as exc:
            raise SSHAuthenticationError(str(exc) or "Key authentication rejected") from exc
        self._check(transport, "Key")


def strategy_for(config: ConnectionConfig) -> AuthenticationStrategy:
    """Pick the strategy matching the configured credential."""
    if config.password is not None:
        return PasswordAuthentication(config.password)
    if config.private_key is not None:
        return KeyAuthentication(config.private_key, config.key_passphrase)
    raise SSHAuthenticationError("No authentication method available (require password or private_key)")
