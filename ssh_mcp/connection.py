"""
Persistent SSH connection with single-flight connect and optional su elevation.

One paramiko Transport is kept per manager. Blocking paramiko work (TCP
connect, handshake, authentication, channel open) runs in the event loop's
default executor; everything else happens on the loop.

Example:
    manager = ConnectionManager(ConnectionConfig("10.0.0.5", "admin", password="pw"))
    await manager.ensure_connected()
    channel = await manager.open_channel()
    ...
    await manager.close()
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional

import paramiko

from ssh_mcp.auth import AuthenticationStrategy, strategy_for
from ssh_mcp.config import CHANNEL_OPEN_TIMEOUT, CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, ConnectionConfig
from ssh_mcp.elevation import ElevationEngine
from ssh_mcp.errors import SSHConnectionError, SSHError
from ssh_mcp.utils import run_blocking

logger = logging.getLogger(__name__)


def _discard_transport(future: asyncio.Future) -> None:
    """Close a transport whose handshake finished after its caller gave up."""
    if future.cancelled() or future.exception() is not None:
        return
    logger.debug("Closing abandoned transport")
    future.result().close()


class ConnectionManager:
    """Owns the SSH session and the elevation engine bound to it.

    Args:
        config: Immutable connection record
        auth: Authentication strategy (default: derived from the config credential)
    """

    def __init__(self, config: ConnectionConfig, auth: Optional[AuthenticationStrategy] = None):
        self.config = config
        self._auth = auth if auth is not None else strategy_for(config)

        # Session slot, guarded by _session_lock
        self._session_lock = asyncio.Lock()
        self._transport: Optional[paramiko.Transport] = None

        # Single-flight connect: the running attempt, awaited by later callers
        self._connecting: Optional[asyncio.Future] = None
        self._last_connect_error: Optional[BaseException] = None

        self.elevation = ElevationEngine(self, config.su_password)

    @property
    def su_password(self) -> Optional[str]:
        return self.config.su_password

    @property
    def sudo_password(self) -> Optional[str]:
        return self.config.sudo_password

    async def is_connected(self) -> bool:
        """True when a session is stored and its transport is still active.

        A dead transport is dropped here so the next ensure_connected() reconnects.
        """
        async with self._session_lock:
            transport = self._transport
            if transport is None:
                return False
            if transport.is_active():
                return True
            self._transport = None

        logger.warning("SSH transport to %s:%d is no longer active; dropping session", self.config.host, self.config.port)
        self.elevation.reset()
        try:
            transport.close()
        except Exception as exc:
            logger.debug("closing dead transport failed: %s", exc)
        return False

    async def connect(self) -> None:
        """Establish the SSH session.

        Returns immediately when connected. When another task is already
        connecting, waits for that attempt instead of starting a second one.

        Raises:
            SSHConnectionError: Network failure, timeout, or the other task's attempt failed
            SSHAuthenticationError: Credentials rejected
            SSHKeyError: Private key could not be parsed
        """
        if await self.is_connected():
            logger.debug("Already connected to SSH server")
            return

        if self._connecting is not None:
            logger.debug("Another connection attempt in progress, waiting...")
            await asyncio.shield(self._connecting)
            if await self.is_connected():
                return
            reason = f": {self._last_connect_error}" if self._last_connect_error is not None else ""
            raise SSHConnectionError(f"Connection failed by another task{reason}")

        attempt = asyncio.get_running_loop().create_future()
        self._connecting = attempt
        try:
            await self._do_connect()
            self._last_connect_error = None
        except BaseException as exc:
            self._last_connect_error = exc
            raise
        finally:
            self._connecting = None
            attempt.set_result(None)

    async def ensure_connected(self) -> None:
        """Connect if not already connected."""
        if not await self.is_connected():
            await self.connect()

    async def _do_connect(self) -> None:
        cfg = self.config
        logger.info("Connecting to SSH server %s:%d...", cfg.host, cfg.port)

        pending = asyncio.ensure_future(run_blocking(self._open_transport))
        try:
            transport = await asyncio.wait_for(asyncio.shield(pending), CONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            pending.add_done_callback(_discard_transport)
            logger.error("SSH connection timeout after %ds", CONNECT_TIMEOUT)
            raise SSHConnectionError(f"Connection timeout after {CONNECT_TIMEOUT}s") from None
        except asyncio.CancelledError:
            pending.add_done_callback(_discard_transport)
            raise
        except SSHError as exc:
            logger.error("SSH login to %s:%d failed: %s", cfg.host, cfg.port, exc)
            raise
        except (OSError, EOFError, paramiko.SSHException) as exc:
            logger.error("SSH connection failed: %s", exc)
            raise SSHConnectionError(str(exc) or exc.__class__.__name__) from exc

        async with self._session_lock:
            self._transport = transport

        logger.info("Successfully connected to %s@%s:%d", cfg.username, cfg.host, cfg.port)

        if cfg.su_password is not None:
            logger.debug("su password configured, attempting elevation...")
            try:
                await self.elevation.ensure_elevated()
            except SSHError as exc:
                logger.warning("Failed to elevate to root: %s. Commands will run as normal user.", exc)

    def _open_transport(self) -> paramiko.Transport:
        """TCP connect, SSH handshake and login. Runs in a worker thread.

        The server host key is accepted without verification.
        """
        cfg = self.config
        sock = socket.create_connection((cfg.host, cfg.port), timeout=CONNECT_TIMEOUT)
        try:
            transport = paramiko.Transport(sock)
        except Exception:
            sock.close()
            raise

        try:
            transport.start_client(timeout=CONNECT_TIMEOUT)
            self._auth.authenticate(transport, cfg.username)
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        except BaseException:
            transport.close()
            raise
        return transport

    async def open_channel(self) -> paramiko.Channel:
        """Open a new session channel on the current transport.

        Raises:
            SSHConnectionError: No session, or the server refused the channel
        """
        async with self._session_lock:
            transport = self._transport
            if transport is None:
                raise SSHConnectionError("SSH connection not established")
            try:
                return await run_blocking(transport.open_session, timeout=CHANNEL_OPEN_TIMEOUT)
            except (paramiko.SSHException, OSError, EOFError) as exc:
                raise SSHConnectionError(f"Failed to open channel: {exc}") from exc

    def is_elevated(self) -> bool:
        return self.elevation.is_elevated()

    async def ensure_elevated(self) -> None:
        """Obtain the root shell via su; errors propagate to the caller."""
        await self.elevation.ensure_elevated()

    async def close(self) -> None:
        """Tear down the elevated shell, then the session. Safe to call repeatedly."""
        self.elevation.reset()

        async with self._session_lock:
            transport, self._transport = self._transport, None

        if transport is not None:
            try:
                await run_blocking(transport.close)
            except Exception as exc:
                logger.debug("transport close failed: %s", exc)
            logger.info("SSH connection closed")

    def __repr__(self):
        state = "connected" if self._transport is not None else "disconnected"
        elevated = ", elevated" if self.is_elevated() else ""
        return f"ConnectionManager({self.config.username}@{self.config.host}:{self.config.port}, {state}{elevated})"


__all__ = ["ConnectionManager"]
