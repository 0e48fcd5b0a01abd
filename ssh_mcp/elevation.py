"""
Root shell obtained by running ``su -`` inside a PTY.

The engine owns at most one interactive channel. Commands borrow it one at a
time; while borrowed, nobody else can read from or write to it.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
from typing import TYPE_CHECKING, AsyncIterator, Optional

import paramiko

from ssh_mcp.config import ELEVATION_COMMAND, ELEVATION_TIMEOUT, PTY_HEIGHT, PTY_TERM, PTY_WIDTH, READ_POLL_TIMEOUT
from ssh_mcp.errors import ElevationError, SSHConnectionError, SSHError
from ssh_mcp.prompt import LoginState, SuLoginScanner
from ssh_mcp.utils import close_quietly, recv_chunk, run_blocking

if TYPE_CHECKING:
    from ssh_mcp.connection import ConnectionManager

logger = logging.getLogger(__name__)

_CHANNEL_ERRORS = (paramiko.SSHException, OSError, EOFError)


class ElevationEngine:
    """Opens, holds and lends out the root shell channel.

    Args:
        connection: Manager whose session the channel is opened on
        password: Root password for ``su``; None disables elevation
    """

    def __init__(self, connection: "ConnectionManager", password: Optional[str]):
        self._connection = connection
        self._password = password
        self._lock = asyncio.Lock()
        self._channel: Optional[paramiko.Channel] = None
        self._borrowed: Optional[paramiko.Channel] = None
        self._elevated = False
        # Bumped by reset(); lets in-flight work notice the session went away
        self._generation = 0

    @property
    def configured(self) -> bool:
        return self._password is not None

    def is_elevated(self) -> bool:
        return self._elevated

    def has_channel(self) -> bool:
        """True while the root shell exists, whether idle or lent out."""
        return self._channel is not None or self._borrowed is not None

    async def ensure_elevated(self) -> None:
        """Open the root shell unless it is already up.

        Raises:
            ElevationError: No password configured, channel setup failed,
                su rejected the password, or no root prompt within the deadline
        """
        if self._elevated and self.has_channel():
            return
        if self._password is None:
            raise ElevationError("No su password configured")

        async with self._lock:
            if self._elevated and self.has_channel():
                return
            self._elevated = False
            generation = self._generation

            channel = await self._start_root_shell(self._password)

            if generation != self._generation:
                close_quietly(channel)
                raise ElevationError("Connection closed during elevation")
            self._channel = channel
            self._elevated = True
            logger.info("Successfully elevated to root via su")

    async def _start_root_shell(self, password: str) -> paramiko.Channel:
        try:
            channel = await self._connection.open_channel()
        except SSHError as exc:
            raise ElevationError(f"Failed to open channel: {exc}") from exc
        logger.debug("Opened channel for su elevation")

        try:
            await self._request(channel.get_pty, "Failed to request PTY", term=PTY_TERM, width=PTY_WIDTH, height=PTY_HEIGHT)
            await self._request(channel.invoke_shell, "Failed to request shell")
            logger.debug("Shell requested, starting su elevation...")
            self._send(channel, ELEVATION_COMMAND, "Failed to send su command")
            await self._login(channel, password)
        except BaseException:
            close_quietly(channel)
            raise
        return channel

    async def _login(self, channel: paramiko.Channel, password: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ELEVATION_TIMEOUT
        scanner = SuLoginScanner()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ElevationError("su elevation timed out", scanner.buffer)

            chunk = await recv_chunk(channel, min(READ_POLL_TIMEOUT, remaining))
            if chunk is None:
                continue
            if not chunk:
                raise ElevationError("Channel closed before elevation completed", scanner.buffer)

            state = scanner.feed(decoder.decode(chunk))
            if state is LoginState.SEND_PASSWORD:
                logger.debug("Password prompt detected, sending password...")
                self._send(channel, f"{password}\n", "Failed to send password")
            elif state is LoginState.ELEVATED:
                logger.debug("Root prompt detected, elevation successful")
                return
            elif state is LoginState.FAILED:
                raise ElevationError(f"su authentication failed: {scanner.buffer.strip()}", scanner.buffer)

    @staticmethod
    async def _request(func, what: str, **kwargs) -> None:
        try:
            await run_blocking(func, **kwargs)
        except _CHANNEL_ERRORS as exc:
            raise ElevationError(f"{what}: {exc}") from exc

    @staticmethod
    def _send(channel: paramiko.Channel, text: str, what: str) -> None:
        try:
            channel.sendall(text.encode("utf-8"))
        except _CHANNEL_ERRORS as exc:
            raise ElevationError(f"{what}: {exc}") from exc

    @contextlib.asynccontextmanager
    async def borrow(self) -> AsyncIterator[paramiko.Channel]:
        """Exclusive use of the root shell for one command.

        An SSHConnectionError raised by the caller means the shell is unusable:
        it is closed and elevation is dropped. Otherwise the channel goes back
        to the engine, unless it closed or reset() ran in the meantime.

        Raises:
            SSHConnectionError: No root shell is available
        """
        async with self._lock:
            channel = self._channel
            if channel is None or not self._elevated:
                raise SSHConnectionError("No elevated shell available")
            self._channel, self._borrowed = None, channel
            generation = self._generation
            lost = False
            try:
                yield channel
            except SSHConnectionError:
                lost = True
                raise
            finally:
                self._borrowed = None
                if generation != self._generation:
                    close_quietly(channel)
                elif lost or channel.closed:
                    close_quietly(channel)
                    self._elevated = False
                    logger.warning("Elevated shell lost; commands will run as normal user")
                else:
                    self._channel = channel

    def reset(self) -> None:
        """Close the root shell (idle or lent out) and forget elevation. Never blocks."""
        self._generation += 1
        self._elevated = False
        channel, self._channel = self._channel, None
        borrowed = self._borrowed
        if channel is not None or borrowed is not None:
            logger.debug("Closing elevated shell")
        close_quietly(channel, send_eof=True)
        close_quietly(borrowed, send_eof=True)


__all__ = ["ElevationEngine"]
