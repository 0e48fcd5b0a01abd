"""
Command execution over the shared SSH session.

Two paths:
- root shell: when elevation is active the command is typed into the PTY and
  output is read up to the next root prompt (no exit status, no stderr split)
- exec channel: a fresh channel per command with separate stdout/stderr and
  the remote exit status

On an exec-channel timeout a best-effort ``pkill -f`` for the command is
started on its own channel, without delaying the timeout error.

Command text is never logged here: sudo-wrapped commands carry a password.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass
from typing import Optional, Set

import paramiko

from ssh_mcp.config import ABORT_TIMEOUT, BUFFER_SIZE, INTERRUPT, POLL_INTERVAL, READ_POLL_TIMEOUT
from ssh_mcp.connection import ConnectionManager
from ssh_mcp.errors import InvalidParamsError, SSHConnectionError, SSHError, SSHTimeoutError
from ssh_mcp.prompt import ShellPromptScanner
from ssh_mcp.shell import build_abort_command
from ssh_mcp.utils import close_quietly, discard_pending, recv_chunk, run_blocking

logger = logging.getLogger(__name__)

_CHANNEL_ERRORS = (paramiko.SSHException, OSError, EOFError)


@dataclass
class CommandOutput:
    """Result of one remote command.

    ``exit_code`` is None when the server reported no exit status; commands
    run through the root shell always report 0.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.exit_code is None or self.exit_code == 0

    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _decode(chunks) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


class CommandExecutor:
    """Runs commands through a ConnectionManager.

    Args:
        connection: Manager holding the session and elevation engine
    """

    def __init__(self, connection: ConnectionManager):
        self._connection = connection
        self._abort_tasks: Set[asyncio.Task] = set()

    async def exec_command(self, command: str, timeout: float) -> CommandOutput:
        """Run ``command`` with a deadline of ``timeout`` seconds.

        Raises:
            SSHTimeoutError: No completion before the deadline
            SSHConnectionError: Session or channel failure
            InvalidParamsError: Non-positive timeout
        """
        if timeout <= 0:
            raise InvalidParamsError(f"Timeout must be positive, got {timeout}")

        await self._connection.ensure_connected()

        elevation = self._connection.elevation
        if elevation.is_elevated() and elevation.has_channel():
            logger.debug("Executing command via elevated shell")
            return await self._exec_elevated(command, timeout)

        logger.debug("Executing command via exec channel")
        return await self._exec_channel(command, timeout)

    async def _exec_elevated(self, command: str, timeout: float) -> CommandOutput:
        loop = asyncio.get_running_loop()
        timeout_ms = int(timeout * 1000)

        async with self._connection.elevation.borrow() as channel:
            deadline = loop.time() + timeout
            dropped = discard_pending(channel)
            if dropped:
                logger.debug("Discarded %d bytes of stale shell output", dropped)

            try:
                channel.sendall(f"{command}\n".encode("utf-8"))
            except _CHANNEL_ERRORS as exc:
                raise SSHConnectionError(f"Failed to send command: {exc}") from exc

            scanner = ShellPromptScanner()
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning("Command timed out after %dms in elevated shell, interrupting", timeout_ms)
                    self._interrupt(channel)
                    raise SSHTimeoutError(timeout_ms)

                chunk = await recv_chunk(channel, min(READ_POLL_TIMEOUT, remaining))
                if chunk is None:
                    continue
                if not chunk:
                    raise SSHConnectionError("Channel closed during command execution")
                if scanner.feed(decoder.decode(chunk)):
                    return CommandOutput(stdout=scanner.output(), stderr="", exit_code=0)

    @staticmethod
    def _interrupt(channel: paramiko.Channel) -> None:
        try:
            channel.sendall(INTERRUPT.encode("ascii"))
        except _CHANNEL_ERRORS as exc:
            logger.debug("Ctrl-C to elevated shell failed: %s", exc)

    async def _exec_channel(self, command: str, timeout: float) -> CommandOutput:
        channel = await self._connection.open_channel()
        try:
            try:
                await run_blocking(channel.exec_command, command)
            except _CHANNEL_ERRORS as exc:
                raise SSHConnectionError(f"Failed to exec command: {exc}") from exc

            try:
                return await asyncio.wait_for(self._collect_output(channel), timeout)
            except asyncio.TimeoutError:
                timeout_ms = int(timeout * 1000)
                logger.warning("Command timed out after %dms, sending abort", timeout_ms)
                self._schedule_abort(command)
                raise SSHTimeoutError(timeout_ms) from None
        finally:
            close_quietly(channel)

    @staticmethod
    async def _collect_output(channel: paramiko.Channel) -> CommandOutput:
        """Read stdout and stderr until the exit status arrives or the channel closes."""
        stdout, stderr = [], []
        while True:
            progressed = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    stdout.append(data)
                    progressed = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    stderr.append(data)
                    progressed = True

            if progressed:
                await asyncio.sleep(0)
                continue
            # data may land together with the exit status; stop only once both buffers are empty
            if (channel.exit_status_ready() or channel.closed) and not (
                channel.recv_ready() or channel.recv_stderr_ready()
            ):
                break
            await asyncio.sleep(POLL_INTERVAL)

        exit_code = None
        if channel.exit_status_ready():
            status = channel.recv_exit_status()
            # paramiko reports -1 when the server sent no exit-status
            exit_code = status if status >= 0 else None
        return CommandOutput(stdout=_decode(stdout), stderr=_decode(stderr), exit_code=exit_code)

    def _schedule_abort(self, command: str) -> None:
        task = asyncio.ensure_future(self._abort(command))
        self._abort_tasks.add(task)
        task.add_done_callback(self._abort_tasks.discard)

    async def _abort(self, command: str) -> None:
        """Kill processes matching the timed-out command. Failures are only logged."""
        try:
            channel = await self._connection.open_channel()
        except SSHError as exc:
            logger.error("Failed to open channel for abort: %s", exc)
            return

        try:
            await run_blocking(channel.exec_command, build_abort_command(command))
            await asyncio.wait_for(self._wait_finished(channel), ABORT_TIMEOUT)
            logger.debug("Abort command completed")
        except asyncio.TimeoutError:
            logger.warning("Abort command did not finish within %ss", ABORT_TIMEOUT)
        except _CHANNEL_ERRORS as exc:
            logger.error("Failed to exec abort command: %s", exc)
        finally:
            close_quietly(channel)

    @staticmethod
    async def _wait_finished(channel: paramiko.Channel) -> None:
        while not (channel.exit_status_ready() or channel.closed or channel.eof_received):
            discard_pending(channel)
            await asyncio.sleep(POLL_INTERVAL)

    async def drain(self, timeout: float = ABORT_TIMEOUT + 1) -> None:
        """Wait for outstanding abort commands, e.g. before closing the connection."""
        if not self._abort_tasks:
            return
        logger.debug("Waiting for %d abort command(s)", len(self._abort_tasks))
        await asyncio.wait(set(self._abort_tasks), timeout=timeout)


__all__ = ["CommandExecutor", "CommandOutput"]
