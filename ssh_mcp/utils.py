import asyncio
import functools
import logging
import socket
import sys
from typing import Any, Callable, Optional

import paramiko

from ssh_mcp.config import BUFFER_SIZE, POLL_INTERVAL

logger = logging.getLogger(__name__)

LOG_FORMAT = "[SSH-MCP] %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Send diagnostics to stderr; stdout carries JSON-RPC only."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    # paramiko's transport thread is chatty at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking paramiko call in the loop's default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


async def recv_chunk(channel: paramiko.Channel, timeout: float) -> Optional[bytes]:
    """Wait up to ``timeout`` seconds for stdout data on a channel.

    Returns the data read, ``b""`` when the channel has closed or reached
    end-of-stream, or None when nothing arrived in time.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if channel.recv_ready():
            try:
                return channel.recv(BUFFER_SIZE)
            except socket.timeout:
                return None
        if channel.closed or channel.eof_received:
            return b""
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(POLL_INTERVAL, remaining))


def discard_pending(channel: paramiko.Channel) -> int:
    """Drop output already buffered on a channel. Returns the byte count dropped."""
    dropped = 0
    while channel.recv_ready():
        data = channel.recv(BUFFER_SIZE)
        if not data:
            break
        dropped += len(data)
    return dropped


def close_quietly(channel: Optional[paramiko.Channel], send_eof: bool = False) -> None:
    """Close a channel during teardown, ignoring failures."""
    if channel is None:
        return
    try:
        if send_eof and not channel.closed:
            channel.shutdown_write()
    except Exception as exc:
        logger.debug("channel eof failed: %s", exc)
    try:
        channel.close()
    except Exception as exc:
        logger.debug("channel close failed: %s", exc)
