import argparse
import asyncio
import io
import json
import logging
import signal
import sys
import threading
from typing import List, Optional, Set

from ssh_mcp.config import ServerConfig, parse_max_chars
from ssh_mcp.errors import ConfigError
from ssh_mcp.server import INTERNAL_ERROR, Bridge, handle_request, make_error
from ssh_mcp.utils import setup_logging

logger = logging.getLogger(__name__)

_stdout = sys.stdout


def _configure_stdio() -> io.TextIOWrapper:
    """Force UTF-8 I/O so remote output survives non-UTF-8 console code pages. Returns stdin."""
    global _stdout
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
    return io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        logger.error("response write error: %s", exc)
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            logger.error("response write fallback error: %s", exc2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssh-mcp",
        description="SSH MCP Server (remote exec, su elevation, sudo wrapping, timeout abort)",
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_MCP_HOST env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_MCP_PORT env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_MCP_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_MCP_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_MCP_KEY env)")
    parser.add_argument("--key-passphrase", help="Passphrase for SSH private key (overrides SSH_MCP_KEY_PASSPHRASE env)")
    parser.add_argument("--su-password", help="Root password for su elevation (overrides SSH_MCP_SU_PASSWORD env)")
    parser.add_argument("--sudo-password", help="Password for sudo-exec (overrides SSH_MCP_SUDO_PASSWORD env)")
    parser.add_argument("--timeout", type=int, help="Command timeout in milliseconds (overrides SSH_MCP_TIMEOUT env)")
    parser.add_argument("--maxChars", dest="max_chars", help="Max command length; 'none' or <=0 disables (overrides SSH_MCP_MAX_CHARS env)")
    parser.add_argument("--disable-sudo", action="store_true", help="Do not offer the sudo-exec tool")
    parser.add_argument("--log-level", help="Log level for stderr diagnostics (overrides SSH_MCP_LOG_LEVEL env)")
    return parser


def load_config(argv: Optional[List[str]] = None, environ=None) -> ServerConfig:
    """Environment first, then command-line arguments on top; exits via parser.error on bad input."""
    parser = build_parser()
    config = ServerConfig()
    try:
        config.load_from_env(environ)
    except ConfigError as exc:
        parser.error(str(exc))

    args = parser.parse_args(argv)

    # Apply args over env vars
    if args.host: config.SSH_HOST = args.host
    if args.port is not None: config.SSH_PORT = args.port
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.key_passphrase: config.SSH_KEY_PASSPHRASE = args.key_passphrase
    if args.su_password: config.SU_PASSWORD = args.su_password
    if args.sudo_password: config.SUDO_PASSWORD = args.sudo_password
    if args.timeout is not None: config.TIMEOUT_MS = args.timeout
    if args.max_chars is not None: config.MAX_CHARS = parse_max_chars(args.max_chars)
    if args.disable_sudo: config.DISABLE_SUDO = True
    if args.log_level: config.LOG_LEVEL = args.log_level

    try:
        config.validate()
    except ConfigError as exc:
        parser.error(str(exc))
    return config


def _read_stdin(stream, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    """Blocking stdin reader; runs on a daemon thread and posts lines to the loop. None marks EOF."""
    try:
        for line in stream:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)
    except RuntimeError:
        # loop already closed during shutdown
        pass


async def _process_line(line: str, bridge: Bridge) -> None:
    try:
        request = json.loads(line)
    except json.JSONDecodeError as exc:
        logger.error("invalid json: %s", exc)
        return

    try:
        response = await handle_request(request, bridge)
    except Exception as exc:
        logger.exception("unexpected error")
        # Send an error response back so the client doesn't hang
        req_id = request.get("id") if isinstance(request, dict) else None
        response = make_error(req_id, INTERNAL_ERROR, f"Internal error: {exc}")
    if response is not None:
        _write_response(response)


async def serve(bridge: Bridge, stream) -> None:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass

    threading.Thread(target=_read_stdin, args=(stream, loop, queue), name="stdin-reader", daemon=True).start()

    tasks: Set[asyncio.Task] = set()
    stopping = asyncio.ensure_future(stop.wait())
    try:
        while True:
            next_line = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({next_line, stopping}, return_when=asyncio.FIRST_COMPLETED)
            if next_line not in done:
                next_line.cancel()
                logger.info("Received shutdown signal")
                break
            line = next_line.result()
            if line is None:
                logger.info("stdin closed")
                break
            line = line.strip()
            if not line:
                continue
            task = asyncio.ensure_future(_process_line(line, bridge))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    finally:
        stopping.cancel()
        logger.info("shutting down...")
        for task in list(tasks):
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await bridge.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    config = load_config(argv)
    setup_logging(config.LOG_LEVEL)

    try:
        connection_config = config.connection_config()
    except ConfigError as exc:
        build_parser().error(str(exc))

    stdin = _configure_stdio()
    bridge = Bridge.from_config(config, connection_config)
    logger.info(
        "SSH MCP started for %s. timeout=%dms max_chars=%s su=%s sudo=%s",
        bridge.target,
        config.TIMEOUT_MS,
        config.MAX_CHARS if config.MAX_CHARS is not None else "unlimited",
        "configured" if config.SU_PASSWORD else "off",
        "disabled" if config.DISABLE_SUDO else ("password" if config.SUDO_PASSWORD else "passwordless"),
    )

    try:
        asyncio.run(serve(bridge, stdin))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
