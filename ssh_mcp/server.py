import asyncio
import logging
from typing import Any, Dict, Optional, Set, Tuple

from ssh_mcp.config import PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION, ConnectionConfig, ServerConfig
from ssh_mcp.connection import ConnectionManager
from ssh_mcp.errors import InvalidParamsError, SSHConnectionError, SSHError
from ssh_mcp.executor import CommandExecutor, CommandOutput
from ssh_mcp.shell import sanitize_command, wrap_sudo_command

logger = logging.getLogger(__name__)

INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

SUDO_TOOL_NAMES = {"sudo-exec", "sudo_exec"}


class Bridge:
    """What the request handlers work against: one connection, its executor and the tool settings."""

    def __init__(
        self,
        connection: ConnectionManager,
        executor: CommandExecutor,
        timeout: float,
        max_chars: Optional[int] = None,
        disable_sudo: bool = False,
    ):
        self.connection = connection
        self.executor = executor
        self.timeout = timeout
        self.max_chars = max_chars
        self.disable_sudo = disable_sudo
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: ServerConfig, connection_config: ConnectionConfig) -> "Bridge":
        connection = ConnectionManager(connection_config)
        return cls(
            connection=connection,
            executor=CommandExecutor(connection),
            timeout=config.timeout_seconds,
            max_chars=config.MAX_CHARS,
            disable_sudo=config.DISABLE_SUDO,
        )

    @property
    def target(self) -> str:
        cfg = self.connection.config
        return f"{cfg.username}@{cfg.host}:{cfg.port}"

    def warm_up(self) -> None:
        """Start connecting in the background so the first tool call is fast."""
        task = asyncio.ensure_future(self._warm_up())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _warm_up(self) -> None:
        try:
            await self.connection.ensure_connected()
        except SSHError as exc:
            logger.warning("Initial SSH connection failed: %s (will retry on first command)", exc)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.executor.drain()
        await self.connection.close()


def format_tool_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, text: str, is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(text, is_error)}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def render_output(output: CommandOutput) -> Tuple[str, bool]:
    """Tool text for a finished command; non-zero exit marks the result as an error."""
    text = output.stdout
    if output.stderr:
        text = f"{text}\n--- stderr ---\n{output.stderr}" if text else output.stderr
    return text, not output.success


def tools_list(disable_sudo: bool = False) -> Dict[str, Any]:
    command_param = {
        "type": "string",
        "description": "Shell command to execute on the remote host.",
    }
    tools = [
        {
            "name": "exec",
            "description": (
                "Execute a shell command on the remote SSH server. "
                "Runs as root when su elevation is configured and succeeded, otherwise as the login user. "
                "Returns stdout, and stderr after a '--- stderr ---' separator."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"command": command_param},
                "required": ["command"],
            },
        },
    ]
    if not disable_sudo:
        tools.append({
            "name": "sudo-exec",
            "description": (
                "Execute a shell command on the remote SSH server via sudo. "
                "Uses the configured sudo password, or passwordless sudo (sudo -n) when none is set."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"command": command_param},
                "required": ["command"],
            },
        })
    return {"tools": tools}


async def exec_dispatch(command: str, bridge: Bridge, use_sudo: bool = False) -> Tuple[str, bool]:
    try:
        command = sanitize_command(command, bridge.max_chars)
    except InvalidParamsError as exc:
        return f"Error: {exc}", True

    try:
        await bridge.connection.ensure_connected()
    except SSHConnectionError as exc:
        return str(exc), True
    except SSHError as exc:
        return f"SSH connection error: {exc}", True

    if use_sudo:
        command = wrap_sudo_command(command, bridge.connection.sudo_password)
    elif bridge.connection.su_password is not None:
        try:
            await bridge.connection.ensure_elevated()
        except SSHError as exc:
            logger.warning("su elevation unavailable, running as login user: %s", exc)

    try:
        output = await bridge.executor.exec_command(command, bridge.timeout)
    except SSHError as exc:
        return f"Error: {exc}", True
    return render_output(output)


async def handle_request(request: Dict[str, Any], bridge: Bridge) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        bridge.warm_up()
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                "instructions": f"Remote command execution on {bridge.target} over SSH.",
            },
        }

    if method == "notifications/initialized": return None
    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": req_id, "result": tools_list(bridge.disable_sudo)}

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}

        if tool_name == "exec":
            use_sudo = False
        elif tool_name in SUDO_TOOL_NAMES:
            if bridge.disable_sudo:
                return make_error(req_id, INVALID_PARAMS, "sudo-exec is disabled on this server")
            use_sudo = True
        else:
            return make_error(req_id, METHOD_NOT_FOUND, f"Unknown tool: {tool_name}")

        command = args.get("command")
        if not isinstance(command, str):
            return make_error(req_id, INVALID_PARAMS, "Missing required string argument: command")

        try:
            text, is_error = await exec_dispatch(command, bridge, use_sudo=use_sudo)
        except Exception as exc:
            logger.exception("tool execution error (%s)", tool_name)
            return make_response(req_id, f"Error: {exc}", is_error=True)
        return make_response(req_id, text, is_error=is_error)

    return make_error(req_id, METHOD_NOT_FOUND, f"Unknown method: {method}")
