"""
Shell-safety helpers: command validation, single-quote escaping, sudo wrapping.

All generated shell text goes through escape_for_shell(). The strings built
here are sent to the remote host verbatim, so their exact format matters:

    sudo -n sh -c '<command>'
    printf '%s\\n' '<password>' | sudo -p "" -S sh -c '<command>'
    timeout 3s pkill -f '<command>' 2>/dev/null || true
"""

from typing import Optional

from ssh_mcp.errors import InvalidParamsError


def sanitize_command(command: str, max_chars: Optional[int] = None) -> str:
    """Trim a raw command and enforce the length limit.

    Args:
        command: Command text as received from the caller
        max_chars: Maximum length after trimming (None = unlimited)

    Returns:
        The trimmed command

    Raises:
        InvalidParamsError: If the command is empty or too long
    """
    trimmed = command.strip()
    if not trimmed:
        raise InvalidParamsError("Command cannot be empty")
    if max_chars is not None and len(trimmed) > max_chars:
        raise InvalidParamsError(f"Command is too long (max {max_chars} characters, got {len(trimmed)})")
    return trimmed


def escape_for_shell(text: str) -> str:
    """Escape text for use inside a single-quoted shell string.

    Each ``'`` closes the quoted string, emits a double-quoted quote and
    reopens it: ``it's`` -> ``it'"'"'s``.
    """
    return text.replace("'", "'\"'\"'")


def wrap_sudo_command(command: str, password: Optional[str] = None) -> str:
    """Wrap a command for execution through sudo.

    Without a password ``sudo -n`` is used, which fails fast when the remote
    sudoers policy asks for one. With a password it is piped to ``sudo -S``.
    """
    escaped_command = escape_for_shell(command)
    if password is None:
        return f"sudo -n sh -c '{escaped_command}'"
    escaped_password = escape_for_shell(password)
    return f"printf '%s\\n' '{escaped_password}' | sudo -p \"\" -S sh -c '{escaped_command}'"


def build_abort_command(command: str) -> str:
    """Command that kills remote processes whose command line matches ``command``."""
    return f"timeout 3s pkill -f '{escape_for_shell(command)}' 2>/dev/null || true"


def is_valid_password(password: str) -> bool:
    """A usable password is non-blank and has no NUL bytes."""
    return bool(password.strip()) and "\0" not in password


def sanitize_password(password: Optional[str]) -> Optional[str]:
    """Trim a password; blank or missing becomes None."""
    if password is None:
        return None
    trimmed = password.strip()
    return trimmed or None
