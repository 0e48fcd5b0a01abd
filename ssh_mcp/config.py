import os
from dataclasses import dataclass, field
from typing import List, Optional

from ssh_mcp.errors import ConfigError
from ssh_mcp.shell import is_valid_password, sanitize_password

# ========= Static config =========
SERVER_NAME = "ssh-mcp"
SERVER_VERSION = "1.4.0"
PROTOCOL_VERSION = "2024-11-05"

CONNECT_TIMEOUT = 30
CHANNEL_OPEN_TIMEOUT = 30
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096

ELEVATION_TIMEOUT = 10.0
READ_POLL_TIMEOUT = 0.5
POLL_INTERVAL = 0.05
ABORT_TIMEOUT = 5.0

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_MAX_CHARS: Optional[int] = 1000

# ========= Elevated shell =========
PTY_TERM = "xterm"
PTY_WIDTH = 80
PTY_HEIGHT = 24
ELEVATION_COMMAND = "su -\n"
INTERRUPT = "\x03"


def parse_max_chars(value: Optional[str]) -> Optional[int]:
    """Parse the max command length setting.

    "none" (any case), zero and negative values disable the limit;
    missing or unparsable values fall back to DEFAULT_MAX_CHARS.
    """
    if value is None:
        return DEFAULT_MAX_CHARS
    if value.strip().lower() == "none":
        return None
    try:
        number = int(value.strip())
    except ValueError:
        return DEFAULT_MAX_CHARS
    if number <= 0:
        return None
    return number


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class ConnectionConfig:
    """Everything the connection core needs to reach and log into one host.

    Exactly one credential is set: ``password`` or ``private_key`` (key
    material, not a path). Secrets are excluded from repr.
    """

    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    key_passphrase: Optional[str] = field(default=None, repr=False)
    su_password: Optional[str] = field(default=None, repr=False)
    sudo_password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.host or not self.host.strip():
            raise ConfigError("host must be a non-empty string")
        if not self.username or not self.username.strip():
            raise ConfigError("username must be a non-empty string")
        if not isinstance(self.port, int) or self.port < 1 or self.port > 65535:
            raise ConfigError(f"port must be 1-65535, got {self.port}")
        if (self.password is None) == (self.private_key is None):
            raise ConfigError("exactly one of password or private_key is required")


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SU_PASSWORD: Optional[str] = None
        self.SUDO_PASSWORD: Optional[str] = None
        self.TIMEOUT_MS: int = DEFAULT_TIMEOUT_MS
        self.MAX_CHARS: Optional[int] = DEFAULT_MAX_CHARS
        self.DISABLE_SUDO: bool = False
        self.LOG_LEVEL: str = "INFO"

    def load_from_env(self, environ=None):
        env = os.environ if environ is None else environ
        self.SSH_HOST = env.get("SSH_MCP_HOST", self.SSH_HOST)
        self.SSH_USER = env.get("SSH_MCP_USER", self.SSH_USER)
        self.SSH_PASSWORD = env.get("SSH_MCP_PASSWORD", self.SSH_PASSWORD)
        self.SSH_KEY_PATH = env.get("SSH_MCP_KEY", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = env.get("SSH_MCP_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SU_PASSWORD = env.get("SSH_MCP_SU_PASSWORD", self.SU_PASSWORD)
        self.SUDO_PASSWORD = env.get("SSH_MCP_SUDO_PASSWORD", self.SUDO_PASSWORD)
        self.LOG_LEVEL = env.get("SSH_MCP_LOG_LEVEL", self.LOG_LEVEL)

        port = env.get("SSH_MCP_PORT")
        if port is not None:
            try:
                self.SSH_PORT = int(port)
            except ValueError:
                raise ConfigError(f"SSH_MCP_PORT must be an integer, got {port!r}")
        timeout = env.get("SSH_MCP_TIMEOUT")
        if timeout is not None:
            try:
                self.TIMEOUT_MS = int(timeout)
            except ValueError:
                raise ConfigError(f"SSH_MCP_TIMEOUT must be an integer, got {timeout!r}")
        if "SSH_MCP_MAX_CHARS" in env:
            self.MAX_CHARS = parse_max_chars(env["SSH_MCP_MAX_CHARS"])
        self.DISABLE_SUDO = _env_flag(env.get("SSH_MCP_DISABLE_SUDO"), self.DISABLE_SUDO)

    def normalize(self) -> None:
        """Blank secrets count as not provided."""
        self.SSH_PASSWORD = sanitize_password(self.SSH_PASSWORD)
        self.SSH_KEY_PASSPHRASE = sanitize_password(self.SSH_KEY_PASSPHRASE)
        self.SU_PASSWORD = sanitize_password(self.SU_PASSWORD)
        self.SUDO_PASSWORD = sanitize_password(self.SUDO_PASSWORD)
        if self.SSH_KEY_PATH is not None and not self.SSH_KEY_PATH.strip():
            self.SSH_KEY_PATH = None

    def validate(self) -> None:
        """Check the whole configuration and report every problem at once."""
        self.normalize()
        errors: List[str] = []

        if not self.SSH_HOST:
            errors.append("Missing required --host")
        if not self.SSH_USER:
            errors.append("Missing required --user")
        if not 1 <= self.SSH_PORT <= 65535:
            errors.append(f"Port must be 1-65535, got {self.SSH_PORT}")
        if self.SSH_PASSWORD is None and self.SSH_KEY_PATH is None:
            errors.append("Must provide either --password or --key")
        elif self.SSH_PASSWORD is not None and self.SSH_KEY_PATH is not None:
            errors.append("Provide only one of --password or --key")
        if self.SSH_KEY_PATH is not None and not os.path.isfile(os.path.expanduser(self.SSH_KEY_PATH)):
            errors.append(f"SSH key file not found: {self.SSH_KEY_PATH}")
        if self.TIMEOUT_MS <= 0:
            errors.append(f"Timeout must be a positive number of milliseconds, got {self.TIMEOUT_MS}")
        for label, secret in (("su", self.SU_PASSWORD), ("sudo", self.SUDO_PASSWORD)):
            if secret is not None and not is_valid_password(secret):
                errors.append(f"Invalid {label} password")

        if errors:
            raise ConfigError("\n".join(errors))

    @property
    def timeout_seconds(self) -> float:
        return self.TIMEOUT_MS / 1000.0

    def connection_config(self) -> ConnectionConfig:
        """Build the immutable connection record, loading key material from disk."""
        private_key = None
        if self.SSH_KEY_PATH:
            path = os.path.expanduser(self.SSH_KEY_PATH)
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    private_key = handle.read()
            except OSError as exc:
                raise ConfigError(f"Cannot read SSH key file {self.SSH_KEY_PATH}: {exc}") from exc
        return ConnectionConfig(
            host=self.SSH_HOST or "",
            username=self.SSH_USER or "",
            port=self.SSH_PORT,
            password=self.SSH_PASSWORD if private_key is None else None,
            private_key=private_key,
            key_passphrase=self.SSH_KEY_PASSPHRASE,
            su_password=self.SU_PASSWORD,
            sudo_password=self.SUDO_PASSWORD,
        )
