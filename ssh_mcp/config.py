import os
import re
from dataclasses import dataclass, field, replace
from typing import Optional

from ssh_mcp.errors import ConfigError
from ssh_mcp.privilege import sanitize_password

# ========= Static config =========
CONNECT_TIMEOUT = 30
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
CHANNEL_POLL_INTERVAL = 0.05

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_MAX_CHARS: Optional[int] = 1000
DEFAULT_OUTPUT_MAX_CHARS: Optional[int] = None

PASSWORD_PROMPT_TIMEOUT = 10.0
ROOT_PROMPT_TIMEOUT = 10.0
ABORT_DISPATCH_TIMEOUT = 2.0
ABORT_KILL_TIMEOUT = "3s"
SCAN_BUFFER_CHARS = 4096

PTY_TERM = "xterm"
PTY_WIDTH = 80
PTY_HEIGHT = 24
SU_COMMAND = "su -"
SENTINEL_PREFIX = "__SSH_MCP_DONE_"
# Run once in the root shell: no input echo, a fixed prompt, no hooks.
SHELL_SETUP = "stty -echo; PS1='# '; PS2=''; unset PROMPT_COMMAND"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
PROMPT_ONLY_LINE = re.compile(r"^\s*(\([^)]*\)\s*[>#$]?|[>#$])\s*$")

# ========= Prompt recognition =========
PASSWORD_PROMPT = re.compile(r"password[^\n]*?:?\s*$", re.IGNORECASE)
ROOT_PROMPT = re.compile(r"#\s*$")
SHELL_READY_PROMPT = re.compile(r"(?:^|\n)# $")
AUTH_FAILURE = re.compile(
    r"authentication failure|incorrect password|su: failed|su: authentication|sorry",
    re.IGNORECASE,
)


def _env_optional(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    return value


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def parse_max_chars(value: Optional[str]) -> Optional[int]:
    """Parse a max-chars setting.

    "none" (any case), zero or a negative number disables the limit; a
    positive integer sets it; a missing or unparsable value falls back to
    DEFAULT_MAX_CHARS.
    """
    if value is None:
        return DEFAULT_MAX_CHARS
    if value.strip().lower() == "none":
        return None
    try:
        numeric = int(value.strip())
    except ValueError:
        return DEFAULT_MAX_CHARS
    if numeric <= 0:
        return None
    return numeric


def _parse_output_max_chars(value: Optional[str]) -> Optional[int]:
    if value is None:
        return DEFAULT_OUTPUT_MAX_CHARS
    try:
        numeric = int(value.strip())
    except ValueError:
        return DEFAULT_OUTPUT_MAX_CHARS
    return numeric if numeric > 0 else None


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SU_PASSWORD: Optional[str] = None
        self.SUDO_PASSWORD: Optional[str] = None
        self.TIMEOUT_MS: int = DEFAULT_TIMEOUT_MS
        self.MAX_CHARS: Optional[int] = DEFAULT_MAX_CHARS
        self.OUTPUT_MAX_CHARS: Optional[int] = DEFAULT_OUTPUT_MAX_CHARS
        self.DISABLE_SUDO: bool = False
        self.DEBUG: bool = False

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("SSH_MCP_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_MCP_USER", self.SSH_USER)
        self.SSH_PASSWORD = _env_optional("SSH_MCP_PASSWORD") or self.SSH_PASSWORD
        self.SSH_PORT = int(os.environ.get("SSH_MCP_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = _env_optional("SSH_MCP_KEY") or self.SSH_KEY_PATH
        self.SSH_KEY_PASSPHRASE = _env_optional("SSH_MCP_KEY_PASSPHRASE") or self.SSH_KEY_PASSPHRASE
        self.SU_PASSWORD = _env_optional("SSH_MCP_SU_PASSWORD") or self.SU_PASSWORD
        self.SUDO_PASSWORD = _env_optional("SSH_MCP_SUDO_PASSWORD") or self.SUDO_PASSWORD
        self.TIMEOUT_MS = int(os.environ.get("SSH_MCP_TIMEOUT", self.TIMEOUT_MS))
        if "SSH_MCP_MAX_CHARS" in os.environ:
            self.MAX_CHARS = parse_max_chars(os.environ["SSH_MCP_MAX_CHARS"])
        if "SSH_MCP_OUTPUT_MAX_CHARS" in os.environ:
            self.OUTPUT_MAX_CHARS = _parse_output_max_chars(os.environ["SSH_MCP_OUTPUT_MAX_CHARS"])
        self.DISABLE_SUDO = _env_flag("SSH_MCP_DISABLE_SUDO", self.DISABLE_SUDO)
        self.SSH_VERIFY_HOST_KEY = _env_flag("SSH_MCP_VERIFY_HOST_KEY", self.SSH_VERIFY_HOST_KEY)
        self.DEBUG = _env_flag("SSH_MCP_DEBUG", self.DEBUG)


# Global instance
config = ServerConfig()


@dataclass(frozen=True)
class SshConfig:
    """Immutable connection snapshot handed to the session manager.

    Exactly one of ``password`` and ``private_key`` (key content, not a
    path) must be set. Secrets are kept out of ``repr``.
    """

    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    key_passphrase: Optional[str] = field(default=None, repr=False)
    su_password: Optional[str] = field(default=None, repr=False)
    sudo_password: Optional[str] = field(default=None, repr=False)
    verify_host_key: bool = False

    def __post_init__(self):
        errors = []
        if not self.host:
            errors.append("Missing required host")
        if not self.username:
            errors.append("Missing required username")
        if self.password and self.private_key:
            errors.append("Provide either a password or a private key, not both")
        if not (0 < self.port < 65536):
            errors.append(f"Invalid port: {self.port}")
        if errors:
            raise ConfigError("; ".join(errors))

    @property
    def auth_method(self) -> Optional[str]:
        if self.password:
            return "password"
        if self.private_key:
            return "key"
        return None

    def with_su_password(self, password: Optional[str]) -> "SshConfig":
        return replace(self, su_password=password)

    @classmethod
    def from_server_config(cls, server_config: ServerConfig) -> "SshConfig":
        if not server_config.SSH_PASSWORD and not server_config.SSH_KEY_PATH:
            raise ConfigError("Must provide either a password or a key")
        private_key = None
        if server_config.SSH_KEY_PATH:
            key_path = os.path.expanduser(server_config.SSH_KEY_PATH)
            if not os.path.isfile(key_path):
                raise ConfigError(f"SSH key file not found: {key_path}")
            with open(key_path, "r", encoding="utf-8") as handle:
                private_key = handle.read()
        return cls(
            host=server_config.SSH_HOST or "",
            username=server_config.SSH_USER or "",
            port=server_config.SSH_PORT,
            password=server_config.SSH_PASSWORD,
            private_key=private_key,
            key_passphrase=server_config.SSH_KEY_PASSPHRASE,
            su_password=sanitize_password(server_config.SU_PASSWORD),
            sudo_password=sanitize_password(server_config.SUDO_PASSWORD),
            verify_host_key=server_config.SSH_VERIFY_HOST_KEY,
        )
