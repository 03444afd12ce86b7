from typing import Optional


class SshMcpError(Exception):
    """Base class for every error the SSH core reports to its callers."""

    prefix = "SSH MCP error"
    error_type = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.prefix}: {self.message}" if self.message else self.prefix


class SSHConnectionError(SshMcpError):
    """Transport or handshake failure, or the session is not connected."""

    prefix = "SSH connection error"
    error_type = "connection"


class ChannelError(SSHConnectionError):
    """A channel request or write failed (rejected request, closed channel)."""

    prefix = "SSH channel error"


class AuthenticationError(SshMcpError):
    prefix = "Authentication failed"
    error_type = "authentication"


class CommandTimeoutError(SshMcpError):
    error_type = "timeout"

    def __init__(self, timeout_ms: int, command: Optional[str] = None):
        super().__init__(f"Command timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.command = command

    def __str__(self) -> str:
        return self.message


class InvalidParamsError(SshMcpError):
    prefix = "Invalid parameters"
    error_type = "invalid_params"


class ElevationFailedError(SshMcpError):
    prefix = "Elevation failed"
    error_type = "elevation_failed"


class ConfigError(SshMcpError):
    prefix = "Configuration error"
    error_type = "config"
