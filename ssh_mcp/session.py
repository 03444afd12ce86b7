import asyncio
from enum import Enum
from typing import Callable, Optional

from ssh_mcp.config import CONNECT_TIMEOUT, PASSWORD_PROMPT_TIMEOUT, ROOT_PROMPT_TIMEOUT, SshConfig
from ssh_mcp.elevation import ElevationEngine
from ssh_mcp.errors import (
    AuthenticationError, ChannelError, ElevationFailedError, InvalidParamsError, SSHConnectionError,
    SshMcpError
)
from ssh_mcp.privilege import is_valid_password, sanitize_password
from ssh_mcp.transport import Channel, ParamikoTransport, Transport
from ssh_mcp.utils import log_debug, log_error


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SSHSessionManager:
    """Lazily connected, shared SSH session for one remote endpoint.

    Connection attempts are single-flight: every caller that arrives while
    an attempt is in progress waits for that attempt and sees its outcome.
    A failed attempt leaves the manager disconnected so the next caller
    retries.
    """

    def __init__(
        self,
        ssh_config: SshConfig,
        transport_factory: Optional[Callable[[], Transport]] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        password_prompt_timeout: float = PASSWORD_PROMPT_TIMEOUT,
        root_prompt_timeout: float = ROOT_PROMPT_TIMEOUT,
    ):
        self._ssh_config = ssh_config
        self._transport_factory = transport_factory or ParamikoTransport
        self.connect_timeout = connect_timeout
        self._transport: Optional[Transport] = None
        self._state = SessionState.DISCONNECTED
        self._connect_task: Optional[asyncio.Task] = None
        self._generation = 0
        self.elevation = ElevationEngine(
            self,
            password_prompt_timeout=password_prompt_timeout,
            root_prompt_timeout=root_prompt_timeout,
        )

    def __repr__(self) -> str:
        return (
            f"SSHSessionManager(host={self._ssh_config.host!r}, port={self._ssh_config.port}, "
            f"username={self._ssh_config.username!r}, state={self._state.value}, "
            f"elevation={self.elevation.state.value})"
        )

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def ssh_config(self) -> SshConfig:
        return self._ssh_config

    @property
    def su_password(self) -> Optional[str]:
        return self._ssh_config.su_password

    @property
    def sudo_password(self) -> Optional[str]:
        return self._ssh_config.sudo_password

    @property
    def state(self) -> SessionState:
        return self._state

    def is_connected(self) -> bool:
        return (
            self._state is SessionState.CONNECTED
            and self._transport is not None
            and self._transport.is_active()
        )

    async def connect(self) -> None:
        if self.is_connected():
            return
        if self._state is SessionState.CONNECTED:
            await self.mark_disconnected("transport is no longer active")
        if self._connect_task is None:
            self._connect_task = asyncio.ensure_future(self._connect(self._generation))
            self._connect_task.add_done_callback(self._connect_finished)
        else:
            log_debug("joining in-flight connection attempt")
        await asyncio.shield(self._connect_task)

    async def ensure_connected(self) -> None:
        if not self.is_connected():
            await self.connect()

    def _connect_finished(self, task: asyncio.Task) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if not task.cancelled():
            # Joiners read the outcome through shield; this marks it retrieved.
            task.exception()

    async def _connect(self, generation: int) -> None:
        cfg = self._ssh_config
        self._state = SessionState.CONNECTING
        log_error(f"connecting to {cfg.username}@{cfg.host}:{cfg.port} ({cfg.auth_method or 'no'} auth)")

        transport = self._transport_factory()
        try:
            await asyncio.wait_for(transport.connect(cfg, self.connect_timeout), self.connect_timeout)
        except asyncio.TimeoutError:
            await self._abandon(transport)
            log_error(f"connection to {cfg.host}:{cfg.port} timed out after {self.connect_timeout}s")
            raise SSHConnectionError(f"Connection timeout after {self.connect_timeout}s") from None
        except (SSHConnectionError, AuthenticationError) as exc:
            await self._abandon(transport)
            log_error(f"connection to {cfg.host}:{cfg.port} failed: {exc}")
            raise
        except Exception as exc:
            await self._abandon(transport)
            log_error(f"connection to {cfg.host}:{cfg.port} failed: {exc}")
            raise SSHConnectionError(str(exc) or exc.__class__.__name__) from exc

        if generation != self._generation:
            await self._abandon(transport)
            raise SSHConnectionError("Session closed while connecting")

        self._transport = transport
        self._state = SessionState.CONNECTED
        log_error(f"connected to {cfg.host}:{cfg.port}")

        if cfg.su_password:
            try:
                await self.elevation.ensure_elevated()
            except ElevationFailedError as exc:
                log_error(f"{exc}; commands will run as {cfg.username}")

    async def _abandon(self, transport: Transport) -> None:
        self._state = SessionState.DISCONNECTED
        await self._close_transport(transport)

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.close()
        except (OSError, SshMcpError) as exc:
            log_debug(f"transport close failed: {exc}")

    async def open_channel(self) -> Channel:
        if not self.is_connected():
            raise SSHConnectionError("SSH connection not established")
        try:
            return await self._transport.open_channel()
        except ChannelError:
            await self.check_liveness()
            raise

    async def check_liveness(self) -> bool:
        """Mark the session disconnected if its transport has died."""
        if self._state is SessionState.CONNECTED and not self.is_connected():
            await self.mark_disconnected("transport is no longer active")
            return False
        return self.is_connected()

    async def mark_disconnected(self, reason: str) -> None:
        if self._state is not SessionState.CONNECTED:
            return
        log_error(f"SSH session lost: {reason}")
        transport, self._transport = self._transport, None
        self._state = SessionState.DISCONNECTED
        await self.elevation.invalidate()
        if transport is not None:
            await self._close_transport(transport)

    async def set_su_password(self, password: Optional[str]) -> None:
        """Replace the su password and drop the current elevated shell.

        With a new password the session re-elevates immediately; with None
        it stays unelevated.
        """
        password = sanitize_password(password)
        if password is not None and not is_valid_password(password):
            raise InvalidParamsError("su password contains invalid characters")
        self._ssh_config = self._ssh_config.with_su_password(password)
        await self.elevation.reset()
        if password:
            await self.ensure_connected()
            await self.elevation.ensure_elevated()

    async def close(self) -> None:
        self._generation += 1
        await self.elevation.reset()
        transport, self._transport = self._transport, None
        self._state = SessionState.DISCONNECTED
        if transport is not None:
            await self._close_transport(transport)
            log_error("SSH connection closed")
