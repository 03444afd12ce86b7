import asyncio
import functools
import threading
import time
from dataclasses import dataclass
from io import StringIO
from typing import List, Optional

import paramiko

from ssh_mcp.config import BUFFER_SIZE, CHANNEL_POLL_INTERVAL, KEEPALIVE_INTERVAL, SshConfig
from ssh_mcp.errors import AuthenticationError, ChannelError, SSHConnectionError
from ssh_mcp.utils import log_debug

DATA = "data"
EXTENDED = "extended"
EXIT_STATUS = "exit_status"
CLOSE = "close"


@dataclass(frozen=True)
class ChannelEvent:
    kind: str
    data: bytes = b""
    exit_status: Optional[int] = None


class Channel:
    """One SSH session channel.

    ``read`` waits for the next event and keeps returning a ``close`` event
    once the channel is gone. Request and write failures raise ChannelError.
    """

    async def exec(self, command: str) -> None:
        raise NotImplementedError

    async def request_pty(self, term: str, width: int, height: int) -> None:
        raise NotImplementedError

    async def request_shell(self) -> None:
        raise NotImplementedError

    async def send(self, data: bytes) -> None:
        raise NotImplementedError

    async def read(self) -> ChannelEvent:
        raise NotImplementedError

    def drain(self) -> List[ChannelEvent]:
        """Return every event already received, without waiting."""
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class Transport:
    """One authenticated connection to the remote endpoint."""

    async def connect(self, ssh_config: SshConfig, timeout: float) -> None:
        """Open the connection and authenticate.

        Raises SSHConnectionError for transport or handshake failures and
        AuthenticationError when the credentials are rejected.
        """
        raise NotImplementedError

    async def open_channel(self) -> Channel:
        raise NotImplementedError

    def is_active(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


async def _run_blocking(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def load_private_key(key_content: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    key_classes = [
        paramiko.Ed25519Key,
        paramiko.ECDSAKey,
        paramiko.RSAKey,
    ]
    for key_class in key_classes:
        try:
            return key_class.from_private_key(StringIO(key_content), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise AuthenticationError("Private key requires a passphrase") from exc
        except (paramiko.SSHException, ValueError):
            continue
    raise AuthenticationError("Failed to parse private key")


class ParamikoChannel(Channel):
    def __init__(self, channel: paramiko.Channel, loop: asyncio.AbstractEventLoop):
        self._channel = channel
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = False
        self._stop = threading.Event()
        self._reader = threading.Thread(target=self._reader_loop, daemon=True)
        self._reader.start()

    def _push(self, event: ChannelEvent) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # Event loop already closed.
            self._stop.set()

    def _reader_loop(self) -> None:
        channel = self._channel
        exit_reported = False
        try:
            while not self._stop.is_set():
                progressed = False
                if channel.recv_ready():
                    data = channel.recv(BUFFER_SIZE)
                    if data:
                        self._push(ChannelEvent(DATA, data))
                        progressed = True
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(BUFFER_SIZE)
                    if data:
                        self._push(ChannelEvent(EXTENDED, data))
                        progressed = True
                if progressed:
                    continue
                if not exit_reported and channel.exit_status_ready():
                    self._push(ChannelEvent(EXIT_STATUS, exit_status=channel.recv_exit_status()))
                    exit_reported = True
                if channel.closed:
                    break
                time.sleep(CHANNEL_POLL_INTERVAL)
            if not exit_reported and channel.exit_status_ready():
                self._push(ChannelEvent(EXIT_STATUS, exit_status=channel.recv_exit_status()))
        except (OSError, EOFError, paramiko.SSHException) as exc:
            log_debug(f"channel reader stopped: {exc}")
        finally:
            self._push(ChannelEvent(CLOSE))

    async def _request(self, what: str, func, *args):
        try:
            await _run_blocking(func, *args)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            raise ChannelError(f"{what} failed: {exc}") from exc

    async def exec(self, command: str) -> None:
        await self._request("exec request", self._channel.exec_command, command)

    async def request_pty(self, term: str, width: int, height: int) -> None:
        await self._request("PTY request", self._channel.get_pty, term, width, height)

    async def request_shell(self) -> None:
        await self._request("shell request", self._channel.invoke_shell)

    async def send(self, data: bytes) -> None:
        if self._channel.closed:
            raise ChannelError("channel is closed")
        await self._request("write", self._channel.sendall, data)

    async def read(self) -> ChannelEvent:
        if self._finished:
            return ChannelEvent(CLOSE)
        event = await self._queue.get()
        if event.kind == CLOSE:
            self._finished = True
        return event

    def drain(self) -> List[ChannelEvent]:
        events = []
        while not self._finished:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if event.kind == CLOSE:
                self._finished = True
            events.append(event)
        return events

    @property
    def closed(self) -> bool:
        return self._finished or self._channel.closed

    async def close(self) -> None:
        self._stop.set()
        try:
            await _run_blocking(self._channel.close)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            log_debug(f"channel close failed: {exc}")


class ParamikoTransport(Transport):
    def __init__(self, client_factory=None):
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()
        self._abandoned = False

    def _connect_blocking(self, ssh_config: SshConfig, timeout: float) -> None:
        client = self._client_factory()
        if ssh_config.verify_host_key:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": ssh_config.host,
            "port": ssh_config.port,
            "username": ssh_config.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if ssh_config.password:
            connect_kwargs["password"] = ssh_config.password
        elif ssh_config.private_key:
            connect_kwargs["pkey"] = load_private_key(ssh_config.private_key, ssh_config.key_passphrase)
        else:
            raise AuthenticationError("No authentication method available (require password or private_key)")

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise AuthenticationError(str(exc) or f"{ssh_config.auth_method} authentication rejected") from exc
        except (OSError, EOFError, paramiko.SSHException) as exc:
            client.close()
            raise SSHConnectionError(str(exc) or exc.__class__.__name__) from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        with self._lock:
            if self._abandoned:
                client.close()
                raise SSHConnectionError("connection attempt abandoned")
            self._client = client

    async def connect(self, ssh_config: SshConfig, timeout: float) -> None:
        await _run_blocking(self._connect_blocking, ssh_config, timeout)

    async def open_channel(self) -> Channel:
        transport = self._client.get_transport() if self._client else None
        if transport is None or not transport.is_active():
            raise ChannelError("transport is not active")
        try:
            channel = await _run_blocking(transport.open_session)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            raise ChannelError(f"Failed to open channel: {exc}") from exc
        return ParamikoChannel(channel, asyncio.get_running_loop())

    def is_active(self) -> bool:
        if not self._client:
            return False
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    async def close(self) -> None:
        with self._lock:
            self._abandoned = True
            client, self._client = self._client, None
        if client is not None:
            await _run_blocking(client.close)
