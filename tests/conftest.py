"""
Shared pytest fixtures for the SSH core tests.

This module provides a scriptable in-memory remote:
- FakeRemote: counts handshakes, scripts connect failures and delays
- FakeTransport / FakeChannel: implement the transport capability set
- SuShell: a shell responder that plays the ``su -`` conversation
"""

import asyncio
import re
from typing import Callable, List, Optional

import pytest

from ssh_mcp.config import ANSI_ESCAPE, SshConfig
from ssh_mcp.errors import ChannelError
from ssh_mcp.session import SSHSessionManager
from ssh_mcp.transport import CLOSE, DATA, EXIT_STATUS, EXTENDED, Channel, ChannelEvent, Transport

SENTINEL_LINE = re.compile(r"printf '%s%s:%s\\n' '([^']*)' '([^']*)'")


class FakeChannel(Channel):
    def __init__(self, remote: "FakeRemote"):
        self.remote = remote
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sent: List[bytes] = []
        self.command: Optional[str] = None
        self.pty = None
        self.shell = False
        self._closed = False
        self._finished = False

    # Scripting helpers
    def emit(self, text: str = "", kind: str = DATA) -> None:
        self.queue.put_nowait(ChannelEvent(kind, text.encode("utf-8")))

    def emit_stderr(self, text: str) -> None:
        self.emit(text, EXTENDED)

    def emit_exit(self, status: int) -> None:
        self.queue.put_nowait(ChannelEvent(EXIT_STATUS, exit_status=status))

    def emit_close(self) -> None:
        self.queue.put_nowait(ChannelEvent(CLOSE))

    def finish(self, stdout: str = "", stderr: str = "", exit_status: Optional[int] = 0) -> None:
        if stdout:
            self.emit(stdout)
        if stderr:
            self.emit_stderr(stderr)
        if exit_status is not None:
            self.emit_exit(exit_status)
        self.emit_close()

    # Channel interface
    async def exec(self, command: str) -> None:
        if self.remote.reject_exec:
            raise ChannelError("exec request rejected")
        self.command = command
        self.remote.exec_commands.append(command)
        if self.remote.exec_handler is not None:
            self.remote.exec_handler(self, command)

    async def request_pty(self, term: str, width: int, height: int) -> None:
        if self.remote.reject_pty:
            raise ChannelError("PTY request rejected")
        self.pty = (term, width, height)

    async def request_shell(self) -> None:
        self.shell = True
        self.remote.shells += 1
        if self.remote.shell_responder is not None:
            self.remote.shell_responder.on_open(self)

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise ChannelError("channel is closed")
        self.sent.append(bytes(data))
        if self.shell and self.remote.shell_responder is not None:
            self.remote.shell_responder.on_input(self, bytes(data))

    async def read(self) -> ChannelEvent:
        if self._finished:
            return ChannelEvent(CLOSE)
        event = await self.queue.get()
        if event.kind == CLOSE:
            self._finished = True
        return event

    def drain(self) -> List[ChannelEvent]:
        events = []
        while not self._finished and not self.queue.empty():
            event = self.queue.get_nowait()
            if event.kind == CLOSE:
                self._finished = True
            events.append(event)
        return events

    @property
    def closed(self) -> bool:
        return self._closed or self._finished

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.queue.put_nowait(ChannelEvent(CLOSE))


class FakeTransport(Transport):
    def __init__(self, remote: "FakeRemote"):
        self.remote = remote
        self.active = False
        self.closed = False

    async def connect(self, ssh_config: SshConfig, timeout: float) -> None:
        self.remote.handshakes += 1
        self.remote.auth_methods.append(ssh_config.auth_method)
        if self.remote.connect_delay:
            await asyncio.sleep(self.remote.connect_delay)
        if self.remote.connect_errors:
            raise self.remote.connect_errors.pop(0)
        self.active = True

    async def open_channel(self) -> Channel:
        if not self.active:
            raise ChannelError("transport is not active")
        channel = FakeChannel(self.remote)
        self.remote.channels.append(channel)
        return channel

    def is_active(self) -> bool:
        return self.active

    async def close(self) -> None:
        self.active = False
        self.closed = True

    def drop(self) -> None:
        self.active = False


class FakeRemote:
    def __init__(self):
        self.handshakes = 0
        self.auth_methods: List[Optional[str]] = []
        self.connect_delay = 0.0
        self.connect_errors: List[Exception] = []
        self.transports: List[FakeTransport] = []
        self.channels: List[FakeChannel] = []
        self.exec_commands: List[str] = []
        self.exec_handler: Optional[Callable[[FakeChannel, str], None]] = None
        self.shell_responder: Optional["SuShell"] = None
        self.reject_pty = False
        self.reject_exec = False
        self.shells = 0

    def transport_factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def abort_commands(self) -> List[str]:
        return [command for command in self.exec_commands if "pkill -f" in command]


class SuShell:
    """Plays a login shell that answers ``su -`` and then runs commands as root.

    ``commands`` maps a command line to ``(output, exit_status)``; a command
    that is missing keeps the shell busy until it is interrupted, and input
    typed meanwhile runs after the interrupt. With ``wrap_width`` set, echoed
    lines wrap at that column the way readline does on a narrow terminal.
    """

    def __init__(
        self,
        password: str = "rootpw",
        no_password: bool = False,
        silent: bool = False,
        commands: Optional[dict] = None,
        user_prompt: str = "user@host:~$ ",
        root_prompt: str = "\x1b[01;31mroot@host\x1b[00m:~# ",
        wrap_width: Optional[int] = None,
        interrupt_delay: Optional[float] = None,
    ):
        self.password = password
        self.no_password = no_password
        self.silent = silent
        self.commands = commands or {}
        self.user_prompt = user_prompt
        self.root_prompt = root_prompt
        self.wrap_width = wrap_width
        self.interrupt_delay = interrupt_delay
        self.state = "user"
        self.prompt = root_prompt
        self.echo = True
        self.busy = False
        self.typed_ahead: List[str] = []
        self.received: List[str] = []
        self.interrupts = 0

    def on_open(self, channel: FakeChannel) -> None:
        self.state = "user"
        self.prompt = self.root_prompt
        self.echo = True
        self.busy = False
        self.typed_ahead = []
        channel.emit("Last login: Mon Oct 12 10:00:00 2026\r\n" + self.user_prompt)

    def on_input(self, channel: FakeChannel, data: bytes) -> None:
        text = data.decode("utf-8")
        self.received.append(text)
        if self.state == "user":
            if text.startswith("su -") and not self.silent:
                channel.emit("su -\r\n")
                if self.no_password:
                    self.state = "root"
                    channel.emit(self.root_prompt)
                else:
                    self.state = "password"
                    channel.emit("Password: ")
        elif self.state == "password":
            if text.rstrip("\n") == self.password:
                self.state = "root"
                channel.emit("\r\n" + self.root_prompt)
            else:
                self.state = "user"
                channel.emit("\r\nsu: Authentication failure\r\n" + self.user_prompt)
        elif self.state == "root":
            if text.startswith("\x03"):
                if self.interrupt_delay:
                    asyncio.get_running_loop().call_later(
                        self.interrupt_delay, self._interrupt, channel, text[1:]
                    )
                else:
                    self._interrupt(channel, text[1:])
            elif self.busy:
                self.typed_ahead.append(text)
            else:
                self._run(channel, text)

    def _interrupt(self, channel: FakeChannel, rest: str) -> None:
        self.interrupts += 1
        self.busy = False
        channel.emit("^C\r\n" + self.prompt)
        pending, self.typed_ahead = [rest] + self.typed_ahead, []
        for text in pending:
            if self.busy:
                self.typed_ahead.append(text)
            else:
                self._run(channel, text)

    def _echo(self, line: str) -> str:
        if not self.wrap_width:
            return line + "\r\n"
        column = len(ANSI_ESCAPE.sub("", self.prompt))
        pieces = [line[:self.wrap_width - column]]
        rest = line[self.wrap_width - column:]
        while rest:
            pieces.append(rest[:self.wrap_width])
            rest = rest[self.wrap_width:]
        return " \r".join(pieces) + "\r\n"

    def _run(self, channel: FakeChannel, text: str) -> None:
        status = 0
        for line in text.split("\n"):
            if not line:
                continue
            if self.echo:
                channel.emit(self._echo(line))
            sentinel = SENTINEL_LINE.search(line)
            if sentinel:
                channel.emit(f"{sentinel.group(1)}{sentinel.group(2)}:{status}\r\n" + self.prompt)
                continue
            if line.startswith("stty -echo"):
                self.echo = False
                if "PS1='# '" in line:
                    self.prompt = "# "
                channel.emit(self.prompt)
                continue
            if "pkill -f" in line:
                status = 0
                channel.emit(self.prompt)
                continue
            if line not in self.commands:
                self.busy = True
                return
            output, status = self.commands[line]
            channel.emit(output.replace("\n", "\r\n") + self.prompt)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def ssh_config():
    return SshConfig(host="10.0.0.5", username="deploy", password="secret")


@pytest.fixture
def su_config():
    return SshConfig(host="10.0.0.5", username="deploy", password="secret", su_password="rootpw")


@pytest.fixture
def make_manager(remote):
    def factory(ssh_config: SshConfig, **kwargs) -> SSHSessionManager:
        kwargs.setdefault("password_prompt_timeout", 0.2)
        kwargs.setdefault("root_prompt_timeout", 0.2)
        return SSHSessionManager(ssh_config, transport_factory=remote.transport_factory, **kwargs)

    return factory


@pytest.fixture
def manager(make_manager, ssh_config):
    return make_manager(ssh_config)


def reply(stdout: str = "", stderr: str = "", exit_status: Optional[int] = 0):
    """Exec handler that answers every command the same way."""

    def handler(channel: FakeChannel, command: str) -> None:
        channel.finish(stdout, stderr, exit_status)

    return handler


def hang_unless_abort(channel: FakeChannel, command: str) -> None:
    """Exec handler where only the abort command ever completes."""
    if "pkill -f" in command:
        channel.finish()
