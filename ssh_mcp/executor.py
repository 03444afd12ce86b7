import asyncio
import re
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from ssh_mcp.config import ABORT_DISPATCH_TIMEOUT, ABORT_KILL_TIMEOUT, SENTINEL_PREFIX
from ssh_mcp.elevation import ElevatedChannel
from ssh_mcp.errors import ChannelError, CommandTimeoutError, SSHConnectionError
from ssh_mcp.privilege import wrap_sudo_command
from ssh_mcp.sanitize import shell_quote
from ssh_mcp.transport import CLOSE, DATA, EXIT_STATUS, EXTENDED, Channel
from ssh_mcp.utils import clean_output, log_debug, log_error

ABORT_REAP_TIMEOUT = 5.0
STALE_SENTINEL_LINE = re.compile(re.escape(SENTINEL_PREFIX) + r"[0-9a-f]+:\d+")
INTERRUPT_ECHO = "^C"


@dataclass(frozen=True)
class CommandOutput:
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None

    @property
    def success(self) -> bool:
        # A missing exit status counts as success.
        return self.exit_code is None or self.exit_code == 0

    def combined_output(self) -> str:
        if not self.stderr:
            return self.stdout
        if not self.stdout:
            return self.stderr
        return f"{self.stdout}\n{self.stderr}"


def build_abort_command(command: str) -> str:
    return f"timeout {ABORT_KILL_TIMEOUT} pkill -f {shell_quote(command)} 2>/dev/null || true"


def build_sentinel_command(token: str) -> str:
    # The marker is split in the typed text so an echo never matches.
    return f"printf '%s%s:%s\\n' '{SENTINEL_PREFIX}' '{token}' \"$?\""


class CommandExecutor:
    """Runs commands over the session owned by ``manager``.

    Commands go through the elevated shell when the session holds one and
    through a fresh exec channel otherwise. When the deadline passes the
    caller gets CommandTimeoutError right away; one abort is sent without
    waiting for the remote side to finish.
    """

    def __init__(self, manager, abort_dispatch_timeout: float = ABORT_DISPATCH_TIMEOUT):
        self._manager = manager
        self.abort_dispatch_timeout = abort_dispatch_timeout
        self._background = set()

    async def exec_command(
        self, command: str, timeout: float, abort_pattern: Optional[str] = None
    ) -> CommandOutput:
        """Run ``command`` and collect its output within ``timeout`` seconds.

        ``abort_pattern`` is the text the abort kills by; it defaults to the
        command itself.
        """
        await self._manager.ensure_connected()
        abort_pattern = abort_pattern or command
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            async with self._manager.elevation.borrow(timeout) as elevated:
                if elevated is not None:
                    output = await self._exec_via_elevated(
                        elevated, command, timeout, deadline - loop.time(), abort_pattern
                    )
                    if output is not None:
                        return output
        except asyncio.TimeoutError:
            # Nothing was sent, so there is nothing to abort.
            timeout_ms = int(timeout * 1000)
            log_error(f"command timed out after {timeout_ms}ms waiting for the elevated shell")
            raise CommandTimeoutError(timeout_ms, command) from None
        return await self._exec_via_channel(command, timeout, deadline - loop.time(), abort_pattern)

    async def exec_with_privilege(self, command: str, timeout: float) -> CommandOutput:
        wrapped = wrap_sudo_command(command, self._manager.sudo_password)
        log_debug("running command through sudo")
        return await self.exec_command(wrapped, timeout, abort_pattern=command)

    async def _exec_via_channel(
        self, command: str, timeout: float, remaining: float, abort_pattern: str
    ) -> CommandOutput:
        channel: Optional[Channel] = None

        async def run() -> CommandOutput:
            nonlocal channel
            channel = await self._manager.open_channel()
            await channel.exec(command)
            return await self._collect(channel)

        try:
            output = await asyncio.wait_for(run(), remaining)
        except asyncio.TimeoutError:
            timeout_ms = int(timeout * 1000)
            log_error(f"command timed out after {timeout_ms}ms, sending abort")
            await self._abort(abort_pattern)
            raise CommandTimeoutError(timeout_ms, command) from None
        except ChannelError:
            await self._manager.check_liveness()
            raise
        finally:
            if channel is not None and not channel.closed:
                await channel.close()

        log_debug(f"command finished: exit_code={output.exit_code}, "
                  f"stdout={len(output.stdout)} chars, stderr={len(output.stderr)} chars")
        return output

    async def _collect(self, channel: Channel) -> CommandOutput:
        stdout = []
        stderr = []
        exit_code = None
        while True:
            event = await channel.read()
            if event.kind == DATA:
                stdout.append(event.data)
            elif event.kind == EXTENDED:
                stderr.append(event.data)
            elif event.kind == EXIT_STATUS:
                exit_code = event.exit_status
            elif event.kind == CLOSE:
                break
        return CommandOutput(
            stdout=b"".join(stdout).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr).decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    async def _exec_via_elevated(
        self, elevated: ElevatedChannel, command: str, timeout: float, remaining: float, abort_pattern: str
    ) -> Optional[CommandOutput]:
        """Run ``command`` in the elevated shell.

        Returns None when the shell turns out to be dead before anything was
        written, so the caller can fall back to an exec channel.
        """
        channel = elevated.channel
        stale = channel.drain()
        if any(event.kind == CLOSE for event in stale):
            await self._manager.elevation.discard(elevated, "elevated shell closed")
            return None

        token = uuid.uuid4().hex
        marker = f"{SENTINEL_PREFIX}{token}"
        sentinel_cmd = build_sentinel_command(token)
        sentinel = re.compile(re.escape(marker) + r":(\d+)[ \t]*\n(?:[^\n]*\n){0,2}[^\n]*$")

        async def run() -> Tuple[str, int]:
            scanner = elevated.scanner
            if elevated.pending_marker is not None:
                await self._settle(elevated, stale)
            scanner.clear()
            received = []
            await channel.send(f"{command}\n{sentinel_cmd}\n".encode("utf-8"))
            while True:
                event = await channel.read()
                if event.kind in (DATA, EXTENDED):
                    received.append(scanner.feed(event.data))
                    match = scanner.match_tail(sentinel)
                    if match is not None:
                        text = "".join(received)
                        return text[:text.rfind(marker)], int(match.group(1))
                elif event.kind == CLOSE:
                    raise ChannelError("elevated shell closed during command execution")

        try:
            raw, exit_code = await asyncio.wait_for(run(), remaining)
        except asyncio.TimeoutError:
            timeout_ms = int(timeout * 1000)
            log_error(f"command timed out after {timeout_ms}ms in elevated shell, sending abort")
            await self._abort_elevated(elevated, abort_pattern)
            raise CommandTimeoutError(timeout_ms, command) from None
        except ChannelError:
            await self._manager.elevation.discard(elevated, "write or read failed")
            await self._manager.check_liveness()
            raise

        lines = [
            line for line in raw.splitlines()
            if not STALE_SENTINEL_LINE.search(line) and line.strip() != INTERRUPT_ECHO
        ]
        stdout = clean_output("\n".join(lines), drop_lines=command.splitlines() + [sentinel_cmd])
        log_debug(f"elevated command finished: exit_code={exit_code}, stdout={len(stdout)} chars")
        return CommandOutput(stdout=stdout, stderr="", exit_code=exit_code)

    async def _abort(self, pattern: str) -> None:
        abort_cmd = build_abort_command(pattern)

        async def dispatch() -> Channel:
            channel = await self._manager.open_channel()
            try:
                await channel.exec(abort_cmd)
            except ChannelError:
                await channel.close()
                raise
            return channel

        try:
            channel = await asyncio.wait_for(dispatch(), self.abort_dispatch_timeout)
        except asyncio.TimeoutError:
            log_error("abort was not dispatched in time")
            return
        except SSHConnectionError as exc:
            log_error(f"failed to send abort: {exc}")
            return
        self._spawn(self._reap(channel))

    async def _abort_elevated(self, elevated: ElevatedChannel, pattern: str) -> None:
        # Ctrl-C for the foreground job, then the kill line and a marker the
        # next command reads up to before it starts, all in one write.
        token = uuid.uuid4().hex
        lines = f"{build_abort_command(pattern)}\n{build_sentinel_command(token)}\n"
        try:
            await asyncio.wait_for(
                elevated.channel.send(b"\x03" + lines.encode("utf-8")), self.abort_dispatch_timeout
            )
        except asyncio.TimeoutError:
            log_error("abort was not dispatched in time")
            return
        except SSHConnectionError as exc:
            log_error(f"failed to send abort: {exc}")
            return
        elevated.pending_marker = f"{SENTINEL_PREFIX}{token}"

    async def _settle(self, elevated: ElevatedChannel, stale: list) -> None:
        """Consume what an aborted command left on the shell, up to its marker."""
        done = re.compile(re.escape(elevated.pending_marker) + r":\d+")
        scanner = elevated.scanner
        scanner.clear()
        for event in stale:
            if event.kind in (DATA, EXTENDED):
                scanner.feed(event.data)
        while not scanner.contains(done):
            event = await elevated.channel.read()
            if event.kind in (DATA, EXTENDED):
                scanner.feed(event.data)
            elif event.kind == CLOSE:
                raise ChannelError("elevated shell closed during command execution")
        elevated.pending_marker = None
        log_debug("elevated shell settled after abort")

    async def _reap(self, channel: Channel) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ABORT_REAP_TIMEOUT
        try:
            while not channel.closed:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                event = await asyncio.wait_for(channel.read(), remaining)
                if event.kind == CLOSE:
                    break
        except asyncio.TimeoutError:
            log_debug("abort channel still open, closing it")
        finally:
            await channel.close()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for abort channels that are still being reaped."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
