import asyncio
import codecs
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional, Pattern

from ssh_mcp.config import (
    AUTH_FAILURE, PASSWORD_PROMPT, PASSWORD_PROMPT_TIMEOUT, PTY_HEIGHT, PTY_TERM, PTY_WIDTH,
    ROOT_PROMPT, ROOT_PROMPT_TIMEOUT, SCAN_BUFFER_CHARS, SHELL_READY_PROMPT, SHELL_SETUP, SU_COMMAND
)
from ssh_mcp.errors import ChannelError, ElevationFailedError, SSHConnectionError
from ssh_mcp.transport import CLOSE, DATA, EXTENDED, Channel
from ssh_mcp.utils import log_debug, log_error, strip_terminal_noise


class ElevationState(Enum):
    IDLE = "idle"
    REQUESTING_PTY = "requesting_pty"
    REQUESTING_SHELL = "requesting_shell"
    AWAITING_PASSWORD_PROMPT = "awaiting_password_prompt"
    AWAITING_ROOT_PROMPT = "awaiting_root_prompt"
    ELEVATED = "elevated"
    FAILED = "failed"


class PromptScanner:
    """Bounded buffer over a PTY byte stream.

    Only the last ``max_chars`` decoded characters are kept. Matching runs
    on the buffer with ANSI sequences and control characters removed;
    ``match_tail`` only accepts a match that ends at the end of the buffer.
    """

    def __init__(self, max_chars: int = SCAN_BUFFER_CHARS):
        self.max_chars = max_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> str:
        text = self._decoder.decode(data)
        if text:
            self._buffer = (self._buffer + text)[-self.max_chars:]
        return text

    @property
    def text(self) -> str:
        return self._buffer

    def clean_text(self) -> str:
        return strip_terminal_noise(self._buffer)

    def match_tail(self, pattern: Pattern):
        clean = self.clean_text()
        match = pattern.search(clean)
        if match is None or match.end() != len(clean):
            return None
        return match

    def ends_with(self, pattern: Pattern) -> bool:
        return self.match_tail(pattern) is not None

    def contains(self, pattern: Pattern) -> bool:
        return pattern.search(self.clean_text()) is not None

    def clear(self) -> None:
        self._buffer = ""
        self._decoder.reset()


class ElevatedChannel:
    def __init__(self, channel: Channel, scanner: Optional[PromptScanner] = None):
        self.channel = channel
        self.scanner = scanner or PromptScanner()
        self.lock = asyncio.Lock()
        # Marker of an abort whose output has not been consumed yet.
        self.pending_marker: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return not self.channel.closed


class ElevationEngine:
    """Owns the single elevated shell of a session.

    ``ensure_elevated`` is single-flight: concurrent callers share one
    negotiation. The shell is lent to the executor through ``borrow`` and
    is discarded on reset or when the session disconnects.
    """

    def __init__(
        self,
        manager,
        password_prompt_timeout: float = PASSWORD_PROMPT_TIMEOUT,
        root_prompt_timeout: float = ROOT_PROMPT_TIMEOUT,
        su_command: str = SU_COMMAND,
    ):
        self._manager = manager
        self.password_prompt_timeout = password_prompt_timeout
        self.root_prompt_timeout = root_prompt_timeout
        self.su_command = su_command
        self.state = ElevationState.IDLE
        self.attempts = 0
        self._elevated: Optional[ElevatedChannel] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    def is_elevated(self) -> bool:
        return (
            self.state is ElevationState.ELEVATED
            and self._elevated is not None
            and self._elevated.healthy
        )

    async def ensure_elevated(self) -> None:
        if self.is_elevated():
            return
        if self._elevated is not None:
            await self.discard(self._elevated, "elevated shell is gone")
        if self._task is None:
            self._task = asyncio.ensure_future(self._elevate())
            self._task.add_done_callback(self._elevation_finished)
        else:
            log_debug("joining in-flight elevation attempt")
        await asyncio.shield(self._task)

    def _elevation_finished(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        if not task.cancelled():
            task.exception()

    @asynccontextmanager
    async def borrow(self, timeout: Optional[float] = None):
        """Lend the elevated channel for one command, serialized by its lock.

        Yields None when there is no healthy elevated channel. Raises
        asyncio.TimeoutError when the lock is not free within ``timeout``.
        """
        elevated = self._elevated if self.is_elevated() else None
        if elevated is None:
            yield None
            return
        await asyncio.wait_for(elevated.lock.acquire(), timeout)
        try:
            if elevated is self._elevated and elevated.healthy:
                yield elevated
            else:
                yield None
        finally:
            elevated.lock.release()

    async def discard(self, elevated: ElevatedChannel, reason: str) -> None:
        if elevated is not self._elevated:
            return
        log_error(f"dropping elevated shell: {reason}")
        self._elevated = None
        self.state = ElevationState.IDLE
        await elevated.channel.close()

    async def reset(self) -> None:
        self._generation += 1
        # The in-flight attempt, if any, fails on its generation check.
        self._task = None
        elevated, self._elevated = self._elevated, None
        self.state = ElevationState.IDLE
        if elevated is not None:
            await elevated.channel.close()

    async def invalidate(self) -> None:
        if self._elevated is not None:
            log_debug("session disconnected, elevated shell invalidated")
        await self.reset()

    async def _elevate(self) -> None:
        password = self._manager.ssh_config.su_password
        if not password:
            self.state = ElevationState.FAILED
            raise ElevationFailedError("No su_password configured")

        generation = self._generation
        self.attempts += 1
        self._set_state(generation, ElevationState.REQUESTING_PTY)
        try:
            channel = await self._manager.open_channel()
        except SSHConnectionError as exc:
            self._set_state(generation, ElevationState.FAILED)
            raise ElevationFailedError(f"Failed to open channel: {exc.message}") from exc

        try:
            elevated = await self._negotiate(channel, password, generation)
            if generation != self._generation:
                raise ElevationFailedError("Elevation reset while negotiating")
        except BaseException:
            self._set_state(generation, ElevationState.FAILED)
            await channel.close()
            raise

        self._elevated = elevated
        self.state = ElevationState.ELEVATED
        log_error("elevated to root via su")

    def _set_state(self, generation: int, state: ElevationState) -> None:
        # Only the current attempt moves the state machine.
        if generation == self._generation:
            self.state = state

    async def _negotiate(self, channel: Channel, password: str, generation: int) -> ElevatedChannel:
        try:
            await channel.request_pty(PTY_TERM, PTY_WIDTH, PTY_HEIGHT)
        except ChannelError as exc:
            raise ElevationFailedError(f"Failed to request PTY: {exc.message}") from exc

        self._set_state(generation, ElevationState.REQUESTING_SHELL)
        try:
            await channel.request_shell()
        except ChannelError as exc:
            raise ElevationFailedError(f"Failed to request shell: {exc.message}") from exc

        self._set_state(generation, ElevationState.AWAITING_PASSWORD_PROMPT)
        scanner = PromptScanner()
        await self._write(channel, f"{self.su_command}\n".encode("utf-8"), "su command")
        found = await self._wait_for(channel, scanner, PASSWORD_PROMPT, self.password_prompt_timeout)
        if found is None:
            if scanner.ends_with(ROOT_PROMPT):
                log_debug("root prompt reached without a password prompt")
                return await self._prepare_shell(channel, scanner)
            raise ElevationFailedError("Timed out waiting for su password prompt")

        log_debug("password prompt detected, sending password")
        secret = bytearray(password.encode("utf-8"))
        secret.extend(b"\n")
        try:
            await self._write(channel, secret, "password")
        finally:
            for index in range(len(secret)):
                secret[index] = 0
        scanner.clear()

        self._set_state(generation, ElevationState.AWAITING_ROOT_PROMPT)
        found = await self._wait_for(
            channel, scanner, ROOT_PROMPT, self.root_prompt_timeout, failure=AUTH_FAILURE
        )
        if found == "failure":
            last_line = scanner.clean_text().strip().splitlines()[-1:]
            detail = f": {last_line[0]}" if last_line else ""
            raise ElevationFailedError(f"su authentication failed{detail}")
        if found is None:
            raise ElevationFailedError("Timed out waiting for root prompt")
        return await self._prepare_shell(channel, scanner)

    async def _prepare_shell(self, channel: Channel, scanner: PromptScanner) -> ElevatedChannel:
        # Without echo, long input lines never come back wrapped into the output.
        scanner.clear()
        await self._write(channel, f"{SHELL_SETUP}\n".encode("utf-8"), "shell setup")
        found = await self._wait_for(channel, scanner, SHELL_READY_PROMPT, self.root_prompt_timeout)
        if found is None:
            raise ElevationFailedError("Timed out waiting for root prompt after shell setup")
        scanner.clear()
        return ElevatedChannel(channel, scanner)

    async def _write(self, channel: Channel, data, what: str) -> None:
        try:
            await channel.send(data)
        except ChannelError as exc:
            raise ElevationFailedError(f"Failed to send {what}: {exc.message}") from exc

    async def _wait_for(
        self,
        channel: Channel,
        scanner: PromptScanner,
        prompt: Pattern,
        window: float,
        failure: Optional[Pattern] = None,
    ) -> Optional[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        while True:
            if failure is not None and scanner.contains(failure):
                return "failure"
            if scanner.ends_with(prompt):
                return "prompt"
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                event = await asyncio.wait_for(channel.read(), remaining)
            except asyncio.TimeoutError:
                return None
            if event.kind in (DATA, EXTENDED):
                scanner.feed(event.data)
            elif event.kind == CLOSE:
                raise ElevationFailedError("Channel closed before elevation completed")
