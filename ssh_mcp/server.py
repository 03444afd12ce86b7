from typing import Any, Callable, Dict, Optional

from ssh_mcp.config import DEFAULT_MAX_CHARS, DEFAULT_TIMEOUT_MS, ServerConfig, SshConfig, config
from ssh_mcp.errors import ElevationFailedError, SshMcpError
from ssh_mcp.executor import CommandExecutor, CommandOutput
from ssh_mcp.sanitize import sanitize_command
from ssh_mcp.session import SSHSessionManager
from ssh_mcp.transport import Transport
from ssh_mcp.utils import log_debug, log_error, truncate_tail

STDERR_SEPARATOR = "\n--- stderr ---\n"


def error_result(exc: SshMcpError) -> Dict[str, Any]:
    return {"success": False, "error": str(exc), "error_type": exc.error_type}


def project_command_result(output: CommandOutput, output_max_chars: Optional[int] = None) -> Dict[str, Any]:
    text = output.stdout
    if output.stderr:
        text = f"{text}{STDERR_SEPARATOR}{output.stderr}" if text else output.stderr
    text, truncated = truncate_tail(text, output_max_chars)

    projected = {
        "success": output.success,
        "output": text,
        "exit_code": output.exit_code,
        "truncated": truncated,
    }
    if not output.success:
        projected["error"] = f"Command failed with exit code {output.exit_code}"
    return projected


class SSHToolServer:
    """Tool-facing wrapper around one SSH session.

    Every call returns a result dict; SshMcpError never escapes.
    """

    def __init__(
        self,
        manager: SSHSessionManager,
        executor: Optional[CommandExecutor] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_chars: Optional[int] = DEFAULT_MAX_CHARS,
        output_max_chars: Optional[int] = None,
        disable_sudo: bool = False,
    ):
        self.manager = manager
        self.executor = executor or CommandExecutor(manager)
        self.timeout_ms = timeout_ms
        self.max_chars = max_chars
        self.output_max_chars = output_max_chars
        self.disable_sudo = disable_sudo

    @classmethod
    def from_config(
        cls,
        server_config: ServerConfig = config,
        transport_factory: Optional[Callable[[], Transport]] = None,
    ) -> "SSHToolServer":
        ssh_config = SshConfig.from_server_config(server_config)
        manager = SSHSessionManager(ssh_config, transport_factory=transport_factory)
        return cls(
            manager,
            timeout_ms=server_config.TIMEOUT_MS,
            max_chars=server_config.MAX_CHARS,
            output_max_chars=server_config.OUTPUT_MAX_CHARS,
            disable_sudo=server_config.DISABLE_SUDO,
        )

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    async def exec(self, command: str) -> Dict[str, Any]:
        try:
            command = sanitize_command(command, self.max_chars)
            await self.manager.ensure_connected()
            if self.manager.su_password and not self.manager.elevation.is_elevated():
                try:
                    await self.manager.elevation.ensure_elevated()
                except ElevationFailedError as exc:
                    log_error(f"{exc}; running command without elevation")
            output = await self.executor.exec_command(command, self.timeout)
        except SshMcpError as exc:
            log_debug(f"exec failed: {exc.error_type}")
            return error_result(exc)
        return project_command_result(output, self.output_max_chars)

    async def sudo_exec(self, command: str) -> Dict[str, Any]:
        if self.disable_sudo:
            return {
                "success": False,
                "error": "sudo-exec is disabled by configuration",
                "error_type": "disabled",
            }
        try:
            command = sanitize_command(command, self.max_chars)
            await self.manager.ensure_connected()
            output = await self.executor.exec_with_privilege(command, self.timeout)
        except SshMcpError as exc:
            log_debug(f"sudo-exec failed: {exc.error_type}")
            return error_result(exc)
        return project_command_result(output, self.output_max_chars)

    async def call_tool(self, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        command = args.get("command")
        if not isinstance(command, str):
            return {"success": False, "error": "Invalid parameters: command must be a string", "error_type": "invalid_params"}
        if tool_name == "exec":
            return await self.exec(command)
        if tool_name in ("sudo-exec", "sudo_exec"):
            return await self.sudo_exec(command)
        return {"success": False, "error": f"Unknown tool: {tool_name}", "error_type": "unknown_tool"}

    async def shutdown(self) -> None:
        await self.executor.wait_background()
        await self.manager.close()
