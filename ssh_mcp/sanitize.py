from typing import Optional

from ssh_mcp.errors import InvalidParamsError


def sanitize_command(command: str, max_chars: Optional[int] = None) -> str:
    """Validate the shape of a command before it is sent anywhere.

    Empty or whitespace-only commands and commands longer than
    ``max_chars`` are rejected with InvalidParamsError. A command that is
    too long is never shortened. Anything else is returned unchanged; this
    is not an allow/deny filter.
    """
    if command is None or not str(command).strip():
        raise InvalidParamsError("Command cannot be empty")
    if max_chars is not None and len(command) > max_chars:
        raise InvalidParamsError(
            f"Command is too long (max {max_chars} characters, got {len(command)})"
        )
    return command


def escape_for_shell(text: str) -> str:
    # 'it's' -> it'"'"'s : close quote, literal quote in double quotes, reopen
    return text.replace("'", "'\"'\"'")


def shell_quote(text: str) -> str:
    return f"'{escape_for_shell(text)}'"
