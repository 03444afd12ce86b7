from typing import Optional

from ssh_mcp.sanitize import shell_quote


def wrap_sudo_command(command: str, password: Optional[str] = None) -> str:
    """Wrap ``command`` so it runs through sudo without a terminal.

    Without a password the wrapper uses ``sudo -n`` and fails at once when
    sudo would ask for one. With a password, printf feeds it to
    ``sudo -S`` on stdin with the sudo prompt set to the empty string.
    The command always runs through ``sh -c``; both the command and the
    password are single-quoted.
    """
    if password is None:
        return f"sudo -n sh -c {shell_quote(command)}"
    return f"printf '%s\\n' {shell_quote(password)} | sudo -p \"\" -S sh -c {shell_quote(command)}"


def is_valid_password(password: str) -> bool:
    return bool(password.strip()) and "\0" not in password


def sanitize_password(password: Optional[str]) -> Optional[str]:
    if password is None:
        return None
    trimmed = password.strip()
    return trimmed or None
