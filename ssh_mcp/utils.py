import sys
from typing import Optional

from ssh_mcp.config import ANSI_ESCAPE, CONTROL_CHARS, PROMPT_ONLY_LINE, config


def log_error(message: str) -> None:
    print(f"[SSH-MCP] {message}", file=sys.stderr, flush=True)


def log_debug(message: str) -> None:
    if config.DEBUG:
        print(f"[SSH-MCP] debug: {message}", file=sys.stderr, flush=True)


def strip_terminal_noise(text: str) -> str:
    if not text:
        return ""
    text = ANSI_ESCAPE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return CONTROL_CHARS.sub("", text)


def _match_echo(line: str, candidates: list) -> Optional[str]:
    # An echoed input line may still carry the prompt it was typed at.
    for candidate in candidates:
        if line == candidate:
            return candidate
        if line.endswith(candidate):
            head = line[: -len(candidate)].strip()
            if head.endswith(("#", "$", ">")):
                return candidate
    return None


def clean_output(text: str, drop_lines: Optional[list] = None) -> str:
    """Strip terminal noise from PTY output.

    Lines equal to one of ``drop_lines`` (echoed input) and prompt-only
    lines are removed.
    """
    text = strip_terminal_noise(text)
    if not text:
        return ""
    drop = [line.strip() for line in (drop_lines or []) if line.strip()]
    cleaned_lines = []
    for line in text.split("\n"):
        stripped = line.strip()
        echoed = _match_echo(stripped, drop)
        if echoed is not None:
            drop.remove(echoed)
            continue
        if PROMPT_ONLY_LINE.match(stripped):
            continue
        cleaned_lines.append(line)
    while cleaned_lines and not cleaned_lines[0].strip():
        cleaned_lines.pop(0)
    while cleaned_lines and not cleaned_lines[-1].strip():
        cleaned_lines.pop()
    if not cleaned_lines:
        return ""
    return "\n".join(cleaned_lines) + "\n"


def truncate_tail(text: str, max_chars: Optional[int]) -> tuple:
    if max_chars is None or len(text) <= max_chars:
        return text, False
    return text[-max_chars:], True
