"""Logging utilities for Expertverse.

Provides color-coded console output so scheduler bookkeeping, LLM calls,
failures and completions are easy to tell apart in a running session.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Queue and status bookkeeping
    YELLOW = "\033[93m"    # LLM calls (chat, improve, train, research)
    RED = "\033[91m"       # Errors and retries
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata
    MAGENTA = "\033[95m"   # Collaboration handoffs

    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes unless EXPERTVERSE_NO_COLOR is set."""
    if os.getenv("EXPERTVERSE_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def _emit(message: str, color: Color) -> None:
    if os.getenv("EXPERTVERSE_QUIET"):
        return
    print(colored(message, color))


def log_deterministic(message: str) -> None:
    """Log a queue/status operation (blue)."""
    _emit(f"{LOG_TAG_DETERMINISTIC} {message}", Color.BLUE)


def log_llm(message: str) -> None:
    """Log an LLM operation (yellow)."""
    _emit(f"{LOG_TAG_LLM} {message}", Color.YELLOW)


def log_error(message: str) -> None:
    """Log an error or retry (red)."""
    _emit(f"{LOG_TAG_ERROR} {message}", Color.RED)


def log_success(message: str) -> None:
    """Log a success (green)."""
    _emit(f"{LOG_TAG_SUCCESS} {message}", Color.GREEN)


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    _emit(f"{LOG_TAG_INFO} {message}", Color.CYAN)


def log_handoff(message: str) -> None:
    """Log a collaboration handoff (magenta)."""
    _emit(f"{LOG_TAG_HANDOFF} {message}", Color.MAGENTA)


def debug_llm_enabled() -> bool:
    return os.getenv("DEBUG_LLM", "").lower() in ("1", "true", "yes")


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[AI]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"
LOG_TAG_HANDOFF = "[⇄]"
