from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    DEBUG = "\033[36m"
    INFO = "\033[32m"
    WARNING = "\033[33m"
    ERROR = "\033[31m"
    CRITICAL = "\033[35m"

    TIMESTAMP = "\033[90m"
    EVENT = "\033[96m"
    KEY = "\033[94m"
    VALUE = "\033[37m"
    NUMBER = "\033[93m"
    STRING = "\033[92m"


LEVEL_COLORS = {
    "DEBUG": Colors.DEBUG,
    "INFO": Colors.INFO,
    "WARNING": Colors.WARNING,
    "ERROR": Colors.ERROR,
    "CRITICAL": Colors.CRITICAL,
}

NOISY_LOGGERS = {
    "aiosqlite": logging.WARNING,
    "aiogram": logging.INFO,
}


def _colorize(value: Any) -> str:
    if value is None:
        return f"{Colors.DIM}None{Colors.RESET}"
    if isinstance(value, (bool, int, float)):
        return f"{Colors.NUMBER}{value}{Colors.RESET}"
    if isinstance(value, str):
        return f"{Colors.STRING}{value}{Colors.RESET}"
    return f"{Colors.VALUE}{value}{Colors.RESET}"


class ColoredConsoleRenderer:
    """Human-readable structlog renderer; plain JSON when stdout is not a TTY."""

    def __init__(self, colored: bool = True):
        self.colored = colored and sys.stdout.isatty()

    def __call__(self, logger: Any, name: str, event_dict: dict) -> str:
        if not self.colored:
            return structlog.processors.JSONRenderer()(logger, name, event_dict)

        timestamp = event_dict.pop("timestamp", "")
        level = event_dict.pop("level", "info").upper()
        event = event_dict.pop("event", "")

        parts = []
        if timestamp:
            parts.append(f"{Colors.TIMESTAMP}[{timestamp}]{Colors.RESET}")
        parts.append(f"{LEVEL_COLORS.get(level, Colors.INFO)}{Colors.BOLD}{level:8}{Colors.RESET}")
        parts.append(f"{Colors.EVENT}{event}{Colors.RESET}")
        if event_dict:
            separator = f" {Colors.DIM}|{Colors.RESET} "
            pairs = [f"{Colors.KEY}{key}{Colors.RESET}={_colorize(value)}" for key, value in event_dict.items()]
            parts.append(f"{Colors.DIM}|{Colors.RESET} " + separator.join(pairs))
        return " ".join(parts)


class ColoredFormatter(logging.Formatter):
    """Formatter for stdlib loggers (aiogram, aiosqlite) matching the structlog output."""

    def format(self, record: logging.LogRecord) -> str:
        if not sys.stdout.isatty():
            return super().format(record)
        color = LEVEL_COLORS.get(record.levelname, Colors.INFO)
        timestamp = self.formatTime(record, "%H:%M:%S")
        return (
            f"{Colors.TIMESTAMP}[{timestamp}]{Colors.RESET} "
            f"{color}{Colors.BOLD}{record.levelname:8}{Colors.RESET} "
            f"{Colors.DIM}{record.name}{Colors.RESET} "
            f"{Colors.VALUE}{record.getMessage()}{Colors.RESET}"
        )


def parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown logging level: {level}")
    return resolved


def setup_logging(level: int | str = logging.INFO, use_json: bool = False) -> None:
    """
    Configure structlog and stdlib logging for the moderation worker.

    Args:
        level: Logging level as a number or name (default: INFO)
        use_json: Render JSON lines instead of colored console output
    """
    numeric = parse_level(level)
    renderer = structlog.processors.JSONRenderer() if use_json else ColoredConsoleRenderer(colored=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso" if use_json else "%H:%M:%S", utc=use_json),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(ColoredFormatter())
    logging.basicConfig(level=numeric, handlers=[handler], force=True)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
