"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

_redacted_values: set = set()


def register_secrets(values: Iterable[Optional[str]]) -> None:
    """Mask the given values wherever they appear in a log message."""
    for value in values:
        # short values would mask ordinary words
        if value and len(value) >= 8:
            _redacted_values.add(value)


def _redact(record) -> None:
    message = record["message"]
    for value in _redacted_values:
        if value in message:
            message = message.replace(value, "***")
    record["message"] = message


def setup_logging(
    log_file: Optional[str] = "relay.log",
    level: str = "INFO",
    enable_console: bool = True,
    serialize: bool = False,
) -> None:
    """Configure structured logging for the relay service.

    Args:
        log_file: Path to log file, or None to skip file logging
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stdout as well
        serialize: Emit JSON lines instead of the colored text format
    """
    _logger.remove()
    _logger.configure(patcher=_redact)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            format=LOG_FORMAT,
            level=level,
            rotation="100 MB",
            retention="7 days",
            serialize=serialize,
        )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=LOG_FORMAT,
            level=level,
            colorize=not serialize,
            serialize=serialize,
        )


_logger.configure(patcher=_redact)
logger = _logger
