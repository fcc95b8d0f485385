"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from typing import Any

from loguru import logger as _logger


def setup_logging(
    log_file: str = "logs/engine.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Configure structured logging for the execution engine.

    Args:
        log_file: Path to log file (parent directories are created)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to console as well
    """
    # Remove default handler
    _logger.remove()

    # Log format: timestamp, level, module, function, message, bound event fields
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level> {extra}"
    )

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(
        str(log_path),
        format=log_format,
        level=level,
        rotation="100 MB",
        retention="7 days",
    )

    # Rollbacks that fail need a human; keep them in a separate file too
    _logger.add(
        str(log_path.with_name("critical.log")),
        format=log_format,
        level="CRITICAL",
        rotation="10 MB",
        retention="30 days",
    )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=log_format,
            level=level,
            colorize=True,
        )


def log_event(event: str, level: str = "INFO", **fields: Any) -> None:
    """Emit a structured engine event.

    The event name and fields are bound onto the record's ``extra`` dict so
    an external sink (``logger.add(sink, filter=...)``) can consume them
    without parsing the message text.
    """
    _logger.bind(event=event, **fields).opt(depth=1).log(level, event)


logger = _logger
