"""System logger for operational events.

Provides a singleton logger for everything the engine reports about itself:
credential backend selection, cache recovery, HTTP retries, flow progress.

Logging strategy:
- Console (stderr): WARNING and above by default; the CLI lowers this to
  DEBUG with --verbose and raises it to ERROR with --silent.
- File (system.jsonl): optional, WARNING and above, JSONL via ISO8601Formatter.

Messages are dicts with an "event" key and a human "message". Secret values
are never passed to the logger; the file formatter masks known secret keys
as a second line of protection.
"""

from __future__ import annotations

__all__ = [
    "ConsoleFormatter",
    "configure_system_logger_file",
    "get_system_logger",
    "set_console_level",
]

import logging
import sys
from pathlib import Path

from entra_token.constants import APP_NAME
from entra_token.utils.file_helpers import ensure_secure_dir
from entra_token.utils.logging.iso_formatter import ISO8601Formatter


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output.

    Dict messages show their 'message' (or 'event'), prefixed with the
    profile name when the event concerns one:

        WARNING: [graph-prod] Token cache entry unreadable; treated as a miss
    """

    def format(self, record: logging.LogRecord) -> str:
        if not isinstance(record.msg, dict):
            return f"{record.levelname}: {record.getMessage()}"

        text = record.msg.get("message") or record.msg.get("event", "")
        profile = record.msg.get("profile")
        if profile:
            text = f"[{profile}] {text}"
        return f"{record.levelname}: {text}"


# Module-level singleton logger
_system_logger: logging.Logger | None = None
_stderr_handler: logging.Handler | None = None
_file_handler_configured: bool = False


def get_system_logger() -> logging.Logger:
    """Get the singleton system logger instance.

    Creates the logger on first call with a stderr handler only.
    A file handler can be added with configure_system_logger_file().

    Returns:
        logging.Logger: Configured system logger instance.

    Example:
        >>> logger = get_system_logger()
        >>> logger.warning({"event": "cache_corrupt", "message": "Token cache unreadable"})
    """
    global _system_logger, _stderr_handler

    if _system_logger is not None:
        return _system_logger

    _system_logger = logging.getLogger(f"{APP_NAME}.system")
    _system_logger.setLevel(logging.DEBUG)
    _system_logger.propagate = False

    for handler in _system_logger.handlers:
        handler.close()
    _system_logger.handlers.clear()

    _stderr_handler = logging.StreamHandler(sys.stderr)
    _stderr_handler.setLevel(logging.WARNING)
    _stderr_handler.setFormatter(ConsoleFormatter())
    _system_logger.addHandler(_stderr_handler)

    return _system_logger


def set_console_level(level: int) -> None:
    """Change the stderr threshold (e.g. DEBUG for --verbose, ERROR for --silent)."""
    get_system_logger()
    if _stderr_handler is not None:
        _stderr_handler.setLevel(level)


def configure_system_logger_file(log_path: Path) -> None:
    """Add a JSONL file handler to the system logger.

    Only the first call has an effect. The file receives WARNING and above.

    Args:
        log_path: Path to the system log file.
    """
    global _file_handler_configured

    if _file_handler_configured:
        return

    logger = get_system_logger()

    try:
        ensure_secure_dir(log_path.parent)
    except OSError as e:
        # stderr logging still works without the file
        logger.debug({"event": "log_dir_unavailable", "error": str(e)})
        return

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(ISO8601Formatter())
    logger.addHandler(file_handler)

    _file_handler_configured = True
