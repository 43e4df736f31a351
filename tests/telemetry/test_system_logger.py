"""Tests for the system logger console output."""

from __future__ import annotations

import logging
from typing import Iterator

import pytest

from entra_token.telemetry.system.system_logger import ConsoleFormatter, get_system_logger, set_console_level


def _record(msg: object, level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord("entra-token.system", level, __file__, 1, msg, None, None)


class TestConsoleFormatter:
    """Tests for ConsoleFormatter."""

    def test_dict_message_uses_message_field(self) -> None:
        """Given a dict with a message, the console shows the level and message only."""
        line = ConsoleFormatter().format(_record({"event": "cache_corrupt", "message": "Cache unreadable"}))
        assert line == "WARNING: Cache unreadable"

    def test_falls_back_to_event(self) -> None:
        """Given a dict without a message, the event name is shown."""
        assert ConsoleFormatter().format(_record({"event": "http_retry"})) == "WARNING: http_retry"

    def test_profile_prefix(self) -> None:
        """Given a profile field, it prefixes the message."""
        # Act
        line = ConsoleFormatter().format(
            _record({"event": "token_acquired", "profile": "graph-prod", "message": "Token acquired"})
        )

        # Assert
        assert line == "WARNING: [graph-prod] Token acquired"


class TestConsoleLevel:
    """Tests for set_console_level."""

    @pytest.fixture(autouse=True)
    def restore_level(self) -> Iterator[None]:
        yield
        set_console_level(logging.WARNING)

    def test_verbose_lowers_threshold(self) -> None:
        """Given DEBUG, the stderr handler passes debug events."""
        # Act
        set_console_level(logging.DEBUG)

        # Assert
        stderr = get_system_logger().handlers[0]
        assert stderr.level == logging.DEBUG
