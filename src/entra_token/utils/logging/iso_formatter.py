"""JSONL log formatting with ISO 8601 timestamps.

Structured (dict) log messages are written as one JSON object per line.
Fields that could carry credential material are masked before writing.
"""

from __future__ import annotations

__all__ = ["ISO8601Formatter", "REDACTED_FIELDS", "redact"]

import json
import logging
from datetime import datetime, timezone
from typing import Any

# Keys whose values are never written to any log destination
REDACTED_FIELDS: frozenset[str] = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "client_assertion",
        "password",
        "passphrase",
        "code",
        "code_verifier",
        "device_code",
    }
)

_MASK = "***"


def redact(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with credential-bearing fields masked."""
    return {key: (_MASK if key in REDACTED_FIELDS and value else value) for key, value in data.items()}


class ISO8601Formatter(logging.Formatter):
    """Formatter producing JSONL with ISO 8601 UTC timestamps.

    Format: YYYY-MM-DDTHH:MM:SS.sssZ
    Example: 2026-03-04T10:48:37.123Z
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )

        if isinstance(record.msg, dict):
            log_data = redact(record.msg)
        else:
            log_data = {"message": record.getMessage()}

        log_entry = {"time": timestamp, "level": record.levelname, **log_data}
        return json.dumps(log_entry, default=str)
