"""Tests for shared file utilities and the JSONL log formatter.

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest
from pydantic import BaseModel

from entra_token.utils.file_helpers import (
    atomic_write_bytes,
    atomic_write_text,
    file_lock,
    load_validated_json,
)
from entra_token.utils.logging.iso_formatter import ISO8601Formatter, redact


class _Document(BaseModel):
    version: int
    names: list[str]


# ============================================================================
# Tests: atomic writes
# ============================================================================


class TestAtomicWrite:
    """Tests for atomic_write_text and atomic_write_bytes."""

    def test_creates_parents_and_replaces(self, tmp_path: Path) -> None:
        """Given a nested path, the file is created and then replaced in full."""
        # Arrange
        target = tmp_path / "a" / "b" / "profiles.json"

        # Act
        atomic_write_text(target, "first")
        atomic_write_text(target, "second")

        # Assert
        assert target.read_text(encoding="utf-8") == "second"
        assert [p.name for p in target.parent.iterdir()] == ["profiles.json"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_owner_only_permissions(self, tmp_path: Path) -> None:
        """Given a write, file is 0600 and its directory 0700."""
        # Act
        target = tmp_path / "secrets" / "store.enc"
        atomic_write_bytes(target, b"\x00\x01")

        # Assert
        assert target.stat().st_mode & 0o777 == 0o600
        assert target.parent.stat().st_mode & 0o777 == 0o700

    def test_lock_can_be_taken_again(self, tmp_path: Path) -> None:
        """Given a released lock, it can be taken again."""
        lock = tmp_path / "cache.lock"
        with file_lock(lock):
            pass
        with file_lock(lock):
            assert lock.exists()


# ============================================================================
# Tests: load_validated_json
# ============================================================================


class TestLoadValidatedJson:
    """Tests for load_validated_json."""

    def test_valid_document(self, tmp_path: Path) -> None:
        """Given valid JSON, returns the model."""
        # Arrange
        path = tmp_path / "doc.json"
        path.write_text(json.dumps({"version": 1, "names": ["a"]}), encoding="utf-8")

        # Act
        doc = load_validated_json(path, _Document)

        # Assert
        assert doc.names == ["a"]

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Given unparsable JSON, raises ValueError naming the file type."""
        # Arrange
        path = tmp_path / "doc.json"
        path.write_text("{not json", encoding="utf-8")

        # Act & Assert
        with pytest.raises(ValueError, match="Invalid JSON in profile store"):
            load_validated_json(path, _Document, file_type="profile store")

    def test_schema_errors_listed_with_hint(self, tmp_path: Path) -> None:
        """Given a wrong field type, the error lists the location and the recovery hint."""
        # Arrange
        path = tmp_path / "doc.json"
        path.write_text(json.dumps({"version": "x", "names": []}), encoding="utf-8")

        # Act & Assert
        with pytest.raises(ValueError) as exc_info:
            load_validated_json(path, _Document, recovery_hint="Delete the file to start over.")
        assert "version" in str(exc_info.value)
        assert "Delete the file to start over." in str(exc_info.value)


# ============================================================================
# Tests: ISO8601Formatter
# ============================================================================


class TestIso8601Formatter:
    """Tests for JSONL log formatting."""

    def test_dict_message_redacted(self) -> None:
        """Given a dict carrying a refresh token, the written line masks it."""
        # Arrange
        record = logging.LogRecord(
            "entra-token.system",
            logging.WARNING,
            __file__,
            1,
            {"event": "token_refreshed", "refresh_token": "rt-secret", "profile": "graph-prod"},
            None,
            None,
        )

        # Act
        line = json.loads(ISO8601Formatter().format(record))

        # Assert
        assert line["refresh_token"] == "***"
        assert line["profile"] == "graph-prod"
        assert line["level"] == "WARNING"
        assert line["time"].endswith("Z")

    def test_plain_message(self) -> None:
        """Given a string message, it is written under "message"."""
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        assert json.loads(ISO8601Formatter().format(record))["message"] == "hello world"

    def test_redact_keeps_empty_values(self) -> None:
        """Given an empty secret field, it is left as is."""
        assert redact({"client_secret": None, "event": "x"}) == {"client_secret": None, "event": "x"}
