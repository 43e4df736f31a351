"""Shared file utilities for entra-token.

Provides the primitives every file-backed store relies on:
- set_secure_permissions: owner-only file/directory permissions
- atomic_write_text / atomic_write_bytes: write-temp-then-rename
- file_lock: cross-process advisory lock (fcntl on POSIX, msvcrt on Windows)
- load_validated_json: JSON file + Pydantic validation with readable errors
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, TypeVar

from pydantic import BaseModel, ValidationError

# Type variable for Pydantic models
T = TypeVar("T", bound=BaseModel)

__all__ = [
    "atomic_write_bytes",
    "atomic_write_text",
    "ensure_secure_dir",
    "file_lock",
    "load_validated_json",
    "set_secure_permissions",
]

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


def set_secure_permissions(path: Path, *, is_directory: bool = False) -> None:
    """Set owner-only permissions on a file or directory.

    - Directory: 0o700 (rwx------)
    - File: 0o600 (rw-------)

    Does nothing on Windows. Ignores permission errors (some filesystems
    don't support chmod).

    Args:
        path: Path to file or directory.
        is_directory: If True, use directory permissions (0o700).
    """
    if sys.platform == "win32":
        return

    try:
        path.chmod(0o700 if is_directory else 0o600)
    except OSError:
        pass


def ensure_secure_dir(path: Path) -> None:
    """Create ``path`` (and parents) and restrict it to the owner."""
    path.mkdir(parents=True, exist_ok=True)
    set_secure_permissions(path, is_directory=True)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Atomically replace ``path`` with ``content``.

    Writes to a temp file in the same directory (same filesystem, so the
    rename is atomic), fsyncs, sets 0o600 and then os.replace()s it over
    the target. A crash mid-write leaves the previous file intact.

    Args:
        path: Destination file.
        content: Bytes to write.
    """
    ensure_secure_dir(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        if sys.platform != "win32":
            os.chmod(temp_path, 0o600)

        os.replace(temp_path, path)

    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str) -> None:
    """Atomically replace ``path`` with UTF-8 ``content``."""
    atomic_write_bytes(path, content.encode("utf-8"))


@contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    """Context manager for an exclusive cross-process advisory lock.

    Acquires an exclusive lock on ``lock_path`` (created if needed) and
    releases it on exit. Blocks until the lock is available.

    Args:
        lock_path: Path to the lock file (conventionally ``<store>.lock``).

    Yields:
        None when the lock is held.

    Raises:
        OSError: If the lock file cannot be opened or locked.
    """
    ensure_secure_dir(lock_path.parent)
    lock_file = open(lock_path, "a+b")
    try:
        if sys.platform == "win32":
            lock_file.seek(0)
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
        else:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        try:
            if sys.platform == "win32":
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        lock_file.close()


def load_validated_json(
    file_path: Path,
    model_class: type[T],
    file_type: str = "file",
    recovery_hint: str | None = None,
) -> T:
    """Load a JSON file and validate it against a Pydantic model.

    Args:
        file_path: Path to JSON file.
        model_class: Pydantic model class to validate against.
        file_type: Description for error messages (e.g., "profile store").
        recovery_hint: Optional hint appended to validation errors.

    Returns:
        Validated Pydantic model instance.

    Raises:
        ValueError: If the file is unreadable, not JSON, or fails validation.
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_type} file {file_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Could not read {file_type} file {file_path}: {e}") from e

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        hint = f"\n\n{recovery_hint}" if recovery_hint else ""
        raise ValueError(
            f"Invalid {file_type} in {file_path}:\n" + "\n".join(errors) + hint
        ) from e
