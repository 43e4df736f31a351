"""CLI utilities package.

Shared helpers for CLI commands.
"""

from .helpers import (
    build_token_service,
    copy_to_clipboard,
    edit_json_record,
    emit_error,
    handle_errors,
)

__all__ = [
    "build_token_service",
    "copy_to_clipboard",
    "edit_json_record",
    "emit_error",
    "handle_errors",
]
