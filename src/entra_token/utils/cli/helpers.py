"""Shared CLI utility functions.

Provides common helpers for CLI commands to avoid duplication.
"""

from __future__ import annotations

__all__ = [
    "build_token_service",
    "copy_to_clipboard",
    "edit_json_record",
    "emit_error",
    "handle_errors",
]

import functools
import json
import os
import shutil
import subprocess
import sys
from collections.abc import Callable
from typing import Any, NoReturn, TypeVar

import click

from entra_token.constants import CERTIFICATE_STORE_DIRNAME, get_data_dir
from entra_token.exceptions import EntraTokenError, FlowCancelledError, ProfileValidationError
from entra_token.profiles import ProfileStore
from entra_token.security.auth.token_cache import TokenCache
from entra_token.security.credential_storage import create_credential_store
from entra_token.token_service import Interaction, TokenService

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])


def build_token_service(interaction: Interaction | None = None) -> TokenService:
    """Wire the stores, the cache and the orchestrator for one CLI invocation.

    Raises:
        click.ClickException: Credential backend cannot be selected.
    """
    try:
        credential_store = create_credential_store()
    except EntraTokenError as e:
        emit_error(e)

    return TokenService(
        ProfileStore(credential_store=credential_store),
        credential_store,
        TokenCache(credential_store=credential_store),
        interaction=interaction,
        certificate_store_dir=get_data_dir() / CERTIFICATE_STORE_DIRNAME,
    )


def emit_error(error: EntraTokenError) -> NoReturn:
    """Raise a ClickException carrying the error's exit code.

    Args:
        error: Engine error to report.

    Raises:
        click.ClickException: Always.
    """
    message = str(error)
    if isinstance(error, ProfileValidationError) and error.errors:
        message += "\n" + "\n".join(f"  - {item}" for item in error.errors)

    exc = click.ClickException(message)
    exc.exit_code = error.exit_code
    raise exc from error


def handle_errors(func: F) -> F:
    """Map engine errors to CLI exit codes for a command callback."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except EntraTokenError as e:
            emit_error(e)
        except KeyboardInterrupt:
            click.echo("\nCancelled.", err=True)
            sys.exit(FlowCancelledError.exit_code)

    return wrapper  # type: ignore[return-value]


def edit_json_record(
    record: dict[str, Any],
    validate: Callable[[dict[str, Any]], T],
    *,
    what: str,
) -> T | None:
    """Open ``record`` as JSON in the user's editor until it validates.

    The editor is $EDITOR, then $VISUAL, then click's platform default.
    After a failed validation the user's text (not the original) is
    re-opened so their edits are not lost.

    Args:
        record: Document to edit.
        validate: Turns the edited object into the result; raises
            ValueError or ProfileValidationError when it is not acceptable.
        what: Noun for messages, e.g. "profile".

    Returns:
        The validated result, or None when the user quit or saved no changes.
    """
    from entra_token.cli.styling import style_dim, style_error

    editor = os.environ.get("EDITOR") or os.environ.get("VISUAL") or None
    text = json.dumps(record, indent=2)

    while True:
        edited = click.edit(text, editor=editor, extension=".json")
        if edited is None or edited.strip() == text.strip():
            click.echo(style_dim(f"No changes; {what} left as is."))
            return None

        try:
            data = json.loads(edited)
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            return validate(data)
        except json.JSONDecodeError as e:
            problem = f"not valid JSON ({e})"
        except ProfileValidationError as e:
            problem = "; ".join(e.errors) or str(e)
        except ValueError as e:
            problem = str(e)

        click.echo(style_error(f"Invalid {what}: {problem}"), err=True)
        if not click.confirm(f"Edit the {what} again?", default=True):
            click.echo(style_dim(f"Aborted; {what} left as is."))
            return None
        text = edited


def copy_to_clipboard(text: str) -> bool:
    """Copy text to the system clipboard using platform-native tools.

    Args:
        text: Text to copy.

    Returns:
        True if the copy succeeded, False when no clipboard is reachable
        (headless session, no clipboard tool, tool failed).
    """
    if sys.platform == "darwin":
        cmd = ["pbcopy"]
    elif sys.platform == "win32":
        cmd = ["clip"]
    else:
        if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
            return False
        if os.environ.get("WAYLAND_DISPLAY") and shutil.which("wl-copy"):
            cmd = ["wl-copy"]
        elif shutil.which("xclip"):
            cmd = ["xclip", "-selection", "clipboard"]
        elif shutil.which("xsel"):
            cmd = ["xsel", "--clipboard", "--input"]
        else:
            return False

    try:
        subprocess.run(
            cmd,
            input=text.encode(),
            check=True,
            timeout=5,
            capture_output=True,
        )
        return True
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        return False
