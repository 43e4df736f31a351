"""Styling and formatting helpers for entra-token CLI output.

Everything here returns strings; callers decide between stdout and stderr.
Token material never passes through these helpers, only labels, names and
times.
"""

from __future__ import annotations

__all__ = [
    "format_duration",
    "format_timestamp",
    "style_dim",
    "style_error",
    "style_header",
    "style_label",
    "style_status",
    "style_success",
    "style_warning",
]

from datetime import datetime

import click


def style_header(title: str) -> str:
    """Section header, e.g. ``--- Claims ---``."""
    return click.style(f"--- {title} ---", fg="cyan", bold=True)


def style_label(label: str) -> str:
    """Label followed by a colon, e.g. ``Profiles:``."""
    return click.style(f"{label}:", fg="cyan", bold=True)


def style_success(message: str) -> str:
    return click.style(f"✓ {message}", fg="green")


def style_error(message: str) -> str:
    return click.style(f"✗ {message}", fg="red")


def style_dim(message: str) -> str:
    return click.style(message, dim=True)


def style_warning(message: str) -> str:
    """Warning line for insecure storage or tokens close to expiry.

    Example:
        >>> click.echo(style_warning("Token expires in 2.0 minutes"), err=True)
        Warning: Token expires in 2.0 minutes
    """
    return click.style(f"Warning: {message}", fg="yellow", bold=True)


def style_status(ok: bool, ok_text: str, bad_text: str, *, bad_color: str | None = "yellow") -> str:
    """Short coloured status word, green when ``ok``.

    ``bad_color=None`` renders the negative state dim instead of coloured
    (for states that are normal, like a secret that was never set).
    """
    if ok:
        return click.style(ok_text, fg="green")
    if bad_color is None:
        return click.style(bad_text, dim=True)
    return click.style(bad_text, fg=bad_color)


def format_duration(seconds: float) -> str:
    """Human duration: "1h 5m", "4m 10s", or "3m 0s ago" when negative."""
    minutes, secs = divmod(int(abs(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    text = f"{hours}h {minutes}m" if hours else f"{minutes}m {secs}s"
    return text if seconds >= 0 else f"{text} ago"


def format_timestamp(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "-"
