"""Inspect command for entra-token CLI.

Decodes a JWT access token locally (no signature check, no network call).
"""

from __future__ import annotations

__all__ = ["inspect"]

import json
from typing import Any

import click

from entra_token.security.auth.jwt_inspector import TokenInspection, inspect_token
from entra_token.utils.cli import handle_errors

from ..styling import (
    format_duration,
    format_timestamp,
    style_error,
    style_header,
    style_label,
    style_success,
)

# Claims shown first in the human-readable view
_KEY_CLAIMS = ("aud", "iss", "tid", "appid", "azp", "oid", "sub", "upn", "name")


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _show(result: TokenInspection) -> None:
    click.echo(style_header("Header"))
    for key, value in result.header.items():
        click.echo(f"  {key}: {_format_value(value)}")
    click.echo()

    click.echo(style_header("Claims"))
    ordered = [k for k in _KEY_CLAIMS if k in result.claims]
    ordered += sorted(k for k in result.claims if k not in _KEY_CLAIMS)
    for key in ordered:
        click.echo(f"  {key}: {_format_value(result.claims[key])}")
    click.echo()

    click.echo(style_header("Validity"))
    click.echo(f"  Issued:     {format_timestamp(result.issued_at)}")
    click.echo(f"  Not before: {format_timestamp(result.not_before)}")
    click.echo(f"  Expires:    {format_timestamp(result.expires_at)}")

    remaining = result.seconds_until_expiry()
    if remaining is None:
        click.echo("  " + click.style("No expiry claim", dim=True))
    elif result.is_expired():
        click.echo("  " + style_error(f"Expired ({format_duration(remaining)})"))
    else:
        click.echo("  " + style_success(f"Valid for {format_duration(remaining)}"))

    if result.scopes:
        click.echo()
        click.echo(style_label("Permissions") + " " + " ".join(result.scopes))


@click.command("inspect")
@click.argument("token", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def inspect(token: str | None, as_json: bool) -> None:
    """Decode a JWT and show its header, claims and expiry.

    TOKEN may be omitted or "-" to read from stdin, e.g.

    \b
      entra-token get-token -p prod | entra-token inspect
    """
    if token is None or token == "-":
        token = click.get_text_stream("stdin").read()

    result = inspect_token(token)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    _show(result)
