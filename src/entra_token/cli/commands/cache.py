"""Cache command group for entra-token CLI.

Commands:
    cache list    - Show cached access tokens (never the tokens themselves)
    cache clear   - Drop cached tokens for one or all profiles
    cache storage - Show where secrets and tokens are kept
"""

from __future__ import annotations

__all__ = ["cache"]

import json

import click

from entra_token.security.credential_storage import get_credential_storage_info
from entra_token.utils.cli import build_token_service, handle_errors

from ..styling import style_dim, style_label, style_status, style_success, style_warning


@click.group()
def cache() -> None:
    """Token cache commands."""
    pass


@cache.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def cache_list(as_json: bool) -> None:
    """List cached tokens with their expiry."""
    service = build_token_service()
    entries = service.cache.entries()

    rows = []
    for key, token in sorted(entries.items()):
        profile, _, scopes = key.partition("|")
        rows.append(
            {
                "profile": profile,
                "scopes": scopes,
                "flow": token.flow.value if token.flow else None,
                "expiresAt": token.expires_at.isoformat(),
                "usable": token.is_usable(skew_seconds=service.cache.skew_seconds),
            }
        )

    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return

    if not rows:
        click.echo(style_dim("Token cache is empty."))
        return

    click.echo(style_label("Cached tokens") + f" {len(rows)}\n")
    for row in rows:
        state = style_status(row["usable"], "valid", "expired")
        click.echo(f"  {click.style(row['profile'], bold=True)} [{state}] expires {row['expiresAt']}")
        click.echo(f"    scopes: {row['scopes']}")


@cache.command("clear")
@click.option("--profile", "-p", help="Clear only this profile (default: all)")
@handle_errors
def cache_clear(profile: str | None) -> None:
    """Remove cached access and refresh tokens."""
    service = build_token_service()
    removed = service.clear_cache(profile)
    target = f"profile '{profile}'" if profile else "all profiles"
    click.echo(style_success(f"Cleared {removed} cached token(s) for {target}"))


@cache.command("storage")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def cache_storage(as_json: bool) -> None:
    """Show the credential backend and the token cache location."""
    service = build_token_service()
    info = get_credential_storage_info(service.credentials)
    info["tokenCache"] = str(service.cache.path)
    info["profiles"] = str(service.profiles.path)

    if as_json:
        click.echo(json.dumps(info, indent=2))
        return

    click.echo(f"{style_label('Credential backend')} {info['backend']}")
    click.echo(f"{style_label('Secrets location')} {info['location']}")
    click.echo(f"{style_label('Token cache')} {info['tokenCache']}")
    click.echo(f"{style_label('Profiles')} {info['profiles']}")

    warning = service.storage_warning()
    if warning:
        click.echo()
        click.echo(style_warning(warning))
