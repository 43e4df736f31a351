"""Token commands for entra-token CLI.

Commands:
    get-token - Acquire an access token (cached when possible)
    refresh   - Force a new access token for a profile

The token itself is the only thing written to stdout (or the json/yaml
document with -o); instructions and progress go to stderr so the output can
be piped, e.g. `curl -H "Authorization: Bearer $(entra-token get-token -p prod)"`.

With --clipboard the token is also copied to the clipboard; when none is
reachable it is written to last_token.txt (0600) in the config directory.
"""

from __future__ import annotations

__all__ = ["get_token", "refresh", "resolve_profile_name"]

import json
import logging
import threading
from typing import Any

import click
import yaml

from entra_token.config import OAuthFlow, parse_scopes
from entra_token.constants import EXPIRY_WARNING_SECONDS, LAST_TOKEN_FILENAME, get_config_dir
from entra_token.security.auth.device_flow import DeviceCodeResponse
from entra_token.telemetry.system.system_logger import set_console_level
from entra_token.token_service import Interaction, TokenResult, TokenService
from entra_token.utils.cli import build_token_service, copy_to_clipboard, handle_errors
from entra_token.utils.file_helpers import atomic_write_text

from ..styling import format_duration, style_dim, style_success, style_warning

OUTPUT_FORMATS = ("token", "json", "yaml")


def _parse_flow(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> OAuthFlow | None:
    if value is None:
        return None
    try:
        return OAuthFlow.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _scope_override(scope: tuple[str, ...]) -> list[str] | None:
    scopes = parse_scopes(list(scope))
    return scopes or None


def build_interaction(silent: bool) -> Interaction:
    """Console-backed callbacks for interactive flows (all on stderr)."""

    def show_device_code(code: DeviceCodeResponse) -> None:
        click.echo(err=True)
        click.echo(click.style("Sign-in required", fg="cyan", bold=True), err=True)
        click.echo(f"  Your code: {click.style(code.user_code, fg='green', bold=True)}", err=True)
        click.echo(
            f"  Open: {click.style(code.verification_uri, fg='blue', underline=True)} and enter the code",
            err=True,
        )
        click.echo(err=True)
        if not silent:
            click.echo("Waiting for sign-in", nl=False, err=True)

    def on_poll() -> None:
        if not silent:
            click.echo(".", nl=False, err=True)

    def on_browser_url(url: str) -> None:
        if not silent:
            click.echo("Browser opened for sign-in. If it did not open, visit:", err=True)
            click.echo(f"  {url}", err=True)

    def prompt_redirect(url: str) -> str:
        click.echo("Open this URL, sign in, then paste the URL you were redirected to:", err=True)
        click.echo(f"  {url}", err=True)
        return str(click.prompt("Redirect URL", err=True))

    def prompt_certificate_password(file_name: str) -> str:
        return str(click.prompt(f"Password for certificate {file_name}", hide_input=True, err=True))

    return Interaction(
        show_device_code=show_device_code,
        on_poll=on_poll,
        on_browser_url=on_browser_url,
        prompt_redirect=prompt_redirect,
        prompt_certificate_password=prompt_certificate_password,
    )


def resolve_profile_name(service: TokenService, profile: str | None) -> str:
    """Explicit profile, or the only configured one."""
    if profile:
        return profile
    names = [p.name for p in service.profiles.list()]
    if len(names) == 1:
        return names[0]
    if not names:
        raise click.UsageError("No profiles configured. Run 'entra-token config create' first.")
    raise click.UsageError(f"Several profiles exist ({', '.join(names)}); choose one with --profile.")


def result_document(result: TokenResult) -> dict[str, Any]:
    """Output document for json/yaml; never includes the refresh token."""
    token = result.token
    return {
        "profile": result.profile,
        "accessToken": token.access_token,
        "tokenType": token.token_type,
        "expiresAt": token.expires_at.isoformat(),
        "issuedAt": token.issued_at.isoformat(),
        "expiresIn": max(int(token.seconds_until_expiry), 0),
        "scopes": token.scopes or result.scopes,
        "flow": result.flow.value,
        "fromCache": result.from_cache,
    }


def emit_result(result: TokenResult, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(result_document(result), indent=2))
    elif output == "yaml":
        click.echo(yaml.safe_dump(result_document(result), sort_keys=False).rstrip())
    else:
        click.echo(result.access_token)


def copy_token(result: TokenResult, silent: bool) -> None:
    """Put the token on the clipboard, or in the last-token file when there is none."""
    if copy_to_clipboard(result.access_token):
        if not silent:
            click.echo(style_success("Token copied to clipboard"), err=True)
        return

    path = get_config_dir() / LAST_TOKEN_FILENAME
    atomic_write_text(path, result.access_token)
    click.echo(style_warning(f"Clipboard unavailable; token written to {path}"), err=True)


def _warn_if_expiring(result: TokenResult, warn_minutes: float) -> None:
    remaining = result.token.seconds_until_expiry
    if remaining <= warn_minutes * 60:
        click.echo(
            style_warning(
                f"Token expires in {format_duration(remaining)}. "
                f"Consider 'entra-token refresh -p {result.profile}'."
            ),
            err=True,
        )


_profile_option = click.option("--profile", "-p", help="Profile name (optional when only one exists)")
_scope_option = click.option(
    "--scope",
    "-s",
    multiple=True,
    help="Override scope(s); repeat or separate with commas/spaces",
)
_flow_option = click.option(
    "--flow",
    "-f",
    callback=_parse_flow,
    help="ClientCredentials, AuthorizationCode, DeviceCode or InteractiveBrowser",
)
_output_option = click.option(
    "--output",
    "-o",
    type=click.Choice(OUTPUT_FORMATS, case_sensitive=False),
    default="token",
    show_default=True,
    help="Output format",
)
_silent_option = click.option("--silent", is_flag=True, help="Only print the token; suppress progress output")
_timeout_option = click.option(
    "--timeout",
    type=click.FloatRange(min=1),
    default=None,
    help="Seconds to wait for interactive sign-in",
)
_clipboard_option = click.option(
    "--clipboard/--no-clipboard",
    default=False,
    show_default=True,
    help="Also copy the token to the clipboard (falls back to a last-token file)",
)


@click.command("get-token")
@_profile_option
@_scope_option
@_flow_option
@_output_option
@_silent_option
@click.option("--force", is_flag=True, help="Ignore the cache and run the flow")
@_timeout_option
@_clipboard_option
@click.option(
    "--warn-expiry",
    type=click.FloatRange(min=0),
    default=EXPIRY_WARNING_SECONDS / 60,
    show_default=True,
    help="Warn when a cached token expires within this many minutes",
)
@handle_errors
def get_token(
    profile: str | None,
    scope: tuple[str, ...],
    flow: OAuthFlow | None,
    output: str,
    silent: bool,
    force: bool,
    timeout: float | None,
    clipboard: bool,
    warn_expiry: float,
) -> None:
    """Acquire an access token for a profile.

    Returns a cached token when one is valid for at least another minute;
    otherwise refreshes or signs in with the profile's flow.
    """
    if silent:
        set_console_level(logging.ERROR)

    service = build_token_service(build_interaction(silent))
    name = resolve_profile_name(service, profile)

    if not silent:
        warning = service.storage_warning()
        if warning:
            click.echo(style_warning(warning), err=True)

    result = service.acquire_token(
        name,
        scopes=_scope_override(scope),
        flow=flow,
        force_refresh=force,
        timeout=timeout,
        cancel_event=threading.Event(),
    )

    if not silent:
        if result.flow is OAuthFlow.DEVICE_CODE and not result.from_cache:
            click.echo(err=True)
        if result.from_cache:
            _warn_if_expiring(result, warn_expiry)
            click.echo(style_dim("Using cached token."), err=True)

    emit_result(result, output.lower())
    if clipboard:
        copy_token(result, silent)


@click.command("refresh")
@_profile_option
@_scope_option
@_flow_option
@_output_option
@_silent_option
@_timeout_option
@_clipboard_option
@handle_errors
def refresh(
    profile: str | None,
    scope: tuple[str, ...],
    flow: OAuthFlow | None,
    output: str,
    silent: bool,
    timeout: float | None,
    clipboard: bool,
) -> None:
    """Get a fresh access token, bypassing the cached one.

    Uses the cached refresh token when there is one, otherwise signs in again.
    """
    if silent:
        set_console_level(logging.ERROR)

    service = build_token_service(build_interaction(silent))
    name = resolve_profile_name(service, profile)

    result = service.refresh(
        name,
        scopes=_scope_override(scope),
        flow=flow,
        timeout=timeout,
        cancel_event=threading.Event(),
    )

    if not silent:
        how = "refresh token" if result.refreshed else f"{result.flow.value} flow"
        click.echo(style_dim(f"Token renewed via {how}."), err=True)

    emit_result(result, output.lower())
    if clipboard:
        copy_token(result, silent)
