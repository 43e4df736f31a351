"""Discover command for entra-token CLI.

Lists app registrations in a tenant via Microsoft Graph and can turn one of
them into a profile.
"""

from __future__ import annotations

__all__ = ["discover"]

import json
import threading

import click

from entra_token.config import AuthMethod, OAuthFlow, Profile
from entra_token.constants import GRAPH_DEFAULT_SCOPE, GRAPH_DISCOVERY_SCOPES
from entra_token.discovery import ApplicationInfo, discovery_profile, search_applications
from entra_token.security.credential_storage import SecretKind
from entra_token.token_service import TokenService
from entra_token.utils.cli import build_token_service, handle_errors

from ..styling import style_dim, style_label, style_success
from .token import build_interaction

_MANUAL_ENTRY = "manual"


def _choose_tenant(service: TokenService) -> str:
    tenants = sorted({p.tenant_id for p in service.profiles.list()})
    if not tenants:
        return str(click.prompt("Tenant ID", err=True))

    click.echo(style_label("Known tenants"), err=True)
    for i, tenant in enumerate(tenants, start=1):
        click.echo(f"  {i}. {tenant}", err=True)
    choice = click.prompt(
        "Select tenant (number) or 'manual'",
        default="1",
        err=True,
    )
    if choice.strip().lower() == _MANUAL_ENTRY:
        return str(click.prompt("Tenant ID", err=True))
    try:
        return tenants[int(choice) - 1]
    except (ValueError, IndexError):
        raise click.BadParameter(f"'{choice}' is not a listed tenant") from None


def _graph_token(service: TokenService, profile_name: str | None, tenant: str | None) -> tuple[str, str]:
    """Return (access token, tenant id) for the Graph calls."""
    cancel = threading.Event()
    if profile_name:
        profile = service.resolve_profile(profile_name)
        # App-only tokens carry application permissions through /.default
        if service.infer_flow(profile) is OAuthFlow.CLIENT_CREDENTIALS:
            scopes = [GRAPH_DEFAULT_SCOPE]
        else:
            scopes = list(GRAPH_DISCOVERY_SCOPES)
        result = service.acquire_token(profile_name, scopes=scopes, cancel_event=cancel)
        return result.access_token, profile.tenant_id

    tenant_id = tenant or _choose_tenant(service)
    result = service.acquire_with_profile(discovery_profile(tenant_id), cancel_event=cancel)
    return result.access_token, tenant_id


def _echo_applications(applications: list[ApplicationInfo]) -> None:
    click.echo(style_label("Applications") + f" {len(applications)}\n")
    for i, app in enumerate(applications, start=1):
        created = app.created_date_time.strftime("%Y-%m-%d") if app.created_date_time else "N/A"
        click.echo(f"  {i:>3}. {click.style(app.display_name or 'N/A', fg='cyan', bold=True)}")
        click.echo(f"       clientId: {app.app_id or 'N/A'}")
        click.echo(f"       publisher: {app.publisher_domain or 'N/A'}  created: {created}")


def _create_profile_from(service: TokenService, applications: list[ApplicationInfo], tenant_id: str) -> None:
    index = click.prompt("Application number", type=click.IntRange(1, len(applications)))
    app = applications[index - 1]
    if not app.app_id:
        raise click.ClickException(f"Application '{app.display_name}' has no client ID")

    default_name = (app.display_name or "profile").replace(" ", "")
    name = click.prompt("Profile name", default=default_name)
    method_value = click.prompt(
        "Authentication method",
        type=click.Choice([m.value for m in AuthMethod]),
        default=AuthMethod.CLIENT_SECRET.value,
    )
    method = AuthMethod(method_value)

    certificate_path = None
    if method is AuthMethod.CERTIFICATE:
        certificate_path = click.prompt("Certificate path (.pfx/.pem)")

    profile = service.profiles.create(
        Profile(
            name=name,
            tenant_id=tenant_id,
            client_id=app.app_id,
            scopes=[GRAPH_DEFAULT_SCOPE],
            auth_method=method,
            certificate_path=certificate_path,
        )
    )

    if method is AuthMethod.CLIENT_SECRET:
        secret = click.prompt("Client secret (Enter to skip)", hide_input=True, default="", show_default=False)
        if secret:
            service.profiles.set_secret(profile.name, SecretKind.CLIENT_SECRET, secret)

    click.echo(style_success(f"Profile '{profile.name}' created"))


@click.command("discover")
@click.option("--tenant", "-t", help="Tenant to search (signs in with the Graph command-line client)")
@click.option("--profile", "-p", help="Use an existing profile's credentials instead")
@click.option("--search", "-s", "pattern", default="*", show_default=True, help="Display name, '*' wildcards allowed")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--create-profile", is_flag=True, help="Create a profile from one of the results")
@handle_errors
def discover(
    tenant: str | None,
    profile: str | None,
    pattern: str,
    as_json: bool,
    create_profile: bool,
) -> None:
    """Discover app registrations in a tenant.

    \b
    Examples:
      entra-token discover -t contoso.onmicrosoft.com -s 'MyApp*'
      entra-token discover -p graph-prod -s '*Test*' --json
    """
    if tenant and profile:
        raise click.UsageError("Use either --tenant or --profile, not both.")

    service = build_token_service(build_interaction(silent=as_json))
    access_token, tenant_id = _graph_token(service, profile, tenant)

    click.echo(style_dim(f"Searching for applications matching '{pattern}'..."), err=True)
    applications = search_applications(access_token, pattern)

    if as_json:
        click.echo(json.dumps([a.model_dump(mode="json", by_alias=True) for a in applications], indent=2))
        return

    if not applications:
        click.echo(click.style(f"No applications found matching '{pattern}'", fg="yellow"))
        return

    _echo_applications(applications)

    if create_profile:
        click.echo()
        _create_profile_from(service, applications, tenant_id)
