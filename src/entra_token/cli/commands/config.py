"""Config command group for entra-token CLI.

Profile management: create, list, show, edit, delete, export, import and
secret storage.
"""

from __future__ import annotations

__all__ = ["config"]

import json
from pathlib import Path
from typing import Any

import click

from entra_token.config import AuthMethod, OAuthFlow, Profile, parse_scopes
from entra_token.exceptions import ProfileValidationError
from entra_token.profile_export import is_encrypted_export
from entra_token.profiles import ConflictPolicy, ImportReport
from entra_token.security.credential_storage import SecretKind
from entra_token.utils.cli import (
    build_token_service,
    edit_json_record,
    handle_errors,
)

from ..styling import style_dim, style_header, style_label, style_status, style_success, style_warning

# Fields the editor does not offer; timestamps are maintained by the store
_READ_ONLY_FIELDS = ("createdAt", "updatedAt")

_SETTABLE_SECRETS = {
    SecretKind.CLIENT_SECRET.value: SecretKind.CLIENT_SECRET,
    SecretKind.CERTIFICATE_PASSWORD.value: SecretKind.CERTIFICATE_PASSWORD,
}


def _parse_flow(ctx: click.Context, param: click.Parameter, value: str | None) -> OAuthFlow | None:
    if value is None:
        return None
    try:
        return OAuthFlow.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _secret_status(has_secret: bool) -> str:
    return style_status(has_secret, "stored", "not set", bad_color=None)


def _echo_report(report: ImportReport) -> None:
    for name in report.created:
        click.echo(style_success(f"Imported '{name}'"))
    for name in report.overwritten:
        click.echo(style_success(f"Overwrote '{name}'"))
    for original, stored in report.renamed:
        click.echo(style_success(f"Imported '{original}' as '{stored}'"))
    for name in report.skipped:
        click.echo(style_dim(f"Skipped '{name}' (already exists)"))
    click.echo(f"\n{report.imported_count} profile(s) imported, {len(report.skipped)} skipped.")


@click.group()
def config() -> None:
    """Profile management commands.

    \b
    Editor selection for 'config edit' (in order):
      1. $EDITOR environment variable
      2. $VISUAL environment variable
      3. Falls back to 'notepad' (Windows) or 'vi' (macOS/Linux)

    \b
    Environment overrides (never persisted):
      ENTRA_TENANT_ID, ENTRA_CLIENT_ID, ENTRA_CLIENT_SECRET
    """
    pass


@config.command("create")
@click.option("--name", "-n", prompt="Profile name", help="Unique profile name")
@click.option("--tenant", "-t", "tenant_id", prompt="Tenant ID", help="Tenant GUID or domain")
@click.option("--client-id", "-c", prompt="Client (application) ID", help="App registration client ID")
@click.option("--scope", "-s", "scopes", multiple=True, help="Default scope(s); repeat or comma-separate")
@click.option("--resource", help="Resource URI, used as <resource>/.default when no scopes")
@click.option(
    "--auth-method",
    type=click.Choice([m.value for m in AuthMethod], case_sensitive=False),
    default=AuthMethod.CLIENT_SECRET.value,
    show_default=True,
)
@click.option("--certificate", "certificate_path", type=click.Path(dir_okay=False), help="PFX/PEM file")
@click.option("--thumbprint", help="Use the certificate with this thumbprint from the certificate store")
@click.option("--cache-certificate-password", is_flag=True, help="Store the certificate password (asked now and at sign-in)")
@click.option("--redirect-uri", help="Redirect URI for the AuthorizationCode flow")
@click.option("--flow", "-f", "default_flow", callback=_parse_flow, help="Default flow for this profile")
@click.option("--authority", "authority_url", help="Authority override (sovereign clouds)")
@click.option("--no-secret", is_flag=True, help="Do not prompt for a client secret")
@handle_errors
def config_create(
    name: str,
    tenant_id: str,
    client_id: str,
    scopes: tuple[str, ...],
    resource: str | None,
    auth_method: str,
    certificate_path: str | None,
    thumbprint: str | None,
    cache_certificate_password: bool,
    redirect_uri: str | None,
    default_flow: OAuthFlow | None,
    authority_url: str | None,
    no_secret: bool,
) -> None:
    """Create a profile.

    A ClientSecret profile prompts for its secret (press Enter to skip, e.g.
    for public clients using DeviceCode or InteractiveBrowser).
    """
    method = next(m for m in AuthMethod if m.value.lower() == auth_method.lower())
    service = build_token_service()

    try:
        profile = Profile(
            name=name,
            tenant_id=tenant_id,
            client_id=client_id,
            scopes=parse_scopes(list(scopes)),
            resource=resource,
            auth_method=method,
            certificate_path=str(Path(certificate_path).expanduser().resolve()) if certificate_path else None,
            use_store_certificate=bool(thumbprint),
            thumbprint=thumbprint,
            cache_certificate_password=cache_certificate_password,
            redirect_uri=redirect_uri,
            default_flow=default_flow,
            authority_url=authority_url,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    problems = profile.validate_for_authentication()
    if problems:
        raise ProfileValidationError(f"Profile '{profile.name}' is not usable", problems)

    profile = service.profiles.create(profile)
    click.echo(style_success(f"Profile '{profile.name}' created"))

    if method is AuthMethod.CLIENT_SECRET and not no_secret:
        secret = click.prompt(
            "Client secret (Enter to skip)", hide_input=True, default="", show_default=False
        )
        if secret:
            service.profiles.set_secret(profile.name, SecretKind.CLIENT_SECRET, secret)
            click.echo(style_success("Client secret stored"))

    if method is AuthMethod.CERTIFICATE and cache_certificate_password:
        password = click.prompt("Certificate password", hide_input=True)
        service.profiles.set_secret(profile.name, SecretKind.CERTIFICATE_PASSWORD, password)
        click.echo(style_success("Certificate password stored"))

    warning = service.storage_warning()
    if warning:
        click.echo(style_warning(warning), err=True)


@config.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def config_list(as_json: bool) -> None:
    """List profiles."""
    service = build_token_service()
    profiles = service.profiles.list()

    if as_json:
        click.echo(json.dumps([p.to_record() for p in profiles], indent=2))
        return

    if not profiles:
        click.echo(style_dim("No profiles configured. Run 'entra-token config create'."))
        return

    click.echo(style_label("Profiles") + f" {len(profiles)}\n")
    for profile in profiles:
        flow = profile.default_flow.value if profile.default_flow else "auto"
        click.echo(f"  {click.style(profile.name, bold=True)}")
        click.echo(f"    tenant: {profile.tenant_id}  client: {profile.client_id}")
        click.echo(f"    auth: {profile.auth_method.value}  flow: {flow}")


@config.command("show")
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def config_show(name: str, as_json: bool) -> None:
    """Show one profile and which secrets are stored for it."""
    service = build_token_service()
    profile = service.profiles.get(name)
    secrets = {kind.value: service.profiles.has_secret(profile.name, kind) for kind in SecretKind}

    if as_json:
        data = profile.to_record()
        data["_secrets"] = secrets
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(style_header(profile.name))
    click.echo(f"  tenantId: {profile.tenant_id}")
    click.echo(f"  clientId: {profile.client_id}")
    click.echo(f"  authority: {profile.authority}")
    click.echo(f"  scopes: {' '.join(profile.effective_scopes()) or '-'}")
    if profile.resource:
        click.echo(f"  resource: {profile.resource}")
    click.echo(f"  authMethod: {profile.auth_method.value}")
    if profile.certificate_path:
        click.echo(f"  certificatePath: {profile.certificate_path}")
    if profile.use_store_certificate:
        click.echo(f"  thumbprint: {profile.thumbprint}")
    if profile.redirect_uri:
        click.echo(f"  redirectUri: {profile.redirect_uri}")
    click.echo(f"  defaultFlow: {profile.default_flow.value if profile.default_flow else 'auto'}")
    click.echo(f"  updated: {profile.updated_at.isoformat()}")
    click.echo()
    click.echo(style_header("Secrets"))
    for kind, present in secrets.items():
        click.echo(f"  {kind}: {_secret_status(present)}")


@config.command("edit")
@click.argument("name")
@handle_errors
def config_edit(name: str) -> None:
    """Edit a profile in $EDITOR.

    Invalid JSON or settings re-open the editor. Renaming moves the
    profile's secrets; cached access tokens for the old name are dropped.
    """
    service = build_token_service()
    current = service.profiles.get(name)

    record = current.to_record()
    for key in _READ_ONLY_FIELDS:
        record.pop(key, None)

    def validate(data: dict[str, Any]) -> dict[str, Any]:
        patch = {k: v for k, v in data.items() if k not in _READ_ONLY_FIELDS}
        profile = Profile.model_validate({**current.to_record(), **patch})
        problems = profile.validate_for_authentication()
        if problems:
            raise ProfileValidationError("Profile is not usable", problems)
        return patch

    click.echo(style_dim(f"Opening profile '{current.name}' in your editor..."))
    patch = edit_json_record(record, validate, what="profile")
    if patch is None:
        return

    updated = service.profiles.update(current.name, patch)

    if updated.name.lower() != current.name.lower():
        click.echo(style_success(f"Profile '{current.name}' renamed to '{updated.name}'"))
    else:
        click.echo(style_success(f"Profile '{updated.name}' updated"))
    if updated.identity != current.identity:
        click.echo(style_dim("Sign-in identity changed; cached tokens were cleared."))


@config.command("delete")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@handle_errors
def config_delete(name: str, yes: bool) -> None:
    """Delete a profile with its secrets and cached tokens."""
    service = build_token_service()
    profile = service.profiles.get(name)

    if not yes and not click.confirm(f"Delete profile '{profile.name}' and its stored secrets?"):
        click.echo(style_dim("Aborted."))
        return

    service.delete_profile(profile.name)
    click.echo(style_success(f"Profile '{profile.name}' deleted"))


@config.command("export")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to file instead of stdout")
@click.option("--profile", "-p", "names", multiple=True, help="Export only these profiles")
@click.option("--include-secrets", is_flag=True, help="Include secrets (encrypted with a passphrase)")
@click.option("--passphrase", envvar="ENTRA_TOKEN_EXPORT_PASSPHRASE", help="Passphrase for --include-secrets")
@handle_errors
def config_export(
    output: Path | None,
    names: tuple[str, ...],
    include_secrets: bool,
    passphrase: str | None,
) -> None:
    """Export profiles as JSON.

    Without --include-secrets the export never contains secret material.
    With it, the whole document is encrypted with a passphrase.
    """
    if include_secrets and not passphrase:
        passphrase = click.prompt("Export passphrase", hide_input=True, confirmation_prompt=True, err=True)

    service = build_token_service()
    data = service.profiles.export_all(
        include_secrets=include_secrets,
        passphrase=passphrase,
        names=list(names) or None,
    )
    text = json.dumps(data, indent=2) + "\n"

    if output is None:
        click.echo(text, nl=False)
        return

    output.write_text(text, encoding="utf-8")
    count = len(names) if names else len(service.profiles.list())
    click.echo(style_success(f"Exported {count} profile(s) to {output}"), err=True)


@config.command("import")
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option(
    "--conflict",
    type=click.Choice([p.value for p in ConflictPolicy], case_sensitive=False),
    default=ConflictPolicy.SKIP.value,
    show_default=True,
    help="What to do when a profile name already exists",
)
@click.option("--passphrase", envvar="ENTRA_TOKEN_EXPORT_PASSPHRASE", help="Passphrase of an encrypted export")
@handle_errors
def config_import(source: Any, conflict: str, passphrase: str | None) -> None:
    """Import profiles from an export file (use - for stdin).

    Encrypted exports are detected automatically and their secrets restored.
    """
    text = source.read()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProfileValidationError(f"Import file is not valid JSON: {e}") from e

    policy = ConflictPolicy(conflict.lower())
    service = build_token_service()

    if isinstance(data, dict) and is_encrypted_export(data):
        if not passphrase:
            passphrase = click.prompt("Export passphrase", hide_input=True, err=True)
        report = service.profiles.import_encrypted(data, passphrase, policy)
    else:
        report = service.profiles.import_batch(data, policy)

    _echo_report(report)


@config.command("set-secret")
@click.argument("name")
@click.option(
    "--kind",
    type=click.Choice(list(_SETTABLE_SECRETS)),
    default=SecretKind.CLIENT_SECRET.value,
    show_default=True,
)
@click.option("--stdin", "from_stdin", is_flag=True, help="Read the secret from stdin")
@handle_errors
def config_set_secret(name: str, kind: str, from_stdin: bool) -> None:
    """Store a client secret or certificate password for a profile."""
    secret_kind = _SETTABLE_SECRETS[kind]
    service = build_token_service()

    if from_stdin:
        value = click.get_text_stream("stdin").read().strip()
    else:
        value = click.prompt(kind.replace("-", " ").capitalize(), hide_input=True, confirmation_prompt=True)

    service.profiles.set_secret(name, secret_kind, value)
    click.echo(style_success(f"{kind} stored for '{name}'"))

    warning = service.storage_warning()
    if warning:
        click.echo(style_warning(warning), err=True)
