"""Main CLI entry point for entra-token.

Defines the CLI group and registers all subcommands.

Commands:
    get-token - Acquire an access token (cache, refresh, or sign-in)
    refresh   - Force a new access token
    inspect   - Decode a JWT locally
    discover  - Find app registrations via Microsoft Graph
    config    - Profile management (create, list, show, edit, delete, export, import, set-secret)
    cache     - Token cache management (list, clear, storage)

Subcommand help:
    entra-token COMMAND -h         Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli", "main"]

import logging
import sys

import click

from entra_token import __version__
from entra_token.constants import SYSTEM_LOG_FILENAME, get_config_dir
from entra_token.telemetry.system.system_logger import (
    configure_system_logger_file,
    set_console_level,
)

from .commands.cache import cache
from .commands.config import config
from .commands.discover import discover
from .commands.inspect import inspect
from .commands.token import get_token, refresh


class ReorderedGroup(click.Group):
    """Custom group that shows commands before custom help text."""

    def list_commands(self, ctx: click.Context) -> list[str]:
        # Token commands first, management after
        order = ["get-token", "refresh", "inspect", "discover", "config", "cache"]
        names = super().list_commands(ctx)
        return [n for n in order if n in names] + [n for n in names if n not in order]

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """Add extra help after commands section."""
        formatter.write(
            """
Quick Start:
  entra-token config create                 Create a profile (prompts for values)
  entra-token get-token -p <profile>        Print an access token
  entra-token get-token -p <profile> | entra-token inspect

Non-Interactive Setup:
  # Service principal with a client secret
  echo "$SECRET" | entra-token config set-secret graph-prod --stdin
  entra-token config create --no-secret \\
    --name graph-prod \\
    --tenant contoso.onmicrosoft.com \\
    --client-id 00000000-0000-0000-0000-000000000000 \\
    --scope https://graph.microsoft.com/.default

  # Certificate credential
  entra-token config create --no-secret --name graph-cert \\
    --tenant contoso.onmicrosoft.com \\
    --client-id 00000000-0000-0000-0000-000000000000 \\
    --auth-method Certificate --certificate ~/certs/app.pfx

Flows (for --flow):
  ClientCredentials    App-only token using the profile's secret or certificate
  InteractiveBrowser   Browser sign-in on a loopback port (falls back to DeviceCode)
  DeviceCode           Enter a code on another device
  AuthorizationCode    Paste the redirect URL back into the terminal

Environment:
  ENTRA_TENANT_ID, ENTRA_CLIENT_ID, ENTRA_CLIENT_SECRET   Per-invocation overrides
  ENTRA_TOKEN_CREDENTIAL_BACKEND=keychain|file            Force a secret backend
  ENTRA_TOKEN_CONFIG_DIR                                  Relocate profiles and cache
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--verbose", is_flag=True, help="Log debug details to stderr")
@click.pass_context
def cli(ctx: click.Context, version: bool, verbose: bool) -> None:
    """entra-token: OAuth2 access tokens for Microsoft Entra ID."""
    if version:
        click.echo(f"entra-token {__version__}")
        sys.exit(0)

    if verbose:
        set_console_level(logging.DEBUG)
    configure_system_logger_file(get_config_dir() / SYSTEM_LOG_FILENAME)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Register commands
cli.add_command(get_token)
cli.add_command(refresh)
cli.add_command(inspect)
cli.add_command(discover)
cli.add_command(config)
cli.add_command(cache)


def main() -> None:
    """CLI entry point."""
    cli()
