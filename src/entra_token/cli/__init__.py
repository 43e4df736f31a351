"""Command-line interface for entra-token.

Provides commands for acquiring and inspecting tokens, discovering app
registrations, and managing profiles and the token cache.
"""

from .main import cli, main

__all__ = ["cli", "main"]
