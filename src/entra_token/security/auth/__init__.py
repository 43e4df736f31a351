"""OAuth2 flow engine and token cache for Entra ID.

This module provides:
- Grant flows (client credentials, device code, authorization code with
  PKCE, interactive browser with a loopback listener) and token refresh
- The token endpoint HTTP client with bounded retries
- The token cache (access tokens on disk, refresh tokens in the
  credential store)
- Unverified JWT inspection for display

Flows never touch storage; the token service wires them to the stores.
"""

from entra_token.security.auth.authorization_code import (
    AuthorizationCodeFlow,
    AuthorizationCodeState,
    PkcePair,
)
from entra_token.security.auth.client_credentials import (
    ClientCredentialsFlow,
    ClientCredentialsState,
)
from entra_token.security.auth.device_flow import (
    DeviceCodeResponse,
    DeviceCodeState,
    DeviceFlow,
    run_device_flow,
)
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.interactive_browser import (
    InteractiveBrowserFlow,
    InteractiveBrowserState,
    LoopbackListener,
)
from entra_token.security.auth.jwt_inspector import (
    TokenInspection,
    inspect_token,
)
from entra_token.security.auth.token_cache import (
    CacheLookup,
    CacheStatus,
    TokenCache,
)
from entra_token.security.auth.token_parser import (
    CachedToken,
    parse_token_response,
)
from entra_token.security.auth.token_refresh import (
    refresh_tokens,
)

__all__ = [
    # Token model
    "CachedToken",
    "parse_token_response",
    # Token cache
    "CacheLookup",
    "CacheStatus",
    "TokenCache",
    # HTTP
    "TokenEndpointClient",
    # Flows
    "AuthorizationCodeFlow",
    "AuthorizationCodeState",
    "PkcePair",
    "ClientCredentialsFlow",
    "ClientCredentialsState",
    "DeviceCodeResponse",
    "DeviceCodeState",
    "DeviceFlow",
    "run_device_flow",
    "InteractiveBrowserFlow",
    "InteractiveBrowserState",
    "LoopbackListener",
    # Token refresh
    "refresh_tokens",
    # Inspection
    "TokenInspection",
    "inspect_token",
]
