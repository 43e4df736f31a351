"""Token refresh for the OAuth refresh_token grant.

When a user-delegated access token expires, the refresh token obtains a new
one without user interaction.

Flow:
1. Cache reports an expired entry with a refresh token
2. refresh_tokens() posts grant_type=refresh_token
3. New access token (and usually a rotated refresh token) is returned
4. Caller stores the result

An expired or revoked refresh token (invalid_grant / expired_token /
interaction_required) raises RefreshTokenExpiredError so the caller can fall
back to a full flow. Refresh failures are never retried here.
"""

from __future__ import annotations

__all__ = ["refresh_tokens"]

import threading

from entra_token.config import OAuthFlow, Profile, delegated_scope_string
from entra_token.exceptions import AuthorityError, RefreshTokenExpiredError
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.token_parser import CachedToken, parse_token_response

# Authority errors meaning the refresh token can no longer be used
_REFRESH_EXPIRED_CODES = frozenset({"invalid_grant", "expired_token", "interaction_required"})


def refresh_tokens(
    profile: Profile,
    refresh_token: str,
    scopes: list[str],
    *,
    flow: OAuthFlow | None = None,
    endpoint_client: TokenEndpointClient | None = None,
    cancel_event: threading.Event | None = None,
) -> CachedToken:
    """Redeem a refresh token for a new access token.

    Args:
        profile: Profile the token belongs to.
        refresh_token: Refresh token from the cache.
        scopes: Scopes of the cached entry.
        flow: Flow that originally produced the token (kept on the new token).
        endpoint_client: Optional client (for testing).
        cancel_event: Set to abort the request.

    Returns:
        New CachedToken. If the authority does not rotate the refresh token,
        the old one is carried over.

    Raises:
        RefreshTokenExpiredError: Refresh token expired or revoked.
        AuthorityError: Other authority rejection.
        NetworkError: Authority unreachable.
    """
    client = endpoint_client or TokenEndpointClient()
    owns_client = endpoint_client is None

    try:
        payload = client.post_form(
            profile.token_endpoint,
            {
                "grant_type": "refresh_token",
                "client_id": profile.client_id,
                "refresh_token": refresh_token,
                "scope": delegated_scope_string(scopes),
            },
            cancel_event=cancel_event,
        )
    except AuthorityError as e:
        if e.code in _REFRESH_EXPIRED_CODES:
            raise RefreshTokenExpiredError(e.code, e.description) from e
        raise
    finally:
        if owns_client:
            client.close()

    token = parse_token_response(payload, requested_scopes=scopes, flow=flow)
    if token.refresh_token is None:
        token = token.model_copy(update={"refresh_token": refresh_token})
    return token
