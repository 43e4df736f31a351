"""Token model and OAuth token response parsing.

Every flow (client credentials, device code, authorization code, refresh)
returns its result through parse_token_response() so expiry arithmetic lives
in one place.
"""

from __future__ import annotations

__all__ = ["CachedToken", "parse_token_response"]

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field, model_validator

from entra_token.config import OAuthFlow
from entra_token.constants import DEFAULT_EXPIRES_IN_SECONDS, TOKEN_SKEW_MARGIN_SECONDS
from entra_token.exceptions import AuthenticationError


class CachedToken(BaseModel):
    """OAuth token response as held by the token cache.

    Attributes:
        access_token: Opaque bearer token.
        token_type: Token type, normally "Bearer".
        issued_at: UTC timestamp when the response was received.
        expires_at: UTC timestamp derived from ``expires_in``.
        refresh_token: Present only for user-delegated flows.
        id_token: OIDC ID token (optional).
        scopes: Scopes granted (or requested when the authority omits them).
        flow: Flow that produced the token.
    """

    access_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    issued_at: datetime
    expires_at: datetime
    refresh_token: str | None = None
    id_token: str | None = None
    scopes: list[str] = Field(default_factory=list)
    flow: OAuthFlow | None = None

    @model_validator(mode="after")
    def _expiry_after_issue(self) -> "CachedToken":
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")
        return self

    @property
    def is_expired(self) -> bool:
        """Check if access token has expired (no skew applied)."""
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def seconds_until_expiry(self) -> float:
        """Seconds until access token expires (negative if expired)."""
        return (self.expires_at - datetime.now(timezone.utc)).total_seconds()

    def is_usable(self, skew_seconds: int = TOKEN_SKEW_MARGIN_SECONDS, now: datetime | None = None) -> bool:
        """True while ``now < expires_at - skew``."""
        current = now or datetime.now(timezone.utc)
        return current < self.expires_at - timedelta(seconds=skew_seconds)

    def without_refresh_token(self) -> "CachedToken":
        return self.model_copy(update={"refresh_token": None})

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "CachedToken":
        return cls.model_validate_json(data)


def parse_token_response(
    data: dict[str, Any],
    *,
    requested_scopes: list[str] | None = None,
    flow: OAuthFlow | None = None,
) -> CachedToken:
    """Parse a token endpoint success response into a CachedToken.

    Handles standard OAuth 2.0 token response fields:
    - access_token (required)
    - token_type (optional, defaults to "Bearer")
    - expires_in (seconds from now; defaults to one hour)
    - refresh_token, id_token (optional)
    - scope (space-separated; falls back to the requested scopes)

    Args:
        data: Token response JSON.
        requested_scopes: Scopes sent in the request.
        flow: Flow that produced the response.

    Returns:
        CachedToken ready for the cache.

    Raises:
        AuthenticationError: If access_token is missing or expires_in is not a positive number.
    """
    if not data.get("access_token"):
        raise AuthenticationError("Token response has no access_token")

    try:
        expires_in = int(data.get("expires_in", DEFAULT_EXPIRES_IN_SECONDS))
    except (TypeError, ValueError) as e:
        raise AuthenticationError(f"Token response has invalid expires_in: {data.get('expires_in')!r}") from e
    if expires_in <= 0:
        raise AuthenticationError(f"Token response has non-positive expires_in: {expires_in}")

    now = datetime.now(timezone.utc)
    granted = data.get("scope")
    scopes = granted.split() if isinstance(granted, str) and granted.strip() else list(requested_scopes or [])

    return CachedToken(
        access_token=data["access_token"],
        token_type=data.get("token_type") or "Bearer",
        issued_at=now,
        expires_at=now + timedelta(seconds=expires_in),
        refresh_token=data.get("refresh_token"),
        id_token=data.get("id_token"),
        scopes=scopes,
        flow=flow,
    )
