"""Unverified JWT inspection for the `inspect` command.

Decodes header and claims without validating the signature. Display only:
nothing here is a trust decision.
"""

from __future__ import annotations

__all__ = [
    "TokenInspection",
    "inspect_token",
]

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import jwt

from entra_token.exceptions import AuthenticationError


def _timestamp(claims: dict[str, Any], name: str) -> datetime | None:
    value = claims.get(name)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


@dataclass
class TokenInspection:
    """Decoded JWT contents.

    Attributes:
        header: JOSE header (alg, typ, kid, x5t...).
        claims: Payload claims.
        issued_at: From 'iat', if present.
        not_before: From 'nbf', if present.
        expires_at: From 'exp', if present.
    """

    header: dict[str, Any]
    claims: dict[str, Any] = field(default_factory=dict)
    issued_at: datetime | None = None
    not_before: datetime | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def seconds_until_expiry(self, now: datetime | None = None) -> float | None:
        if self.expires_at is None:
            return None
        return (self.expires_at - (now or datetime.now(timezone.utc))).total_seconds()

    @property
    def scopes(self) -> list[str]:
        """Delegated ('scp') or application ('roles') permissions."""
        scp = self.claims.get("scp")
        if isinstance(scp, str):
            return scp.split()
        roles = self.claims.get("roles")
        if isinstance(roles, list):
            return [str(r) for r in roles]
        return []

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "claims": self.claims,
            "issuedAt": self.issued_at.isoformat() if self.issued_at else None,
            "notBefore": self.not_before.isoformat() if self.not_before else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "expired": self.is_expired(),
        }


def inspect_token(token: str) -> TokenInspection:
    """Decode a JWT without signature verification.

    Args:
        token: Compact JWS string (surrounding whitespace and a "Bearer "
            prefix are tolerated).

    Raises:
        AuthenticationError: Not a decodable JWT.
    """
    text = token.strip()
    if text.lower().startswith("bearer "):
        text = text[7:].strip()
    if not text:
        raise AuthenticationError("No token provided")

    try:
        header: dict[str, Any] = jwt.get_unverified_header(text)
        claims: dict[str, Any] = jwt.decode(
            text,
            options={"verify_signature": False, "verify_exp": False, "verify_aud": False},
        )
    except jwt.DecodeError as e:
        raise AuthenticationError(f"Invalid JWT token format: {e}") from e

    return TokenInspection(
        header=header,
        claims=claims,
        issued_at=_timestamp(claims, "iat"),
        not_before=_timestamp(claims, "nbf"),
        expires_at=_timestamp(claims, "exp"),
    )
