"""RFC 7523 client assertions for certificate authentication.

The assertion is a short-lived JWT signed with the certificate's private key
(RS256) and sent instead of a client secret:

    header:  {"alg": "RS256", "typ": "JWT", "x5t": <sha1>, "x5t#S256": <sha256>}
    claims:  aud = token endpoint, iss = sub = client id,
             jti (unique), nbf = iat = now, exp = now + <= 10 minutes
"""

from __future__ import annotations

__all__ = ["assertion_form_fields", "build_client_assertion"]

import uuid
from datetime import datetime, timedelta, timezone

import jwt

from entra_token.constants import CLIENT_ASSERTION_LIFETIME_SECONDS, CLIENT_ASSERTION_TYPE
from entra_token.security.certificate import SigningCertificate


def build_client_assertion(
    certificate: SigningCertificate,
    client_id: str,
    token_endpoint: str,
    *,
    lifetime_seconds: int = CLIENT_ASSERTION_LIFETIME_SECONDS,
    now: datetime | None = None,
) -> str:
    """Sign a client assertion JWT.

    Args:
        certificate: Certificate whose private key signs the assertion.
        client_id: Application (client) id, used as iss and sub.
        token_endpoint: Token endpoint URL, used as aud.
        lifetime_seconds: Validity window; capped at 10 minutes.
        now: Issue time (defaults to current UTC time).

    Returns:
        Compact-serialized JWT.
    """
    issued = now or datetime.now(timezone.utc)
    lifetime = min(max(lifetime_seconds, 1), CLIENT_ASSERTION_LIFETIME_SECONDS)

    claims = {
        "aud": token_endpoint,
        "iss": client_id,
        "sub": client_id,
        "jti": str(uuid.uuid4()),
        "nbf": int(issued.timestamp()),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=lifetime)).timestamp()),
    }
    headers = {
        "typ": "JWT",
        "x5t": certificate.x5t,
        "x5t#S256": certificate.x5t_s256,
    }
    return jwt.encode(claims, certificate.private_key_pem(), algorithm="RS256", headers=headers)


def assertion_form_fields(certificate: SigningCertificate, client_id: str, token_endpoint: str) -> dict[str, str]:
    """Form fields authenticating a confidential client with a certificate."""
    return {
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
        "client_assertion": build_client_assertion(certificate, client_id, token_endpoint),
    }
