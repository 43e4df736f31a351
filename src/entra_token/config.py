"""Profile configuration models for entra-token.

A profile is a named bundle of non-secret connection settings for one app
registration in one tenant. Secrets (client secret, certificate password,
refresh tokens) never live here; they belong to the credential store.

Profiles are persisted as camelCase JSON records in profiles.json:

    {
      "name": "graph-prod",
      "tenantId": "contoso.onmicrosoft.com",
      "clientId": "00000000-0000-0000-0000-000000000000",
      "scopes": ["https://graph.microsoft.com/.default"],
      "authMethod": "ClientSecret",
      ...
    }

Environment variables ENTRA_TENANT_ID / ENTRA_CLIENT_ID / ENTRA_CLIENT_SECRET
can override a profile for a single invocation (see EnvironmentOverrides).
"""

from __future__ import annotations

__all__ = [
    "AuthMethod",
    "EnvironmentOverrides",
    "OAuthFlow",
    "Profile",
    "ProfileDocument",
    "delegated_scope_string",
    "parse_scopes",
]

import os
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic.alias_generators import to_camel

from entra_token.constants import (
    DEFAULT_AUTHORITY_HOST,
    ENV_CLIENT_ID,
    ENV_CLIENT_SECRET,
    ENV_TENANT_ID,
)

# Tenant ids are either GUIDs or verified domain names
_DOMAIN_PATTERN = re.compile(r"^[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")


class AuthMethod(str, Enum):
    """How the application authenticates itself to the authority."""

    CLIENT_SECRET = "ClientSecret"
    CERTIFICATE = "Certificate"


class OAuthFlow(str, Enum):
    """Supported OAuth2 grant flows."""

    CLIENT_CREDENTIALS = "ClientCredentials"
    AUTHORIZATION_CODE = "AuthorizationCode"
    DEVICE_CODE = "DeviceCode"
    INTERACTIVE_BROWSER = "InteractiveBrowser"

    @property
    def is_user_delegated(self) -> bool:
        """True for flows that act on behalf of a signed-in user."""
        return self is not OAuthFlow.CLIENT_CREDENTIALS

    @classmethod
    def parse(cls, value: str) -> "OAuthFlow":
        """Parse a flow name case-insensitively, accepting kebab-case.

        "device-code", "DeviceCode" and "devicecode" all map to DEVICE_CODE.
        """
        wanted = value.replace("-", "").replace("_", "").lower()
        for flow in cls:
            if flow.value.lower() == wanted:
                return flow
        choices = ", ".join(f.value for f in cls)
        raise ValueError(f"Unknown flow '{value}'. Expected one of: {choices}")


def parse_scopes(value: str | list[str] | None) -> list[str]:
    """Split a scope string on whitespace/commas and de-duplicate in order.

    Case is preserved; normalization for cache keys happens in the cache.
    """
    if value is None:
        return []
    items = value if isinstance(value, list) else re.split(r"[\s,]+", value)
    result: list[str] = []
    seen: set[str] = set()
    for item in items:
        for part in re.split(r"[\s,]+", item.strip()):
            if part and part not in seen:
                seen.add(part)
                result.append(part)
    return result


def delegated_scope_string(scopes: list[str]) -> str:
    """Scope parameter for user-delegated requests.

    Adds ``offline_access`` so the authority issues a refresh token.
    """
    items = list(scopes)
    if not any(scope.lower() == "offline_access" for scope in items):
        items.append("offline_access")
    return " ".join(items)


def _is_guid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Profile(BaseModel):
    """Named, non-secret connection configuration.

    Attributes:
        name: Unique profile name (case-insensitive lookup).
        tenant_id: Directory (tenant) id, GUID or domain.
        client_id: Application (client) id.
        authority_url: Override for the authority; defaults to
            https://login.microsoftonline.com/{tenant_id}.
        scopes: Ordered, de-duplicated scopes requested by default.
        resource: Resource URI; used as "{resource}/.default" when no scopes.
        auth_method: ClientSecret or Certificate.
        certificate_path: PKCS#12 (.pfx/.p12) or PEM file.
        use_store_certificate: Load the certificate from the user certificate store.
        thumbprint: SHA-1 thumbprint of the store certificate.
        cache_certificate_password: Whether the certificate password is kept
            in the credential store.
        redirect_uri: Redirect URI for authorization code flows.
        default_flow: Flow used when none is requested explicitly.
        created_at: Creation timestamp (UTC).
        updated_at: Last modification timestamp (UTC).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    authority_url: str | None = None
    scopes: list[str] = Field(default_factory=list)
    resource: str | None = None
    auth_method: AuthMethod = AuthMethod.CLIENT_SECRET
    certificate_path: str | None = None
    use_store_certificate: bool = False
    thumbprint: str | None = None
    cache_certificate_password: bool = False
    redirect_uri: str | None = None
    default_flow: OAuthFlow | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("scopes", mode="before")
    @classmethod
    def _normalize_scope_list(cls, value: Any) -> list[str]:
        if value is None or isinstance(value, (str, list)):
            return parse_scopes(value)
        return value

    @field_validator("thumbprint")
    @classmethod
    def _normalize_thumbprint(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.replace(":", "").replace(" ", "").upper() or None

    @model_validator(mode="after")
    def _check_credential_reference(self) -> "Profile":
        if self.auth_method is AuthMethod.CERTIFICATE:
            has_path = bool(self.certificate_path)
            has_store = self.use_store_certificate and bool(self.thumbprint)
            if has_path == has_store:
                raise ValueError(
                    "Certificate profiles need exactly one of certificatePath "
                    "or useStoreCertificate with a thumbprint"
                )
        elif self.certificate_path or self.use_store_certificate or self.thumbprint:
            raise ValueError("ClientSecret profiles must not reference a certificate")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def authority(self) -> str:
        """Authority base URL without a trailing slash."""
        if self.authority_url:
            return self.authority_url.rstrip("/")
        return f"{DEFAULT_AUTHORITY_HOST}/{self.tenant_id}"

    @property
    def identity(self) -> tuple[str, str, str]:
        """(tenant, client, authority) the tokens of this profile are issued for."""
        return (self.tenant_id.lower(), self.client_id.lower(), self.authority.lower())

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    @property
    def device_code_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/devicecode"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/authorize"

    def effective_scopes(self, override: list[str] | None = None) -> list[str]:
        """Scopes for a request: override, else profile scopes, else resource/.default."""
        if override:
            return parse_scopes(override)
        if self.scopes:
            return list(self.scopes)
        if self.resource:
            return [f"{self.resource.rstrip('/')}/.default"]
        return []

    def validate_for_authentication(self) -> list[str]:
        """Check the fields needed to talk to the authority.

        Returns:
            List of human-readable problems; empty when the profile is usable.
        """
        errors: list[str] = []
        if not (_is_guid(self.tenant_id) or _DOMAIN_PATTERN.match(self.tenant_id)):
            errors.append("tenantId must be a GUID or a domain name (e.g. contoso.onmicrosoft.com)")
        if not _is_guid(self.client_id):
            errors.append("clientId must be a GUID")
        if not self.effective_scopes():
            errors.append("at least one scope or a resource is required")
        if self.authority_url and not self.authority_url.startswith("https://"):
            errors.append("authorityUrl must use https")
        return errors

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase record (no secret fields exist)."""
        return self.model_dump(mode="json", by_alias=True)

    def touched(self) -> "Profile":
        """Copy with updated_at set to now."""
        return self.model_copy(update={"updated_at": _utcnow()})


class ProfileDocument(BaseModel):
    """On-disk layout of profiles.json and of plain exports."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = 1
    exported_at: datetime | None = None
    profiles: list[Profile] = Field(default_factory=list)


class EnvironmentOverrides(BaseModel):
    """Per-process overrides read from the environment.

    Consumed once when a profile is resolved and never written back.
    """

    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: SecretStr | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EnvironmentOverrides":
        env = os.environ if environ is None else environ
        secret = env.get(ENV_CLIENT_SECRET)
        return cls(
            tenant_id=env.get(ENV_TENANT_ID) or None,
            client_id=env.get(ENV_CLIENT_ID) or None,
            client_secret=SecretStr(secret) if secret else None,
        )

    @property
    def is_empty(self) -> bool:
        return self.tenant_id is None and self.client_id is None and self.client_secret is None

    def apply(self, profile: Profile) -> Profile:
        """Return a copy of ``profile`` with tenant/client ids overridden."""
        update: dict[str, Any] = {}
        if self.tenant_id:
            update["tenant_id"] = self.tenant_id
        if self.client_id:
            update["client_id"] = self.client_id
        return profile.model_copy(update=update) if update else profile
