"""Tests for profile models, scope parsing and environment overrides."""

from __future__ import annotations

from typing import Callable

import pytest
from pydantic import ValidationError

from entra_token.config import (
    AuthMethod,
    EnvironmentOverrides,
    OAuthFlow,
    Profile,
    delegated_scope_string,
    parse_scopes,
)

TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


# ============================================================================
# Tests: Scope parsing
# ============================================================================


class TestParseScopes:
    """Tests for parse_scopes and delegated_scope_string."""

    def test_splits_on_commas_and_whitespace(self) -> None:
        """Given a mixed separator string, returns individual scopes in order."""
        # Act
        result = parse_scopes("User.Read, Mail.Read  openid")

        # Assert
        assert result == ["User.Read", "Mail.Read", "openid"]

    def test_deduplicates_preserving_first_occurrence(self) -> None:
        """Given repeated scopes across list items, keeps each once."""
        # Act
        result = parse_scopes(["User.Read,Mail.Read", "User.Read"])

        # Assert
        assert result == ["User.Read", "Mail.Read"]

    def test_none_returns_empty_list(self) -> None:
        """Given None, returns an empty list."""
        assert parse_scopes(None) == []

    def test_delegated_scope_string_adds_offline_access(self) -> None:
        """Given delegated scopes, offline_access is appended once."""
        # Act
        result = delegated_scope_string(["User.Read"])

        # Assert
        assert result == "User.Read offline_access"

    def test_delegated_scope_string_keeps_existing_offline_access(self) -> None:
        """Given offline_access already present, it is not duplicated."""
        # Act
        result = delegated_scope_string(["OFFLINE_ACCESS", "User.Read"])

        # Assert
        assert result == "OFFLINE_ACCESS User.Read"


# ============================================================================
# Tests: OAuthFlow
# ============================================================================


class TestOAuthFlow:
    """Tests for OAuthFlow parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("DeviceCode", OAuthFlow.DEVICE_CODE),
            ("device-code", OAuthFlow.DEVICE_CODE),
            ("clientcredentials", OAuthFlow.CLIENT_CREDENTIALS),
            ("interactive_browser", OAuthFlow.INTERACTIVE_BROWSER),
            ("AUTHORIZATION-CODE", OAuthFlow.AUTHORIZATION_CODE),
        ],
    )
    def test_parse_accepts_case_and_separator_variants(self, value: str, expected: OAuthFlow) -> None:
        """Given any spelling of a flow name, parse returns the flow."""
        assert OAuthFlow.parse(value) is expected

    def test_parse_rejects_unknown_flow(self) -> None:
        """Given an unknown name, raises ValueError listing the choices."""
        with pytest.raises(ValueError, match="ClientCredentials"):
            OAuthFlow.parse("implicit")

    def test_only_client_credentials_is_app_only(self) -> None:
        """Given each flow, only ClientCredentials is not user-delegated."""
        assert not OAuthFlow.CLIENT_CREDENTIALS.is_user_delegated
        assert all(f.is_user_delegated for f in OAuthFlow if f is not OAuthFlow.CLIENT_CREDENTIALS)


# ============================================================================
# Tests: Profile
# ============================================================================


class TestProfile:
    """Tests for Profile validation and derived values."""

    def test_endpoints_derive_from_tenant(self, profile: Profile) -> None:
        """Given a tenant id, endpoints use the v2.0 paths under the authority."""
        # Assert
        assert profile.authority == f"https://login.microsoftonline.com/{TENANT_ID}"
        assert profile.token_endpoint.endswith("/oauth2/v2.0/token")
        assert profile.device_code_endpoint.endswith("/oauth2/v2.0/devicecode")
        assert profile.authorize_endpoint.endswith("/oauth2/v2.0/authorize")

    def test_authority_override_strips_trailing_slash(self, profile_factory: Callable[..., Profile]) -> None:
        """Given an authority override, it replaces the public cloud host."""
        # Arrange
        profile = profile_factory(authority_url="https://login.microsoftonline.us/contoso.us/")

        # Assert
        assert profile.token_endpoint == "https://login.microsoftonline.us/contoso.us/oauth2/v2.0/token"

    def test_scopes_string_is_split(self, profile_factory: Callable[..., Profile]) -> None:
        """Given scopes as one string, they are split and de-duplicated."""
        # Act
        profile = profile_factory(scopes="User.Read Mail.Read User.Read")

        # Assert
        assert profile.scopes == ["User.Read", "Mail.Read"]

    def test_resource_used_when_no_scopes(self, profile_factory: Callable[..., Profile]) -> None:
        """Given only a resource, effective scopes are <resource>/.default."""
        # Arrange
        profile = profile_factory(scopes=[], resource="https://management.azure.com/")

        # Act
        result = profile.effective_scopes()

        # Assert
        assert result == ["https://management.azure.com/.default"]

    def test_override_scopes_win(self, profile: Profile) -> None:
        """Given an override, effective scopes ignore the profile's scopes."""
        assert profile.effective_scopes(["User.Read"]) == ["User.Read"]

    def test_certificate_profile_requires_exactly_one_source(self) -> None:
        """Given Certificate auth without a path or thumbprint, validation fails."""
        with pytest.raises(ValidationError, match="certificatePath"):
            Profile(
                name="cert",
                tenant_id=TENANT_ID,
                client_id=CLIENT_ID,
                auth_method=AuthMethod.CERTIFICATE,
            )

    def test_secret_profile_rejects_certificate_reference(self) -> None:
        """Given ClientSecret auth with a certificate path, validation fails."""
        with pytest.raises(ValidationError):
            Profile(
                name="secret",
                tenant_id=TENANT_ID,
                client_id=CLIENT_ID,
                certificate_path="/tmp/app.pfx",
            )

    def test_thumbprint_is_normalized(self) -> None:
        """Given a thumbprint with separators, it is upper-cased and compacted."""
        # Act
        profile = Profile(
            name="cert",
            tenant_id=TENANT_ID,
            client_id=CLIENT_ID,
            auth_method=AuthMethod.CERTIFICATE,
            use_store_certificate=True,
            thumbprint="ab:cd ef",
        )

        # Assert
        assert profile.thumbprint == "ABCDEF"

    def test_validate_for_authentication_reports_bad_ids(self, profile_factory: Callable[..., Profile]) -> None:
        """Given a malformed tenant and client id, both are reported."""
        # Arrange
        profile = profile_factory(tenant_id="not a tenant", client_id="my-app")

        # Act
        problems = profile.validate_for_authentication()

        # Assert
        assert len(problems) == 2
        assert any("tenantId" in p for p in problems)
        assert any("clientId" in p for p in problems)

    def test_validate_for_authentication_accepts_domain_tenant(self, profile_factory: Callable[..., Profile]) -> None:
        """Given a verified-domain tenant, the profile is usable."""
        assert profile_factory(tenant_id="contoso.onmicrosoft.com").validate_for_authentication() == []

    def test_record_uses_camel_case_and_round_trips(self, profile: Profile) -> None:
        """Given a profile, to_record emits camelCase keys that validate back."""
        # Act
        record = profile.to_record()
        restored = Profile.model_validate(record)

        # Assert
        assert record["tenantId"] == TENANT_ID
        assert record["scopes"] == [GRAPH_SCOPE]
        assert restored == profile


# ============================================================================
# Tests: EnvironmentOverrides
# ============================================================================


class TestEnvironmentOverrides:
    """Tests for per-invocation environment overrides."""

    def test_apply_replaces_tenant_and_client(self, profile: Profile) -> None:
        """Given tenant/client overrides, apply returns a modified copy."""
        # Arrange
        overrides = EnvironmentOverrides.from_env(
            {"ENTRA_TENANT_ID": "contoso.onmicrosoft.com", "ENTRA_CLIENT_ID": CLIENT_ID.replace("a", "f")}
        )

        # Act
        result = overrides.apply(profile)

        # Assert
        assert result.tenant_id == "contoso.onmicrosoft.com"
        assert result.client_id == CLIENT_ID.replace("a", "f")
        assert profile.tenant_id == TENANT_ID

    def test_secret_is_not_revealed_in_repr(self) -> None:
        """Given a client secret override, repr does not contain it."""
        # Act
        overrides = EnvironmentOverrides.from_env({"ENTRA_CLIENT_SECRET": "s3cr3t"})

        # Assert
        assert overrides.client_secret is not None
        assert overrides.client_secret.get_secret_value() == "s3cr3t"
        assert "s3cr3t" not in repr(overrides)

    def test_empty_environment(self) -> None:
        """Given no variables, overrides are empty and apply is a no-op."""
        # Arrange
        overrides = EnvironmentOverrides.from_env({})

        # Assert
        assert overrides.is_empty
