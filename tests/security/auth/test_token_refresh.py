"""Tests for the refresh_token grant."""

from __future__ import annotations

from typing import Any, Callable
from unittest.mock import MagicMock

import httpx
import pytest

from entra_token.config import OAuthFlow, Profile
from entra_token.exceptions import AuthorityError, RefreshTokenExpiredError
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.token_refresh import refresh_tokens


class TestRefreshTokens:
    """Tests for refresh_tokens."""

    def test_sends_refresh_grant(
        self,
        profile: Profile,
        http_client: MagicMock,
        endpoint_client: TokenEndpointClient,
        json_response: Callable[..., httpx.Response],
        token_payload: Callable[..., dict[str, Any]],
    ) -> None:
        """Given a refresh token, posts grant_type=refresh_token with offline_access."""
        # Arrange
        http_client.request.return_value = json_response(token_payload("access-2", refresh_token="refresh-2"))

        # Act
        token = refresh_tokens(
            profile, "refresh-1", ["User.Read"], flow=OAuthFlow.DEVICE_CODE, endpoint_client=endpoint_client
        )

        # Assert
        data = http_client.request.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-1"
        assert data["scope"] == "User.Read offline_access"
        assert "client_secret" not in data
        assert token.access_token == "access-2"
        assert token.refresh_token == "refresh-2"
        assert token.flow is OAuthFlow.DEVICE_CODE

    def test_keeps_old_refresh_token_when_not_rotated(
        self,
        profile: Profile,
        http_client: MagicMock,
        endpoint_client: TokenEndpointClient,
        json_response: Callable[..., httpx.Response],
        token_payload: Callable[..., dict[str, Any]],
    ) -> None:
        """Given a response without refresh_token, the old one is carried over."""
        # Arrange
        http_client.request.return_value = json_response(token_payload("access-2"))

        # Act
        token = refresh_tokens(profile, "refresh-1", ["User.Read"], endpoint_client=endpoint_client)

        # Assert
        assert token.refresh_token == "refresh-1"

    @pytest.mark.parametrize("code", ["invalid_grant", "expired_token", "interaction_required"])
    def test_expired_refresh_token(
        self,
        code: str,
        profile: Profile,
        http_client: MagicMock,
        endpoint_client: TokenEndpointClient,
        json_response: Callable[..., httpx.Response],
    ) -> None:
        """Given an expiry-class error, raises RefreshTokenExpiredError (exit 8)."""
        # Arrange
        http_client.request.return_value = json_response({"error": code}, status_code=400)

        # Act & Assert
        with pytest.raises(RefreshTokenExpiredError) as exc_info:
            refresh_tokens(profile, "refresh-1", ["User.Read"], endpoint_client=endpoint_client)
        assert exc_info.value.exit_code == 8

    def test_other_errors_propagate(
        self,
        profile: Profile,
        http_client: MagicMock,
        endpoint_client: TokenEndpointClient,
        json_response: Callable[..., httpx.Response],
    ) -> None:
        """Given invalid_scope, the AuthorityError propagates unchanged and is not retried."""
        # Arrange
        http_client.request.return_value = json_response({"error": "invalid_scope"}, status_code=400)

        # Act & Assert
        with pytest.raises(AuthorityError) as exc_info:
            refresh_tokens(profile, "refresh-1", ["Bogus.Scope"], endpoint_client=endpoint_client)
        assert not isinstance(exc_info.value, RefreshTokenExpiredError)
        assert http_client.request.call_count == 1
