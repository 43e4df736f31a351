"""OAuth2 client credentials grant (app-only tokens).

States: Idle -> RequestSent -> Completed | Failed

The application authenticates either with a client secret (form field) or
with a certificate-signed client assertion (RFC 7523). No user interaction,
and no refresh token is ever kept from the response.
"""

from __future__ import annotations

__all__ = ["ClientCredentialsFlow", "ClientCredentialsState"]

import threading
from enum import Enum

from entra_token.config import OAuthFlow, Profile
from entra_token.exceptions import EntraTokenError
from entra_token.security.auth.client_assertion import assertion_form_fields
from entra_token.security.auth.flow_state import FlowStateMachine
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.token_parser import CachedToken, parse_token_response
from entra_token.security.certificate import CredentialMaterial, SharedSecret


class ClientCredentialsState(Enum):
    IDLE = "Idle"
    REQUEST_SENT = "RequestSent"
    COMPLETED = "Completed"
    FAILED = "Failed"


_TRANSITIONS = {
    ClientCredentialsState.IDLE: {ClientCredentialsState.REQUEST_SENT, ClientCredentialsState.FAILED},
    ClientCredentialsState.REQUEST_SENT: {ClientCredentialsState.COMPLETED, ClientCredentialsState.FAILED},
}


class ClientCredentialsFlow:
    """One client credentials token request.

    Usage:
        with ClientCredentialsFlow(profile, material) as flow:
            token = flow.acquire(["https://graph.microsoft.com/.default"])
    """

    def __init__(
        self,
        profile: Profile,
        material: CredentialMaterial,
        endpoint_client: TokenEndpointClient | None = None,
    ) -> None:
        self._profile = profile
        self._material = material
        self._client = endpoint_client or TokenEndpointClient()
        self._owns_client = endpoint_client is None
        self.machine = FlowStateMachine("ClientCredentials", ClientCredentialsState.IDLE, _TRANSITIONS)

    def __enter__(self) -> "ClientCredentialsFlow":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @property
    def state(self) -> ClientCredentialsState:
        return self.machine.state

    def build_request(self, scopes: list[str]) -> dict[str, str]:
        """Form body for the token request."""
        body = {
            "grant_type": "client_credentials",
            "client_id": self._profile.client_id,
            "scope": " ".join(scopes),
        }
        if isinstance(self._material, SharedSecret):
            body["client_secret"] = self._material.value
        else:
            body.update(
                assertion_form_fields(self._material, self._profile.client_id, self._profile.token_endpoint)
            )
        return body

    def acquire(
        self,
        scopes: list[str],
        *,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> CachedToken:
        """Request an app-only token.

        Raises:
            AuthorityError: Authority rejected the request (e.g. invalid_client).
            NetworkError: Authority unreachable after retries.
            FlowCancelledError: Cancelled before completion.
        """
        try:
            body = self.build_request(scopes)
            self.machine.transition(ClientCredentialsState.REQUEST_SENT)
            payload = self._client.post_form(
                self._profile.token_endpoint, body, cancel_event=cancel_event, timeout=timeout
            )
            token = parse_token_response(payload, requested_scopes=scopes, flow=OAuthFlow.CLIENT_CREDENTIALS)
        except EntraTokenError:
            self.machine.fail_if_active(ClientCredentialsState.FAILED)
            raise

        self.machine.transition(ClientCredentialsState.COMPLETED)
        return token.without_refresh_token()
