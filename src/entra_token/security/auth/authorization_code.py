"""OAuth2 authorization code grant with PKCE (RFC 7636).

States: Idle -> AuthUrlBuilt -> AwaitingCallback -> CodeReceived -> Completed | Failed

The flow builds an authorization URL carrying a PKCE S256 challenge and a
random ``state``, hands it to whoever can drive the browser, validates the
redirect it gets back and exchanges the code together with the PKCE verifier.

A callback whose ``state`` differs from the one generated for this attempt is
always rejected with StateMismatchError, even when it carries a well-formed
code.

The redirect target is external here (the user pastes the final URL); see
interactive_browser.py for the loopback-listener specialization.
"""

from __future__ import annotations

__all__ = [
    "AuthorizationCodeFlow",
    "AuthorizationCodeState",
    "PkcePair",
    "parse_callback",
]

import base64
import hashlib
import secrets
import threading
import urllib.parse
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping

from entra_token.config import OAuthFlow, Profile, delegated_scope_string
from entra_token.constants import DEFAULT_REDIRECT_URI
from entra_token.exceptions import (
    AuthenticationError,
    AuthorityError,
    EntraTokenError,
    InvalidFlowTransition,
    StateMismatchError,
)
from entra_token.security.auth.flow_state import FlowStateMachine
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.token_parser import CachedToken, parse_token_response


class AuthorizationCodeState(Enum):
    IDLE = "Idle"
    AUTH_URL_BUILT = "AuthUrlBuilt"
    AWAITING_CALLBACK = "AwaitingCallback"
    CODE_RECEIVED = "CodeReceived"
    COMPLETED = "Completed"
    FAILED = "Failed"


_TRANSITIONS = {
    AuthorizationCodeState.IDLE: {AuthorizationCodeState.AUTH_URL_BUILT, AuthorizationCodeState.FAILED},
    AuthorizationCodeState.AUTH_URL_BUILT: {
        AuthorizationCodeState.AWAITING_CALLBACK,
        AuthorizationCodeState.FAILED,
    },
    AuthorizationCodeState.AWAITING_CALLBACK: {
        AuthorizationCodeState.CODE_RECEIVED,
        AuthorizationCodeState.FAILED,
    },
    AuthorizationCodeState.CODE_RECEIVED: {AuthorizationCodeState.COMPLETED, AuthorizationCodeState.FAILED},
}


@dataclass(frozen=True)
class PkcePair:
    """PKCE code verifier and its S256 challenge."""

    verifier: str = field(repr=False)
    challenge: str

    @classmethod
    def generate(cls) -> "PkcePair":
        verifier = secrets.token_urlsafe(64)
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        return cls(verifier=verifier, challenge=challenge)


def parse_callback(callback: str | Mapping[str, str]) -> dict[str, str]:
    """Extract query parameters from a redirect URL, query string or mapping."""
    if isinstance(callback, Mapping):
        return {str(k): str(v) for k, v in callback.items()}

    text = callback.strip()
    parsed = urllib.parse.urlparse(text)
    query = parsed.query if (parsed.scheme or parsed.path.startswith("/")) else text.lstrip("?")
    # Some authorities return parameters in the fragment
    if not query and parsed.fragment:
        query = parsed.fragment
    return {key: values[0] for key, values in urllib.parse.parse_qs(query).items() if values}


class AuthorizationCodeFlow:
    """Authorization code + PKCE sign-in attempt.

    Usage:
        with AuthorizationCodeFlow(profile) as flow:
            url = flow.build_authorization_url(scopes)
            redirected_to = input(f"Open {url} and paste the final URL: ")
            code = flow.handle_callback(redirected_to)
            token = flow.exchange_code(code)
    """

    def __init__(
        self,
        profile: Profile,
        endpoint_client: TokenEndpointClient | None = None,
        *,
        flow_kind: OAuthFlow = OAuthFlow.AUTHORIZATION_CODE,
    ) -> None:
        self._profile = profile
        self._client = endpoint_client or TokenEndpointClient()
        self._owns_client = endpoint_client is None
        self._flow_kind = flow_kind
        self._pkce = PkcePair.generate()
        self._state = secrets.token_urlsafe(32)
        self._redirect_uri: str | None = None
        self._scopes: list[str] = []
        self.machine = FlowStateMachine("AuthorizationCode", AuthorizationCodeState.IDLE, _TRANSITIONS)

    def __enter__(self) -> "AuthorizationCodeFlow":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @property
    def state(self) -> AuthorizationCodeState:
        return self.machine.state

    @property
    def expected_state(self) -> str:
        """Anti-CSRF ``state`` value generated for this attempt."""
        return self._state

    @property
    def redirect_uri(self) -> str | None:
        return self._redirect_uri

    def build_authorization_url(
        self,
        scopes: list[str],
        redirect_uri: str | None = None,
        *,
        prompt: str | None = "select_account",
    ) -> str:
        """Build the /authorize URL for this attempt."""
        self._scopes = list(scopes)
        self._redirect_uri = redirect_uri or self._profile.redirect_uri or DEFAULT_REDIRECT_URI

        params = {
            "client_id": self._profile.client_id,
            "response_type": "code",
            "redirect_uri": self._redirect_uri,
            "response_mode": "query",
            "scope": delegated_scope_string(scopes),
            "state": self._state,
            "code_challenge": self._pkce.challenge,
            "code_challenge_method": "S256",
        }
        if prompt:
            params["prompt"] = prompt

        self.machine.transition(AuthorizationCodeState.AUTH_URL_BUILT)
        return f"{self._profile.authorize_endpoint}?{urllib.parse.urlencode(params)}"

    def await_callback(self) -> None:
        """Mark the URL as handed out; a callback is now expected."""
        self.machine.transition(AuthorizationCodeState.AWAITING_CALLBACK)

    def handle_callback(self, callback: str | Mapping[str, str]) -> str:
        """Validate the redirect and return the authorization code.

        Raises:
            StateMismatchError: ``state`` missing or different from this attempt's.
            AuthorityError: The redirect carries ``error=``.
            AuthenticationError: No code in the redirect.
        """
        if self.machine.state is AuthorizationCodeState.AUTH_URL_BUILT:
            self.await_callback()

        params = parse_callback(callback)
        received_state = params.get("state", "")

        if not secrets.compare_digest(received_state.encode(), self._state.encode()):
            self.machine.fail_if_active(AuthorizationCodeState.FAILED)
            raise StateMismatchError(
                "Authorization response state does not match this sign-in attempt; "
                "the callback was rejected."
            )

        if "error" in params:
            self.machine.fail_if_active(AuthorizationCodeState.FAILED)
            raise AuthorityError(params["error"], params.get("error_description"))

        code = params.get("code")
        if not code:
            self.machine.fail_if_active(AuthorizationCodeState.FAILED)
            raise AuthenticationError("Authorization response contains no code")

        self.machine.transition(AuthorizationCodeState.CODE_RECEIVED)
        return code

    def exchange_code(
        self,
        code: str,
        *,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> CachedToken:
        """Redeem the code and PKCE verifier for tokens (public client)."""
        if self.machine.state is not AuthorizationCodeState.CODE_RECEIVED:
            raise InvalidFlowTransition(
                f"AuthorizationCode: cannot exchange a code in state {self.machine.state.value}"
            )

        try:
            payload = self._client.post_form(
                self._profile.token_endpoint,
                {
                    "grant_type": "authorization_code",
                    "client_id": self._profile.client_id,
                    "code": code,
                    "redirect_uri": self._redirect_uri or DEFAULT_REDIRECT_URI,
                    "code_verifier": self._pkce.verifier,
                    "scope": delegated_scope_string(self._scopes),
                },
                cancel_event=cancel_event,
                timeout=timeout,
            )
            token = parse_token_response(payload, requested_scopes=self._scopes, flow=self._flow_kind)
        except EntraTokenError:
            self.machine.fail_if_active(AuthorizationCodeState.FAILED)
            raise

        self.machine.transition(AuthorizationCodeState.COMPLETED)
        return token

    def acquire(
        self,
        scopes: list[str],
        obtain_redirect: Callable[[str], str],
        *,
        redirect_uri: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CachedToken:
        """Run the whole flow with an external redirect provider.

        Args:
            scopes: Scopes to request.
            obtain_redirect: Receives the authorization URL and returns the
                URL (or query string) the browser was redirected to.
            redirect_uri: Redirect URI registered for the application.
            cancel_event: Set to abort the code exchange.
        """
        url = self.build_authorization_url(scopes, redirect_uri)
        self.await_callback()
        try:
            redirected_to = obtain_redirect(url)
        except BaseException:
            self.machine.fail_if_active(AuthorizationCodeState.FAILED)
            raise
        code = self.handle_callback(redirected_to)
        return self.exchange_code(code, cancel_event=cancel_event)
