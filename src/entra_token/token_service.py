"""Token acquisition orchestrator.

Entry point for every command that needs a token. Decides between a cache
hit, a refresh-token grant and a full flow, and writes results back to the
cache.

    get-token -> TokenService.acquire_token()
        1. resolve profile (+ environment overrides)
        2. effective scopes and flow
        3. cache HIT -> return, no network call
        4. REFRESHABLE + user-delegated flow -> refresh grant
        5. resolve credentials, run the flow, store, return

Errors propagate typed. The only recoveries are a failed refresh (falls
through to a full flow) and an unavailable browser (falls back to the device
code flow). Certificate auth is never downgraded to a client secret.
"""

from __future__ import annotations

__all__ = [
    "Interaction",
    "TokenResult",
    "TokenService",
]

import threading
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from entra_token.config import AuthMethod, EnvironmentOverrides, OAuthFlow, Profile
from entra_token.constants import DEVICE_FLOW_TIMEOUT_SECONDS, INTERACTIVE_TIMEOUT_SECONDS
from entra_token.exceptions import (
    AuthorityError,
    BrowserUnavailableError,
    ConfigurationError,
    ProfileValidationError,
    RefreshTokenExpiredError,
)
from entra_token.profiles import ProfileStore
from entra_token.security.auth.authorization_code import AuthorizationCodeFlow
from entra_token.security.auth.client_credentials import ClientCredentialsFlow
from entra_token.security.auth.device_flow import DeviceCodeResponse, run_device_flow
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.interactive_browser import InteractiveBrowserFlow, browser_available
from entra_token.security.auth.token_cache import CacheStatus, TokenCache
from entra_token.security.auth.token_parser import CachedToken
from entra_token.security.auth.token_refresh import refresh_tokens
from entra_token.security.certificate import resolve_credential_material
from entra_token.security.credential_storage import CredentialStore, SecretKind, get_credential_storage_info
from entra_token.telemetry.system.system_logger import get_system_logger


def _log_device_code(code: DeviceCodeResponse) -> None:
    get_system_logger().warning(
        {
            "event": "device_code_issued",
            "message": code.message
            or f"To sign in, open {code.verification_uri} and enter the code {code.user_code}",
        }
    )


@dataclass
class Interaction:
    """User-facing callbacks used by the interactive flows.

    Attributes:
        show_device_code: Displays the device code instructions.
        open_browser: Opens a URL; returns False if no browser could be opened.
        on_browser_url: Receives the authorization URL after the browser opened.
        prompt_redirect: Given the authorization URL, returns the URL the
            browser was redirected to (AuthorizationCode flow).
        on_poll: Called before each device code poll.
        is_browser_available: Decides whether InteractiveBrowser can run.
        prompt_certificate_password: Given the certificate file name, asks for
            its password when none is stored or the stored one is wrong.
    """

    show_device_code: Callable[[DeviceCodeResponse], None] = _log_device_code
    open_browser: Callable[[str], bool] = webbrowser.open
    on_browser_url: Callable[[str], None] | None = None
    prompt_redirect: Callable[[str], str] | None = None
    on_poll: Callable[[], None] | None = None
    is_browser_available: Callable[[], bool] = browser_available
    prompt_certificate_password: Callable[[str], str] | None = None


@dataclass
class TokenResult:
    """Outcome of an acquisition.

    Attributes:
        token: The token (never carries a refresh token for ClientCredentials).
        profile: Profile name the token belongs to.
        scopes: Scopes requested.
        flow: Flow that produced the token (DeviceCode after a browser fallback).
        from_cache: True if no network call was made.
        refreshed: True if obtained through the refresh-token grant.
    """

    token: CachedToken
    profile: str
    scopes: list[str]
    flow: OAuthFlow
    from_cache: bool = False
    refreshed: bool = False

    @property
    def access_token(self) -> str:
        return self.token.access_token


@dataclass
class _Resolved:
    profile: Profile
    cache_name: str
    overrides: EnvironmentOverrides = field(default_factory=EnvironmentOverrides)


class TokenService:
    """Orchestrates profiles, credentials, the cache and the flow engine.

    All collaborators are passed in; nothing is process-global. Profile
    changes that invalidate issued tokens clear the cache through the
    profile store's identity listener.
    """

    def __init__(
        self,
        profile_store: ProfileStore,
        credential_store: CredentialStore,
        cache: TokenCache,
        *,
        endpoint_client_factory: Callable[[], TokenEndpointClient] = TokenEndpointClient,
        interaction: Interaction | None = None,
        environ: Mapping[str, str] | None = None,
        certificate_store_dir: Path | None = None,
    ) -> None:
        self.profiles = profile_store
        self.credentials = credential_store
        self.cache = cache
        profile_store.add_identity_listener(cache.clear_profile)
        self._client_factory = endpoint_client_factory
        self.interaction = interaction or Interaction()
        self._environ = environ
        self._certificate_store_dir = certificate_store_dir

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve(self, profile: Profile) -> _Resolved:
        overrides = EnvironmentOverrides.from_env(self._environ)
        effective = overrides.apply(profile)
        cache_name = profile.name
        if (effective.tenant_id, effective.client_id) != (profile.tenant_id, profile.client_id):
            # Overridden identity must not share cache entries with the stored profile
            cache_name = f"{profile.name}#{effective.tenant_id}:{effective.client_id}"
        return _Resolved(effective, cache_name, overrides)

    def resolve_profile(self, name: str) -> Profile:
        """Stored profile with environment overrides applied."""
        return self._resolve(self.profiles.get(name)).profile

    def infer_flow(self, profile: Profile, override: OAuthFlow | None = None) -> OAuthFlow:
        """Effective flow: override, profile default, else inferred.

        App credentials configured (certificate, stored or environment client
        secret) -> ClientCredentials; otherwise InteractiveBrowser.
        """
        if override is not None:
            return override
        if profile.default_flow is not None:
            return profile.default_flow
        if profile.auth_method is AuthMethod.CERTIFICATE:
            return OAuthFlow.CLIENT_CREDENTIALS
        overrides = EnvironmentOverrides.from_env(self._environ)
        if overrides.client_secret is not None or self.credentials.exists(profile.name, SecretKind.CLIENT_SECRET):
            return OAuthFlow.CLIENT_CREDENTIALS
        return OAuthFlow.INTERACTIVE_BROWSER

    @staticmethod
    def _scopes_for(profile: Profile, scopes: list[str] | None) -> list[str]:
        effective = profile.effective_scopes(scopes)
        if not effective:
            raise ProfileValidationError(
                f"Profile '{profile.name}' has no scopes or resource; pass --scope",
                ["at least one scope or a resource is required"],
            )
        return effective

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def acquire_token(
        self,
        profile_name: str,
        scopes: list[str] | None = None,
        flow: OAuthFlow | None = None,
        force_refresh: bool = False,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TokenResult:
        """Return a token for a stored profile.

        Raises:
            ProfileNotFoundError: No such profile.
            ProfileValidationError: Profile unusable for authentication.
            CredentialError: Secret or certificate could not be resolved.
            AuthenticationError: Authority rejected the request.
            NetworkError: Authority unreachable.
            FlowCancelledError / FlowTimeoutError: Interactive flow aborted.
        """
        return self.acquire_with_profile(
            self.profiles.get(profile_name),
            scopes,
            flow,
            force_refresh=force_refresh,
            timeout=timeout,
            cancel_event=cancel_event,
        )

    def acquire_with_profile(
        self,
        profile: Profile,
        scopes: list[str] | None = None,
        flow: OAuthFlow | None = None,
        *,
        force_refresh: bool = False,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TokenResult:
        """Same as acquire_token() for a profile object (stored or transient)."""
        logger = get_system_logger()
        resolved = self._resolve(profile)
        profile = resolved.profile

        problems = profile.validate_for_authentication()
        if problems:
            raise ProfileValidationError(f"Profile '{profile.name}' is not usable", problems)

        effective_scopes = self._scopes_for(profile, scopes)
        effective_flow = self.infer_flow(profile, flow)

        if not force_refresh:
            lookup = self.cache.lookup(resolved.cache_name, effective_scopes)
            if lookup.status is CacheStatus.HIT and lookup.token is not None:
                logger.debug({"event": "token_cache_hit", "profile": profile.name})
                return TokenResult(
                    lookup.token,
                    profile.name,
                    effective_scopes,
                    lookup.token.flow or effective_flow,
                    from_cache=True,
                )

            if (
                lookup.status is CacheStatus.REFRESHABLE
                and lookup.refresh_token
                and effective_flow.is_user_delegated
            ):
                refreshed = self._try_refresh(
                    resolved,
                    lookup.refresh_token,
                    effective_scopes,
                    lookup.token.flow if lookup.token and lookup.token.flow else effective_flow,
                    cancel_event,
                )
                if refreshed is not None:
                    return refreshed

        token, used_flow = self._run_flow(resolved, effective_scopes, effective_flow, timeout, cancel_event)
        self.cache.store(resolved.cache_name, effective_scopes, token)
        logger.info({"event": "token_acquired", "profile": profile.name, "flow": used_flow.value})
        return TokenResult(token, profile.name, effective_scopes, used_flow)

    def _try_refresh(
        self,
        resolved: _Resolved,
        refresh_token: str,
        scopes: list[str],
        flow: OAuthFlow,
        cancel_event: threading.Event | None,
    ) -> TokenResult | None:
        """Refresh grant; None when the caller should fall through to a full flow."""
        logger = get_system_logger()
        try:
            with self._client_factory() as client:
                token = refresh_tokens(
                    resolved.profile,
                    refresh_token,
                    scopes,
                    flow=flow,
                    endpoint_client=client,
                    cancel_event=cancel_event,
                )
        except RefreshTokenExpiredError as e:
            logger.info(
                {
                    "event": "refresh_token_expired",
                    "profile": resolved.profile.name,
                    "message": f"Refresh token rejected ({e.code}); signing in again",
                }
            )
            self.cache.invalidate(resolved.cache_name, scopes)
            return None
        except AuthorityError as e:
            logger.warning(
                {
                    "event": "refresh_failed",
                    "profile": resolved.profile.name,
                    "error": e.code,
                    "message": f"Token refresh failed ({e}); signing in again",
                }
            )
            return None

        self.cache.store(resolved.cache_name, scopes, token)
        return TokenResult(token, resolved.profile.name, scopes, flow, refreshed=True)

    def _run_flow(
        self,
        resolved: _Resolved,
        scopes: list[str],
        flow: OAuthFlow,
        timeout: float | None,
        cancel_event: threading.Event | None,
    ) -> tuple[CachedToken, OAuthFlow]:
        profile = resolved.profile
        interaction = self.interaction

        material = None
        if flow is OAuthFlow.CLIENT_CREDENTIALS:
            # Resolved before any network call or progress output
            secret = resolved.overrides.client_secret
            material = resolve_credential_material(
                profile,
                self.credentials,
                secret_override=secret.get_secret_value() if secret else None,
                certificate_store_dir=self._certificate_store_dir,
                prompt_password=interaction.prompt_certificate_password,
            )

        with self._client_factory() as client:
            if material is not None:
                with ClientCredentialsFlow(profile, material, client) as cc_flow:
                    return cc_flow.acquire(scopes, cancel_event=cancel_event, timeout=timeout), flow

            if flow is OAuthFlow.AUTHORIZATION_CODE:
                if interaction.prompt_redirect is None:
                    raise ConfigurationError("The AuthorizationCode flow needs a way to receive the redirect URL")
                with AuthorizationCodeFlow(profile, client) as code_flow:
                    token = code_flow.acquire(
                        scopes,
                        interaction.prompt_redirect,
                        redirect_uri=profile.redirect_uri,
                        cancel_event=cancel_event,
                    )
                return token, flow

            if flow is OAuthFlow.INTERACTIVE_BROWSER:
                try:
                    with InteractiveBrowserFlow(
                        profile,
                        client,
                        open_browser=interaction.open_browser,
                        is_browser_available=interaction.is_browser_available,
                    ) as browser_flow:
                        token = browser_flow.acquire(
                            scopes,
                            timeout=timeout or INTERACTIVE_TIMEOUT_SECONDS,
                            cancel_event=cancel_event,
                            on_url=interaction.on_browser_url,
                        )
                    return token, flow
                except BrowserUnavailableError as e:
                    get_system_logger().warning(
                        {
                            "event": "browser_fallback",
                            "profile": profile.name,
                            "message": f"{e}; falling back to device code sign-in",
                        }
                    )

            token = run_device_flow(
                profile,
                scopes,
                interaction.show_device_code,
                poll_callback=interaction.on_poll,
                timeout=timeout or DEVICE_FLOW_TIMEOUT_SECONDS,
                cancel_event=cancel_event,
                endpoint_client=client,
            )
            return token, OAuthFlow.DEVICE_CODE

    # ------------------------------------------------------------------
    # Other verbs
    # ------------------------------------------------------------------

    def refresh(
        self,
        profile_name: str,
        scopes: list[str] | None = None,
        flow: OAuthFlow | None = None,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TokenResult:
        """Force a new access token.

        Uses the refresh-token grant when a refresh token is cached, otherwise
        (or when it is rejected) re-acquires through the full flow.
        """
        resolved = self._resolve(self.profiles.get(profile_name))
        effective_scopes = self._scopes_for(resolved.profile, scopes)
        refresh_token = self.cache.get_refresh_token(resolved.cache_name, effective_scopes)

        if refresh_token:
            cached = self.cache.lookup(resolved.cache_name, effective_scopes).token
            cached_flow = cached.flow if cached and cached.flow else None
            result = self._try_refresh(
                resolved,
                refresh_token,
                effective_scopes,
                cached_flow or self.infer_flow(resolved.profile, flow),
                cancel_event,
            )
            if result is not None:
                return result

        return self.acquire_token(
            profile_name,
            scopes,
            flow,
            force_refresh=True,
            timeout=timeout,
            cancel_event=cancel_event,
        )

    def clear_cache(self, profile_name: str | None = None) -> int:
        """Remove cached tokens for one profile or for all of them.

        Returns:
            Number of access-token entries removed.
        """
        if profile_name is not None:
            profile = self.profiles.get(profile_name)
            return self.cache.clear_profile(profile.name)
        return self.cache.clear(profiles=[p.name for p in self.profiles.list()])

    def delete_profile(self, profile_name: str) -> Profile:
        """Delete a profile, its secrets and its cached tokens."""
        removed = self.profiles.delete(profile_name)
        self.cache.clear_profile(removed.name)
        return removed

    def storage_warning(self) -> str | None:
        """Warning text when secrets are kept in the non-secure fallback."""
        info = get_credential_storage_info(self.credentials)
        if info["secure"]:
            return None
        return (
            f"Secrets are stored in machine-bound encrypted files at {info['location']}. "
            "This is NOT equivalent to an OS keychain: anyone running as your user on "
            "this machine can decrypt them."
        )
