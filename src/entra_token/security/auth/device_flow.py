"""OAuth Device Authorization Grant (RFC 8628) against Entra ID.

For terminals without a usable browser: the user opens a URL on any device
and types the code shown. Same pattern as `az login --use-device-code`.

States: Idle -> CodeRequested -> Polling -> Completed | Expired | Failed | Cancelled

Flow:
1. Request device code from {authority}/oauth2/v2.0/devicecode
2. Display: "Go to https://microsoft.com/devicelogin and enter code: XXXX-XXXX"
3. Poll {authority}/oauth2/v2.0/token every ``interval`` seconds
   - authorization_pending: keep polling
   - slow_down: add 5 seconds to the interval
   - expired_token: stop (Expired)
   - access_denied / anything else: stop (Failed)
4. Stop at the deadline min(timeout, expires_in) on a monotonic clock

Polling runs on the caller's thread; cancellation (event or Ctrl-C) leaves
nothing running behind.
"""

from __future__ import annotations

__all__ = [
    "DeviceCodeResponse",
    "DeviceCodeState",
    "DeviceFlow",
    "PollOnceResult",
    "run_device_flow",
]

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from entra_token.config import OAuthFlow, Profile, delegated_scope_string
from entra_token.constants import (
    DEVICE_FLOW_POLL_INTERVAL_SECONDS,
    DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS,
    DEVICE_FLOW_TIMEOUT_SECONDS,
)
from entra_token.exceptions import (
    AuthenticationError,
    AuthorityError,
    DeviceCodeExpiredError,
    EntraTokenError,
    FlowCancelledError,
    FlowTimeoutError,
)
from entra_token.security.auth.flow_state import FlowStateMachine
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.token_parser import CachedToken, parse_token_response
from entra_token.telemetry.system.system_logger import get_system_logger

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


class DeviceCodeState(Enum):
    IDLE = "Idle"
    CODE_REQUESTED = "CodeRequested"
    POLLING = "Polling"
    COMPLETED = "Completed"
    EXPIRED = "Expired"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


_TRANSITIONS = {
    DeviceCodeState.IDLE: {DeviceCodeState.CODE_REQUESTED, DeviceCodeState.FAILED, DeviceCodeState.CANCELLED},
    DeviceCodeState.CODE_REQUESTED: {DeviceCodeState.POLLING, DeviceCodeState.FAILED, DeviceCodeState.CANCELLED},
    DeviceCodeState.POLLING: {
        DeviceCodeState.COMPLETED,
        DeviceCodeState.EXPIRED,
        DeviceCodeState.FAILED,
        DeviceCodeState.CANCELLED,
    },
}


@dataclass
class DeviceCodeResponse:
    """Response from the device authorization endpoint.

    Attributes:
        device_code: Code used to poll for tokens (never shown to the user).
        user_code: Code the user enters in the browser (e.g., "HDFC-LQRT").
        verification_uri: URL the user opens to authenticate.
        verification_uri_complete: URL with the code embedded (optional).
        expires_in: Seconds until the codes expire.
        interval: Minimum polling interval in seconds.
        message: Ready-made instruction text from Entra ID (optional).
    """

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None
    expires_in: int
    interval: int
    message: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "DeviceCodeResponse":
        """Parse the devicecode endpoint response."""
        try:
            return cls(
                device_code=data["device_code"],
                user_code=data["user_code"],
                verification_uri=data.get("verification_uri") or data["verification_url"],
                verification_uri_complete=data.get("verification_uri_complete"),
                expires_in=int(data["expires_in"]),
                interval=int(data.get("interval", DEVICE_FLOW_POLL_INTERVAL_SECONDS)),
                message=data.get("message"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationError(f"Malformed device code response: missing or invalid {e}") from e

    def __repr__(self) -> str:
        return f"DeviceCodeResponse(user_code={self.user_code!r}, verification_uri={self.verification_uri!r})"


@dataclass(frozen=True)
class PollOnceResult:
    """Result of a single poll attempt.

    Attributes:
        status: "pending", "slow_down" or "complete".
        token: Token if status is "complete", None otherwise.
    """

    status: str
    token: CachedToken | None = None


class DeviceFlow:
    """Device authorization flow for one sign-in attempt.

    Usage:
        with DeviceFlow(profile) as flow:
            code = flow.request_device_code(scopes)
            print(code.message)
            token = flow.poll_for_token(code)
    """

    def __init__(
        self,
        profile: Profile,
        endpoint_client: TokenEndpointClient | None = None,
    ) -> None:
        self._profile = profile
        self._client = endpoint_client or TokenEndpointClient()
        self._owns_client = endpoint_client is None
        self._scopes: list[str] = []
        self.machine = FlowStateMachine("DeviceCode", DeviceCodeState.IDLE, _TRANSITIONS)

    def __enter__(self) -> "DeviceFlow":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    @property
    def state(self) -> DeviceCodeState:
        return self.machine.state

    def request_device_code(
        self,
        scopes: list[str],
        *,
        cancel_event: threading.Event | None = None,
    ) -> DeviceCodeResponse:
        """Request a device code and user code.

        Raises:
            AuthorityError: Authority rejected the request (e.g. invalid_scope).
            NetworkError: Authority unreachable.
        """
        self._scopes = list(scopes)
        try:
            self.machine.transition(DeviceCodeState.CODE_REQUESTED)
            payload = self._client.post_form(
                self._profile.device_code_endpoint,
                {
                    "client_id": self._profile.client_id,
                    "scope": delegated_scope_string(scopes),
                },
                cancel_event=cancel_event,
            )
            return DeviceCodeResponse.from_response(payload)
        except FlowCancelledError:
            self.machine.fail_if_active(DeviceCodeState.CANCELLED)
            raise
        except EntraTokenError:
            self.machine.fail_if_active(DeviceCodeState.FAILED)
            raise

    def poll_once(
        self,
        device_code: DeviceCodeResponse,
        *,
        cancel_event: threading.Event | None = None,
    ) -> PollOnceResult:
        """Poll the token endpoint once.

        Returns:
            PollOnceResult with status "pending", "slow_down" or "complete".

        Raises:
            DeviceCodeExpiredError: The device code expired.
            AuthorityError: access_denied or any other terminal error.
        """
        try:
            payload = self._client.post_form(
                self._profile.token_endpoint,
                {
                    "grant_type": DEVICE_CODE_GRANT_TYPE,
                    "client_id": self._profile.client_id,
                    "device_code": device_code.device_code,
                },
                cancel_event=cancel_event,
            )
        except AuthorityError as e:
            if e.code == "authorization_pending":
                return PollOnceResult(status="pending")
            if e.code == "slow_down":
                return PollOnceResult(status="slow_down")
            if e.code in ("expired_token", "code_expired"):
                raise DeviceCodeExpiredError(e.code, e.description or "Device code expired") from e
            raise

        token = parse_token_response(payload, requested_scopes=self._scopes, flow=OAuthFlow.DEVICE_CODE)
        return PollOnceResult(status="complete", token=token)

    def poll_for_token(
        self,
        device_code: DeviceCodeResponse,
        *,
        timeout: float = DEVICE_FLOW_TIMEOUT_SECONDS,
        on_poll: Callable[[], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CachedToken:
        """Poll until the user completes sign-in or the deadline passes.

        Each token-endpoint call is preceded by a wait of at least the
        current interval. The deadline is min(timeout, expires_in) measured
        on a monotonic clock from the start of polling.

        Args:
            device_code: Response from request_device_code().
            timeout: Maximum seconds to wait.
            on_poll: Optional callback invoked before each poll (progress display).
            cancel_event: Set to abort polling.

        Returns:
            CachedToken (normally with a refresh token).

        Raises:
            DeviceCodeExpiredError: Code expired (authority said so or expires_in passed).
            FlowTimeoutError: Caller timeout reached before the code expired.
            FlowCancelledError: Cancelled via event or Ctrl-C.
            AuthorityError: access_denied or other terminal authority error.
        """
        logger = get_system_logger()
        self.machine.transition(DeviceCodeState.POLLING)

        interval = max(device_code.interval, 0)
        code_expires = time.monotonic() + device_code.expires_in
        deadline = min(time.monotonic() + timeout, code_expires)

        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining < interval or remaining <= 0:
                    self._wait(max(remaining, 0), cancel_event)
                    break

                self._wait(interval, cancel_event)

                if on_poll:
                    on_poll()

                result = self.poll_once(device_code, cancel_event=cancel_event)
                if result.status == "complete" and result.token is not None:
                    self.machine.transition(DeviceCodeState.COMPLETED)
                    return result.token
                if result.status == "slow_down":
                    interval += DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS
                    logger.debug({"event": "device_flow_slow_down", "interval": interval})

        except KeyboardInterrupt:
            self.machine.fail_if_active(DeviceCodeState.CANCELLED)
            raise FlowCancelledError("Device code sign-in cancelled") from None
        except FlowCancelledError:
            self.machine.fail_if_active(DeviceCodeState.CANCELLED)
            raise
        except DeviceCodeExpiredError:
            self.machine.fail_if_active(DeviceCodeState.EXPIRED)
            raise
        except EntraTokenError:
            self.machine.fail_if_active(DeviceCodeState.FAILED)
            raise

        self.machine.transition(DeviceCodeState.EXPIRED)
        if deadline >= code_expires:
            raise DeviceCodeExpiredError(
                "expired_token",
                "Device code expired before sign-in completed. Run the command again.",
            )
        raise FlowTimeoutError(f"Device code sign-in timed out after {timeout:.0f} seconds")

    @staticmethod
    def _wait(seconds: float, cancel_event: threading.Event | None) -> None:
        if cancel_event is None:
            time.sleep(seconds)
        elif cancel_event.wait(seconds):
            raise FlowCancelledError("Device code sign-in cancelled")


def run_device_flow(
    profile: Profile,
    scopes: list[str],
    display_callback: Callable[[DeviceCodeResponse], None],
    *,
    poll_callback: Callable[[], None] | None = None,
    timeout: float = DEVICE_FLOW_TIMEOUT_SECONDS,
    cancel_event: threading.Event | None = None,
    endpoint_client: TokenEndpointClient | None = None,
) -> CachedToken:
    """Run the complete device flow with a display callback.

    Example:
        def show_code(code):
            print(code.message or f"Go to {code.verification_uri}, enter {code.user_code}")

        token = run_device_flow(profile, scopes, display_callback=show_code)
    """
    with DeviceFlow(profile, endpoint_client) as flow:
        device_code = flow.request_device_code(scopes, cancel_event=cancel_event)
        display_callback(device_code)
        return flow.poll_for_token(
            device_code,
            timeout=timeout,
            on_poll=poll_callback,
            cancel_event=cancel_event,
        )
