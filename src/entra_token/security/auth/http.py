"""HTTP layer shared by all OAuth flows.

TokenEndpointClient posts form-encoded requests to the authority and turns
responses into either a JSON dict or a typed error:

- ``error=`` JSON responses      -> AuthorityError(code, description), never retried
- transport failures and 5xx     -> retried with exponential backoff, then NetworkError
- cancellation event set         -> FlowCancelledError (checked before each attempt
                                    and while backing off)
"""

from __future__ import annotations

__all__ = ["TokenEndpointClient"]

import threading
import time
from typing import Any

import httpx

from entra_token.constants import (
    HTTP_RETRY_BACKOFF_MULTIPLIER,
    HTTP_RETRY_INITIAL_DELAY,
    HTTP_RETRY_MAX_ATTEMPTS,
    OAUTH_CLIENT_TIMEOUT_SECONDS,
)
from entra_token.exceptions import AuthenticationError, AuthorityError, FlowCancelledError, NetworkError
from entra_token.telemetry.system.system_logger import get_system_logger


class TokenEndpointClient:
    """Thin wrapper over httpx.Client with bounded retry.

    Usage:
        with TokenEndpointClient() as client:
            payload = client.post_form(profile.token_endpoint, {"grant_type": ...})

    Args:
        http_client: Optional httpx client (for testing); closed only if owned.
        timeout: Per-request timeout in seconds.
        max_attempts: Attempts per request, including the first.
        initial_delay: Backoff before the second attempt.
        backoff_multiplier: Factor applied to the delay after each retry.
    """

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        *,
        timeout: float = OAUTH_CLIENT_TIMEOUT_SECONDS,
        max_attempts: int = HTTP_RETRY_MAX_ATTEMPTS,
        initial_delay: float = HTTP_RETRY_INITIAL_DELAY,
        backoff_multiplier: float = HTTP_RETRY_BACKOFF_MULTIPLIER,
    ) -> None:
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._initial_delay = initial_delay
        self._backoff_multiplier = backoff_multiplier
        self._logger = get_system_logger()

    def __enter__(self) -> "TokenEndpointClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def post_form(
        self,
        url: str,
        data: dict[str, str],
        *,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """POST ``data`` as application/x-www-form-urlencoded and return the JSON body.

        Raises:
            AuthorityError: The authority answered with an OAuth2 error.
            NetworkError: Transport failures persisted through all retries.
            FlowCancelledError: ``cancel_event`` was set.
        """
        return self.request_json("POST", url, data=data, cancel_event=cancel_event, timeout=timeout)

    def request_json(
        self,
        method: str,
        url: str,
        *,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a request with bounded retry and decode the JSON response."""
        delay = self._initial_delay
        last_error: Exception | None = None
        request_headers = {"Accept": "application/json", **(headers or {})}

        for attempt in range(1, self._max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise FlowCancelledError("Request cancelled")

            try:
                response = self._client.request(
                    method,
                    url,
                    data=data,
                    params=params,
                    headers=request_headers,
                    timeout=timeout or self._timeout,
                )
            except httpx.TransportError as e:
                last_error = e
            else:
                if response.status_code < 500:
                    return self._decode(response)
                last_error = NetworkError(f"server error HTTP {response.status_code}")

            if attempt == self._max_attempts:
                break

            self._logger.warning(
                {
                    "event": "http_retry",
                    "url": url,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(last_error),
                    "message": f"Request to {url} failed ({last_error}); retrying in {delay:.1f}s",
                }
            )
            self._backoff(delay, cancel_event)
            delay *= self._backoff_multiplier

        raise NetworkError(
            f"Could not reach {url} after {self._max_attempts} attempts: {last_error}"
        ) from last_error

    def _backoff(self, delay: float, cancel_event: threading.Event | None) -> None:
        if cancel_event is None:
            time.sleep(delay)
        elif cancel_event.wait(delay):
            raise FlowCancelledError("Request cancelled")

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            if response.is_success:
                raise AuthenticationError(
                    f"Authority returned a non-JSON response (HTTP {response.status_code})"
                )
            raise AuthorityError(f"http_{response.status_code}", response.text[:200] or None)

        if "error" in payload:
            error = payload["error"]
            # Graph-style errors nest code/message in an object
            if isinstance(error, dict):
                raise AuthorityError(str(error.get("code", "error")), error.get("message"))
            raise AuthorityError(str(error), payload.get("error_description"))

        if not response.is_success:
            raise AuthorityError(f"http_{response.status_code}", response.text[:200] or None)

        return payload
