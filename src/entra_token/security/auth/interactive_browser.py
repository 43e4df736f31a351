"""Interactive browser sign-in via a loopback redirect listener.

States: Idle -> LocalListenerStarted -> BrowserOpened -> AwaitingCallback
        -> CodeReceived -> Completed | Failed | TimedOut

A specialization of the authorization code + PKCE flow whose redirect target
is an HTTP listener bound on the loopback interface:

1. Bind the listener (ephemeral port, or the port of the profile's
   localhost redirect URI) BEFORE the browser opens, so a fast redirect
   can never hit a closed port.
2. Open the system browser at the authorization URL.
3. Accept exactly one callback carrying this attempt's state. Callbacks
   with another state get 400 and the listener keeps waiting; requests after
   the accepted callback get 410 Gone.
4. Exchange the code; the listener is shut down on success, failure,
   cancellation and timeout alike.

When no browser or display is available, BrowserUnavailableError is raised
before anything is opened so the caller can fall back to the device code flow.
"""

from __future__ import annotations

__all__ = [
    "InteractiveBrowserFlow",
    "InteractiveBrowserState",
    "LoopbackListener",
    "browser_available",
]

import http.server
import os
import sys
import threading
import time
import urllib.parse
import webbrowser
from enum import Enum
from typing import Callable

from entra_token.config import OAuthFlow, Profile
from entra_token.constants import INTERACTIVE_TIMEOUT_SECONDS, LOOPBACK_HOST
from entra_token.exceptions import (
    AuthenticationError,
    BrowserUnavailableError,
    EntraTokenError,
    FlowCancelledError,
    FlowTimeoutError,
)
from entra_token.security.auth.authorization_code import AuthorizationCodeFlow, parse_callback
from entra_token.security.auth.flow_state import FlowStateMachine
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.auth.token_parser import CachedToken
from entra_token.telemetry.system.system_logger import get_system_logger


class InteractiveBrowserState(Enum):
    IDLE = "Idle"
    LOCAL_LISTENER_STARTED = "LocalListenerStarted"
    BROWSER_OPENED = "BrowserOpened"
    AWAITING_CALLBACK = "AwaitingCallback"
    CODE_RECEIVED = "CodeReceived"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


_S = InteractiveBrowserState
_TRANSITIONS = {
    _S.IDLE: {_S.LOCAL_LISTENER_STARTED, _S.FAILED},
    _S.LOCAL_LISTENER_STARTED: {_S.BROWSER_OPENED, _S.FAILED},
    _S.BROWSER_OPENED: {_S.AWAITING_CALLBACK, _S.FAILED},
    _S.AWAITING_CALLBACK: {_S.CODE_RECEIVED, _S.FAILED, _S.TIMED_OUT},
    _S.CODE_RECEIVED: {_S.COMPLETED, _S.FAILED},
}

_SUCCESS_PAGE = """<html>
<head><title>entra-token - Sign-in complete</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>Sign-in complete</h1>
    <p>You can close this window and return to the terminal.</p>
</body>
</html>
"""

_ERROR_PAGE = """<html>
<head><title>entra-token - Sign-in failed</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>Sign-in failed</h1>
    <p>{message}</p>
</body>
</html>
"""


def browser_available() -> bool:
    """Best-effort check that a browser can be opened from this process."""
    if os.environ.get("BROWSER"):
        return True
    if sys.platform.startswith("linux") and not (
        os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")
    ):
        return False
    try:
        webbrowser.get()
    except webbrowser.Error:
        return False
    return True


class _CallbackHandler(http.server.BaseHTTPRequestHandler):
    """Hands each GET to the owning LoopbackListener."""

    server: "_LoopbackServer"

    def do_GET(self) -> None:
        self.server.listener._handle(self)

    def log_message(self, format: str, *args: object) -> None:
        """Suppress default stderr logging."""


class _LoopbackServer(http.server.HTTPServer):
    listener: "LoopbackListener"


class LoopbackListener:
    """Single-use HTTP listener for the OAuth redirect.

    Args:
        expected_state: ``state`` generated for this attempt. Only a callback
            carrying it is accepted. The flow re-validates it.
        host: Interface to bind (loopback only).
        port: Port to bind; 0 selects an ephemeral port.
        callback_path: Path the redirect is expected on.
    """

    def __init__(
        self,
        expected_state: str,
        *,
        host: str = LOOPBACK_HOST,
        port: int = 0,
        callback_path: str = "/",
    ) -> None:
        self._expected_state = expected_state
        self._host = host
        self._requested_port = port
        self._callback_path = callback_path or "/"
        self._server: _LoopbackServer | None = None
        self._thread: threading.Thread | None = None
        self._received = threading.Event()
        self._lock = threading.Lock()
        self._params: dict[str, str] | None = None

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Listener not started")
        return self._server.server_address[1]

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def start(self) -> None:
        """Bind the socket and start serving in a background thread."""
        self._server = _LoopbackServer((self._host, self._requested_port), _CallbackHandler)
        self._server.listener = self
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="entra-token-loopback",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Shut the server down and release the port. Idempotent."""
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def __enter__(self) -> "LoopbackListener":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    def wait_for_callback(
        self,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, str]:
        """Block until the callback arrives.

        Raises:
            FlowTimeoutError: No callback within ``timeout`` seconds.
            FlowCancelledError: ``cancel_event`` was set.
        """
        deadline = time.monotonic() + timeout
        while not self._received.is_set():
            if cancel_event is not None and cancel_event.is_set():
                raise FlowCancelledError("Browser sign-in cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FlowTimeoutError(f"No sign-in response received within {timeout:.0f} seconds")
            self._received.wait(min(remaining, 0.2))

        if self._params is None:
            raise AuthenticationError("Loopback listener signalled a callback without parameters")
        return dict(self._params)

    def _handle(self, request: http.server.BaseHTTPRequestHandler) -> None:
        parsed = urllib.parse.urlparse(request.path)
        params = parse_callback(request.path)

        with self._lock:
            if self._received.is_set():
                self._respond(request, 410, _ERROR_PAGE.format(message="This sign-in request was already completed."))
                return

            is_callback = parsed.path == self._callback_path and ("code" in params or "error" in params)
            if not is_callback:
                self._respond(request, 404, _ERROR_PAGE.format(message="Not found."))
                return

            foreign = params.get("state") != self._expected_state
            if not foreign:
                self._params = params
                self._received.set()

        if foreign:
            get_system_logger().warning(
                {"event": "callback_state_mismatch", "message": "Ignored a sign-in redirect for another request"}
            )
            self._respond(request, 400, _ERROR_PAGE.format(message="State mismatch; sign-in rejected."))
        elif "error" in params:
            message = params.get("error_description") or params["error"]
            self._respond(request, 400, _ERROR_PAGE.format(message=_escape(message)))
        else:
            self._respond(request, 200, _SUCCESS_PAGE)

    @staticmethod
    def _respond(request: http.server.BaseHTTPRequestHandler, status: int, body: str) -> None:
        request.send_response(status)
        request.send_header("Content-Type", "text/html; charset=utf-8")
        request.send_header("Connection", "close")
        request.end_headers()
        request.wfile.write(body.encode("utf-8"))


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _loopback_target(redirect_uri: str | None) -> tuple[str, int, str]:
    """(redirect host, port, path) derived from a localhost redirect URI."""
    if redirect_uri:
        parsed = urllib.parse.urlparse(redirect_uri)
        if parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1"):
            return parsed.hostname, parsed.port or 0, parsed.path or "/"
    return "localhost", 0, "/"


class InteractiveBrowserFlow:
    """Browser sign-in with a loopback redirect listener.

    Usage:
        with InteractiveBrowserFlow(profile) as flow:
            token = flow.acquire(scopes, timeout=300)
    """

    def __init__(
        self,
        profile: Profile,
        endpoint_client: TokenEndpointClient | None = None,
        *,
        open_browser: Callable[[str], bool] | None = None,
        is_browser_available: Callable[[], bool] = browser_available,
    ) -> None:
        self._profile = profile
        self._client = endpoint_client or TokenEndpointClient()
        self._owns_client = endpoint_client is None
        self._open_browser = open_browser or webbrowser.open
        self._is_browser_available = is_browser_available
        self._code_flow = AuthorizationCodeFlow(
            profile, self._client, flow_kind=OAuthFlow.INTERACTIVE_BROWSER
        )
        self.listener: LoopbackListener | None = None
        self.machine = FlowStateMachine("InteractiveBrowser", InteractiveBrowserState.IDLE, _TRANSITIONS)

    def __enter__(self) -> "InteractiveBrowserFlow":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self.listener is not None:
            self.listener.stop()
        if self._owns_client:
            self._client.close()

    @property
    def state(self) -> InteractiveBrowserState:
        return self.machine.state

    def acquire(
        self,
        scopes: list[str],
        *,
        timeout: float = INTERACTIVE_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
        on_url: Callable[[str], None] | None = None,
    ) -> CachedToken:
        """Sign the user in through the system browser.

        Args:
            scopes: Scopes to request.
            timeout: Seconds to wait for the redirect.
            cancel_event: Set to abort the wait.
            on_url: Called with the authorization URL once the browser opened
                (lets the CLI print it as a fallback link).

        Raises:
            BrowserUnavailableError: No browser/display; nothing was started.
            FlowTimeoutError: No redirect within ``timeout``.
            FlowCancelledError: Cancelled via event or Ctrl-C.
            StateMismatchError: Accepted redirect failed state validation.
            AuthorityError: Authority returned an error.
        """
        logger = get_system_logger()

        if not self._is_browser_available():
            self.machine.transition(InteractiveBrowserState.FAILED)
            raise BrowserUnavailableError("No browser or display available for interactive sign-in")

        redirect_host, port, path = _loopback_target(self._profile.redirect_uri)
        self.listener = LoopbackListener(
            self._code_flow.expected_state,
            port=port,
            callback_path=path,
        )

        try:
            self.listener.start()
            self.machine.transition(InteractiveBrowserState.LOCAL_LISTENER_STARTED)

            redirect_uri = f"http://{redirect_host}:{self.listener.port}{path if path != '/' else ''}"
            url = self._code_flow.build_authorization_url(scopes, redirect_uri)

            try:
                opened = self._open_browser(url)
            except webbrowser.Error as e:
                raise BrowserUnavailableError(f"The system browser could not be opened: {e}") from e
            if not opened:
                raise BrowserUnavailableError("The system browser could not be opened")
            self.machine.transition(InteractiveBrowserState.BROWSER_OPENED)
            logger.debug({"event": "browser_opened", "port": self.listener.port})
            if on_url:
                on_url(url)

            self._code_flow.await_callback()
            self.machine.transition(InteractiveBrowserState.AWAITING_CALLBACK)
            params = self.listener.wait_for_callback(timeout, cancel_event)
            self.listener.stop()

            code = self._code_flow.handle_callback(params)
            self.machine.transition(InteractiveBrowserState.CODE_RECEIVED)

            token = self._code_flow.exchange_code(code, cancel_event=cancel_event)
            self.machine.transition(InteractiveBrowserState.COMPLETED)
            return token

        except KeyboardInterrupt:
            self.machine.fail_if_active(InteractiveBrowserState.FAILED)
            raise FlowCancelledError("Browser sign-in cancelled") from None
        except FlowTimeoutError:
            self.machine.fail_if_active(InteractiveBrowserState.TIMED_OUT)
            raise
        except EntraTokenError:
            self.machine.fail_if_active(InteractiveBrowserState.FAILED)
            raise
        except OSError as e:
            self.machine.fail_if_active(InteractiveBrowserState.FAILED)
            raise AuthenticationError(f"Loopback redirect listener failed: {e}") from e
        finally:
            self.listener.stop()
