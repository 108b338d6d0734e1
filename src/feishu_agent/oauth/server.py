"""Local OAuth callback server and the interactive authorization flow.

Starts a temporary local HTTP server to receive the OAuth redirect with the
authorization code, then exchanges the code for a user token pair.
"""

from __future__ import annotations

import asyncio
import enum
import html
import logging
import secrets
import socket
import time
import webbrowser
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Thread
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from rich.console import Console

from ..errors import CsrfMismatchError, FeishuError, FeishuTimeoutError, OAuthError
from .storage import REFRESH_TOKEN, USER_ACCESS_TOKEN, TokenStore
from .client import OAuthClient, OAuthTokens, generate_state

if TYPE_CHECKING:
    from ..auth.manager import AuthManager

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
DEFAULT_PORT = 3000
DEFAULT_TIMEOUT = 300.0


class OAuthState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class CallbackResult:
    """Parameters received on the OAuth callback."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


class OAuthSession:
    """One authorization attempt.

    The outcome is a single-resolution future: the first of the callback
    handler or the deadline timer to settle it wins, later attempts are no-ops.
    """

    def __init__(
        self,
        state: str,
        redirect_uri: str,
        timeout: float,
        loop: asyncio.AbstractEventLoop,
    ):
        self.state = state
        self.redirect_uri = redirect_uri
        self.deadline = time.time() + timeout  # wall clock, for display
        self._loop = loop
        self._future: asyncio.Future[str] = loop.create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def result(self) -> str | FeishuError | None:
        """The captured code, the failure, or None while pending."""
        if not self._future.done() or self._future.cancelled():
            return None
        exc = self._future.exception()
        return exc if exc is not None else self._future.result()

    def verify_state(self, state: str | None) -> bool:
        if not state:
            return False
        # compare_digest only accepts ASCII str
        return secrets.compare_digest(
            self.state.encode("utf-8"), state.encode("utf-8", "surrogateescape")
        )

    def resolve(self, code: str) -> bool:
        if self._future.done():
            return False
        self._future.set_result(code)
        return True

    def fail(self, error: FeishuError) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    def submit(self, code: str | None = None, error: FeishuError | None = None) -> None:
        """Settle the session from another thread (the HTTP handler)."""
        try:
            if error is not None:
                self._loop.call_soon_threadsafe(self.fail, error)
            else:
                self._loop.call_soon_threadsafe(self.resolve, code)
        except RuntimeError:
            logger.debug("Callback arrived after the event loop closed")

    async def wait(self) -> str:
        return await self._future


class _CallbackHTTPServer(HTTPServer):
    session: OAuthSession | None = None


class OAuthCallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for the OAuth redirect."""

    server: _CallbackHTTPServer

    def log_message(self, format, *args):
        logger.debug("callback server: " + format, *args)

    def do_GET(self):
        """Handle GET request (OAuth callback)."""
        parsed = urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self._send_not_found()
            return

        session = self.server.session
        if session is None:
            self._send_error_page(503, "no_session", "No authorization is in progress.")
            return

        params = parse_qs(parsed.query)
        result = CallbackResult(
            code=params.get("code", [None])[0],
            state=params.get("state", [None])[0],
            error=params.get("error", [None])[0],
            error_description=params.get("error_description", [None])[0],
        )

        if result.error:
            session.submit(
                error=OAuthError(
                    f"Authorization error: {result.error_description or result.error}",
                    error_code=result.error,
                )
            )
            self._send_error_page(400, result.error, result.error_description)
            return

        if not result.code:
            session.submit(
                error=OAuthError("No authorization code received", error_code="no_code")
            )
            self._send_error_page(400, "no_code", "No authorization code received.")
            return

        # Checked before the code is handed over for exchange
        if not session.verify_state(result.state):
            session.submit(error=CsrfMismatchError())
            self._send_error_page(
                400, "state_mismatch", "State verification failed. Please try again."
            )
            return

        session.submit(code=result.code)
        self._send_success_page()

    def _send_html(self, status: int, body: str):
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _send_not_found(self):
        self.send_response(404)
        self.send_header("Content-Type", "text/plain")
        self.end_headers()
        self.wfile.write(b"Not found")

    def _send_success_page(self):
        """Send success HTML page that closes itself."""
        self._send_html(200, """
        <!DOCTYPE html>
        <html>
        <head>
            <title>Feishu Authorization Successful</title>
            <style>
                body {
                    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
                    display: flex;
                    justify-content: center;
                    align-items: center;
                    height: 100vh;
                    margin: 0;
                    background: #f0f4ff;
                }
                .container {
                    background: white;
                    padding: 40px 60px;
                    border-radius: 12px;
                    box-shadow: 0 10px 40px rgba(0,0,0,0.12);
                    text-align: center;
                }
                .checkmark { font-size: 64px; margin-bottom: 20px; color: #3370ff; }
                h1 { color: #333; margin-bottom: 10px; }
                p { color: #666; }
            </style>
        </head>
        <body>
            <div class="container">
                <div class="checkmark">&#10003;</div>
                <h1>Authorization Successful!</h1>
                <p>You can close this window and return to the terminal.</p>
            </div>
            <script>setTimeout(function () { window.close(); }, 5000);</script>
        </body>
        </html>
        """)

    def _send_error_page(self, status: int, error: str | None, description: str | None):
        """Send error HTML page."""
        self._send_html(status, f"""
        <!DOCTYPE html>
        <html>
        <head>
            <title>Feishu Authorization Failed</title>
            <style>
                body {{
                    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
                    display: flex;
                    justify-content: center;
                    align-items: center;
                    height: 100vh;
                    margin: 0;
                    background: #fff1f0;
                }}
                .container {{
                    background: white;
                    padding: 40px 60px;
                    border-radius: 12px;
                    box-shadow: 0 10px 40px rgba(0,0,0,0.12);
                    text-align: center;
                }}
                .error-icon {{ font-size: 64px; margin-bottom: 20px; color: #f54a45; }}
                h1 {{ color: #333; margin-bottom: 10px; }}
                p {{ color: #666; }}
                .error-code {{ font-family: monospace; background: #f5f5f5; padding: 4px 8px; border-radius: 4px; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="error-icon">&#10007;</div>
                <h1>Authorization Failed</h1>
                <p>{html.escape(description or 'An error occurred during authorization.')}</p>
                <p><span class="error-code">{html.escape(error or 'unknown_error')}</span></p>
                <p>You can close this window and check the terminal for details.</p>
            </div>
        </body>
        </html>
        """)


class OAuthCallbackServer:
    """Transient local server for the OAuth redirect.

    Usage:
        server = OAuthCallbackServer(port=3000)
        server.start(session)
        ...
        server.stop()  # safe to call more than once
    """

    def __init__(self, port: int = DEFAULT_PORT, host: str = "localhost"):
        self.port = port
        self.host = host
        self._server: _CallbackHTTPServer | None = None
        self._thread: Thread | None = None

    @property
    def callback_url(self) -> str:
        """Redirect URI to register in the Feishu developer console."""
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def _find_free_port(self) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            return s.getsockname()[1]

    def start(self, session: OAuthSession | None = None, find_free_port: bool = False) -> int:
        """Bind the listener and serve it from a background thread.

        Returns:
            The port the server is listening on
        """
        try:
            self._server = _CallbackHTTPServer((self.host, self.port), OAuthCallbackHandler)
        except OSError:
            if not find_free_port:
                raise
            self.port = self._find_free_port()
            self._server = _CallbackHTTPServer((self.host, self.port), OAuthCallbackHandler)

        self.port = self._server.server_address[1]
        self._server.session = session

        self._thread = Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Callback server listening on %s", self.callback_url)
        return self.port

    def attach(self, session: OAuthSession) -> None:
        if self._server is not None:
            self._server.session = session

    def stop(self):
        """Stop the callback server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            logger.debug("Callback server stopped")
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None


class OAuthFlow:
    """Interactive authorization-code grant, end to end.

    States: IDLE -> AWAITING_AUTHORIZATION -> EXCHANGING -> COMPLETE | FAILED.
    The local listener is stopped on every terminal transition.
    """

    def __init__(
        self,
        client: OAuthClient,
        *,
        port: int = DEFAULT_PORT,
        host: str = "localhost",
        timeout: float = DEFAULT_TIMEOUT,
        open_browser: bool = True,
        console: Console | None = None,
    ):
        self.client = client
        self.port = port
        self.host = host
        self.timeout = timeout
        self.open_browser = open_browser
        self.console = console or Console()
        self.status = OAuthState.IDLE
        self.session: OAuthSession | None = None
        self.server = OAuthCallbackServer(port=port, host=host)

    async def authorize(self) -> OAuthTokens:
        """Run the flow.

        Raises:
            OAuthError: If the user denies access or no code is returned
            CsrfMismatchError: If the callback state does not match
            FeishuTimeoutError: If no callback arrives before the deadline
            PlatformError, ProtocolError: If the code exchange fails
        """
        if self.status != OAuthState.IDLE:
            raise OAuthError("Authorization flow already used", error_code="flow_reused")

        try:
            session = self._begin()
            code = await self._wait_for_code(session)

            self.status = OAuthState.EXCHANGING
            self.console.print("\nAuthorization code received, exchanging for access token...")
            tokens = await self.client.exchange_code(code, session.redirect_uri)
        except BaseException:
            self.status = OAuthState.FAILED
            raise
        finally:
            await asyncio.to_thread(self.server.stop)

        self.status = OAuthState.COMPLETE
        return tokens

    def _begin(self) -> OAuthSession:
        loop = asyncio.get_running_loop()
        self.server.start()

        state = generate_state()
        session = OAuthSession(state, self.server.callback_url, self.timeout, loop)
        self.server.attach(session)
        self.session = session

        auth_url = self.client.get_authorization_url(session.redirect_uri, state)
        self.status = OAuthState.AWAITING_AUTHORIZATION

        self.console.print("Redirect URI (configure this in the Feishu developer console):")
        self.console.print(f"  {session.redirect_uri}\n", soft_wrap=True)
        self.console.print("Authorization URL:")
        self.console.print(f"  {auth_url}\n", soft_wrap=True)

        if self.open_browser:
            self._open_browser(auth_url)

        self.console.print("Waiting for authorization...")
        return session

    def _open_browser(self, url: str) -> None:
        try:
            opened = webbrowser.open(url)
        except webbrowser.Error as e:
            logger.warning("Could not open browser: %s", e)
            opened = False
        if not opened:
            self.console.print("Could not auto-open browser. Please visit the URL above manually.")

    async def _wait_for_code(self, session: OAuthSession) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(
            self.timeout,
            session.fail,
            FeishuTimeoutError(
                f"Authorization timed out after {self.timeout:g} seconds",
                operation="oauth authorization",
            ),
        )
        try:
            return await session.wait()
        finally:
            deadline.cancel()


async def run_oauth_flow(
    client: OAuthClient,
    auth_manager: "AuthManager | None" = None,
    store: TokenStore | None = None,
    port: int = DEFAULT_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    open_browser: bool = True,
    console: Console | None = None,
    host: str = "localhost",
) -> OAuthTokens:
    """Run the OAuth flow and hand the resulting tokens on.

    With an ``auth_manager`` the tokens are installed there (which persists
    them best effort); otherwise they are written to ``store`` directly.

    Raises:
        TokenStoreError: If writing to ``store`` fails
    """
    flow = OAuthFlow(
        client,
        port=port,
        host=host,
        timeout=timeout,
        open_browser=open_browser,
        console=console,
    )
    tokens = await flow.authorize()

    if auth_manager is not None:
        auth_manager.set_user_token(tokens.access_token, tokens.refresh_token, tokens.expires_in)
    elif store is not None:
        store.update(
            **{
                USER_ACCESS_TOKEN: tokens.access_token,
                REFRESH_TOKEN: tokens.refresh_token,
            }
        )
    return tokens
