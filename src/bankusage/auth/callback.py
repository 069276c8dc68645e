"""
Local callback listener for the browser login.

Binds a loopback-only HTTP server, waits for the provider to redirect the
browser to ``/callback?code=...&state=...``, and hands the code to the single
waiting coroutine. Only a request whose ``state`` matches completes the wait;
everything else gets the failure page and the wait continues.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from bankusage.errors import CallbackTimeoutError, ExternalServiceError

logger = logging.getLogger("bankusage.auth.callback")

CALLBACK_PATH = "/callback"

SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>bankusage - Login Successful</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, sans-serif;
               display: flex; justify-content: center; align-items: center;
               height: 100vh; margin: 0; background: #f0fdf4; }
        .card { background: white; padding: 40px; border-radius: 12px;
                box-shadow: 0 4px 6px rgba(0,0,0,0.1); text-align: center; }
        h1 { color: #16a34a; margin-bottom: 10px; }
        p { color: #666; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Login Successful!</h1>
        <p>You can close this window and return to the app.</p>
    </div>
</body>
</html>
"""

FAILURE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>bankusage - Login Failed</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, sans-serif;
               display: flex; justify-content: center; align-items: center;
               height: 100vh; margin: 0; background: #fef2f2; }
        .card { background: white; padding: 40px; border-radius: 12px;
                box-shadow: 0 4px 6px rgba(0,0,0,0.1); text-align: center; }
        h1 { color: #dc2626; margin-bottom: 10px; }
        p { color: #666; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Login Failed</h1>
        <p>Invalid state parameter. Please try again.</p>
    </div>
</body>
</html>
"""


class _CallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for the OAuth2 redirect."""

    server: _CallbackServer

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self.send_error(404)
            return

        params = parse_qs(parsed.query)
        code = params.get("code", [""])[0]
        state = params.get("state", [""])[0]

        listener = self.server.listener
        if listener._offer(code, state):
            self._send_page(listener.success_html)
        else:
            self._send_page(listener.failure_html)

    def _send_page(self, html: str) -> None:
        body = html.encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        """Route request logs to the module logger."""
        logger.debug("callback request: " + format, *args)


class _CallbackServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_port = False

    def __init__(self, address: tuple[str, int], listener: CallbackListener) -> None:
        self.listener = listener
        super().__init__(address, _CallbackHandler)


class CallbackListener:
    """Transient loopback HTTP endpoint that captures one authorization code.

    Usage::

        listener = CallbackListener(port=8085, timeout=300)
        code = await listener.await_callback(expected_state=request.csrf_state)

    The listener is started on demand by ``await_callback`` and is always
    stopped (socket released) when the wait ends, whatever the outcome.
    """

    def __init__(
        self,
        port: int = 8085,
        *,
        host: str = "127.0.0.1",
        timeout: float = 300.0,
        success_html: str = SUCCESS_HTML,
        failure_html: str = FAILURE_HTML,
    ) -> None:
        self.host = host
        self.timeout = timeout
        self.success_html = success_html
        self.failure_html = failure_html
        self._port = port
        # Guards bind/unbind and the single-slot handoff below.
        self._lock = threading.Lock()
        self._server: _CallbackServer | None = None
        self._thread: threading.Thread | None = None
        self._expected_state: str | None = None
        self._code: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._waiter: asyncio.Future[str] | None = None

    @property
    def port(self) -> int:
        """The bound port while running, otherwise the configured one."""
        server = self._server
        if server is not None:
            return server.server_address[1]
        return self._port

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def _arm(self, expected_state: str) -> None:
        # Caller holds the lock.
        if self._expected_state != expected_state:
            self._expected_state = expected_state
            self._code = None

    def start(self, expected_state: str | None = None) -> None:
        """Bind the listener and serve in a background thread.

        Passing ``expected_state`` arms the listener before the browser is
        opened, so a fast redirect is not lost.

        Raises:
            ExternalServiceError: If the port cannot be bound (e.g. another
                login attempt is already listening).
        """
        with self._lock:
            if expected_state:
                self._arm(expected_state)
            if self._server is not None:
                return
            try:
                server = _CallbackServer((self.host, self._port), self)
            except OSError as e:
                raise ExternalServiceError(
                    f"Could not start OAuth callback listener on {self.host}:{self._port}: {e}"
                ) from e
            self._server = server
            self._thread = threading.Thread(
                target=server.serve_forever,
                kwargs={"poll_interval": 0.1},
                name="oauth-callback",
                daemon=True,
            )
            self._thread.start()
        logger.info("OAuth callback listener on %s", self.redirect_uri)

    def stop(self) -> None:
        """Stop serving and release the socket. Safe to call repeatedly.

        Blocks until the serving thread exits; async callers run it in a
        worker thread.
        """
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        logger.debug("OAuth callback listener stopped")

    def _offer(self, code: str, state: str) -> bool:
        """Called from the HTTP thread. Returns whether ``state`` matched.

        The first matching request fills the slot and wakes the waiter;
        later ones are acknowledged but change nothing.
        """
        with self._lock:
            expected = self._expected_state
            if not expected or not state or not secrets.compare_digest(state.encode(), expected.encode()):
                logger.warning("OAuth callback rejected: state mismatch")
                return False
            if not code:
                logger.warning("OAuth callback rejected: no authorization code")
                return False
            if self._code is not None:
                return True
            self._code = code
            if self._waiter is not None and self._loop is not None:
                self._loop.call_soon_threadsafe(_resolve, self._waiter, code)
        return True

    async def await_callback(self, expected_state: str) -> str:
        """Wait for the browser redirect carrying ``expected_state``.

        Returns:
            The authorization code.

        Raises:
            CallbackTimeoutError: If no matching callback arrives in time.
            ExternalServiceError: If the listener cannot be bound or is
                already serving another wait.
        """
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[str] = loop.create_future()
        with self._lock:
            if self._waiter is not None:
                raise ExternalServiceError("OAuth callback listener is already waiting for a login")
            self._arm(expected_state)
            self._loop = loop
            self._waiter = waiter
            if self._code is not None:
                waiter.set_result(self._code)

        try:
            self.start()
            try:
                code = await asyncio.wait_for(waiter, timeout=self.timeout)
            except asyncio.TimeoutError:
                raise CallbackTimeoutError(
                    f"OAuth callback timeout ({self.timeout:g} seconds)"
                ) from None
            logger.info("OAuth callback received")
            return code
        finally:
            with self._lock:
                self._waiter = None
                self._loop = None
                self._expected_state = None
                self._code = None
            await asyncio.to_thread(self.stop)


def _resolve(waiter: asyncio.Future[str], code: str) -> None:
    if not waiter.done():
        waiter.set_result(code)
