"""One-shot loopback OAuth callback server."""

from __future__ import annotations

import asyncio
import html
import socket
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable

from loguru import logger

from codex_quota.config.constants import (
    CALLBACK_HOST,
    CALLBACK_PATH,
    CALLBACK_PORT,
    ERROR_HTML_TEMPLATE,
    OAUTH_TIMEOUT_SEC,
    PRIMARY_CMD,
    SUCCESS_HTML,
)
from codex_quota.errors import AuthCancelledError, AuthDeniedError, AuthTimeoutError, PortBusyError

CallbackResult = tuple[str, str]


def port_busy_message(port: int = CALLBACK_PORT) -> str:
    return f"Port {port} is in use. Close other {PRIMARY_CMD} instances and retry."


def check_port_available(port: int = CALLBACK_PORT, host: str = CALLBACK_HOST) -> bool:
    """Probe whether the callback port can be bound right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        try:
            probe.bind((host, port))
        except OSError:
            return False
    return True


class _OAuthHandler(BaseHTTPRequestHandler):
    """Local callback HTTP handler."""

    server_version = "CodexQuotaOAuth/1.0"

    def _reply(self, status: int, body: str, content_type: str = "text/html; charset=utf-8") -> None:
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(data)
        self.close_connection = True

    def _fail(self, status: int, page_message: str, error: Exception) -> None:
        self._reply(status, ERROR_HTML_TEMPLATE.format(message=html.escape(page_message)))
        self.server.finish(error)

    def do_GET(self) -> None:  # noqa: N802
        url = urllib.parse.urlparse(self.path)
        if url.path != CALLBACK_PATH:
            self._reply(404, "Not Found", content_type="text/plain; charset=utf-8")
            return

        qs = urllib.parse.parse_qs(url.query)
        code = qs.get("code", [None])[0]
        state = qs.get("state", [None])[0]
        error = qs.get("error", [None])[0]
        error_description = qs.get("error_description", [None])[0]

        if error:
            message = error_description or error
            self._reply(200, ERROR_HTML_TEMPLATE.format(message=html.escape(message)))
            self.server.finish(AuthDeniedError(f"OAuth error: {message}"))
            return
        if not code:
            self._fail(400, "Missing authorization code", AuthDeniedError("Missing authorization code in callback"))
            return
        if not state:
            self._fail(400, "Missing state parameter", AuthDeniedError("Missing state parameter in callback"))
            return
        if state != self.server.expected_state:
            self._fail(
                400,
                "State mismatch - possible CSRF attack",
                AuthDeniedError("State mismatch. Possible CSRF attack."),
            )
            return

        self._reply(200, SUCCESS_HTML)
        self.server.finish((code, state))

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
        logger.debug("callback server: " + format, *args)


class CallbackServer(HTTPServer):
    """Accepts callbacks until the first one that settles the flow."""

    def __init__(
        self,
        expected_state: str,
        on_result: Callable[[CallbackResult | Exception], None],
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
    ):
        super().__init__((host, port), _OAuthHandler)
        self.expected_state = expected_state
        self.on_result = on_result
        self.settled = False

    @property
    def port(self) -> int:
        return self.server_address[1]

    def finish(self, result: CallbackResult | Exception) -> None:
        if self.settled:
            return
        self.settled = True
        self.on_result(result)


def start_callback_server(
    expected_state: str,
    on_result: Callable[[CallbackResult | Exception], None],
    host: str = CALLBACK_HOST,
    port: int = CALLBACK_PORT,
) -> CallbackServer:
    """Bind and serve in a daemon thread; raises ``PortBusyError`` if the port is taken."""
    try:
        server = CallbackServer(expected_state, on_result, host=host, port=port)
    except OSError as exc:
        raise PortBusyError(port_busy_message(port)) from exc
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


async def _wait_async(
    expected_state: str,
    timeout: float,
    host: str,
    port: int,
    on_ready: Callable[[CallbackServer], None] | None,
) -> CallbackResult:
    loop = asyncio.get_running_loop()
    future: asyncio.Future[CallbackResult] = loop.create_future()

    def _settle(result: CallbackResult | Exception) -> None:
        def _apply() -> None:
            if future.done():
                return
            if isinstance(result, Exception):
                future.set_exception(result)
            else:
                future.set_result(result)

        loop.call_soon_threadsafe(_apply)

    server = start_callback_server(expected_state, _settle, host=host, port=port)
    try:
        if on_ready:
            on_ready(server)
        return await asyncio.wait_for(future, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise AuthTimeoutError(
            f"Authentication timed out after {OAUTH_TIMEOUT_SEC // 60} minutes. "
            f"Run '{PRIMARY_CMD} codex add' to try again."
        ) from exc
    finally:
        server.shutdown()
        server.server_close()


def wait_for_callback(
    expected_state: str,
    timeout: float = OAUTH_TIMEOUT_SEC,
    host: str = CALLBACK_HOST,
    port: int = CALLBACK_PORT,
    on_ready: Callable[[CallbackServer], None] | None = None,
) -> CallbackResult:
    """Block until one valid callback arrives and return ``(code, state)``.

    Ctrl+C closes the server and raises ``AuthCancelledError``.
    """
    try:
        return asyncio.run(_wait_async(expected_state, timeout, host, port, on_ready))
    except KeyboardInterrupt as exc:
        raise AuthCancelledError("Authentication cancelled by user.") from exc
