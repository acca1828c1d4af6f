"""Loopback HTTP listener receiving the authorization redirect.

:class:`OAuthCallbackServer` binds ``127.0.0.1`` on the fixed port registered
with the identity provider and serves from a daemon thread. Each GET on the
callback path is parsed into a :class:`~cloudlogin.models.CallbackResult`,
handed to the registered handler, and answered with a small HTML page that
bounces the browser to the ``cloudlogin://`` URI with ``success=true`` or
``success=false``.

The listener's lifetime is independent of any single flow: it keeps serving
after a flow times out so that a late browser completion can still be
matched against the persisted PKCE state.
"""

from __future__ import annotations

import errno
import html
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

from cloudlogin.auth.endpoints import (
    CALLBACK_HOST,
    CALLBACK_PATH,
    CALLBACK_SERVER_PORT,
    EXTERNAL_CALLBACK_URI,
)
from cloudlogin.exceptions import CallbackServerError, CallbackServerInUseError
from cloudlogin.models import CallbackResult, OAuthError

logger = logging.getLogger(__name__)

CallbackHandler = Callable[[CallbackResult], None]

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
           display: flex; justify-content: center; align-items: center; height: 100vh;
           margin: 0; background: #f5f5f5; }}
    .container {{ text-align: center; padding: 40px; background: white;
                 border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
    .details {{ margin-top: 20px; font-family: monospace; font-size: 12px; color: #666; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>{title}</h1>
    <p>{message}</p>
    {details}
    <p><a href="{redirect}">Return to cloudlogin</a></p>
  </div>
  <script>window.location.href = "{redirect}";</script>
</body>
</html>
"""


def _render_page(success: bool, error: Optional[str] = None, description: Optional[str] = None) -> str:
    redirect = f"{EXTERNAL_CALLBACK_URI}?success={'true' if success else 'false'}"
    if success:
        return _PAGE_TEMPLATE.format(
            title="Authentication Complete",
            message="You can close this window and return to your terminal.",
            details="",
            redirect=redirect,
        )
    return _PAGE_TEMPLATE.format(
        title="Authentication Failed",
        message=html.escape(description or "An error occurred during authentication."),
        details=f'<div class="details">Error: {html.escape(error or "unknown_error")}</div>',
        redirect=redirect,
    )


def parse_callback_params(params: dict[str, list[str]]) -> CallbackResult:
    """Turn redirect query parameters into a :class:`CallbackResult`.

    ``error`` wins over ``code``; a redirect with neither is reported as a
    ``missing_code`` failure.
    """

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    state = first("state")
    error = first("error")
    if error:
        return CallbackResult(
            success=False,
            state=state,
            error=OAuthError(
                error=error,
                error_description=first("error_description"),
                error_uri=first("error_uri"),
            ),
        )
    code = first("code")
    if not code:
        return CallbackResult(
            success=False,
            state=state,
            error=OAuthError(
                error="missing_code",
                error_description="No authorization code provided in callback",
            ),
        )
    return CallbackResult(success=True, code=code, state=state)


class _CallbackHTTPServer(ThreadingHTTPServer):
    # Non-daemon request threads so server_close() waits for in-flight responses.
    daemon_threads = False
    block_on_close = True

    def __init__(self, address: tuple[str, int], owner: OAuthCallbackServer) -> None:
        self.owner = owner
        super().__init__(address, _CallbackRequestHandler)


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        owner = self.server.owner
        parsed = urlparse(self.path)
        if not parsed.path.startswith(owner.callback_path):
            self._send_text(404, "Not Found")
            return

        result = parse_callback_params(parse_qs(parsed.query))
        owner._deliver(result)

        if result.success:
            self._send_html(200, _render_page(True))
        elif result.error is None:
            self._send_html(400, _render_page(False))
        else:
            self._send_html(
                400,
                _render_page(False, result.error.error, result.error.error_description),
            )

    def do_POST(self) -> None:
        self._send_text(405, "Method Not Allowed")

    do_PUT = do_POST
    do_DELETE = do_POST
    do_PATCH = do_POST
    do_HEAD = do_POST
    do_OPTIONS = do_POST

    def _send_text(self, status: int, message: str) -> None:
        body = message.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_html(self, status: int, page: str) -> None:
        body = page.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Cache-Control", "no-store")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("callback listener: " + format, *args)


class OAuthCallbackServer:
    """Persistent loopback listener for authorization redirects.

    Args:
        port: TCP port to bind on ``127.0.0.1``.
        callback_path: Path prefix the identity provider redirects to.

    Example::

        server = OAuthCallbackServer()
        server.on_callback(service.handle_callback)
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        port: int = CALLBACK_SERVER_PORT,
        callback_path: str = CALLBACK_PATH,
    ) -> None:
        self._port = port
        self._callback_path = callback_path
        self._handler: Optional[CallbackHandler] = None
        self._server: Optional[_CallbackHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        return self._port

    @property
    def callback_path(self) -> str:
        return self._callback_path

    @property
    def callback_url(self) -> str:
        return f"http://{CALLBACK_HOST}:{self._port}{self._callback_path}"

    def is_running(self) -> bool:
        return self._server is not None

    def on_callback(self, handler: CallbackHandler) -> None:
        """Register the single result handler, replacing any previous one."""
        self._handler = handler

    def start(self) -> None:
        """Bind and start serving. A no-op if already running.

        Raises:
            CallbackServerInUseError: If another process already listens on
                the port.
            CallbackServerError: For any other bind failure.
        """
        with self._lock:
            if self._server is not None:
                return
            if self._is_port_in_use():
                raise CallbackServerInUseError(
                    f"Port {self._port} is already in use. Another instance may be running."
                )
            try:
                server = _CallbackHTTPServer((CALLBACK_HOST, self._port), self)
            except OSError as exc:
                if exc.errno == errno.EADDRINUSE:
                    raise CallbackServerInUseError(
                        f"Port {self._port} is already in use."
                    ) from exc
                raise CallbackServerError(
                    f"Could not start callback listener on port {self._port}: {exc}"
                ) from exc

            self._server = server
            self._thread = threading.Thread(
                target=server.serve_forever,
                name="cloudlogin-callback-listener",
                daemon=True,
            )
            self._thread.start()
            logger.info("Callback listener started at %s", self.callback_url)

    def stop(self) -> None:
        """Stop serving after in-flight requests finish. Idempotent."""
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=2.0)
        logger.info("Callback listener on port %d stopped", self._port)

    def _deliver(self, result: CallbackResult) -> None:
        handler = self._handler
        if handler is None:
            logger.debug("Callback received with no handler registered")
            return
        try:
            handler(result)
        except Exception:
            logger.exception("Callback handler raised")

    def _is_port_in_use(self) -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((CALLBACK_HOST, self._port))
        except OSError as exc:
            return exc.errno == errno.EADDRINUSE
        finally:
            sock.close()
        return False
