"""Tests for the loopback callback listener over a real socket."""

from __future__ import annotations

import socket
from http.client import HTTPConnection
from typing import Iterator

import pytest

from conftest import free_port
from cloudlogin.auth.callback_server import OAuthCallbackServer, parse_callback_params
from cloudlogin.exceptions import CallbackServerInUseError
from cloudlogin.models import CallbackResult

PATH = "/gateway/v1/callback-vscode-docs"


@pytest.fixture()
def server() -> Iterator[OAuthCallbackServer]:
    srv = OAuthCallbackServer(port=free_port())
    yield srv
    srv.stop()


def _get(port: int, path: str, method: str = "GET") -> tuple[int, dict[str, str], str]:
    conn = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request(method, path)
        response = conn.getresponse()
        body = response.read().decode("utf-8")
        return response.status, {k.lower(): v for k, v in response.getheaders()}, body
    finally:
        conn.close()


class TestParseCallbackParams:
    def test_code_and_state(self) -> None:
        result = parse_callback_params({"code": ["abc"], "state": ["xyz"]})
        assert result == CallbackResult(success=True, code="abc", state="xyz")

    def test_error_wins_over_code(self) -> None:
        result = parse_callback_params(
            {"code": ["abc"], "error": ["access_denied"], "error_description": ["User said no"]}
        )
        assert result.success is False
        assert result.code is None
        assert result.error is not None
        assert result.error.error == "access_denied"
        assert result.error.error_description == "User said no"

    def test_missing_code(self) -> None:
        result = parse_callback_params({"state": ["xyz"]})
        assert result.success is False
        assert result.state == "xyz"
        assert result.error is not None
        assert result.error.error == "missing_code"
        assert result.error.error_description == "No authorization code provided in callback"


class TestOAuthCallbackServer:
    def test_callback_url(self) -> None:
        srv = OAuthCallbackServer(port=12345)
        assert srv.callback_url == f"http://127.0.0.1:12345{PATH}"
        assert srv.port == 12345
        assert srv.callback_path == PATH

    def test_default_port(self) -> None:
        assert OAuthCallbackServer().port == 26636

    def test_start_stop_idempotent(self, server: OAuthCallbackServer) -> None:
        assert server.is_running() is False
        server.start()
        server.start()
        assert server.is_running() is True
        server.stop()
        server.stop()
        assert server.is_running() is False

    def test_success_delivers_and_renders(self, server: OAuthCallbackServer) -> None:
        received: list[CallbackResult] = []
        server.on_callback(received.append)
        server.start()

        status, headers, body = _get(server.port, f"{PATH}?code=abc&state=xyz")

        assert status == 200
        assert headers["content-type"].startswith("text/html")
        assert headers["cache-control"] == "no-store"
        assert "Authentication Complete" in body
        assert "cloudlogin://auth/callback?success=true" in body
        assert received == [CallbackResult(success=True, code="abc", state="xyz")]

    def test_error_renders_escaped_description(self, server: OAuthCallbackServer) -> None:
        received: list[CallbackResult] = []
        server.on_callback(received.append)
        server.start()

        status, _, body = _get(
            server.port,
            f"{PATH}?error=access_denied&error_description=%3Cb%3Eno%3C%2Fb%3E&state=xyz",
        )

        assert status == 400
        assert "Authentication Failed" in body
        assert "&lt;b&gt;no&lt;/b&gt;" in body
        assert "<b>no</b>" not in body
        assert "access_denied" in body
        assert "cloudlogin://auth/callback?success=false" in body
        assert received[0].error is not None
        assert received[0].error.error == "access_denied"

    def test_missing_code_is_400(self, server: OAuthCallbackServer) -> None:
        received: list[CallbackResult] = []
        server.on_callback(received.append)
        server.start()

        status, _, _ = _get(server.port, f"{PATH}?state=xyz")

        assert status == 400
        assert received[0].error is not None
        assert received[0].error.error == "missing_code"

    def test_unknown_path_is_404(self, server: OAuthCallbackServer) -> None:
        received: list[CallbackResult] = []
        server.on_callback(received.append)
        server.start()

        status, _, body = _get(server.port, "/favicon.ico")

        assert status == 404
        assert body == "Not Found"
        assert received == []

    def test_other_methods_are_405(self, server: OAuthCallbackServer) -> None:
        server.start()
        status, _, body = _get(server.port, f"{PATH}?code=abc", method="POST")
        assert status == 405
        assert body == "Method Not Allowed"

    def test_handler_exception_still_answers(self, server: OAuthCallbackServer) -> None:
        def broken(result: CallbackResult) -> None:
            raise RuntimeError("boom")

        server.on_callback(broken)
        server.start()

        status, _, _ = _get(server.port, f"{PATH}?code=abc&state=xyz")
        assert status == 200

    def test_port_in_use(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("127.0.0.1", 0))
            holder.listen(1)
            port = holder.getsockname()[1]

            srv = OAuthCallbackServer(port=port)
            with pytest.raises(CallbackServerInUseError, match=f"Port {port} is already in use"):
                srv.start()
            assert srv.is_running() is False

    def test_keeps_serving_across_callbacks(self, server: OAuthCallbackServer) -> None:
        received: list[CallbackResult] = []
        server.on_callback(received.append)
        server.start()

        _get(server.port, f"{PATH}?code=one&state=s")
        _get(server.port, f"{PATH}?code=two&state=s")

        assert [r.code for r in received] == ["one", "two"]
