"""Shared test fixtures for cloudlogin.

Provides isolated config environments, in-memory secret storage, a
controllable clock, canned token-endpoint responses, and a CLI runner.
These fixtures are automatically discovered by pytest and available to
all test modules without explicit imports.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

from cloudlogin.auth.secret_store import MemorySecretStorage
from cloudlogin.models import OAuthTokens
from cloudlogin.output import OutputFormat, OutputManager, reset_output, set_output


T0 = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager and package log handlers after every test.

    The OutputManager and the CLI's log handler cache references to
    sys.stdout/sys.stderr. When Typer's CliRunner redirects those streams
    and the test finishes, the cached references become stale ("I/O
    operation on closed file").
    """
    yield
    reset_output()
    package_logger = logging.getLogger("cloudlogin")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Forces XDG path resolution, points XDG_CONFIG_HOME and XDG_DATA_HOME at
    subdirectories of tmp_path, and clears CLOUDLOGIN_ENVIRONMENT.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setattr("cloudlogin.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("CLOUDLOGIN_ENVIRONMENT", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Storage and time
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_storage() -> MemorySecretStorage:
    return MemorySecretStorage()


class FakeClock:
    """Settable stand-in for :func:`cloudlogin.auth.endpoints.utcnow`."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_tokens(now: datetime = T0, **overrides: Any) -> OAuthTokens:
    """A complete, freshly issued token set relative to *now*."""
    values: dict[str, Any] = {
        "id_token": "id-1",
        "control_plane_token": "cp-1",
        "data_plane_token": "dp-1",
        "refresh_token": "rt-1",
        "id_token_expires_at": now + timedelta(seconds=60),
        "control_plane_token_expires_at": now + timedelta(seconds=300),
        "data_plane_token_expires_at": now + timedelta(seconds=300),
        "refresh_token_expires_at": now + timedelta(seconds=28800),
    }
    values.update(overrides)
    return OAuthTokens(**values)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def json_response(
    url: str,
    payload: Any,
    status_code: int = 200,
    headers: Optional[list[tuple[str, str]]] = None,
) -> httpx.Response:
    """A real httpx.Response for a POST to *url* with a JSON body."""
    return httpx.Response(
        status_code,
        json=payload,
        headers=headers,
        request=httpx.Request("POST", url),
    )


def token_endpoint_router(
    id_token: Any = None,
    session: Any = None,
    access_token: Any = None,
    refresh: Any = None,
) -> Callable[..., httpx.Response]:
    """Build an ``httpx.post`` side effect routing by URL and grant type.

    Each argument is a JSON payload (answered with 200), an
    :class:`httpx.Response`, or an exception to raise. ``None`` selects a
    successful default.
    """
    defaults = {
        "id_token": {
            "access_token": "at-1",
            "id_token": "id-1",
            "refresh_token": "rt-1",
            "expires_in": 60,
            "token_type": "Bearer",
        },
        "session": {
            "token": "cp-1",
            "user": {"resource_id": "u-1", "email": "dev@example.com"},
            "account": {"resource_id": "org-1", "name": "Acme"},
        },
        "access_token": {"token": "dp-1"},
        "refresh": {"id_token": "id-2", "refresh_token": "rt-2"},
    }
    answers = {
        "id_token": id_token,
        "session": session,
        "access_token": access_token,
        "refresh": refresh,
    }

    def answer(key: str, url: str) -> httpx.Response:
        value = answers[key]
        if value is None:
            value = defaults[key]
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, httpx.Response):
            return value
        return json_response(url, value)

    def post(url: str, **kwargs: Any) -> httpx.Response:
        if url.endswith("/oauth/token"):
            grant = (kwargs.get("data") or {}).get("grant_type")
            return answer("refresh" if grant == "refresh_token" else "id_token", url)
        if url.endswith("/api/sessions"):
            return answer("session", url)
        if url.endswith("/api/access_tokens"):
            return answer("access_token", url)
        raise AssertionError(f"unexpected POST to {url}")

    return post


def free_port() -> int:
    """Return a loopback TCP port that is currently unbound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager for tests that don't care about output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
