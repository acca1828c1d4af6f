"""Tests for the ``cloudlogin auth`` command group, driven through CliRunner."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import make_tokens, token_endpoint_router
from cloudlogin import __version__
from cloudlogin.app import app
from cloudlogin.auth.endpoints import get_oauth_config, utcnow
from cloudlogin.auth.secret_store import FileSecretStorage
from cloudlogin.auth.service import AuthService
from cloudlogin.auth.token_store import TokenManager
from cloudlogin.config import get_secrets_dir, save_global_config
from cloudlogin.models import (
    AuthenticatedOrganization,
    AuthenticatedUser,
    AuthResult,
    CloudEnvironment,
    GlobalConfig,
    OAuthTokens,
)

POST = "cloudlogin.auth.token_exchange.httpx.post"


@pytest.fixture()
def no_listener(isolated_config: Path) -> Path:
    """Disable the loopback listener so no test binds the fixed port."""
    save_global_config(GlobalConfig(start_callback_server=False))
    return isolated_config


def _token_manager() -> TokenManager:
    return TokenManager(FileSecretStorage(get_secrets_dir()))


def _store(tokens: OAuthTokens) -> None:
    _token_manager().store_tokens(tokens)


def _signed_in_tokens(**overrides: object) -> OAuthTokens:
    return make_tokens(
        utcnow(),
        user=AuthenticatedUser(email="dev@example.com"),
        organization=AuthenticatedOrganization(id="org-1", name="Acme"),
        **overrides,
    )


class TestRootOptions:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"cloudlogin {__version__}" in result.output

    def test_unknown_environment(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(app, ["--env", "moon", "auth", "status"])
        assert result.exit_code == 1
        assert "Unknown environment 'moon'" in result.output

    def test_verbose_reports_environment(self, cli_runner, no_listener: Path) -> None:
        quiet = cli_runner.invoke(app, ["--no-color", "--env", "staging", "auth", "status"])
        loud = cli_runner.invoke(
            app, ["--no-color", "--verbose", "--env", "staging", "auth", "status"]
        )
        assert "[debug] Environment: staging" not in quiet.output
        assert "[debug] Environment: staging" in loud.output


class TestLogin:
    def test_env_flag_wins_over_stored_session(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens(environment=CloudEnvironment.STAGING))
        outcome = AuthResult(success=True, tokens=_signed_in_tokens())
        with patch.object(AuthService, "authenticate", return_value=outcome) as mock_auth:
            result = cli_runner.invoke(app, ["auth", "login", "--env", "dev"])

        assert result.exit_code == 0, result.output
        assert mock_auth.call_args.args[0].environment == CloudEnvironment.DEVELOPMENT

    def test_success(self, cli_runner, no_listener: Path) -> None:
        outcome = AuthResult(success=True, tokens=_signed_in_tokens())
        with patch.object(AuthService, "authenticate", return_value=outcome) as mock_auth:
            result = cli_runner.invoke(
                app, ["auth", "login", "--env", "staging", "--org", "org-9", "--cluster", "lkc-1"]
            )

        assert result.exit_code == 0, result.output
        assert "Signed in as dev@example.com." in result.output
        options = mock_auth.call_args.args[0]
        assert options.environment == CloudEnvironment.STAGING
        assert options.organization_id == "org-9"
        assert options.cluster_id == "lkc-1"
        assert options.force_new is False

    def test_global_env_flag(self, cli_runner, no_listener: Path) -> None:
        outcome = AuthResult(success=True, tokens=_signed_in_tokens())
        with patch.object(AuthService, "authenticate", return_value=outcome) as mock_auth:
            result = cli_runner.invoke(app, ["--env", "dev", "auth", "login"])

        assert result.exit_code == 0, result.output
        assert mock_auth.call_args.args[0].environment == CloudEnvironment.DEVELOPMENT

    def test_warns_without_data_plane_token(self, cli_runner, no_listener: Path) -> None:
        tokens = _signed_in_tokens(data_plane_token=None, data_plane_token_expires_at=None)
        with patch.object(
            AuthService, "authenticate", return_value=AuthResult(success=True, tokens=tokens)
        ):
            result = cli_runner.invoke(app, ["auth", "login"])

        assert result.exit_code == 0
        assert "No data-plane token was issued" in result.output

    def test_failure_exit_code(self, cli_runner, no_listener: Path) -> None:
        outcome = AuthResult(success=False, error="User denied")
        with patch.object(AuthService, "authenticate", return_value=outcome):
            result = cli_runner.invoke(app, ["auth", "login"])

        assert result.exit_code == 3
        assert "Sign-in failed: User denied" in result.output

    def test_no_browser_prints_url_and_times_out(self, cli_runner, no_listener: Path) -> None:
        with patch("webbrowser.open") as mock_open:
            result = cli_runner.invoke(app, ["auth", "login", "--no-browser", "--timeout", "1"])

        mock_open.assert_not_called()
        assert result.exit_code == 3
        assert get_oauth_config().authorize_uri in result.output
        assert "Authentication timed out" in result.output


class TestLogout:
    def test_signed_in(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens())
        result = cli_runner.invoke(app, ["auth", "logout"])
        assert result.exit_code == 0
        assert "Signed out." in result.output
        assert _token_manager().get_tokens() is None

    def test_not_signed_in(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(app, ["auth", "logout"])
        assert result.exit_code == 0
        assert "Not signed in." in result.output


class TestStatus:
    def test_not_signed_in(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(app, ["auth", "status"])
        assert result.exit_code == 3
        assert "Not signed in." in result.output

    def test_plain_table(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens())
        result = cli_runner.invoke(app, ["--plain", "auth", "status"])

        assert result.exit_code == 0, result.output
        assert "Token\tPresent\tExpiring\tExpires at" in result.output
        assert "id_token\tyes\tno\t" in result.output
        assert "User: dev@example.com" in result.output
        assert "Organization: Acme" in result.output

    def test_json(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens())
        result = cli_runner.invoke(app, ["--json", "auth", "status"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["session_valid"] is True
        assert payload["needs_refresh"] is False
        assert payload["control_plane_token"]["exists"] is True
        assert payload["user"]["email"] == "dev@example.com"
        assert payload["organization"]["id"] == "org-1"

    def test_expired_session(self, cli_runner, no_listener: Path) -> None:
        _store(make_tokens(utcnow() - timedelta(hours=9)))
        result = cli_runner.invoke(app, ["--plain", "auth", "status"])
        assert result.exit_code == 3
        assert "Session expired" in result.output


class TestRefresh:
    def test_no_tokens(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(app, ["auth", "refresh"])
        assert result.exit_code == 3
        assert "No tokens to refresh" in result.output

    def test_success(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens())
        with patch(POST, side_effect=token_endpoint_router()):
            result = cli_runner.invoke(app, ["auth", "refresh"])

        assert result.exit_code == 0, result.output
        assert "Tokens refreshed." in result.output
        assert _token_manager().get_tokens().id_token == "id-2"

    def test_environment_selects_endpoints(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens())
        with patch(POST, side_effect=token_endpoint_router()) as mock_post:
            result = cli_runner.invoke(app, ["auth", "refresh", "--env", "staging"])

        assert result.exit_code == 0, result.output
        staging = get_oauth_config(CloudEnvironment.STAGING)
        assert mock_post.call_args_list[0].args[0] == staging.token_uri

    def test_follows_environment_of_sign_in(self, cli_runner, no_listener: Path) -> None:
        url_result = cli_runner.invoke(app, ["auth", "url", "--env", "staging"])
        state = parse_qs(urlparse(url_result.stdout.strip()).query)["state"][0]
        with patch(POST, side_effect=token_endpoint_router()):
            signed_in = cli_runner.invoke(
                app, ["auth", "callback", f"cloudlogin://auth/callback?code=abc&state={state}"]
            )
        assert signed_in.exit_code == 0, signed_in.output

        with patch(POST, side_effect=token_endpoint_router()) as mock_post:
            result = cli_runner.invoke(app, ["auth", "refresh"])

        assert result.exit_code == 0, result.output
        staging = get_oauth_config(CloudEnvironment.STAGING)
        assert mock_post.call_args_list[0].args[0] == staging.token_uri
        assert _token_manager().get_tokens().environment == CloudEnvironment.STAGING

    def test_ceiling_across_invocations(self, cli_runner, no_listener: Path) -> None:
        _store(_signed_in_tokens())
        failing = token_endpoint_router(refresh=RuntimeError("connection reset"))
        with patch(POST, side_effect=failing) as mock_post:
            for _ in range(50):
                assert cli_runner.invoke(app, ["auth", "refresh"]).exit_code == 3
            result = cli_runner.invoke(app, ["auth", "refresh"])

        assert mock_post.call_count == 50
        assert result.exit_code == 3
        assert "Maximum refresh attempts exceeded" in result.output

    def test_expired_session(self, cli_runner, no_listener: Path) -> None:
        _store(make_tokens(utcnow() - timedelta(hours=9)))
        with patch(POST) as mock_post:
            result = cli_runner.invoke(app, ["auth", "refresh"])

        assert result.exit_code == 3
        assert "Session expired - re-authentication required" in result.output
        mock_post.assert_not_called()


class TestUrlAndCallback:
    def test_url_then_callback(self, cli_runner, no_listener: Path) -> None:
        url_result = cli_runner.invoke(app, ["auth", "url", "--env", "staging"])
        assert url_result.exit_code == 0, url_result.output
        sign_in_url = url_result.stdout.strip()
        assert sign_in_url.startswith(get_oauth_config(CloudEnvironment.STAGING).authorize_uri)

        again = cli_runner.invoke(app, ["auth", "url", "--env", "staging"])
        assert again.stdout.strip() == sign_in_url

        state = parse_qs(urlparse(sign_in_url).query)["state"][0]
        with patch(POST, side_effect=token_endpoint_router()) as mock_post:
            result = cli_runner.invoke(
                app, ["auth", "callback", f"cloudlogin://auth/callback?code=abc&state={state}"]
            )

        assert result.exit_code == 0, result.output
        assert "Signed in as dev@example.com." in result.output
        staging = get_oauth_config(CloudEnvironment.STAGING)
        assert mock_post.call_args_list[0].args[0] == staging.token_uri
        assert _token_manager().get_tokens().control_plane_token == "cp-1"

    def test_callback_with_wrong_state(self, cli_runner, no_listener: Path) -> None:
        cli_runner.invoke(app, ["auth", "url"])
        with patch(POST) as mock_post:
            result = cli_runner.invoke(
                app, ["auth", "callback", "cloudlogin://auth/callback?code=abc&state=forged"]
            )

        assert result.exit_code == 3
        assert "State mismatch - possible CSRF attack" in result.output
        mock_post.assert_not_called()

    def test_callback_without_pending_flow(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(
            app, ["auth", "callback", "cloudlogin://auth/callback?code=abc&state=s"]
        )
        assert result.exit_code == 3
        assert "No pending sign-in flow" in result.output

    def test_status_bounce(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(
            app, ["auth", "callback", "cloudlogin://auth/callback?success=true"]
        )
        assert result.exit_code == 0
        assert "Nothing to do." in result.output

    def test_malformed_uri(self, cli_runner, no_listener: Path) -> None:
        result = cli_runner.invoke(app, ["auth", "callback", "https://example.com/callback"])
        assert result.exit_code == 2
        assert "Not a cloudlogin://auth/callback URI" in result.output
