"""Tests for the ``cloudlogin://`` callback URI channel."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from cloudlogin.auth.uri_handler import (
    OAuthUriHandler,
    create_callback_uri,
    create_error_callback_uri,
    parse_callback_uri,
)
from cloudlogin.exceptions import InvalidUsageError
from cloudlogin.models import CallbackResult


class TestParseCallbackUri:
    def test_code_and_state(self) -> None:
        result = parse_callback_uri("cloudlogin://auth/callback?code=abc&state=xyz")
        assert result == CallbackResult(success=True, code="abc", state="xyz")

    def test_error(self) -> None:
        result = parse_callback_uri(
            "cloudlogin://auth/callback?error=access_denied&error_description=Denied&state=s"
        )
        assert result is not None
        assert result.success is False
        assert result.error is not None
        assert result.error.error_description == "Denied"

    def test_missing_code(self) -> None:
        result = parse_callback_uri("cloudlogin://auth/callback?state=s")
        assert result is not None
        assert result.error is not None
        assert result.error.error == "missing_code"

    @pytest.mark.parametrize("flag", ["true", "false"])
    def test_status_bounce_is_ignored(self, flag: str) -> None:
        assert parse_callback_uri(f"cloudlogin://auth/callback?success={flag}") is None

    @pytest.mark.parametrize(
        "uri",
        [
            "https://auth/callback?code=abc",
            "cloudlogin://other/callback?code=abc",
            "cloudlogin://auth/elsewhere?code=abc",
        ],
    )
    def test_rejects_foreign_uri(self, uri: str) -> None:
        with pytest.raises(InvalidUsageError):
            parse_callback_uri(uri)


class TestCreateUris:
    def test_callback_uri_parses_back(self) -> None:
        uri = create_callback_uri("a b", "s/1")
        assert uri.startswith("cloudlogin://auth/callback?")
        assert parse_callback_uri(uri) == CallbackResult(success=True, code="a b", state="s/1")

    def test_error_uri(self) -> None:
        uri = create_error_callback_uri("access_denied", "No thanks", "s")
        result = parse_callback_uri(uri)
        assert result is not None
        assert result.error is not None
        assert result.error.error == "access_denied"
        assert result.state == "s"


class TestOAuthUriHandler:
    def test_callback_uri(self) -> None:
        assert OAuthUriHandler().callback_uri == "cloudlogin://auth/callback"

    def test_delivers_to_handler(self) -> None:
        handler = MagicMock()
        uri_handler = OAuthUriHandler()
        uri_handler.on_callback(handler)

        result = uri_handler.handle_uri("cloudlogin://auth/callback?code=abc&state=xyz")

        handler.assert_called_once_with(result)
        assert result is not None and result.code == "abc"

    def test_bounce_not_delivered(self) -> None:
        handler = MagicMock()
        uri_handler = OAuthUriHandler()
        uri_handler.on_callback(handler)

        assert uri_handler.handle_uri("cloudlogin://auth/callback?success=true") is None
        handler.assert_not_called()

    def test_handler_exception_is_contained(self) -> None:
        uri_handler = OAuthUriHandler()
        uri_handler.on_callback(MagicMock(side_effect=RuntimeError("boom")))

        result = uri_handler.handle_uri("cloudlogin://auth/callback?code=abc")
        assert result is not None

    def test_no_handler(self) -> None:
        result = OAuthUriHandler().handle_uri("cloudlogin://auth/callback?code=abc")
        assert result is not None and result.success is True
