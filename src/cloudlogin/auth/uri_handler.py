"""Second delivery channel: authorization redirects via the ``cloudlogin://`` URI scheme.

The host registers ``cloudlogin`` as a URI scheme (desktop entry, browser
protocol handler) that runs ``cloudlogin auth callback <uri>``. This module
parses such URIs with the same rules as the loopback listener and forwards
the result to the registered handler, normally
:meth:`~cloudlogin.auth.service.AuthService.handle_callback`.

The listener's status pages bounce the browser to
``cloudlogin://auth/callback?success=true|false``; those carry no code or
error and are acknowledged without being forwarded.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from cloudlogin.auth.callback_server import parse_callback_params
from cloudlogin.auth.endpoints import (
    EXTERNAL_CALLBACK_URI,
    URI_CALLBACK_AUTHORITY,
    URI_CALLBACK_PATH,
    URI_SCHEME,
)
from cloudlogin.exceptions import InvalidUsageError
from cloudlogin.models import CallbackResult

logger = logging.getLogger(__name__)

UriCallbackHandler = Callable[[CallbackResult], None]


def parse_callback_uri(uri: str) -> Optional[CallbackResult]:
    """Parse a ``cloudlogin://auth/callback`` URI.

    Returns:
        The parsed result, or ``None`` for a status bounce that carries
        neither ``code`` nor ``error``.

    Raises:
        InvalidUsageError: If *uri* is not a ``cloudlogin://auth/callback`` URI.
    """
    parsed = urlparse(uri)
    if (
        parsed.scheme != URI_SCHEME
        or parsed.netloc != URI_CALLBACK_AUTHORITY
        or parsed.path.rstrip("/") != URI_CALLBACK_PATH
    ):
        raise InvalidUsageError(f"Not a {EXTERNAL_CALLBACK_URI} URI: {uri}")

    params = parse_qs(parsed.query)
    if "success" in params and "code" not in params and "error" not in params:
        return None
    return parse_callback_params(params)


def create_callback_uri(code: str, state: Optional[str] = None) -> str:
    params = {"code": code}
    if state:
        params["state"] = state
    return f"{EXTERNAL_CALLBACK_URI}?{urlencode(params)}"


def create_error_callback_uri(
    error: str,
    error_description: Optional[str] = None,
    state: Optional[str] = None,
) -> str:
    params = {"error": error}
    if error_description:
        params["error_description"] = error_description
    if state:
        params["state"] = state
    return f"{EXTERNAL_CALLBACK_URI}?{urlencode(params)}"


class OAuthUriHandler:
    """Forward parsed ``cloudlogin://`` redirects to a single handler."""

    def __init__(self) -> None:
        self._handler: Optional[UriCallbackHandler] = None

    @property
    def callback_uri(self) -> str:
        return EXTERNAL_CALLBACK_URI

    def on_callback(self, handler: UriCallbackHandler) -> None:
        self._handler = handler

    def handle_uri(self, uri: str) -> Optional[CallbackResult]:
        """Parse *uri* and deliver it.

        Returns:
            The delivered result, or ``None`` if *uri* was a status bounce.

        Raises:
            InvalidUsageError: If *uri* is not a callback URI.
        """
        result = parse_callback_uri(uri)
        if result is None:
            logger.debug("Ignoring status-only callback URI")
            return None
        if self._handler is None:
            logger.warning("Callback URI received with no handler registered")
            return result
        try:
            self._handler(result)
        except Exception:
            logger.exception("URI callback handler raised")
        return result
