"""Exception hierarchy for cloudlogin.

All exceptions inherit from :class:`CloudLoginError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`cloudlogin.exit_codes`.
The top-level error handler in :func:`cloudlogin.app.main` catches
``CloudLoginError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    CloudLoginError (exit 1)
    +-- InvalidUsageError          (exit 2)
    +-- AuthError                  (exit 3)
    |   +-- TokenExchangeError     (exit 3)
    |   +-- SessionExpiredError    (exit 3)
    +-- CallbackServerError        (exit 8)
    |   +-- CallbackServerInUseError (exit 8)
    +-- SecretStoreError           (exit 9)
    +-- ConfigError                (exit 1)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from cloudlogin.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CALLBACK_SERVER_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_SECRET_STORE_ERROR,
)

if TYPE_CHECKING:
    from cloudlogin.models import OAuthError


class CloudLoginError(Exception):
    """Base exception for all cloudlogin errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`cloudlogin.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(CloudLoginError):
    """Raised for invalid CLI arguments or malformed callback URIs."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(CloudLoginError):
    """Raised when a sign-in flow fails or is rejected."""

    exit_code = EXIT_AUTH_FAILURE


class TokenExchangeError(AuthError):
    """Raised when one step of the token exchange chain fails.

    Carries the provider's structured error (when the response body had
    one) and the HTTP status code, so callers can prefer the provider's
    ``error_description`` over the generic message.

    Args:
        message: Human-readable summary of the failed step.
        oauth_error: Parsed provider error body, if any.
        status_code: HTTP status of the failed response, or ``None`` for
            transport failures.
    """

    def __init__(
        self,
        message: str,
        oauth_error: Optional[OAuthError] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.oauth_error = oauth_error
        self.status_code = status_code


class SessionExpiredError(AuthError):
    """Raised when the refresh token has reached its absolute expiry."""


class CallbackServerError(CloudLoginError):
    """Raised when the loopback callback listener fails to bind or serve."""

    exit_code = EXIT_CALLBACK_SERVER_ERROR


class CallbackServerInUseError(CallbackServerError):
    """Raised when the callback port is already bound, usually by another instance."""


class SecretStoreError(CloudLoginError):
    """Raised when the secret store cannot persist or delete a record."""

    exit_code = EXIT_SECRET_STORE_ERROR


class ConfigError(CloudLoginError):
    """Raised for configuration problems (invalid JSON, unknown environment names)."""

    exit_code = EXIT_GENERIC_FAILURE
