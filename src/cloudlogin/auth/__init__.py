"""OAuth2 authorization-code + PKCE sign-in for the cloud control and data planes.

The main entry points are:

- :class:`AuthService` -- the orchestrator owning the sign-in state machine.
- :func:`create_auth_service` -- factory wiring an :class:`AuthService` to
  the user's configuration and on-disk secret storage.
- :class:`TokenManager` -- durable token store with expiry bookkeeping.
- :class:`OAuthCallbackServer` / :class:`OAuthUriHandler` -- the two
  channels delivering the authorization redirect.

Typical usage::

    from cloudlogin.auth import create_auth_service
    from cloudlogin.models import AuthOptions

    service = create_auth_service()
    result = service.authenticate(AuthOptions())
    if result.success:
        print(result.tokens.control_plane_token)
    service.dispose()
"""

from cloudlogin.auth.callback_server import OAuthCallbackServer
from cloudlogin.auth.flow_store import PKCEStateManager
from cloudlogin.auth.secret_store import FileSecretStorage, MemorySecretStorage, SecretStorage
from cloudlogin.auth.service import AuthService, create_auth_service
from cloudlogin.auth.token_store import TokenManager
from cloudlogin.auth.uri_handler import OAuthUriHandler

__all__ = [
    "AuthService",
    "FileSecretStorage",
    "MemorySecretStorage",
    "OAuthCallbackServer",
    "OAuthUriHandler",
    "PKCEStateManager",
    "SecretStorage",
    "TokenManager",
    "create_auth_service",
]
