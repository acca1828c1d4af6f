"""cloudlogin -- browser-based OAuth2/PKCE sign-in for cloud control and data planes.

This package drives an authorization-code-with-PKCE login against the cloud
identity provider, receives the redirect on a loopback listener (or through
the ``cloudlogin://`` URI scheme), and exchanges the authorization code for
an ID token, a control-plane session token, and an optional data-plane
token. Issued tokens are persisted in a secret store and refreshed until
their absolute eight-hour ceiling.

Typical workflow::

    cloudlogin auth login --env production
    cloudlogin auth status
    cloudlogin auth refresh
    cloudlogin auth logout

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the package.
    config: XDG-aware configuration and environment resolution.
    events: Minimal publish/subscribe primitives.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
    auth: The authentication core (PKCE, listener, exchange chain, stores,
        orchestrator).
"""

__version__ = "0.1.0"
