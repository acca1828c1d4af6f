"""Auth commands -- sign in, inspect, refresh, and sign out.

Provides the ``cloudlogin auth`` sub-command group. Every command builds its
own :class:`~cloudlogin.auth.service.AuthService` from the global
configuration and the resolved environment, and disposes of it on exit.

Typical workflow::

    cloudlogin auth login              # browser sign-in
    cloudlogin auth status             # inspect token expiry
    cloudlogin auth refresh            # renew before expiry
    cloudlogin auth logout             # forget everything

Without a browser on the machine::

    cloudlogin auth url                # print the sign-in URL
    cloudlogin auth callback '<uri>'   # hand the redirect back
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

import typer

from cloudlogin.output import debug, error, get_output, info, success, suggest, warning

if TYPE_CHECKING:
    from cloudlogin.auth.service import AuthService


auth_app = typer.Typer(no_args_is_help=True)


def _build_service(
    ctx: typer.Context,
    environment: Optional[str],
    open_browser: Optional[Callable[[str], bool]] = None,
    **config_updates: Any,
) -> AuthService:
    """Create an :class:`AuthService` for the resolved environment.

    ``--env`` on the sub-command wins over the global ``--env`` flag.

    Raises:
        typer.Exit: With the error's exit code if the configuration or
            environment name is invalid.
    """
    from cloudlogin.auth.service import create_auth_service
    from cloudlogin.config import load_global_config, resolve_environment
    from cloudlogin.exceptions import CloudLoginError

    global_env = (ctx.obj or {}).get("environment")
    try:
        config = load_global_config()
        resolved = resolve_environment(environment or global_env, config)
    except CloudLoginError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    debug(f"Environment: {resolved.value}")
    if config_updates:
        config = config.model_copy(update=config_updates)
    return create_auth_service(config, environment=resolved, open_browser=open_browser)


def _format_time(value: Optional[datetime]) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


def _print_url(url: str) -> bool:
    info("Open this URL in a browser to sign in:")
    get_output().print_data(url)
    return True


@auth_app.command("login")
def auth_login(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(
        None, "--env", "-e", help="Cloud environment to sign in to."
    ),
    organization: Optional[str] = typer.Option(
        None, "--org", help="Organization resource ID to sign in to."
    ),
    cluster: Optional[str] = typer.Option(
        None, "--cluster", help="Cluster ID to scope the data-plane token to."
    ),
    force_new: bool = typer.Option(
        False, "--force-new", help="Discard any pending sign-in and start fresh."
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL instead of opening a browser."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", min=1, help="Seconds to wait for the browser to return."
    ),
) -> None:
    """Sign in through the browser.

    Opens the identity provider's sign-in page, waits for the redirect on
    the loopback listener (or a ``cloudlogin://`` callback from another
    process), and stores the resulting tokens.

    Raises:
        typer.Exit: With code 3 if sign-in fails or times out.

    Example::

        cloudlogin auth login --env staging --org org-abc123
    """
    from cloudlogin.exit_codes import EXIT_AUTH_FAILURE
    from cloudlogin.models import AuthOptions

    updates: dict[str, Any] = {}
    if timeout is not None:
        updates["flow_timeout"] = timeout
    service = _build_service(
        ctx, environment, open_browser=_print_url if no_browser else None, **updates
    )

    target = service.environment
    try:
        service.initialize()
        info(f"Signing in to {target.value}...")
        result = service.authenticate(
            AuthOptions(
                environment=target,
                organization_id=organization,
                cluster_id=cluster,
                force_new=force_new,
            )
        )
    finally:
        service.dispose()

    if not result.success:
        error(f"Sign-in failed: {result.error}")
        suggest("Retry with a fresh flow: cloudlogin auth login --force-new")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)

    tokens = result.tokens
    who = tokens.user.email if tokens and tokens.user and tokens.user.email else None
    success(f"Signed in as {who}." if who else "Signed in.")
    if tokens is not None and tokens.data_plane_token is None:
        warning("No data-plane token was issued; data-plane APIs are unavailable.")


@auth_app.command("logout")
def auth_logout(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(None, "--env", "-e", help="Cloud environment."),
) -> None:
    """Forget stored tokens and any pending sign-in flow."""
    service = _build_service(ctx, environment, start_callback_server=False)
    try:
        had_tokens = service.get_tokens() is not None
        service.sign_out()
    finally:
        service.dispose()

    if had_tokens:
        success("Signed out.")
    else:
        info("Not signed in.")


@auth_app.command("status")
def auth_status(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(None, "--env", "-e", help="Cloud environment."),
) -> None:
    """Show which tokens are stored and when they expire.

    Exits with code 3 when no session is stored or the session has reached
    its absolute expiry, so scripts can test ``cloudlogin auth status``.

    Example::

        cloudlogin auth status --json
    """
    from cloudlogin.exit_codes import EXIT_AUTH_FAILURE
    from cloudlogin.output import OutputFormat

    service = _build_service(ctx, environment, start_callback_server=False)
    try:
        manager = service.token_manager
        tokens = manager.get_tokens()
        if tokens is None:
            info("Not signed in.")
            suggest("Sign in: cloudlogin auth login")
            raise typer.Exit(code=EXIT_AUTH_FAILURE)
        status = manager.get_token_status()
    finally:
        service.dispose()

    output = get_output()
    if output.format == OutputFormat.JSON:
        payload = status.model_dump(mode="json")
        payload["user"] = tokens.user.model_dump(mode="json") if tokens.user else None
        payload["organization"] = (
            tokens.organization.model_dump(mode="json") if tokens.organization else None
        )
        output.format_response(payload)
    else:
        rows = []
        for name in ("id_token", "control_plane_token", "data_plane_token", "refresh_token"):
            entry = getattr(status, name)
            rows.append(
                [
                    name,
                    "yes" if entry.exists else "no",
                    "yes" if entry.exists and entry.expiring else "no",
                    _format_time(entry.expires_at),
                ]
            )
        output.print_table(["Token", "Present", "Expiring", "Expires at"], rows, title="Session")
        if tokens.user and tokens.user.email:
            info(f"User: {tokens.user.email}")
        if tokens.organization and (tokens.organization.name or tokens.organization.id):
            info(f"Organization: {tokens.organization.name or tokens.organization.id}")

    if not status.session_valid:
        warning("Session expired. Sign in again.")
        suggest("cloudlogin auth login")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
    if status.needs_refresh:
        suggest("Tokens are expiring: cloudlogin auth refresh")


@auth_app.command("refresh")
def auth_refresh(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(None, "--env", "-e", help="Cloud environment."),
) -> None:
    """Exchange the stored refresh token for a fresh token set.

    Raises:
        typer.Exit: With code 3 if there is no session, it has expired, or
            the identity provider rejects the refresh.
    """
    from cloudlogin.exceptions import AuthError, SessionExpiredError
    from cloudlogin.models import AuthState

    service = _build_service(ctx, environment, start_callback_server=False)
    try:
        result = service.refresh_tokens()
        expired = service.get_state() == AuthState.EXPIRED
    finally:
        service.dispose()

    if not result.success:
        exc_type = SessionExpiredError if expired else AuthError
        exc = exc_type(result.error or "Token refresh failed")
        error(str(exc))
        if expired:
            suggest("Sign in again: cloudlogin auth login")
        raise typer.Exit(code=exc.exit_code)

    tokens = result.tokens
    expires = _format_time(tokens.id_token_expires_at) if tokens else "-"
    success(f"Tokens refreshed. ID token valid until {expires}.")


@auth_app.command("callback")
def auth_callback(
    ctx: typer.Context,
    uri: str = typer.Argument(help="The cloudlogin://auth/callback URI to process."),
) -> None:
    """Complete a pending sign-in from a ``cloudlogin://`` redirect.

    Registered as the URI-scheme handler. Resumes the flow persisted by
    ``cloudlogin auth url`` or an interrupted ``cloudlogin auth login``,
    even from a different process.

    Raises:
        typer.Exit: With code 2 for a malformed URI, or code 3 if the
            redirect carries an error or the token exchange fails.

    Example::

        cloudlogin auth callback 'cloudlogin://auth/callback?code=abc&state=xyz'
    """
    from cloudlogin.auth.uri_handler import OAuthUriHandler
    from cloudlogin.exceptions import CloudLoginError
    from cloudlogin.exit_codes import EXIT_AUTH_FAILURE

    service = _build_service(ctx, None, start_callback_server=False)
    outcomes: list[tuple[bool, str]] = []
    service.authenticated.subscribe(
        lambda tokens: outcomes.append((True, tokens.user.email if tokens.user else ""))
    )
    service.authentication_failed.subscribe(lambda message: outcomes.append((False, message)))

    handler = OAuthUriHandler()
    handler.on_callback(service.handle_callback)
    try:
        delivered = handler.handle_uri(uri)
    except CloudLoginError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    finally:
        service.dispose()

    if delivered is None:
        info("Nothing to do.")
        return
    if not outcomes:
        warning("No pending sign-in flow matches this callback.")
        suggest("Start one: cloudlogin auth login")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)

    ok, detail = outcomes[0]
    if not ok:
        error(f"Sign-in failed: {detail}")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
    success(f"Signed in as {detail}." if detail else "Signed in.")


@auth_app.command("url")
def auth_url(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(None, "--env", "-e", help="Cloud environment."),
    organization: Optional[str] = typer.Option(
        None, "--org", help="Organization resource ID to sign in to."
    ),
    force_new: bool = typer.Option(
        False, "--force-new", help="Discard any pending sign-in and start fresh."
    ),
) -> None:
    """Print the sign-in URL of the pending flow, creating one if needed.

    The flow's PKCE state is persisted so that ``cloudlogin auth callback``
    can complete it later.

    Example::

        cloudlogin auth url --env staging
    """
    from cloudlogin.exceptions import CloudLoginError

    service = _build_service(ctx, environment, start_callback_server=False)
    try:
        url = service.get_or_create_sign_in_uri(service.environment, organization, force_new)
    except CloudLoginError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    finally:
        service.dispose()

    get_output().print_data(url)
