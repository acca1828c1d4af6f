"""Authentication orchestrator: the sign-in state machine.

:class:`AuthService` starts a PKCE flow, opens the browser, waits for the
redirect from either delivery channel (loopback listener or
``cloudlogin://`` URI), runs the token exchange chain, and owns the
process-wide :class:`~cloudlogin.models.AuthState`.

State transitions::

    UNAUTHENTICATED --authenticate()--> AUTHENTICATING
    AUTHENTICATING  --exchange ok-----> AUTHENTICATED
    AUTHENTICATING  --any failure-----> FAILED
    AUTHENTICATED   --session ends----> EXPIRED
    any             --sign_out()------> UNAUTHENTICATED

Both delivery channels call :meth:`AuthService.handle_callback`, which is
safe to call concurrently and repeatedly: a flow is claimed before its code
is exchanged, and completion fires once.

Events (see :class:`~cloudlogin.events.EventEmitter`):
    ``state_changed`` (:class:`~cloudlogin.models.AuthState`),
    ``authenticated`` (:class:`~cloudlogin.models.OAuthTokens`),
    ``authentication_failed`` (``str``),
    ``session_expired`` (``None``).
"""

from __future__ import annotations

import logging
import threading
import webbrowser
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from cloudlogin.auth.callback_server import OAuthCallbackServer
from cloudlogin.auth.endpoints import FLOW_TIMEOUT, get_oauth_config, utcnow
from cloudlogin.auth.flow_store import PKCEStateManager, rehydrate_flow
from cloudlogin.auth.pkce import validate_state
from cloudlogin.auth.secret_store import FileSecretStorage, SecretStorage
from cloudlogin.auth.token_exchange import perform_full_token_exchange, perform_token_refresh
from cloudlogin.auth.token_store import TokenManager
from cloudlogin.config import get_secrets_dir, load_global_config
from cloudlogin.events import EventEmitter, Subscription
from cloudlogin.exceptions import (
    CallbackServerError,
    CloudLoginError,
    SecretStoreError,
    TokenExchangeError,
)
from cloudlogin.models import (
    AuthOptions,
    AuthResult,
    AuthState,
    CallbackResult,
    CloudEnvironment,
    GlobalConfig,
    OAuthConfig,
    OAuthFlowState,
    OAuthTokens,
)

logger = logging.getLogger(__name__)

BrowserOpener = Callable[[str], bool]


def _error_message(exc: Exception) -> str:
    """Prefer the provider's description over our own wrapper message."""
    if isinstance(exc, TokenExchangeError) and exc.oauth_error is not None:
        if exc.oauth_error.error_description:
            return exc.oauth_error.error_description
    return str(exc)


class AuthService:
    """Owns the authentication state and the single pending flow.

    Args:
        token_manager: Store for issued tokens.
        flow_store: Store for the pending flow's PKCE material.
        callback_server: Loopback listener to keep running; ``None``
            disables the loopback channel.
        open_browser: Callable opening a URL, returning ``False`` on
            failure. Defaults to :func:`webbrowser.open`.
        flow_timeout: Seconds :meth:`authenticate` waits for a callback.
        environment: Environment for new flows. Refreshes use the environment
            recorded on the stored tokens when there is one.
        use_uri_scheme: Register the ``cloudlogin://`` URI as redirect
            instead of the loopback listener.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        flow_store: PKCEStateManager,
        callback_server: Optional[OAuthCallbackServer] = None,
        open_browser: Optional[BrowserOpener] = None,
        flow_timeout: float = FLOW_TIMEOUT,
        environment: CloudEnvironment = CloudEnvironment.PRODUCTION,
        use_uri_scheme: bool = False,
    ) -> None:
        self._token_manager = token_manager
        self._flow_store = flow_store
        self._callback_server = callback_server
        self._open_browser: BrowserOpener = open_browser or webbrowser.open
        self._flow_timeout = flow_timeout
        self._environment = environment
        self._use_uri_scheme = use_uri_scheme
        self._config: Optional[OAuthConfig] = None
        self._cluster_id: Optional[str] = None

        self._state = AuthState.UNAUTHENTICATED
        self._pending_flow: Optional[OAuthFlowState] = None
        self._flow_future: Optional[Future[AuthResult]] = None
        self._exchanging = False
        self._lock = threading.RLock()

        self.state_changed: EventEmitter[AuthState] = EventEmitter("state_changed")
        self.authenticated: EventEmitter[OAuthTokens] = EventEmitter("authenticated")
        self.authentication_failed: EventEmitter[str] = EventEmitter("authentication_failed")
        self.session_expired: EventEmitter[None] = EventEmitter("session_expired")

        self._subscriptions: list[Subscription] = [
            token_manager.session_expired.subscribe(self._on_session_expired),
        ]

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def environment(self) -> CloudEnvironment:
        return self._environment

    @property
    def token_manager(self) -> TokenManager:
        return self._token_manager

    @property
    def callback_server(self) -> Optional[OAuthCallbackServer]:
        return self._callback_server

    def get_state(self) -> AuthState:
        return self._state

    def get_tokens(self) -> Optional[OAuthTokens]:
        return self._token_manager.get_tokens()

    def is_authenticated(self) -> bool:
        return self._state == AuthState.AUTHENTICATED

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self, start_monitor: bool = False) -> AuthState:
        """Derive the initial state from stored tokens.

        Args:
            start_monitor: Also start the token store's expiry watcher.

        Returns:
            The resulting state.
        """
        tokens = self._token_manager.get_tokens()
        if tokens is not None:
            if tokens.environment is not None:
                self._environment = tokens.environment
            if self._token_manager.is_session_valid():
                self._set_state(AuthState.AUTHENTICATED)
            else:
                self._set_state(AuthState.EXPIRED)
        if start_monitor:
            self._token_manager.start_expiration_monitor()
        return self._state

    def ensure_callback_server_running(self) -> bool:
        """Start the loopback listener if needed. Failures are logged, not raised.

        Returns:
            ``True`` if the listener is running afterwards.
        """
        server = self._callback_server
        if server is None:
            return False
        server.on_callback(self.handle_callback)
        if server.is_running():
            return True
        try:
            server.start()
        except CallbackServerError as exc:
            logger.warning("Failed to start OAuth callback server: %s", exc)
            return False
        return True

    def get_or_create_sign_in_uri(
        self,
        environment: CloudEnvironment = CloudEnvironment.PRODUCTION,
        organization_id: Optional[str] = None,
        force_new: bool = False,
    ) -> str:
        """Return the sign-in URL of the stored flow, creating one if needed.

        Also makes sure the loopback listener is up to receive the redirect.
        """
        self.ensure_callback_server_running()
        return self._flow_store.get_or_create_sign_in_uri(environment, organization_id, force_new)

    def dispose(self) -> None:
        """Cancel any pending flow and release listeners, watcher, and listener socket."""
        with self._lock:
            flow = self._pending_flow
        if flow is not None and not flow.completed:
            self._complete_flow(AuthResult(success=False, error="Service disposed"), flow)
        self._cleanup_flow(flow)

        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()
        for emitter in (
            self.state_changed,
            self.authenticated,
            self.authentication_failed,
            self.session_expired,
        ):
            emitter.clear()

        self._token_manager.stop_expiration_monitor()
        if self._callback_server is not None:
            self._callback_server.stop()

    # ------------------------------------------------------------------ #
    # Sign-in
    # ------------------------------------------------------------------ #

    def authenticate(self, options: Optional[AuthOptions] = None) -> AuthResult:
        """Run one interactive sign-in flow and block until it resolves.

        Resolves on the first of: a processed callback, a browser launch
        failure, or the flow timeout. The loopback listener keeps running
        afterwards.

        Args:
            options: Target environment, organization, cluster, and whether
                to force fresh PKCE state.

        Returns:
            The flow's outcome. A call made while another flow is
            authenticating fails immediately without affecting it.
        """
        if options is None:
            options = AuthOptions()

        with self._lock:
            if self._state == AuthState.AUTHENTICATING:
                return AuthResult(success=False, error="Authentication already in progress")

            self._environment = options.environment
            self._config = get_oauth_config(options.environment, use_uri_scheme=self._use_uri_scheme)
            self._cluster_id = options.cluster_id

            self.ensure_callback_server_running()
            try:
                stored = self._flow_store.get_or_create_state(
                    options.environment, options.organization_id, options.force_new
                )
            except CloudLoginError as exc:
                logger.error("Could not persist PKCE state: %s", exc)
                return AuthResult(
                    success=False, error="Failed to create PKCE state for authentication"
                )

            flow = OAuthFlowState(
                pkce=stored.pkce,
                initiated_at=utcnow(),
                organization_id=options.organization_id,
            )
            future: Future[AuthResult] = Future()
            self._pending_flow = flow
            self._flow_future = future
            self._exchanging = False
            self._set_state(AuthState.AUTHENTICATING)

        logger.info("Starting sign-in flow for %s", options.environment.value)
        threading.Thread(
            target=self._launch_browser,
            args=(stored.sign_in_uri, flow),
            name="cloudlogin-browser",
            daemon=True,
        ).start()

        try:
            try:
                result = future.result(timeout=self._flow_timeout)
            except FutureTimeoutError:
                self._expire_flow(flow)
                result = future.result()
        finally:
            self._cleanup_flow(flow)
        return result

    def handle_callback(self, result: CallbackResult) -> None:
        """Process a redirect from either delivery channel.

        Ignored when no flow (in memory or persisted) is pending, when the
        flow already completed, or when its code is already being exchanged.
        Never raises for exchange failures; they complete the flow as failed.
        """
        with self._lock:
            flow = self._pending_flow
            if flow is None or flow.completed:
                stored = self._flow_store.get_state()
                if stored is None:
                    logger.debug("Ignoring callback with no pending flow")
                    return
                flow = rehydrate_flow(stored)
                self._pending_flow = flow
                self._flow_future = None
                self._environment = stored.environment
                self._config = get_oauth_config(
                    stored.environment, use_uri_scheme=self._use_uri_scheme
                )
                logger.info("Resuming sign-in flow from stored PKCE state")

            if self._exchanging:
                logger.debug("Ignoring duplicate callback while exchanging")
                return

            if result.state is not None and not validate_state(result.state, flow.pkce.state):
                failure = "State mismatch - possible CSRF attack"
            elif not result.success:
                error = result.error
                failure = (error.error_description or error.error) if error else "Unknown error"
            elif not result.code:
                failure = "No authorization code received"
            else:
                failure = None

            code = result.code
            if failure is not None or code is None:
                logger.warning("Sign-in callback rejected: %s", failure)
                self._clear_flow_state()
                self._complete_flow(
                    AuthResult(success=False, error=failure or "No authorization code received"),
                    flow,
                )
                return

            self._exchanging = True
            environment = self._environment
            config = self._config or get_oauth_config(
                environment, use_uri_scheme=self._use_uri_scheme
            )
            cluster_id = self._cluster_id

        try:
            tokens = perform_full_token_exchange(
                config,
                code,
                flow.pkce.code_verifier,
                organization_id=flow.organization_id,
                cluster_id=cluster_id,
                environment=environment,
            )
            self._token_manager.store_tokens(tokens)
        except Exception as exc:
            if not isinstance(exc, CloudLoginError):
                logger.exception("Unexpected error during token exchange")
            message = _error_message(exc)
            logger.warning("Token exchange failed: %s", message)
            outcome = AuthResult(success=False, error=message)
        else:
            outcome = AuthResult(success=True, tokens=tokens)
        finally:
            with self._lock:
                self._exchanging = False

        self._clear_flow_state()
        self._complete_flow(outcome, flow)

    # ------------------------------------------------------------------ #
    # Session management
    # ------------------------------------------------------------------ #

    def refresh_tokens(self) -> AuthResult:
        """Refresh the stored session.

        The session moves to ``EXPIRED`` without a network call when its
        absolute expiry has passed or the refresh-attempt ceiling is reached.
        """
        current = self._token_manager.get_tokens()
        if current is None:
            return AuthResult(success=False, error="No tokens to refresh")

        if not self._token_manager.is_session_valid():
            self._set_state(AuthState.EXPIRED)
            return AuthResult(success=False, error="Session expired - re-authentication required")

        if self._token_manager.has_exceeded_max_refresh_attempts():
            self._set_state(AuthState.EXPIRED)
            return AuthResult(success=False, error="Maximum refresh attempts exceeded")

        # Tokens go back to the deployment that issued them.
        environment = current.environment or self._environment
        self._environment = environment
        try:
            attempt = self._token_manager.increment_refresh_attempts()
            logger.debug("Refreshing %s tokens (attempt %d)", environment.value, attempt)
            config = get_oauth_config(environment, use_uri_scheme=self._use_uri_scheme)
            tokens = perform_token_refresh(
                config,
                current.model_copy(update={"environment": environment}),
                organization_id=current.organization.id if current.organization else None,
                cluster_id=self._cluster_id,
            )
            self._token_manager.store_tokens(tokens)
        except Exception as exc:
            if not isinstance(exc, CloudLoginError):
                logger.exception("Unexpected error during token refresh")
            message = _error_message(exc)
            logger.warning("Token refresh failed: %s", message)
            return AuthResult(success=False, error=message)

        self._set_state(AuthState.AUTHENTICATED)
        return AuthResult(success=True, tokens=tokens)

    def sign_out(self) -> None:
        self._token_manager.clear_tokens()
        self._clear_flow_state()
        self._set_state(AuthState.UNAUTHENTICATED)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _clear_flow_state(self) -> None:
        try:
            self._flow_store.clear_state()
        except SecretStoreError as exc:
            logger.warning("Could not clear stored PKCE state: %s", exc)

    def _set_state(self, new_state: AuthState) -> None:
        with self._lock:
            if self._state == new_state:
                return
            self._state = new_state
        logger.debug("Auth state -> %s", new_state.value)
        self.state_changed.emit(new_state)

    def _complete_flow(self, result: AuthResult, flow: OAuthFlowState) -> bool:
        """Resolve *flow* once. Returns ``False`` if it was already resolved or superseded."""
        with self._lock:
            if self._pending_flow is not flow or flow.completed:
                return False
            flow.completed = True
            future = self._flow_future

        if result.success:
            self._set_state(AuthState.AUTHENTICATED)
            if result.tokens is not None:
                self.authenticated.emit(result.tokens)
        else:
            self._set_state(AuthState.FAILED)
            self.authentication_failed.emit(result.error or "Unknown error")

        if future is not None and not future.done():
            future.set_result(result)
        return True

    def _expire_flow(self, flow: OAuthFlowState) -> None:
        with self._lock:
            if self._exchanging and self._pending_flow is flow:
                # The code is being redeemed; let the exchange decide the outcome.
                return
        if self._complete_flow(AuthResult(success=False, error="Authentication timed out"), flow):
            logger.warning("Sign-in flow timed out after %.0f seconds", self._flow_timeout)

    def _launch_browser(self, url: str, flow: OAuthFlowState) -> None:
        try:
            opened = self._open_browser(url)
        except Exception as exc:
            self._complete_flow(
                AuthResult(success=False, error=f"Failed to open browser: {exc}"), flow
            )
            return
        if not opened:
            self._complete_flow(
                AuthResult(success=False, error="Failed to open browser for authentication"),
                flow,
            )

    def _cleanup_flow(self, flow: Optional[OAuthFlowState]) -> None:
        # The listener stays up for late browser completions.
        with self._lock:
            if flow is not None and self._pending_flow is flow:
                self._pending_flow = None
                self._flow_future = None

    def _on_session_expired(self, _: None) -> None:
        self._set_state(AuthState.EXPIRED)
        self.session_expired.emit(None)


def _skip_browser(url: str) -> bool:
    logger.debug("Browser launch disabled; sign-in URL must be opened manually")
    return True


def create_auth_service(
    config: Optional[GlobalConfig] = None,
    environment: CloudEnvironment = CloudEnvironment.PRODUCTION,
    storage: Optional[SecretStorage] = None,
    open_browser: Optional[BrowserOpener] = None,
) -> AuthService:
    """Build an :class:`AuthService` wired to the user's configuration.

    Args:
        config: Global config; loaded from disk when ``None``.
        environment: Initial environment for refreshes.
        storage: Secret storage; a :class:`FileSecretStorage` under the
            secrets directory when ``None``.
        open_browser: Browser opener override.
    """
    if config is None:
        config = load_global_config()
    if storage is None:
        storage = FileSecretStorage(get_secrets_dir(config))
    if open_browser is None:
        open_browser = webbrowser.open if config.open_browser else _skip_browser

    return AuthService(
        token_manager=TokenManager(storage),
        flow_store=PKCEStateManager(storage),
        callback_server=OAuthCallbackServer() if config.start_callback_server else None,
        open_browser=open_browser,
        flow_timeout=config.flow_timeout,
        environment=environment,
    )
