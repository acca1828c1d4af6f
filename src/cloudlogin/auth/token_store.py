"""Durable storage of the issued token set and its expiry policy.

:class:`TokenManager` persists :class:`~cloudlogin.models.OAuthTokens` as
JSON (ISO-8601 timestamps) under :data:`TOKEN_STORAGE_KEY`, hands out
individual tokens only while they are outside the refresh buffer, tracks
consecutive refresh attempts against :data:`MAX_REFRESH_ATTEMPTS` (persisted
under :data:`REFRESH_ATTEMPTS_KEY`), and can run a background watcher that
reports expiring tokens and the end of the session.

Events:
    ``tokens_updated`` (:class:`~cloudlogin.models.OAuthTokens`),
    ``tokens_cleared`` (``None``),
    ``token_expiring`` (:class:`~cloudlogin.models.TokenExpiringEvent`),
    ``session_expired`` (``None``).
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

from cloudlogin.auth.endpoints import (
    MAX_REFRESH_ATTEMPTS,
    TOKEN_CHECK_INTERVAL,
    is_token_expiring,
    time_until_expiry,
    utcnow,
)
from cloudlogin.auth.secret_store import SecretStorage
from cloudlogin.events import EventEmitter
from cloudlogin.models import (
    AllTokenStatus,
    AuthenticatedOrganization,
    AuthenticatedUser,
    OAuthTokens,
    TokenExpiringEvent,
    TokenStatus,
)

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = "cloudlogin.oauth.tokens"
REFRESH_ATTEMPTS_KEY = "cloudlogin.oauth.refresh_attempts"

_NO_BUFFER = timedelta(0)


class TokenManager:
    """Owns the persisted token set.

    Args:
        storage: Secret storage backend.
        clock: Source of the current time, overridable in tests.
        check_interval: Seconds between expiry checks of the watcher.
    """

    def __init__(
        self,
        storage: SecretStorage,
        clock: Callable[[], datetime] = utcnow,
        check_interval: float = TOKEN_CHECK_INTERVAL,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._check_interval = check_interval
        self._cached: Optional[OAuthTokens] = None
        self._lock = threading.RLock()
        self._monitor: Optional[threading.Thread] = None
        self._stop_monitor = threading.Event()

        self.tokens_updated: EventEmitter[OAuthTokens] = EventEmitter("tokens_updated")
        self.tokens_cleared: EventEmitter[None] = EventEmitter("tokens_cleared")
        self.token_expiring: EventEmitter[TokenExpiringEvent] = EventEmitter("token_expiring")
        self.session_expired: EventEmitter[None] = EventEmitter("session_expired")

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def store_tokens(self, tokens: OAuthTokens) -> None:
        """Persist *tokens*, replacing any previous set, and reset the refresh counter."""
        with self._lock:
            self._storage.store(TOKEN_STORAGE_KEY, tokens.model_dump_json())
            self._cached = tokens
            self._storage.delete(REFRESH_ATTEMPTS_KEY)
        logger.debug("Stored token set (refresh expires %s)", tokens.refresh_token_expires_at)
        self.tokens_updated.emit(tokens)

    def get_tokens(self) -> Optional[OAuthTokens]:
        with self._lock:
            if self._cached is not None:
                return self._cached
            return self._load()

    def update_tokens(self, **updates: Any) -> OAuthTokens:
        """Apply a partial update to the stored set and persist it.

        Raises:
            ValueError: If no tokens are stored.
        """
        with self._lock:
            tokens = self.get_tokens()
            if tokens is None:
                raise ValueError("No tokens to update. Store tokens first.")
            updated = tokens.model_copy(update=updates)
            self.store_tokens(updated)
            return updated

    def clear_tokens(self) -> None:
        with self._lock:
            self._storage.delete(TOKEN_STORAGE_KEY)
            self._cached = None
            self._storage.delete(REFRESH_ATTEMPTS_KEY)
        self.tokens_cleared.emit(None)

    # ------------------------------------------------------------------ #
    # Token accessors
    # ------------------------------------------------------------------ #

    def get_id_token(self) -> Optional[str]:
        tokens = self.get_tokens()
        if tokens is None or self._expiring(tokens.id_token_expires_at):
            return None
        return tokens.id_token

    def get_control_plane_token(self) -> Optional[str]:
        tokens = self.get_tokens()
        if tokens is None or not tokens.control_plane_token:
            return None
        expires_at = tokens.control_plane_token_expires_at
        if expires_at is None or self._expiring(expires_at):
            return None
        return tokens.control_plane_token

    def get_data_plane_token(self) -> Optional[str]:
        tokens = self.get_tokens()
        if tokens is None or not tokens.data_plane_token:
            return None
        expires_at = tokens.data_plane_token_expires_at
        if expires_at is None or self._expiring(expires_at):
            return None
        return tokens.data_plane_token

    def get_refresh_token(self) -> Optional[str]:
        """Return the refresh token unless the session's absolute expiry has passed."""
        tokens = self.get_tokens()
        if tokens is None or self._expiring(tokens.refresh_token_expires_at, _NO_BUFFER):
            return None
        return tokens.refresh_token

    def is_session_valid(self) -> bool:
        return self.get_refresh_token() is not None

    def get_user(self) -> Optional[AuthenticatedUser]:
        tokens = self.get_tokens()
        return tokens.user if tokens else None

    def get_organization(self) -> Optional[AuthenticatedOrganization]:
        tokens = self.get_tokens()
        return tokens.organization if tokens else None

    def get_token_status(self) -> AllTokenStatus:
        """Summarise the expiry status of every token in the stored set."""
        tokens = self.get_tokens()
        now = self._clock()

        def status(expires_at: Optional[datetime]) -> TokenStatus:
            if expires_at is None:
                return TokenStatus(exists=False, expiring=True)
            return TokenStatus(
                exists=True,
                expiring=is_token_expiring(expires_at, now=now),
                expires_at=expires_at,
                seconds_until_expiry=time_until_expiry(expires_at, now=now).total_seconds(),
            )

        id_status = status(tokens.id_token_expires_at if tokens else None)
        cp_status = status(tokens.control_plane_token_expires_at if tokens else None)
        dp_status = status(tokens.data_plane_token_expires_at if tokens else None)
        refresh_status = status(tokens.refresh_token_expires_at if tokens else None)

        session_valid = tokens is not None and not is_token_expiring(
            tokens.refresh_token_expires_at, _NO_BUFFER, now=now
        )
        needs_refresh = session_valid and (
            id_status.expiring
            or cp_status.expiring
            or (dp_status.exists and dp_status.expiring)
        )
        return AllTokenStatus(
            id_token=id_status,
            control_plane_token=cp_status,
            data_plane_token=dp_status,
            refresh_token=refresh_status,
            session_valid=session_valid,
            needs_refresh=needs_refresh,
        )

    # ------------------------------------------------------------------ #
    # Refresh attempts
    # ------------------------------------------------------------------ #

    def increment_refresh_attempts(self) -> int:
        with self._lock:
            attempts = self.get_refresh_attempts() + 1
            self._storage.store(REFRESH_ATTEMPTS_KEY, str(attempts))
            return attempts

    def get_refresh_attempts(self) -> int:
        """Consecutive refresh attempts since the last stored token set.

        Kept in the secret store so the ceiling holds across processes.
        """
        raw = self._storage.get(REFRESH_ATTEMPTS_KEY)
        if not raw:
            return 0
        try:
            return max(int(raw), 0)
        except ValueError:
            logger.warning("Ignoring unreadable refresh-attempt counter %r", raw)
            return 0

    def has_exceeded_max_refresh_attempts(self) -> bool:
        return self.get_refresh_attempts() >= MAX_REFRESH_ATTEMPTS

    def reset_refresh_attempts(self) -> None:
        with self._lock:
            self._storage.delete(REFRESH_ATTEMPTS_KEY)

    # ------------------------------------------------------------------ #
    # Expiry watcher
    # ------------------------------------------------------------------ #

    def start_expiration_monitor(self) -> None:
        """Start the background watcher thread. A no-op if it is already running."""
        if self._monitor is not None and self._monitor.is_alive():
            return
        self._stop_monitor.clear()
        self._monitor = threading.Thread(
            target=self._run_monitor, name="cloudlogin-token-monitor", daemon=True
        )
        self._monitor.start()

    def stop_expiration_monitor(self) -> None:
        self._stop_monitor.set()
        if self._monitor is not None:
            self._monitor.join(timeout=2.0)
            self._monitor = None

    def check_token_expiration(self) -> None:
        """Emit ``session_expired`` or ``token_expiring`` for the stored set.

        An expired refresh token ends the session and suppresses the
        per-token notifications.
        """
        tokens = self.get_tokens()
        if tokens is None:
            return

        if self._expiring(tokens.refresh_token_expires_at, _NO_BUFFER):
            self.session_expired.emit(None)
            return

        candidates = (
            ("id_token", tokens.id_token_expires_at),
            ("control_plane_token", tokens.control_plane_token_expires_at),
            ("data_plane_token", tokens.data_plane_token_expires_at),
        )
        for token_type, expires_at in candidates:
            if expires_at is not None and self._expiring(expires_at):
                self.token_expiring.emit(
                    TokenExpiringEvent(token_type=token_type, expires_at=expires_at)
                )

    def dispose(self) -> None:
        self.stop_expiration_monitor()
        for emitter in (
            self.tokens_updated,
            self.tokens_cleared,
            self.token_expiring,
            self.session_expired,
        ):
            emitter.clear()
        with self._lock:
            self._cached = None

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _run_monitor(self) -> None:
        while not self._stop_monitor.wait(self._check_interval):
            try:
                self.check_token_expiration()
            except Exception:
                logger.exception("Token expiry check failed")

    def _expiring(self, expires_at: datetime, buffer: Optional[timedelta] = None) -> bool:
        if buffer is None:
            return is_token_expiring(expires_at, now=self._clock())
        return is_token_expiring(expires_at, buffer, now=self._clock())

    def _load(self) -> Optional[OAuthTokens]:
        raw = self._storage.get(TOKEN_STORAGE_KEY)
        if not raw:
            return None
        try:
            tokens = OAuthTokens.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Clearing unreadable stored tokens: %s", exc)
            self._storage.delete(TOKEN_STORAGE_KEY)
            return None
        self._cached = tokens
        return tokens
