"""Durable storage for the single pending PKCE flow.

The PKCE verifier and state of the flow in progress are written to the
secret store under :data:`PKCE_STATE_KEY` the moment the sign-in URL is
generated. A callback that arrives after the process restarted (or after the
in-memory wait timed out) can then still be matched and exchanged; see
:func:`rehydrate_flow`.

Only one record exists at a time: creating a new flow overwrites the
previous one, and records older than :data:`PKCE_STATE_MAX_AGE` are
discarded on read.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from cloudlogin.auth.endpoints import get_oauth_config, utcnow
from cloudlogin.auth.pkce import build_authorization_url, generate_pkce_params
from cloudlogin.auth.secret_store import SecretStorage
from cloudlogin.models import CloudEnvironment, OAuthConfig, OAuthFlowState, StoredFlowState

logger = logging.getLogger(__name__)

PKCE_STATE_KEY = "cloudlogin.oauth.pkce"
PKCE_STATE_MAX_AGE = timedelta(minutes=10)


def rehydrate_flow(stored: StoredFlowState) -> OAuthFlowState:
    """Rebuild a pending in-memory flow from its durable record."""
    return OAuthFlowState(
        pkce=stored.pkce,
        initiated_at=stored.created_at,
        completed=False,
        organization_id=stored.organization_id,
    )


class PKCEStateManager:
    """Owns the persisted PKCE record of the pending flow.

    Args:
        storage: Secret storage backend.
        use_uri_scheme: Build sign-in URLs that redirect to the
            ``cloudlogin://`` URI instead of the loopback listener.
        clock: Source of the current time, overridable in tests.
    """

    def __init__(
        self,
        storage: SecretStorage,
        use_uri_scheme: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._use_uri_scheme = use_uri_scheme
        self._clock = clock
        self._cached: Optional[StoredFlowState] = None
        self._lock = threading.RLock()

    def get_or_create_state(
        self,
        environment: CloudEnvironment,
        organization_id: Optional[str] = None,
        force_new: bool = False,
    ) -> StoredFlowState:
        """Return the unexpired record for *environment*/*organization_id*, or start a new one.

        A stored record is reused only when it targets the same environment
        and organization. Otherwise (or with *force_new*) fresh PKCE
        parameters are generated and the record is overwritten.
        """
        with self._lock:
            if not force_new:
                existing = self.get_state()
                if (
                    existing is not None
                    and existing.environment == environment
                    and existing.organization_id == organization_id
                ):
                    logger.debug("Reusing stored PKCE state for %s", environment.value)
                    return existing

            pkce = generate_pkce_params()
            config = get_oauth_config(environment, use_uri_scheme=self._use_uri_scheme)
            state = StoredFlowState(
                pkce=pkce,
                sign_in_uri=build_authorization_url(config, pkce, organization_id),
                created_at=self._clock(),
                environment=environment,
                organization_id=organization_id,
            )
            self._storage.store(PKCE_STATE_KEY, state.model_dump_json())
            self._cached = state
            logger.debug("Stored new PKCE state for %s", environment.value)
            return state

    def get_or_create_sign_in_uri(
        self,
        environment: CloudEnvironment,
        organization_id: Optional[str] = None,
        force_new: bool = False,
    ) -> str:
        return self.get_or_create_state(environment, organization_id, force_new).sign_in_uri

    def get_state(self) -> Optional[StoredFlowState]:
        """Return the stored record if present and younger than :data:`PKCE_STATE_MAX_AGE`.

        Expired and unparseable records are deleted.
        """
        with self._lock:
            if self._cached is not None and self._is_fresh(self._cached):
                return self._cached

            state = self._load()
            if state is not None and self._is_fresh(state):
                return state
            if state is not None:
                logger.debug("Discarding expired PKCE state")
                self.clear_state()
            return None

    def get_code_verifier(self) -> Optional[str]:
        state = self.get_state()
        return state.pkce.code_verifier if state else None

    def get_state_param(self) -> Optional[str]:
        state = self.get_state()
        return state.pkce.state if state else None

    def get_config(self) -> Optional[OAuthConfig]:
        """Return the endpoint record for the stored flow's environment."""
        state = self.get_state()
        if state is None:
            return None
        return get_oauth_config(state.environment, use_uri_scheme=self._use_uri_scheme)

    def clear_state(self) -> None:
        with self._lock:
            self._cached = None
            self._storage.delete(PKCE_STATE_KEY)

    def _is_fresh(self, state: StoredFlowState) -> bool:
        return self._clock() - state.created_at < PKCE_STATE_MAX_AGE

    def _load(self) -> Optional[StoredFlowState]:
        raw = self._storage.get(PKCE_STATE_KEY)
        if not raw:
            self._cached = None
            return None
        try:
            state = StoredFlowState.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Clearing unreadable PKCE state: %s", exc)
            self._storage.delete(PKCE_STATE_KEY)
            self._cached = None
            return None
        self._cached = state
        return state
