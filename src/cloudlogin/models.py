"""Canonical Pydantic models shared across all cloudlogin modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into four groups:

**Configuration models** -- compiled-in endpoint records and the user's
JSON config file:
    :class:`CloudEnvironment`, :class:`OAuthConfig`, and :class:`GlobalConfig`.

**Flow models** -- state of one sign-in attempt:
    :class:`PKCEParams`, :class:`OAuthFlowState`, :class:`StoredFlowState`,
    :class:`OAuthError`, :class:`CallbackResult`, :class:`AuthOptions`, and
    :class:`AuthResult`.

**Token models** -- the issued token set and its status:
    :class:`AuthenticatedUser`, :class:`AuthenticatedOrganization`,
    :class:`OAuthTokens`, :class:`TokenStatus`, and :class:`AllTokenStatus`.

**Exchange response models** -- normalised responses of the four network
exchanges performed by :mod:`cloudlogin.auth.token_exchange`.

All timestamps are timezone-aware UTC :class:`~datetime.datetime` values and
serialise to ISO-8601 strings with ``model_dump(mode="json")``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Enums ---


class CloudEnvironment(str, enum.Enum):
    """Cloud deployment an authentication flow targets."""

    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"


class AuthState(str, enum.Enum):
    """Process-wide authentication state owned by :class:`~cloudlogin.auth.service.AuthService`."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    EXPIRED = "expired"


# --- Configuration ---


class OAuthConfig(BaseModel):
    """Per-environment endpoint record used by every network exchange.

    Built by :func:`~cloudlogin.auth.endpoints.get_oauth_config`; never
    edited by users.
    """

    model_config = ConfigDict(frozen=True)

    authorize_uri: str = Field(description="Identity provider authorize endpoint")
    token_uri: str = Field(description="Identity provider token endpoint")
    ccloud_base_uri: str = Field(
        description="Cloud web base URI hosting the sessions and access-token endpoints"
    )
    control_plane_uri: str = Field(description="Control-plane API base URI")
    client_id: str = Field(description="Public OAuth client identifier")
    redirect_uri: str = Field(description="Registered loopback redirect URI")
    scope: str = Field(description="Space-separated OAuth scopes")


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/cloudlogin/config.json``.

    Loaded and saved by :func:`~cloudlogin.config.load_global_config` and
    :func:`~cloudlogin.config.save_global_config`. Fields here have the
    lowest precedence and can be overridden by environment variables or CLI
    flags. See :func:`~cloudlogin.config.resolve_environment`.
    """

    default_environment: CloudEnvironment = CloudEnvironment.PRODUCTION
    secrets_dir: Optional[str] = Field(
        default=None,
        description="Directory for secret records (defaults to <data_dir>/secrets)",
    )
    open_browser: bool = True
    start_callback_server: bool = True
    flow_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for a callback")


# --- PKCE and flow state ---


class PKCEParams(BaseModel):
    """PKCE verifier/challenge pair plus the CSRF state token for one flow attempt."""

    model_config = ConfigDict(frozen=True)

    code_verifier: str
    code_challenge: str
    code_challenge_method: Literal["S256"] = "S256"
    state: str


class OAuthFlowState(BaseModel):
    """In-memory record of the single pending sign-in flow.

    ``completed`` flips to ``True`` exactly once, when the flow resolves by
    callback, failure, cancellation, or timeout.
    """

    pkce: PKCEParams
    initiated_at: datetime
    completed: bool = False
    organization_id: Optional[str] = None


class StoredFlowState(BaseModel):
    """Durable copy of the pending flow's PKCE material.

    Persisted by :class:`~cloudlogin.auth.flow_store.PKCEStateManager` so that
    a callback arriving after a process restart can still be exchanged.
    """

    pkce: PKCEParams
    sign_in_uri: str
    created_at: datetime
    environment: CloudEnvironment
    organization_id: Optional[str] = None


class OAuthError(BaseModel):
    """Provider-reported OAuth error (``error``/``error_description``/``error_uri``)."""

    error: str
    error_description: Optional[str] = None
    error_uri: Optional[str] = None


class CallbackResult(BaseModel):
    """Parsed authorization redirect, produced once per delivery."""

    success: bool
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[OAuthError] = None


class AuthOptions(BaseModel):
    """Parameters for :meth:`~cloudlogin.auth.service.AuthService.authenticate`."""

    environment: CloudEnvironment = CloudEnvironment.PRODUCTION
    organization_id: Optional[str] = None
    cluster_id: Optional[str] = None
    force_new: bool = Field(
        default=False,
        description="Discard any stored, unexpired PKCE state and start fresh",
    )


# --- Tokens ---


class AuthenticatedUser(BaseModel):
    """User summary returned by the sessions endpoint."""

    id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    service_account: Optional[bool] = None
    social_connection: Optional[str] = None
    auth_type: Optional[str] = None


class AuthenticatedOrganization(BaseModel):
    """Organization summary returned by the sessions endpoint."""

    id: Optional[str] = None
    name: Optional[str] = None
    current: Optional[bool] = None


class OAuthTokens(BaseModel):
    """The full token set for one session.

    ``control_plane_token`` and ``data_plane_token`` may legitimately be
    absent. ``refresh_token_expires_at`` is an absolute ceiling fixed at
    first sign-in; refreshes copy it forward unchanged. ``environment``
    records which deployment issued the set so later refreshes go to the
    same token endpoint.
    """

    environment: Optional[CloudEnvironment] = None
    id_token: str
    control_plane_token: Optional[str] = None
    data_plane_token: Optional[str] = None
    refresh_token: str
    id_token_expires_at: datetime
    control_plane_token_expires_at: Optional[datetime] = None
    data_plane_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: datetime
    user: Optional[AuthenticatedUser] = None
    organization: Optional[AuthenticatedOrganization] = None


class AuthResult(BaseModel):
    """Terminal outcome of a sign-in or refresh."""

    success: bool
    error: Optional[str] = None
    tokens: Optional[OAuthTokens] = None


class TokenStatus(BaseModel):
    """Expiry status of a single token."""

    exists: bool
    expiring: bool
    expires_at: Optional[datetime] = None
    seconds_until_expiry: Optional[float] = None


class AllTokenStatus(BaseModel):
    """Status of every token in the stored set, plus session summary flags."""

    id_token: TokenStatus
    control_plane_token: TokenStatus
    data_plane_token: TokenStatus
    refresh_token: TokenStatus
    session_valid: bool
    needs_refresh: bool


# --- Exchange responses ---


class IdTokenExchangeResponse(BaseModel):
    """Token endpoint response to the authorization-code grant."""

    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: str
    id_token: str
    scope: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None


class ControlPlaneTokenExchangeResponse(BaseModel):
    """Normalised sessions-endpoint response."""

    token: str
    user: Optional[AuthenticatedUser] = None
    organization: Optional[AuthenticatedOrganization] = None
    refresh_token: Optional[str] = None


class DataPlaneTokenExchangeResponse(BaseModel):
    """Normalised access-tokens endpoint response."""

    token: str
    regional_token: Optional[str] = None


class TokenRefreshResponse(BaseModel):
    """Token endpoint response to the refresh-token grant."""

    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: str
    expires_in: Optional[int] = None
    token_type: Optional[str] = None


class TokenExpiringEvent(BaseModel):
    """Payload of the token store's expiring-token notification."""

    token_type: Literal["id_token", "control_plane_token", "data_plane_token"]
    expires_at: datetime
