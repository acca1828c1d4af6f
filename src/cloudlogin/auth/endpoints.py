"""Per-environment endpoints, protocol constants, and token-expiry arithmetic.

Every URI and client ID here is compiled in. The identity provider only
accepts the registered redirect URIs, so the loopback port and path below
must stay stable across releases.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from cloudlogin.models import CloudEnvironment, OAuthConfig

# Token lifetimes, in seconds.
ID_TOKEN_LIFETIME = 60
CONTROL_PLANE_TOKEN_LIFETIME = 300
DATA_PLANE_TOKEN_LIFETIME = 300
REFRESH_TOKEN_ABSOLUTE_LIFETIME = 28800

MAX_REFRESH_ATTEMPTS = 50
TOKEN_CHECK_INTERVAL = 5.0
TOKEN_REFRESH_BUFFER = timedelta(milliseconds=30000)
FLOW_TIMEOUT = 300.0

CODE_VERIFIER_BYTES = 32
STATE_BYTES = 32
CODE_CHALLENGE_METHOD = "S256"
OAUTH_SCOPE = "email openid offline_access"

CALLBACK_HOST = "127.0.0.1"
CALLBACK_SERVER_PORT = 26636
CALLBACK_PATH = "/gateway/v1/callback-vscode-docs"
LOCAL_CALLBACK_URI = f"http://{CALLBACK_HOST}:{CALLBACK_SERVER_PORT}{CALLBACK_PATH}"

URI_SCHEME = "cloudlogin"
URI_CALLBACK_AUTHORITY = "auth"
URI_CALLBACK_PATH = "/callback"
EXTERNAL_CALLBACK_URI = f"{URI_SCHEME}://{URI_CALLBACK_AUTHORITY}{URI_CALLBACK_PATH}"

SESSIONS_ENDPOINT = "/api/sessions"
ACCESS_TOKENS_ENDPOINT = "/api/access_tokens"

_CLIENT_IDS = {
    CloudEnvironment.PRODUCTION: "Q93zdbI3FnltpEa9G1gg6tiMuoDDBkwS",
    CloudEnvironment.STAGING: "S5PWFB5AQoLRg7fmsCxtBrGhYwTTzmAu",
    CloudEnvironment.DEVELOPMENT: "cUmAgrkbAZSqSiy38JE7Ya3i7FwXmyUF",
}

_AUTHORIZE_URIS = {
    CloudEnvironment.PRODUCTION: "https://login.confluent.io/oauth/authorize",
    CloudEnvironment.STAGING: "https://login-stag.confluent-dev.io/oauth/authorize",
    CloudEnvironment.DEVELOPMENT: "https://login.confluent-dev.io/oauth/authorize",
}

_TOKEN_URIS = {
    CloudEnvironment.PRODUCTION: "https://login.confluent.io/oauth/token",
    CloudEnvironment.STAGING: "https://login-stag.confluent-dev.io/oauth/token",
    CloudEnvironment.DEVELOPMENT: "https://login.confluent-dev.io/oauth/token",
}

_CCLOUD_BASE_URIS = {
    CloudEnvironment.PRODUCTION: "https://confluent.cloud",
    CloudEnvironment.STAGING: "https://stag.cpdev.cloud",
    CloudEnvironment.DEVELOPMENT: "https://devel.cpdev.cloud",
}

_CONTROL_PLANE_URIS = {
    CloudEnvironment.PRODUCTION: "https://api.confluent.cloud",
    CloudEnvironment.STAGING: "https://api.stag.cpdev.cloud",
    CloudEnvironment.DEVELOPMENT: "https://api.devel.cpdev.cloud",
}


def get_oauth_config(
    environment: CloudEnvironment = CloudEnvironment.PRODUCTION,
    use_uri_scheme: bool = False,
) -> OAuthConfig:
    """Return the endpoint record for *environment*.

    Args:
        environment: Target deployment.
        use_uri_scheme: Register the ``cloudlogin://`` URI as redirect
            instead of the loopback listener.
    """
    return OAuthConfig(
        authorize_uri=_AUTHORIZE_URIS[environment],
        token_uri=_TOKEN_URIS[environment],
        ccloud_base_uri=_CCLOUD_BASE_URIS[environment],
        control_plane_uri=_CONTROL_PLANE_URIS[environment],
        client_id=_CLIENT_IDS[environment],
        redirect_uri=EXTERNAL_CALLBACK_URI if use_uri_scheme else LOCAL_CALLBACK_URI,
        scope=OAUTH_SCOPE,
    )


def detect_environment(base_path: Optional[str]) -> CloudEnvironment:
    """Guess the environment from a host name or base URL.

    ``stag`` anywhere in the value selects staging, ``dev``/``devel``
    selects development, anything else (including ``None``) production.
    """
    if not base_path:
        return CloudEnvironment.PRODUCTION
    lowered = base_path.lower()
    if "stag" in lowered:
        return CloudEnvironment.STAGING
    if "dev" in lowered:
        return CloudEnvironment.DEVELOPMENT
    return CloudEnvironment.PRODUCTION


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def calculate_token_expiry(
    lifetime_seconds: float, from_time: Optional[datetime] = None
) -> datetime:
    """Return *from_time* (default now) plus *lifetime_seconds*."""
    if from_time is None:
        from_time = utcnow()
    return from_time + timedelta(seconds=lifetime_seconds)


def is_token_expiring(
    expires_at: datetime,
    buffer: timedelta = TOKEN_REFRESH_BUFFER,
    now: Optional[datetime] = None,
) -> bool:
    """Return True if *expires_at* falls within *buffer* of *now*.

    A token exactly at the edge of the buffer counts as expiring.
    """
    if now is None:
        now = utcnow()
    return expires_at <= now + buffer


def time_until_expiry(expires_at: datetime, now: Optional[datetime] = None) -> timedelta:
    """Return the (possibly negative) time left before *expires_at*."""
    if now is None:
        now = utcnow()
    return expires_at - now
