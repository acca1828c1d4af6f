"""The four network exchanges of the sign-in chain and their compositions.

1. Authorization code -> ID token (identity provider token endpoint).
2. ID token -> control-plane token (``<base>/api/sessions``).
3. Control-plane token -> data-plane token (``<base>/api/access_tokens``).
4. Refresh token -> new ID token (identity provider token endpoint).

Steps 2 and 3 live on the cloud web base URI, not the API URI.
:func:`perform_full_token_exchange` chains 1 -> 2 -> 3 and
:func:`perform_token_refresh` chains 4 -> 2 -> (3); in both, step 3 is
optional and its failure is logged and skipped.

Every failure surfaces as :class:`~cloudlogin.exceptions.TokenExchangeError`
carrying the provider's error body (when parseable) and the HTTP status.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from cloudlogin.auth.endpoints import (
    ACCESS_TOKENS_ENDPOINT,
    CONTROL_PLANE_TOKEN_LIFETIME,
    DATA_PLANE_TOKEN_LIFETIME,
    ID_TOKEN_LIFETIME,
    REFRESH_TOKEN_ABSOLUTE_LIFETIME,
    SESSIONS_ENDPOINT,
    calculate_token_expiry,
    utcnow,
)
from cloudlogin.exceptions import TokenExchangeError
from cloudlogin.models import (
    AuthenticatedOrganization,
    AuthenticatedUser,
    CloudEnvironment,
    ControlPlaneTokenExchangeResponse,
    DataPlaneTokenExchangeResponse,
    IdTokenExchangeResponse,
    OAuthConfig,
    OAuthError,
    OAuthTokens,
    TokenRefreshResponse,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0

_AUTH_TOKEN_COOKIE = re.compile(r"auth_token=([^;]+)")


def _post(url: str, step: str, **kwargs: Any) -> httpx.Response:
    """POST to *url*, translating any failure into :class:`TokenExchangeError`.

    Args:
        url: Endpoint to call.
        step: Human-readable step description used in error messages
            (e.g. ``"exchange code for ID token"``).
        **kwargs: Forwarded to :func:`httpx.post`.
    """
    headers = {"Accept": "application/json", **kwargs.pop("headers", {})}
    try:
        response = httpx.post(url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        oauth_error = parse_error_response(exc.response)
        detail = oauth_error.error if oauth_error else exc.response.reason_phrase
        raise TokenExchangeError(
            f"Failed to {step}: {detail}",
            oauth_error=oauth_error,
            status_code=exc.response.status_code,
        ) from exc
    except httpx.HTTPError as exc:
        raise TokenExchangeError(f"Failed to {step}: {exc}") from exc
    return response


def _json_body(response: httpx.Response, step: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise TokenExchangeError(
            f"Failed to {step}: response body is not JSON",
            status_code=response.status_code,
        ) from exc
    if not isinstance(data, dict):
        raise TokenExchangeError(
            f"Failed to {step}: unexpected response shape",
            status_code=response.status_code,
        )
    return data


def _text(value: Any) -> Optional[str]:
    """Coerce an identifier-like JSON value to ``str``; drop objects and lists."""
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _flag(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def parse_error_response(response: httpx.Response) -> Optional[OAuthError]:
    """Extract a provider error from a failed response body.

    Understands the OAuth shape (``error``/``error_description``/``error_uri``)
    and the generic ``{"message": ...}`` shape used by the cloud endpoints.
    Non-JSON bodies yield ``None``.
    """
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, str):
        return OAuthError(
            error=error,
            error_description=body.get("error_description") or body.get("message"),
            error_uri=body.get("error_uri"),
        )
    if error or body.get("message"):
        return OAuthError(
            error="unknown_error",
            error_description=body.get("error_description") or body.get("message"),
        )
    return None


def extract_auth_token(response: httpx.Response, data: dict[str, Any]) -> str:
    """Find the control-plane token in a sessions response.

    Checks the ``token`` then ``auth_token`` body fields and finally any
    ``auth_token`` cookie in the ``Set-Cookie`` headers.

    Raises:
        TokenExchangeError: If no token is present anywhere.
    """
    for key in ("token", "auth_token"):
        value = data.get(key)
        if value:
            return str(value)
    for header in response.headers.get_list("set-cookie"):
        match = _AUTH_TOKEN_COOKIE.search(header)
        if match:
            logger.debug("Control-plane token taken from the auth_token cookie")
            return match.group(1)
    raise TokenExchangeError("No auth token found in response", status_code=response.status_code)


def exchange_code_for_id_token(
    config: OAuthConfig, code: str, code_verifier: str
) -> IdTokenExchangeResponse:
    """Exchange an authorization code for ID, access, and refresh tokens.

    Args:
        config: Endpoint record for the flow's environment.
        code: Authorization code from the callback.
        code_verifier: The PKCE verifier bound to the authorization request.

    Raises:
        TokenExchangeError: On a non-2xx response, a transport failure, or
            a body missing ``id_token``/``refresh_token``.
    """
    step = "exchange code for ID token"
    response = _post(
        config.token_uri,
        step,
        data={
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": config.redirect_uri,
        },
    )
    data = _json_body(response, step)
    try:
        return IdTokenExchangeResponse.model_validate(data)
    except ValidationError as exc:
        raise TokenExchangeError(
            f"Failed to {step}: incomplete token response",
            status_code=response.status_code,
        ) from exc


def exchange_id_token_for_control_plane_token(
    ccloud_base_uri: str,
    id_token: str,
    organization_id: Optional[str] = None,
) -> ControlPlaneTokenExchangeResponse:
    """Create a control-plane session from an ID token.

    Args:
        ccloud_base_uri: Cloud web base URI (not the API URI).
        id_token: ID token from step 1 or a refresh.
        organization_id: Organization to select for the session.

    Returns:
        The session token with user/organization summaries and the
        refresh token, when the endpoint rotated it.
    """
    step = "exchange ID token for control plane token"
    body: dict[str, str] = {"id_token": id_token}
    if organization_id:
        body["org_resource_id"] = organization_id

    response = _post(f"{ccloud_base_uri}{SESSIONS_ENDPOINT}", step, json=body)
    data = _json_body(response, step)
    token = extract_auth_token(response, data)

    user = None
    user_data = data.get("user")
    if isinstance(user_data, dict) and user_data:
        user = AuthenticatedUser(
            id=_text(user_data.get("resource_id") or user_data.get("id")),
            email=_text(user_data.get("email")),
            first_name=_text(user_data.get("first_name")),
            last_name=_text(user_data.get("last_name")),
            service_account=_flag(user_data.get("service_account")),
            social_connection=_text(user_data.get("social_connection")),
            auth_type=_text(user_data.get("auth_type")),
        )

    organization = None
    account = data.get("account")
    if isinstance(account, dict) and account:
        organization = AuthenticatedOrganization(
            id=_text(account.get("resource_id") or account.get("id")),
            name=_text(account.get("name")),
            current=_flag(account.get("current")),
        )

    return ControlPlaneTokenExchangeResponse(
        token=token,
        user=user,
        organization=organization,
        refresh_token=_text(data.get("refresh_token")),
    )


def exchange_control_plane_token_for_data_plane_token(
    ccloud_base_uri: str,
    control_plane_token: str,
    cluster_id: Optional[str] = None,
) -> DataPlaneTokenExchangeResponse:
    """Obtain a data-plane token, bearer-authenticated with the control-plane token."""
    step = "exchange control plane token for data plane token"
    body: dict[str, str] = {}
    if cluster_id:
        body["cluster_id"] = cluster_id

    response = _post(
        f"{ccloud_base_uri}{ACCESS_TOKENS_ENDPOINT}",
        step,
        json=body,
        headers={"Authorization": f"Bearer {control_plane_token}"},
    )
    data = _json_body(response, step)
    token = data.get("token") or data.get("access_token")
    if not token:
        raise TokenExchangeError(
            f"Failed to {step}: no token in response", status_code=response.status_code
        )
    return DataPlaneTokenExchangeResponse(token=token, regional_token=data.get("regional_token"))


def refresh_tokens(config: OAuthConfig, refresh_token: str) -> TokenRefreshResponse:
    """Redeem a refresh token for a new ID token (and possibly a rotated refresh token)."""
    step = "refresh tokens"
    response = _post(
        config.token_uri,
        step,
        data={
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "refresh_token": refresh_token,
        },
    )
    data = _json_body(response, step)
    try:
        return TokenRefreshResponse.model_validate(data)
    except ValidationError as exc:
        raise TokenExchangeError(
            f"Failed to {step}: incomplete token response",
            status_code=response.status_code,
        ) from exc


def _try_data_plane_token(
    ccloud_base_uri: str,
    control_plane_token: str,
    cluster_id: Optional[str],
    now: datetime,
) -> tuple[Optional[str], Optional[datetime]]:
    try:
        response = exchange_control_plane_token_for_data_plane_token(
            ccloud_base_uri, control_plane_token, cluster_id
        )
    except TokenExchangeError as exc:
        logger.warning("Continuing without a data plane token: %s", exc)
        return None, None
    return response.token, calculate_token_expiry(DATA_PLANE_TOKEN_LIFETIME, now)


def perform_full_token_exchange(
    config: OAuthConfig,
    code: str,
    code_verifier: str,
    organization_id: Optional[str] = None,
    cluster_id: Optional[str] = None,
    now: Optional[datetime] = None,
    environment: Optional[CloudEnvironment] = None,
) -> OAuthTokens:
    """Run the complete code -> ID -> control-plane -> data-plane chain.

    All expiries derive from one instant captured before the first request,
    so the issued tokens expire consistently relative to each other.

    Args:
        config: Endpoint record for the flow's environment.
        code: Authorization code from the callback.
        code_verifier: The flow's PKCE verifier.
        organization_id: Organization to select for the session.
        cluster_id: Cluster to scope the data-plane token to.
        now: Override for the captured instant.
        environment: Deployment to record on the issued set.

    Returns:
        The new token set. ``data_plane_token`` is ``None`` when step 3
        failed.

    Raises:
        TokenExchangeError: If step 1 or step 2 fails.
    """
    if now is None:
        now = utcnow()

    id_response = exchange_code_for_id_token(config, code, code_verifier)
    cp_response = exchange_id_token_for_control_plane_token(
        config.ccloud_base_uri, id_response.id_token, organization_id
    )
    dp_token, dp_expires_at = _try_data_plane_token(
        config.ccloud_base_uri, cp_response.token, cluster_id, now
    )

    return OAuthTokens(
        environment=environment,
        id_token=id_response.id_token,
        control_plane_token=cp_response.token,
        data_plane_token=dp_token,
        refresh_token=cp_response.refresh_token or id_response.refresh_token,
        id_token_expires_at=calculate_token_expiry(ID_TOKEN_LIFETIME, now),
        control_plane_token_expires_at=calculate_token_expiry(CONTROL_PLANE_TOKEN_LIFETIME, now),
        data_plane_token_expires_at=dp_expires_at,
        refresh_token_expires_at=calculate_token_expiry(REFRESH_TOKEN_ABSOLUTE_LIFETIME, now),
        user=cp_response.user,
        organization=cp_response.organization,
    )


def perform_token_refresh(
    config: OAuthConfig,
    current_tokens: OAuthTokens,
    organization_id: Optional[str] = None,
    cluster_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OAuthTokens:
    """Refresh the session: refresh grant -> control-plane -> (data-plane).

    The data-plane step only runs when the current set already had a
    data-plane token or a *cluster_id* is requested. The absolute
    ``refresh_token_expires_at`` of *current_tokens* is carried over
    unchanged.

    Raises:
        TokenExchangeError: If the refresh grant or the session exchange
            fails.
    """
    if now is None:
        now = utcnow()

    refresh_response = refresh_tokens(config, current_tokens.refresh_token)
    cp_response = exchange_id_token_for_control_plane_token(
        config.ccloud_base_uri, refresh_response.id_token, organization_id
    )

    dp_token: Optional[str] = None
    dp_expires_at: Optional[datetime] = None
    if current_tokens.data_plane_token or cluster_id:
        dp_token, dp_expires_at = _try_data_plane_token(
            config.ccloud_base_uri, cp_response.token, cluster_id, now
        )

    return OAuthTokens(
        environment=current_tokens.environment,
        id_token=refresh_response.id_token,
        control_plane_token=cp_response.token,
        data_plane_token=dp_token,
        refresh_token=refresh_response.refresh_token or current_tokens.refresh_token,
        id_token_expires_at=calculate_token_expiry(ID_TOKEN_LIFETIME, now),
        control_plane_token_expires_at=calculate_token_expiry(CONTROL_PLANE_TOKEN_LIFETIME, now),
        data_plane_token_expires_at=dp_expires_at,
        refresh_token_expires_at=current_tokens.refresh_token_expires_at,
        user=cp_response.user or current_tokens.user,
        organization=cp_response.organization or current_tokens.organization,
    )
