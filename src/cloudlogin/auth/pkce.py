"""PKCE (:rfc:`7636`) verifier, challenge, and CSRF state generation.

All randomness comes from :mod:`secrets`. Verifiers and state tokens are
32 random bytes, base64url-encoded without padding (43 characters).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional
from urllib.parse import urlencode

from cloudlogin.auth.endpoints import CODE_CHALLENGE_METHOD, CODE_VERIFIER_BYTES, STATE_BYTES
from cloudlogin.models import OAuthConfig, PKCEParams


def base64url_encode(data: bytes) -> str:
    """Encode *data* as base64url with the trailing ``=`` padding stripped."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_random_string(n_bytes: int) -> str:
    """Return *n_bytes* of cryptographically secure randomness, base64url-encoded."""
    return base64url_encode(secrets.token_bytes(n_bytes))


def generate_code_verifier() -> str:
    return generate_random_string(CODE_VERIFIER_BYTES)


def generate_code_challenge(code_verifier: str) -> str:
    """Derive the S256 challenge: base64url(SHA-256(verifier))."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64url_encode(digest)


def generate_state() -> str:
    return generate_random_string(STATE_BYTES)


def generate_pkce_params() -> PKCEParams:
    """Generate a fresh verifier/challenge pair and an independent state token."""
    verifier = generate_code_verifier()
    return PKCEParams(
        code_verifier=verifier,
        code_challenge=generate_code_challenge(verifier),
        code_challenge_method=CODE_CHALLENGE_METHOD,
        state=generate_state(),
    )


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Return True if *code_challenge* was derived from *code_verifier*."""
    expected = generate_code_challenge(code_verifier)
    return hmac.compare_digest(expected.encode("ascii"), code_challenge.encode("ascii"))


def validate_state(received: Optional[str], expected: Optional[str]) -> bool:
    """Exact, case-sensitive comparison of the returned state with the one sent.

    A mismatch means the callback did not originate from this flow and must
    be treated as a CSRF attempt, not retried.
    """
    if received is None or expected is None:
        return received is expected
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def build_authorization_url(
    config: OAuthConfig,
    pkce: PKCEParams,
    organization_id: Optional[str] = None,
) -> str:
    """Assemble the authorize-endpoint URL for one flow.

    Args:
        config: Endpoint record for the target environment.
        pkce: The flow's PKCE parameters.
        organization_id: Optional organization hint forwarded to the
            identity provider.
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": pkce.code_challenge_method,
        "state": pkce.state,
    }
    if organization_id:
        params["organization_id"] = organization_id
    return f"{config.authorize_uri}?{urlencode(params)}"
