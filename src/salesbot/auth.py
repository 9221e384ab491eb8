"""Dashboard bearer-token verification — Ed25519 JWT validation.

Tokens are minted by whatever issues dashboard sessions; this module only
verifies them against the configured public key and extracts the
principal (``sub``). Whether that principal may act is decided by the
authorization registry, not here.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
from cryptography.hazmat.primitives.serialization import load_pem_public_key

logger = logging.getLogger(__name__)

DASHBOARD_AUDIENCE = "salesbot-dashboard"


class DashboardAuthError(Exception):
    """Raised when a dashboard token fails validation."""


def normalize_public_key(raw: str) -> str:
    """Accept a bare base64 key string or full PEM and return valid PEM."""
    stripped = raw.strip()
    if stripped.startswith("-----"):
        return stripped
    return f"-----BEGIN PUBLIC KEY-----\n{stripped}\n-----END PUBLIC KEY-----"


def key_fingerprint(raw: str) -> str:
    """Return last 8 chars of the base64 key body for display."""
    stripped = raw.strip()
    if stripped.startswith("-----"):
        lines = [ln for ln in stripped.splitlines() if not ln.startswith("-----")]
        b64 = "".join(lines).strip()
    else:
        b64 = stripped
    return b64[-8:] if len(b64) >= 8 else b64


def verify_dashboard_token(
    token: str,
    public_key_pem: str,
    *,
    audience: str = DASHBOARD_AUDIENCE,
) -> dict[str, Any]:
    """Verify an Ed25519-signed dashboard JWT.

    Args:
        token: The bearer token from the ``Authorization`` header.
        public_key_pem: Issuer public key, bare base64 or full PEM.
        audience: Required ``aud`` claim.

    Returns:
        Dict with ``principal_id`` (from ``sub``), ``exp`` and ``jti``.

    Raises:
        DashboardAuthError: On invalid, expired, tampered or incomplete tokens.
    """
    pem = normalize_public_key(public_key_pem)
    try:
        public_key = load_pem_public_key(pem.encode())
    except (ValueError, TypeError) as e:
        raise DashboardAuthError(f"Invalid dashboard public key: {e}") from e

    try:
        claims = jwt.decode(
            token,
            public_key,
            algorithms=["EdDSA"],
            audience=audience,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise DashboardAuthError("Token has expired.") from e
    except jwt.InvalidSignatureError as e:
        raise DashboardAuthError("Token signature is invalid.") from e
    except jwt.InvalidAudienceError as e:
        raise DashboardAuthError("Token is not meant for the dashboard.") from e
    except jwt.MissingRequiredClaimError as e:
        raise DashboardAuthError(f"Token missing claim: {e.claim}") from e
    except jwt.DecodeError as e:
        raise DashboardAuthError(f"Token could not be decoded: {e}") from e
    except jwt.InvalidTokenError as e:
        raise DashboardAuthError(f"Invalid token: {e}") from e

    principal_id = str(claims.get("sub") or "")
    if not principal_id:
        raise DashboardAuthError("Token has an empty subject.")

    return {
        "principal_id": principal_id,
        "exp": claims.get("exp"),
        "jti": claims.get("jti"),
    }
