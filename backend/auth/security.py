"""
Identity token verification.

Users sign in with an external identity provider; the API only verifies the
bearer tokens that provider issues. This module provides:
- Verification of provider-issued JWTs (signature, expiry, audience, issuer)
- Extraction of the identity claims the backend relies on
- Token minting for local development and tests (HMAC algorithms only)
"""

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import is_production_like

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS = ["HS256", "HS384", "HS512"]
SUPPORTED_ALGORITHMS = HMAC_ALGORITHMS + ["RS256", "RS384", "RS512", "ES256"]

# Validate identity token algorithm
ALGORITHM = os.environ.get("IDENTITY_ALGORITHM", "HS256")
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(
        f"⚠️  Unsupported IDENTITY_ALGORITHM={ALGORITHM}. Using HS256. "
        f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
    )
    ALGORITHM = "HS256"

# Asymmetric algorithms verify with the provider's public key, HMAC with a shared secret
if ALGORITHM in HMAC_ALGORITHMS:
    VERIFY_KEY = os.environ.get("IDENTITY_SECRET")
    if not VERIFY_KEY:
        # CRITICAL: In production, this MUST be set via environment variable
        if is_production_like():
            raise ValueError(
                "IDENTITY_SECRET environment variable is required in production "
                "when IDENTITY_ALGORITHM is an HMAC algorithm."
            )
        VERIFY_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
        logger.warning(
            "⚠️  IDENTITY_SECRET not set! Using temporary development key. "
            "This is INSECURE for production. Set IDENTITY_SECRET environment variable."
        )
else:
    VERIFY_KEY = os.environ.get("IDENTITY_PUBLIC_KEY")
    if not VERIFY_KEY:
        raise ValueError(f"IDENTITY_PUBLIC_KEY is required for IDENTITY_ALGORITHM={ALGORITHM}")

IDENTITY_AUDIENCE = os.environ.get("IDENTITY_AUDIENCE") or None
IDENTITY_ISSUER = os.environ.get("IDENTITY_ISSUER") or None


class IdentityError(Exception):
    """Raised when an identity token cannot be verified."""

    def __init__(self, message: str, expired: bool = False):
        super().__init__(message)
        self.message = message
        self.expired = expired


@dataclass(frozen=True)
class IdentityClaims:
    uid: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]


def verify_identity_token(token: str) -> IdentityClaims:
    """
    Verify a provider-issued identity token and extract its claims.

    Args:
        token: Encoded JWT from the Authorization header or request body

    Returns:
        IdentityClaims with the external user id, e-mail and profile fields

    Raises:
        IdentityError: If the token is malformed, expired, or lacks required claims

    Example:
        >>> claims = verify_identity_token(token)
        >>> claims.uid
        'a1b2c3'
    """
    logger.debug("Verifying identity token")
    try:
        payload = jwt.decode(
            token,
            VERIFY_KEY,
            algorithms=[ALGORITHM],
            audience=IDENTITY_AUDIENCE,
            issuer=IDENTITY_ISSUER,
            options={"verify_aud": IDENTITY_AUDIENCE is not None},
        )
    except ExpiredSignatureError:
        logger.info("Identity token expired")
        raise IdentityError("Token has expired", expired=True)
    except JWTError as e:
        logger.info(f"Identity token verification failed: {str(e)}")
        raise IdentityError("Invalid identity token")

    uid = payload.get("uid") or payload.get("user_id") or payload.get("sub")
    email = payload.get("email")
    if not uid or not email:
        logger.info("Identity token missing uid or email claim")
        raise IdentityError("Identity token is missing required claims")

    logger.debug(f"Identity token verified for uid: {uid}")
    return IdentityClaims(
        uid=str(uid),
        email=email,
        name=payload.get("name"),
        picture=payload.get("picture"),
    )


def create_identity_token(
    uid: str,
    email: str,
    name: Optional[str] = None,
    picture: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Mint an identity token signed with the configured HMAC secret.

    Only used for local development and tests; production tokens come from
    the identity provider.
    """
    if ALGORITHM not in HMAC_ALGORITHMS:
        raise RuntimeError("Identity tokens can only be minted locally with an HMAC algorithm")

    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else timedelta(hours=1))
    claims = {"sub": uid, "uid": uid, "email": email, "iat": now, "exp": expire}
    if name:
        claims["name"] = name
    if picture:
        claims["picture"] = picture
    if IDENTITY_AUDIENCE:
        claims["aud"] = IDENTITY_AUDIENCE
    if IDENTITY_ISSUER:
        claims["iss"] = IDENTITY_ISSUER

    return jwt.encode(claims, VERIFY_KEY, algorithm=ALGORITHM)
