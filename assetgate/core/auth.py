"""
Auth utilities for the assetgate API.

Verifies HS256 bearer JWTs issued by the auth service and resolves the
caller against the user directory. There is exactly one decode path,
verify_access_token, and it always checks the signature.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

import jwt
from fastapi import Depends, Header

from assetgate.core.config import settings
from assetgate.core.database import ensure_utc, utc_now
from assetgate.core.errors import AuthenticationError, PermissionError
from assetgate.features.users.service import get_user
from assetgate.models.user import User

logger = logging.getLogger("assetgate")


@dataclass(frozen=True)
class TokenVerification:
    """Result of verifying a bearer token: either claims or a failure reason."""
    ok: bool
    user_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def issue_access_token(
    user: User,
    *,
    expires_in: timedelta = timedelta(hours=1),
    now: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> str:
    """Mint a token the way the auth service does (tests and local tooling)."""
    now = ensure_utc(now) or utc_now()
    claims: Dict[str, Any] = {
        "sub": user.user_id,
        "role": user.role.value,
        "token_version": user.token_version,
        "iat": now,
        "exp": now + expires_in,
    }
    if settings.JWT_AUDIENCE:
        claims["aud"] = settings.JWT_AUDIENCE
    if settings.JWT_ISSUER:
        claims["iss"] = settings.JWT_ISSUER
    return jwt.encode(claims, secret or settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str, *, secret: Optional[str] = None) -> TokenVerification:
    """
    Verify signature, expiry, and (when configured) audience and issuer.

    Returns:
        TokenVerification(ok=True, user_id=sub, claims=...) or ok=False with error
    """
    key = secret or settings.JWT_SECRET
    if not key:
        return TokenVerification(ok=False, error="auth_not_configured")

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        return TokenVerification(ok=False, error="token_expired")
    except jwt.InvalidTokenError as e:
        logger.debug("auth.invalid_token", extra={"error_message": str(e)})
        return TokenVerification(ok=False, error="invalid_token")

    return TokenVerification(ok=True, user_id=str(claims["sub"]), claims=claims)


def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    """
    FastAPI dependency: resolve the caller from `Authorization: Bearer <jwt>`.

    Raises:
        AuthenticationError: missing or invalid token, unknown or inactive user,
            or a token minted before the user's token_version was bumped
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")

    verification = verify_access_token(authorization[len("Bearer "):].strip())
    if not verification.ok:
        raise AuthenticationError(f"Invalid token: {verification.error}")

    user = get_user(verification.user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("Unknown or inactive user")
    if verification.claims.get("token_version", 0) != user.token_version:
        raise AuthenticationError("Token has been revoked")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionError("Admin access required")
    return user
