"""Bearer token issuing and validation."""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from app.config import settings

ACCESS_TOKEN_TYPE = "access"


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Sign an access token.

    Sessions are issued by the identity provider in front of this API; this
    helper mints compatible tokens for scripts and tests.

    Args:
        data: Claims; ``sub`` must be the user's integer id as a string
        expires_delta: Lifetime, defaulting to ACCESS_TOKEN_EXPIRE_MINUTES
    """
    issued_at = datetime.now(UTC)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {**data, "iat": issued_at, "exp": issued_at + lifetime, "type": ACCESS_TOKEN_TYPE}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Verified claims of an access token, or None if it is invalid, expired or another type."""
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    return claims if claims.get("type") == ACCESS_TOKEN_TYPE else None
