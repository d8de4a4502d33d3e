"""JWT access-token verification.

Tokens are issued by the main site's auth layer and shared via
``JWT_SECRET_KEY``; billing only needs to read the ``sub`` claim.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from holiday_programs.config import settings


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """Mint an access token for ``user_id``.

    Used by tests and internal tooling; end-user tokens come from the auth
    service with the same claims.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    claims = {"sub": user_id, "exp": expire, "iat": now, "type": "access"}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
