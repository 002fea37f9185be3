"""JWT utilities.

Credentials are issued by the identity provider; this service only needs
to read the caller's identity back out of a bearer token.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from carelink.core.config import settings


def create_access_token(subject: str | int, extra: dict[str, Any] | None = None) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(subject),
        "exp": expire,
        "iat": now,
    }
    if extra:
        payload.update(extra)
    return jwt.encode(
        payload,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT. Returns payload or None if invalid."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
