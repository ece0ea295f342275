"""JWT utilities for tokens issued by the managed backend."""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from clinic_portal.config import settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token shaped like the backend's session tokens.

    Args:
        data: Payload data to encode (``sub``, ``user_role``, ...)
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=30))

    to_encode.update(
        {
            "exp": expire,
            "iat": datetime.now(UTC),
            "role": "authenticated",
        }
    )
    if settings.jwt_audience:
        to_encode.setdefault("aud", settings.jwt_audience)

    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token to decode

    Returns:
        Decoded payload or None if invalid
    """
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except JWTError:
        return None


def extract_user_role(payload: dict[str, Any]) -> str:
    """
    Get the portal role from token claims.

    The backend puts the role either in a custom ``user_role`` claim or in
    ``app_metadata.role``. Tokens without one are treated as patients.
    """
    role = payload.get("user_role")
    if not role:
        app_metadata = payload.get("app_metadata") or {}
        role = app_metadata.get("role")
    return role or "patient"
