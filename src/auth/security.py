"""Access token handling.

Tokens are issued by the identity service; this API only validates them.
``create_access_token`` exists for service-to-service calls and tests.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from src.config.settings import get_settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token.

    Args:
        data: Payload data (typically {"sub": user_id, "email": email, "role": role})
        expires_delta: Token lifetime (default from settings)

    Returns:
        Encoded JWT string with ``exp``, ``iat`` and ``type="access"`` claims
    """
    settings = get_settings()

    to_encode = data.copy()
    now = datetime.now(UTC)
    to_encode.update(
        {
            "exp": now
            + (
                expires_delta
                or timedelta(minutes=settings.auth_access_token_expire_minutes)
            ),
            "iat": now,
            "type": "access",
        }
    )

    return jwt.encode(
        to_encode,
        settings.auth_secret_key,
        algorithm=settings.auth_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and validate an access token.

    Raises:
        JWTError: If the signature is invalid, the token expired, the type is
            not ``access`` or the subject is missing
    """
    settings = get_settings()

    payload = jwt.decode(
        token,
        settings.auth_secret_key,
        algorithms=[settings.auth_algorithm],
    )

    if payload.get("type") != "access":
        msg = "Invalid token type: expected 'access'"
        raise JWTError(msg)

    if not payload.get("sub"):
        msg = "Access token missing sub claim"
        raise JWTError(msg)

    return payload
