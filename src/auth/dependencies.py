"""FastAPI dependencies for authentication.

Provides dependency injection for:
- Current user extraction from JWT
- Role-based access control
- Client information for session audit
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from pydantic import ValidationError

from src.auth.permissions import UserRole
from src.auth.schemas import AuthenticatedUser
from src.auth.security import decode_access_token
from src.core.context import set_user_id


def get_token_from_header(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: FastAPI request

    Returns:
        Token string or None if not present
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    expected_parts = 2
    parts = auth_header.split()
    if len(parts) != expected_parts or parts[0].lower() != "bearer":
        return None

    return parts[1]


async def get_client_info(request: Request) -> tuple[str | None, str | None]:
    """Extract client information recorded on viewing sessions.

    Returns:
        Tuple of (user_agent, ip_address)
    """
    user_agent = request.headers.get("user-agent")

    # IP detection order: X-Forwarded-For > X-Real-IP > client.host
    ip_address = (
        request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else None)
    )

    return user_agent, ip_address


async def get_current_user(
    token: Annotated[str | None, Depends(get_token_from_header)],
) -> AuthenticatedUser:
    """Get current authenticated user from JWT token.

    Raises:
        HTTPException(401): If token is missing, invalid, or expired
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_access_token(token)
        user = AuthenticatedUser(
            id=payload["sub"],
            email=payload.get("email"),
            role=payload.get("role", UserRole.STUDENT.value),
        )
    except (JWTError, ValidationError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    # Set user_id in context for logging
    set_user_id(str(user.id))
    return user


def require_role(*allowed_roles: UserRole):
    """Create dependency requiring specific role(s).

    Example:
        @router.get("/admin-only")
        async def admin_endpoint(
            user: Annotated[AuthenticatedUser, Depends(require_role(UserRole.ADMIN))]
        ):
            ...
    """

    async def role_checker(
        user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    ) -> AuthenticatedUser:
        if user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return role_checker


# ==============================================================================
# Type Aliases for Cleaner Code
# ==============================================================================

CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
AdminUser = Annotated[AuthenticatedUser, Depends(require_role(UserRole.ADMIN))]
ClientInfo = Annotated[tuple[str | None, str | None], Depends(get_client_info)]
