"""Access token validation and role checks for the tracking API."""

from .permissions import UserRole
from .schemas import AuthenticatedUser


__all__ = ["AuthenticatedUser", "UserRole"]
