"""Pydantic schemas for authentication."""

from uuid import UUID

from pydantic import BaseModel

from src.auth.permissions import UserRole


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from the access token."""

    id: UUID
    email: str | None = None
    role: UserRole = UserRole.STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
