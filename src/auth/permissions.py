"""Role-based access control for viewing data.

Hierarchical roles:
- ADMIN (level 2): Reviews security alerts, reads any viewer's progress
- TEACHER (level 1): Course instructor, watches like a student
- STUDENT (level 0): Watches lessons, reads own progress
"""

from enum import Enum
from uuid import UUID


class UserRole(str, Enum):
    """Roles carried in the access token."""

    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


ROLE_HIERARCHY: dict[UserRole, int] = {
    UserRole.STUDENT: 0,
    UserRole.TEACHER: 1,
    UserRole.ADMIN: 2,
}


def get_role_level(role: UserRole | str) -> int:
    """Get the permission level for a role (0 for unknown roles)."""
    if isinstance(role, str):
        try:
            role = UserRole(role)
        except ValueError:
            return 0
    return ROLE_HIERARCHY.get(role, 0)


def has_permission(user_role: UserRole | str, required_role: UserRole | str) -> bool:
    """Check if user has at least the required permission level.

    Examples:
        >>> has_permission(UserRole.ADMIN, UserRole.TEACHER)
        True
        >>> has_permission("student", "admin")
        False
    """
    return get_role_level(user_role) >= get_role_level(required_role)


def can_view_viewer_data(
    role: UserRole | str, user_id: UUID, target_user_id: UUID
) -> bool:
    """Viewers read their own progress; only admins read someone else's."""
    return user_id == target_user_id or has_permission(role, UserRole.ADMIN)
