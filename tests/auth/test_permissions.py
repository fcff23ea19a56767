"""Tests for auth permissions."""

from uuid import uuid4

import pytest

from src.auth.permissions import (
    ROLE_HIERARCHY,
    UserRole,
    can_view_viewer_data,
    get_role_level,
    has_permission,
)


class TestUserRole:
    """Tests for UserRole enum."""

    def test_role_values(self) -> None:
        """Roles should have correct string values."""
        assert UserRole.STUDENT.value == "student"
        assert UserRole.TEACHER.value == "teacher"
        assert UserRole.ADMIN.value == "admin"

    def test_all_roles_have_levels(self) -> None:
        """All UserRole members should have defined levels."""
        for role in UserRole:
            assert role in ROLE_HIERARCHY


class TestGetRoleLevel:
    """Tests for get_role_level function."""

    @pytest.mark.parametrize(
        "role,expected_level",
        [
            (UserRole.STUDENT, 0),
            (UserRole.TEACHER, 1),
            (UserRole.ADMIN, 2),
            ("student", 0),
            ("admin", 2),
        ],
    )
    def test_levels(self, role: UserRole | str, expected_level: int) -> None:
        """Should return correct level for enum and string roles."""
        assert get_role_level(role) == expected_level

    def test_invalid_role_returns_zero(self) -> None:
        """Invalid roles should return level 0."""
        assert get_role_level("invalid") == 0
        assert get_role_level("superadmin") == 0


class TestHasPermission:
    """Tests for has_permission function."""

    def test_admin_has_all_permissions(self) -> None:
        """Admin should have access to all role levels."""
        for role in UserRole:
            assert has_permission(UserRole.ADMIN, role) is True

    def test_student_lacks_higher_permissions(self) -> None:
        assert has_permission(UserRole.STUDENT, UserRole.STUDENT) is True
        assert has_permission(UserRole.STUDENT, UserRole.TEACHER) is False
        assert has_permission("student", "admin") is False

    def test_teacher_is_not_admin(self) -> None:
        assert has_permission(UserRole.TEACHER, UserRole.ADMIN) is False


class TestViewerData:
    """Tests for can_view_viewer_data."""

    def test_own_data(self) -> None:
        user_id = uuid4()
        assert can_view_viewer_data(UserRole.STUDENT, user_id, user_id) is True

    def test_other_viewer_requires_admin(self) -> None:
        assert can_view_viewer_data(UserRole.STUDENT, uuid4(), uuid4()) is False
        assert can_view_viewer_data(UserRole.TEACHER, uuid4(), uuid4()) is False
        assert can_view_viewer_data(UserRole.ADMIN, uuid4(), uuid4()) is True
