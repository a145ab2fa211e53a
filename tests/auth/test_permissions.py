"""Tests for auth permissions."""

import pytest

from src.auth.permissions import (
    ROLE_HIERARCHY,
    UserRole,
    get_role_level,
    has_permission,
    is_admin,
)


class TestUserRole:
    """Tests for UserRole enum."""

    def test_role_values(self) -> None:
        """Roles should have correct string values."""
        assert UserRole.STUDENT.value == "student"
        assert UserRole.INSTRUCTOR.value == "instructor"
        assert UserRole.ADMIN.value == "admin"

    def test_role_hierarchy(self) -> None:
        """Roles should have correct hierarchy levels."""
        assert ROLE_HIERARCHY[UserRole.STUDENT] == 0
        assert ROLE_HIERARCHY[UserRole.INSTRUCTOR] == 1
        assert ROLE_HIERARCHY[UserRole.ADMIN] == 2

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
            (UserRole.INSTRUCTOR, 1),
            (UserRole.ADMIN, 2),
            ("student", 0),
            ("instructor", 1),
            ("admin", 2),
        ],
    )
    def test_known_roles(self, role: UserRole | str, expected_level: int) -> None:
        """Should return correct level for enum and string roles."""
        assert get_role_level(role) == expected_level

    def test_invalid_role_returns_zero(self) -> None:
        """Invalid roles should return level 0."""
        assert get_role_level("invalid") == 0
        assert get_role_level("superadmin") == 0


class TestHasPermission:
    """Tests for has_permission function."""

    def test_admin_has_all_permissions(self) -> None:
        for role in UserRole:
            assert has_permission(UserRole.ADMIN, role) is True

    def test_instructor_permissions(self) -> None:
        assert has_permission(UserRole.INSTRUCTOR, UserRole.STUDENT) is True
        assert has_permission(UserRole.INSTRUCTOR, UserRole.INSTRUCTOR) is True
        assert has_permission(UserRole.INSTRUCTOR, UserRole.ADMIN) is False

    def test_student_permissions(self) -> None:
        assert has_permission(UserRole.STUDENT, UserRole.STUDENT) is True
        assert has_permission(UserRole.STUDENT, UserRole.INSTRUCTOR) is False
        assert has_permission(UserRole.STUDENT, UserRole.ADMIN) is False

    def test_string_roles(self) -> None:
        """Should work with string role values."""
        assert has_permission("admin", "student") is True
        assert has_permission("student", "admin") is False
        assert has_permission("instructor", "student") is True


class TestRolePredicates:
    """Tests for the is_admin helper."""

    def test_is_admin(self) -> None:
        assert is_admin(UserRole.ADMIN) is True
        assert is_admin("admin") is True
        assert is_admin(UserRole.INSTRUCTOR) is False
