import pytest

from authkernel.service.roles import IDENTITY_ADMINS, Decision, RoleGuard
from authkernel.storage.models import Role


class TestRoleGuard:
    """Deny-by-default role membership checks."""

    def test_member_is_allowed(self):
        assert RoleGuard.check(Role.ADMIN, IDENTITY_ADMINS) is Decision.ALLOW
        assert RoleGuard.check("hr", IDENTITY_ADMINS) is Decision.ALLOW

    def test_non_member_is_denied(self):
        assert RoleGuard.check(Role.STUDENT, IDENTITY_ADMINS) is Decision.DENY

    def test_empty_requirement_denies(self):
        assert RoleGuard.check(Role.ADMIN, []) is Decision.DENY

    @pytest.mark.parametrize("resolved", [None, "", "superuser"])
    def test_unknown_role_denies(self, resolved):
        assert RoleGuard.check(resolved, [Role.ADMIN, Role.STUDENT]) is Decision.DENY

    def test_unknown_required_entries_are_ignored(self):
        assert RoleGuard.allows("student", ["wizard", "student"])
        assert not RoleGuard.allows("student", ["wizard"])

    def test_string_roles_are_case_insensitive(self):
        assert RoleGuard.allows("Instructor", ["INSTRUCTOR"])
