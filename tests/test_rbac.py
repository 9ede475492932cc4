"""Tests for role permissions, overrides and resource checks."""

from datetime import datetime, timezone

import pytest

from propauth.service.errors import NotFoundError, PermissionDenied, ValidationError
from propauth.service.rbac import (
    GRANT,
    MANAGEABLE_ROLES,
    REVOKE,
    ROLE_HIERARCHY,
    ROLE_PERMISSIONS,
    PermissionResolver,
    can_manage_role,
    get_role_permissions,
    role_at_least,
)
from propauth.storage.models import AuthContext, Role


@pytest.fixture
def resolver(store):
    return PermissionResolver(store)


def _context(user, role=None):
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    return AuthContext(
        user_id=user.id,
        email=user.email,
        role=role or user.role,
        session_id="session-1",
        token_id="token-1",
        issued_at=now,
        expires_at=now,
        agency_id=user.agency_id,
    )


class OwnedBy:
    """Resolver that allows access to a fixed set of resource ids."""

    def __init__(self, *resource_ids):
        self.resource_ids = set(resource_ids)

    def can_access(self, principal, resource_id, action):
        return resource_id in self.resource_ids


class TestRoleTables:
    def test_every_role_has_permissions(self):
        for role in Role.ALL:
            assert get_role_permissions(role), role

    def test_permission_names_are_resource_action(self):
        for permissions in ROLE_PERMISSIONS.values():
            for permission in permissions:
                resource, _, action = permission.partition(":")
                assert resource and action

    def test_no_inheritance_between_tiers(self):
        """Roles list their own sets; a higher role need not hold a lower role's permission."""
        assert "qr:scan" in ROLE_PERMISSIONS[Role.CARETAKER]
        assert "qr:scan" not in ROLE_PERMISSIONS[Role.SUPER_ADMIN]
        assert "profile:read" in ROLE_PERMISSIONS[Role.TENANT]
        assert "profile:read" not in ROLE_PERMISSIONS[Role.LANDLORD]

    def test_unknown_role_has_nothing(self):
        assert get_role_permissions("janitor") == []

    def test_hierarchy_order(self):
        ordered = sorted(ROLE_HIERARCHY, key=ROLE_HIERARCHY.get)
        assert ordered == [
            Role.SUPER_ADMIN,
            Role.AGENCY_ADMIN,
            Role.LANDLORD,
            Role.AGENT,
            Role.CARETAKER,
            Role.TENANT,
        ]

    @pytest.mark.parametrize(
        "role,minimum,expected",
        [
            (Role.SUPER_ADMIN, Role.TENANT, True),
            (Role.AGENT, Role.AGENT, True),
            (Role.CARETAKER, Role.AGENT, False),
            (Role.TENANT, Role.LANDLORD, False),
            ("janitor", Role.TENANT, False),
        ],
    )
    def test_role_at_least(self, role, minimum, expected):
        assert role_at_least(role, minimum) is expected

    def test_manageable_roles(self):
        assert set(MANAGEABLE_ROLES[Role.SUPER_ADMIN]) == set(Role.ALL)
        assert can_manage_role(Role.AGENCY_ADMIN, Role.AGENT)
        assert not can_manage_role(Role.AGENCY_ADMIN, Role.SUPER_ADMIN)
        assert can_manage_role(Role.LANDLORD, Role.CARETAKER)
        assert not can_manage_role(Role.LANDLORD, Role.AGENT)
        assert not can_manage_role(Role.TENANT, Role.TENANT)


class TestHasPermission:
    def test_role_grant(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)

        assert resolver.has_permission(tenant.id, "payments:create")
        assert not resolver.has_permission(tenant.id, "properties:create")

    def test_role_looked_up_when_not_given(self, resolver, make_user):
        landlord = make_user("l@example.com", password=None, role=Role.LANDLORD)

        assert resolver.has_permission(landlord.id, "properties:create")
        assert not resolver.has_permission("missing-user", "properties:create")

    def test_global_grant_adds_permission(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)
        resolver.set_override(tenant.id, "reports:read", GRANT)

        assert resolver.has_permission(tenant.id, "reports:read")
        assert "reports:read" in resolver.get_user_permissions(tenant.id)

    def test_revoke_beats_role(self, resolver, make_user):
        landlord = make_user("l@example.com", password=None, role=Role.LANDLORD)
        resolver.set_override(landlord.id, "properties:delete", REVOKE)

        assert not resolver.has_permission(landlord.id, "properties:delete")
        assert "properties:delete" not in resolver.get_user_permissions(landlord.id)

    def test_scoped_grant_only_for_that_resource(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)
        resolver.set_override(tenant.id, "units:update", GRANT, resource_id="unit-7")

        assert resolver.has_permission(tenant.id, "units:update", "unit-7")
        assert not resolver.has_permission(tenant.id, "units:update", "unit-8")
        assert not resolver.has_permission(tenant.id, "units:update")
        assert "units:update" not in resolver.get_user_permissions(tenant.id)

    def test_scoped_revoke_only_for_that_resource(self, resolver, make_user):
        agent = make_user("a@example.com", password=None, role=Role.AGENT)
        resolver.set_override(agent.id, "units:update", REVOKE, resource_id="unit-7")

        assert not resolver.has_permission(agent.id, "units:update", "unit-7")
        assert resolver.has_permission(agent.id, "units:update", "unit-8")

    def test_override_replaces_previous_effect(self, resolver, store, make_user):
        tenant = make_user("t@example.com", password=None)
        resolver.set_override(tenant.id, "payments:create", REVOKE)
        resolver.set_override(tenant.id, "payments:create", GRANT)

        assert len(store.list_permission_overrides(tenant.id)) == 1
        assert resolver.has_permission(tenant.id, "payments:create")

    def test_clear_override(self, resolver, make_user):
        landlord = make_user("l@example.com", password=None, role=Role.LANDLORD)
        resolver.set_override(landlord.id, "units:read", REVOKE)

        assert resolver.clear_override(landlord.id, "units:read") is True
        assert resolver.clear_override(landlord.id, "units:read") is False
        assert resolver.has_permission(landlord.id, "units:read")


class TestSetOverride:
    def test_rejects_bad_effect(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)

        with pytest.raises(ValidationError):
            resolver.set_override(tenant.id, "units:read", "maybe")

    def test_rejects_malformed_permission(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)

        with pytest.raises(ValidationError):
            resolver.set_override(tenant.id, "unitsread", GRANT)

    def test_unknown_user(self, resolver):
        with pytest.raises(NotFoundError):
            resolver.set_override("missing", "units:read", REVOKE)

    def test_records_granting_admin(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)

        override = resolver.set_override(tenant.id, "units:read", GRANT, granted_by="admin-1")

        assert override.granted_by == "admin-1"


class TestCheckResourceAccess:
    def test_super_admin_always_allowed(self, resolver, make_user):
        admin = make_user("root@example.com", password=None, role=Role.SUPER_ADMIN)

        resolver.check_resource_access(_context(admin), "properties", "prop-1", "delete")

    def test_missing_permission_denied(self, resolver, make_user):
        tenant = make_user("t@example.com", password=None)

        with pytest.raises(PermissionDenied) as excinfo:
            resolver.check_resource_access(_context(tenant), "properties", "prop-1", "update")

        assert excinfo.value.detail["permission"] == "properties:update"

    def test_ownership_resolver_decides(self, resolver, make_user):
        landlord = make_user("l@example.com", password=None, role=Role.LANDLORD)
        resolver.register_resolver("properties", OwnedBy("prop-1"))

        resolver.check_resource_access(_context(landlord), "properties", "prop-1", "update")
        with pytest.raises(PermissionDenied):
            resolver.check_resource_access(_context(landlord), "properties", "prop-2", "update")

    def test_no_resolver_means_denied(self, resolver, make_user):
        landlord = make_user("l@example.com", password=None, role=Role.LANDLORD)

        with pytest.raises(PermissionDenied):
            resolver.check_resource_access(_context(landlord), "properties", "prop-1", "update")

    def test_scoped_grant_skips_ownership(self, resolver, make_user):
        caretaker = make_user("c@example.com", password=None, role=Role.CARETAKER)
        resolver.set_override(caretaker.id, "properties:read", GRANT, resource_id="prop-9")

        resolver.check_resource_access(_context(caretaker), "properties", "prop-9", "read")
