from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from propauth.logging import get_logger
from propauth.service.errors import NotFoundError, PermissionDenied, ValidationError
from propauth.storage.directory import CredentialDirectory
from propauth.storage.models import AuthContext, Role, UserPermission, utcnow

logger = get_logger(__name__)

GRANT = "grant"
REVOKE = "revoke"


def _crud(resource: str, *extra: str) -> Tuple[str, ...]:
    return tuple(f"{resource}:{action}" for action in ("create", "read", "update", "delete", *extra))


def _only(resource: str, *actions: str) -> Tuple[str, ...]:
    return tuple(f"{resource}:{action}" for action in actions)


# Each role lists its full set; nothing is inherited from the tier below.
ROLE_PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    Role.SUPER_ADMIN: (
        *_only("system", "read", "update", "manage"),
        *_crud("users", "manage"),
        *_crud("agencies", "manage"),
        *_crud("properties", "manage"),
        *_crud("units", "manage"),
        *_crud("tenants", "manage"),
        *_crud("leases", "manage"),
        *_crud("payments", "manage", "process"),
        *_crud("maintenance", "manage"),
        *_crud("reports", "manage"),
        *_crud("agents", "manage"),
        *_crud("caretakers", "manage"),
        *_only("analytics", "view", "export"),
        *_only("audit", "view"),
        *_only("security", "manage"),
    ),
    Role.AGENCY_ADMIN: (
        *_only("agencies", "read", "update"),
        *_crud("users"),
        *_crud("properties", "manage"),
        *_crud("units", "manage"),
        *_crud("tenants", "manage"),
        *_crud("leases", "manage"),
        *_only("payments", "read", "update", "manage", "process"),
        *_crud("maintenance", "manage"),
        *_only("reports", "create", "read", "update"),
        *_crud("agents", "manage"),
        *_crud("caretakers", "manage"),
        *_only("analytics", "view"),
    ),
    Role.LANDLORD: (
        *_crud("properties", "manage"),
        *_crud("units", "manage"),
        *_crud("tenants", "manage"),
        *_crud("leases", "manage"),
        *_only("payments", "read", "update", "manage"),
        *_crud("maintenance", "manage"),
        *_only("reports", "create", "read"),
        *_crud("caretakers", "manage"),
        *_only("analytics", "view"),
    ),
    Role.AGENT: (
        *_only("properties", "read", "update"),
        *_only("units", "read", "update", "manage"),
        *_only("tenants", "create", "read", "update", "manage"),
        *_only("leases", "create", "read", "update"),
        *_only("payments", "read", "update", "process"),
        *_only("maintenance", "create", "read", "update", "manage"),
        *_only("reports", "create", "read"),
        *_only("caretakers", "read", "update"),
    ),
    Role.CARETAKER: (
        *_only("tasks", "create", "read", "update"),
        *_only("maintenance", "create", "read", "update"),
        *_only("units", "read", "update"),
        *_only("photos", "create", "read"),
        *_only("movements", "create", "read"),
        *_only("conditions", "create", "read", "update"),
        *_only("emergencies", "create", "read"),
        *_only("qr", "scan", "read"),
    ),
    Role.TENANT: (
        *_only("profile", "read", "update"),
        *_only("leases", "read"),
        *_only("payments", "create", "read"),
        *_only("maintenance", "create", "read"),
        *_only("units", "read"),
        *_only("messages", "create", "read"),
        *_only("documents", "read"),
    ),
}

# Lower level means more authority
ROLE_HIERARCHY: Dict[str, int] = {
    Role.SUPER_ADMIN: 1,
    Role.AGENCY_ADMIN: 2,
    Role.LANDLORD: 3,
    Role.AGENT: 4,
    Role.CARETAKER: 5,
    Role.TENANT: 6,
}

MANAGEABLE_ROLES: Dict[str, Tuple[str, ...]] = {
    Role.SUPER_ADMIN: Role.ALL,
    Role.AGENCY_ADMIN: (Role.LANDLORD, Role.AGENT, Role.CARETAKER, Role.TENANT),
    Role.LANDLORD: (Role.CARETAKER, Role.TENANT),
    Role.AGENT: (Role.TENANT,),
    Role.CARETAKER: (),
    Role.TENANT: (),
}


def get_role_permissions(role: str) -> List[str]:
    return list(ROLE_PERMISSIONS.get(role, ()))


def role_at_least(role: str, minimum: str) -> bool:
    """True when ``role`` sits at or above ``minimum`` in the hierarchy."""
    level = ROLE_HIERARCHY.get(role)
    floor = ROLE_HIERARCHY.get(minimum)
    if level is None or floor is None:
        return False
    return level <= floor


def can_manage_role(manager_role: str, target_role: str) -> bool:
    return target_role in MANAGEABLE_ROLES.get(manager_role, ())


class ResourceOwnershipResolver(Protocol):
    """Answers whether a principal may act on one concrete resource.

    Implemented by the resource services (properties, units, leases...)
    that own the relationship data.
    """

    def can_access(self, principal: AuthContext, resource_id: str, action: str) -> bool: ...


class PermissionResolver:
    def __init__(self, directory: CredentialDirectory) -> None:
        self.directory = directory
        self._resolvers: Dict[str, ResourceOwnershipResolver] = {}

    def register_resolver(self, resource_type: str, resolver: ResourceOwnershipResolver) -> None:
        self._resolvers[resource_type] = resolver

    def get_role_permissions(self, role: str) -> List[str]:
        return get_role_permissions(role)

    def _role_for(self, user_id: str, role: Optional[str]) -> Optional[str]:
        if role is not None:
            return role
        user = self.directory.get_user(user_id)
        return user.role if user else None

    def has_permission(
        self,
        user_id: str,
        permission: str,
        resource_id: Optional[str] = None,
        *,
        role: Optional[str] = None,
    ) -> bool:
        """Role grant, then explicit overrides; a matching revoke always wins.

        Overrides without a resource id apply everywhere; scoped overrides
        apply only when the same ``resource_id`` is asked about.
        """
        role = self._role_for(user_id, role)
        if role is None:
            return False
        relevant = [
            o
            for o in self.directory.list_permission_overrides(user_id)
            if o.permission == permission and (o.resource_id is None or o.resource_id == resource_id)
        ]
        if any(o.effect == REVOKE for o in relevant):
            return False
        if permission in ROLE_PERMISSIONS.get(role, ()):
            return True
        return any(o.effect == GRANT for o in relevant)

    def get_user_permissions(self, user_id: str, *, role: Optional[str] = None) -> List[str]:
        """Effective global permissions: role set plus global grants minus global revokes."""
        role = self._role_for(user_id, role)
        if role is None:
            return []
        permissions = list(ROLE_PERMISSIONS.get(role, ()))
        for override in self.directory.list_permission_overrides(user_id):
            if override.resource_id is not None:
                continue
            if override.effect == GRANT and override.permission not in permissions:
                permissions.append(override.permission)
        revoked = {
            o.permission
            for o in self.directory.list_permission_overrides(user_id)
            if o.effect == REVOKE and o.resource_id is None
        }
        return [p for p in permissions if p not in revoked]

    def check_resource_access(
        self, principal: AuthContext, resource_type: str, resource_id: str, action: str
    ) -> None:
        """Raise PermissionDenied unless the principal may ``action`` this resource."""
        if principal.role == Role.SUPER_ADMIN:
            return
        permission = f"{resource_type}:{action}"
        if not self.has_permission(principal.user_id, permission, resource_id, role=principal.role):
            raise PermissionDenied(detail={"permission": permission})
        scoped_grant = any(
            o.effect == GRANT and o.permission == permission and o.resource_id == resource_id
            for o in self.directory.list_permission_overrides(principal.user_id)
        )
        if scoped_grant:
            return
        resolver = self._resolvers.get(resource_type)
        if resolver is None or not resolver.can_access(principal, resource_id, action):
            logger.info(
                "resource_access_denied",
                user_id=principal.user_id,
                resource_type=resource_type,
                resource_id=resource_id,
                action=action,
            )
            raise PermissionDenied(detail={"permission": permission, "resource_id": resource_id})

    def set_override(
        self,
        user_id: str,
        permission: str,
        effect: str,
        *,
        resource_id: Optional[str] = None,
        granted_by: Optional[str] = None,
    ) -> UserPermission:
        if effect not in (GRANT, REVOKE):
            raise ValidationError("effect must be grant or revoke", detail={"field": "effect"})
        if ":" not in permission:
            raise ValidationError(
                "permission must look like resource:action", detail={"field": "permission"}
            )
        if self.directory.get_user(user_id) is None:
            raise NotFoundError("user not found")
        override = self.directory.set_permission_override(
            UserPermission(
                user_id=user_id,
                permission=permission,
                effect=effect,
                resource_id=resource_id,
                granted_by=granted_by,
                created_at=utcnow(),
            )
        )
        logger.info(
            "permission_override_set",
            user_id=user_id,
            permission=permission,
            effect=effect,
            resource_id=resource_id,
            granted_by=granted_by,
        )
        return override

    def clear_override(
        self, user_id: str, permission: str, resource_id: Optional[str] = None
    ) -> bool:
        return self.directory.delete_permission_override(user_id, permission, resource_id)
