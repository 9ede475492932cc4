from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Header, Request

from propauth.logging import get_logger
from propauth.service.errors import AccountNotVerified, PermissionDenied
from propauth.service.rbac import role_at_least
from propauth.service.runtime import get_runtime
from propauth.storage.models import AuthContext

logger = get_logger(__name__)

Guard = Callable[..., Awaitable[AuthContext]]


async def require_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the bearer token into an AuthContext or fail with 401."""
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    request.state.principal = principal
    return principal


def require_role(*roles: str) -> Guard:
    allowed = frozenset(roles)

    async def _guard(principal: AuthContext = Depends(require_auth)) -> AuthContext:
        if principal.role not in allowed:
            logger.info("role_denied", user_id=principal.user_id, role=principal.role)
            raise PermissionDenied("insufficient role", detail={"required_roles": sorted(allowed)})
        return principal

    return _guard


def require_min_role(minimum: str) -> Guard:
    async def _guard(principal: AuthContext = Depends(require_auth)) -> AuthContext:
        if not role_at_least(principal.role, minimum):
            logger.info("role_denied", user_id=principal.user_id, role=principal.role)
            raise PermissionDenied("insufficient role", detail={"minimum_role": minimum})
        return principal

    return _guard


def require_permission(permission: str) -> Guard:
    async def _guard(principal: AuthContext = Depends(require_auth)) -> AuthContext:
        allowed = await get_runtime().auth.has_permission(principal, permission)
        if not allowed:
            logger.info("permission_denied", user_id=principal.user_id, permission=permission)
            raise PermissionDenied(detail={"permission": permission})
        return principal

    return _guard


def require_verified(*, email: bool = False, phone: bool = False) -> Guard:
    """Require the named channels to be verified; with neither flag, any one will do."""

    async def _guard(principal: AuthContext = Depends(require_auth)) -> AuthContext:
        user = await get_runtime().auth.get_user(principal.user_id)
        if email and not user.email_verified:
            raise AccountNotVerified("email address is not verified")
        if phone and not user.phone_verified:
            raise AccountNotVerified("phone number is not verified")
        if not (email or phone) and not (user.email_verified or user.phone_verified):
            raise AccountNotVerified()
        return principal

    return _guard


def require_resource_access(resource_type: str, action: str, *, param: str = "resource_id") -> Guard:
    """Check ``resource_type:action`` against the resource named by a path parameter."""

    async def _guard(
        request: Request, principal: AuthContext = Depends(require_auth)
    ) -> AuthContext:
        resource_id = request.path_params.get(param)
        if not resource_id:
            raise PermissionDenied("resource id missing", detail={"param": param})
        await get_runtime().auth.check_resource_access(principal, resource_type, resource_id, action)
        return principal

    return _guard
