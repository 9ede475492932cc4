from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from propauth.api.guards import require_auth, require_permission
from propauth.api.schemas import (
    AccountLockResponse,
    AuthResponse,
    DeviceInfoIn,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    OTPSentResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionOverrideRequest,
    PhoneLoginRequest,
    PhoneVerifyRequest,
    RegisterRequest,
    ResendVerificationRequest,
    SessionResponse,
    TokenRefreshRequest,
    UserResponse,
)
from propauth.logging import get_logger
from propauth.service.errors import TooManyAttempts
from propauth.service.rbac import MANAGEABLE_ROLES, ROLE_HIERARCHY, ROLE_PERMISSIONS
from propauth.service.runtime import check_rate_limit, get_runtime
from propauth.storage.models import AuthContext, DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60
USERS_MANAGE = "users:manage"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Token-bucket check for one key; raises TooManyAttempts when empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("http_rate_limited", scope=key.rsplit(":", 1)[0])
        raise TooManyAttempts(
            "rate limit exceeded",
            detail={"retry_after_seconds": max(1, reset_seconds)},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device(request: Request, device_info: Optional[DeviceInfoIn]) -> DeviceInfo:
    data = device_info.model_dump() if device_info else {}
    data["user_agent"] = request.headers.get("user-agent")
    return DeviceInfo.from_dict(data)


# -- registration and login ---------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Self-service signup for tenants and landlords.

    New accounts are pending until the emailed link (or, for phone-only
    signups, the texted code) is confirmed.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"register:{_client_ip(request)}", runtime.settings.login_rate_limit_per_minute
    )
    user = await runtime.auth.register(
        email=body.email,
        password=body.password,
        phone=body.phone,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials (unknown email and wrong password look alike)
        403: account suspended or unverified
        423: account locked
        429: rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        device=_device(request, body.device_info),
        ip=_client_ip(request),
        remember_me=body.remember_me,
    )
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/auth/login/phone", response_model=Envelope, tags=["auth"])
async def login_phone(body: PhoneLoginRequest, request: Request, response: Response):
    """Send a one-time login code to the phone on file."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:send:{body.phone}",
        runtime.settings.otp_rate_limit_per_minute,
        response=response,
    )
    handle = await runtime.auth.start_phone_login(
        body.phone, ip=_client_ip(request), device=_device(request, None)
    )
    return Envelope(status="ok", data=OTPSentResponse.from_handle(handle))


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp_login(body: PhoneVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{body.phone}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.verify_phone_login(
        body.phone,
        body.code,
        device=_device(request, body.device_info),
        ip=_client_ip(request),
        remember_me=body.remember_me,
    )
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Exchange a refresh token for a new pair; the old one stops working."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    """End the current session. Always succeeds, even for unknown tokens."""
    runtime = get_runtime()
    access_token = None
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            access_token = token.strip()
    await runtime.auth.logout(access_token=access_token, refresh_token=refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    closed = await runtime.auth.logout_all(principal)
    return Envelope(status="ok", data={"sessions_terminated": closed})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    user = await runtime.auth.get_user(principal.user_id)
    permissions = await runtime.auth.get_user_permissions(principal)
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(user),
            "session_id": principal.session_id,
            "permissions": permissions,
        },
    )


# -- verification -------------------------------------------------------------


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email_link(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    target = body.email if body.type == "email" else body.phone
    await _enforce_rate_limit(
        runtime, f"verify:resend:{target}", runtime.settings.otp_rate_limit_per_minute
    )
    if body.type == "email":
        await runtime.auth.resend_verification(email=body.email)
    else:
        await runtime.auth.resend_verification(phone=body.phone)
    return Envelope(
        status="ok",
        data=MessageResponse(message="if the account exists, a new verification was sent"),
    )


@router.post("/auth/verify-phone", response_model=Envelope, tags=["auth"])
async def verify_phone(body: PhoneVerifyRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:verify:{body.phone}", runtime.settings.login_rate_limit_per_minute
    )
    user = await runtime.auth.verify_phone(body.phone, body.code)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- passwords ----------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Start a reset. The answer is the same whether or not the email is known."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute
    )
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="if the account exists, a reset link was sent"),
    )


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.confirm_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(require_auth)
):
    runtime = get_runtime()
    await runtime.auth.change_password(principal, body.current_password, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


# -- sessions -----------------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal)
    return Envelope(
        status="ok", data={"sessions": [SessionResponse.from_info(s) for s in sessions]}
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_auth),
):
    runtime = get_runtime()
    await runtime.auth.terminate_session(principal, session_id)
    return Envelope(status="ok", data=MessageResponse(message="session terminated"))


# -- account administration ---------------------------------------------------


@router.get("/auth/users/{user_id}/lock", response_model=Envelope, tags=["admin"])
async def get_account_lock(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(USERS_MANAGE)),
):
    runtime = get_runtime()
    info = await runtime.auth.check_account_lock(user_id)
    return Envelope(status="ok", data=AccountLockResponse.from_info(info))


@router.post("/auth/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_account(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(USERS_MANAGE)),
):
    runtime = get_runtime()
    user = await runtime.auth.unlock_account(user_id)
    logger.info("account_unlocked_by_admin", user_id=user_id, admin_id=principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- rbac ---------------------------------------------------------------------


@router.get("/rbac/hierarchy", response_model=Envelope, tags=["rbac"])
async def role_hierarchy(principal: AuthContext = Depends(require_auth)):
    return Envelope(
        status="ok",
        data={
            "levels": ROLE_HIERARCHY,
            "can_manage": {role: list(roles) for role, roles in MANAGEABLE_ROLES.items()},
        },
    )


@router.get("/rbac/roles", response_model=Envelope, tags=["rbac"])
async def list_roles(principal: AuthContext = Depends(require_auth)):
    return Envelope(
        status="ok",
        data={"roles": {role: list(perms) for role, perms in ROLE_PERMISSIONS.items()}},
    )


@router.get("/rbac/permissions/me", response_model=Envelope, tags=["rbac"])
async def my_permissions(principal: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    permissions = await runtime.auth.get_user_permissions(principal)
    return Envelope(status="ok", data={"role": principal.role, "permissions": permissions})


@router.post("/rbac/permissions/check", response_model=Envelope, tags=["rbac"])
async def check_permission(
    body: PermissionCheckRequest, principal: AuthContext = Depends(require_auth)
):
    runtime = get_runtime()
    allowed = await runtime.auth.has_permission(principal, body.permission, body.resource_id)
    return Envelope(
        status="ok",
        data=PermissionCheckResponse(
            permission=body.permission, resource_id=body.resource_id, allowed=allowed
        ),
    )


@router.post("/rbac/users/{user_id}/permissions", response_model=Envelope, tags=["rbac"])
async def set_user_permission(
    body: PermissionOverrideRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(USERS_MANAGE)),
):
    runtime = get_runtime()
    override = await runtime.auth.set_permission_override(
        principal, user_id, body.permission, body.effect, resource_id=body.resource_id
    )
    return Envelope(
        status="ok",
        data={
            "user_id": override.user_id,
            "permission": override.permission,
            "effect": override.effect,
            "resource_id": override.resource_id,
            "granted_by": override.granted_by,
        },
    )


@router.delete("/rbac/users/{user_id}/permissions", response_model=Envelope, tags=["rbac"])
async def delete_user_permission(
    user_id: str = Path(..., max_length=128),
    permission: str = Query(..., min_length=3, max_length=128, pattern=r"^[a-z_]+:[a-z_]+$"),
    resource_id: Optional[str] = Query(None, max_length=128),
    principal: AuthContext = Depends(require_permission(USERS_MANAGE)),
):
    runtime = get_runtime()
    await runtime.auth.clear_permission_override(user_id, permission, resource_id)
    return Envelope(status="ok", data=MessageResponse(message="permission override removed"))
