from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from propauth.logging import mask_phone
from propauth.service.passwords import MAX_PASSWORD_LENGTH
from propauth.storage.models import (
    AccountLockInfo,
    LoginResult,
    OTPHandle,
    SessionInfo,
    User,
)

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "token_revoked",
    "otp_expired",
    "otp_invalid",
    "otp_attempts_exhausted",
    "forbidden",
    "account_inactive",
    "account_not_verified",
    "not_found",
    "conflict",
    "account_locked",
    "rate_limited",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-().]{7,24}$")


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not _PHONE_PATTERN.match(value.strip()):
        raise ValueError("invalid phone number")
    return value.strip()


class DeviceInfoIn(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=128)
    platform: Optional[str] = Field(default=None, max_length=64)
    version: Optional[str] = Field(default=None, max_length=32)


# -- requests ----------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    phone: Optional[str] = Field(default=None, max_length=24)
    role: Literal["tenant", "landlord"] = "tenant"
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = False
    device_info: Optional[DeviceInfoIn] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PhoneLoginRequest(BaseModel):
    phone: str = Field(..., max_length=24)

    @field_validator("phone")
    @classmethod
    def _validate_login_phone(cls, value: str) -> str:
        return _validate_phone(value)


class PhoneVerifyRequest(BaseModel):
    phone: str = Field(..., max_length=24)
    code: str = Field(..., min_length=4, max_length=10)
    remember_me: bool = False
    device_info: Optional[DeviceInfoIn] = None

    @field_validator("phone")
    @classmethod
    def _validate_verify_phone(cls, value: str) -> str:
        return _validate_phone(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit():
            raise ValueError("code must be numeric")
        return value


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ResendVerificationRequest(BaseModel):
    type: Literal["email", "phone"] = "email"
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=24)

    @model_validator(mode="after")
    def _require_target(self):
        if self.type == "email":
            if not self.email:
                raise ValueError("email is required for type 'email'")
            self.email = _validate_email(self.email)
        else:
            if not self.phone:
                raise ValueError("phone is required for type 'phone'")
            self.phone = _validate_phone(self.phone)
        return self


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PermissionCheckRequest(BaseModel):
    permission: str = Field(..., min_length=3, max_length=128, pattern=r"^[a-z_]+:[a-z_]+$")
    resource_id: Optional[str] = Field(default=None, max_length=128)


class PermissionOverrideRequest(BaseModel):
    permission: str = Field(..., min_length=3, max_length=128, pattern=r"^[a-z_]+:[a-z_]+$")
    effect: Literal["grant", "revoke"] = "grant"
    resource_id: Optional[str] = Field(default=None, max_length=128)


# -- responses ---------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    phone: Optional[str] = None
    role: str
    status: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    phone_verified: bool = False
    agency_id: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            phone=user.phone,
            role=user.role,
            status=user.status,
            first_name=user.first_name,
            last_name=user.last_name,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            agency_id=user.agency_id,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    permissions: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: LoginResult) -> "AuthResponse":
        tokens = result.tokens
        return cls(
            user=UserResponse.from_user(result.user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            session_id=tokens.session_id,
            permissions=result.permissions,
        )


class OTPSentResponse(BaseModel):
    otp_id: str
    phone: str
    expires_at: datetime
    attempts_left: int
    message: str = "verification code sent"

    @classmethod
    def from_handle(cls, handle: OTPHandle) -> "OTPSentResponse":
        return cls(
            otp_id=handle.otp_id,
            phone=mask_phone(handle.phone),
            expires_at=handle.expires_at,
            attempts_left=handle.attempts_left,
        )


class SessionResponse(BaseModel):
    session_id: str
    device_info: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    current: bool = False

    @classmethod
    def from_info(cls, info: SessionInfo) -> "SessionResponse":
        return cls(
            session_id=info.session_token,
            device_info=info.device_info or {},
            ip=info.ip,
            user_agent=info.user_agent,
            created_at=info.created_at,
            last_activity_at=info.last_activity_at,
            current=info.current,
        )


class AccountLockResponse(BaseModel):
    is_locked: bool
    failed_attempts: int
    lock_until: Optional[datetime] = None
    remaining_time_seconds: int = 0

    @classmethod
    def from_info(cls, info: AccountLockInfo) -> "AccountLockResponse":
        return cls(
            is_locked=info.is_locked,
            failed_attempts=info.failed_attempts,
            lock_until=info.lock_until,
            remaining_time_seconds=info.remaining_time_seconds,
        )


class MessageResponse(BaseModel):
    message: str


class PermissionCheckResponse(BaseModel):
    permission: str
    resource_id: Optional[str] = None
    allowed: bool
