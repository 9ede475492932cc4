from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role:
    SUPER_ADMIN = "super_admin"
    AGENCY_ADMIN = "agency_admin"
    LANDLORD = "landlord"
    AGENT = "agent"
    CARETAKER = "caretaker"
    TENANT = "tenant"

    ALL = (SUPER_ADMIN, AGENCY_ADMIN, LANDLORD, AGENT, CARETAKER, TENANT)


class UserStatus:
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    LOCKED = "locked"

    ALL = (PENDING_VERIFICATION, ACTIVE, SUSPENDED, LOCKED)


@dataclass
class User:
    id: str
    email: Optional[str]
    password_hash: Optional[str]
    role: str = Role.TENANT
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: str = UserStatus.PENDING_VERIFICATION
    email_verified: bool = False
    phone_verified: bool = False
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    agency_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        *,
        email: Optional[str],
        password_hash: Optional[str],
        role: str = Role.TENANT,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: str = UserStatus.PENDING_VERIFICATION,
        agency_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            role=role,
            phone=phone,
            first_name=first_name,
            last_name=last_name,
            status=status,
            agency_id=agency_id,
            created_at=now or utcnow(),
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class DeviceInfo:
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    platform: Optional[str] = None
    version: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "platform": self.platform,
            "version": self.version,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_id=data.get("device_id"),
            device_name=data.get("device_name"),
            platform=data.get("platform"),
            version=data.get("version"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class RefreshTokenRecord:
    """Persisted half of a refresh token; the bearer value is never stored.

    ``id`` doubles as the token's ``jti`` claim. ``family_id`` is shared by
    every token rotated from one login.
    """

    id: str
    user_id: str
    token_hash: str
    family_id: str
    session_token: Optional[str]
    issued_at: datetime
    expires_at: datetime
    device_info: Dict = field(default_factory=dict)
    ip: Optional[str] = None
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class OTPRecord:
    id: str
    phone: str
    code_hash: str
    purpose: str
    expires_at: datetime
    max_attempts: int
    attempts: int = 0
    user_id: Optional[str] = None
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_spent(self, now: datetime) -> bool:
        return (
            self.used_at is not None
            or self.attempts >= self.max_attempts
            or now > self.expires_at
        )


@dataclass
class OneTimeToken:
    """Password reset or email verification token, stored as a hash."""

    id: str
    kind: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


class OneTimeTokenKind:
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class UserSession:
    session_token: str
    user_id: str
    created_at: datetime
    last_activity_at: datetime
    device_info: Dict = field(default_factory=dict)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        device_info: Optional[Dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "UserSession":
        now = now or utcnow()
        return cls(
            session_token=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_activity_at=now,
            device_info=device_info or {},
            ip=ip,
            user_agent=user_agent,
        )


@dataclass
class LoginAttempt:
    identifier: str
    success: bool
    timestamp: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class UserPermission:
    user_id: str
    permission: str
    effect: str  # "grant" | "revoke"
    resource_id: Optional[str] = None
    granted_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthContext:
    """Typed claims of a validated access token, passed to guards and handlers."""

    user_id: str
    email: Optional[str]
    role: str
    session_id: str
    token_id: str
    issued_at: datetime
    expires_at: datetime
    agency_id: Optional[str] = None


@dataclass
class SessionInfo:
    session_token: str
    device_info: Dict
    ip: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    current: bool = False


@dataclass
class AccountLockInfo:
    is_locked: bool
    failed_attempts: int
    lock_until: Optional[datetime] = None
    remaining_time_seconds: int = 0


@dataclass
class OTPHandle:
    otp_id: str
    phone: str
    expires_at: datetime
    attempts_left: int


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


@dataclass
class LoginResult:
    user: User
    tokens: IssuedTokens
    permissions: List[str] = field(default_factory=list)
