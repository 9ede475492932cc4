from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from propauth.storage.models import (
    LoginAttempt,
    OneTimeToken,
    OTPRecord,
    RefreshTokenRecord,
    User,
    UserPermission,
    UserSession,
)


class CredentialDirectory(Protocol):
    """Everything the authentication core reads or writes.

    Counter and revocation changes are single atomic operations so that
    concurrent requests for one account never lose updates. Implementations
    raise ``ConstraintViolation`` on uniqueness conflicts and
    ``DirectoryUnavailable`` when the backing store cannot be reached.
    """

    # users
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> None: ...

    def set_user_status(self, user_id: str, status: str, now: datetime) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str, now: datetime) -> Optional[User]: ...

    def mark_phone_verified(self, user_id: str, now: datetime) -> Optional[User]: ...

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]: ...

    # lockout
    def register_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        window_start: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[User]: ...

    def clear_expired_lock(self, user_id: str, now: datetime) -> Optional[User]: ...

    def reset_lockout(self, user_id: str) -> Optional[User]: ...

    # login attempts
    def log_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def count_recent_failures(self, identifier: str, since: datetime) -> int: ...

    def list_login_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]: ...

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, old_hash: str, successor: RefreshTokenRecord, now: datetime
    ) -> bool: ...

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool: ...

    def revoke_token_family(self, family_id: str, now: datetime) -> List[str]: ...

    def revoke_session_refresh_tokens(self, session_token: str, now: datetime) -> int: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, now: datetime, *, except_session: Optional[str] = None
    ) -> int: ...

    # OTP
    def create_otp(self, record: OTPRecord, now: datetime) -> OTPRecord: ...

    def get_latest_otp(self, phone: str, purpose: str) -> Optional[OTPRecord]: ...

    def increment_otp_attempts(self, otp_id: str) -> int: ...

    def consume_otp(self, otp_id: str, now: datetime) -> bool: ...

    # password reset / email verification
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_one_time_token(
        self, kind: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]: ...

    # sessions
    def create_session(self, session: UserSession) -> UserSession: ...

    def get_session(self, session_token: str) -> Optional[UserSession]: ...

    def touch_session(self, session_token: str, now: datetime) -> bool: ...

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]: ...

    def deactivate_session(self, user_id: str, session_token: str) -> bool: ...

    def deactivate_sessions(self, session_tokens: List[str]) -> int: ...

    def deactivate_user_sessions(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> List[str]: ...

    # permission overrides
    def list_permission_overrides(self, user_id: str) -> List[UserPermission]: ...

    def set_permission_override(self, override: UserPermission) -> UserPermission: ...

    def delete_permission_override(
        self, user_id: str, permission: str, resource_id: Optional[str] = None
    ) -> bool: ...

    # maintenance
    def purge_expired(self, now: datetime) -> Dict[str, int]: ...

    def ping(self) -> bool: ...
