from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from propauth.config import Settings
from propauth.logging import get_logger
from propauth.service.bounded import call_directory, dispatch
from propauth.service.errors import (
    AccountInactive,
    AccountLocked,
    AccountNotVerified,
    AuthenticationError,
    AuthenticationUnavailable,
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    NotFoundError,
    OTPAttemptsExhausted,
    OTPExpired,
    OTPInvalid,
    TokenInvalid,
    TokenRevoked,
    ValidationError,
)
from propauth.service.lockout import LockoutPolicy
from propauth.service.notifications import Notifier
from propauth.service.otp import (
    PURPOSE_LOGIN,
    PURPOSE_PHONE_VERIFICATION,
    OTPManager,
    normalize_phone,
)
from propauth.service.passwords import PasswordHasher, PasswordPolicy
from propauth.service.rbac import PermissionResolver
from propauth.service.sessions import SessionRegistry
from propauth.service.tokens import TokenManager, hash_token
from propauth.storage.directory import CredentialDirectory
from propauth.storage.errors import ConstraintViolation
from propauth.storage.models import (
    AccountLockInfo,
    AuthContext,
    DeviceInfo,
    IssuedTokens,
    LoginResult,
    OneTimeToken,
    OneTimeTokenKind,
    OTPHandle,
    Role,
    SessionInfo,
    User,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

SELF_SERVICE_ROLES = (Role.TENANT, Role.LANDLORD)


def normalize_email(email: str) -> str:
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("invalid email address", detail={"field": "email"})
    return email.strip().lower()


def parse_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("authorization header required")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("malformed authorization header")
    return token.strip()


class AuthService:
    """Sequences lockout, credential checks, sessions and tokens.

    Every directory round trip goes through ``_db`` so it runs off the event
    loop under the configured deadline; a timeout becomes
    AuthenticationUnavailable and is never recorded as a failed login.
    """

    def __init__(
        self,
        settings: Settings,
        directory: CredentialDirectory,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.notifier = notifier
        self._clock = clock
        self.hasher = PasswordHasher(settings)
        self.password_policy = PasswordPolicy(settings)
        self.tokens = TokenManager(settings, directory, clock=clock)
        self.otp = OTPManager(settings, directory, notifier, clock=clock)
        self.sessions = SessionRegistry(settings, directory, clock=clock)
        self.lockout = LockoutPolicy(settings, directory, clock=clock)
        self.permissions = PermissionResolver(directory)
        self._dummy_hash: Optional[str] = None

    async def _db(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await call_directory(
            func, *args, timeout=self.settings.directory_timeout_seconds, **kwargs
        )

    async def _verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, password_hash)

    async def _burn_hash_time(self, password: str) -> None:
        # Unknown accounts cost the same argon2 work as known ones
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self.hasher.hash, f"unknown-account-{secrets.token_hex(8)}"
            )
        await self._verify_password(password, self._dummy_hash)

    # -- account state -------------------------------------------------------

    def _ensure_can_login(self, user: User) -> None:
        if user.status == UserStatus.SUSPENDED:
            raise AccountInactive()
        if user.status == UserStatus.LOCKED:
            raise AccountLocked(detail={"reason": "administrative"})
        if (
            self.settings.require_email_verification
            and user.status == UserStatus.PENDING_VERIFICATION
            and not (user.email_verified or user.phone_verified)
        ):
            raise AccountNotVerified()

    def _establish_session(
        self,
        user: User,
        device: Optional[DeviceInfo],
        ip: Optional[str],
        remember_me: bool,
    ) -> LoginResult:
        """Success path shared by every login flavour.

        The session row exists before any token naming it is minted.
        """
        user = self.lockout.record_success(user.id) or user
        device_info = device.to_dict() if device else {}
        session_token = self.sessions.create_session(
            user.id,
            device_info=device_info,
            ip=ip,
            user_agent=device.user_agent if device else None,
        )
        access_token, expires_at = self.tokens.issue_access_token(user, session_token)
        refresh_token, refresh_expires_at = self.tokens.issue_refresh_token(
            user.id,
            device_info,
            session_token=session_token,
            ip=ip,
            remember_me=remember_me,
        )
        permissions = self.permissions.get_user_permissions(user.id, role=user.role)
        return LoginResult(
            user=user,
            tokens=IssuedTokens(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                session_id=session_token,
            ),
            permissions=permissions,
        )

    async def _record_failure(
        self,
        identifier: str,
        ip: Optional[str],
        reason: str,
        *,
        user: Optional[User] = None,
        device: Optional[DeviceInfo] = None,
        count: bool = True,
    ) -> None:
        await self._db(
            self.lockout.record_attempt,
            identifier,
            ip,
            False,
            reason,
            user_id=user.id if user else None,
            user_agent=device.user_agent if device else None,
            count=count,
        )
        logger.info(
            "login_failed",
            identifier=identifier,
            reason=reason,
            user_id=user.id if user else None,
        )

    async def _record_success(
        self, identifier: str, ip: Optional[str], user: User, device: Optional[DeviceInfo]
    ) -> None:
        await self._db(
            self.lockout.record_attempt,
            identifier,
            ip,
            True,
            user_id=user.id,
            user_agent=device.user_agent if device else None,
        )

    # -- registration --------------------------------------------------------

    async def register(
        self,
        *,
        email: Optional[str] = None,
        password: str,
        phone: Optional[str] = None,
        role: str = Role.TENANT,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError(
                "role not available for self-registration", detail={"field": "role"}
            )
        if not email and not phone:
            raise ValidationError("email or phone is required", detail={"field": "email"})
        email = normalize_email(email) if email else None
        phone = normalize_phone(phone) if phone else None
        self.password_policy.validate(password)
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        status = (
            UserStatus.PENDING_VERIFICATION
            if self.settings.require_email_verification
            else UserStatus.ACTIVE
        )
        user = User.new(
            email=email,
            password_hash=password_hash,
            role=role,
            phone=phone,
            first_name=first_name,
            last_name=last_name,
            status=status,
            now=self._clock(),
        )
        try:
            user = await self._db(self.directory.create_user, user)
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id, role=role)
        if self.settings.require_email_verification:
            if user.email:
                await self._send_verification_email(user)
            else:
                await self._send_phone_verification(user)
        return user

    def _issue_one_time_token(self, user_id: str, kind: str, ttl: timedelta) -> str:
        raw = secrets.token_urlsafe(32)
        now = self._clock()
        self.directory.create_one_time_token(
            OneTimeToken(
                id=str(uuid.uuid4()),
                kind=kind,
                user_id=user_id,
                token_hash=hash_token(raw),
                expires_at=now + ttl,
                created_at=now,
            )
        )
        return raw

    async def _send_phone_verification(self, user: User) -> bool:
        try:
            await self.otp.send_otp(user.phone, purpose=PURPOSE_PHONE_VERIFICATION, user_id=user.id)
        except AuthenticationUnavailable:
            logger.error("verification_sms_failed", user_id=user.id)
            return False
        return True

    async def _send_verification_email(self, user: User) -> bool:
        if not user.email:
            return False
        token = await self._db(
            self._issue_one_time_token,
            user.id,
            OneTimeTokenKind.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        sent = await dispatch(
            self.notifier.send_email_verification(user.email, token),
            timeout=self.settings.notification_timeout_seconds,
            channel="email",
        )
        if not sent:
            logger.error("verification_email_failed", user_id=user.id)
        return sent

    # -- password login ------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        identifier = normalize_email(email)
        await self._db(self.lockout.check_identifier_rate, identifier)
        user = await self._db(self.directory.get_user_by_email, identifier)
        if user is None:
            await self._burn_hash_time(password or "")
            await self._record_failure(identifier, ip, "user_not_found", device=device)
            raise InvalidCredentials()

        try:
            user = await self._db(self.lockout.check_lock, user)
        except AccountLocked:
            await self._record_failure(identifier, ip, "account_locked", user=user, device=device)
            raise

        if not await self._verify_password(password or "", user.password_hash):
            await self._record_failure(identifier, ip, "invalid_password", user=user, device=device)
            raise InvalidCredentials()

        try:
            self._ensure_can_login(user)
        except (AccountInactive, AccountLocked, AccountNotVerified) as exc:
            await self._record_failure(
                identifier, ip, exc.error_code, user=user, device=device, count=False
            )
            raise

        if self.hasher.needs_rehash(user.password_hash):
            new_hash = await asyncio.to_thread(self.hasher.hash, password)
            await self._db(self.directory.update_password, user.id, new_hash, self._clock())

        result = await self._db(self._establish_session, user, device, ip, remember_me)
        await self._record_success(identifier, ip, result.user, device)
        logger.info("login_succeeded", user_id=user.id, method="password", session_id=result.tokens.session_id)
        return result

    # -- phone login ---------------------------------------------------------

    async def start_phone_login(
        self, phone: str, *, ip: Optional[str] = None, device: Optional[DeviceInfo] = None
    ) -> OTPHandle:
        phone = normalize_phone(phone)
        await self._db(self.lockout.check_identifier_rate, phone)
        user = await self._db(self.directory.get_user_by_phone, phone)
        if user is None:
            # Same response shape as a real send so phone numbers can't be probed
            await self._record_failure(phone, ip, "user_not_found", device=device)
            return OTPHandle(
                otp_id=str(uuid.uuid4()),
                phone=phone,
                expires_at=self._clock() + timedelta(minutes=self.settings.otp_ttl_minutes),
                attempts_left=self.settings.otp_max_attempts,
            )
        try:
            await self._db(self.lockout.check_lock, user)
        except AccountLocked:
            await self._record_failure(phone, ip, "account_locked", user=user, device=device)
            raise
        return await self.otp.send_otp(phone, purpose=PURPOSE_LOGIN, user_id=user.id)

    async def verify_phone_login(
        self,
        phone: str,
        code: str,
        *,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        phone = normalize_phone(phone)
        await self._db(self.lockout.check_identifier_rate, phone)
        user = await self._db(self.directory.get_user_by_phone, phone)
        if user is None:
            await self._record_failure(phone, ip, "user_not_found", device=device)
            raise OTPInvalid()

        try:
            user = await self._db(self.lockout.check_lock, user)
        except AccountLocked:
            await self._record_failure(phone, ip, "account_locked", user=user, device=device)
            raise

        try:
            await self._db(self.otp.verify_otp, phone, code, purpose=PURPOSE_LOGIN)
        except (OTPInvalid, OTPExpired, OTPAttemptsExhausted) as exc:
            await self._record_failure(phone, ip, exc.error_code, user=user, device=device)
            raise

        if not user.phone_verified:
            user = await self._db(self.directory.mark_phone_verified, user.id, self._clock()) or user

        try:
            self._ensure_can_login(user)
        except (AccountInactive, AccountLocked, AccountNotVerified) as exc:
            await self._record_failure(
                phone, ip, exc.error_code, user=user, device=device, count=False
            )
            raise

        result = await self._db(self._establish_session, user, device, ip, remember_me)
        await self._record_success(phone, ip, result.user, device)
        logger.info("login_succeeded", user_id=user.id, method="otp", session_id=result.tokens.session_id)
        return result

    # -- refresh / logout ----------------------------------------------------

    def _refresh_sync(self, refresh_token: str) -> LoginResult:
        new_refresh, refresh_expires_at, record = self.tokens.rotate_refresh_token(refresh_token)
        user = self.directory.get_user(record.user_id)
        session = (
            self.sessions.get_active_session(record.session_token)
            if record.session_token
            else None
        )
        if user is None or session is None or session.user_id != user.id:
            self.directory.revoke_refresh_token(record.token_hash, self._clock())
            raise TokenRevoked()
        if user.status in (UserStatus.SUSPENDED, UserStatus.LOCKED):
            self.sessions.terminate_session(user.id, session.session_token)
            raise AccountInactive()
        self.sessions.touch_session(session.session_token)
        access_token, expires_at = self.tokens.issue_access_token(user, session.session_token)
        return LoginResult(
            user=user,
            tokens=IssuedTokens(
                access_token=access_token,
                refresh_token=new_refresh,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                session_id=session.session_token,
            ),
            permissions=self.permissions.get_user_permissions(user.id, role=user.role),
        )

    async def refresh(self, refresh_token: str) -> LoginResult:
        if not refresh_token:
            raise TokenInvalid()
        result = await self._db(self._refresh_sync, refresh_token)
        logger.info("tokens_refreshed", user_id=result.user.id, session_id=result.tokens.session_id)
        return result

    def _logout_sync(self, access_token: Optional[str], refresh_token: Optional[str]) -> int:
        closed = 0
        if refresh_token:
            record = self.tokens.revoke_refresh_token(refresh_token)
            if record is not None and record.session_token:
                closed += int(self.sessions.terminate_session(record.user_id, record.session_token))
        if access_token:
            try:
                context = self.tokens.validate_access_token(access_token)
            except AuthenticationError:
                context = None
            if context is not None:
                closed += int(self.sessions.terminate_session(context.user_id, context.session_id))
        return closed

    async def logout(
        self, *, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> int:
        """End the session named by either token; unknown tokens are a no-op."""
        closed = await self._db(self._logout_sync, access_token, refresh_token)
        logger.info("logout", sessions_closed=closed)
        return closed

    async def logout_all(self, context: AuthContext) -> int:
        return await self._db(self.sessions.terminate_all_sessions, context.user_id)

    # -- per-request authentication -----------------------------------------

    def _authorize_session(self, context: AuthContext) -> AuthContext:
        session = self.sessions.get_active_session(context.session_id)
        if session is None or session.user_id != context.user_id:
            raise TokenRevoked("session is no longer active")
        user = self.directory.get_user(context.user_id)
        if user is None:
            raise TokenInvalid()
        if user.status == UserStatus.SUSPENDED:
            raise AccountInactive()
        if user.status == UserStatus.LOCKED:
            raise AccountLocked(detail={"reason": "administrative"})
        self.sessions.touch_session(context.session_id)
        # Role and agency follow the account, not the token snapshot
        return replace(context, role=user.role, agency_id=user.agency_id, email=user.email)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = parse_bearer(authorization)
        context = self.tokens.validate_access_token(token)
        return await self._db(self._authorize_session, context)

    async def get_user(self, user_id: str) -> User:
        user = await self._db(self.directory.get_user, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    # -- verification --------------------------------------------------------

    async def verify_email(self, token: str) -> User:
        if not token:
            raise ValidationError("token is required", detail={"field": "token"})
        record = await self._db(
            self.directory.consume_one_time_token,
            OneTimeTokenKind.EMAIL_VERIFICATION,
            hash_token(token),
            self._clock(),
        )
        if record is None:
            raise TokenInvalid("invalid or expired verification token")
        user = await self._db(self.directory.mark_email_verified, record.user_id, self._clock())
        if user is None:
            raise TokenInvalid("invalid or expired verification token")
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> None:
        """Re-send a link or code; silent when the account is unknown or done."""
        if email:
            user = await self._db(self.directory.get_user_by_email, normalize_email(email))
            if user is not None and not user.email_verified:
                await self._send_verification_email(user)
            return
        if phone:
            phone = normalize_phone(phone)
            user = await self._db(self.directory.get_user_by_phone, phone)
            if user is not None and not user.phone_verified:
                await self.otp.send_otp(
                    phone, purpose=PURPOSE_PHONE_VERIFICATION, user_id=user.id
                )
            return
        raise ValidationError("email or phone is required", detail={"field": "email"})

    async def verify_phone(self, phone: str, code: str) -> User:
        phone = normalize_phone(phone)
        await self._db(self.otp.verify_otp, phone, code, purpose=PURPOSE_PHONE_VERIFICATION)
        user = await self._db(self.directory.get_user_by_phone, phone)
        if user is None:
            raise OTPInvalid()
        user = await self._db(self.directory.mark_phone_verified, user.id, self._clock()) or user
        logger.info("phone_verified", user_id=user.id)
        return user

    # -- passwords -----------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """Mail a reset link if the account exists; the caller learns nothing."""
        user = await self._db(self.directory.get_user_by_email, normalize_email(email))
        if user is None or user.status == UserStatus.SUSPENDED:
            logger.info("password_reset_requested", known=False)
            return
        token = await self._db(
            self._issue_one_time_token,
            user.id,
            OneTimeTokenKind.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        sent = await dispatch(
            self.notifier.send_password_reset(user.email, token),
            timeout=self.settings.notification_timeout_seconds,
            channel="email",
        )
        logger.info("password_reset_requested", known=True, user_id=user.id, delivered=sent)

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        self.password_policy.validate(new_password, field="new_password")
        record = await self._db(
            self.directory.consume_one_time_token,
            OneTimeTokenKind.PASSWORD_RESET,
            hash_token(token or ""),
            self._clock(),
        )
        if record is None:
            raise TokenInvalid("invalid or expired reset token")
        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        await self._db(self.directory.update_password, record.user_id, new_hash, self._clock())
        await self._db(self.lockout.unlock, record.user_id)
        closed = await self._db(self.sessions.terminate_all_sessions, record.user_id)
        logger.info("password_reset_completed", user_id=record.user_id, sessions_closed=closed)

    async def change_password(
        self, context: AuthContext, current_password: str, new_password: str
    ) -> None:
        user = await self.get_user(context.user_id)
        if not await self._verify_password(current_password or "", user.password_hash):
            raise InvalidCredentials()
        self.password_policy.validate(new_password, field="new_password")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )
        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        await self._db(self.directory.update_password, user.id, new_hash, self._clock())
        closed = await self._db(
            self.sessions.terminate_all_sessions, user.id, except_session=context.session_id
        )
        logger.info("password_changed", user_id=user.id, other_sessions_closed=closed)

    # -- sessions and account admin -----------------------------------------

    async def list_sessions(self, context: AuthContext) -> List[SessionInfo]:
        return await self._db(self.sessions.list_sessions, context.user_id, context.session_id)

    async def terminate_session(self, context: AuthContext, session_token: str) -> None:
        closed = await self._db(self.sessions.terminate_session, context.user_id, session_token)
        if not closed:
            raise NotFoundError("session not found")

    async def check_account_lock(self, user_id: str) -> AccountLockInfo:
        user = await self.get_user(user_id)
        return self.lockout.lock_info(user)

    async def unlock_account(self, user_id: str) -> User:
        user = await self._db(self.lockout.unlock, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def cleanup_expired(self) -> Dict[str, int]:
        counts = await self._db(self.directory.purge_expired, self._clock())
        if any(counts.values()):
            logger.info("auth_cleanup_completed", **counts)
        return counts

    # -- permissions ---------------------------------------------------------

    async def has_permission(
        self, context: AuthContext, permission: str, resource_id: Optional[str] = None
    ) -> bool:
        return await self._db(
            self.permissions.has_permission,
            context.user_id,
            permission,
            resource_id,
            role=context.role,
        )

    async def get_user_permissions(self, context: AuthContext) -> List[str]:
        return await self._db(
            self.permissions.get_user_permissions, context.user_id, role=context.role
        )

    async def check_resource_access(
        self, context: AuthContext, resource_type: str, resource_id: str, action: str
    ) -> None:
        await self._db(
            self.permissions.check_resource_access, context, resource_type, resource_id, action
        )

    async def set_permission_override(
        self,
        actor: AuthContext,
        user_id: str,
        permission: str,
        effect: str,
        *,
        resource_id: Optional[str] = None,
    ):
        return await self._db(
            self.permissions.set_override,
            user_id,
            permission,
            effect,
            resource_id=resource_id,
            granted_by=actor.user_id,
        )

    async def clear_permission_override(
        self, user_id: str, permission: str, resource_id: Optional[str] = None
    ) -> None:
        removed = await self._db(self.permissions.clear_override, user_id, permission, resource_id)
        if not removed:
            raise NotFoundError("permission override not found")
