from __future__ import annotations

import json
import threading
from dataclasses import fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from propauth.logging import get_logger
from propauth.storage.errors import ConstraintViolation
from propauth.storage.models import (
    LoginAttempt,
    OneTimeToken,
    OTPRecord,
    RefreshTokenRecord,
    User,
    UserPermission,
    UserSession,
    UserStatus,
)

T = TypeVar("T")

# Login attempts older than this are dropped by purge_expired
LOGIN_ATTEMPT_RETENTION = timedelta(days=90)


class MemoryStore:
    """In-process credential directory for tests and local development.

    Every operation runs under one re-entrant lock, which makes each method
    atomic with respect to the others. State is snapshotted to JSON under
    ``fs_root/state`` so a dev server keeps its accounts across restarts.
    """

    def __init__(self, fs_root: str = "/tmp/propauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.otps: Dict[str, OTPRecord] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.permission_overrides: List[UserPermission] = []
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.email and self._find_user(email=user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.phone and self._find_user(phone=user.phone):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def _find_user(self, *, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[User]:
        for user in self.users.values():
            if email is not None and user.email and user.email.lower() == email.lower():
                return user
            if phone is not None and user.phone == phone:
                return user
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(email=email)
            return replace(user) if user else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(phone=phone)
            return replace(user) if user else None

    def _mutate_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()
            return replace(user)

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> None:
        self._mutate_user(user_id, password_hash=password_hash, updated_at=now)

    def set_user_status(self, user_id: str, status: str, now: datetime) -> Optional[User]:
        return self._mutate_user(user_id, status=status, updated_at=now)

    def _activate_if_pending(self, user: User) -> None:
        if user.status == UserStatus.PENDING_VERIFICATION:
            user.status = UserStatus.ACTIVE

    def mark_email_verified(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = now
            self._activate_if_pending(user)
            self._persist_state()
            return replace(user)

    def mark_phone_verified(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.phone_verified = True
            user.updated_at = now
            self._activate_if_pending(user)
            self._persist_state()
            return replace(user)

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        return self._mutate_user(
            user_id,
            failed_login_attempts=0,
            last_failed_login_at=None,
            locked_until=None,
            last_login_at=now,
        )

    # -- lockout -------------------------------------------------------------

    def register_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        window_start: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.last_failed_login_at is None or user.last_failed_login_at < window_start:
                user.failed_login_attempts = 1
            else:
                user.failed_login_attempts += 1
            user.last_failed_login_at = now
            if user.failed_login_attempts >= threshold and not user.is_locked(now):
                user.locked_until = lock_until
            self._persist_state()
            return replace(user)

    def clear_expired_lock(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.locked_until is not None and user.locked_until <= now:
                user.locked_until = None
                user.failed_login_attempts = 0
                user.last_failed_login_at = None
                self._persist_state()
            return replace(user)

    def reset_lockout(self, user_id: str) -> Optional[User]:
        return self._mutate_user(
            user_id, failed_login_attempts=0, last_failed_login_at=None, locked_until=None
        )

    # -- login attempts ------------------------------------------------------

    def log_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(replace(attempt))
            self._persist_state()

    def count_recent_failures(self, identifier: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for attempt in self.login_attempts
                if attempt.identifier == identifier
                and not attempt.success
                and attempt.timestamp >= since
            )

    def list_login_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]:
        with self._data_lock:
            matches = [replace(a) for a in self.login_attempts if a.user_id == user_id]
            return sorted(matches, key=lambda a: a.timestamp, reverse=True)[:limit]

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if any(r.token_hash == record.token_hash for r in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            self.refresh_tokens[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def _refresh_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        return next(
            (r for r in self.refresh_tokens.values() if r.token_hash == token_hash), None
        )

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self._refresh_by_hash(token_hash)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, old_hash: str, successor: RefreshTokenRecord, now: datetime
    ) -> bool:
        with self._data_lock:
            current = self._refresh_by_hash(old_hash)
            if current is None or current.revoked_at is not None:
                return False
            current.revoked_at = now
            current.replaced_by = successor.id
            self.refresh_tokens[successor.id] = replace(successor)
            self._persist_state()
            return True

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            record = self._refresh_by_hash(token_hash)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = now
            self._persist_state()
            return True

    def revoke_token_family(self, family_id: str, now: datetime) -> List[str]:
        with self._data_lock:
            sessions: List[str] = []
            for record in self.refresh_tokens.values():
                if record.family_id != family_id:
                    continue
                if record.revoked_at is None:
                    record.revoked_at = now
                if record.session_token and record.session_token not in sessions:
                    sessions.append(record.session_token)
            self._persist_state()
            return sessions

    def revoke_session_refresh_tokens(self, session_token: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.session_token == session_token and record.revoked_at is None:
                    record.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def revoke_user_refresh_tokens(
        self, user_id: str, now: datetime, *, except_session: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or record.revoked_at is not None:
                    continue
                if except_session is not None and record.session_token == except_session:
                    continue
                record.revoked_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    # -- OTP -----------------------------------------------------------------

    def create_otp(self, record: OTPRecord, now: datetime) -> OTPRecord:
        with self._data_lock:
            for existing in self.otps.values():
                if existing.phone == record.phone and existing.used_at is None:
                    # superseded codes can never verify again
                    existing.used_at = now
            self.otps[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_latest_otp(self, phone: str, purpose: str) -> Optional[OTPRecord]:
        with self._data_lock:
            matches = [
                o for o in self.otps.values() if o.phone == phone and o.purpose == purpose
            ]
            if not matches:
                return None
            # stable sort: among equal timestamps the last inserted wins
            return replace(sorted(matches, key=lambda o: o.created_at)[-1])

    def increment_otp_attempts(self, otp_id: str) -> int:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if record is None:
                return 0
            record.attempts += 1
            self._persist_state()
            return record.attempts

    def consume_otp(self, otp_id: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if record is None or record.is_spent(now):
                return False
            record.used_at = now
            self._persist_state()
            return True

    # -- one-time tokens -----------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            self.one_time_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def consume_one_time_token(
        self, kind: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            token = next(
                (
                    t
                    for t in self.one_time_tokens.values()
                    if t.kind == kind and t.token_hash == token_hash
                ),
                None,
            )
            if token is None or token.used_at is not None or now > token.expires_at:
                return None
            token.used_at = now
            self._persist_state()
            return replace(token)

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        with self._data_lock:
            if session.session_token in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "session_token"})
            self.sessions[session.session_token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_token: str) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_token)
            return replace(session) if session else None

    def touch_session(self, session_token: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_token)
            if session is None or not session.active:
                return False
            session.last_activity_at = now
            self._persist_state()
            return True

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        with self._data_lock:
            matches = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.active or not active_only)
            ]
            return sorted(matches, key=lambda s: s.last_activity_at, reverse=True)

    def deactivate_session(self, user_id: str, session_token: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_token)
            if session is None or session.user_id != user_id or not session.active:
                return False
            session.active = False
            self._persist_state()
            return True

    def deactivate_sessions(self, session_tokens: List[str]) -> int:
        with self._data_lock:
            count = 0
            for token in session_tokens:
                session = self.sessions.get(token)
                if session is not None and session.active:
                    session.active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def deactivate_user_sessions(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            closed: List[str] = []
            for session in self.sessions.values():
                if session.user_id != user_id or not session.active:
                    continue
                if except_token is not None and session.session_token == except_token:
                    continue
                session.active = False
                closed.append(session.session_token)
            if closed:
                self._persist_state()
            return closed

    # -- permission overrides ------------------------------------------------

    def list_permission_overrides(self, user_id: str) -> List[UserPermission]:
        with self._data_lock:
            return [replace(p) for p in self.permission_overrides if p.user_id == user_id]

    def set_permission_override(self, override: UserPermission) -> UserPermission:
        with self._data_lock:
            self.permission_overrides = [
                p
                for p in self.permission_overrides
                if not (
                    p.user_id == override.user_id
                    and p.permission == override.permission
                    and p.resource_id == override.resource_id
                )
            ]
            self.permission_overrides.append(replace(override))
            self._persist_state()
            return replace(override)

    def delete_permission_override(
        self, user_id: str, permission: str, resource_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            before = len(self.permission_overrides)
            self.permission_overrides = [
                p
                for p in self.permission_overrides
                if not (
                    p.user_id == user_id
                    and p.permission == permission
                    and p.resource_id == resource_id
                )
            ]
            removed = len(self.permission_overrides) != before
            if removed:
                self._persist_state()
            return removed

    # -- maintenance ---------------------------------------------------------

    def purge_expired(self, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            counts: Dict[str, int] = {}

            bound: Dict[str, bool] = {}
            for r in self.refresh_tokens.values():
                if r.session_token:
                    alive = bound.get(r.session_token, False) or r.expires_at >= now
                    bound[r.session_token] = alive
            expired_sessions = {token for token, alive in bound.items() if not alive}

            stale_refresh = [
                key
                for key, r in self.refresh_tokens.items()
                if r.expires_at < now
            ]
            for key in stale_refresh:
                del self.refresh_tokens[key]
            counts["refresh_tokens"] = len(stale_refresh)

            stale_otps = [key for key, o in self.otps.items() if o.is_spent(now)]
            for key in stale_otps:
                del self.otps[key]
            counts["otps"] = len(stale_otps)

            stale_tokens = [
                key
                for key, t in self.one_time_tokens.items()
                if t.used_at is not None or t.expires_at < now
            ]
            for key in stale_tokens:
                del self.one_time_tokens[key]
            counts["one_time_tokens"] = len(stale_tokens)

            stale_sessions = [
                key
                for key, s in self.sessions.items()
                if not s.active or key in expired_sessions
            ]
            for key in stale_sessions:
                del self.sessions[key]
            counts["sessions"] = len(stale_sessions)

            cutoff = now - LOGIN_ATTEMPT_RETENTION
            kept = [a for a in self.login_attempts if a.timestamp >= cutoff]
            counts["login_attempts"] = len(self.login_attempts) - len(kept)
            self.login_attempts = kept

            if any(counts.values()):
                self._persist_state()
            return counts

    # -- persistence ---------------------------------------------------------

    @staticmethod
    def _serialize_record(record: Any) -> dict:
        data: Dict[str, Any] = {}
        for f in fields(record):
            value = getattr(record, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data

    @staticmethod
    def _deserialize_record(cls: Type[T], data: dict) -> T:
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and "datetime" in str(f.type):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_record(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_record(r) for r in self.refresh_tokens.values()
            ],
            "otps": [self._serialize_record(o) for o in self.otps.values()],
            "one_time_tokens": [
                self._serialize_record(t) for t in self.one_time_tokens.values()
            ],
            "sessions": [self._serialize_record(s) for s in self.sessions.values()],
            "login_attempts": [self._serialize_record(a) for a in self.login_attempts],
            "permission_overrides": [
                self._serialize_record(p) for p in self.permission_overrides
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {
            u["id"]: self._deserialize_record(User, u) for u in data.get("users", [])
        }
        self.refresh_tokens = {
            r["id"]: self._deserialize_record(RefreshTokenRecord, r)
            for r in data.get("refresh_tokens", [])
        }
        self.otps = {
            o["id"]: self._deserialize_record(OTPRecord, o) for o in data.get("otps", [])
        }
        self.one_time_tokens = {
            t["id"]: self._deserialize_record(OneTimeToken, t)
            for t in data.get("one_time_tokens", [])
        }
        self.sessions = {
            s["session_token"]: self._deserialize_record(UserSession, s)
            for s in data.get("sessions", [])
        }
        self.login_attempts = [
            self._deserialize_record(LoginAttempt, a) for a in data.get("login_attempts", [])
        ]
        self.permission_overrides = [
            self._deserialize_record(UserPermission, p)
            for p in data.get("permission_overrides", [])
        ]
        self.logger.info("memory_store_state_loaded", users=len(self.users), path=str(path))
        return True
