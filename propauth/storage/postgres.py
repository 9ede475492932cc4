from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from propauth.logging import get_logger
from propauth.storage.errors import ConstraintViolation, DirectoryUnavailable
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

LOGIN_ATTEMPT_RETENTION = timedelta(days=90)

_USER_COLUMNS = (
    "id, email, phone, password_hash, role, first_name, last_name, status, "
    "email_verified, phone_verified, failed_login_attempts, last_failed_login_at, "
    "locked_until, agency_id, created_at, updated_at, last_login_at"
)


def _from_row(cls: Type[T], row: Dict[str, Any]) -> T:
    return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in row})


class PostgresStore:
    """Credential directory backed by Postgres.

    Every counter or revocation change is a single conditional ``UPDATE``
    (or a short transaction) so that concurrent requests serialize on the
    row lock instead of racing in application code.
    """

    def __init__(self, dsn: str, *, connect_timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("directory_connection_failed", error=str(exc))
            raise DirectoryUnavailable(str(exc)) from exc

    def _verify_required_schema(self) -> None:
        """Ensure credential tables exist before serving requests."""

        required_tables = [
            "auth_user",
            "user_session",
            "refresh_token",
            "phone_otp",
            "one_time_token",
            "login_attempt",
            "user_permission",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_user (
                        id, email, phone, password_hash, role, first_name, last_name,
                        status, email_verified, phone_verified, agency_id, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.id,
                        user.email,
                        user.phone,
                        user.password_hash,
                        user.role,
                        user.first_name,
                        user.last_name,
                        user.status,
                        user.email_verified,
                        user.phone_verified,
                        user.agency_id,
                        user.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "phone" if "phone" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _from_row(User, row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user WHERE {where}", (value,)
            ).fetchone()
        return _from_row(User, row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = lower(%s)", email)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._fetch_user("phone = %s", phone)

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_user SET {assignments} WHERE id = %s RETURNING {_USER_COLUMNS}",
                (*params, user_id),
            ).fetchone()
        return _from_row(User, row) if row else None

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> None:
        self._update_user(user_id, "password_hash = %s, updated_at = %s", (password_hash, now))

    def set_user_status(self, user_id: str, status: str, now: datetime) -> Optional[User]:
        return self._update_user(user_id, "status = %s, updated_at = %s", (status, now))

    def mark_email_verified(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_user(
            user_id,
            "email_verified = TRUE, updated_at = %s, "
            "status = CASE WHEN status = %s THEN %s ELSE status END",
            (now, UserStatus.PENDING_VERIFICATION, UserStatus.ACTIVE),
        )

    def mark_phone_verified(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_user(
            user_id,
            "phone_verified = TRUE, updated_at = %s, "
            "status = CASE WHEN status = %s THEN %s ELSE status END",
            (now, UserStatus.PENDING_VERIFICATION, UserStatus.ACTIVE),
        )

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_user(
            user_id,
            "failed_login_attempts = 0, last_failed_login_at = NULL, "
            "locked_until = NULL, last_login_at = %s",
            (now,),
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
        # SET expressions all see the pre-update row, so the window test is repeated
        params = {
            "user_id": user_id,
            "now": now,
            "window_start": window_start,
            "threshold": threshold,
            "lock_until": lock_until,
        }
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_user SET
                    failed_login_attempts = CASE
                        WHEN last_failed_login_at IS NULL OR last_failed_login_at < %(window_start)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    last_failed_login_at = %(now)s,
                    locked_until = CASE
                        WHEN (locked_until IS NULL OR locked_until <= %(now)s)
                         AND (CASE
                                WHEN last_failed_login_at IS NULL OR last_failed_login_at < %(window_start)s THEN 1
                                ELSE failed_login_attempts + 1
                              END) >= %(threshold)s
                        THEN %(lock_until)s
                        ELSE locked_until
                    END
                WHERE id = %(user_id)s
                RETURNING {_USER_COLUMNS}
                """,
                params,
            ).fetchone()
        return _from_row(User, row) if row else None

    def clear_expired_lock(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_user
                SET locked_until = NULL, failed_login_attempts = 0, last_failed_login_at = NULL
                WHERE id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                """,
                (user_id, now),
            )
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _from_row(User, row) if row else None

    def reset_lockout(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id,
            "failed_login_attempts = 0, last_failed_login_at = NULL, locked_until = NULL",
            (),
        )

    # -- login attempts ------------------------------------------------------

    def log_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (identifier, ip, user_agent, success, failure_reason, user_id, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.identifier,
                    attempt.ip,
                    attempt.user_agent,
                    attempt.success,
                    attempt.failure_reason,
                    attempt.user_id,
                    attempt.timestamp,
                ),
            )

    def count_recent_failures(self, identifier: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS failures FROM login_attempt
                WHERE identifier = %s AND NOT success AND timestamp >= %s
                """,
                (identifier, since),
            ).fetchone()
        return int(row["failures"]) if row else 0

    def list_login_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_attempt WHERE user_id = %s ORDER BY timestamp DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [_from_row(LoginAttempt, row) for row in rows]

    # -- refresh tokens ------------------------------------------------------

    def _insert_refresh_token(self, conn: psycopg.Connection, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                id, user_id, token_hash, family_id, session_token, device_info,
                ip, issued_at, expires_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.family_id,
                record.session_token,
                json.dumps(record.device_info or {}),
                record.ip,
                record.issued_at,
                record.expires_at,
            ),
        )

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _from_row(RefreshTokenRecord, row) if row else None

    def rotate_refresh_token(
        self, old_hash: str, successor: RefreshTokenRecord, now: datetime
    ) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE refresh_token SET revoked_at = %s, replaced_by = %s
                    WHERE token_hash = %s AND revoked_at IS NULL
                    RETURNING id
                    """,
                    (now, successor.id, old_hash),
                ).fetchone()
                if not row:
                    return False
                self._insert_refresh_token(conn, successor)
        return True

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE token_hash = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, token_hash),
            ).fetchone()
        return row is not None

    def revoke_token_family(self, family_id: str, now: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = COALESCE(revoked_at, %s)
                WHERE family_id = %s
                RETURNING session_token
                """,
                (now, family_id),
            ).fetchall()
        sessions: List[str] = []
        for row in rows:
            token = row.get("session_token")
            if token and token not in sessions:
                sessions.append(token)
        return sessions

    def revoke_session_refresh_tokens(self, session_token: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE session_token = %s AND revoked_at IS NULL
                """,
                (now, session_token),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(
        self, user_id: str, now: datetime, *, except_session: Optional[str] = None
    ) -> int:
        query = "UPDATE refresh_token SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL"
        params: tuple = (now, user_id)
        if except_session is not None:
            query += " AND session_token IS DISTINCT FROM %s"
            params = (*params, except_session)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount

    # -- OTP -----------------------------------------------------------------

    def create_otp(self, record: OTPRecord, now: datetime) -> OTPRecord:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "UPDATE phone_otp SET used_at = %s WHERE phone = %s AND used_at IS NULL",
                    (now, record.phone),
                )
                conn.execute(
                    """
                    INSERT INTO phone_otp (
                        id, phone, code_hash, purpose, user_id, expires_at,
                        attempts, max_attempts, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.phone,
                        record.code_hash,
                        record.purpose,
                        record.user_id,
                        record.expires_at,
                        record.attempts,
                        record.max_attempts,
                        record.created_at,
                    ),
                )
        return record

    def get_latest_otp(self, phone: str, purpose: str) -> Optional[OTPRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM phone_otp WHERE phone = %s AND purpose = %s
                ORDER BY created_at DESC, seq DESC LIMIT 1
                """,
                (phone, purpose),
            ).fetchone()
        return _from_row(OTPRecord, row) if row else None

    def increment_otp_attempts(self, otp_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE phone_otp SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (otp_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def consume_otp(self, otp_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE phone_otp SET used_at = %s
                WHERE id = %s AND used_at IS NULL AND attempts < max_attempts AND expires_at >= %s
                RETURNING id
                """,
                (now, otp_id, now),
            ).fetchone()
        return row is not None

    # -- one-time tokens -----------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_token (id, kind, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.kind,
                        token.user_id,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token_hash"})
        return token

    def consume_one_time_token(
        self, kind: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_token SET used_at = %s
                WHERE kind = %s AND token_hash = %s AND used_at IS NULL AND expires_at >= %s
                RETURNING *
                """,
                (now, kind, token_hash, now),
            ).fetchone()
        return _from_row(OneTimeToken, row) if row else None

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (
                        session_token, user_id, device_info, ip, user_agent,
                        created_at, last_activity_at, active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.session_token,
                        session.user_id,
                        json.dumps(session.device_info or {}),
                        session.ip,
                        session.user_agent,
                        session.created_at,
                        session.last_activity_at,
                        session.active,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "session_token"})
        return session

    def get_session(self, session_token: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return _from_row(UserSession, row) if row else None

    def touch_session(self, session_token: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_session SET last_activity_at = %s WHERE session_token = %s AND active",
                (now, session_token),
            )
            return cur.rowcount > 0

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        query = "SELECT * FROM user_session WHERE user_id = %s"
        if active_only:
            query += " AND active"
        query += " ORDER BY last_activity_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [_from_row(UserSession, row) for row in rows]

    def deactivate_session(self, user_id: str, session_token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session SET active = FALSE
                WHERE session_token = %s AND user_id = %s AND active
                """,
                (session_token, user_id),
            )
            return cur.rowcount > 0

    def deactivate_sessions(self, session_tokens: List[str]) -> int:
        if not session_tokens:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_session SET active = FALSE WHERE session_token = ANY(%s) AND active",
                (list(session_tokens),),
            )
            return cur.rowcount

    def deactivate_user_sessions(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> List[str]:
        query = "UPDATE user_session SET active = FALSE WHERE user_id = %s AND active"
        params: tuple = (user_id,)
        if except_token is not None:
            query += " AND session_token <> %s"
            params = (*params, except_token)
        with self._connect() as conn:
            rows = conn.execute(query + " RETURNING session_token", params).fetchall()
        return [row["session_token"] for row in rows]

    # -- permission overrides ------------------------------------------------

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> UserPermission:
        override = _from_row(UserPermission, row)
        override.resource_id = row.get("resource_id") or None
        return override

    def list_permission_overrides(self, user_id: str) -> List[UserPermission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_permission WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def set_permission_override(self, override: UserPermission) -> UserPermission:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_permission (user_id, permission, effect, resource_id, granted_by, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, permission, resource_id)
                    DO UPDATE SET effect = EXCLUDED.effect,
                                  granted_by = EXCLUDED.granted_by,
                                  created_at = EXCLUDED.created_at
                    """,
                    (
                        override.user_id,
                        override.permission,
                        override.effect,
                        override.resource_id or "",
                        override.granted_by,
                        override.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})
        return override

    def delete_permission_override(
        self, user_id: str, permission: str, resource_id: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM user_permission
                WHERE user_id = %s AND permission = %s AND resource_id = %s
                """,
                (user_id, permission, resource_id or ""),
            )
            return cur.rowcount > 0

    # -- maintenance ---------------------------------------------------------

    def purge_expired(self, now: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._connect() as conn:
            with conn.transaction():
                # Sessions first: expiry is judged by the refresh tokens about to be removed
                counts["sessions"] = conn.execute(
                    """
                    DELETE FROM user_session s
                    WHERE NOT s.active
                       OR (
                           EXISTS (SELECT 1 FROM refresh_token r WHERE r.session_token = s.session_token)
                           AND NOT EXISTS (
                               SELECT 1 FROM refresh_token r
                               WHERE r.session_token = s.session_token AND r.expires_at >= %s
                           )
                       )
                    """,
                    (now,),
                ).rowcount
                counts["refresh_tokens"] = conn.execute(
                    "DELETE FROM refresh_token WHERE expires_at < %s", (now,)
                ).rowcount
                counts["otps"] = conn.execute(
                    """
                    DELETE FROM phone_otp
                    WHERE used_at IS NOT NULL OR attempts >= max_attempts OR expires_at < %s
                    """,
                    (now,),
                ).rowcount
                counts["one_time_tokens"] = conn.execute(
                    "DELETE FROM one_time_token WHERE used_at IS NOT NULL OR expires_at < %s",
                    (now,),
                ).rowcount
                counts["login_attempts"] = conn.execute(
                    "DELETE FROM login_attempt WHERE timestamp < %s",
                    (now - LOGIN_ATTEMPT_RETENTION,),
                ).rowcount
        return counts
