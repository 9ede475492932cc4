from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from propauth.config import Settings
from propauth.logging import get_logger
from propauth.service.errors import AccountLocked, TooManyAttempts
from propauth.storage.directory import CredentialDirectory
from propauth.storage.models import AccountLockInfo, LoginAttempt, User, utcnow

logger = get_logger(__name__)


class LockoutPolicy:
    """Failed-login accounting and timed account locks.

    The per-user counter is bumped inside the directory in one atomic step
    that also sets ``locked_until`` once the threshold is reached within the
    rolling window, so parallel failures are all counted.
    """

    def __init__(
        self,
        settings: Settings,
        directory: CredentialDirectory,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self._clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_window_minutes)

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_duration_minutes)

    def record_attempt(
        self,
        identifier: str,
        ip: Optional[str],
        success: bool,
        failure_reason: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        count: bool = True,
    ) -> Optional[User]:
        """Append to the audit trail; on a failure for a known user, count it.

        ``count=False`` records the attempt without touching the lockout
        counter. Returns the user as updated by the failure, if there was one.
        """
        now = self._clock()
        self.directory.log_login_attempt(
            LoginAttempt(
                identifier=identifier,
                success=success,
                timestamp=now,
                ip=ip,
                user_agent=user_agent,
                failure_reason=failure_reason,
                user_id=user_id,
            )
        )
        if success or user_id is None or not count:
            return None
        user = self.directory.register_failed_login(
            user_id,
            now=now,
            window_start=now - self.window,
            threshold=self.settings.lockout_threshold,
            lock_until=now + self.lock_duration,
        )
        if user is not None and user.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user_id,
                failed_attempts=user.failed_login_attempts,
                locked_until=user.locked_until.isoformat(),
            )
        return user

    def check_lock(self, user: User) -> User:
        """Raise AccountLocked while ``locked_until`` is in the future.

        A lock that has run out is cleared together with its counter.
        """
        now = self._clock()
        if user.is_locked(now):
            raise AccountLocked(detail={"locked_until": user.locked_until.isoformat()})
        if user.locked_until is not None:
            refreshed = self.directory.clear_expired_lock(user.id, now)
            return refreshed or user
        return user

    def check_identifier_rate(self, identifier: str) -> None:
        """Throttle identifiers with many recent failures, known or not."""
        since = self._clock() - self.window
        failures = self.directory.count_recent_failures(identifier, since)
        if failures >= self.settings.identifier_attempt_limit:
            logger.warning("identifier_throttled", identifier=identifier, failures=failures)
            raise TooManyAttempts(
                detail={"retry_after_seconds": int(self.window.total_seconds())}
            )

    def record_success(self, user_id: str) -> Optional[User]:
        return self.directory.record_login_success(user_id, self._clock())

    def lock_info(self, user: User) -> AccountLockInfo:
        now = self._clock()
        if user.is_locked(now):
            remaining = int((user.locked_until - now).total_seconds())
            return AccountLockInfo(
                is_locked=True,
                failed_attempts=user.failed_login_attempts,
                lock_until=user.locked_until,
                remaining_time_seconds=max(remaining, 0),
            )
        return AccountLockInfo(is_locked=False, failed_attempts=user.failed_login_attempts)

    def unlock(self, user_id: str) -> Optional[User]:
        user = self.directory.reset_lockout(user_id)
        if user is not None:
            logger.info("account_unlocked", user_id=user_id)
        return user
