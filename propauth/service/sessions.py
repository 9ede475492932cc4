from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from propauth.config import Settings
from propauth.logging import get_logger
from propauth.storage.directory import CredentialDirectory
from propauth.storage.models import SessionInfo, UserSession, utcnow

logger = get_logger(__name__)


class SessionRegistry:
    """One record per signed-in device; terminating a session also revokes
    every refresh token bound to it."""

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

    def create_session(
        self,
        user_id: str,
        device_info: Optional[Dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        session = UserSession.new(
            user_id,
            device_info=device_info,
            ip=ip,
            user_agent=user_agent,
            now=self._clock(),
        )
        self.directory.create_session(session)
        logger.info("session_created", user_id=user_id, session_id=session.session_token)
        return session.session_token

    def touch_session(self, session_token: str) -> bool:
        return self.directory.touch_session(session_token, self._clock())

    def get_active_session(self, session_token: str) -> Optional[UserSession]:
        """Return the session if it is active and within the idle timeout."""
        session = self.directory.get_session(session_token)
        if session is None or not session.active:
            return None
        idle_minutes = self.settings.session_idle_timeout_minutes
        if idle_minutes and self._clock() - session.last_activity_at > timedelta(minutes=idle_minutes):
            logger.info("session_idle_timeout", user_id=session.user_id, session_id=session_token)
            self.terminate_session(session.user_id, session_token)
            return None
        return session

    def list_sessions(self, user_id: str, current_session: Optional[str] = None) -> List[SessionInfo]:
        return [
            SessionInfo(
                session_token=session.session_token,
                device_info=session.device_info,
                ip=session.ip,
                user_agent=session.user_agent,
                created_at=session.created_at,
                last_activity_at=session.last_activity_at,
                current=session.session_token == current_session,
            )
            for session in self.directory.list_user_sessions(user_id)
        ]

    def terminate_session(self, user_id: str, session_token: str) -> bool:
        closed = self.directory.deactivate_session(user_id, session_token)
        if closed:
            revoked = self.directory.revoke_session_refresh_tokens(session_token, self._clock())
            logger.info(
                "session_terminated",
                user_id=user_id,
                session_id=session_token,
                refresh_tokens_revoked=revoked,
            )
        return closed

    def terminate_all_sessions(self, user_id: str, *, except_session: Optional[str] = None) -> int:
        now = self._clock()
        closed = self.directory.deactivate_user_sessions(user_id, except_token=except_session)
        revoked = self.directory.revoke_user_refresh_tokens(
            user_id, now, except_session=except_session
        )
        logger.info(
            "sessions_terminated",
            user_id=user_id,
            sessions=len(closed),
            refresh_tokens_revoked=revoked,
            kept_current=except_session is not None,
        )
        return len(closed)
