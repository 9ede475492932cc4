"""Tests for the per-device session registry."""

import pytest

from propauth.service.sessions import SessionRegistry
from propauth.service.tokens import TokenManager, hash_token


@pytest.fixture
def registry(settings, store, clock):
    return SessionRegistry(settings, store, clock=clock)


@pytest.fixture
def tokens(settings, store, clock):
    return TokenManager(settings, store, clock=clock)


@pytest.fixture
def user(make_user):
    return make_user("sessions@example.com", password=None)


class TestSessionRegistry:
    def test_create_and_list(self, registry, user):
        first = registry.create_session(user.id, {"device_name": "phone"}, ip="10.0.0.1")
        second = registry.create_session(user.id, {"device_name": "laptop"}, user_agent="ua")

        sessions = registry.list_sessions(user.id, current_session=second)

        assert {s.session_token for s in sessions} == {first, second}
        current = [s for s in sessions if s.current]
        assert [s.session_token for s in current] == [second]

    def test_touch_moves_last_activity(self, registry, store, user, clock):
        token = registry.create_session(user.id)
        later = clock.advance(minutes=5)

        assert registry.touch_session(token) is True
        assert store.get_session(token).last_activity_at == later

    def test_terminate_revokes_bound_refresh_tokens(self, registry, tokens, store, user):
        """Ending a session also ends every refresh token minted for it."""
        token = registry.create_session(user.id)
        refresh, _ = tokens.issue_refresh_token(user.id, session_token=token)

        assert registry.terminate_session(user.id, token) is True

        record = store.get_refresh_token_by_hash(hash_token(refresh))
        assert record.revoked_at is not None
        assert registry.get_active_session(token) is None

    def test_terminate_is_scoped_to_owner(self, registry, make_user, user):
        other = make_user("other@example.com", password=None)
        token = registry.create_session(user.id)

        assert registry.terminate_session(other.id, token) is False
        assert registry.get_active_session(token) is not None

    def test_terminate_twice_reports_nothing_closed(self, registry, user):
        token = registry.create_session(user.id)
        registry.terminate_session(user.id, token)

        assert registry.terminate_session(user.id, token) is False

    def test_terminate_all_can_keep_current(self, registry, tokens, store, user):
        keep = registry.create_session(user.id)
        drop = registry.create_session(user.id)
        keep_refresh, _ = tokens.issue_refresh_token(user.id, session_token=keep)
        drop_refresh, _ = tokens.issue_refresh_token(user.id, session_token=drop)

        closed = registry.terminate_all_sessions(user.id, except_session=keep)

        assert closed == 1
        assert registry.get_active_session(keep) is not None
        assert registry.get_active_session(drop) is None
        assert store.get_refresh_token_by_hash(hash_token(keep_refresh)).revoked_at is None
        assert store.get_refresh_token_by_hash(hash_token(drop_refresh)).revoked_at is not None

    def test_terminate_all(self, registry, user):
        for _ in range(3):
            registry.create_session(user.id)

        assert registry.terminate_all_sessions(user.id) == 3
        assert registry.list_sessions(user.id) == []

    def test_idle_timeout(self, settings, store, clock, user):
        registry = SessionRegistry(
            settings.model_copy(update={"session_idle_timeout_minutes": 30}), store, clock=clock
        )
        token = registry.create_session(user.id)
        clock.advance(minutes=20)
        assert registry.get_active_session(token) is not None

        clock.advance(minutes=31)

        assert registry.get_active_session(token) is None
        assert store.get_session(token).active is False

    def test_idle_timeout_disabled_by_default(self, registry, user, clock):
        token = registry.create_session(user.id)
        clock.advance(days=10)

        assert registry.get_active_session(token) is not None
