"""Unit tests for SessionManager."""

import time

from seocrawl.utils.session_manager import DIRECT, SessionData, SessionManager


class TestSessionData:
    """Tests for SessionData."""

    def test_update_cookies_merges(self):
        """New cookies are added and existing ones overwritten."""
        session = SessionData(domain="example.com", cookies={"a": "1", "b": "2"})

        session.update_cookies({"b": "3", "c": "4"})

        assert session.cookies == {"a": "1", "b": "3", "c": "4"}

    def test_expiry(self):
        """Sessions expire after the idle window."""
        session = SessionData(domain="example.com")
        session.last_used = time.monotonic() - 100

        assert session.is_expired(50)
        assert not session.is_expired(500)

    def test_to_dict(self):
        """Serialization includes the egress and cookies."""
        data = SessionData(domain="example.com", egress="p1:8080", cookies={"sid": "x"}).to_dict()

        assert data["egress"] == "p1:8080"
        assert data["cookies"] == {"sid": "x"}


class TestSessionManager:
    """Tests for SessionManager."""

    def test_same_key_same_session(self):
        """Domain and egress identify one session."""
        manager = SessionManager()

        first = manager.get_session("Example.com")
        second = manager.get_session("example.com", DIRECT)

        assert first is second
        assert second.request_count == 2
        assert first.user_agent

    def test_egress_separates_sessions(self):
        """Each proxy gets its own session for a domain."""
        manager = SessionManager()

        direct = manager.get_session("example.com")
        proxied = manager.get_session("example.com", "p1:8080")

        assert direct is not proxied

    def test_seed_from(self):
        """A new proxy session can inherit cookies and user agent."""
        manager = SessionManager()
        direct = manager.get_session("example.com")
        direct.update_cookies({"consent": "yes"})

        proxied = manager.get_session("example.com", "p1:8080", seed_from=direct)

        assert proxied.cookies == {"consent": "yes"}
        assert proxied.user_agent == direct.user_agent

        proxied.update_cookies({"extra": "1"})
        assert "extra" not in direct.cookies

    def test_seed_only_applies_to_new_sessions(self):
        """An existing session keeps its own state."""
        manager = SessionManager()
        existing = manager.get_session("example.com", "p1:8080")
        other = SessionData(domain="example.com", cookies={"x": "1"}, user_agent="Other")

        assert manager.get_session("example.com", "p1:8080", seed_from=other) is existing
        assert existing.cookies == {}

    def test_expired_session_is_replaced(self):
        """An idle session is recreated on the next request."""
        manager = SessionManager(idle_ttl_seconds=10)
        old = manager.get_session("example.com")
        old.last_used = time.monotonic() - 60

        assert manager.get_session("example.com") is not old

    def test_clear_expired_and_list(self):
        """clear_expired drops idle sessions; list_sessions shows live ones."""
        manager = SessionManager(idle_ttl_seconds=10)
        manager.get_session("a.com")
        stale = manager.get_session("b.com")
        stale.last_used = time.monotonic() - 60

        assert [s["domain"] for s in manager.list_sessions()] == ["a.com"]
        assert manager.clear_expired() == 1
        assert manager.delete_session("a.com") is True
        assert manager.delete_session("a.com") is False
