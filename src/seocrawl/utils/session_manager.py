"""
Session affinity for HTTP fetching.

A session is a cookie jar plus an assigned user agent, keyed by the pair
(domain, egress identity). The same session is reused for every request to
that domain through that proxy (or the direct connection), so a target sees
a consistent client. Sessions expire after an idle window.

Usage:
    from seocrawl.utils.session_manager import SessionManager

    sessions = SessionManager(idle_ttl_seconds=600)
    session = sessions.get_session("example.com", "direct")
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from seocrawl.constants import DEFAULT_SESSION_IDLE_TTL_SECONDS
from seocrawl.utils.browser_headers import random_user_agent

logger = logging.getLogger(__name__)

DIRECT = "direct"


@dataclass
class SessionData:
    """Stored session data for a domain and egress identity."""

    domain: str
    egress: str = DIRECT
    cookies: Dict[str, str] = field(default_factory=dict)
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    last_used: float = field(default_factory=time.monotonic)
    request_count: int = 0

    def is_expired(self, idle_ttl_seconds: float) -> bool:
        """Check if the session has been idle longer than the TTL."""
        return time.monotonic() - self.last_used > idle_ttl_seconds

    def touch(self) -> None:
        self.last_used = time.monotonic()
        self.request_count += 1

    def update_cookies(self, cookies: Mapping[str, str]) -> None:
        """Merge cookies set by a response."""
        for name, value in cookies.items():
            self.cookies[name] = value

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "domain": self.domain,
            "egress": self.egress,
            "cookies": dict(self.cookies),
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "request_count": self.request_count,
        }


class SessionManager:
    """
    Keeps per (domain, egress) sessions in memory.

    Features:
    - One user agent per session for its lifetime
    - Cookie jar shared by all requests in the session
    - Seeding a proxy session from the current one during a fallback
    - Idle expiry
    """

    def __init__(self, idle_ttl_seconds: float = DEFAULT_SESSION_IDLE_TTL_SECONDS):
        """
        Initialize session manager.

        Args:
            idle_ttl_seconds: Seconds a session may stay unused before it expires
        """
        self.idle_ttl_seconds = idle_ttl_seconds
        self._sessions: Dict[tuple, SessionData] = {}

    def get_session(
        self,
        domain: str,
        egress: str = DIRECT,
        seed_from: Optional[SessionData] = None,
    ) -> SessionData:
        """
        Return the live session for a domain and egress, creating it if needed.

        Args:
            domain: Target domain
            egress: Proxy identifier, or "direct"
            seed_from: Session whose cookies and user agent a newly created
                session should inherit

        Returns:
            SessionData for the pair
        """
        key = (domain.lower(), egress)
        session = self._sessions.get(key)

        if session is not None and session.is_expired(self.idle_ttl_seconds):
            logger.debug(f"Session expired for {domain} via {egress}")
            del self._sessions[key]
            session = None

        if session is None:
            session = SessionData(domain=domain.lower(), egress=egress)
            if seed_from is not None:
                session.cookies = dict(seed_from.cookies)
                session.user_agent = seed_from.user_agent
            if not session.user_agent:
                session.user_agent = random_user_agent()
            self._sessions[key] = session

        session.touch()
        return session

    def delete_session(self, domain: str, egress: str = DIRECT) -> bool:
        """Remove a session. Returns True if one existed."""
        return self._sessions.pop((domain.lower(), egress), None) is not None

    def clear_expired(self) -> int:
        """
        Remove all idle sessions.

        Returns:
            Number of sessions removed
        """
        expired = [
            key for key, session in self._sessions.items()
            if session.is_expired(self.idle_ttl_seconds)
        ]
        for key in expired:
            del self._sessions[key]

        if expired:
            logger.info(f"Cleared {len(expired)} expired sessions")

        return len(expired)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """List live sessions."""
        return [
            session.to_dict()
            for session in self._sessions.values()
            if not session.is_expired(self.idle_ttl_seconds)
        ]
